"""Send command for parley.

Runs one agent turn in the foreground: prints each message as it is
finalized and answers permission prompts, input requests and questions
from the terminal until the session settles.
"""

import asyncio

import click

from parley.core.activity import summarize_message
from parley.core.config import PERMISSION_MODES
from parley.core.errors import ParleyError
from parley.core.registry import Attachment, SessionRegistry, is_settled
from parley.core.session import PendingQuestion, Session
from parley.core.state import resolve_session_id

WAITING_STATES = ("waiting_permission", "waiting_input")


def needs_attention(session: Session) -> bool:
    return is_settled(session) or session.state in WAITING_STATES


def format_question_answer(pending: PendingQuestion, answers: list[str]) -> str:
    """Turn answers to an AskUserQuestion call into the next user message."""
    if len(answers) == 1:
        return answers[0]
    lines = []
    for question, answer in zip(pending.questions, answers):
        label = question.header or question.question
        lines.append(f"{label}: {answer}")
    return "\n".join(lines)


async def _prompt(text: str, **kwargs) -> str:
    # Keep the event loop reading agent output while the user types
    return await asyncio.to_thread(click.prompt, text, **kwargs)


async def _confirm(text: str) -> bool:
    return await asyncio.to_thread(click.confirm, text, default=True)


async def _ask_permission(auto_allow: bool) -> bool:
    if auto_allow:
        click.echo("(allowed)")
        return True
    return await _confirm("Allow?")


async def _ask_input(session: Session) -> str:
    request = None
    for message in reversed(session.messages):
        if message.raw and message.raw.get("type") == "input_request":
            request = message.raw.get("input_request") or {}
            break
    request = request or {}

    options = request.get("options") or []
    values = [str(o.get("value", o.get("label", ""))) for o in options if isinstance(o, dict)]
    if values:
        return await _prompt(
            request.get("message") or "Choose",
            type=click.Choice(values),
            default=request.get("default"),
        )
    return await _prompt(request.get("message") or "Input", default=request.get("default"))


async def _answer_question(pending: PendingQuestion) -> str:
    answers = []
    for question in pending.questions:
        click.echo(f"? {question.question}")
        for index, option in enumerate(question.options, start=1):
            line = f"  {index}. {option.label}"
            if option.description:
                line += f" - {option.description}"
            click.echo(line)
        answer = await _prompt("Answer", default="", show_default=False)
        if answer.isdigit() and 1 <= int(answer) <= len(question.options):
            answer = question.options[int(answer) - 1].label
        answers.append(answer)
    return format_question_answer(pending, answers)


async def run_turn(
    session_id: str,
    text: str,
    attachments: list[Attachment],
    permission_mode: str | None = None,
    model: str | None = None,
    auto_allow: bool = False,
) -> Session:
    """Send a message and drive the session until it settles.

    Returns:
        The settled session.
    """
    registry = SessionRegistry()
    printed: set[str] = set()

    def on_update(session: Session) -> None:
        if session.id != session_id:
            return
        for message in session.messages:
            if message.is_streaming or message.id in printed:
                continue
            printed.add(message.id)
            output = summarize_message(message)
            if output:
                click.echo(output)

    try:
        session = registry.send_message(
            session_id, text, attachments, permission_mode=permission_mode, model=model
        )
        if registry.owned_elsewhere(session_id):
            click.echo("Session is busy in another parley process; message queued")
            return session
        printed.update(m.id for m in session.messages)
        unsubscribe = registry.subscribe(on_update)

        while True:
            session = await registry.wait_until(session_id, needs_attention)

            if session.process_id is None:
                if session.pending_question is None:
                    break
                answer = await _answer_question(session.pending_question)
                if not answer.strip():
                    break
                registry.send_message(
                    session_id, answer, permission_mode=permission_mode, model=model
                )
                continue

            if session.state == "waiting_permission":
                allow = await _ask_permission(auto_allow)
                registry.respond_to_permission(session_id, allow)
            elif session.state == "waiting_input":
                if session.pending_question is not None:
                    # Questions are answered once the turn ends
                    await registry.wait_until(
                        session_id,
                        lambda s: s.process_id is None or s.state == "waiting_permission",
                    )
                else:
                    registry.respond_to_input(session_id, await _ask_input(session))

        unsubscribe()
        return session
    finally:
        await registry.close()


@click.command()
@click.argument("session_id")
@click.argument("message")
@click.option(
    "--image",
    "images",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Attach an image (repeatable)",
)
@click.option(
    "--permission-mode",
    type=click.Choice(PERMISSION_MODES),
    default=None,
    help="Permission mode for this turn (default: config)",
)
@click.option("--model", default=None, help="Model for this turn (default: config)")
@click.option("--yes", "-y", "auto_allow", is_flag=True, help="Allow every permission prompt")
def send(
    session_id: str,
    message: str,
    images: tuple[str, ...],
    permission_mode: str | None,
    model: str | None,
    auto_allow: bool,
) -> None:
    """Send MESSAGE to a session and stream the turn.

    Blocks until the agent finishes, prompting for permission and input as
    needed. Questions the agent asks are answered after its turn ends and
    sent as the next message.

    SESSION_ID is the full ID or a unique prefix of it.

    Examples:

        parley send 3f2a "Add a --verbose flag"

        parley send 3f2a "What is in this screenshot?" --image shot.png
    """
    resolved_id = resolve_session_id(session_id)
    if resolved_id is None:
        click.echo(f"Session {session_id} not found", err=True)
        raise SystemExit(1)

    attachments = [Attachment.from_path(path) for path in images]

    try:
        asyncio.run(
            run_turn(resolved_id, message, attachments, permission_mode, model, auto_allow)
        )
    except ParleyError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
