"""Show command for parley.

Prints a session's details and conversation.
"""

import click
import orjson

from parley.core.activity import format_context, format_cost, summarize_message
from parley.core.state import load_session, resolve_session_id


@click.command()
@click.argument("session_id")
@click.option("--json", "as_json", is_flag=True, help="Output JSON including messages")
def show(session_id: str, as_json: bool) -> None:
    """Show a session's state, todos and conversation.

    SESSION_ID is the full ID or a unique prefix of it.

    Examples:

        parley show 3f2a

        parley show 3f2a --json
    """
    resolved_id = resolve_session_id(session_id)
    session = load_session(resolved_id) if resolved_id else None
    if session is None:
        click.echo(f"Session {session_id} not found", err=True)
        raise SystemExit(1)

    if as_json:
        data = session.to_dict()
        data["messages"] = [m.to_dict() for m in session.messages]
        click.echo(orjson.dumps(data, option=orjson.OPT_INDENT_2).decode())
        return

    metadata = session.metadata
    click.echo(f"{session.title} ({session.id})")
    click.echo(f"  cwd:     {session.cwd}")
    click.echo(f"  state:   {session.state}")
    if metadata.model:
        click.echo(f"  model:   {metadata.model}")
    click.echo(
        f"  cost:    {format_cost(metadata.total_cost_usd)}  "
        f"context: {format_context(metadata.context_tokens, metadata.context_limit)}"
    )
    if session.queued_message:
        click.echo(f"  queued:  {session.queued_message}")

    if session.todos:
        click.echo("")
        marks = {"pending": "[ ]", "in_progress": "[~]", "completed": "[x]"}
        for todo in session.todos:
            click.echo(f"  {marks[todo.status]} {todo.content}")

    for message in session.messages:
        text = summarize_message(message)
        if text:
            click.echo("")
            click.echo(text)

    if session.pending_question:
        click.echo("")
        for question in session.pending_question.questions:
            click.echo(f"? {question.question}")
            for option in question.options:
                click.echo(f"  - {option.label}")
