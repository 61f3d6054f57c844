"""Session state machine.

reduce() folds one classified stream message into a session and returns the
next session plus the finalized messages that must be persisted. Sessions are
never mutated in place; every transition builds a new Session.

States:
    idle -> running                     user sends a message
    running -> waiting_permission       permission_request, or a tool result
                                        saying permission is not yet granted
    running -> waiting_input            input_request, or an AskUserQuestion call
    waiting_* -> running                user responds
    running -> idle                     process exits (waiting_input instead if
                                        a question is still pending)
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import assert_never
from uuid import uuid4

from parley.core.permissions import detects_pending_permission
from parley.core.protocol import (
    QUESTION_TOOL,
    TODO_TOOL,
    AssistantMessage,
    CompactionEvent,
    InputRequest,
    ParseFailure,
    PermissionRequest,
    ProgressEvent,
    Result,
    StreamEvent,
    StreamMessage,
    SystemInit,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    classify_payload,
    local_user_input,
)
from parley.core.session import (
    TODO_STATUSES,
    ContentBlock,
    Message,
    PendingQuestion,
    Question,
    QuestionOption,
    Session,
    TodoItem,
    utcnow,
)

DEFAULT_CONTEXT_LIMIT = 200_000
EXTENDED_CONTEXT_LIMIT = 1_000_000

# Tool calls that show code changes are expanded by default
EXPANDED_TOOLS = {"Edit", "Write", "MultiEdit"}


@dataclass
class Transition:
    """Result of applying one event to a session.

    Attributes:
        session: The next session state
        persist: Finalized messages to write to the store, each exactly once
    """

    session: Session
    persist: list[Message] = field(default_factory=list)


def new_id() -> str:
    return str(uuid4())


def context_limit_for(model: str | None) -> int:
    """Context window size for a model name."""
    if model and "[1m]" in model.lower():
        return EXTENDED_CONTEXT_LIMIT
    return DEFAULT_CONTEXT_LIMIT


def parse_todos(tool_input: dict) -> list[TodoItem] | None:
    """Parse a TodoWrite input. Returns None if it carries no todo list."""
    todos = tool_input.get("todos")
    if not isinstance(todos, list):
        return None
    items = []
    for todo in todos:
        if not isinstance(todo, dict) or todo.get("status") not in TODO_STATUSES:
            continue
        items.append(
            TodoItem(
                content=str(todo.get("content", "")),
                status=todo["status"],
                active_form=todo.get("activeForm"),
            )
        )
    return items


def parse_pending_question(block: ToolUseBlock) -> PendingQuestion | None:
    """Parse an AskUserQuestion call. Returns None if it carries no questions."""
    questions = block.input.get("questions")
    if not isinstance(questions, list):
        return None
    parsed = []
    for q in questions:
        if not isinstance(q, dict):
            continue
        parsed.append(
            Question(
                question=str(q.get("question", "")),
                header=str(q.get("header", "")),
                options=[
                    QuestionOption(
                        label=str(o.get("label", "")),
                        description=str(o.get("description", "")),
                    )
                    for o in q.get("options") or []
                    if isinstance(o, dict)
                ],
                multi_select=bool(q.get("multiSelect", False)),
            )
        )
    return PendingQuestion(tool_use_id=block.id, questions=parsed)


def _local_input_text(raw: dict) -> str:
    text = str(raw.get("content", ""))
    count = int(raw.get("image_count") or 0)
    if count:
        plural = "s" if count > 1 else ""
        suffix = f"[{count} image{plural} attached]"
        return f"{text}\n{suffix}" if text else suffix
    return text


def build_content_blocks(raw: dict | None) -> list[ContentBlock]:
    """Derive renderable blocks from a raw payload.

    Used both when a message is first reduced and when persisted messages are
    loaded back from the store.
    """
    if raw is None:
        return []
    message = classify_payload(raw)
    if isinstance(message, ParseFailure):
        return []

    if isinstance(message, SystemInit):
        return [ContentBlock(new_id(), "system_init", raw, False)]

    if isinstance(message, AssistantMessage):
        blocks = []
        for part in message.content:
            if isinstance(part, TextBlock):
                blocks.append(ContentBlock(new_id(), "text", part.raw, True))
            elif isinstance(part, ToolUseBlock):
                blocks.append(
                    ContentBlock(
                        part.id or new_id(),
                        "tool_use",
                        part.raw,
                        part.name in EXPANDED_TOOLS,
                    )
                )
            elif isinstance(part, ThinkingBlock):
                blocks.append(ContentBlock(new_id(), "thinking", part.raw, False))
            elif isinstance(part, ToolResultBlock):
                blocks.append(ContentBlock(new_id(), "tool_result", part.raw, False))
        return blocks

    if isinstance(message, UserMessage):
        if message.is_local_input:
            text = _local_input_text(raw)
            return [ContentBlock(new_id(), "text", {"type": "text", "text": text}, True)]
        return [ContentBlock(new_id(), "tool_result", raw, False)]

    if isinstance(message, Result):
        return [ContentBlock(new_id(), "result", raw, False)]

    if isinstance(message, PermissionRequest):
        return [ContentBlock(new_id(), "permission_request", raw, True)]

    if isinstance(message, InputRequest):
        return [ContentBlock(new_id(), "input_request", raw, True)]

    return []


def message_type_for(message: StreamMessage) -> str:
    """Conversation message type recorded for a stream message."""
    if isinstance(message, AssistantMessage):
        return "assistant"
    if isinstance(message, UserMessage):
        return "user"
    if isinstance(message, Result):
        return "result"
    return "system"


def _finalize(message: StreamMessage, message_id: str, now: datetime) -> Message:
    return Message(
        id=message_id,
        timestamp=now,
        type=message_type_for(message),
        raw=message.raw,
        content_blocks=build_content_blocks(message.raw),
    )


def _append(
    session: Session, message: StreamMessage, message_id: str, now: datetime, **changes
) -> Transition:
    final = _finalize(message, message_id, now)
    session = replace(
        session,
        messages=[*session.messages, final],
        updated_at=now,
        **changes,
    )
    return Transition(session, [final])


def _reduce_stream_event(session: Session, event: StreamEvent, now: datetime) -> Transition:
    delta = event.text_delta
    if delta is None:
        return Transition(session)

    index = None
    if session.in_progress_message_id is not None:
        index = session.find_message(session.in_progress_message_id)

    if index is None:
        streaming = Message(
            id=new_id(),
            timestamp=now,
            type="assistant",
            raw=None,
            content_blocks=[
                ContentBlock(new_id(), "text", {"type": "text", "text": delta}, True)
            ],
        )
        return Transition(
            replace(
                session,
                messages=[*session.messages, streaming],
                in_progress_message_id=streaming.id,
                updated_at=now,
            )
        )

    messages = list(session.messages)
    current = messages[index]
    block = current.content_blocks[0]
    text = block.content.get("text", "") + delta
    messages[index] = replace(
        current,
        content_blocks=[replace(block, content={"type": "text", "text": text})],
    )
    return Transition(replace(session, messages=messages, updated_at=now))


def _assistant_message_id(session: Session, message: AssistantMessage) -> str:
    # Each content block arrives as its own event sharing the API message id
    if session.find_message(message.id) is None:
        return message.id
    return f"{message.id}:{message.uuid or new_id()}"


def _reduce_assistant(session: Session, message: AssistantMessage, now: datetime) -> Transition:
    final = _finalize(message, _assistant_message_id(session, message), now)

    messages = list(session.messages)
    index = None
    if session.in_progress_message_id is not None:
        index = session.find_message(session.in_progress_message_id)
    if index is None:
        messages.append(final)
    else:
        messages[index] = final

    todos = session.todos
    pending_question = session.pending_question
    state = session.state
    for block in message.tool_uses():
        if block.name == TODO_TOOL:
            parsed = parse_todos(block.input)
            if parsed is not None:
                todos = parsed
        elif block.name == QUESTION_TOOL:
            question = parse_pending_question(block)
            if question is not None:
                pending_question = question
                state = "waiting_input"

    session = replace(
        session,
        messages=messages,
        in_progress_message_id=None,
        todos=todos,
        pending_question=pending_question,
        state=state,
        updated_at=now,
    )
    return Transition(session, [final])


def _reduce_user(session: Session, message: UserMessage, now: datetime) -> Transition:
    state = session.state
    for result in message.tool_results():
        if detects_pending_permission(result.text):
            state = "waiting_permission"
            break
    return _append(session, message, message.uuid or new_id(), now, state=state)


def _reduce_result(session: Session, message: Result, now: datetime) -> Transition:
    metadata = session.metadata
    metadata = replace(
        metadata,
        total_cost_usd=metadata.total_cost_usd + message.total_cost_usd,
        total_input_tokens=metadata.total_input_tokens + message.input_tokens,
        total_output_tokens=metadata.total_output_tokens + message.output_tokens,
        # Input tokens include the whole conversation so far
        context_tokens=message.input_tokens,
        context_limit=metadata.context_limit or context_limit_for(metadata.model),
    )
    return _append(
        session,
        message,
        message.uuid or new_id(),
        now,
        metadata=metadata,
        in_progress_message_id=None,
    )


def _reduce_system_init(session: Session, message: SystemInit, now: datetime) -> Transition:
    metadata = replace(
        session.metadata,
        model=message.model,
        context_limit=context_limit_for(message.model),
    )
    return _append(
        session,
        message,
        message.raw.get("uuid") or new_id(),
        now,
        metadata=metadata,
        agent_session_id=session.agent_session_id or message.session_id,
    )


def _reduce_compaction(session: Session, event: CompactionEvent, now: datetime) -> Transition:
    metadata = session.metadata
    metadata = replace(
        metadata,
        context_tokens=(
            event.tokens_after if event.tokens_after is not None else metadata.context_tokens
        ),
        context_limit=event.context_limit or metadata.context_limit,
        compaction_count=metadata.compaction_count + 1,
    )
    return Transition(replace(session, metadata=metadata, updated_at=now))


def reduce(session: Session, message: StreamMessage, now: datetime | None = None) -> Transition:
    """Apply one classified stream message to a session.

    Args:
        session: Current session state.
        message: A classified message from the agent's output.
        now: Timestamp for new messages (defaults to the current time).

    Returns:
        Transition with the next session and the messages to persist.
    """
    now = now or utcnow()

    if isinstance(message, StreamEvent):
        return _reduce_stream_event(session, message, now)
    if isinstance(message, AssistantMessage):
        return _reduce_assistant(session, message, now)
    if isinstance(message, UserMessage):
        return _reduce_user(session, message, now)
    if isinstance(message, Result):
        return _reduce_result(session, message, now)
    if isinstance(message, SystemInit):
        return _reduce_system_init(session, message, now)
    if isinstance(message, CompactionEvent):
        return _reduce_compaction(session, message, now)
    if isinstance(message, PermissionRequest):
        return _append(
            session, message, message.raw.get("uuid") or new_id(), now,
            state="waiting_permission",
        )
    if isinstance(message, InputRequest):
        return _append(
            session, message, message.raw.get("uuid") or new_id(), now,
            state="waiting_input",
        )
    if isinstance(message, ProgressEvent):
        metadata = replace(session.metadata, last_progress=message.message)
        return Transition(replace(session, metadata=metadata, updated_at=now))
    assert_never(message)


def apply_user_message(
    session: Session, text: str, image_count: int = 0, now: datetime | None = None
) -> Transition:
    """Record text the user sent: append it, clear any question, start running."""
    now = now or utcnow()
    raw = local_user_input(text, image_count)
    message = Message(
        id=new_id(),
        timestamp=now,
        type="user",
        raw=raw,
        content_blocks=build_content_blocks(raw),
    )
    session = replace(
        session,
        messages=[*session.messages, message],
        pending_question=None,
        state="running",
        updated_at=now,
    )
    return Transition(session, [message])


def apply_response(session: Session, now: datetime | None = None) -> Session:
    """The user answered a permission prompt or input request."""
    return replace(session, state="running", updated_at=now or utcnow())


def apply_process_exit(
    session: Session, now: datetime | None = None
) -> tuple[Session, str | None]:
    """Detach the process after it exits.

    A streamed message that never received its full message stays in history
    un-finalized.

    Returns:
        The next session and the queued message to submit now, if any. A
        queued message is only released when the session lands in idle; with
        a question still pending it stays queued.
    """
    state = "waiting_input" if session.pending_question else "idle"
    queued = session.queued_message if state == "idle" else None
    session = replace(
        session,
        state=state,
        process_id=None,
        owner_pid=None,
        agent_pid=None,
        in_progress_message_id=None,
        queued_message=None if queued else session.queued_message,
        updated_at=now or utcnow(),
    )
    return session, queued
