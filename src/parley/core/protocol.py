"""Classification of the agent's stream-json output.

Every line the agent writes is one JSON object. classify() turns a line into
exactly one of the variants below, or a ParseFailure. The outer `type` field
picks the variant; `system` lines are further split by `subtype` and `user`
lines by whether they carry the local-input marker.

Wire shapes handled:
    {"type": "system", "subtype": "init", "model": ..., "session_id": ...}
    {"type": "system", "subtype": "compact", "compact": {"tokens_before": ..., ...}}
    {"type": "assistant", "message": {"id": ..., "content": [...]}}
    {"type": "user", "message": {"content": [{"type": "tool_result", ...}]}}
    {"type": "result", "total_cost_usd": ..., "usage": {...}}
    {"type": "stream_event", "event": {"type": "content_block_delta", "delta": {...}}}
    {"type": "permission_request", "permission_request": {...}}
    {"type": "input_request", "input_request": {...}}
    {"type": "progress", "progress": {...}}
"""

from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Union

import orjson

from parley.core.lines import LineAssembler

# Tool names the reducer treats specially
TODO_TOOL = "TodoWrite"
QUESTION_TOOL = "AskUserQuestion"

# Marker subtype on locally-recorded user input
LOCAL_INPUT_SUBTYPE = "local_input"


# --- content blocks -------------------------------------------------------


@dataclass(frozen=True)
class TextBlock:
    text: str
    raw: dict = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict
    raw: dict = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ThinkingBlock:
    thinking: str
    raw: dict = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: str | list
    is_error: bool = False
    raw: dict = field(default_factory=dict, compare=False)

    @property
    def text(self) -> str:
        """Tool result content flattened to text."""
        if isinstance(self.content, str):
            return self.content
        parts = []
        for item in self.content:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
        return "\n".join(parts)


ContentPart = Union[TextBlock, ToolUseBlock, ThinkingBlock, ToolResultBlock]


# --- stream messages ------------------------------------------------------


@dataclass(frozen=True)
class SystemInit:
    session_id: str | None
    model: str | None
    cwd: str | None
    tools: tuple[str, ...]
    permission_mode: str | None
    raw: dict = field(compare=False)


@dataclass(frozen=True)
class CompactionEvent:
    session_id: str | None
    tokens_before: int | None
    tokens_after: int | None
    context_limit: int | None
    raw: dict = field(compare=False)


@dataclass(frozen=True)
class AssistantMessage:
    id: str
    uuid: str | None
    model: str | None
    content: tuple[ContentPart, ...]
    parent_tool_use_id: str | None
    raw: dict = field(compare=False)

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    def tool_uses(self, name: str | None = None) -> list[ToolUseBlock]:
        """Tool-use blocks in order, optionally filtered by tool name."""
        return [
            b
            for b in self.content
            if isinstance(b, ToolUseBlock) and (name is None or b.name == name)
        ]


@dataclass(frozen=True)
class UserMessage:
    uuid: str | None
    content: tuple[ContentPart, ...]
    is_local_input: bool
    raw: dict = field(compare=False)

    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]


@dataclass(frozen=True)
class Result:
    uuid: str | None
    subtype: str | None
    is_error: bool
    result: str | None
    total_cost_usd: float
    input_tokens: int
    output_tokens: int
    duration_ms: int | None
    num_turns: int | None
    session_id: str | None
    raw: dict = field(compare=False)


@dataclass(frozen=True)
class StreamEvent:
    event_type: str
    delta_type: str | None
    delta_text: str | None
    raw: dict = field(compare=False)

    @property
    def text_delta(self) -> str | None:
        """Delta text for a content_block_delta/text_delta event, else None."""
        if self.event_type == "content_block_delta" and self.delta_type == "text_delta":
            return self.delta_text or ""
        return None


@dataclass(frozen=True)
class PermissionRequest:
    request_type: str
    tool_name: str | None
    description: str
    input: dict
    raw: dict = field(compare=False)


@dataclass(frozen=True)
class InputRequest:
    request_type: str
    message: str
    options: tuple[tuple[str, str], ...]
    default: str | None
    raw: dict = field(compare=False)


@dataclass(frozen=True)
class ProgressEvent:
    progress_type: str
    message: str
    percentage: float | None
    raw: dict = field(compare=False)


StreamMessage = Union[
    SystemInit,
    CompactionEvent,
    AssistantMessage,
    UserMessage,
    Result,
    StreamEvent,
    PermissionRequest,
    InputRequest,
    ProgressEvent,
]


@dataclass(frozen=True)
class ParseFailure:
    """A line that is not JSON or does not match any known message shape."""

    line: str
    reason: str


class _Malformed(Exception):
    """Internal: payload parsed as JSON but is missing required structure."""


# --- helpers --------------------------------------------------------------


def _require_dict(data: dict, key: str) -> dict:
    value = data.get(key)
    if not isinstance(value, dict):
        raise _Malformed(f"missing object field '{key}'")
    return value


def _as_int(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _as_str(value) -> str | None:
    return value if isinstance(value, str) else None


def classify_content_block(block) -> ContentPart | None:
    """Classify one content block. Unknown block types return None."""
    if not isinstance(block, dict):
        return None
    block_type = block.get("type")
    if block_type == "text":
        return TextBlock(text=str(block.get("text", "")), raw=block)
    if block_type == "tool_use":
        tool_input = block.get("input")
        return ToolUseBlock(
            id=str(block.get("id", "")),
            name=str(block.get("name", "")),
            input=tool_input if isinstance(tool_input, dict) else {},
            raw=block,
        )
    if block_type == "thinking":
        return ThinkingBlock(thinking=str(block.get("thinking", "")), raw=block)
    if block_type == "tool_result":
        content = block.get("content", "")
        if not isinstance(content, (str, list)):
            content = str(content)
        return ToolResultBlock(
            tool_use_id=str(block.get("tool_use_id", "")),
            content=content,
            is_error=bool(block.get("is_error", False)),
            raw=block,
        )
    return None


def _classify_blocks(content) -> tuple[ContentPart, ...]:
    if isinstance(content, str):
        return (TextBlock(text=content, raw={"type": "text", "text": content}),)
    if not isinstance(content, list):
        raise _Malformed("content must be a list or string")
    parts = []
    for block in content:
        part = classify_content_block(block)
        if part is not None:
            parts.append(part)
    return tuple(parts)


# --- per-type classifiers -------------------------------------------------


def _classify_system(data: dict) -> StreamMessage:
    subtype = data.get("subtype")
    if subtype == "init":
        tools = data.get("tools")
        return SystemInit(
            session_id=_as_str(data.get("session_id")),
            model=_as_str(data.get("model")),
            cwd=_as_str(data.get("cwd")),
            tools=tuple(str(t) for t in tools) if isinstance(tools, list) else (),
            permission_mode=_as_str(data.get("permissionMode")),
            raw=data,
        )
    if subtype == "compact":
        compact = _require_dict(data, "compact")
        return CompactionEvent(
            session_id=_as_str(data.get("session_id")),
            tokens_before=_as_int(compact.get("tokens_before")),
            tokens_after=_as_int(compact.get("tokens_after")),
            context_limit=_as_int(compact.get("context_limit")),
            raw=data,
        )
    if subtype == "compact_boundary":
        # Newer CLIs report only the pre-compaction size
        meta = data.get("compact_metadata")
        meta = meta if isinstance(meta, dict) else {}
        return CompactionEvent(
            session_id=_as_str(data.get("session_id")),
            tokens_before=_as_int(meta.get("pre_tokens")),
            tokens_after=None,
            context_limit=None,
            raw=data,
        )
    raise _Malformed(f"unknown system subtype {subtype!r}")


def _classify_assistant(data: dict) -> StreamMessage:
    message = _require_dict(data, "message")
    if "content" not in message:
        raise _Malformed("assistant message has no content")
    message_id = message.get("id") or data.get("uuid")
    if not message_id:
        raise _Malformed("assistant message has no id")
    return AssistantMessage(
        id=str(message_id),
        uuid=_as_str(data.get("uuid")),
        model=_as_str(message.get("model")),
        content=_classify_blocks(message.get("content")),
        parent_tool_use_id=_as_str(data.get("parent_tool_use_id")),
        raw=data,
    )


def _classify_user(data: dict) -> StreamMessage:
    if data.get("subtype") == LOCAL_INPUT_SUBTYPE:
        text = str(data.get("content", ""))
        return UserMessage(
            uuid=_as_str(data.get("uuid")),
            content=(TextBlock(text=text, raw={"type": "text", "text": text}),),
            is_local_input=True,
            raw=data,
        )
    message = _require_dict(data, "message")
    return UserMessage(
        uuid=_as_str(data.get("uuid")),
        content=_classify_blocks(message.get("content", [])),
        is_local_input=False,
        raw=data,
    )


def _classify_result(data: dict) -> StreamMessage:
    usage = data.get("usage")
    usage = usage if isinstance(usage, dict) else {}
    cost = data.get("total_cost_usd")
    return Result(
        uuid=_as_str(data.get("uuid")),
        subtype=_as_str(data.get("subtype")),
        is_error=bool(data.get("is_error", False)),
        result=_as_str(data.get("result")),
        total_cost_usd=float(cost) if isinstance(cost, (int, float)) else 0.0,
        input_tokens=_as_int(usage.get("input_tokens")) or 0,
        output_tokens=_as_int(usage.get("output_tokens")) or 0,
        duration_ms=_as_int(data.get("duration_ms")),
        num_turns=_as_int(data.get("num_turns")),
        session_id=_as_str(data.get("session_id")),
        raw=data,
    )


def _classify_stream_event(data: dict) -> StreamMessage:
    event = _require_dict(data, "event")
    delta = event.get("delta")
    delta = delta if isinstance(delta, dict) else {}
    return StreamEvent(
        event_type=str(event.get("type", "")),
        delta_type=_as_str(delta.get("type")),
        delta_text=_as_str(delta.get("text")),
        raw=data,
    )


def _classify_permission_request(data: dict) -> StreamMessage:
    request = _require_dict(data, "permission_request")
    tool_input = request.get("input")
    return PermissionRequest(
        request_type=str(request.get("type", "tool_use")),
        tool_name=_as_str(request.get("tool_name")),
        description=str(request.get("description", "")),
        input=tool_input if isinstance(tool_input, dict) else {},
        raw=data,
    )


def _classify_input_request(data: dict) -> StreamMessage:
    request = _require_dict(data, "input_request")
    options = []
    for option in request.get("options") or []:
        if isinstance(option, dict):
            label = str(option.get("label", ""))
            options.append((label, str(option.get("value", label))))
    return InputRequest(
        request_type=str(request.get("type", "text")),
        message=str(request.get("message", "")),
        options=tuple(options),
        default=_as_str(request.get("default")),
        raw=data,
    )


def _classify_progress(data: dict) -> StreamMessage:
    progress = _require_dict(data, "progress")
    percentage = progress.get("percentage")
    return ProgressEvent(
        progress_type=str(progress.get("type", "task")),
        message=str(progress.get("message", "")),
        percentage=float(percentage) if isinstance(percentage, (int, float)) else None,
        raw=data,
    )


_CLASSIFIERS: dict[str, Callable[[dict], StreamMessage]] = {
    "system": _classify_system,
    "assistant": _classify_assistant,
    "user": _classify_user,
    "result": _classify_result,
    "stream_event": _classify_stream_event,
    "permission_request": _classify_permission_request,
    "input_request": _classify_input_request,
    "progress": _classify_progress,
}


def classify_payload(data) -> StreamMessage | ParseFailure:
    """Classify an already-decoded JSON payload."""
    if not isinstance(data, dict):
        return ParseFailure(line=repr(data), reason="not a JSON object")
    classifier = _CLASSIFIERS.get(data.get("type"))
    if classifier is None:
        return ParseFailure(
            line=repr(data), reason=f"unknown message type {data.get('type')!r}"
        )
    try:
        return classifier(data)
    except _Malformed as e:
        return ParseFailure(line=repr(data), reason=str(e))


def classify(line: str) -> StreamMessage | ParseFailure:
    """Parse and classify one line of agent output.

    Args:
        line: One complete line, without its newline. Surrounding whitespace
            (including the carriage return a terminal may add) is ignored.

    Returns:
        The classified message, or ParseFailure for non-JSON lines and
        payloads that match no known variant.
    """
    stripped = line.strip()
    if not stripped:
        return ParseFailure(line=line, reason="empty line")
    try:
        data = orjson.loads(stripped)
    except orjson.JSONDecodeError as e:
        return ParseFailure(line=line, reason=f"invalid JSON: {e}")
    result = classify_payload(data)
    if isinstance(result, ParseFailure):
        return ParseFailure(line=line, reason=result.reason)
    return result


def local_user_input(text: str, image_count: int = 0) -> dict:
    """Raw payload recorded for text the user typed locally."""
    return {
        "type": "user",
        "subtype": LOCAL_INPUT_SUBTYPE,
        "content": text,
        "image_count": image_count,
    }


class DuplicateFilter:
    """Drops repeated deliveries of terminal events per session.

    Full assistant messages and results must reach the reducer at most once.
    Events are keyed by their `uuid` when the agent supplies one, otherwise by
    the canonical JSON of the whole payload.
    """

    def __init__(self) -> None:
        self._seen: dict[str, set] = {}

    @staticmethod
    def _key(message: StreamMessage):
        uuid = getattr(message, "uuid", None)
        if uuid:
            return ("uuid", uuid)
        return ("raw", orjson.dumps(message.raw, option=orjson.OPT_SORT_KEYS))

    def admit(self, session_id: str, message: StreamMessage) -> bool:
        """Return True if the message should be reduced, False if it is a repeat."""
        if not isinstance(message, (AssistantMessage, Result)):
            return True
        seen = self._seen.setdefault(session_id, set())
        key = self._key(message)
        if key in seen:
            return False
        seen.add(key)
        return True

    def forget(self, session_id: str) -> None:
        self._seen.pop(session_id, None)


def decode_stream(
    chunks: Iterable[str], session_id: str = "stream"
) -> Iterator[StreamMessage]:
    """Reassemble chunks into lines and yield every classified message.

    Parse failures are skipped. Output after the last newline is not yielded.
    """
    assembler = LineAssembler()
    for chunk in chunks:
        for line in assembler.feed(session_id, chunk):
            message = classify(line)
            if not isinstance(message, ParseFailure):
                yield message
