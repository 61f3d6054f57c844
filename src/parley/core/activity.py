"""One-line summaries of agent activity for terminal output."""

from pathlib import Path

from parley.core.session import ContentBlock, Message

TEXT_PREVIEW_LENGTH = 200


def _truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def describe_tool_use(tool_name: str, tool_input: dict) -> str:
    """Describe a tool call in present tense.

    Args:
        tool_name: Name of the tool being used
        tool_input: Tool input parameters

    Returns:
        Human-readable activity string, e.g. "reading main.py"
    """
    if tool_name == "Read":
        file_path = tool_input.get("file_path", "")
        if file_path:
            return f"reading {Path(file_path).name}"
        return "reading file"

    if tool_name in ("Edit", "Write", "MultiEdit"):
        file_path = tool_input.get("file_path", "")
        if file_path:
            return f"editing {Path(file_path).name}"
        return "editing file"

    if tool_name == "Bash":
        command = tool_input.get("command", "")
        if command:
            return f"running: {_truncate(command, 40)}"
        return "running command"

    if tool_name == "Grep":
        pattern = tool_input.get("pattern", "")
        if pattern:
            return f"searching: {_truncate(pattern, 30)}"
        return "searching"

    if tool_name == "Glob":
        pattern = tool_input.get("pattern", "")
        if pattern:
            return f"finding: {pattern}"
        return "finding files"

    if tool_name == "WebFetch":
        url = tool_input.get("url", "")
        if url:
            return f"fetching: {_truncate(url, 40)}"
        return "fetching page"

    if tool_name == "Task":
        return "spawning subtask"

    if tool_name == "TodoWrite":
        return "updating todos"

    if tool_name == "AskUserQuestion":
        return "asking a question"

    return tool_name.lower()


_PAST_TENSE = {
    "reading ": "read ",
    "editing ": "edited ",
    "running: ": "ran: ",
    "searching: ": "searched: ",
    "finding: ": "found: ",
    "fetching: ": "fetched: ",
    "spawning subtask": "spawned subtask",
    "updating todos": "updated todos",
    "asking a question": "asked a question",
    "running command": "ran command",
    "searching": "searched",
    "finding files": "found files",
    "fetching page": "fetched page",
}


def past_tense(activity: str) -> str:
    """Convert a present-tense activity to past tense for finished turns."""
    for prefix, replacement in _PAST_TENSE.items():
        if activity.startswith(prefix):
            return replacement + activity[len(prefix) :]
    return activity


def _summarize_block(message: Message, block: ContentBlock) -> str | None:
    content = block.content if isinstance(block.content, dict) else {}

    if block.type == "text":
        text = str(content.get("text", "")).strip()
        if not text:
            return None
        return f"> {text}" if message.type == "user" else text

    if block.type == "tool_use":
        return f"[{describe_tool_use(str(content.get('name', '')), content.get('input') or {})}]"

    if block.type == "thinking":
        return "(thinking)"

    if block.type == "tool_result":
        return None

    if block.type == "system_init":
        model = content.get("model")
        return f"session started ({model})" if model else "session started"

    if block.type == "result":
        cost = content.get("total_cost_usd") or 0
        duration = (content.get("duration_ms") or 0) / 1000
        status = "failed" if content.get("is_error") else "done"
        return f"{status} in {duration:.1f}s (${cost:.4f})"

    if block.type == "permission_request":
        request = content.get("permission_request") or {}
        tool = request.get("tool_name") or "a tool"
        description = request.get("description", "")
        line = f"permission requested for {tool}"
        return f"{line}: {description}" if description else line

    if block.type == "input_request":
        request = content.get("input_request") or {}
        return f"input requested: {request.get('message', '')}"

    return None


def summarize_message(message: Message) -> str:
    """Render a message as short lines of plain text (empty if nothing to show)."""
    lines = []
    for block in message.content_blocks:
        line = _summarize_block(message, block)
        if line:
            lines.append(_truncate(line, TEXT_PREVIEW_LENGTH) if block.type != "text" else line)
    return "\n".join(lines)


def format_cost(cost: float) -> str:
    return f"${cost:.2f}"


def format_context(tokens: int | None, limit: int | None) -> str:
    """Context usage as a percentage of the model's window."""
    if tokens is None or not limit:
        return "-"
    return f"{tokens * 100 // limit}%"
