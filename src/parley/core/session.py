"""Session dataclasses for parley."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

VALID_STATES = {"idle", "running", "waiting_input", "waiting_permission"}

MESSAGE_TYPES = {"system", "assistant", "user", "result"}

BLOCK_TYPES = {
    "text",
    "tool_use",
    "tool_result",
    "thinking",
    "system_init",
    "result",
    "permission_request",
    "input_request",
}

TODO_STATUSES = {"pending", "in_progress", "completed"}


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass
class ContentBlock:
    """One renderable unit within a message.

    Attributes:
        id: Block identifier (the tool_use id for tool calls, otherwise generated)
        type: One of BLOCK_TYPES
        content: Type-specific payload (usually the raw block dict)
        is_expanded: User-togglable expansion flag
    """

    id: str
    type: str
    content: Any
    is_expanded: bool = False

    def __post_init__(self) -> None:
        if self.type not in BLOCK_TYPES:
            raise ValueError(
                f"Invalid block type: {self.type}. Must be one of {BLOCK_TYPES}"
            )


@dataclass
class Message:
    """One conversational turn.

    Attributes:
        id: Stable identifier (from the protocol payload, or generated locally)
        timestamp: When the message was recorded
        type: One of "system", "assistant", "user", "result"
        raw: The original payload, or None while a streamed turn is in progress
        content_blocks: Blocks derived from raw
    """

    id: str
    timestamp: datetime
    type: str
    raw: dict | None
    content_blocks: list[ContentBlock] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.type not in MESSAGE_TYPES:
            raise ValueError(
                f"Invalid message type: {self.type}. Must be one of {MESSAGE_TYPES}"
            )

    @property
    def is_streaming(self) -> bool:
        """True while this is an un-finalized streamed assistant turn."""
        return self.raw is None

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        parts = []
        for block in self.content_blocks:
            if block.type == "text" and isinstance(block.content, dict):
                parts.append(block.content.get("text", ""))
        return "".join(parts)

    def to_dict(self) -> dict:
        """Serialize for the store. Content blocks are rebuilt from raw on load."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type,
            "raw": self.raw,
        }


@dataclass
class TodoItem:
    content: str
    status: str
    active_form: str | None = None

    def __post_init__(self) -> None:
        if self.status not in TODO_STATUSES:
            raise ValueError(
                f"Invalid todo status: {self.status}. Must be one of {TODO_STATUSES}"
            )

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "status": self.status,
            "active_form": self.active_form,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TodoItem":
        return cls(
            content=data.get("content", ""),
            status=data.get("status", "pending"),
            active_form=data.get("active_form"),
        )


@dataclass
class QuestionOption:
    label: str
    description: str = ""


@dataclass
class Question:
    question: str
    header: str
    options: list[QuestionOption]
    multi_select: bool = False


@dataclass
class PendingQuestion:
    """An outstanding multi-choice question asked by the agent.

    Attributes:
        tool_use_id: ID of the tool_use block that asked the question
        questions: The questions, in the order they were asked
    """

    tool_use_id: str
    questions: list[Question]

    def to_dict(self) -> dict:
        return {
            "tool_use_id": self.tool_use_id,
            "questions": [
                {
                    "question": q.question,
                    "header": q.header,
                    "options": [
                        {"label": o.label, "description": o.description}
                        for o in q.options
                    ],
                    "multi_select": q.multi_select,
                }
                for q in self.questions
            ],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PendingQuestion":
        return cls(
            tool_use_id=data.get("tool_use_id", ""),
            questions=[
                Question(
                    question=q.get("question", ""),
                    header=q.get("header", ""),
                    options=[
                        QuestionOption(
                            label=o.get("label", ""),
                            description=o.get("description", ""),
                        )
                        for o in q.get("options", [])
                    ],
                    multi_select=bool(q.get("multi_select", False)),
                )
                for q in data.get("questions", [])
            ],
        )


@dataclass
class SessionMetadata:
    """Running totals and context-window usage for a session."""

    model: str | None = None
    total_cost_usd: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    context_tokens: int | None = None
    context_limit: int | None = None
    compaction_count: int = 0
    last_progress: str | None = None

    def to_dict(self) -> dict:
        return {
            "model": self.model,
            "total_cost_usd": self.total_cost_usd,
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "context_tokens": self.context_tokens,
            "context_limit": self.context_limit,
            "compaction_count": self.compaction_count,
            "last_progress": self.last_progress,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionMetadata":
        return cls(
            model=data.get("model"),
            total_cost_usd=float(data.get("total_cost_usd") or 0.0),
            total_input_tokens=int(data.get("total_input_tokens") or 0),
            total_output_tokens=int(data.get("total_output_tokens") or 0),
            context_tokens=data.get("context_tokens"),
            context_limit=data.get("context_limit"),
            compaction_count=int(data.get("compaction_count") or 0),
            last_progress=data.get("last_progress"),
        )


@dataclass
class Session:
    """Represents one logical conversation.

    Attributes:
        id: Opaque session ID
        title: Display title (auto-updated from the latest user message)
        cwd: Working directory the agent runs in
        state: One of "idle", "running", "waiting_input", "waiting_permission"
        created_at: Timestamp when the session was created
        updated_at: Timestamp of the last change
        messages: Conversation history, in order
        todos: Latest task-list snapshot
        metadata: Cost, token and context totals
        folder_id: Optional folder assignment
        process_id: ID of the attached agent process, if one is running
        owner_pid: OS pid of the parley process that started process_id
        agent_pid: OS pid of the agent process group, once it has booted
        agent_session_id: The agent CLI's own conversation ID, set by the first turn
        pending_question: Outstanding question asked by the agent
        queued_message: Text to send automatically once the session is idle
        in_progress_message_id: ID of the streamed assistant message being built
    """

    id: str
    title: str
    cwd: str
    state: str = "idle"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    messages: list[Message] = field(default_factory=list)
    todos: list[TodoItem] = field(default_factory=list)
    metadata: SessionMetadata = field(default_factory=SessionMetadata)
    folder_id: str | None = None
    process_id: str | None = None
    owner_pid: int | None = None
    agent_pid: int | None = None
    agent_session_id: str | None = None
    pending_question: PendingQuestion | None = None
    queued_message: str | None = None
    in_progress_message_id: str | None = None

    def __post_init__(self) -> None:
        """Validate session state."""
        if self.state not in VALID_STATES:
            raise ValueError(
                f"Invalid state: {self.state}. Must be one of {VALID_STATES}"
            )

    @property
    def is_busy(self) -> bool:
        return self.process_id is not None or self.state == "running"

    def find_message(self, message_id: str) -> int | None:
        """Return the index of the message with this ID, or None."""
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                return index
        return None

    def to_dict(self) -> dict:
        """Serialize everything except messages, which are stored separately."""
        return {
            "id": self.id,
            "title": self.title,
            "cwd": self.cwd,
            "state": self.state,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "todos": [t.to_dict() for t in self.todos],
            "metadata": self.metadata.to_dict(),
            "folder_id": self.folder_id,
            "process_id": self.process_id,
            "owner_pid": self.owner_pid,
            "agent_pid": self.agent_pid,
            "agent_session_id": self.agent_session_id,
            "pending_question": (
                self.pending_question.to_dict() if self.pending_question else None
            ),
            "queued_message": self.queued_message,
        }

    @classmethod
    def from_dict(cls, data: dict, messages: list[Message] | None = None) -> "Session":
        pending = data.get("pending_question")
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            cwd=data.get("cwd", ""),
            state=data.get("state", "idle"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(
                data.get("updated_at") or data["created_at"]
            ),
            messages=messages or [],
            todos=[TodoItem.from_dict(t) for t in data.get("todos", [])],
            metadata=SessionMetadata.from_dict(data.get("metadata") or {}),
            folder_id=data.get("folder_id"),
            process_id=data.get("process_id"),
            owner_pid=data.get("owner_pid"),
            agent_pid=data.get("agent_pid"),
            agent_session_id=data.get("agent_session_id"),
            pending_question=PendingQuestion.from_dict(pending) if pending else None,
            queued_message=data.get("queued_message"),
        )


@dataclass
class Folder:
    """A named group of sessions with an optional default working directory."""

    id: str
    name: str
    default_cwd: str | None = None
    is_expanded: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "default_cwd": self.default_cwd,
            "is_expanded": self.is_expanded,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Folder":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            default_cwd=data.get("default_cwd"),
            is_expanded=bool(data.get("is_expanded", True)),
            created_at=datetime.fromisoformat(data["created_at"]),
        )
