"""Session list widget for parley TUI."""

from textual.widgets import DataTable

from parley.core.activity import describe_tool_use, format_context, format_cost, past_tense
from parley.core.session import Folder, Session

FOLDER_KEY_PREFIX = "folder:"


def last_activity(session: Session) -> str:
    """Describe the most recent tool call, in past tense once the session is idle."""
    for message in reversed(session.messages):
        for block in reversed(message.content_blocks):
            if block.type != "tool_use" or not isinstance(block.content, dict):
                continue
            activity = describe_tool_use(
                str(block.content.get("name", "")), block.content.get("input") or {}
            )
            if session.state == "idle":
                activity = past_tense(activity)
            if len(activity) > 30:
                return activity[:27] + "..."
            return activity
    return "-"


def _build_rows(
    sessions: list[Session],
    folders: list[Folder],
    hide_idle: bool = False,
) -> list[tuple[Folder | Session, int]]:
    """Arrange sessions under their folders.

    Args:
        sessions: Sessions in display order.
        folders: All folders; collapsed ones hide their sessions.
        hide_idle: Whether to hide idle sessions.

    Returns:
        List of (folder or session, depth) tuples in display order. Folders
        come first, then sessions outside any folder.
    """
    if hide_idle:
        sessions = [s for s in sessions if s.state != "idle"]

    folder_ids = {f.id for f in folders}
    by_folder: dict[str, list[Session]] = {f.id: [] for f in folders}
    loose: list[Session] = []
    for session in sessions:
        if session.folder_id in folder_ids:
            by_folder[session.folder_id].append(session)
        else:
            loose.append(session)

    rows: list[tuple[Folder | Session, int]] = []
    for folder in folders:
        rows.append((folder, 0))
        if folder.is_expanded:
            rows.extend((s, 1) for s in by_folder[folder.id])
    rows.extend((s, 0) for s in loose)
    return rows


class SessionTable(DataTable):
    """DataTable widget displaying parley sessions.

    Columns: ID, Title, State, Cost, Context, Activity
    Sessions in a folder are indented under the folder's row.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._sessions: list[Session] = []
        self._folders: list[Folder] = []
        self._hide_idle: bool = False
        self._row_keys: list[str] = []

    def on_mount(self) -> None:
        """Set up the table columns on mount."""
        self.add_columns("ID", "Title", "State", "Cost", "Context", "Activity")
        self.cursor_type = "row"

    def selected_key(self) -> str | None:
        """Row key under the cursor: a session ID or "folder:<id>"."""
        if self.cursor_row is None or not 0 <= self.cursor_row < len(self._row_keys):
            return None
        return self._row_keys[self.cursor_row]

    def update_sessions(
        self,
        sessions: list[Session],
        folders: list[Folder] | None = None,
        hide_idle: bool = False,
    ) -> None:
        """Update the table with the given sessions and folders."""
        self._sessions = sessions
        self._folders = folders or []
        self._hide_idle = hide_idle
        self._render_sessions()

    def _render_sessions(self) -> None:
        """Render sessions to the table, keeping the cursor on the same row."""
        selected = self.selected_key()
        self.clear()
        self._row_keys = []

        for item, depth in _build_rows(self._sessions, self._folders, self._hide_idle):
            if isinstance(item, Folder):
                indicator = "▼ " if item.is_expanded else "▶ "
                key = FOLDER_KEY_PREFIX + item.id
                self.add_row(f"{indicator}{item.name}", "", "", "", "", "", key=key)
                self._row_keys.append(key)
                continue

            title = item.title
            if len(title) > 40:
                title = title[:37] + "..."
            metadata = item.metadata
            self.add_row(
                f"{'  ' * depth}{item.id[:8]}",
                title,
                item.state,
                format_cost(metadata.total_cost_usd),
                format_context(metadata.context_tokens, metadata.context_limit),
                last_activity(item),
                key=item.id,
            )
            self._row_keys.append(item.id)

        if selected in self._row_keys:
            self.move_cursor(row=self._row_keys.index(selected))
