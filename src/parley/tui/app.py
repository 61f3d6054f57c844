"""Main Textual app for parley TUI."""

import asyncio
import os

from textual.app import App, ComposeResult
from textual.widgets import Footer, Header, Static

from parley.core.errors import ParleyError
from parley.core.notifications import MESSAGES, NotificationTracker
from parley.core.registry import SessionRegistry
from parley.core.state import (
    ensure_store_dir,
    get_store_dir,
    load_all,
    load_folders,
    update_folder,
)
from parley.tui.widgets.session_table import FOLDER_KEY_PREFIX, SessionTable


class ParleyApp(App):
    """Parley TUI application.

    Displays all sessions and auto-refreshes when the store changes.
    """

    TITLE = "parley"
    BINDINGS = [
        ("n", "new_session", "New"),
        ("x", "delete_session", "Delete"),
        ("j", "cursor_down", "Down"),
        ("k", "cursor_up", "Up"),
        ("space", "toggle_folder", "Fold"),
        ("i", "toggle_hide_idle", "Hide Idle"),
        ("q", "quit", "Quit"),
    ]

    # Filter state
    _hide_idle: bool = False
    CSS = """
    SessionTable {
        height: 1fr;
    }

    #empty-message {
        width: 100%;
        height: 100%;
        content-align: center middle;
        color: $text-muted;
    }
    """

    def __init__(self) -> None:
        super().__init__()
        self._watcher_task: asyncio.Task | None = None
        self._tracker = NotificationTracker()

    def compose(self) -> ComposeResult:
        """Compose the app layout."""
        yield Header()
        yield SessionTable()
        yield Static("No sessions", id="empty-message")
        yield Footer()

    def on_mount(self) -> None:
        """Called when the app is mounted."""
        self.refresh_sessions()
        self._watcher_task = asyncio.create_task(self._watch_sessions())

    async def on_unmount(self) -> None:
        """Called when the app is unmounted."""
        if self._watcher_task:
            self._watcher_task.cancel()
            try:
                await self._watcher_task
            except asyncio.CancelledError:
                pass

    def refresh_sessions(self) -> None:
        """Reload and display all sessions."""
        sessions = load_all()
        folders = load_folders()
        table = self.query_one(SessionTable)
        empty_msg = self.query_one("#empty-message", Static)

        for session in sessions:
            event = self._tracker.check(session)
            if event:
                self.notify(f"{session.title}: {MESSAGES[event]}")

        if sessions or folders:
            table.update_sessions(sessions, folders, hide_idle=self._hide_idle)
            table.display = True
            empty_msg.display = False
            # Update subtitle with busy count and filter status
            busy = sum(1 for s in sessions if s.state != "idle")
            filter_text = " [filtered]" if self._hide_idle else ""
            self.sub_title = f"{busy} busy{filter_text}"
        else:
            table.display = False
            empty_msg.display = True
            self.sub_title = "0 sessions"

    def action_new_session(self) -> None:
        """Create an empty session in the current directory."""
        try:
            session = SessionRegistry().create(cwd=os.getcwd())
        except ParleyError as e:
            self.notify(f"Failed to create session: {e}", severity="error")
            return
        self.notify(f"Created {session.id[:8]}")
        self.refresh_sessions()

    def action_cursor_down(self) -> None:
        self.query_one(SessionTable).action_cursor_down()

    def action_cursor_up(self) -> None:
        self.query_one(SessionTable).action_cursor_up()

    def action_delete_session(self) -> None:
        """Delete the currently selected session."""
        key = self.query_one(SessionTable).selected_key()
        if key is None or key.startswith(FOLDER_KEY_PREFIX):
            self.notify("No session selected", severity="warning")
            return

        try:
            SessionRegistry().delete(key)
        except ParleyError as e:
            self.notify(f"Failed to delete: {e}", severity="error")
        self._tracker.clear(key)
        self.refresh_sessions()

    def action_toggle_folder(self) -> None:
        """Expand or collapse the selected folder."""
        key = self.query_one(SessionTable).selected_key()
        if key is None or not key.startswith(FOLDER_KEY_PREFIX):
            return
        folder_id = key[len(FOLDER_KEY_PREFIX) :]
        folders = {f.id: f for f in load_folders()}
        if folder_id not in folders:
            return
        update_folder(folder_id, is_expanded=not folders[folder_id].is_expanded)
        self.refresh_sessions()

    def action_toggle_hide_idle(self) -> None:
        """Toggle hiding of idle sessions."""
        self._hide_idle = not self._hide_idle
        self.refresh_sessions()

    async def _watch_sessions(self) -> None:
        """Watch the store directory for changes and refresh."""
        from watchfiles import awatch

        store_dir = get_store_dir()

        # Ensure directory exists for watching
        ensure_store_dir()

        try:
            async for changes in awatch(store_dir):
                if not store_dir.exists():
                    ensure_store_dir()
                self.refresh_sessions()
        except asyncio.CancelledError:
            pass
        except FileNotFoundError:
            # Directory was deleted, recreate and restart watching
            ensure_store_dir()
            self.refresh_sessions()
            self._watcher_task = asyncio.create_task(self._watch_sessions())
