"""State management for parley sessions.

All data is stored under ~/.parley/ (or $PARLEY_HOME):
- sessions/{id}/session.json: Session fields (everything but messages)
- sessions/{id}/messages.jsonl: Persisted messages, one JSON object per line
- folders.json: Folder records keyed by ID
- active_session: ID of the active session (empty if none)

Messages are append-only so a single message can be recorded without
rewriting the session. Whole-file writes go through a temp file and
os.replace under an exclusive lock.
"""

import fcntl
import os
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import orjson

from parley.core.config import get_parley_home
from parley.core.errors import FolderNotFoundError, SessionNotFoundError, StoreError
from parley.core.reducer import build_content_blocks
from parley.core.session import Folder, Message, Session, utcnow


def get_store_dir() -> Path:
    """Get the root directory for stored sessions and folders."""
    return get_parley_home()


def ensure_store_dir() -> Path:
    """Ensure the store directory exists.

    Creates {home}/sessions/ if it doesn't exist.

    Returns:
        Path to the store directory.
    """
    store_dir = get_store_dir()
    (store_dir / "sessions").mkdir(parents=True, exist_ok=True)
    return store_dir


def _get_session_dir(store_dir: Path, session_id: str) -> Path:
    """Get path to session directory."""
    return store_dir / "sessions" / session_id


def _get_lock_path(store_dir: Path) -> Path:
    return store_dir / "store.lock"


@contextmanager
def _locked() -> Iterator[Path]:
    """Hold the store lock for a read-modify-write."""
    store_dir = ensure_store_dir()
    with open(_get_lock_path(store_dir), "w") as lock_file:
        fcntl.flock(lock_file, fcntl.LOCK_EX)
        try:
            yield store_dir
        finally:
            fcntl.flock(lock_file, fcntl.LOCK_UN)


def _write_atomic(path: Path, content: bytes) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_bytes(content)
    os.replace(tmp_path, path)


def _read_json(path: Path) -> dict | None:
    try:
        content = path.read_bytes()
    except FileNotFoundError:
        return None
    try:
        data = orjson.loads(content) if content else None
    except orjson.JSONDecodeError as e:
        raise StoreError(f"Corrupt store file {path}: {e}") from e
    return data if isinstance(data, dict) else None


def _message_from_dict(data: dict) -> Message:
    raw = data.get("raw")
    return Message(
        id=data["id"],
        timestamp=datetime.fromisoformat(data["timestamp"]),
        type=data["type"],
        raw=raw,
        content_blocks=build_content_blocks(raw),
    )


def _read_messages(session_dir: Path) -> list[Message]:
    """Read persisted messages, skipping lines that cannot be decoded.

    A crash mid-append can leave a truncated final line; everything before
    it is still returned.
    """
    path = session_dir / "messages.jsonl"
    if not path.exists():
        return []
    messages = []
    for line in path.read_bytes().splitlines():
        if not line.strip():
            continue
        try:
            messages.append(_message_from_dict(orjson.loads(line)))
        except (orjson.JSONDecodeError, KeyError, TypeError, ValueError):
            continue
    return messages


def _encode_messages(messages: list[Message]) -> bytes:
    lines = [orjson.dumps(m.to_dict()) for m in messages if not m.is_streaming]
    return b"".join(line + b"\n" for line in lines)


def save_session(session: Session) -> None:
    """Create or replace a session, including its full message list.

    In-progress streamed messages are not written.
    """
    try:
        with _locked() as store_dir:
            session_dir = _get_session_dir(store_dir, session.id)
            session_dir.mkdir(parents=True, exist_ok=True)
            _write_atomic(session_dir / "session.json", orjson.dumps(session.to_dict()))
            _write_atomic(session_dir / "messages.jsonl", _encode_messages(session.messages))
    except OSError as e:
        raise StoreError(f"Failed to save session {session.id}: {e}") from e


def save_session_fields(session: Session) -> None:
    """Write a session's fields without touching its messages.

    The stored queued_message is kept: another parley process may have queued
    text since this copy was loaded. Change it with update_session.

    Raises:
        SessionNotFoundError: If the session was never saved (or was deleted).
    """
    try:
        with _locked() as store_dir:
            path = _get_session_dir(store_dir, session.id) / "session.json"
            stored = _read_json(path)
            if stored is None:
                raise SessionNotFoundError(session.id)
            data = session.to_dict()
            data["queued_message"] = stored.get("queued_message")
            _write_atomic(path, orjson.dumps(data))
    except OSError as e:
        raise StoreError(f"Failed to save session {session.id}: {e}") from e


def append_message(session_id: str, message: Message) -> None:
    """Append one message to a session's history.

    Raises:
        SessionNotFoundError: If session doesn't exist.
        ValueError: If the message is still streaming.
    """
    if message.is_streaming:
        raise ValueError("Cannot persist an in-progress message")
    line = orjson.dumps(message.to_dict()) + b"\n"
    try:
        with _locked() as store_dir:
            session_dir = _get_session_dir(store_dir, session_id)
            if not session_dir.exists():
                raise SessionNotFoundError(session_id)
            with open(session_dir / "messages.jsonl", "ab") as f:
                f.write(line)
    except OSError as e:
        raise StoreError(f"Failed to append message to {session_id}: {e}") from e


def update_session(session_id: str, **fields) -> None:
    """Update top-level JSON fields of a stored session.

    Values must already be JSON-serializable (e.g. title, queued_message).
    updated_at is refreshed.

    Raises:
        SessionNotFoundError: If session doesn't exist.
    """
    try:
        with _locked() as store_dir:
            path = _get_session_dir(store_dir, session_id) / "session.json"
            data = _read_json(path)
            if data is None:
                raise SessionNotFoundError(session_id)
            data.update(fields)
            data["updated_at"] = utcnow().isoformat()
            _write_atomic(path, orjson.dumps(data))
    except OSError as e:
        raise StoreError(f"Failed to update session {session_id}: {e}") from e


def load_session(session_id: str) -> Session | None:
    """Load a session by ID.

    Returns:
        Session object if found, None if the session doesn't exist.
    """
    session_dir = _get_session_dir(get_store_dir(), session_id)
    data = _read_json(session_dir / "session.json")
    if data is None:
        return None
    return Session.from_dict(data, messages=_read_messages(session_dir))


def load_all() -> list[Session]:
    """Load all stored sessions.

    Returns:
        Sessions sorted by updated_at (most recent first). Empty list if the
        store doesn't exist yet.
    """
    sessions_dir = get_store_dir() / "sessions"
    if not sessions_dir.exists():
        return []

    sessions = []
    for session_dir in sessions_dir.iterdir():
        if session_dir.is_dir():
            try:
                session = load_session(session_dir.name)
            except StoreError:
                continue  # Corrupt, skip it
            if session:
                sessions.append(session)

    return sorted(sessions, key=lambda s: s.updated_at, reverse=True)


def resolve_session_id(id_or_prefix: str) -> str | None:
    """Resolve a full session ID or a unique prefix of one.

    Returns:
        The full session ID, or None if nothing (or more than one) matches.
    """
    sessions_dir = get_store_dir() / "sessions"
    if not id_or_prefix or not sessions_dir.exists():
        return None
    if (sessions_dir / id_or_prefix / "session.json").exists():
        return id_or_prefix
    matches = [
        d.name for d in sessions_dir.iterdir()
        if d.is_dir() and d.name.startswith(id_or_prefix)
    ]
    return matches[0] if len(matches) == 1 else None


def delete_session(session_id: str) -> None:
    """Delete a session and its messages.

    Raises:
        SessionNotFoundError: If session doesn't exist.
    """
    try:
        with _locked() as store_dir:
            session_dir = _get_session_dir(store_dir, session_id)
            if not session_dir.exists():
                raise SessionNotFoundError(session_id)
            shutil.rmtree(session_dir)
            if _read_active(store_dir) == session_id:
                (store_dir / "active_session").write_text("")
    except OSError as e:
        raise StoreError(f"Failed to delete session {session_id}: {e}") from e


# --- folders --------------------------------------------------------------


def _folders_path(store_dir: Path) -> Path:
    return store_dir / "folders.json"


def _read_folders(store_dir: Path) -> dict:
    return _read_json(_folders_path(store_dir)) or {}


def load_folders() -> list[Folder]:
    """Load all folders, oldest first."""
    folders = [Folder.from_dict(f) for f in _read_folders(get_store_dir()).values()]
    return sorted(folders, key=lambda f: f.created_at)


def load_folder(folder_id: str) -> Folder | None:
    data = _read_folders(get_store_dir()).get(folder_id)
    return Folder.from_dict(data) if data else None


def save_folder(folder: Folder) -> None:
    """Create or replace a folder."""
    try:
        with _locked() as store_dir:
            folders = _read_folders(store_dir)
            folders[folder.id] = folder.to_dict()
            _write_atomic(_folders_path(store_dir), orjson.dumps(folders))
    except OSError as e:
        raise StoreError(f"Failed to save folder {folder.id}: {e}") from e


def update_folder(folder_id: str, **fields) -> Folder:
    """Update fields of a folder (name, default_cwd, is_expanded).

    Raises:
        FolderNotFoundError: If folder doesn't exist.
    """
    try:
        with _locked() as store_dir:
            folders = _read_folders(store_dir)
            if folder_id not in folders:
                raise FolderNotFoundError(folder_id)
            folders[folder_id].update(fields)
            _write_atomic(_folders_path(store_dir), orjson.dumps(folders))
            return Folder.from_dict(folders[folder_id])
    except OSError as e:
        raise StoreError(f"Failed to update folder {folder_id}: {e}") from e


def delete_folder(folder_id: str) -> None:
    """Delete a folder and unassign every session that was in it.

    Raises:
        FolderNotFoundError: If folder doesn't exist.
    """
    try:
        with _locked() as store_dir:
            folders = _read_folders(store_dir)
            if folder_id not in folders:
                raise FolderNotFoundError(folder_id)
            del folders[folder_id]
            _write_atomic(_folders_path(store_dir), orjson.dumps(folders))

            for session_dir in (store_dir / "sessions").iterdir():
                path = session_dir / "session.json"
                data = _read_json(path)
                if data and data.get("folder_id") == folder_id:
                    data["folder_id"] = None
                    _write_atomic(path, orjson.dumps(data))
    except OSError as e:
        raise StoreError(f"Failed to delete folder {folder_id}: {e}") from e


# --- active session -------------------------------------------------------


def _read_active(store_dir: Path) -> str | None:
    path = store_dir / "active_session"
    if not path.exists():
        return None
    return path.read_text().strip() or None


def get_active_session_id() -> str | None:
    return _read_active(get_store_dir())


def set_active_session_id(session_id: str | None) -> None:
    try:
        with _locked() as store_dir:
            (store_dir / "active_session").write_text(session_id or "")
    except OSError as e:
        raise StoreError(f"Failed to set active session: {e}") from e
