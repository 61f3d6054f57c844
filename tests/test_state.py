"""Tests for state management."""

import os
from concurrent.futures import ProcessPoolExecutor
from datetime import datetime, timedelta, timezone

import orjson
import pytest

from parley.core.errors import FolderNotFoundError, SessionNotFoundError
from parley.core.session import Folder, Message, Session, TodoItem
from parley.core.state import (
    append_message,
    delete_folder,
    delete_session,
    ensure_store_dir,
    get_active_session_id,
    load_all,
    load_folder,
    load_folders,
    load_session,
    resolve_session_id,
    save_folder,
    save_session,
    save_session_fields,
    set_active_session_id,
    update_folder,
    update_session,
)


def _make_message(message_id: str, text: str, type: str = "assistant") -> Message:
    raw = {"type": type, "message": {"id": message_id, "content": [{"type": "text", "text": text}]}}
    return Message(id=message_id, timestamp=datetime.now(timezone.utc), type=type, raw=raw)


def _append_from_process(home: str, session_id: str, index: int) -> None:
    """Append one message from a separate process.

    Module-level so it can be pickled for ProcessPoolExecutor.
    """
    os.environ["PARLEY_HOME"] = home
    append_message(session_id, _make_message(f"m{index}", f"message {index}"))


def test_ensure_store_dir(mock_parley_home):
    """Test ensure_store_dir creates directory structure."""
    store_dir = ensure_store_dir()

    assert store_dir == mock_parley_home
    assert (store_dir / "sessions").is_dir()


def test_save_and_load_session(mock_parley_home):
    session = Session(
        id="s1",
        title="Fix the build",
        cwd="/src",
        todos=[TodoItem("Run tests", "pending")],
        agent_session_id="agent-1",
    )
    save_session(session)

    loaded = load_session("s1")
    assert loaded == session


def test_load_missing_session(mock_parley_home):
    assert load_session("nope") is None


def test_save_session_skips_streaming_messages(mock_parley_home):
    streaming = Message(id="live", timestamp=datetime.now(timezone.utc), type="assistant", raw=None)
    session = Session(
        id="s1", title="", cwd="/", messages=[_make_message("m1", "done"), streaming]
    )
    save_session(session)

    loaded = load_session("s1")
    assert [m.id for m in loaded.messages] == ["m1"]
    # Content blocks are rebuilt from the raw payload
    assert loaded.messages[0].text == "done"


def test_append_message(mock_parley_home):
    save_session(Session(id="s1", title="", cwd="/"))
    append_message("s1", _make_message("m1", "one"))
    append_message("s1", _make_message("m2", "two"))

    loaded = load_session("s1")
    assert [m.text for m in loaded.messages] == ["one", "two"]


def test_append_message_missing_session(mock_parley_home):
    ensure_store_dir()
    with pytest.raises(SessionNotFoundError):
        append_message("nope", _make_message("m1", "x"))


def test_append_streaming_message_rejected(mock_parley_home):
    save_session(Session(id="s1", title="", cwd="/"))
    streaming = Message(id="live", timestamp=datetime.now(timezone.utc), type="assistant", raw=None)
    with pytest.raises(ValueError):
        append_message("s1", streaming)


def test_truncated_message_line_is_skipped(mock_parley_home):
    """Test that a partial trailing line from a crash doesn't lose history."""
    save_session(Session(id="s1", title="", cwd="/"))
    append_message("s1", _make_message("m1", "kept"))
    with open(mock_parley_home / "sessions" / "s1" / "messages.jsonl", "ab") as f:
        f.write(b'{"id": "m2", "timest')

    loaded = load_session("s1")
    assert [m.id for m in loaded.messages] == ["m1"]


def test_save_session_fields_keeps_messages(mock_parley_home):
    session = Session(id="s1", title="Old", cwd="/", messages=[_make_message("m1", "hi")])
    save_session(session)

    session.title = "New"
    session.messages = []
    save_session_fields(session)

    loaded = load_session("s1")
    assert loaded.title == "New"
    assert [m.id for m in loaded.messages] == ["m1"]


def test_save_session_fields_missing_session(mock_parley_home):
    ensure_store_dir()
    with pytest.raises(SessionNotFoundError):
        save_session_fields(Session(id="gone", title="", cwd="/"))


def test_save_session_fields_keeps_stored_queued_message(mock_parley_home):
    session = Session(id="s1", title="", cwd="/", state="running", process_id="p1")
    save_session(session)
    update_session("s1", queued_message="queued elsewhere")

    session.state = "idle"
    save_session_fields(session)

    loaded = load_session("s1")
    assert loaded.state == "idle"
    assert loaded.queued_message == "queued elsewhere"


def test_update_session(mock_parley_home):
    session = Session(id="s1", title="Old", cwd="/")
    save_session(session)

    update_session("s1", title="Renamed", folder_id="f1")

    loaded = load_session("s1")
    assert loaded.title == "Renamed"
    assert loaded.folder_id == "f1"
    assert loaded.updated_at >= session.updated_at


def test_update_missing_session(mock_parley_home):
    ensure_store_dir()
    with pytest.raises(SessionNotFoundError):
        update_session("nope", title="x")


def test_load_all_sorted_by_updated_at(mock_parley_home):
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for index, session_id in enumerate(["old", "newest", "middle"]):
        offset = {"old": 0, "newest": 2, "middle": 1}[session_id]
        save_session(
            Session(
                id=session_id,
                title=str(index),
                cwd="/",
                created_at=base,
                updated_at=base + timedelta(minutes=offset),
            )
        )

    assert [s.id for s in load_all()] == ["newest", "middle", "old"]


def test_load_all_empty(mock_parley_home):
    assert load_all() == []


def test_load_all_skips_corrupt_sessions(mock_parley_home):
    save_session(Session(id="good", title="", cwd="/"))
    corrupt = mock_parley_home / "sessions" / "bad"
    corrupt.mkdir()
    (corrupt / "session.json").write_text("{not json")

    assert [s.id for s in load_all()] == ["good"]


def test_delete_session(mock_parley_home):
    save_session(Session(id="s1", title="", cwd="/"))
    set_active_session_id("s1")

    delete_session("s1")

    assert load_session("s1") is None
    assert get_active_session_id() is None


def test_delete_session_keeps_other_active(mock_parley_home):
    save_session(Session(id="s1", title="", cwd="/"))
    save_session(Session(id="s2", title="", cwd="/"))
    set_active_session_id("s2")

    delete_session("s1")
    assert get_active_session_id() == "s2"


def test_delete_missing_session(mock_parley_home):
    ensure_store_dir()
    with pytest.raises(SessionNotFoundError):
        delete_session("nope")


def test_active_session_round_trip(mock_parley_home):
    assert get_active_session_id() is None
    set_active_session_id("s1")
    assert get_active_session_id() == "s1"
    set_active_session_id(None)
    assert get_active_session_id() is None


def test_resolve_session_id(mock_parley_home):
    save_session(Session(id="abc123", title="", cwd="/"))
    save_session(Session(id="abd456", title="", cwd="/"))

    assert resolve_session_id("abc123") == "abc123"
    assert resolve_session_id("abc") == "abc123"
    # Ambiguous prefix
    assert resolve_session_id("ab") is None
    assert resolve_session_id("zzz") is None
    assert resolve_session_id("") is None


def test_folders(mock_parley_home):
    first = Folder(id="f1", name="Work", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
    second = Folder(id="f2", name="Play", default_cwd="/play")
    save_folder(second)
    save_folder(first)

    assert [f.id for f in load_folders()] == ["f1", "f2"]
    assert load_folder("f2").default_cwd == "/play"
    assert load_folder("missing") is None


def test_update_folder(mock_parley_home):
    save_folder(Folder(id="f1", name="Work"))

    updated = update_folder("f1", name="Office", is_expanded=False)

    assert updated.name == "Office"
    assert not updated.is_expanded
    assert load_folder("f1") == updated


def test_update_missing_folder(mock_parley_home):
    with pytest.raises(FolderNotFoundError):
        update_folder("nope", name="x")


def test_delete_folder_unassigns_sessions(mock_parley_home):
    save_folder(Folder(id="f1", name="Work"))
    save_session(Session(id="s1", title="", cwd="/", folder_id="f1"))
    save_session(Session(id="s2", title="", cwd="/", folder_id="f2"))

    delete_folder("f1")

    assert load_folders() == []
    assert load_session("s1").folder_id is None
    assert load_session("s2").folder_id == "f2"


def test_delete_missing_folder(mock_parley_home):
    with pytest.raises(FolderNotFoundError):
        delete_folder("nope")


def test_session_json_is_plain_json(mock_parley_home):
    save_session(Session(id="s1", title="Readable", cwd="/"))
    data = orjson.loads((mock_parley_home / "sessions" / "s1" / "session.json").read_bytes())
    assert data["title"] == "Readable"
    assert "messages" not in data


def test_concurrent_appends(mock_parley_home):
    """Test that appends from many processes all land intact.

    Uses ProcessPoolExecutor to simulate concurrent CLI invocations.
    """
    save_session(Session(id="s1", title="", cwd="/"))
    total = 20

    with ProcessPoolExecutor(max_workers=5) as executor:
        futures = [
            executor.submit(_append_from_process, str(mock_parley_home), "s1", i)
            for i in range(total)
        ]
        for future in futures:
            future.result()

    loaded = load_session("s1")
    assert len(loaded.messages) == total
    assert {m.id for m in loaded.messages} == {f"m{i}" for i in range(total)}
