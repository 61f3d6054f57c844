"""Tests for activity summaries."""

from datetime import datetime, timezone

import pytest

from parley.core.activity import (
    describe_tool_use,
    format_context,
    format_cost,
    past_tense,
    summarize_message,
)
from parley.core.protocol import local_user_input
from parley.core.reducer import build_content_blocks
from parley.core.session import Message
from tests.helpers import (
    assistant,
    input_request,
    permission_request,
    result,
    system_init,
    tool_result,
    tool_use,
)


def make_message(raw, type="assistant"):
    return Message(
        id="m",
        timestamp=datetime.now(timezone.utc),
        type=type,
        raw=raw,
        content_blocks=build_content_blocks(raw),
    )


@pytest.mark.parametrize(
    "name,tool_input,expected",
    [
        ("Read", {"file_path": "/src/parley/cli.py"}, "reading cli.py"),
        ("Read", {}, "reading file"),
        ("Edit", {"file_path": "/a/b.py"}, "editing b.py"),
        ("Write", {"file_path": "new.txt"}, "editing new.txt"),
        ("Bash", {"command": "pytest"}, "running: pytest"),
        ("Bash", {"command": "x" * 60}, "running: " + "x" * 37 + "..."),
        ("Grep", {"pattern": "TODO"}, "searching: TODO"),
        ("Glob", {"pattern": "**/*.py"}, "finding: **/*.py"),
        ("WebFetch", {"url": "https://example.com"}, "fetching: https://example.com"),
        ("Task", {"prompt": "x"}, "spawning subtask"),
        ("TodoWrite", {"todos": []}, "updating todos"),
        ("AskUserQuestion", {}, "asking a question"),
        ("NotebookEdit", {}, "notebookedit"),
    ],
)
def test_describe_tool_use(name, tool_input, expected):
    assert describe_tool_use(name, tool_input) == expected


def test_past_tense():
    assert past_tense("reading cli.py") == "read cli.py"
    assert past_tense("running: pytest") == "ran: pytest"
    assert past_tense("updating todos") == "updated todos"
    assert past_tense("notebookedit") == "notebookedit"


def test_summarize_assistant_message():
    raw = assistant(
        content=[
            {"type": "thinking", "thinking": "hmm"},
            {"type": "text", "text": "Let me look."},
            tool_use("Read", {"file_path": "/src/app.py"}),
        ]
    )
    assert summarize_message(make_message(raw)) == "(thinking)\nLet me look.\n[reading app.py]"


def test_summarize_user_input():
    message = make_message(local_user_input("fix it"), type="user")
    assert summarize_message(message) == "> fix it"


def test_summarize_tool_result_is_empty():
    assert summarize_message(make_message(tool_result("ok"), type="user")) == ""


def test_summarize_system_and_result():
    assert summarize_message(make_message(system_init(model="opus"), type="system")) == (
        "session started (opus)"
    )
    assert summarize_message(make_message(result(cost=0.25), type="result")) == (
        "done in 1.5s ($0.2500)"
    )
    assert summarize_message(make_message(result(is_error=True), type="result")).startswith(
        "failed in"
    )


def test_summarize_requests():
    permission = make_message(permission_request("Bash", "Run make"), type="system")
    assert summarize_message(permission) == "permission requested for Bash: Run make"

    question = make_message(input_request("Name?"), type="system")
    assert summarize_message(question) == "input requested: Name?"


def test_streaming_message_summarizes_to_nothing():
    streaming = Message(id="m", timestamp=datetime.now(timezone.utc), type="assistant", raw=None)
    assert summarize_message(streaming) == ""


def test_format_cost():
    assert format_cost(0) == "$0.00"
    assert format_cost(1.234) == "$1.23"


def test_format_context():
    assert format_context(50_000, 200_000) == "25%"
    assert format_context(0, 200_000) == "0%"
    assert format_context(None, 200_000) == "-"
    assert format_context(1000, None) == "-"
