"""Tests for line reassembly."""

from parley.core.lines import LineAssembler


def test_feed_returns_complete_lines():
    """Test that every newline-terminated line is returned in order."""
    assembler = LineAssembler()
    assert assembler.feed("s1", "one\ntwo\n") == ["one", "two"]
    assert assembler.pending("s1") == ""


def test_feed_buffers_partial_line():
    """Test that an unterminated tail is carried to the next feed."""
    assembler = LineAssembler()
    assert assembler.feed("s1", '{"type": "res') == []
    assert assembler.pending("s1") == '{"type": "res'
    assert assembler.feed("s1", 'ult"}\n{"a') == ['{"type": "result"}']
    assert assembler.pending("s1") == '{"a'


def test_feed_empty_chunk():
    """Test that an empty chunk produces nothing and keeps the buffer."""
    assembler = LineAssembler()
    assembler.feed("s1", "abc")
    assert assembler.feed("s1", "") == []
    assert assembler.pending("s1") == "abc"


def test_feed_keeps_empty_lines():
    """Test that consecutive newlines produce empty lines."""
    assembler = LineAssembler()
    assert assembler.feed("s1", "a\n\nb\n") == ["a", "", "b"]


def test_chunk_boundaries_do_not_matter():
    """Test that any split of the same stream yields the same lines."""
    stream = 'first line\n{"type": "x"}\nthird\npartial'
    whole = LineAssembler()
    expected = whole.feed("s1", stream)

    for size in (1, 2, 3, 7, 13):
        assembler = LineAssembler()
        lines = []
        for start in range(0, len(stream), size):
            lines.extend(assembler.feed("s1", stream[start : start + size]))
        assert lines == expected
        assert assembler.pending("s1") == "partial"


def test_line_count_matches_newlines():
    """Test that k newlines yield exactly k lines."""
    chunks = ["a\nb", "c\n", "\n\nd", "e\nf"]
    assembler = LineAssembler()
    lines = []
    for chunk in chunks:
        lines.extend(assembler.feed("s1", chunk))
    joined = "".join(chunks)
    assert len(lines) == joined.count("\n")
    assert "\n".join(lines) + "\n" + assembler.pending("s1") == joined


def test_sessions_have_separate_buffers():
    """Test that buffers are isolated per session."""
    assembler = LineAssembler()
    assembler.feed("s1", "from one")
    assert assembler.feed("s2", " and two\n") == [" and two"]
    assert assembler.feed("s1", " done\n") == ["from one done"]


def test_discard():
    """Test that discard drops a session's buffered tail."""
    assembler = LineAssembler()
    assembler.feed("s1", "partial")
    assembler.discard("s1")
    assert assembler.pending("s1") == ""
    assert assembler.feed("s1", "next\n") == ["next"]
    # Discarding an unknown session is harmless
    assembler.discard("missing")
