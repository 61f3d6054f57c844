"""Line reassembly for streamed agent output.

Process output arrives in arbitrary chunks. LineAssembler keeps one buffer per
session and hands back only complete newline-terminated lines, carrying the
unterminated tail over to the next feed.
"""


class LineAssembler:
    """Per-session newline splitter."""

    def __init__(self) -> None:
        self._buffers: dict[str, str] = {}

    def feed(self, session_id: str, chunk: str) -> list[str]:
        """Append a chunk and return every line it completed.

        Args:
            session_id: Session the chunk belongs to.
            chunk: Raw output text, possibly empty, possibly many lines.

        Returns:
            Completed lines without their trailing newline, in order.
        """
        segments = (self._buffers.get(session_id, "") + chunk).split("\n")
        # Last segment is unterminated (possibly empty) and stays buffered
        self._buffers[session_id] = segments.pop()
        return segments

    def pending(self, session_id: str) -> str:
        """The unterminated remainder currently buffered for a session."""
        return self._buffers.get(session_id, "")

    def discard(self, session_id: str) -> None:
        """Drop a session's buffer (on process exit or session teardown)."""
        self._buffers.pop(session_id, None)
