"""Heuristic detection of permission prompts hidden in tool results.

The agent does not always emit a permission_request line when a tool call is
blocked on approval; sometimes the only signal is a tool_result whose text
says so. This module pattern-matches that text. It is a stop-gap until the
protocol reports every such case as a structured event, and it runs alongside
explicit permission_request handling rather than replacing it.
"""

# Exact phrases the agent uses when a tool call is waiting on approval
PENDING_PERMISSION_PHRASES = (
    "haven't granted it yet",
    "requested permission",
)


def detects_pending_permission(text: str) -> bool:
    """Return True if tool-result text says a permission is still ungranted."""
    if not text:
        return False
    return any(phrase in text for phrase in PENDING_PERMISSION_PHRASES)
