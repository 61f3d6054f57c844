"""State-transition notifications.

Observers feed every session update through NotificationTracker.check, which
remembers each session's previous state and reports the transitions a user
would want to be told about.
"""

TASK_COMPLETE = "task_complete"
PERMISSION_REQUIRED = "permission_required"
INPUT_REQUESTED = "input_requested"

MESSAGES = {
    TASK_COMPLETE: "Task completed",
    PERMISSION_REQUIRED: "Permission required",
    INPUT_REQUESTED: "Input requested",
}


class NotificationTracker:
    """Per-session previous-state tracking."""

    def __init__(self) -> None:
        self._last_states: dict[str, str] = {}

    def check(self, session) -> str | None:
        """Record the session's state and return the notification it triggers.

        The first time a session is seen only its state is recorded.

        Returns:
            TASK_COMPLETE, PERMISSION_REQUIRED, INPUT_REQUESTED or None.
        """
        previous = self._last_states.get(session.id)
        current = session.state
        self._last_states[session.id] = current

        if previous is None or previous == current:
            return None
        if previous == "running" and current == "idle" and not session.pending_question:
            return TASK_COMPLETE
        if current == "waiting_permission":
            return PERMISSION_REQUIRED
        if current == "waiting_input":
            return INPUT_REQUESTED
        return None

    def clear(self, session_id: str) -> None:
        """Forget a session (call when it is deleted)."""
        self._last_states.pop(session_id, None)
