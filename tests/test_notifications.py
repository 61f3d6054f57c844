"""Tests for state-transition notifications."""

from parley.core.notifications import (
    INPUT_REQUESTED,
    MESSAGES,
    PERMISSION_REQUIRED,
    TASK_COMPLETE,
    NotificationTracker,
)
from parley.core.session import PendingQuestion, Question, Session


def at(state, pending_question=None):
    return Session(id="s1", title="", cwd="/", state=state, pending_question=pending_question)


def test_first_sighting_is_silent():
    tracker = NotificationTracker()
    assert tracker.check(at("waiting_permission")) is None


def test_task_complete():
    tracker = NotificationTracker()
    tracker.check(at("running"))
    assert tracker.check(at("idle")) == TASK_COMPLETE


def test_permission_and_input():
    tracker = NotificationTracker()
    tracker.check(at("running"))
    assert tracker.check(at("waiting_permission")) == PERMISSION_REQUIRED
    tracker.check(at("running"))
    assert tracker.check(at("waiting_input")) == INPUT_REQUESTED


def test_unchanged_state_is_silent():
    tracker = NotificationTracker()
    tracker.check(at("running"))
    assert tracker.check(at("running")) is None


def test_exit_with_pending_question_is_not_completion():
    tracker = NotificationTracker()
    tracker.check(at("running"))
    pending = PendingQuestion(tool_use_id="t", questions=[Question("Which?", "", [])])
    assert tracker.check(at("idle", pending)) is None


def test_idle_to_running_is_silent():
    tracker = NotificationTracker()
    tracker.check(at("idle"))
    assert tracker.check(at("running")) is None


def test_clear_forgets_session():
    tracker = NotificationTracker()
    tracker.check(at("running"))
    tracker.clear("s1")
    assert tracker.check(at("idle")) is None


def test_every_notification_has_a_message():
    assert set(MESSAGES) == {TASK_COMPLETE, PERMISSION_REQUIRED, INPUT_REQUESTED}
