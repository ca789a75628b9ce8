from __future__ import annotations

import pytest

from threadloom.engine.lifecycle import (
    compare_and_set,
    validate_command_transition,
    validate_transition,
)
from threadloom.engine.models import CommandStatus, Thread, ThreadStatus


def _thread(status: ThreadStatus) -> Thread:
    return Thread(project_id="p", location_id="l", status=status)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (ThreadStatus.IDLE, ThreadStatus.RUNNING),
        (ThreadStatus.IDLE, ThreadStatus.STOPPED),
        (ThreadStatus.RUNNING, ThreadStatus.STOPPED),
        (ThreadStatus.RUNNING, ThreadStatus.ERROR),
        (ThreadStatus.STOPPED, ThreadStatus.RUNNING),
        (ThreadStatus.ERROR, ThreadStatus.RUNNING),
    ],
)
def test_valid_thread_transitions(current: ThreadStatus, target: ThreadStatus) -> None:
    validate_transition(current, target)


def test_invalid_thread_transitions_raise() -> None:
    with pytest.raises(ValueError, match="running -> idle"):
        validate_transition(ThreadStatus.RUNNING, ThreadStatus.IDLE)
    with pytest.raises(ValueError):
        validate_transition(ThreadStatus.RUNNING, ThreadStatus.RUNNING)
    with pytest.raises(ValueError):
        validate_transition(ThreadStatus.STOPPED, ThreadStatus.IDLE)


def test_command_transitions() -> None:
    validate_command_transition(CommandStatus.IDLE, CommandStatus.RUNNING)
    validate_command_transition(CommandStatus.ERROR, CommandStatus.RUNNING)
    with pytest.raises(ValueError):
        validate_command_transition(CommandStatus.IDLE, CommandStatus.STOPPED)


def test_compare_and_set_first_writer_wins() -> None:
    thread = _thread(ThreadStatus.RUNNING)

    # Explicit stop gets there first; the exit handler's crash is ignored.
    assert compare_and_set(thread, ThreadStatus.RUNNING, ThreadStatus.STOPPED) is True
    assert compare_and_set(thread, ThreadStatus.RUNNING, ThreadStatus.ERROR) is False
    assert thread.status == ThreadStatus.STOPPED


def test_compare_and_set_accepts_a_set() -> None:
    thread = _thread(ThreadStatus.ERROR)
    assert compare_and_set(thread, {ThreadStatus.STOPPED, ThreadStatus.ERROR}, ThreadStatus.RUNNING)
    assert thread.status == ThreadStatus.RUNNING
