"""Thread and command lifecycle state machines.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──> RUNNING ──┬──> STOPPED ──> RUNNING
                       │
                       └──> ERROR ────> RUNNING

    IDLE ──> STOPPED   (stop on a never-started thread)

Status changes after spawn go through compare_and_set() so that an
explicit stop and a natural process exit cannot both win.
"""
from __future__ import annotations

from typing import Protocol

from .models import CommandStatus, ThreadStatus

VALID_TRANSITIONS: dict[ThreadStatus, set[ThreadStatus]] = {
    ThreadStatus.IDLE: {
        ThreadStatus.RUNNING,
        ThreadStatus.STOPPED,
        ThreadStatus.ERROR,
    },
    ThreadStatus.RUNNING: {
        ThreadStatus.STOPPED,
        ThreadStatus.ERROR,
    },
    ThreadStatus.STOPPED: {
        ThreadStatus.RUNNING,
        ThreadStatus.ERROR,
    },
    ThreadStatus.ERROR: {
        ThreadStatus.RUNNING,
        ThreadStatus.STOPPED,
    },
}

COMMAND_TRANSITIONS: dict[CommandStatus, set[CommandStatus]] = {
    CommandStatus.IDLE: {CommandStatus.RUNNING},
    CommandStatus.RUNNING: {CommandStatus.STOPPED, CommandStatus.ERROR},
    CommandStatus.STOPPED: {CommandStatus.RUNNING},
    CommandStatus.ERROR: {CommandStatus.RUNNING},
}

TERMINAL_STATUSES = frozenset({ThreadStatus.STOPPED, ThreadStatus.ERROR})


class _HasStatus(Protocol):
    status: ThreadStatus


def validate_transition(current: ThreadStatus, target: ThreadStatus) -> None:
    """Validate a thread status transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def validate_command_transition(
    current: CommandStatus, target: CommandStatus,
) -> None:
    """Validate a command status transition. Raises ValueError if invalid."""
    if target not in COMMAND_TRANSITIONS.get(current, set()):
        raise ValueError(
            f"Invalid command transition: {current.value} -> {target.value}"
        )


def compare_and_set(
    holder: _HasStatus,
    expected: ThreadStatus | set[ThreadStatus] | frozenset[ThreadStatus],
    target: ThreadStatus,
) -> bool:
    """Move holder.status to target only if it currently matches expected.

    Returns False (and changes nothing) when the status has already
    moved on. Runs without awaiting, so it is atomic on the event loop.
    """
    if isinstance(expected, ThreadStatus):
        expected = {expected}
    current = holder.status
    if current not in expected:
        return False
    validate_transition(current, target)
    holder.status = target
    return True
