"""Exception hierarchy for the thread engine.

Every fault that crosses the engine boundary is one of these. Raw
OSError / asyncio errors are translated where they occur.
"""
from __future__ import annotations


class EngineError(Exception):
    """Base exception for all engine errors."""


class NotFoundError(EngineError):
    """Referenced entity does not exist."""
    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} not found: {entity_id}")


class RemoteConnectionError(EngineError, ConnectionError):
    """SSH or WSL target could not be reached.

    Surfaced to the user as-is. The engine never retries on its own;
    only an explicit connectivity test refreshes the verdict.
    """
    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"Cannot reach {target}: {reason}")


class AlreadyRunningError(EngineError):
    """A supervisor already exists for this thread or command."""
    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"Already running: {entity_id}")


class NotRunningError(EngineError):
    """Operation requires a running process."""
    def __init__(self, entity_id: str, status: str | None = None):
        self.entity_id = entity_id
        self.status = status
        detail = f" (status={status})" if status else ""
        super().__init__(f"Not running: {entity_id}{detail}")


class InvalidStateError(EngineError):
    """Operation is not allowed in the current state."""
    def __init__(self, entity_id: str, reason: str):
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Invalid state for {entity_id}: {reason}")


class QuestionPendingError(EngineError):
    """A clarification question must be answered before sending."""
    def __init__(self, thread_id: str, question_ids: list[str]):
        self.thread_id = thread_id
        self.question_ids = question_ids
        super().__init__(
            f"Thread {thread_id} has {len(question_ids)} unanswered "
            f"question(s); answer them first"
        )


class IncompleteAnswerError(EngineError):
    """Required answers are missing."""
    def __init__(self, thread_id: str, missing: list[str]):
        self.thread_id = thread_id
        self.missing = missing
        super().__init__(
            f"Missing answers for thread {thread_id}: {', '.join(missing)}"
        )


class SessionImportError(EngineError):
    """Transcript could not be imported. Nothing was created."""
    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Cannot import {source}: {reason}")


class ProcessError(EngineError):
    """Base for subprocess lifecycle failures."""


class ProcessSpawnError(ProcessError):
    """The subprocess could not be started."""
    def __init__(self, entity_id: str, reason: str):
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Failed to spawn process for {entity_id}: {reason}")


class ProcessCrashError(ProcessError):
    """The subprocess exited unexpectedly."""
    def __init__(self, entity_id: str, exit_code: int | None, stderr_tail: str):
        self.entity_id = entity_id
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        message = f"Process for {entity_id} exited with code {exit_code}"
        if stderr_tail:
            message = f"{message}: {stderr_tail}"
        super().__init__(message)


class ParseDesyncError(EngineError):
    """Output stream framing was lost; continuing would drop data."""
    def __init__(self, thread_id: str, reason: str):
        self.thread_id = thread_id
        self.reason = reason
        super().__init__(f"Output stream desynchronized for {thread_id}: {reason}")


class ConfigError(EngineError):
    """Configuration file is invalid."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid config {path}: {reason}")
