"""Core data models for the thread engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePath
from typing import Any

DEFAULT_CONTEXT_LIMIT = 200_000


class ThreadStatus(str, Enum):
    """Thread lifecycle states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class Activity(str, Enum):
    """Substate of a running thread."""
    LAUNCHING = "launching"
    BUSY = "busy"
    READY = "ready"


class ConnectionType(str, Enum):
    LOCAL = "local"
    SSH = "ssh"
    WSL = "wsl"


class PlanState(str, Enum):
    NONE = "none"
    PROPOSED = "plan-proposed"
    APPROVED = "plan-approved"
    REJECTED = "plan-rejected"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class CommandStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SshConfig:
    host: str
    user: str
    port: int | None = None
    key_path: str | None = None

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}"


@dataclass
class WslConfig:
    distro: str


@dataclass
class Project:
    name: str
    git_url: str | None = None
    id: str = field(default_factory=_make_id)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class RepoLocation:
    """Where a project's checkout lives and how to reach it."""
    project_id: str
    label: str
    path: str
    connection_type: ConnectionType = ConnectionType.LOCAL
    ssh: SshConfig | None = None
    wsl: WslConfig | None = None
    id: str = field(default_factory=_make_id)


@dataclass
class TokenUsage:
    """Running usage aggregate for a thread.

    input/output accumulate across turns; context_window is replaced
    by each report.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    context_window: int = 0
    context_limit: int = DEFAULT_CONTEXT_LIMIT

    def apply(
        self,
        input_tokens: int = 0,
        output_tokens: int = 0,
        context_window: int | None = None,
    ) -> None:
        self.input_tokens += max(0, input_tokens)
        self.output_tokens += max(0, output_tokens)
        if context_window is not None:
            self.context_window = context_window


@dataclass
class Thread:
    project_id: str
    location_id: str
    name: str = "New thread"
    provider: str = "claude"
    model: str | None = None
    status: ThreadStatus = ThreadStatus.IDLE
    activity: Activity | None = None
    use_wsl: bool = False
    wsl_distro: str | None = None
    has_messages: bool = False
    error_detail: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    active_session_id: str | None = None
    id: str = field(default_factory=_make_id)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Session:
    thread_id: str
    name: str
    provider_session_id: str | None = None
    id: str = field(default_factory=_make_id)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class Message:
    """One persisted conversation entry. Never mutated."""
    thread_id: str
    session_id: str
    role: MessageRole
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    usage: dict[str, int] | None = None
    id: str = field(default_factory=_make_id)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class QuestionOption:
    label: str
    description: str = ""


@dataclass
class Question:
    thread_id: str
    prompt: str
    header: str = ""
    options: list[QuestionOption] = field(default_factory=list)
    multi_select: bool = False
    id: str = field(default_factory=_make_id)


@dataclass
class ProjectCommand:
    project_id: str
    name: str
    command: str
    cwd: str | None = None
    shell: str = "default"
    sort_order: int = 0
    id: str = field(default_factory=_make_id)


@dataclass
class CommandLogLine:
    command_id: str
    text: str
    stream: str
    timestamp: str


@dataclass
class GitFileChange:
    status: str
    path: str
    staged: bool
    old_path: str | None = None


@dataclass
class GitStatus:
    branch: str = "HEAD"
    ahead: int = 0
    behind: int = 0
    additions: int = 0
    deletions: int = 0
    files: list[GitFileChange] = field(default_factory=list)


@dataclass
class SendOptions:
    plan_mode: bool = False
    model: str | None = None


def to_payload(obj: Any) -> Any:
    """Render models (or containers of them) as JSON-safe values."""
    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_payload(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, PurePath):
        return str(obj)
    if isinstance(obj, dict):
        return {str(k): to_payload(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_payload(v) for v in obj]
    return obj
