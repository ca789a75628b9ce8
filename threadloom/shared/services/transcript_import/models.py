"""Canonical transcript import models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from threadloom.engine.models import Message, Session, Thread


@dataclass
class ImportSessionSummary:
    """Provider-native session metadata discovered on disk."""

    provider: str
    source_session_id: str
    source_path: Path
    title: str | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None
    turn_count: int = 0
    cwd: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ImportToolUse:
    """Normalized provider tool call, paired with its result when present."""

    id: str
    name: str
    arguments: dict[str, Any]
    result: str | None = None
    success: bool = True


@dataclass
class ImportTurn:
    """Normalized conversation turn."""

    role: str
    content: str
    timestamp: datetime | None = None
    tool_calls: list[ImportToolUse] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ImportTranscript:
    """Full transcript for one provider session."""

    summary: ImportSessionSummary
    turns: list[ImportTurn]
    warnings: list[str] = field(default_factory=list)


@dataclass
class SessionImportResult:
    """A fully built thread, ready to be committed in one step."""

    thread: Thread
    session: Session
    messages: list[Message]
    source: ImportSessionSummary
    warnings: list[str] = field(default_factory=list)
