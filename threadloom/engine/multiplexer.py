"""Session multiplexer: several conversations behind one thread.

A thread has one active session at a time. Switching is only allowed
while no process runs, because the process was started with the active
session's history; the next start replays the newly active one.
"""
from __future__ import annotations

import logging
from pathlib import Path

from threadloom.adapters.event_bus import EventHub, thread_channel
from threadloom.adapters.events import SessionSwitched
from threadloom.shared.services.store import EngineStore
from threadloom.shared.services.transcript_import import (
    ImportSessionSummary,
    TranscriptImportService,
)

from .approval import ApprovalBook
from .errors import InvalidStateError, NotFoundError
from .models import Session, Thread, ThreadStatus
from .supervisor import SupervisorRegistry

logger = logging.getLogger(__name__)


class SessionMultiplexer:
    """create / switch / import sessions."""

    def __init__(
        self,
        store: EngineStore,
        registry: SupervisorRegistry,
        approvals: ApprovalBook,
        hub: EventHub,
        importer: TranscriptImportService | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.approvals = approvals
        self.hub = hub
        self.importer = importer or TranscriptImportService()

    def list_sessions(self, thread_id: str) -> list[Session]:
        self.store.get_thread(thread_id)
        return self.store.list_sessions(thread_id)

    def create_session(
        self,
        thread_id: str,
        name: str | None = None,
        *,
        prefix: str = "Session",
    ) -> Session:
        """New, empty session. The first one becomes active."""
        thread = self.store.get_thread(thread_id)
        if not name:
            name = self._next_name(thread_id, prefix)
        session = self.store.add_session(Session(thread_id=thread_id, name=name))
        if thread.active_session_id is None:
            thread.active_session_id = session.id
        logger.info("Thread %s: created session %s (%s)", thread_id, session.id, name)
        return session

    def _next_name(self, thread_id: str, prefix: str) -> str:
        taken = {s.name for s in self.store.list_sessions(thread_id)}
        if prefix == "Session":
            n = len(taken) + 1
        elif prefix not in taken:
            return prefix
        else:
            n = 2
        while f"{prefix} {n}" in taken:
            n += 1
        return f"{prefix} {n}"

    async def switch(self, thread_id: str, session_id: str) -> Thread:
        async with self.registry.lock(thread_id):
            return self.switch_locked(thread_id, session_id)

    def switch_locked(self, thread_id: str, session_id: str) -> Thread:
        """switch() for callers already holding the thread lock."""
        thread = self.store.get_thread(thread_id)
        if thread.status == ThreadStatus.RUNNING or self.registry.get(thread_id) is not None:
            raise InvalidStateError(thread_id, "cannot switch sessions while the thread is running")
        session = self.store.get_session(session_id)
        if session.thread_id != thread_id:
            raise NotFoundError("session", session_id)
        thread.active_session_id = session.id
        self.approvals.get(thread_id).reset()
        self.hub.publish(thread_channel(thread_id), SessionSwitched(thread_id=thread_id, session_id=session.id))
        logger.info("Thread %s: switched to session %s", thread_id, session.id)
        return thread

    def import_session(
        self,
        project_id: str,
        location_id: str,
        source_path: str | Path,
        *,
        session_id: str | None = None,
        name: str | None = None,
        provider: str = "claude",
    ) -> Thread:
        """Create a thread seeded from a transcript file.

        Parsing and building happen before the store is touched; the
        thread, its session and its messages are then committed together.
        """
        self.store.get_project(project_id)
        location = self.store.get_location(location_id)
        if location.project_id != project_id:
            raise InvalidStateError(location_id, f"location does not belong to project {project_id}")
        transcript = self.importer.load_transcript(
            "claude", Path(source_path).expanduser(), session_id=session_id,
        )
        result = self.importer.build_thread(
            transcript,
            project_id=project_id,
            location_id=location_id,
            provider=provider,
            name=name,
        )
        thread = self.store.commit_import(result)
        logger.info(
            "Imported %s into thread %s (%d messages, %d warnings)",
            source_path, thread.id, len(result.messages), len(result.warnings),
        )
        return thread

    def list_importable(self, limit: int | None = 50) -> list[ImportSessionSummary]:
        return self.importer.list_sessions(limit=limit)
