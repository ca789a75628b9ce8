"""In-memory entity store.

Holds projects, repo locations, threads, sessions, messages and project
commands. Every lookup of a missing id raises NotFoundError; deletes
cascade to owned entities. Iteration order is insertion order, which is
what "creation order" means for sessions.
"""

from __future__ import annotations

import logging
from dataclasses import fields
from typing import Any

from threadloom.engine.errors import InvalidStateError, NotFoundError
from threadloom.engine.models import (
    Message,
    Project,
    ProjectCommand,
    RepoLocation,
    Session,
    Thread,
)
from threadloom.shared.services.transcript_import.models import SessionImportResult

logger = logging.getLogger(__name__)

# Thread fields callers may change through update_thread().
THREAD_EDITABLE = {"name", "provider", "model", "use_wsl", "wsl_distro"}
# Locked once the thread has messages.
THREAD_WSL_FIELDS = {"use_wsl", "wsl_distro"}


def _apply(obj: Any, changes: dict[str, Any], allowed: set[str] | None = None) -> None:
    names = {f.name for f in fields(obj)}
    for key in changes:
        if key not in names or key == "id" or (allowed is not None and key not in allowed):
            raise InvalidStateError(getattr(obj, "id", "?"), f"field '{key}' cannot be changed")
    for key, value in changes.items():
        setattr(obj, key, value)


class EngineStore:
    """Entity store shared by the engine and the server."""

    def __init__(self) -> None:
        self._projects: dict[str, Project] = {}
        self._locations: dict[str, RepoLocation] = {}
        self._threads: dict[str, Thread] = {}
        self._sessions: dict[str, Session] = {}
        self._messages: dict[str, list[Message]] = {}
        self._commands: dict[str, ProjectCommand] = {}

    # ── Projects ──

    def add_project(self, project: Project) -> Project:
        self._projects[project.id] = project
        return project

    def get_project(self, project_id: str) -> Project:
        project = self._projects.get(project_id)
        if project is None:
            raise NotFoundError("project", project_id)
        return project

    def list_projects(self) -> list[Project]:
        return list(self._projects.values())

    def update_project(self, project_id: str, **changes: Any) -> Project:
        project = self.get_project(project_id)
        _apply(project, changes, {"name", "git_url"})
        return project

    def delete_project(self, project_id: str) -> None:
        self.get_project(project_id)
        for thread in self.list_threads(project_id):
            self.delete_thread(thread.id)
        for location in self.list_locations(project_id):
            del self._locations[location.id]
        for command in self.list_commands(project_id):
            del self._commands[command.id]
        del self._projects[project_id]
        logger.info("Deleted project %s", project_id)

    # ── Locations ──

    def add_location(self, location: RepoLocation) -> RepoLocation:
        self.get_project(location.project_id)
        self._locations[location.id] = location
        return location

    def get_location(self, location_id: str) -> RepoLocation:
        location = self._locations.get(location_id)
        if location is None:
            raise NotFoundError("location", location_id)
        return location

    def list_locations(self, project_id: str) -> list[RepoLocation]:
        return [loc for loc in self._locations.values() if loc.project_id == project_id]

    def update_location(self, location_id: str, **changes: Any) -> RepoLocation:
        location = self.get_location(location_id)
        _apply(location, changes, {"label", "path", "connection_type", "ssh", "wsl"})
        return location

    def delete_location(self, location_id: str) -> None:
        self.get_location(location_id)
        for thread in [t for t in self._threads.values() if t.location_id == location_id]:
            self.delete_thread(thread.id)
        del self._locations[location_id]

    # ── Threads ──

    def add_thread(self, thread: Thread) -> Thread:
        self.get_project(thread.project_id)
        self.get_location(thread.location_id)
        self._threads[thread.id] = thread
        return thread

    def get_thread(self, thread_id: str) -> Thread:
        thread = self._threads.get(thread_id)
        if thread is None:
            raise NotFoundError("thread", thread_id)
        return thread

    def list_threads(self, project_id: str | None = None) -> list[Thread]:
        return [
            t for t in self._threads.values()
            if project_id is None or t.project_id == project_id
        ]

    def update_thread(self, thread_id: str, **changes: Any) -> Thread:
        """Apply user edits. WSL settings are frozen once messages exist."""
        thread = self.get_thread(thread_id)
        if thread.has_messages:
            locked = [
                key for key in THREAD_WSL_FIELDS
                if key in changes and changes[key] != getattr(thread, key)
            ]
            if locked:
                raise InvalidStateError(
                    thread_id, f"{', '.join(sorted(locked))} cannot change after the first message",
                )
        _apply(thread, changes, THREAD_EDITABLE)
        return thread

    def delete_thread(self, thread_id: str) -> None:
        self.get_thread(thread_id)
        for session in self.list_sessions(thread_id):
            self._messages.pop(session.id, None)
            del self._sessions[session.id]
        del self._threads[thread_id]

    # ── Sessions ──

    def add_session(self, session: Session) -> Session:
        self.get_thread(session.thread_id)
        self._sessions[session.id] = session
        self._messages.setdefault(session.id, [])
        return session

    def get_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError("session", session_id)
        return session

    def list_sessions(self, thread_id: str) -> list[Session]:
        return [s for s in self._sessions.values() if s.thread_id == thread_id]

    # ── Messages ──

    def append_message(self, message: Message) -> Message:
        self.get_session(message.session_id)
        self._messages[message.session_id].append(message)
        return message

    def list_messages(self, thread_id: str, session_id: str | None = None) -> list[Message]:
        if session_id is not None:
            session = self.get_session(session_id)
            if session.thread_id != thread_id:
                raise NotFoundError("session", session_id)
            return list(self._messages.get(session_id, []))
        result: list[Message] = []
        for session in self.list_sessions(thread_id):
            result.extend(self._messages.get(session.id, []))
        return result

    # ── Import ──

    def commit_import(self, result: SessionImportResult) -> Thread:
        """Insert an imported thread with its session and messages.

        All references are checked before anything is inserted, so a
        failure leaves the store untouched.
        """
        thread = result.thread
        self.get_project(thread.project_id)
        self.get_location(thread.location_id)
        if any(m.session_id != result.session.id for m in result.messages):
            raise InvalidStateError(thread.id, "imported messages reference another session")
        self._threads[thread.id] = thread
        self._sessions[result.session.id] = result.session
        self._messages[result.session.id] = list(result.messages)
        return thread

    # ── Project commands ──

    def add_command(self, command: ProjectCommand) -> ProjectCommand:
        self.get_project(command.project_id)
        self._commands[command.id] = command
        return command

    def get_command(self, command_id: str) -> ProjectCommand:
        command = self._commands.get(command_id)
        if command is None:
            raise NotFoundError("command", command_id)
        return command

    def list_commands(self, project_id: str) -> list[ProjectCommand]:
        commands = [c for c in self._commands.values() if c.project_id == project_id]
        return sorted(commands, key=lambda c: c.sort_order)

    def update_command(self, command_id: str, **changes: Any) -> ProjectCommand:
        command = self.get_command(command_id)
        _apply(command, changes, {"name", "command", "cwd", "shell", "sort_order"})
        return command

    def delete_command(self, command_id: str) -> None:
        self.get_command(command_id)
        del self._commands[command_id]
