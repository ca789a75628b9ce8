"""Project command runner (dev servers, watchers, test loops).

Each (command, location) pair is an independent instance with its own
process, status and log ring. Output is split into lines per stream; a
trailing partial line is held until its newline arrives or the stream
ends.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
from collections import deque
from datetime import datetime, timezone

from threadloom.adapters.event_bus import EventHub, command_channel
from threadloom.adapters.events import CommandLog, CommandStatusChanged
from threadloom.shared.services.store import EngineStore

from .config import EngineConfig
from .errors import AlreadyRunningError, InvalidStateError, ProcessSpawnError
from .lifecycle import validate_command_transition
from .models import CommandLogLine, CommandStatus, ProjectCommand, RepoLocation
from .runners.base import ExecutionContext, ProcessHandle
from .runners.local import LocalContext
from .runners.resolver import ContextResolver

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_MAX_LINE_CHARS = 64 * 1024

InstanceKey = tuple[str, str | None]


class CommandProcess:
    """State of one (command, location) instance."""

    def __init__(self, command_id: str, location_id: str | None, log_lines: int) -> None:
        self.command_id = command_id
        self.location_id = location_id
        self.status = CommandStatus.IDLE
        self.logs: deque[CommandLogLine] = deque(maxlen=log_lines)
        self.exit_code: int | None = None
        self.user_stopped = False
        self.handle: ProcessHandle | None = None
        self.context: ExecutionContext | None = None
        self._monitor: asyncio.Task | None = None

    @property
    def pid(self) -> int | None:
        return self.handle.pid if self.handle is not None else None

    async def wait_closed(self) -> None:
        if self._monitor is not None:
            await asyncio.shield(self._monitor)


class CommandRunner:
    """start / stop / restart for project commands."""

    def __init__(
        self,
        store: EngineStore,
        resolver: ContextResolver,
        hub: EventHub,
        config: EngineConfig,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.hub = hub
        self.config = config
        self._instances: dict[InstanceKey, CommandProcess] = {}
        self._locks: dict[InstanceKey, asyncio.Lock] = {}

    def _location(self, command: ProjectCommand, location_id: str | None) -> RepoLocation | None:
        if location_id is not None:
            location = self.store.get_location(location_id)
            if location.project_id != command.project_id:
                raise InvalidStateError(location_id, "location belongs to another project")
            return location
        locations = self.store.list_locations(command.project_id)
        return locations[0] if locations else None

    def _key(self, command_id: str, location_id: str | None) -> InstanceKey:
        command = self.store.get_command(command_id)
        location = self._location(command, location_id)
        return (command_id, location.id if location else None)

    def _lock(self, key: InstanceKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def get_instance(self, command_id: str, location_id: str | None = None) -> CommandProcess | None:
        return self._instances.get(self._key(command_id, location_id))

    def get_status(self, command_id: str, location_id: str | None = None) -> CommandStatus:
        instance = self.get_instance(command_id, location_id)
        return instance.status if instance is not None else CommandStatus.IDLE

    def get_logs(self, command_id: str, location_id: str | None = None) -> list[CommandLogLine]:
        instance = self.get_instance(command_id, location_id)
        return list(instance.logs) if instance is not None else []

    def statuses(self, project_id: str, location_id: str | None = None) -> dict[str, CommandStatus]:
        return {
            command.id: self.get_status(command.id, location_id)
            for command in self.store.list_commands(project_id)
        }

    async def start(self, command_id: str, location_id: str | None = None) -> CommandProcess:
        key = self._key(command_id, location_id)
        async with self._lock(key):
            return await self._start_locked(key)

    async def _start_locked(self, key: InstanceKey) -> CommandProcess:
        command_id, location_id = key
        previous = self._instances.get(key)
        if previous is not None and previous.status == CommandStatus.RUNNING:
            raise AlreadyRunningError(f"{command_id}@{location_id or 'local'}")
        command = self.store.get_command(command_id)
        if location_id is not None:
            location = self.store.get_location(location_id)
            context = await self.resolver.resolve(location)
            cwd = command.cwd or location.path
        else:
            context = LocalContext()
            cwd = command.cwd or "~"

        instance = CommandProcess(command_id, location_id, self.config.command_log_lines)
        if previous is not None:
            validate_command_transition(previous.status, CommandStatus.RUNNING)
        self._instances[key] = instance
        try:
            handle = await context.spawn_shell(command.command, cwd, command.shell)
        except ProcessSpawnError as exc:
            self._log(instance, f"Error: {exc.reason}", "stderr")
            self._set_status(instance, CommandStatus.ERROR)
            raise
        instance.handle = handle
        instance.context = context
        self._set_status(instance, CommandStatus.RUNNING)
        instance._monitor = asyncio.create_task(self._monitor(instance))
        logger.info(
            "Command %s (%s) started on %s pid=%d",
            command.name, command_id, context.describe(), handle.pid,
        )
        return instance

    async def stop(self, command_id: str, location_id: str | None = None) -> CommandProcess | None:
        """Idempotent; a no-op unless the instance is running."""
        key = self._key(command_id, location_id)
        async with self._lock(key):
            return await self._stop_locked(key)

    async def _stop_locked(self, key: InstanceKey) -> CommandProcess | None:
        instance = self._instances.get(key)
        if instance is None or instance.status != CommandStatus.RUNNING:
            return instance
        instance.user_stopped = True
        self._set_status(instance, CommandStatus.STOPPED)
        if instance.context is not None and instance.handle is not None:
            await instance.context.terminate(instance.handle, self.config.stop_grace_seconds)
        await instance.wait_closed()
        logger.info("Command %s stopped", instance.command_id)
        return instance

    async def restart(self, command_id: str, location_id: str | None = None) -> CommandProcess:
        """Stop, wait until the old process is gone, start again."""
        key = self._key(command_id, location_id)
        async with self._lock(key):
            await self._stop_locked(key)
            return await self._start_locked(key)

    async def stop_all(self, project_id: str | None = None, command_id: str | None = None) -> None:
        for key, instance in list(self._instances.items()):
            if command_id is not None and key[0] != command_id:
                continue
            if project_id is not None:
                command = self.store.get_command(key[0])
                if command.project_id != project_id:
                    continue
            if instance.status == CommandStatus.RUNNING:
                async with self._lock(key):
                    await self._stop_locked(key)

    def forget(self, command_id: str) -> None:
        for key in [k for k in self._instances if k[0] == command_id]:
            del self._instances[key]
            self._locks.pop(key, None)

    async def _pump(self, instance: CommandProcess, stream: asyncio.StreamReader | None, name: str) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await stream.read(_READ_CHUNK)
            pending += decoder.decode(chunk, final=not chunk)
            *lines, pending = pending.split("\n")
            for line in lines:
                if name == "stderr" and instance.handle is not None and instance.handle.note_stderr(line):
                    continue
                self._log(instance, line.rstrip("\r"), name)
            # Output without newlines is cut into lines of at most _MAX_LINE_CHARS.
            while len(pending) > _MAX_LINE_CHARS:
                self._log(instance, pending[:_MAX_LINE_CHARS], name)
                pending = pending[_MAX_LINE_CHARS:]
            if not chunk:
                break
        if pending:
            self._log(instance, pending.rstrip("\r"), name)

    async def _monitor(self, instance: CommandProcess) -> None:
        handle = instance.handle
        await asyncio.gather(
            self._pump(instance, handle.stdout, "stdout"),
            self._pump(instance, handle.stderr, "stderr"),
        )
        instance.exit_code = await handle.wait()
        # A user stop already set the final status.
        if instance.status != CommandStatus.RUNNING:
            return
        status = CommandStatus.STOPPED if instance.exit_code in (0, None) else CommandStatus.ERROR
        self._set_status(instance, status)
        logger.info("Command %s exited code=%s", instance.command_id, instance.exit_code)

    def _log(self, instance: CommandProcess, text: str, stream: str) -> None:
        line = CommandLogLine(
            command_id=instance.command_id,
            text=text,
            stream=stream,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        instance.logs.append(line)
        self.hub.publish(command_channel(instance.command_id), CommandLog(
            command_id=instance.command_id,
            location_id=instance.location_id,
            text=text,
            stream=stream,
            timestamp=line.timestamp,
        ))

    def _set_status(self, instance: CommandProcess, status: CommandStatus) -> None:
        instance.status = status
        self.hub.publish(command_channel(instance.command_id), CommandStatusChanged(
            command_id=instance.command_id,
            location_id=instance.location_id,
            status=status.value,
            exit_code=instance.exit_code,
        ))
