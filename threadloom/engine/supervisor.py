"""Process supervision for threads.

ProcessSupervisor owns one running assistant process: it feeds stdout to
the thread's router, keeps a stderr tail for crash reports, and settles
the thread's status when the process ends. SupervisorRegistry maps
thread ids to live supervisors and hands out one asyncio.Lock per
thread, which serializes start/stop/send and the approval operations.

The stop/exit race: stop() and the exit handler both move the thread
out of `running` with lifecycle.compare_and_set(). Whichever runs first
wins; the other changes nothing. The exit handler never takes the
thread lock, since stop() holds it while waiting for the exit.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable

from threadloom.adapters.event_bus import EventHub, thread_channel
from threadloom.adapters.events import ErrorRaised, ThreadRenamed, UserMessage
from threadloom.shared.services.store import EngineStore

from .approval import ApprovalBook
from .config import EngineConfig
from .errors import (
    AlreadyRunningError,
    NotRunningError,
    ParseDesyncError,
    ProcessCrashError,
    ProcessSpawnError,
    QuestionPendingError,
)
from .lifecycle import compare_and_set, validate_transition
from .models import (
    Activity,
    Message,
    MessageRole,
    SendOptions,
    Session,
    Thread,
    ThreadStatus,
)
from .providers.base import ProviderChannel, SpawnRequest
from .providers.registry import ProviderRegistry
from .router import ThreadEventRouter, status_event
from .runners.base import ExecutionContext, ProcessHandle
from .runners.resolver import ContextResolver

logger = logging.getLogger(__name__)

DEFAULT_THREAD_NAME = "New thread"
TITLE_LENGTH = 80


class ProcessSupervisor:
    """One assistant process bound to one thread."""

    def __init__(
        self,
        thread: Thread,
        context: ExecutionContext,
        handle: ProcessHandle,
        channel: ProviderChannel,
        router: ThreadEventRouter,
        *,
        grace: float = 5.0,
        stderr_tail_lines: int = 20,
        on_exit: Callable[[ProcessSupervisor, bool], None] | None = None,
    ) -> None:
        self.thread = thread
        self.context = context
        self.handle = handle
        self.channel = channel
        self.router = router
        self.grace = grace
        self.stderr_tail: deque[str] = deque(maxlen=stderr_tail_lines)
        self.stopping = False
        self.exit_code: int | None = None
        self._on_exit = on_exit
        self._stderr_task: asyncio.Task | None = None
        self._monitor_task: asyncio.Task | None = None

    @property
    def thread_id(self) -> str:
        return self.thread.id

    @property
    def alive(self) -> bool:
        return self.handle.returncode is None

    def launch(self) -> None:
        """Start the stderr reader and the control loop."""
        self._stderr_task = asyncio.create_task(self._read_stderr())
        self._monitor_task = asyncio.create_task(self._monitor())

    async def write_frames(self, frames: list[str]) -> None:
        """Write frames to stdin, one per line."""
        stdin = self.handle.stdin
        if stdin is None or not self.alive or stdin.is_closing():
            raise NotRunningError(self.thread_id, "process stdin is closed")
        try:
            for frame in frames:
                stdin.write(frame.encode("utf-8") + b"\n")
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as exc:
            raise NotRunningError(self.thread_id, f"write failed: {exc}") from exc

    async def stop(self) -> bool:
        """Stop the process tree. True if this call moved the thread to stopped."""
        self.stopping = True
        changed = compare_and_set(self.thread, ThreadStatus.RUNNING, ThreadStatus.STOPPED)
        if changed:
            self._settled()
        await self.context.terminate(self.handle, self.grace)
        await self.wait_closed()
        return changed

    async def wait_closed(self) -> None:
        if self._monitor_task is not None:
            await asyncio.shield(self._monitor_task)

    async def _read_stderr(self) -> None:
        stream = self.handle.stderr
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                logger.debug("Thread %s: oversized stderr line skipped", self.thread_id)
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if self.handle.note_stderr(line):
                continue
            self.stderr_tail.append(line)
            logger.debug("[%s stderr] %s", self.thread_id, line)

    async def _monitor(self) -> None:
        desync: ParseDesyncError | None = None
        try:
            await self.router.run(self.handle.stdout)
        except ParseDesyncError as exc:
            desync = exc
        except Exception as exc:
            logger.exception("Thread %s: output handling failed", self.thread_id)
            desync = ParseDesyncError(self.thread_id, f"output handling failed: {exc}")
        if desync is not None:
            logger.error("Thread %s: %s; terminating process", self.thread_id, desync)
            await self.context.terminate(self.handle, self.grace)
        if self._stderr_task is not None:
            try:
                await asyncio.wait_for(self._stderr_task, timeout=self.grace)
            except asyncio.TimeoutError:
                logger.warning("Thread %s: stderr still open after exit", self.thread_id)
        self.exit_code = await self.handle.wait()
        self._handle_exit(desync)

    def _handle_exit(self, desync: ParseDesyncError | None) -> None:
        code = self.exit_code
        tail = "\n".join(self.stderr_tail)
        if desync is not None:
            changed = compare_and_set(self.thread, ThreadStatus.RUNNING, ThreadStatus.ERROR)
            detail = str(desync)
        elif self.stopping or code == 0:
            changed = compare_and_set(self.thread, ThreadStatus.RUNNING, ThreadStatus.STOPPED)
            detail = None
        else:
            changed = compare_and_set(self.thread, ThreadStatus.RUNNING, ThreadStatus.ERROR)
            detail = str(ProcessCrashError(self.thread_id, code, tail))

        logger.info(
            "Thread %s process exited code=%s stopping=%s status=%s",
            self.thread_id, code, self.stopping, self.thread.status.value,
        )
        if changed:
            self.thread.error_detail = detail
            if detail is not None:
                self.router.publish(ErrorRaised(
                    kind="desync" if desync is not None else "crash", message=detail,
                ))
            self._settled()
        if self._on_exit is not None:
            self._on_exit(self, changed)

    def _settled(self) -> None:
        self.thread.activity = None
        self.router.approval.clear_questions()
        self.router.publish(status_event(self.thread))


class SupervisorRegistry:
    """Live supervisors by thread id, plus one lock per thread."""

    def __init__(self) -> None:
        self._supervisors: dict[str, ProcessSupervisor] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, thread_id: str) -> asyncio.Lock:
        lock = self._locks.get(thread_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[thread_id] = lock
        return lock

    def get(self, thread_id: str) -> ProcessSupervisor | None:
        return self._supervisors.get(thread_id)

    def add(self, supervisor: ProcessSupervisor) -> None:
        if supervisor.thread_id in self._supervisors:
            raise AlreadyRunningError(supervisor.thread_id)
        self._supervisors[supervisor.thread_id] = supervisor

    def discard(self, thread_id: str, supervisor: ProcessSupervisor | None = None) -> None:
        """Remove the entry (only if it is still `supervisor`, when given)."""
        current = self._supervisors.get(thread_id)
        if current is not None and (supervisor is None or current is supervisor):
            del self._supervisors[thread_id]

    def forget(self, thread_id: str) -> None:
        self._locks.pop(thread_id, None)

    def running_ids(self) -> list[str]:
        return list(self._supervisors)

    def __len__(self) -> int:
        return len(self._supervisors)


class ThreadSupervisor:
    """start / stop / send for threads."""

    def __init__(
        self,
        store: EngineStore,
        resolver: ContextResolver,
        providers: ProviderRegistry,
        hub: EventHub,
        approvals: ApprovalBook,
        config: EngineConfig,
        registry: SupervisorRegistry | None = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.providers = providers
        self.hub = hub
        self.approvals = approvals
        self.config = config
        self.registry = registry if registry is not None else SupervisorRegistry()

    def _router(self, thread: Thread, channel: ProviderChannel) -> ThreadEventRouter:
        return ThreadEventRouter(
            thread,
            channel.parser,
            self.store,
            self.approvals.get(thread.id),
            self.hub,
            max_frame_bytes=self.config.max_frame_bytes,
            malformed_frame_limit=self.config.malformed_frame_limit,
        )

    def ensure_session(self, thread: Thread) -> Session:
        if thread.active_session_id is not None:
            return self.store.get_session(thread.active_session_id)
        session = self.store.add_session(Session(thread_id=thread.id, name="Session 1"))
        thread.active_session_id = session.id
        return session

    async def start(self, thread_id: str) -> Thread:
        async with self.registry.lock(thread_id):
            return await self.start_locked(thread_id)

    async def start_locked(self, thread_id: str) -> Thread:
        thread = self.store.get_thread(thread_id)
        if self.registry.get(thread_id) is not None or thread.status == ThreadStatus.RUNNING:
            raise AlreadyRunningError(thread_id)
        validate_transition(thread.status, ThreadStatus.RUNNING)
        location = self.store.get_location(thread.location_id)
        provider = self.providers.get_or_raise(thread.provider)
        context = await self.resolver.resolve(location, thread)

        session = self.ensure_session(thread)
        request = SpawnRequest(
            cwd=location.path,
            model=thread.model,
            resume_id=session.provider_session_id,
            history=self.store.list_messages(thread.id, session.id),
        )
        command = provider.build_command(request)
        channel = provider.create_channel(request)
        router = self._router(thread, channel)
        try:
            handle = await context.spawn(command)
        except ProcessSpawnError as exc:
            if thread.status != ThreadStatus.ERROR:
                validate_transition(thread.status, ThreadStatus.ERROR)
            thread.status = ThreadStatus.ERROR
            thread.activity = None
            thread.error_detail = str(exc)
            router.publish(status_event(thread))
            logger.error("Thread %s failed to start: %s", thread_id, exc)
            raise

        # A fresh process has proposed nothing and asked nothing.
        self.approvals.get(thread_id).reset()
        thread.status = ThreadStatus.RUNNING
        thread.activity = Activity.LAUNCHING
        thread.error_detail = None
        supervisor = ProcessSupervisor(
            thread, context, handle, channel, router,
            grace=self.config.stop_grace_seconds,
            stderr_tail_lines=self.config.stderr_tail_lines,
            on_exit=self._on_exit,
        )
        self.registry.add(supervisor)
        supervisor.launch()
        router.publish(status_event(thread))
        logger.info(
            "Thread %s started: provider=%s target=%s session=%s",
            thread_id, provider.name, context.describe(), session.id,
        )
        return thread

    def _on_exit(self, supervisor: ProcessSupervisor, changed: bool) -> None:
        self.registry.discard(supervisor.thread_id, supervisor)

    async def stop(self, thread_id: str) -> Thread:
        """Idempotent. Leaves the thread stopped (or error, if it crashed first)."""
        async with self.registry.lock(thread_id):
            return await self.stop_locked(thread_id)

    async def stop_locked(self, thread_id: str) -> Thread:
        thread = self.store.get_thread(thread_id)
        supervisor = self.registry.get(thread_id)
        if supervisor is None:
            if thread.status == ThreadStatus.IDLE:
                thread.status = ThreadStatus.STOPPED
                self.hub.publish(thread_channel(thread_id), status_event(thread))
            return thread
        await supervisor.stop()
        self.registry.discard(thread_id, supervisor)
        logger.info("Thread %s stopped (status=%s)", thread_id, thread.status.value)
        return thread

    def running(self, thread_id: str) -> ProcessSupervisor:
        """Live supervisor of a running thread, or NotRunningError."""
        thread = self.store.get_thread(thread_id)
        supervisor = self.registry.get(thread_id)
        if supervisor is None or thread.status != ThreadStatus.RUNNING:
            raise NotRunningError(thread_id, thread.status.value)
        return supervisor

    async def send(
        self,
        thread_id: str,
        content: str,
        options: SendOptions | None = None,
    ) -> Message:
        async with self.registry.lock(thread_id):
            return await self.send_locked(thread_id, content, options or SendOptions())

    async def send_locked(self, thread_id: str, content: str, options: SendOptions) -> Message:
        supervisor = self.running(thread_id)
        thread = supervisor.thread
        approval = self.approvals.get(thread_id)
        if approval.awaiting_answer:
            raise QuestionPendingError(thread_id, [q.id for q in approval.questions])
        if options.model and options.model != thread.model:
            # Takes effect on the next start.
            thread.model = options.model

        await supervisor.write_frames(
            supervisor.channel.encode_message(content, plan_mode=options.plan_mode),
        )
        approval.discard_for_send()
        router = supervisor.router
        router.flush_text()
        message = self.store.append_message(Message(
            thread_id=thread_id,
            session_id=thread.active_session_id,
            role=MessageRole.USER,
            content=content,
            metadata={"plan_mode": options.plan_mode} if options.plan_mode else {},
        ))
        router.publish(UserMessage(message_id=message.id, text=content))
        if not thread.has_messages:
            thread.has_messages = True
            title = provisional_title(content)
            if title and thread.name == DEFAULT_THREAD_NAME:
                thread.name = title
                router.publish(ThreadRenamed(name=title))
        thread.activity = Activity.BUSY
        router.publish(status_event(thread))
        return message

    async def stop_all(self) -> None:
        for thread_id in self.registry.running_ids():
            await self.stop(thread_id)


def provisional_title(content: str) -> str:
    """First non-empty line of the first message, truncated."""
    for line in content.splitlines():
        if line.strip():
            return line.strip()[:TITLE_LENGTH]
    return ""
