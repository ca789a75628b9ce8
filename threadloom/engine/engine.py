"""Top-level thread engine.

Wires together the entity store, context resolver, provider registry,
event hub, thread supervisor, session multiplexer, command runner and
git poller. Single entry point for the server and the CLI.

Usage:
    from threadloom.engine import ThreadEngine

    engine = ThreadEngine()
    project = engine.create_project("webapp")
    location = engine.create_location(project.id, "laptop", "~/src/webapp")
    thread = engine.create_thread(project.id, location.id)
    await engine.start_thread(thread.id)
    await engine.send(thread.id, "Add a health check endpoint")
"""
from __future__ import annotations

import logging
from typing import Any

from threadloom.adapters.event_bus import (
    EventHub,
    Subscription,
    command_channel,
    thread_channel,
)
from threadloom.adapters.events import EngineEvent, PlanResolved, QuestionsAnswered
from threadloom.shared.services.store import EngineStore
from threadloom.shared.services.transcript_import import (
    ImportSessionSummary,
    TranscriptImportService,
)

from .approval import ApprovalBook, format_qa_message
from .commands import CommandProcess, CommandRunner
from .config import EngineConfig
from .errors import EngineError, InvalidStateError, NotRunningError
from .git_status import GitStatusPoller
from .models import (
    Activity,
    CommandLogLine,
    CommandStatus,
    ConnectionType,
    GitStatus,
    Message,
    MessageRole,
    PlanState,
    Project,
    ProjectCommand,
    Question,
    RepoLocation,
    SendOptions,
    Session,
    SshConfig,
    Thread,
    ThreadStatus,
    WslConfig,
)
from .multiplexer import SessionMultiplexer
from .providers.registry import ProviderRegistry, build_provider_registry
from .router import status_event
from .runners.base import CliHealth, ConnectionTestResult
from .runners.resolver import ContextResolver
from .runners.wsl import list_distros
from .supervisor import DEFAULT_THREAD_NAME, SupervisorRegistry, ThreadSupervisor
from .yaml_config import LoomFileConfig, ProjectConfig

logger = logging.getLogger(__name__)

PLAN_REJECTED_TEXT = "Plan rejected by user."
EXECUTE_PLAN_PREFIX = "Execute this plan:\n\n"
# Location fields a running process depends on.
_CONNECTION_FIELDS = frozenset({"path", "connection_type", "ssh", "wsl"})


def _ssh_config(raw: SshConfig | dict[str, Any] | None) -> SshConfig | None:
    if raw is None or isinstance(raw, SshConfig):
        return raw
    if not raw.get("host") or not raw.get("user"):
        raise InvalidStateError("ssh", "host and user are required")
    port = raw.get("port")
    return SshConfig(
        host=str(raw["host"]),
        user=str(raw["user"]),
        port=int(port) if port else None,
        key_path=raw.get("key_path") or None,
    )


def _wsl_config(raw: WslConfig | dict[str, Any] | None) -> WslConfig | None:
    if raw is None or isinstance(raw, WslConfig):
        return raw
    if not raw.get("distro"):
        raise InvalidStateError("wsl", "distro is required")
    return WslConfig(distro=str(raw["distro"]))


class ThreadEngine:
    """Main engine facade.

    Every operation that touches a thread's process runs under that
    thread's registry lock, so start, stop, send, plan decisions, answers
    and session switches never interleave for one thread.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        providers: ProviderRegistry | None = None,
        store: EngineStore | None = None,
        resolver: ContextResolver | None = None,
        importer: TranscriptImportService | None = None,
    ) -> None:
        self.config = config or EngineConfig.from_env()
        self.store = store or EngineStore()
        self.providers = providers or build_provider_registry()
        self.resolver = resolver or ContextResolver(
            ssh_connect_timeout=self.config.ssh_connect_timeout,
            stream_limit=self.config.max_frame_bytes,
        )
        self.hub = EventHub(warn_depth=self.config.subscriber_warn_depth)
        self.approvals = ApprovalBook()
        self.registry = SupervisorRegistry()
        self.supervisor = ThreadSupervisor(
            self.store, self.resolver, self.providers, self.hub,
            self.approvals, self.config, self.registry,
        )
        self.sessions = SessionMultiplexer(
            self.store, self.registry, self.approvals, self.hub, importer,
        )
        self.commands = CommandRunner(self.store, self.resolver, self.hub, self.config)
        self.git = GitStatusPoller(
            self.hub, self.resolver, interval=self.config.git_poll_interval_seconds,
        )

    @classmethod
    def from_file_config(cls, file_config: LoomFileConfig) -> ThreadEngine:
        """Engine with provider overrides applied and seed projects loaded."""
        engine = cls(
            config=file_config.engine,
            providers=build_provider_registry(file_config.providers),
        )
        engine.seed(file_config.projects)
        return engine

    def seed(self, projects: list[ProjectConfig]) -> None:
        for pcfg in projects:
            project = self.create_project(pcfg.name, pcfg.git_url)
            for loc in pcfg.locations:
                self.create_location(
                    project.id, loc.label, loc.path,
                    connection_type=(
                        ConnectionType.SSH if loc.ssh else
                        ConnectionType.WSL if loc.wsl else ConnectionType.LOCAL
                    ),
                    ssh=loc.ssh,
                    wsl=loc.wsl,
                )
            for i, cmd in enumerate(pcfg.commands):
                self.create_command(
                    project.id, cmd.name, cmd.command, cwd=cmd.cwd, shell=cmd.shell, sort_order=i,
                )
            logger.info(
                "Seeded project %s (%d locations, %d commands)",
                pcfg.name, len(pcfg.locations), len(pcfg.commands),
            )

    def _publish(self, thread_id: str, event: EngineEvent) -> EngineEvent:
        event.thread_id = thread_id
        if getattr(event, "session_id", "") is None:
            event.session_id = self.store.get_thread(thread_id).active_session_id
        return self.hub.publish(thread_channel(thread_id), event)

    # ── Projects ──

    def create_project(self, name: str, git_url: str | None = None) -> Project:
        if not name or not name.strip():
            raise InvalidStateError("project", "name is required")
        project = self.store.add_project(Project(name=name.strip(), git_url=git_url))
        logger.info("Created project %s (%s)", project.name, project.id)
        return project

    def list_projects(self) -> list[Project]:
        return self.store.list_projects()

    def update_project(self, project_id: str, **changes: Any) -> Project:
        return self.store.update_project(project_id, **changes)

    async def delete_project(self, project_id: str) -> None:
        """Stops everything the project runs, then deletes it with its children."""
        self.store.get_project(project_id)
        for thread in self.store.list_threads(project_id):
            await self.delete_thread(thread.id)
        for command in self.store.list_commands(project_id):
            await self.delete_command(command.id)
        self.store.delete_project(project_id)
        logger.info("Deleted project %s", project_id)

    # ── Locations ──

    def create_location(
        self,
        project_id: str,
        label: str,
        path: str,
        connection_type: ConnectionType | str = ConnectionType.LOCAL,
        ssh: SshConfig | dict[str, Any] | None = None,
        wsl: WslConfig | dict[str, Any] | None = None,
    ) -> RepoLocation:
        self.store.get_project(project_id)
        if not path:
            raise InvalidStateError(project_id, "location path is required")
        location = RepoLocation(
            project_id=project_id,
            label=label or path,
            path=path,
            connection_type=ConnectionType(connection_type),
            ssh=_ssh_config(ssh),
            wsl=_wsl_config(wsl),
        )
        # Fails early on a type without its connection settings.
        self.resolver.context_for(location)
        self.store.add_location(location)
        logger.info(
            "Added location %s (%s) to project %s",
            location.label, location.connection_type.value, project_id,
        )
        return location

    def list_locations(self, project_id: str) -> list[RepoLocation]:
        self.store.get_project(project_id)
        return self.store.list_locations(project_id)

    def _require_no_running_thread(self, location_id: str, action: str) -> RepoLocation:
        location = self.store.get_location(location_id)
        for thread in self.store.list_threads(location.project_id):
            if thread.location_id != location_id:
                continue
            if thread.status == ThreadStatus.RUNNING or self.registry.get(thread.id) is not None:
                raise InvalidStateError(
                    location_id, f"cannot {action}: thread {thread.id} is running on it",
                )
        return location

    def update_location(self, location_id: str, **changes: Any) -> RepoLocation:
        """Edits take effect on the next start; a new target is tested on first use."""
        if _CONNECTION_FIELDS.intersection(changes):
            self._require_no_running_thread(location_id, "change connection settings")
        if "connection_type" in changes:
            changes["connection_type"] = ConnectionType(changes["connection_type"])
        if "ssh" in changes:
            changes["ssh"] = _ssh_config(changes["ssh"])
        if "wsl" in changes:
            changes["wsl"] = _wsl_config(changes["wsl"])
        return self.store.update_location(location_id, **changes)

    async def delete_location(self, location_id: str) -> None:
        """Deletes the location and its stopped threads. Refused while one runs."""
        location = self._require_no_running_thread(location_id, "delete location")
        for thread in self.store.list_threads(location.project_id):
            if thread.location_id == location_id:
                await self.delete_thread(thread.id)
        self.store.delete_location(location_id)

    # ── Threads ──

    def create_thread(
        self,
        project_id: str,
        location_id: str,
        name: str | None = None,
        provider: str | None = None,
        model: str | None = None,
        use_wsl: bool = False,
        wsl_distro: str | None = None,
    ) -> Thread:
        """New idle thread with an empty first session."""
        location = self.store.get_location(location_id)
        if location.project_id != project_id:
            raise InvalidStateError(location_id, f"location does not belong to project {project_id}")
        provider_name = provider or self.config.default_provider
        self.providers.get_or_raise(provider_name)
        thread = self.store.add_thread(Thread(
            project_id=project_id,
            location_id=location_id,
            name=name or DEFAULT_THREAD_NAME,
            provider=provider_name,
            model=model or self.config.default_model,
            use_wsl=use_wsl,
            wsl_distro=wsl_distro,
        ))
        self.sessions.create_session(thread.id)
        logger.info("Created thread %s (%s) on location %s", thread.id, provider_name, location_id)
        return thread

    def get_thread(self, thread_id: str) -> Thread:
        return self.store.get_thread(thread_id)

    def list_threads(self, project_id: str) -> list[Thread]:
        self.store.get_project(project_id)
        return self.store.list_threads(project_id)

    def update_thread(self, thread_id: str, **changes: Any) -> Thread:
        if "provider" in changes:
            self.providers.get_or_raise(changes["provider"])
        return self.store.update_thread(thread_id, **changes)

    async def delete_thread(self, thread_id: str) -> None:
        async with self.registry.lock(thread_id):
            await self.supervisor.stop_locked(thread_id)
            self.store.delete_thread(thread_id)
        self.approvals.drop(thread_id)
        self.registry.forget(thread_id)
        self.hub.drop(thread_channel(thread_id))
        logger.info("Deleted thread %s", thread_id)

    # ── Thread process ──

    async def start_thread(self, thread_id: str) -> Thread:
        return await self.supervisor.start(thread_id)

    async def stop_thread(self, thread_id: str) -> Thread:
        return await self.supervisor.stop(thread_id)

    async def send(
        self,
        thread_id: str,
        content: str,
        options: SendOptions | None = None,
    ) -> Message:
        if not content or not content.strip():
            raise InvalidStateError(thread_id, "message is empty")
        return await self.supervisor.send(thread_id, content, options)

    def list_messages(self, thread_id: str, session_id: str | None = None) -> list[Message]:
        thread = self.store.get_thread(thread_id)
        session_id = session_id or thread.active_session_id
        if session_id is None:
            return []
        return self.store.list_messages(thread_id, session_id)

    def subscribe(self, thread_id: str) -> Subscription:
        self.store.get_thread(thread_id)
        return self.hub.subscribe(thread_channel(thread_id))

    # ── Plans ──

    async def approve_plan(self, thread_id: str) -> Thread:
        """Switch the assistant to execution and tell it to proceed."""
        async with self.registry.lock(thread_id):
            approval = self.approvals.get(thread_id)
            if approval.plan_state != PlanState.PROPOSED:
                raise InvalidStateError(
                    thread_id, f"cannot approve plan: plan state is {approval.plan_state.value}",
                )
            supervisor = self.supervisor.running(thread_id)
            approval.begin_approve()
            try:
                await supervisor.write_frames(supervisor.channel.encode_plan_decision(True))
            except NotRunningError:
                approval.restore_proposed()
                raise
            approval.finish()
            thread = supervisor.thread
            thread.activity = Activity.BUSY
            self._publish(thread_id, PlanResolved(outcome="approved"))
            self._publish(thread_id, status_event(thread))
            logger.info("Thread %s: plan approved", thread_id)
            return thread

    async def reject_plan(self, thread_id: str) -> Thread:
        """Discard the proposed plan. Allowed whether or not the process runs."""
        async with self.registry.lock(thread_id):
            thread = self.store.get_thread(thread_id)
            approval = self.approvals.get(thread_id)
            approval.begin_reject()
            session = self.supervisor.ensure_session(thread)
            self.store.append_message(Message(
                thread_id=thread_id,
                session_id=session.id,
                role=MessageRole.SYSTEM,
                content=PLAN_REJECTED_TEXT,
                metadata={"kind": "plan_rejected"},
            ))
            supervisor = self.registry.get(thread_id)
            if supervisor is not None and thread.status == ThreadStatus.RUNNING:
                try:
                    await supervisor.write_frames(supervisor.channel.encode_plan_decision(False))
                except NotRunningError as exc:
                    # The rejection is recorded either way.
                    logger.warning("Thread %s: rejection not delivered: %s", thread_id, exc)
            approval.finish()
            self._publish(thread_id, PlanResolved(outcome="rejected"))
            logger.info("Thread %s: plan rejected", thread_id)
            return thread

    async def execute_plan_in_new_context(self, thread_id: str) -> Session:
        """Run the proposed plan in a fresh session of the same thread.

        Stops the current process, opens an "Execution" session, switches
        to it, starts the thread again and sends the plan as the first
        message. Counts as approving the plan.
        """
        async with self.registry.lock(thread_id):
            approval = self.approvals.get(thread_id)
            plan = approval.begin_approve()
            try:
                await self.supervisor.stop_locked(thread_id)
                session = self.sessions.create_session(thread_id, prefix="Execution")
                self.sessions.switch_locked(thread_id, session.id)
                await self.supervisor.start_locked(thread_id)
                await self.supervisor.send_locked(
                    thread_id, EXECUTE_PLAN_PREFIX + plan, SendOptions(),
                )
            except EngineError:
                approval.propose(plan)
                raise
            approval.finish()
            self._publish(thread_id, PlanResolved(outcome="executed"))
            logger.info("Thread %s: executing plan in session %s", thread_id, session.id)
            return session

    # ── Questions ──

    def get_questions(self, thread_id: str) -> list[Question]:
        self.store.get_thread(thread_id)
        return list(self.approvals.get(thread_id).questions)

    async def answer_questions(self, thread_id: str, answers: dict[str, str]) -> Message:
        """Forward answers to the assistant and record them in the transcript."""
        async with self.registry.lock(thread_id):
            approval = self.approvals.get(thread_id)
            resolved = approval.resolve_answers(answers)
            supervisor = self.supervisor.running(thread_id)
            questions = list(approval.questions)
            # On failure the questions stay pending.
            await supervisor.write_frames(supervisor.channel.encode_answers(questions, resolved))
            thread = supervisor.thread
            message = self.store.append_message(Message(
                thread_id=thread_id,
                session_id=thread.active_session_id,
                role=MessageRole.USER,
                content=format_qa_message(questions, resolved),
                metadata={"kind": "answers"},
            ))
            approval.clear_questions()
            thread.activity = Activity.BUSY
            self._publish(thread_id, QuestionsAnswered(answers=resolved))
            self._publish(thread_id, status_event(thread))
            return message

    # ── Sessions ──

    def list_sessions(self, thread_id: str) -> list[Session]:
        return self.sessions.list_sessions(thread_id)

    def create_session(self, thread_id: str, name: str | None = None) -> Session:
        return self.sessions.create_session(thread_id, name)

    async def switch_session(self, thread_id: str, session_id: str) -> Thread:
        return await self.sessions.switch(thread_id, session_id)

    def list_importable(self, limit: int | None = 50) -> list[ImportSessionSummary]:
        return self.sessions.list_importable(limit)

    def import_session(
        self,
        project_id: str,
        location_id: str,
        source_path: str,
        session_id: str | None = None,
        name: str | None = None,
        provider: str = "claude",
    ) -> Thread:
        self.providers.get_or_raise(provider)
        return self.sessions.import_session(
            project_id, location_id, source_path,
            session_id=session_id, name=name, provider=provider,
        )

    # ── Project commands ──

    def create_command(
        self,
        project_id: str,
        name: str,
        command: str,
        cwd: str | None = None,
        shell: str = "default",
        sort_order: int | None = None,
    ) -> ProjectCommand:
        if not name or not command:
            raise InvalidStateError(project_id, "command name and command line are required")
        if sort_order is None:
            sort_order = len(self.store.list_commands(project_id))
        return self.store.add_command(ProjectCommand(
            project_id=project_id,
            name=name,
            command=command,
            cwd=cwd or None,
            shell=shell or "default",
            sort_order=sort_order,
        ))

    def list_commands(self, project_id: str) -> list[ProjectCommand]:
        self.store.get_project(project_id)
        return self.store.list_commands(project_id)

    def update_command(self, command_id: str, **changes: Any) -> ProjectCommand:
        return self.store.update_command(command_id, **changes)

    async def delete_command(self, command_id: str) -> None:
        self.store.get_command(command_id)
        await self.commands.stop_all(command_id=command_id)
        self.commands.forget(command_id)
        self.store.delete_command(command_id)
        self.hub.drop(command_channel(command_id))

    async def start_command(self, command_id: str, location_id: str | None = None) -> CommandProcess:
        return await self.commands.start(command_id, location_id)

    async def stop_command(self, command_id: str, location_id: str | None = None) -> CommandProcess | None:
        return await self.commands.stop(command_id, location_id)

    async def restart_command(self, command_id: str, location_id: str | None = None) -> CommandProcess:
        return await self.commands.restart(command_id, location_id)

    def command_status(self, command_id: str, location_id: str | None = None) -> CommandStatus:
        return self.commands.get_status(command_id, location_id)

    def command_logs(self, command_id: str, location_id: str | None = None) -> list[CommandLogLine]:
        return self.commands.get_logs(command_id, location_id)

    def subscribe_command(self, command_id: str) -> Subscription:
        self.store.get_command(command_id)
        return self.hub.subscribe(command_channel(command_id))

    # ── Connectivity ──

    async def test_ssh(self, ssh: SshConfig | dict[str, Any]) -> ConnectionTestResult:
        return await self.resolver.test(self.resolver.ssh_context(_ssh_config(ssh)))

    async def test_wsl(self, distro: str) -> ConnectionTestResult:
        return await self.resolver.test(self.resolver.wsl_context(WslConfig(distro=distro)))

    async def list_distros(self) -> list[str]:
        return await list_distros()

    async def cli_health(self, location_id: str, provider: str | None = None) -> CliHealth:
        """Whether the provider's CLI runs at the location, and its version."""
        location = self.store.get_location(location_id)
        cli = self.providers.get_or_raise(provider or self.config.default_provider)
        context = await self.resolver.resolve(location)
        if context.kind == "local":
            return await context.check_cli(cli.command)
        return await context.check_cli(
            cli.remote_binary or cli.command, preamble=list(cli.remote_preamble),
        )

    # ── Git ──

    async def git_status(self, location_id: str) -> GitStatus:
        return await self.git.refresh(self.store.get_location(location_id))

    def subscribe_git(self, location_id: str) -> Subscription:
        return self.git.subscribe(self.store.get_location(location_id))

    def unsubscribe_git(self, subscription: Subscription) -> None:
        self.git.unsubscribe(subscription)

    # ── Shutdown ──

    async def shutdown(self) -> None:
        """Stop every thread process and command, cancel git polling."""
        logger.info(
            "Engine shutdown: %d running thread(s)", len(self.registry),
        )
        await self.supervisor.stop_all()
        await self.commands.stop_all()
        await self.git.close()
