from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from conftest import wait_for_event
from threadloom.engine.config import EngineConfig
from threadloom.engine.engine import ThreadEngine
from threadloom.engine.errors import (
    AlreadyRunningError,
    IncompleteAnswerError,
    InvalidStateError,
    NotFoundError,
    NotRunningError,
    QuestionPendingError,
    RemoteConnectionError,
)
from threadloom.engine.models import (
    MessageRole,
    PlanState,
    SendOptions,
    ThreadStatus,
)
from threadloom.engine.providers.claude_provider import REJECT_TEXT, ClaudeProvider
from threadloom.engine.providers.registry import ProviderRegistry
from threadloom.engine.router import ThreadEventRouter
from threadloom.engine.runners.base import ConnectionTestResult
from threadloom.engine.runners.ssh import SshContext
from threadloom.shared.services.transcript_import import TranscriptImportService


def _engine(tmp_path: Path, cli: Path) -> ThreadEngine:
    providers = ProviderRegistry()
    providers.register("claude", ClaudeProvider(command=str(cli)))
    return ThreadEngine(
        config=EngineConfig(stop_grace_seconds=2.0),
        providers=providers,
        importer=TranscriptImportService(claude_root=tmp_path / ".claude"),
    )


def _thread(engine: ThreadEngine, tmp_path: Path):
    project = engine.create_project("demo")
    location = engine.create_location(project.id, "here", str(tmp_path))
    return engine.create_thread(project.id, location.id)


@pytest.mark.asyncio
async def test_start_send_stop_restart(tmp_path: Path, fake_claude_cli: Path) -> None:
    engine = _engine(tmp_path, fake_claude_cli)
    thread = _thread(engine, tmp_path)
    sub = engine.subscribe(thread.id)
    try:
        started = await engine.start_thread(thread.id)
        assert started.status == ThreadStatus.RUNNING

        message = await engine.send(thread.id, "hello there\nsecond line")
        assert message.role == MessageRole.USER
        await wait_for_event(sub, "turn_completed")

        messages = engine.list_messages(thread.id)
        assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert messages[1].content == "echo: hello there\nsecond line"

        thread = engine.get_thread(thread.id)
        assert thread.name == "hello there"
        assert thread.has_messages is True
        assert thread.usage.input_tokens == 10
        assert thread.usage.output_tokens == 5
        assert thread.usage.context_window == 100
        session = engine.store.get_session(thread.active_session_id)
        assert session.provider_session_id == "fake-session-1"

        stopped = await engine.stop_thread(thread.id)
        assert stopped.status == ThreadStatus.STOPPED
        assert len(engine.registry) == 0

        # stop is idempotent
        assert (await engine.stop_thread(thread.id)).status == ThreadStatus.STOPPED

        restarted = await engine.start_thread(thread.id)
        assert restarted.status == ThreadStatus.RUNNING
    finally:
        await engine.shutdown()
    assert engine.get_thread(thread.id).status == ThreadStatus.STOPPED


@pytest.mark.asyncio
async def test_tool_calls_are_recorded_in_order(tmp_path: Path, fake_claude_cli: Path) -> None:
    engine = _engine(tmp_path, fake_claude_cli)
    thread = _thread(engine, tmp_path)
    sub = engine.subscribe(thread.id)
    try:
        await engine.start_thread(thread.id)
        await engine.send(thread.id, "TOOL please")
        await wait_for_event(sub, "turn_completed")

        messages = engine.list_messages(thread.id)
        kinds = [m.metadata.get("kind") for m in messages]
        assert kinds == [None, "tool_invocation", "tool_result", None]
        assert messages[1].content == "Read"
        assert messages[1].metadata["tool_input"] == {"file_path": "README.md"}
        assert messages[2].content == "# readme"
        assert messages[2].metadata["tool_call_id"] == messages[1].metadata["tool_call_id"]
    finally:
        await engine.shutdown()


@pytest.mark.asyncio
async def test_concurrent_start_yields_one_process(tmp_path: Path, fake_claude_cli: Path) -> None:
    engine = _engine(tmp_path, fake_claude_cli)
    thread = _thread(engine, tmp_path)
    try:
        results = await asyncio.gather(
            engine.start_thread(thread.id),
            engine.start_thread(thread.id),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], AlreadyRunningError)
        assert len(engine.registry) == 1
    finally:
        await engine.shutdown()


@pytest.mark.asyncio
async def test_send_requires_running_thread(tmp_path: Path, fake_claude_cli: Path) -> None:
    engine = _engine(tmp_path, fake_claude_cli)
    thread = _thread(engine, tmp_path)
    with pytest.raises(NotRunningError):
        await engine.send(thread.id, "hi")
    with pytest.raises(InvalidStateError):
        await engine.send(thread.id, "   ")
    with pytest.raises(NotFoundError):
        await engine.send("missing", "hi")


@pytest.mark.asyncio
async def test_unreachable_ssh_location_fails_without_spawning(
    tmp_path: Path, fake_claude_cli: Path,
) -> None:
    engine = _engine(tmp_path, fake_claude_cli)
    project = engine.create_project("remote")
    location = engine.create_location(
        project.id, "box", "/srv/app", connection_type="ssh",
        ssh={"host": "build.example", "user": "ci"},
    )
    thread = engine.create_thread(project.id, location.id)

    verdict = ConnectionTestResult(ok=False, error="No route to host")
    with patch.object(SshContext, "test", new=AsyncMock(return_value=verdict)) as tested, \
            patch.object(SshContext, "spawn", new=AsyncMock()) as spawn:
        with pytest.raises(RemoteConnectionError) as exc_info:
            await engine.start_thread(thread.id)
        # The failed verdict sticks; no second connection test.
        with pytest.raises(RemoteConnectionError):
            await engine.start_thread(thread.id)

    assert "No route to host" in str(exc_info.value)
    assert tested.await_count == 1
    spawn.assert_not_awaited()
    assert engine.get_thread(thread.id).status == ThreadStatus.IDLE


@pytest.mark.asyncio
async def test_crash_moves_thread_to_error_and_allows_restart(
    tmp_path: Path, fake_claude_cli: Path,
) -> None:
    engine = _engine(tmp_path, fake_claude_cli)
    thread = _thread(engine, tmp_path)
    sub = engine.subscribe(thread.id)
    try:
        await engine.start_thread(thread.id)
        await engine.send(thread.id, "CRASH now")
        event = await wait_for_event(sub, "status_changed", lambda e: e.status == "error")

        thread = engine.get_thread(thread.id)
        assert thread.status == ThreadStatus.ERROR
        assert "code 3" in thread.error_detail
        assert "boom" in event.error_detail
        assert engine.registry.get(thread.id) is None

        restarted = await engine.start_thread(thread.id)
        assert restarted.status == ThreadStatus.RUNNING
        assert restarted.error_detail is None
    finally:
        await engine.shutdown()


@pytest.mark.asyncio
async def test_components_share_one_registry(tmp_path: Path, fake_claude_cli: Path) -> None:
    engine = _engine(tmp_path, fake_claude_cli)
    thread = _thread(engine, tmp_path)
    assert engine.supervisor.registry is engine.registry
    assert engine.sessions.registry is engine.registry
    try:
        await engine.start_thread(thread.id)
        assert len(engine.registry) == 1
        assert engine.registry.get(thread.id) is not None
    finally:
        await engine.shutdown()


@pytest.mark.asyncio
async def test_wrong_shape_frame_keeps_thread_running(tmp_path: Path, fake_claude_cli: Path) -> None:
    engine = _engine(tmp_path, fake_claude_cli)
    thread = _thread(engine, tmp_path)
    sub = engine.subscribe(thread.id)
    try:
        await engine.start_thread(thread.id)
        await engine.send(thread.id, "BADFRAME then echo")
        await wait_for_event(sub, "turn_completed")

        assert engine.get_thread(thread.id).status == ThreadStatus.RUNNING
        assert engine.registry.get(thread.id).router.malformed_frames == 1
        messages = engine.list_messages(thread.id)
        assert messages[-1].content == "echo: BADFRAME then echo"

        stopped = await engine.stop_thread(thread.id)
        assert stopped.status == ThreadStatus.STOPPED
        assert stopped.error_detail is None
    finally:
        await engine.shutdown()


@pytest.mark.asyncio
async def test_output_handler_failure_moves_thread_to_error(
    tmp_path: Path, fake_claude_cli: Path,
) -> None:
    engine = _engine(tmp_path, fake_claude_cli)
    thread = _thread(engine, tmp_path)
    sub = engine.subscribe(thread.id)
    try:
        await engine.start_thread(thread.id)
        await wait_for_event(sub, "provider_session_started")
        with patch.object(ThreadEventRouter, "dispatch", side_effect=RuntimeError("handler bug")):
            await engine.send(thread.id, "hello")
            event = await wait_for_event(sub, "status_changed", lambda e: e.status == "error")

        assert "handler bug" in event.error_detail
        assert engine.get_thread(thread.id).status == ThreadStatus.ERROR
        assert engine.registry.get(thread.id) is None
    finally:
        await engine.shutdown()


@pytest.mark.asyncio
async def test_restart_clears_a_stale_plan(tmp_path: Path, fake_claude_cli: Path) -> None:
    engine = _engine(tmp_path, fake_claude_cli)
    thread = _thread(engine, tmp_path)
    sub = engine.subscribe(thread.id)
    try:
        await engine.start_thread(thread.id)
        await engine.send(thread.id, "PLAN it", SendOptions(plan_mode=True))
        await wait_for_event(sub, "plan_proposed")
        await engine.stop_thread(thread.id)

        await engine.start_thread(thread.id)
        assert engine.approvals.get(thread.id).plan_state == PlanState.NONE
        with pytest.raises(InvalidStateError):
            await engine.approve_plan(thread.id)
    finally:
        await engine.shutdown()


@pytest.mark.asyncio
async def test_location_edits_refused_while_thread_runs(tmp_path: Path, fake_claude_cli: Path) -> None:
    engine = _engine(tmp_path, fake_claude_cli)
    thread = _thread(engine, tmp_path)
    location_id = thread.location_id
    try:
        await engine.start_thread(thread.id)

        with pytest.raises(InvalidStateError):
            await engine.delete_location(location_id)
        with pytest.raises(InvalidStateError):
            engine.update_location(location_id, path=str(tmp_path / "elsewhere"))
        assert engine.get_thread(thread.id).status == ThreadStatus.RUNNING
        assert engine.store.get_location(location_id).path == str(tmp_path)

        # Labels do not affect the running process.
        assert engine.update_location(location_id, label="renamed").label == "renamed"

        await engine.stop_thread(thread.id)
        await engine.delete_location(location_id)
        with pytest.raises(NotFoundError):
            engine.get_thread(thread.id)
    finally:
        await engine.shutdown()


@pytest.mark.asyncio
async def test_reject_plan_then_continue(tmp_path: Path, fake_claude_cli: Path) -> None:
    engine = _engine(tmp_path, fake_claude_cli)
    thread = _thread(engine, tmp_path)
    sub = engine.subscribe(thread.id)
    try:
        await engine.start_thread(thread.id)
        await engine.send(thread.id, "PLAN it", SendOptions(plan_mode=True))
        proposed = await wait_for_event(sub, "plan_proposed")
        assert proposed.plan.startswith("1. Add endpoint")
        assert engine.approvals.get(thread.id).plan_state == PlanState.PROPOSED

        await engine.reject_plan(thread.id)
        resolved = await wait_for_event(sub, "plan_resolved")
        assert resolved.outcome == "rejected"
        assert engine.approvals.get(thread.id).plan_state == PlanState.NONE
        # The running process is told to drop the plan.
        await wait_for_event(sub, "message_delta", lambda e: e.text == "echo: " + REJECT_TEXT)

        with pytest.raises(InvalidStateError):
            await engine.reject_plan(thread.id)

        await engine.send(thread.id, "carry on")
        await wait_for_event(
            sub, "message_delta", lambda e: e.text == "echo: carry on",
        )
        messages = engine.list_messages(thread.id)
        assert messages[0].metadata == {"plan_mode": True}
        assert any(m.metadata.get("kind") == "plan" for m in messages)
        rejected = [m for m in messages if m.metadata.get("kind") == "plan_rejected"]
        assert len(rejected) == 1
        assert rejected[0].role == MessageRole.SYSTEM
        assert rejected[0].content == "Plan rejected by user."
    finally:
        await engine.shutdown()


@pytest.mark.asyncio
async def test_approve_plan_resumes_execution(tmp_path: Path, fake_claude_cli: Path) -> None:
    engine = _engine(tmp_path, fake_claude_cli)
    thread = _thread(engine, tmp_path)
    sub = engine.subscribe(thread.id)
    try:
        with pytest.raises(InvalidStateError):
            await engine.approve_plan(thread.id)

        await engine.start_thread(thread.id)
        await engine.send(thread.id, "PLAN it", SendOptions(plan_mode=True))
        await wait_for_event(sub, "plan_proposed")

        await engine.approve_plan(thread.id)
        assert engine.approvals.get(thread.id).plan_state == PlanState.NONE
        await wait_for_event(
            sub, "message_delta", lambda e: e.text == "echo: Approved. Execute the plan.",
        )
        supervisor = engine.registry.get(thread.id)
        assert supervisor.channel.plan_mode is False
    finally:
        await engine.shutdown()


@pytest.mark.asyncio
async def test_execute_plan_in_new_session(tmp_path: Path, fake_claude_cli: Path) -> None:
    engine = _engine(tmp_path, fake_claude_cli)
    thread = _thread(engine, tmp_path)
    sub = engine.subscribe(thread.id)
    try:
        await engine.start_thread(thread.id)
        first_session = engine.get_thread(thread.id).active_session_id
        await engine.send(thread.id, "PLAN it", SendOptions(plan_mode=True))
        await wait_for_event(sub, "plan_proposed")

        session = await engine.execute_plan_in_new_context(thread.id)
        assert session.name == "Execution"
        thread = engine.get_thread(thread.id)
        assert thread.active_session_id == session.id
        assert thread.status == ThreadStatus.RUNNING
        assert engine.approvals.get(thread.id).plan_state == PlanState.NONE

        await wait_for_event(sub, "turn_completed", lambda e: e.session_id == session.id)
        messages = engine.list_messages(thread.id)
        assert messages[0].content.startswith("Execute this plan:\n\n1. Add endpoint")
        # The planning conversation stays in its own session.
        planning = engine.list_messages(thread.id, first_session)
        assert planning[0].content == "PLAN it"
        assert [s.name for s in engine.list_sessions(thread.id)] == ["Session 1", "Execution"]
    finally:
        await engine.shutdown()


@pytest.mark.asyncio
async def test_questions_block_send_until_answered(tmp_path: Path, fake_claude_cli: Path) -> None:
    engine = _engine(tmp_path, fake_claude_cli)
    thread = _thread(engine, tmp_path)
    sub = engine.subscribe(thread.id)
    try:
        await engine.start_thread(thread.id)
        await engine.send(thread.id, "ASK me")
        raised = await wait_for_event(sub, "question_raised")
        assert raised.questions[0]["prompt"] == "Which database?"

        questions = engine.get_questions(thread.id)
        assert len(questions) == 1
        assert [o.label for o in questions[0].options] == ["sqlite", "postgres"]

        with pytest.raises(QuestionPendingError):
            await engine.send(thread.id, "something else")
        with pytest.raises(IncompleteAnswerError):
            await engine.answer_questions(thread.id, {})

        message = await engine.answer_questions(thread.id, {"Which database?": "sqlite"})
        assert message.content == "**DB**: Which database?\n→ sqlite"
        assert message.metadata == {"kind": "answers"}
        assert engine.get_questions(thread.id) == []

        await wait_for_event(
            sub, "message_delta", lambda e: e.text == "echo: Which database?: sqlite",
        )
    finally:
        await engine.shutdown()


@pytest.mark.asyncio
async def test_switch_session_only_while_stopped(tmp_path: Path, fake_claude_cli: Path) -> None:
    engine = _engine(tmp_path, fake_claude_cli)
    thread = _thread(engine, tmp_path)
    second = engine.create_session(thread.id)
    assert second.name == "Session 2"
    try:
        await engine.start_thread(thread.id)
        with pytest.raises(InvalidStateError):
            await engine.switch_session(thread.id, second.id)
        await engine.stop_thread(thread.id)

        switched = await engine.switch_session(thread.id, second.id)
        assert switched.active_session_id == second.id
        assert engine.list_messages(thread.id) == []
    finally:
        await engine.shutdown()


@pytest.mark.asyncio
async def test_delete_thread_stops_its_process(tmp_path: Path, fake_claude_cli: Path) -> None:
    engine = _engine(tmp_path, fake_claude_cli)
    thread = _thread(engine, tmp_path)
    try:
        await engine.start_thread(thread.id)
        supervisor = engine.registry.get(thread.id)
        await engine.delete_thread(thread.id)

        assert supervisor.alive is False
        assert len(engine.registry) == 0
        with pytest.raises(NotFoundError):
            engine.get_thread(thread.id)
    finally:
        await engine.shutdown()


def test_create_thread_validates_location_and_provider(tmp_path: Path, fake_claude_cli: Path) -> None:
    engine = _engine(tmp_path, fake_claude_cli)
    project = engine.create_project("a")
    other = engine.create_project("b")
    location = engine.create_location(other.id, "there", str(tmp_path))

    with pytest.raises(InvalidStateError):
        engine.create_thread(project.id, location.id)
    with pytest.raises(InvalidStateError):
        engine.create_thread(other.id, location.id, provider="unknown")

    thread = engine.create_thread(other.id, location.id)
    assert thread.name == "New thread"
    assert [s.name for s in engine.list_sessions(thread.id)] == ["Session 1"]


def test_create_location_requires_connection_settings(tmp_path: Path, fake_claude_cli: Path) -> None:
    engine = _engine(tmp_path, fake_claude_cli)
    project = engine.create_project("demo")
    with pytest.raises(InvalidStateError):
        engine.create_location(project.id, "box", "/srv", connection_type="ssh")
    with pytest.raises(InvalidStateError):
        engine.create_location(project.id, "box", "/srv", connection_type="ssh", ssh={"host": "h"})
    assert engine.list_locations(project.id) == []


def test_seed_from_file_config(tmp_path: Path) -> None:
    from threadloom.engine.yaml_config import load_yaml_config

    config_path = tmp_path / "threadloom.yaml"
    config_path.write_text(
        "projects:\n"
        "  webapp:\n"
        "    locations:\n"
        f"      - label: here\n        path: {tmp_path}\n"
        "      - label: box\n        path: /srv/webapp\n"
        "        ssh: {host: build.example, user: ci, port: 2222}\n"
        "    commands:\n"
        "      - name: dev\n        command: npm run dev\n"
        "      - name: test\n        command: npm test\n",
        encoding="utf-8",
    )
    engine = ThreadEngine.from_file_config(load_yaml_config(config_path, base=EngineConfig()))

    [project] = engine.list_projects()
    assert project.name == "webapp"
    locations = engine.list_locations(project.id)
    assert [loc.connection_type.value for loc in locations] == ["local", "ssh"]
    assert locations[1].ssh.port == 2222
    assert [c.name for c in engine.list_commands(project.id)] == ["dev", "test"]
