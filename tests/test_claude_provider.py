from __future__ import annotations

import json

import pytest

from threadloom.adapters.events import (
    ErrorRaised,
    MessageDelta,
    PlanProposed,
    ProviderSessionStarted,
    QuestionRaised,
    RateLimitUpdated,
    ThinkingDelta,
    TokenUsageUpdated,
    ToolInvocation,
    ToolResult,
    TurnCompleted,
)
from threadloom.engine.models import Message, MessageRole
from threadloom.engine.providers.base import MalformedFrame, SpawnRequest
from threadloom.engine.providers.claude_provider import (
    APPROVE_TEXT,
    REJECT_TEXT,
    ClaudeChannel,
    ClaudeProvider,
    ClaudeStreamParser,
)


def _history() -> list[Message]:
    return [
        Message(thread_id="t", session_id="s", role=MessageRole.USER, content="Fix the bug"),
        Message(
            thread_id="t", session_id="s", role=MessageRole.TOOL, content="Read",
            metadata={"kind": "tool_invocation", "tool_input": {"file_path": "a.py"}},
        ),
        Message(thread_id="t", session_id="s", role=MessageRole.ASSISTANT, content="Done."),
    ]


def test_build_args_default_and_plan_mode() -> None:
    provider = ClaudeProvider(default_model="claude-sonnet-4-5")

    args = provider.build_args(SpawnRequest(cwd="/repo"))
    assert args[:6] == [
        "--print", "--input-format", "stream-json", "--output-format", "stream-json", "--verbose",
    ]
    assert "--dangerously-skip-permissions" in args
    assert args[-2:] == ["--model", "claude-sonnet-4-5"]

    args = provider.build_args(SpawnRequest(cwd="/repo", model="opus", plan_mode=True, resume_id="abc"))
    assert "--dangerously-skip-permissions" not in args
    assert args[args.index("--permission-mode") + 1] == "plan"
    assert args[args.index("--model") + 1] == "opus"
    assert args[-2:] == ["--resume", "abc"]


def test_build_command_runs_configured_binary() -> None:
    command = ClaudeProvider(command="/opt/claude").build_command(SpawnRequest(cwd="~/src"))
    assert command.binary == "/opt/claude"
    assert command.cwd == "~/src"
    assert command.remote_binary is None
    assert command.preamble == []


def test_history_is_replayed_only_without_resume() -> None:
    provider = ClaudeProvider()

    channel = provider.create_channel(SpawnRequest(cwd="/repo", history=_history()))
    [first] = channel.encode_message("Next step")
    text = json.loads(first)["message"]["content"][0]["text"]
    assert text.startswith("Previous conversation in this session:")
    assert "User: Fix the bug" in text
    assert '[tool Read] {"file_path": "a.py"}' in text
    assert "Assistant: Done." in text
    assert text.endswith("Continue from here.\n\nNext step")

    [second] = channel.encode_message("And another")
    assert json.loads(second)["message"]["content"][0]["text"] == "And another"

    resumed = provider.create_channel(SpawnRequest(cwd="/repo", resume_id="abc", history=_history()))
    [frame] = resumed.encode_message("Next step")
    assert json.loads(frame)["message"]["content"][0]["text"] == "Next step"


def test_permission_frame_only_when_mode_changes() -> None:
    channel = ClaudeChannel(plan_mode=False)

    assert len(channel.encode_message("a", plan_mode=False)) == 1
    assert len(channel.encode_message("b")) == 1

    control, user = channel.encode_message("c", plan_mode=True)
    control = json.loads(control)
    assert control["type"] == "control_request"
    assert control["request_id"] == "req_1"
    assert control["request"] == {"subtype": "set_permission_mode", "mode": "plan"}
    assert json.loads(user) == {
        "type": "user",
        "message": {"role": "user", "content": [{"type": "text", "text": "c"}]},
    }
    assert channel.plan_mode is True


def test_plan_decision_frames() -> None:
    channel = ClaudeChannel(plan_mode=True)

    bypass, approve = channel.encode_plan_decision(True)
    assert json.loads(bypass)["request"]["mode"] == "bypassPermissions"
    assert json.loads(approve)["message"]["content"][0]["text"] == APPROVE_TEXT
    assert channel.plan_mode is False

    [reject] = ClaudeChannel(plan_mode=True).encode_plan_decision(False)
    assert json.loads(reject)["message"]["content"][0]["text"] == REJECT_TEXT


def test_parse_line_rejects_non_frames() -> None:
    parser = ClaudeStreamParser()
    assert parser.parse_line("   ") == []
    with pytest.raises(MalformedFrame):
        parser.parse_line("{not json")
    with pytest.raises(MalformedFrame):
        parser.parse_line('"a string"')
    with pytest.raises(MalformedFrame):
        parser.parse_line('{"no_type": 1}')
    assert parser.parse_line('{"type": "stream_event"}') == []


def test_system_init_reports_session_once() -> None:
    parser = ClaudeStreamParser()
    init = {"type": "system", "subtype": "init", "session_id": "s-1", "model": "claude-opus"}

    [event] = parser.handle(init)
    assert isinstance(event, ProviderSessionStarted)
    assert event.provider_session_id == "s-1"
    assert event.model == "claude-opus"
    assert parser.handle(init) == []
    assert parser.handle({"type": "system", "subtype": "hook_started"}) == []


def test_assistant_blocks() -> None:
    parser = ClaudeStreamParser()
    events = parser.handle({"type": "assistant", "message": {
        "id": "msg_1",
        "content": [
            {"type": "thinking", "thinking": "Let me look"},
            {"type": "text", "text": "Reading it."},
            {"type": "tool_use", "id": "tu_1", "name": "Read", "input": {"file_path": "x.py"}},
        ],
        "usage": {"input_tokens": 3, "cache_read_input_tokens": 10, "cache_creation_input_tokens": 7},
    }})

    thinking, text, tool, usage = events
    assert isinstance(thinking, ThinkingDelta) and thinking.text == "Let me look"
    assert isinstance(text, MessageDelta) and text.message_id == "msg_1"
    assert isinstance(tool, ToolInvocation)
    assert (tool.tool_call_id, tool.tool_name, tool.tool_input) == ("tu_1", "Read", {"file_path": "x.py"})
    assert isinstance(usage, TokenUsageUpdated) and usage.context_window == 20

    [result] = parser.handle({"type": "user", "message": {"content": [
        {"type": "tool_result", "tool_use_id": "tu_1", "content": [{"type": "text", "text": "print(1)"}]},
    ]}})
    assert isinstance(result, ToolResult)
    assert result.tool_name == "Read"
    assert result.output == "print(1)"
    assert result.is_error is False


def test_plan_and_question_tools_become_their_own_events() -> None:
    parser = ClaudeStreamParser()
    plan, question = parser.handle({"type": "assistant", "message": {"content": [
        {"type": "tool_use", "id": "p", "name": "ExitPlanMode", "input": {"plan": "Step 1"}},
        {"type": "tool_use", "id": "q", "name": "AskUserQuestion", "input": {"questions": [{
            "question": "Which?", "header": "Pick",
            "options": [{"label": "A", "description": "first"}], "multiSelect": True,
        }]}},
    ]}})

    assert isinstance(plan, PlanProposed) and plan.plan == "Step 1"
    assert isinstance(question, QuestionRaised)
    assert question.questions == [{
        "question": "Which?", "header": "Pick",
        "options": [{"label": "A", "description": "first"}], "multi_select": True,
    }]
    # Their tool results are not surfaced.
    assert parser.handle({"type": "user", "message": {"content": [
        {"type": "tool_result", "tool_use_id": "p", "content": "ok"},
        {"type": "tool_result", "tool_use_id": "q", "content": "ok"},
    ]}}) == []


def test_result_frames() -> None:
    parser = ClaudeStreamParser()
    usage, done = parser.handle({
        "type": "result", "subtype": "success", "result": "All done",
        "duration_ms": 1234, "total_cost_usd": 0.05,
        "usage": {"input_tokens": 100, "output_tokens": 40},
    })
    assert isinstance(usage, TokenUsageUpdated)
    assert (usage.input_tokens, usage.output_tokens, usage.context_window) == (100, 40, None)
    assert isinstance(done, TurnCompleted)
    assert (done.is_error, done.result, done.duration_ms, done.cost_usd) == (False, "All done", 1234, 0.05)

    error, done = parser.handle({"type": "result", "subtype": "error_max_turns"})
    assert isinstance(error, ErrorRaised)
    assert (error.kind, error.message) == ("result", "error_max_turns")
    assert done.is_error is True


def test_rate_limit_and_control_errors() -> None:
    parser = ClaudeStreamParser()
    [limit] = parser.handle({"type": "rate_limit_event", "rate_limit_info": {"status": "allowed"}})
    assert isinstance(limit, RateLimitUpdated) and limit.info == {"status": "allowed"}

    [error] = parser.handle({"type": "control_response", "response": {
        "subtype": "error", "request_id": "req_1", "error": "unknown mode",
    }})
    assert isinstance(error, ErrorRaised) and error.kind == "control"
    assert parser.handle({"type": "control_response", "response": {"subtype": "success"}}) == []
