from __future__ import annotations

import asyncio
import stat
import sys
import textwrap
from pathlib import Path

import pytest

from threadloom.adapters.event_bus import Subscription
from threadloom.adapters.events import EngineEvent

# Speaks enough of `claude --print --input-format stream-json` for the
# engine: an init frame on startup, then one turn per user line. Keywords
# in the message pick the reply. BADFRAME sends a frame of the wrong
# shape ahead of the echo.
FAKE_CLAUDE = textwrap.dedent('''
    import json
    import sys

    def emit(frame):
        sys.stdout.write(json.dumps(frame) + "\\n")
        sys.stdout.flush()

    def result(text):
        emit({
            "type": "result",
            "subtype": "success",
            "is_error": False,
            "result": text,
            "session_id": "fake-session-1",
            "duration_ms": 12,
            "total_cost_usd": 0.001,
            "usage": {"input_tokens": 10, "output_tokens": 5},
        })

    emit({"type": "system", "subtype": "init", "session_id": "fake-session-1", "model": "fake-model"})
    turn = 0
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        frame = json.loads(line)
        if frame.get("type") == "control_request":
            emit({"type": "control_response", "response": {
                "subtype": "success", "request_id": frame.get("request_id"),
            }})
            continue
        if frame.get("type") != "user":
            continue
        turn += 1
        text = "".join(b.get("text", "") for b in frame["message"]["content"])
        msg_id = "msg_%d" % turn
        if "CRASH" in text:
            sys.stderr.write("boom: simulated failure\\n")
            sys.stderr.flush()
            sys.exit(3)
        if "PLAN" in text:
            emit({"type": "assistant", "message": {"id": msg_id, "content": [
                {"type": "tool_use", "id": "plan_%d" % turn, "name": "ExitPlanMode",
                 "input": {"plan": "1. Add endpoint\\n2. Add test"}},
            ]}})
            emit({"type": "user", "message": {"content": [
                {"type": "tool_result", "tool_use_id": "plan_%d" % turn, "content": "waiting"},
            ]}})
            result("")
            continue
        if "ASK" in text:
            emit({"type": "assistant", "message": {"id": msg_id, "content": [
                {"type": "tool_use", "id": "ask_%d" % turn, "name": "AskUserQuestion",
                 "input": {"questions": [{
                     "question": "Which database?",
                     "header": "DB",
                     "options": [{"label": "sqlite"}, {"label": "postgres"}],
                     "multiSelect": False,
                 }]}},
            ]}})
            result("")
            continue
        if "BADFRAME" in text:
            emit({"type": "assistant", "message": {"id": msg_id, "content": 5}})
        if "TOOL" in text:
            emit({"type": "assistant", "message": {"id": msg_id, "content": [
                {"type": "tool_use", "id": "tool_%d" % turn, "name": "Read",
                 "input": {"file_path": "README.md"}},
            ]}})
            emit({"type": "user", "message": {"content": [
                {"type": "tool_result", "tool_use_id": "tool_%d" % turn,
                 "content": [{"type": "text", "text": "# readme"}]},
            ]}})
        emit({"type": "assistant", "message": {
            "id": msg_id + "_text",
            "content": [{"type": "text", "text": "echo: " + text}],
            "usage": {"input_tokens": 10, "cache_read_input_tokens": 90},
        }})
        result("echo: " + text)
''')


@pytest.fixture
def fake_claude_cli(tmp_path: Path) -> Path:
    script = tmp_path / "fake-claude"
    script.write_text(f"#!{sys.executable}\n{FAKE_CLAUDE}", encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


async def wait_for_event(
    subscription: Subscription,
    event_type: str,
    predicate=None,
    timeout: float = 10.0,
) -> EngineEvent:
    """Next event of event_type (matching predicate) on subscription."""

    async def _next() -> EngineEvent:
        while True:
            event = await subscription.get()
            if event is None:
                raise AssertionError(f"subscription closed before {event_type}")
            if event.event_type == event_type and (predicate is None or predicate(event)):
                return event

    return await asyncio.wait_for(_next(), timeout=timeout)
