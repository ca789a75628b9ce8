"""OpenAI Codex CLI provider.

Runs `codex proto`, which reads JSON submissions on stdin and writes one
protocol event per stdout line for as long as it lives. The parser also
understands the item vocabulary of `codex exec --json` so transcripts and
older builds produce the same events.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any

from threadloom.adapters.events import (
    EngineEvent,
    ErrorRaised,
    MessageDelta,
    ProviderSessionStarted,
    ThinkingDelta,
    TokenUsageUpdated,
    ToolInvocation,
    ToolResult,
    TurnCompleted,
)

from ..runners.shell import RESOLVE_CODEX_BIN
from .base import (
    MalformedFrame,
    Provider,
    ProviderChannel,
    SpawnRequest,
    StreamParser,
    history_preamble,
)
from .claude_provider import APPROVE_TEXT, REJECT_TEXT

logger = logging.getLogger(__name__)

_BASH_WRAPPER = re.compile(r"^(?:/bin/bash|bash)\s+-lc\s+([\s\S]+)$")


def parse_bash_command(raw: str) -> tuple[str, str]:
    """Strip a `bash -lc "..."` wrapper. Returns (tool name, inner command)."""
    match = _BASH_WRAPPER.match(raw.strip())
    if not match:
        return "Shell", raw
    arg = match.group(1).strip()
    if len(arg) >= 2 and arg[0] == arg[-1] and arg[0] in ("'", '"'):
        arg = arg[1:-1]
    return "Bash", arg


def _tool_invocation(call_id: str, command: Any) -> ToolInvocation:
    if isinstance(command, list):
        parts = [str(p) for p in command]
        if len(parts) == 3 and parts[0] in ("bash", "/bin/bash") and parts[1] == "-lc":
            name, inner = "Bash", parts[2]
        else:
            name, inner = "Shell", " ".join(parts)
    else:
        name, inner = parse_bash_command(str(command or ""))
    return ToolInvocation(tool_call_id=call_id, tool_name=name, tool_input={"command": inner})


class CodexStreamParser(StreamParser):
    """Parser for `codex proto` events and `codex exec --json` items."""

    def __init__(self) -> None:
        self.session_id: str | None = None
        # Text already delivered through deltas; the full message that
        # follows must not be emitted again.
        self._streamed_message = False
        self._streamed_reasoning = False
        self._streamed_items: set[str] = set()
        self._announced_items: set[str] = set()
        self._completed_items: set[str] = set()
        self._tool_names: dict[str, str] = {}

    def handle(self, frame: dict[str, Any]) -> list[EngineEvent]:
        msg = frame.get("msg")
        if isinstance(msg, dict):
            return self._on_proto(msg)
        if isinstance(frame.get("type"), str):
            return self._on_exec(frame)
        raise MalformedFrame("frame has neither msg nor type")

    def _note_session(self, session_id: Any, model: Any = None) -> list[EngineEvent]:
        if not isinstance(session_id, str) or not session_id or session_id == self.session_id:
            return []
        self.session_id = session_id
        return [ProviderSessionStarted(
            provider_session_id=session_id,
            model=model if isinstance(model, str) else None,
        )]

    # ── codex proto ──

    def _on_proto(self, msg: dict[str, Any]) -> list[EngineEvent]:
        msg_type = msg.get("type")
        if msg_type == "session_configured":
            return self._note_session(msg.get("session_id"), msg.get("model"))
        if msg_type == "task_started":
            self._streamed_message = False
            self._streamed_reasoning = False
            return []
        if msg_type == "agent_message_delta":
            delta = msg.get("delta") or ""
            if not delta:
                return []
            self._streamed_message = True
            return [MessageDelta(text=delta)]
        if msg_type == "agent_message":
            text = msg.get("message") or ""
            if self._streamed_message or not text:
                self._streamed_message = False
                return []
            return [MessageDelta(text=text)]
        if msg_type == "agent_reasoning_delta":
            delta = msg.get("delta") or ""
            if not delta:
                return []
            self._streamed_reasoning = True
            return [ThinkingDelta(text=delta)]
        if msg_type == "agent_reasoning":
            text = msg.get("text") or ""
            if self._streamed_reasoning or not text:
                self._streamed_reasoning = False
                return []
            return [ThinkingDelta(text=text)]
        if msg_type == "exec_command_begin":
            call_id = str(msg.get("call_id") or "")
            invocation = _tool_invocation(call_id, msg.get("command"))
            self._tool_names[call_id] = invocation.tool_name
            return [invocation]
        if msg_type == "exec_command_end":
            call_id = str(msg.get("call_id") or "")
            output = msg.get("aggregated_output")
            if output is None:
                output = (msg.get("stdout") or "") + (msg.get("stderr") or "")
            exit_code = msg.get("exit_code")
            return [ToolResult(
                tool_call_id=call_id,
                tool_name=self._tool_names.get(call_id, "Bash"),
                output=str(output),
                is_error=isinstance(exit_code, int) and exit_code != 0,
            )]
        if msg_type == "patch_apply_begin":
            call_id = str(msg.get("call_id") or "")
            changes = msg.get("changes")
            files = sorted(changes) if isinstance(changes, dict) else []
            self._tool_names[call_id] = "Edit"
            return [ToolInvocation(tool_call_id=call_id, tool_name="Edit", tool_input={"files": files})]
        if msg_type == "patch_apply_end":
            call_id = str(msg.get("call_id") or "")
            return [ToolResult(
                tool_call_id=call_id,
                tool_name="Edit",
                output=str(msg.get("stdout") or msg.get("stderr") or ""),
                is_error=not msg.get("success", True),
            )]
        if msg_type == "token_count":
            return self._on_token_count(msg)
        if msg_type == "task_complete":
            self._streamed_message = False
            self._streamed_reasoning = False
            return [TurnCompleted(result=str(msg.get("last_agent_message") or ""))]
        if msg_type == "error":
            return [ErrorRaised(kind="codex", message=str(msg.get("message") or "Unknown Codex error"))]
        return []

    def _on_token_count(self, msg: dict[str, Any]) -> list[EngineEvent]:
        info = msg.get("info")
        usage = msg
        window = None
        if isinstance(info, dict):
            last = info.get("last_token_usage")
            if not isinstance(last, dict):
                return []
            usage = last
        input_tokens = int(usage.get("input_tokens") or 0)
        output_tokens = int(usage.get("output_tokens") or 0)
        if input_tokens:
            window = input_tokens
        if not (input_tokens or output_tokens):
            return []
        return [TokenUsageUpdated(
            input_tokens=input_tokens, output_tokens=output_tokens, context_window=window,
        )]

    # ── codex exec --json ──

    def _on_exec(self, frame: dict[str, Any]) -> list[EngineEvent]:
        frame_type = frame["type"]
        if frame_type == "thread.started":
            return self._note_session(frame.get("thread_id"))
        if frame_type == "item.agentMessage.delta":
            delta = frame.get("delta") or ""
            if not delta:
                return []
            item_id = frame.get("item_id")
            if isinstance(item_id, str):
                self._streamed_items.add(item_id)
            return [MessageDelta(text=delta)]
        if frame_type == "item.started":
            return self._on_item_started(frame.get("item"))
        if frame_type == "item.completed":
            return self._on_item_completed(frame.get("item"))
        if frame_type == "turn.completed":
            events: list[EngineEvent] = []
            usage = frame.get("usage")
            if isinstance(usage, dict):
                input_tokens = int(usage.get("input_tokens") or 0)
                output_tokens = int(usage.get("output_tokens") or 0)
                if input_tokens or output_tokens:
                    events.append(TokenUsageUpdated(
                        input_tokens=input_tokens, output_tokens=output_tokens,
                    ))
            events.append(TurnCompleted())
            return events
        if frame_type in ("turn.failed", "error"):
            error = frame.get("error")
            if isinstance(error, dict):
                error = error.get("message")
            message = str(frame.get("message") or error or "Unknown Codex error")
            events = [ErrorRaised(kind="codex", message=message)]
            if frame_type == "turn.failed":
                events.append(TurnCompleted(is_error=True, result=message))
            return events
        return []

    def _item_invocation(self, item: dict[str, Any]) -> ToolInvocation:
        item_id = str(item.get("id") or "")
        if item.get("command"):
            invocation = _tool_invocation(item_id, item["command"])
        else:
            label = item.get("path") or item.get("label") or item.get("type") or "tool"
            invocation = ToolInvocation(
                tool_call_id=item_id,
                tool_name=str(item.get("type") or "tool"),
                tool_input={"target": str(label)},
            )
        self._tool_names[item_id] = invocation.tool_name
        return invocation

    def _on_item_started(self, item: Any) -> list[EngineEvent]:
        if not isinstance(item, dict):
            return []
        item_id = item.get("id")
        if item.get("type") in ("agent_message", "reasoning", None):
            return []
        # Codex sometimes replays items after turn.completed.
        if isinstance(item_id, str) and item_id in self._announced_items:
            return []
        if isinstance(item_id, str):
            self._announced_items.add(item_id)
        return [self._item_invocation(item)]

    def _on_item_completed(self, item: Any) -> list[EngineEvent]:
        if not isinstance(item, dict):
            return []
        item_id = item.get("id") if isinstance(item.get("id"), str) else None
        item_type = item.get("type")
        if item_type == "agent_message":
            text = item.get("text") or ""
            if not text or (item_id and item_id in self._streamed_items):
                return []
            return [MessageDelta(text=text)]
        if item_type == "reasoning":
            text = item.get("text") or ""
            return [ThinkingDelta(text=text)] if text else []
        if not item_type:
            return []
        if item_id and item_id in self._completed_items:
            return []
        if item_id:
            self._completed_items.add(item_id)
        events: list[EngineEvent] = []
        if not (item_id and item_id in self._announced_items):
            events.append(self._item_invocation(item))
        output = None
        for key in ("aggregated_output", "aggregate_output", "output", "content"):
            if item.get(key) is not None:
                output = item[key]
                break
        exit_code = item.get("exit_code")
        events.append(ToolResult(
            tool_call_id=item_id or "",
            tool_name=self._tool_names.get(item_id or "", str(item_type)),
            output=output if isinstance(output, str) else json.dumps(output) if output else "",
            is_error=item.get("status") == "failed" or (isinstance(exit_code, int) and exit_code != 0),
        ))
        return events


class CodexChannel(ProviderChannel):
    """Submissions for `codex proto`. Codex has no plan mode."""

    def __init__(self, preamble: str | None = None) -> None:
        super().__init__(CodexStreamParser(), preamble)
        self._submission_seq = 0

    def _user_input(self, text: str) -> str:
        self._submission_seq += 1
        return json.dumps({
            "id": str(self._submission_seq),
            "op": {"type": "user_input", "items": [{"type": "text", "text": text}]},
        })

    def encode_message(self, content: str, plan_mode: bool | None = None) -> list[str]:
        if plan_mode:
            logger.debug("Plan mode requested for a Codex thread; ignoring")
        return [self._user_input(self._take_preamble(content))]

    def encode_plan_decision(self, approved: bool) -> list[str]:
        return [self._user_input(APPROVE_TEXT if approved else REJECT_TEXT)]


class CodexProvider(Provider):
    """Provider backed by the `codex` CLI."""

    remote_preamble = [RESOLVE_CODEX_BIN]
    remote_binary = '"$CODEX_BIN"'

    @property
    def name(self) -> str:
        return "codex"

    def build_args(self, request: SpawnRequest) -> list[str]:
        args = ["proto"]
        model = self.resolve_model(request)
        if model:
            args += ["-c", f"model={model}"]
        return args

    def create_channel(self, request: SpawnRequest) -> ProviderChannel:
        # proto cannot resume a stored session; replay history instead.
        preamble = history_preamble(request.history) if request.history else None
        return CodexChannel(preamble=preamble)
