"""Claude Code CLI provider.

Runs `claude --print` with stream-json on both stdin and stdout, so one
process serves a whole conversation: user messages and control requests
are written as JSON lines, and every stdout line is one JSON frame.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from threadloom.adapters.events import (
    EngineEvent,
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

from .base import MalformedFrame, Provider, ProviderChannel, SpawnRequest, StreamParser

logger = logging.getLogger(__name__)

PLAN_TOOL = "ExitPlanMode"
QUESTION_TOOL = "AskUserQuestion"

APPROVE_TEXT = "Approved. Execute the plan."
REJECT_TEXT = "The plan was rejected. Do not carry it out; wait for new instructions."


def _block_text(raw: Any) -> str:
    """tool_result content is a string or a list of text blocks."""
    if isinstance(raw, str):
        return raw
    if isinstance(raw, list):
        return "".join(
            str(item.get("text", ""))
            for item in raw
            if isinstance(item, dict) and item.get("type") == "text"
        )
    if raw is None:
        return ""
    return json.dumps(raw)


def _normalize_questions(raw: Any) -> list[dict[str, Any]]:
    questions = []
    for item in raw if isinstance(raw, list) else []:
        if not isinstance(item, dict):
            continue
        options = []
        for opt in item.get("options") or []:
            if isinstance(opt, dict):
                options.append({
                    "label": str(opt.get("label", "")),
                    "description": str(opt.get("description", "")),
                })
            elif isinstance(opt, str):
                options.append({"label": opt, "description": ""})
        questions.append({
            "question": str(item.get("question", "")),
            "header": str(item.get("header", "")),
            "options": options,
            "multi_select": bool(item.get("multiSelect", False)),
        })
    return questions


class ClaudeStreamParser(StreamParser):
    """Parser for `--output-format stream-json` frames."""

    def __init__(self) -> None:
        self.session_id: str | None = None
        # Plan and question tool calls are surfaced as their own events;
        # their tool results are not shown.
        self._special_tool_ids: set[str] = set()
        self._tool_names: dict[str, str] = {}

    def handle(self, frame: dict[str, Any]) -> list[EngineEvent]:
        frame_type = frame.get("type")
        if not isinstance(frame_type, str):
            raise MalformedFrame("frame has no type")
        if frame_type == "system":
            return self._on_system(frame)
        if frame_type == "assistant":
            return self._on_assistant(frame)
        if frame_type == "user":
            return self._on_user(frame)
        if frame_type == "result":
            return self._on_result(frame)
        if frame_type == "rate_limit_event":
            info = frame.get("rate_limit_info")
            return [RateLimitUpdated(info=info)] if isinstance(info, dict) else []
        if frame_type == "control_response":
            return self._on_control_response(frame)
        return []

    def _note_session(self, session_id: Any, model: Any = None) -> list[EngineEvent]:
        if not isinstance(session_id, str) or not session_id or session_id == self.session_id:
            return []
        self.session_id = session_id
        return [ProviderSessionStarted(
            provider_session_id=session_id,
            model=model if isinstance(model, str) else None,
        )]

    def _on_system(self, frame: dict[str, Any]) -> list[EngineEvent]:
        if frame.get("subtype") != "init":
            return []
        return self._note_session(frame.get("session_id"), frame.get("model"))

    def _on_assistant(self, frame: dict[str, Any]) -> list[EngineEvent]:
        message = frame.get("message")
        if not isinstance(message, dict):
            raise MalformedFrame("assistant frame without message")
        message_id = message.get("id") if isinstance(message.get("id"), str) else None
        events: list[EngineEvent] = []
        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "thinking":
                thinking = block.get("thinking") or ""
                if thinking:
                    events.append(ThinkingDelta(text=thinking))
            elif block_type == "text":
                text = block.get("text") or ""
                if text:
                    events.append(MessageDelta(text=text, message_id=message_id))
            elif block_type == "tool_use":
                events.append(self._on_tool_use(block, message_id))

        usage = message.get("usage")
        if isinstance(usage, dict):
            # Prompt size of the latest request, cache included.
            window = sum(
                int(usage.get(key) or 0)
                for key in ("input_tokens", "cache_read_input_tokens", "cache_creation_input_tokens")
            )
            if window:
                events.append(TokenUsageUpdated(context_window=window))
        return events

    def _on_tool_use(self, block: dict[str, Any], message_id: str | None) -> EngineEvent:
        name = str(block.get("name") or "unknown")
        tool_id = str(block.get("id") or "")
        tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
        if name == PLAN_TOOL:
            self._special_tool_ids.add(tool_id)
            return PlanProposed(plan=str(tool_input.get("plan", "")))
        if name == QUESTION_TOOL:
            self._special_tool_ids.add(tool_id)
            return QuestionRaised(questions=_normalize_questions(tool_input.get("questions")))
        self._tool_names[tool_id] = name
        return ToolInvocation(
            tool_call_id=tool_id,
            tool_name=name,
            tool_input=tool_input,
            message_id=message_id,
        )

    def _on_user(self, frame: dict[str, Any]) -> list[EngineEvent]:
        message = frame.get("message")
        if not isinstance(message, dict):
            return []
        content = message.get("content")
        if not isinstance(content, list):
            return []
        events: list[EngineEvent] = []
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            tool_use_id = str(block.get("tool_use_id") or "")
            if tool_use_id in self._special_tool_ids:
                continue
            events.append(ToolResult(
                tool_call_id=tool_use_id,
                tool_name=self._tool_names.get(tool_use_id, ""),
                output=_block_text(block.get("content")),
                is_error=bool(block.get("is_error", False)),
            ))
        return events

    def _on_result(self, frame: dict[str, Any]) -> list[EngineEvent]:
        events = self._note_session(frame.get("session_id"))
        subtype = str(frame.get("subtype") or "")
        is_error = bool(frame.get("is_error")) or subtype.startswith("error")
        result_text = frame.get("result")
        if not isinstance(result_text, str):
            result_text = ""
        if is_error:
            message = frame.get("error") or result_text or subtype or "Unknown error"
            events.append(ErrorRaised(kind="result", message=str(message)))
        usage = frame.get("usage")
        if isinstance(usage, dict):
            input_tokens = int(usage.get("input_tokens") or 0)
            output_tokens = int(usage.get("output_tokens") or 0)
            if input_tokens or output_tokens:
                events.append(TokenUsageUpdated(
                    input_tokens=input_tokens, output_tokens=output_tokens,
                ))
        duration = frame.get("duration_ms")
        cost = frame.get("total_cost_usd")
        events.append(TurnCompleted(
            is_error=is_error,
            result=result_text,
            duration_ms=int(duration) if isinstance(duration, (int, float)) else None,
            cost_usd=float(cost) if isinstance(cost, (int, float)) else None,
        ))
        return events

    def _on_control_response(self, frame: dict[str, Any]) -> list[EngineEvent]:
        response = frame.get("response")
        if isinstance(response, dict) and response.get("subtype") == "error":
            logger.warning("Control request %s failed: %s", response.get("request_id"), response.get("error"))
            return [ErrorRaised(kind="control", message=str(response.get("error", "")))]
        return []


class ClaudeChannel(ProviderChannel):
    """stream-json input: user messages plus permission-mode control requests."""

    def __init__(self, plan_mode: bool = False, preamble: str | None = None) -> None:
        super().__init__(ClaudeStreamParser(), preamble)
        self.plan_mode = plan_mode
        self._request_seq = 0

    def _user_frame(self, text: str) -> str:
        return json.dumps({
            "type": "user",
            "message": {"role": "user", "content": [{"type": "text", "text": text}]},
        })

    def _permission_frame(self, plan_mode: bool) -> str:
        self._request_seq += 1
        self.plan_mode = plan_mode
        return json.dumps({
            "type": "control_request",
            "request_id": f"req_{self._request_seq}",
            "request": {
                "subtype": "set_permission_mode",
                "mode": "plan" if plan_mode else "bypassPermissions",
            },
        })

    def encode_message(self, content: str, plan_mode: bool | None = None) -> list[str]:
        frames = []
        if plan_mode is not None and plan_mode != self.plan_mode:
            frames.append(self._permission_frame(plan_mode))
        frames.append(self._user_frame(self._take_preamble(content)))
        return frames

    def encode_plan_decision(self, approved: bool) -> list[str]:
        if approved:
            return [self._permission_frame(False), self._user_frame(APPROVE_TEXT)]
        return [self._user_frame(REJECT_TEXT)]


class ClaudeProvider(Provider):
    """Provider backed by the `claude` CLI."""

    @property
    def name(self) -> str:
        return "claude"

    def build_args(self, request: SpawnRequest) -> list[str]:
        args = [
            "--print",
            "--input-format", "stream-json",
            "--output-format", "stream-json",
            "--verbose",
        ]
        if request.plan_mode:
            args += ["--permission-mode", "plan"]
        else:
            args.append("--dangerously-skip-permissions")
        model = self.resolve_model(request)
        if model:
            args += ["--model", model]
        if request.resume_id:
            args += ["--resume", request.resume_id]
        return args

    def create_channel(self, request: SpawnRequest) -> ProviderChannel:
        return ClaudeChannel(plan_mode=request.plan_mode, preamble=self.preamble_for(request))
