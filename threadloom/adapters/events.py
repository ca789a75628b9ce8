"""Event types pushed to clients.

Each event is a typed dataclass; event_to_dict() renders the wire form
used by the SSE channels and dict_to_event() parses it back.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class EngineEvent:
    """Base event. seq is assigned by the channel on publish."""
    event_type: str = ""
    thread_id: str | None = None
    seq: int = 0


# ── Assistant stream ──


@dataclass
class MessageDelta(EngineEvent):
    event_type: str = "message_delta"
    session_id: str | None = None
    message_id: str | None = None
    role: str = "assistant"
    text: str = ""


@dataclass
class ThinkingDelta(EngineEvent):
    event_type: str = "thinking_delta"
    session_id: str | None = None
    text: str = ""


@dataclass
class UserMessage(EngineEvent):
    event_type: str = "user_message"
    session_id: str | None = None
    message_id: str | None = None
    text: str = ""


@dataclass
class ToolInvocation(EngineEvent):
    event_type: str = "tool_invocation"
    session_id: str | None = None
    message_id: str | None = None
    tool_call_id: str = ""
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult(EngineEvent):
    event_type: str = "tool_result"
    session_id: str | None = None
    message_id: str | None = None
    tool_call_id: str = ""
    tool_name: str = ""
    output: str = ""
    is_error: bool = False


@dataclass
class TokenUsageUpdated(EngineEvent):
    """Usage reported by one frame plus the thread's running totals."""
    event_type: str = "token_usage"
    input_tokens: int = 0
    output_tokens: int = 0
    context_window: int | None = None
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    context_limit: int = 0


@dataclass
class PlanProposed(EngineEvent):
    event_type: str = "plan_proposed"
    session_id: str | None = None
    plan: str = ""


@dataclass
class PlanResolved(EngineEvent):
    event_type: str = "plan_resolved"
    outcome: str = ""


@dataclass
class QuestionRaised(EngineEvent):
    event_type: str = "question_raised"
    session_id: str | None = None
    questions: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class QuestionsAnswered(EngineEvent):
    event_type: str = "questions_answered"
    answers: dict[str, str] = field(default_factory=dict)


@dataclass
class TurnCompleted(EngineEvent):
    event_type: str = "turn_completed"
    session_id: str | None = None
    is_error: bool = False
    result: str = ""
    duration_ms: int | None = None
    cost_usd: float | None = None


@dataclass
class RateLimitUpdated(EngineEvent):
    event_type: str = "rate_limit"
    info: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderSessionStarted(EngineEvent):
    event_type: str = "provider_session_started"
    session_id: str | None = None
    provider_session_id: str = ""
    model: str | None = None


# ── Thread state ──


@dataclass
class StatusChanged(EngineEvent):
    event_type: str = "status_changed"
    status: str = ""
    activity: str | None = None
    error_detail: str | None = None


@dataclass
class ErrorRaised(EngineEvent):
    event_type: str = "error"
    kind: str = ""
    message: str = ""


@dataclass
class SessionSwitched(EngineEvent):
    event_type: str = "session_switched"
    session_id: str = ""


@dataclass
class ThreadRenamed(EngineEvent):
    event_type: str = "thread_renamed"
    name: str = ""


# ── Project commands and git ──


@dataclass
class CommandLog(EngineEvent):
    event_type: str = "command_log"
    command_id: str = ""
    location_id: str | None = None
    text: str = ""
    stream: str = "stdout"
    timestamp: str = ""


@dataclass
class CommandStatusChanged(EngineEvent):
    event_type: str = "command_status"
    command_id: str = ""
    location_id: str | None = None
    status: str = ""
    exit_code: int | None = None


@dataclass
class GitStatusUpdated(EngineEvent):
    event_type: str = "git_status"
    path: str = ""
    status: dict[str, Any] = field(default_factory=dict)


_EVENT_MAP: dict[str, type[EngineEvent]] = {
    "message_delta": MessageDelta,
    "thinking_delta": ThinkingDelta,
    "user_message": UserMessage,
    "tool_invocation": ToolInvocation,
    "tool_result": ToolResult,
    "token_usage": TokenUsageUpdated,
    "plan_proposed": PlanProposed,
    "plan_resolved": PlanResolved,
    "question_raised": QuestionRaised,
    "questions_answered": QuestionsAnswered,
    "turn_completed": TurnCompleted,
    "rate_limit": RateLimitUpdated,
    "provider_session_started": ProviderSessionStarted,
    "status_changed": StatusChanged,
    "error": ErrorRaised,
    "session_switched": SessionSwitched,
    "thread_renamed": ThreadRenamed,
    "command_log": CommandLog,
    "command_status": CommandStatusChanged,
    "git_status": GitStatusUpdated,
}


def event_to_dict(event: EngineEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # "event" on the wire, "event_type" on the dataclass
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> EngineEvent:
    """Convert a wire dict back to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, EngineEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
