"""Event stream router.

The single consumer of a running assistant's stdout. Lines are framed by
LineFrameReader, decoded by the provider's StreamParser and applied to
the thread in arrival order: messages go to the active session, usage
to the thread's aggregate, plans and questions to the approval state.
Every event is then published on the thread's channel.
"""
from __future__ import annotations

import asyncio
import logging

from threadloom.adapters.event_bus import EventHub, thread_channel
from threadloom.adapters.events import (
    EngineEvent,
    ErrorRaised,
    MessageDelta,
    PlanProposed,
    ProviderSessionStarted,
    QuestionRaised,
    StatusChanged,
    ThinkingDelta,
    TokenUsageUpdated,
    ToolInvocation,
    ToolResult,
    TurnCompleted,
)
from threadloom.shared.services.store import EngineStore

from .approval import ApprovalState, questions_from_payload
from .errors import ParseDesyncError
from .models import Activity, Message, MessageRole, Thread, ThreadStatus, _make_id, to_payload
from .providers.base import MalformedFrame, StreamParser

logger = logging.getLogger(__name__)


class LineFrameReader:
    """Newline-delimited frames from a StreamReader, bounded in size."""

    def __init__(self, stream: asyncio.StreamReader, max_frame_bytes: int, label: str = "") -> None:
        self._stream = stream
        self._max = max_frame_bytes
        self._label = label

    async def read_frame(self) -> str | None:
        """Next line without its newline, or None at EOF."""
        try:
            raw = await self._stream.readline()
        except (ValueError, asyncio.LimitOverrunError) as exc:
            # StreamReader gives up on lines longer than its limit.
            raise ParseDesyncError(self._label, f"frame exceeds buffer limit: {exc}") from exc
        if not raw:
            return None
        if len(raw) > self._max:
            raise ParseDesyncError(self._label, f"frame of {len(raw)} bytes exceeds {self._max}")
        return raw.decode("utf-8", errors="replace").rstrip("\r\n")


def status_event(thread: Thread) -> StatusChanged:
    return StatusChanged(
        thread_id=thread.id,
        status=thread.status.value,
        activity=thread.activity.value if thread.activity else None,
        error_detail=thread.error_detail,
    )


class ThreadEventRouter:
    """Parses and applies one process's output for one thread."""

    def __init__(
        self,
        thread: Thread,
        parser: StreamParser,
        store: EngineStore,
        approval: ApprovalState,
        hub: EventHub,
        *,
        max_frame_bytes: int = 8 * 1024 * 1024,
        malformed_frame_limit: int = 50,
    ) -> None:
        self.thread = thread
        self.parser = parser
        self.store = store
        self.approval = approval
        self.hub = hub
        self._channel = thread_channel(thread.id)
        self._max_frame_bytes = max_frame_bytes
        self._malformed_limit = malformed_frame_limit
        self.malformed_frames = 0
        # Assistant text streamed since the last flush.
        self._text_parts: list[str] = []
        self._text_message_id: str | None = None
        self._text_source_id: str | None = None

    @property
    def session_id(self) -> str | None:
        return self.thread.active_session_id

    async def run(self, stdout: asyncio.StreamReader) -> None:
        """Consume stdout until EOF. Raises ParseDesyncError on lost framing."""
        reader = LineFrameReader(stdout, self._max_frame_bytes, self.thread.id)
        consecutive = 0
        try:
            while True:
                line = await reader.read_frame()
                if line is None:
                    return
                try:
                    events = self.parser.parse_line(line)
                # Valid JSON with the wrong shape counts as malformed too.
                except (MalformedFrame, TypeError, ValueError, KeyError, AttributeError) as exc:
                    self.malformed_frames += 1
                    consecutive += 1
                    logger.warning(
                        "Thread %s: skipping malformed frame (%s): %.200s",
                        self.thread.id, exc, line,
                    )
                    if consecutive > self._malformed_limit:
                        raise ParseDesyncError(
                            self.thread.id,
                            f"{consecutive} consecutive malformed frames",
                        ) from exc
                    continue
                consecutive = 0
                for event in events:
                    self.dispatch(event)
        finally:
            self.flush_text()

    def publish(self, event: EngineEvent) -> EngineEvent:
        event.thread_id = self.thread.id
        if getattr(event, "session_id", "") is None:
            event.session_id = self.session_id
        return self.hub.publish(self._channel, event)

    def dispatch(self, event: EngineEvent) -> None:
        """Apply one parsed event, then publish it."""
        if isinstance(event, MessageDelta):
            self._on_text(event)
        elif isinstance(event, ThinkingDelta):
            pass
        elif isinstance(event, TokenUsageUpdated):
            self._on_usage(event)
        elif isinstance(event, ProviderSessionStarted):
            self._on_provider_session(event)
        else:
            self.flush_text()
            if isinstance(event, (PlanProposed, QuestionRaised)) and self.thread.status != ThreadStatus.RUNNING:
                # Output still draining after a stop must not reopen the approval flow.
                logger.info(
                    "Thread %s: dropping %s received while %s",
                    self.thread.id, event.event_type, self.thread.status.value,
                )
                return
            if isinstance(event, ToolInvocation):
                self._record(MessageRole.TOOL, event.tool_name, {
                    "kind": "tool_invocation",
                    "tool_call_id": event.tool_call_id,
                    "tool_name": event.tool_name,
                    "tool_input": event.tool_input,
                })
            elif isinstance(event, ToolResult):
                self._record(MessageRole.TOOL, event.output, {
                    "kind": "tool_result",
                    "tool_call_id": event.tool_call_id,
                    "tool_name": event.tool_name,
                    "is_error": event.is_error,
                })
            elif isinstance(event, PlanProposed):
                self.approval.propose(event.plan)
                self._record(MessageRole.ASSISTANT, event.plan, {"kind": "plan"})
            elif isinstance(event, QuestionRaised):
                questions = questions_from_payload(self.thread.id, event.questions)
                self.approval.raise_questions(questions)
                event.questions = to_payload(questions)
            elif isinstance(event, ErrorRaised):
                self._record(MessageRole.SYSTEM, event.message, {"kind": "error", "source": event.kind})
            elif isinstance(event, TurnCompleted):
                self.thread.activity = Activity.READY
                self.publish(event)
                self.publish(status_event(self.thread))
                return
        self.publish(event)

    def _on_text(self, event: MessageDelta) -> None:
        if self._text_parts and event.message_id and event.message_id != self._text_source_id:
            self.flush_text()
        if not self._text_parts:
            self._text_message_id = _make_id()
            self._text_source_id = event.message_id
        self._text_parts.append(event.text)
        event.message_id = self._text_message_id

    def flush_text(self) -> None:
        """Persist buffered assistant text as one message."""
        if not self._text_parts:
            return
        text = "".join(self._text_parts)
        message_id = self._text_message_id or _make_id()
        self._text_parts = []
        self._text_message_id = None
        self._text_source_id = None
        self._record(MessageRole.ASSISTANT, text, {}, message_id=message_id)

    def _on_usage(self, event: TokenUsageUpdated) -> None:
        usage = self.thread.usage
        usage.apply(event.input_tokens, event.output_tokens, event.context_window)
        event.total_input_tokens = usage.input_tokens
        event.total_output_tokens = usage.output_tokens
        event.context_window = usage.context_window
        event.context_limit = usage.context_limit

    def _on_provider_session(self, event: ProviderSessionStarted) -> None:
        if self.session_id is None:
            return
        session = self.store.get_session(self.session_id)
        if session.provider_session_id != event.provider_session_id:
            logger.info(
                "Thread %s: session %s is provider session %s",
                self.thread.id, session.id, event.provider_session_id,
            )
            session.provider_session_id = event.provider_session_id

    def _record(
        self,
        role: MessageRole,
        content: str,
        metadata: dict,
        message_id: str | None = None,
    ) -> None:
        if self.session_id is None:
            logger.warning("Thread %s has no active session; dropping %s message", self.thread.id, role.value)
            return
        self.store.append_message(Message(
            thread_id=self.thread.id,
            session_id=self.session_id,
            role=role,
            content=content,
            metadata=metadata,
            id=message_id or _make_id(),
        ))
