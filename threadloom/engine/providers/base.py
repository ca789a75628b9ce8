"""Abstract base for assistant CLI providers.

Each provider wraps a different assistant CLI (Claude Code, OpenAI Codex).
The supervisor asks the provider for the command line of a long-lived
process, then talks to that process through a ProviderChannel: frames
encoded by the channel go to stdin, lines from stdout go through the
channel's StreamParser and come back as typed events.
"""
from __future__ import annotations

import abc
import json
import logging
import shutil
from dataclasses import dataclass, field
from typing import Any

from threadloom.adapters.events import EngineEvent

from ..models import Message, MessageRole, Question
from ..runners.base import SpawnCommand

logger = logging.getLogger(__name__)


class MalformedFrame(ValueError):
    """A stdout line that is not a frame of the provider's protocol."""


@dataclass
class SpawnRequest:
    """Everything a provider needs to build its command line."""
    cwd: str
    model: str | None = None
    plan_mode: bool = False
    # The CLI's own id for the session being resumed, if any.
    resume_id: str | None = None
    # Prior conversation of the active session, oldest first.
    history: list[Message] = field(default_factory=list)


class StreamParser(abc.ABC):
    """Turns stdout lines into events. One instance per process.

    Parsers are stateful (they remember special tool ids, streamed item
    ids and so on), so a fresh parser is created for every process.
    """

    def parse_line(self, line: str) -> list[EngineEvent]:
        """Decode one line. Raises MalformedFrame for non-protocol lines."""
        text = line.strip()
        if not text:
            return []
        try:
            frame = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedFrame(f"invalid JSON: {exc}") from exc
        if not isinstance(frame, dict):
            raise MalformedFrame(f"expected an object, got {type(frame).__name__}")
        return self.handle(frame)

    @abc.abstractmethod
    def handle(self, frame: dict[str, Any]) -> list[EngineEvent]:
        """Map one decoded frame to zero or more events."""


class ProviderChannel(abc.ABC):
    """Stdin encoder plus stdout parser for one running process.

    encode_* methods return complete frames without the trailing
    newline; the supervisor writes each on its own line.
    """

    def __init__(self, parser: StreamParser, preamble: str | None = None) -> None:
        self.parser = parser
        # Sent ahead of the first user message only.
        self._preamble = preamble

    def _take_preamble(self, content: str) -> str:
        if not self._preamble:
            return content
        text = f"{self._preamble}\n\n{content}"
        self._preamble = None
        return text

    @abc.abstractmethod
    def encode_message(self, content: str, plan_mode: bool | None = None) -> list[str]:
        """Frames that deliver a user message.

        plan_mode None keeps the current permission mode.
        """

    @abc.abstractmethod
    def encode_plan_decision(self, approved: bool) -> list[str]:
        """Frames that approve (execute) or discard a proposed plan."""

    def encode_answers(self, questions: list[Question], answers: dict[str, str]) -> list[str]:
        """Frames that deliver answers, one "question: answer" line each."""
        return self.encode_message(format_answer_lines(questions, answers))


def format_answer_lines(questions: list[Question], answers: dict[str, str]) -> str:
    lines = []
    for q in questions:
        answer = answers.get(q.id) or answers.get(q.prompt) or ""
        lines.append(f"{q.prompt}: {answer}")
    return "\n".join(lines)


def history_preamble(history: list[Message]) -> str:
    """Plain-text replay of a conversation, for CLIs that cannot resume it."""
    lines = ["Previous conversation in this session:", ""]
    for msg in history:
        if msg.role == MessageRole.USER:
            lines.append(f"User: {msg.content}")
        elif msg.role == MessageRole.ASSISTANT:
            lines.append(f"Assistant: {msg.content}")
        elif msg.role == MessageRole.TOOL and msg.metadata.get("kind") == "tool_invocation":
            tool_input = json.dumps(msg.metadata.get("tool_input") or {}, ensure_ascii=False)
            lines.append(f"[tool {msg.content}] {tool_input}")
    lines += ["", "Continue from here."]
    return "\n".join(lines)


class Provider(abc.ABC):
    """Abstract provider interface.

    Implementations wrap a specific assistant CLI:
    - ClaudeProvider: `claude --print` in stream-json mode
    - CodexProvider: `codex proto`
    """

    # Statements run on SSH/WSL targets before the binary is invoked.
    remote_preamble: list[str] = []
    # Replacement for the binary on SSH/WSL targets, inserted verbatim.
    remote_binary: str | None = None

    def __init__(self, command: str | None = None, default_model: str | None = None) -> None:
        self.command = command or self.name
        self.default_model = default_model

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'claude', 'codex')."""

    def is_available(self) -> bool:
        """Check if the CLI is installed on this machine.

        Remote targets are checked separately through
        ExecutionContext.check_cli().
        """
        return shutil.which(self.command) is not None

    @abc.abstractmethod
    def build_args(self, request: SpawnRequest) -> list[str]:
        """CLI arguments for a long-lived process."""

    def build_command(self, request: SpawnRequest) -> SpawnCommand:
        return SpawnCommand(
            binary=self.command,
            args=self.build_args(request),
            cwd=request.cwd,
            preamble=list(self.remote_preamble),
            remote_binary=self.remote_binary,
        )

    @abc.abstractmethod
    def create_channel(self, request: SpawnRequest) -> ProviderChannel:
        """Fresh channel for a process built from request."""

    def resolve_model(self, request: SpawnRequest) -> str | None:
        return request.model or self.default_model

    @staticmethod
    def preamble_for(request: SpawnRequest) -> str | None:
        """History replay needed when the CLI cannot resume the session."""
        if request.resume_id or not request.history:
            return None
        return history_preamble(request.history)
