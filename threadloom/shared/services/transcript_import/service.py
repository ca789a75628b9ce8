"""High-level transcript import service."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from threadloom.engine.errors import SessionImportError
from threadloom.engine.models import Message, MessageRole, Session, Thread

from .models import ImportSessionSummary, ImportTranscript, SessionImportResult
from .normalize import first_line
from .providers.base import TranscriptProviderAdapter
from .providers.claude import ClaudeTranscriptAdapter


class TranscriptImportService:
    """Discover provider transcripts and turn them into seeded threads.

    Nothing here touches the store: build_thread() returns every entity
    so the caller can commit them together.
    """

    def __init__(
        self,
        *,
        claude_root: Path | None = None,
        adapters: dict[str, TranscriptProviderAdapter] | None = None,
    ) -> None:
        if adapters is not None:
            self._adapters = {name.lower(): adapter for name, adapter in adapters.items()}
            return
        self._adapters = {"claude": ClaudeTranscriptAdapter(root=claude_root)}

    def list_sessions(
        self,
        *,
        provider: str = "all",
        limit: int | None = None,
    ) -> list[ImportSessionSummary]:
        provider_key = provider.lower().strip()
        if provider_key != "all":
            return self._get_adapter(provider_key).list_sessions(limit=limit)
        summaries: list[ImportSessionSummary] = []
        for adapter in self._adapters.values():
            summaries.extend(adapter.list_sessions(limit=None))
        summaries.sort(
            key=lambda s: s.updated_at or s.started_at or datetime.fromtimestamp(0, tz=timezone.utc),
            reverse=True,
        )
        if limit is not None and limit > 0:
            return summaries[:limit]
        return summaries

    def load_transcript(
        self,
        provider: str,
        source_path: Path,
        *,
        session_id: str | None = None,
    ) -> ImportTranscript:
        return self._get_adapter(provider).load_file(source_path, session_id=session_id)

    def build_thread(
        self,
        transcript: ImportTranscript,
        *,
        project_id: str,
        location_id: str,
        provider: str = "claude",
        name: str | None = None,
    ) -> SessionImportResult:
        summary = transcript.summary
        thread = Thread(
            project_id=project_id,
            location_id=location_id,
            provider=provider,
            name=name or first_line(summary.title or "", 80) or "Imported thread",
        )
        session = Session(
            thread_id=thread.id,
            name="Imported",
            provider_session_id=summary.source_session_id,
        )
        if summary.started_at is not None:
            session.created_at = summary.started_at
        thread.active_session_id = session.id

        messages: list[Message] = []
        for turn in transcript.turns:
            timestamp = turn.timestamp or datetime.now(timezone.utc)
            role = MessageRole.USER if turn.role == "user" else MessageRole.ASSISTANT
            if turn.content:
                messages.append(Message(
                    thread_id=thread.id,
                    session_id=session.id,
                    role=role,
                    content=turn.content,
                    metadata={"imported": True},
                    created_at=timestamp,
                ))
            for call in turn.tool_calls:
                messages.append(Message(
                    thread_id=thread.id,
                    session_id=session.id,
                    role=MessageRole.TOOL,
                    content=call.name,
                    metadata={
                        "kind": "tool_invocation",
                        "tool_call_id": call.id,
                        "tool_name": call.name,
                        "tool_input": call.arguments,
                        "imported": True,
                    },
                    created_at=timestamp,
                ))
                if call.result is not None:
                    messages.append(Message(
                        thread_id=thread.id,
                        session_id=session.id,
                        role=MessageRole.TOOL,
                        content=call.result,
                        metadata={
                            "kind": "tool_result",
                            "tool_call_id": call.id,
                            "tool_name": call.name,
                            "is_error": not call.success,
                            "imported": True,
                        },
                        created_at=timestamp,
                    ))
        thread.has_messages = bool(messages)
        if not messages:
            raise SessionImportError(str(summary.source_path), "transcript has no messages")
        return SessionImportResult(
            thread=thread,
            session=session,
            messages=messages,
            source=summary,
            warnings=list(transcript.warnings),
        )

    def _get_adapter(self, provider: str) -> TranscriptProviderAdapter:
        provider_key = provider.lower().strip()
        adapter = self._adapters.get(provider_key)
        if adapter is None:
            available = ", ".join(sorted(self._adapters.keys())) or "none"
            raise SessionImportError(provider, f"no transcript importer; available: {available}")
        return adapter
