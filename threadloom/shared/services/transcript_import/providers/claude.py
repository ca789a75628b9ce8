"""Claude transcript adapter.

Claude Code writes one JSONL file per session under
~/.claude/projects/<encoded project path>/. Each line is a record; the
ones that matter are `user` and `assistant` records carrying a message
whose content is a string or a list of content blocks.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from threadloom.engine.errors import SessionImportError

from ..models import ImportSessionSummary, ImportToolUse, ImportTranscript, ImportTurn
from ..normalize import extract_text, first_line, parse_timestamp, tool_result_text
from .base import TranscriptProviderAdapter

logger = logging.getLogger(__name__)

_PROJECT_GLOB = "projects/**/*.jsonl"
_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


class ClaudeTranscriptAdapter(TranscriptProviderAdapter):
    """Import adapter for local Claude JSONL sessions."""

    provider_name = "claude"

    def __init__(self, root: Path | None = None) -> None:
        self.root = root or (Path.home() / ".claude")

    def list_sessions(self, *, limit: int | None = None) -> list[ImportSessionSummary]:
        summaries: list[ImportSessionSummary] = []
        for path in self._iter_session_files():
            try:
                summaries.append(self.load_file(path).summary)
            except SessionImportError as exc:
                logger.debug("Skipping transcript %s: %s", path, exc.reason)
        summaries.sort(key=lambda s: s.updated_at or s.started_at or _EPOCH, reverse=True)
        if limit is not None and limit > 0:
            return summaries[:limit]
        return summaries

    def _iter_session_files(self) -> list[Path]:
        if not self.root.exists():
            return []
        files = sorted(self.root.glob(_PROJECT_GLOB))
        return [path for path in files if "subagents" not in path.parts]

    def load_file(self, path: Path, *, session_id: str | None = None) -> ImportTranscript:
        source = str(path)
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeDecodeError) as exc:
            raise SessionImportError(source, f"cannot read transcript: {exc}") from exc

        source_session_id: str | None = None
        title: str | None = None
        cwd: str | None = None
        started_at = None
        updated_at = None
        warnings: list[str] = []
        turns: list[ImportTurn] = []
        tool_calls: dict[str, ImportToolUse] = {}
        seen: set[str] = set()
        records = 0

        for line_no, raw in enumerate(lines, start=1):
            if not raw.strip():
                continue
            try:
                row = json.loads(raw)
            except json.JSONDecodeError:
                warnings.append(f"{path.name}:{line_no}: invalid json")
                continue
            if not isinstance(row, dict):
                warnings.append(f"{path.name}:{line_no}: not an object")
                continue

            row_session = row.get("sessionId")
            if isinstance(row_session, str) and row_session:
                if session_id is not None and row_session != session_id:
                    raise SessionImportError(
                        source, f"belongs to session {row_session}, expected {session_id}",
                    )
                source_session_id = source_session_id or row_session

            row_type = row.get("type")
            message = row.get("message")
            if row_type not in ("user", "assistant") or not isinstance(message, dict):
                continue
            records += 1
            if row.get("isMeta"):
                continue

            key = str(row.get("uuid") or f"line-{line_no}")
            if key in seen:
                continue
            seen.add(key)

            timestamp = parse_timestamp(row.get("timestamp"))
            if timestamp:
                if started_at is None or timestamp < started_at:
                    started_at = timestamp
                if updated_at is None or timestamp > updated_at:
                    updated_at = timestamp
            if cwd is None and isinstance(row.get("cwd"), str):
                cwd = row["cwd"]

            content = message.get("content")
            if row_type == "user":
                self._attach_results(content, tool_calls)
                text = extract_text(content)
                if not text:
                    continue
                if not title:
                    title = first_line(text, 120)
                turns.append(ImportTurn(role="user", content=text, timestamp=timestamp))
                continue

            calls = self._extract_tool_calls(content)
            for call in calls:
                tool_calls[call.id] = call
            text = extract_text(content)
            if text.strip() == "(no content)":
                text = ""
            if not text and not calls:
                continue
            turns.append(ImportTurn(
                role="assistant",
                content=text,
                timestamp=timestamp,
                tool_calls=calls,
                metadata={"message_id": message.get("id"), "model": message.get("model")},
            ))

        if records == 0:
            raise SessionImportError(source, "no valid transcript records")
        if session_id is not None and source_session_id is None:
            source_session_id = session_id

        source_session_id = source_session_id or path.stem
        summary = ImportSessionSummary(
            provider=self.provider_name,
            source_session_id=source_session_id,
            source_path=path,
            title=title or f"Claude import {source_session_id[:8]}",
            started_at=started_at,
            updated_at=updated_at,
            turn_count=len(turns),
            cwd=cwd,
            metadata={"warning_count": len(warnings)},
        )
        for warning in warnings:
            logger.warning("Transcript %s: %s", path, warning)
        return ImportTranscript(summary=summary, turns=turns, warnings=warnings)

    def _extract_tool_calls(self, blocks: Any) -> list[ImportToolUse]:
        if not isinstance(blocks, list):
            return []
        calls: list[ImportToolUse] = []
        for block in blocks:
            if not isinstance(block, dict) or block.get("type") != "tool_use":
                continue
            arguments = block.get("input")
            calls.append(ImportToolUse(
                id=str(block.get("id") or ""),
                name=str(block.get("name") or "tool"),
                arguments=arguments if isinstance(arguments, dict) else {},
            ))
        return calls

    def _attach_results(self, blocks: Any, calls: dict[str, ImportToolUse]) -> None:
        if not isinstance(blocks, list):
            return
        for block in blocks:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            call = calls.get(str(block.get("tool_use_id") or ""))
            if call is None:
                continue
            call.result = tool_result_text(block.get("content"))
            call.success = not block.get("is_error", False)
