from __future__ import annotations

import json
from pathlib import Path

import pytest

from threadloom.engine.config import EngineConfig
from threadloom.engine.engine import ThreadEngine
from threadloom.engine.errors import InvalidStateError, SessionImportError
from threadloom.engine.models import MessageRole
from threadloom.shared.services.transcript_import.providers.claude import ClaudeTranscriptAdapter
from threadloom.shared.services.transcript_import.service import TranscriptImportService

SESSION_ID = "217df94b-a1f0-43b4-b457-764295a557ec"


def _records() -> list[dict]:
    base = {"sessionId": SESSION_ID, "cwd": "/home/dev/api"}
    return [
        {**base, "type": "summary", "summary": "ignored"},
        {**base, "type": "user", "uuid": "u0", "isMeta": True, "timestamp": "2026-02-18T09:59:00Z",
         "message": {"role": "user", "content": "<command-name>/clear</command-name>"}},
        {**base, "type": "user", "uuid": "u1", "timestamp": "2026-02-18T10:00:00Z",
         "message": {"role": "user", "content": "List the files\nin the repo"}},
        {**base, "type": "assistant", "uuid": "a1", "timestamp": "2026-02-18T10:00:05Z",
         "message": {"id": "msg_1", "role": "assistant", "model": "claude-sonnet", "content": [
             {"type": "thinking", "thinking": "hidden"},
             {"type": "text", "text": "Listing."},
             {"type": "tool_use", "id": "tu_1", "name": "Bash", "input": {"command": "ls"}},
         ]}},
        {**base, "type": "user", "uuid": "u2", "timestamp": "2026-02-18T10:00:06Z",
         "message": {"role": "user", "content": [
             {"type": "tool_result", "tool_use_id": "tu_1", "content": "README.md\nsrc"},
         ]}},
        {**base, "type": "assistant", "uuid": "a2", "timestamp": "2026-02-18T10:00:09Z",
         "message": {"id": "msg_2", "role": "assistant", "content": [{"type": "text", "text": "Two entries."}]}},
        {**base, "type": "assistant", "uuid": "a2", "timestamp": "2026-02-18T10:00:09Z",
         "message": {"id": "msg_2", "role": "assistant", "content": [{"type": "text", "text": "Two entries."}]}},
    ]


def _write_transcript(root: Path, lines: list[str] | None = None) -> Path:
    path = root / "projects" / "-home-dev-api" / f"{SESSION_ID}.jsonl"
    path.parent.mkdir(parents=True, exist_ok=True)
    if lines is None:
        lines = [json.dumps(r) for r in _records()]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def test_claude_adapter_parses_turns_and_tool_calls(tmp_path: Path) -> None:
    root = tmp_path / ".claude"
    path = _write_transcript(root, [json.dumps(r) for r in _records()] + ["{broken"])

    transcript = ClaudeTranscriptAdapter(root=root).load_file(path)

    assert [t.role for t in transcript.turns] == ["user", "assistant", "assistant"]
    assert transcript.turns[0].content == "List the files\nin the repo"
    call = transcript.turns[1].tool_calls[0]
    assert (call.name, call.arguments, call.result, call.success) == ("Bash", {"command": "ls"}, "README.md\nsrc", True)
    assert transcript.turns[1].content == "Listing."
    summary = transcript.summary
    assert summary.source_session_id == SESSION_ID
    assert summary.title == "List the files"
    assert summary.cwd == "/home/dev/api"
    assert summary.turn_count == 3
    # Meta records do not count towards the session's time span.
    assert summary.started_at.isoformat() == "2026-02-18T10:00:00+00:00"
    assert summary.updated_at.isoformat() == "2026-02-18T10:00:09+00:00"
    assert len(transcript.warnings) == 1


def test_list_sessions_skips_unreadable_and_subagents(tmp_path: Path) -> None:
    root = tmp_path / ".claude"
    _write_transcript(root)
    junk = root / "projects" / "-home-dev-api" / "junk.jsonl"
    junk.write_text("not json\n", encoding="utf-8")
    sub = root / "projects" / "-home-dev-api" / "subagents" / "agent.jsonl"
    sub.parent.mkdir()
    sub.write_text(json.dumps(_records()[2]) + "\n", encoding="utf-8")

    summaries = TranscriptImportService(claude_root=root).list_sessions()
    assert [s.source_session_id for s in summaries] == [SESSION_ID]
    assert TranscriptImportService(claude_root=tmp_path / "missing").list_sessions() == []


def test_load_file_errors(tmp_path: Path) -> None:
    root = tmp_path / ".claude"
    adapter = ClaudeTranscriptAdapter(root=root)
    path = _write_transcript(root)

    with pytest.raises(SessionImportError):
        adapter.load_file(path, session_id="another-session")
    with pytest.raises(SessionImportError):
        adapter.load_file(tmp_path / "absent.jsonl")

    empty = tmp_path / "empty.jsonl"
    empty.write_text(json.dumps({"type": "summary"}) + "\n", encoding="utf-8")
    with pytest.raises(SessionImportError):
        adapter.load_file(empty)


def test_build_thread_tags_messages_as_imported(tmp_path: Path) -> None:
    root = tmp_path / ".claude"
    service = TranscriptImportService(claude_root=root)
    transcript = service.load_transcript("claude", _write_transcript(root))

    result = service.build_thread(transcript, project_id="p", location_id="l")

    assert result.thread.name == "List the files"
    assert result.thread.active_session_id == result.session.id
    assert result.session.provider_session_id == SESSION_ID
    assert [m.role for m in result.messages] == [
        MessageRole.USER, MessageRole.ASSISTANT, MessageRole.TOOL, MessageRole.TOOL, MessageRole.ASSISTANT,
    ]
    assert all(m.metadata.get("imported") for m in result.messages)
    assert result.messages[2].metadata["kind"] == "tool_invocation"
    assert result.messages[3].metadata["kind"] == "tool_result"
    assert result.messages[3].content == "README.md\nsrc"

    with pytest.raises(SessionImportError):
        service.load_transcript("codex", Path("x.jsonl"))


def test_engine_import_creates_thread_atomically(tmp_path: Path) -> None:
    root = tmp_path / ".claude"
    engine = ThreadEngine(
        config=EngineConfig(),
        importer=TranscriptImportService(claude_root=root),
    )
    project = engine.create_project("api")
    location = engine.create_location(project.id, "here", str(tmp_path))
    other = engine.create_project("other")

    bad = tmp_path / "bad.jsonl"
    bad.write_text("nothing useful\n", encoding="utf-8")
    with pytest.raises(SessionImportError):
        engine.import_session(project.id, location.id, str(bad))
    with pytest.raises(InvalidStateError):
        engine.import_session(other.id, location.id, str(_write_transcript(root)))
    assert engine.list_threads(project.id) == []

    thread = engine.import_session(project.id, location.id, str(_write_transcript(root)), name="Imported API")

    assert engine.list_threads(project.id) == [thread]
    assert thread.name == "Imported API"
    assert thread.has_messages is True
    [session] = engine.list_sessions(thread.id)
    assert session.name == "Imported"
    assert len(engine.list_messages(thread.id)) == 5
    assert [s.source_session_id for s in engine.list_importable()] == [SESSION_ID]
