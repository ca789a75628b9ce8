"""Transcript import: seed threads from assistant CLI session files."""

from .models import (
    ImportSessionSummary,
    ImportToolUse,
    ImportTranscript,
    ImportTurn,
    SessionImportResult,
)
from .service import TranscriptImportService

__all__ = [
    "ImportSessionSummary",
    "ImportToolUse",
    "ImportTranscript",
    "ImportTurn",
    "SessionImportResult",
    "TranscriptImportService",
]
