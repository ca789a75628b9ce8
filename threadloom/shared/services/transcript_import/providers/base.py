"""Base interface for transcript import adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path

from ..models import ImportSessionSummary, ImportTranscript


class TranscriptProviderAdapter(ABC):
    """Adapter that discovers and parses provider transcript artifacts."""

    provider_name: str

    @abstractmethod
    def list_sessions(self, *, limit: int | None = None) -> list[ImportSessionSummary]:
        """List importable sessions for this provider, newest first."""

    @abstractmethod
    def load_file(self, path: Path, *, session_id: str | None = None) -> ImportTranscript:
        """Parse one transcript file.

        Raises SessionImportError if the file is unreadable, has no
        valid records, or belongs to a different session than session_id.
        """
