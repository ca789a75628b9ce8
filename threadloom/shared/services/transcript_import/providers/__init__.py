"""Provider adapters for transcript import."""

from .base import TranscriptProviderAdapter
from .claude import ClaudeTranscriptAdapter

__all__ = [
    "TranscriptProviderAdapter",
    "ClaudeTranscriptAdapter",
]
