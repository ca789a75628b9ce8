"""Assistant CLI adapters: command lines, stdin frames and stdout parsers."""
from .base import (
    MalformedFrame,
    Provider,
    ProviderChannel,
    SpawnRequest,
    StreamParser,
)
from .registry import ProviderRegistry, build_provider_registry
from .claude_provider import ClaudeProvider
from .codex_provider import CodexProvider

__all__ = [
    "MalformedFrame",
    "Provider",
    "ProviderChannel",
    "SpawnRequest",
    "StreamParser",
    "ProviderRegistry",
    "build_provider_registry",
    "ClaudeProvider",
    "CodexProvider",
]
