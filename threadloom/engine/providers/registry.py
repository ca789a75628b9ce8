"""Provider registry: maps provider names to Provider instances."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..errors import InvalidStateError
from .base import Provider

if TYPE_CHECKING:
    from ..yaml_config import ProviderConfig

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registry of assistant CLI providers.

    Maps short names (e.g. 'claude', 'codex') to Provider instances.
    """

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}

    def register(self, name: str, provider: Provider) -> None:
        """Register a provider by name."""
        self._providers[name] = provider
        logger.info(
            "Provider registered: %s (command=%s, available=%s)",
            name, provider.command, provider.is_available(),
        )

    def get(self, name: str) -> Provider | None:
        """Get a provider by name, or None if not registered."""
        return self._providers.get(name)

    def get_or_raise(self, name: str) -> Provider:
        """Get a provider by name, raising InvalidStateError if unknown."""
        provider = self._providers.get(name)
        if provider is None:
            available = ", ".join(self._providers.keys())
            raise InvalidStateError(
                name, f"unknown provider; registered: {available or 'none'}",
            )
        return provider

    def list_names(self) -> list[str]:
        """Return all registered provider names."""
        return list(self._providers.keys())

    def list_available(self) -> list[str]:
        """Return names of providers whose CLI is installed locally."""
        return [
            name for name, p in self._providers.items()
            if p.is_available()
        ]


def build_provider_registry(
    provider_configs: dict[str, ProviderConfig] | None = None,
) -> ProviderRegistry:
    """Build a ProviderRegistry with Claude and Codex registered.

    Entries in provider_configs override the command path and default
    model of the provider with the same name.
    """
    from .claude_provider import ClaudeProvider
    from .codex_provider import CodexProvider

    configs = provider_configs or {}
    registry = ProviderRegistry()
    for cls in (ClaudeProvider, CodexProvider):
        provider = cls()
        cfg = configs.get(provider.name)
        if cfg is not None:
            provider = cls(command=cfg.command, default_model=cfg.default_model)
        registry.register(provider.name, provider)

    for name in configs:
        if registry.get(name) is None:
            logger.warning("Unknown provider '%s' in config, skipping", name)

    available = registry.list_available()
    if not available:
        logger.warning("No assistant CLI found on PATH; local threads cannot start")
    return registry
