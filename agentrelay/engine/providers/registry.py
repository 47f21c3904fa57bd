"""Provider registry: maps provider names to Provider instances."""
from __future__ import annotations

import logging

from ..config import RelayConfig
from ..errors import ProviderNotAvailableError
from .base import Provider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Agent CLI adapters keyed by the name channels select them with."""

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._providers

    def register(self, name: str, provider: Provider) -> None:
        if name in self._providers:
            logger.debug("Replacing provider %s", name)
        self._providers[name] = provider

    def get(self, name: str) -> Provider | None:
        return self._providers.get(name)

    def get_or_raise(self, name: str) -> Provider:
        try:
            return self._providers[name]
        except KeyError:
            raise ProviderNotAvailableError(name, self.list_names()) from None

    def list_names(self) -> list[str]:
        return sorted(self._providers)

    def validate(self) -> dict[str, bool]:
        """Check each CLI is on PATH; missing ones are logged, not fatal."""
        report: dict[str, bool] = {}
        for name, provider in self._providers.items():
            report[name] = provider.is_available()
            if report[name]:
                logger.info("Provider %s ready", name)
            else:
                logger.warning("Provider %s unavailable (CLI not installed)", name)
        return report


def build_provider_registry(config: RelayConfig) -> ProviderRegistry:
    """Default registry with the Claude and Codex adapters."""
    from .claude_provider import ClaudeProvider
    from .codex_provider import CodexProvider

    registry = ProviderRegistry()
    registry.register(
        "claude",
        ClaudeProvider(command=config.claude_command, server_host=config.server_host),
    )
    registry.register(
        "codex",
        CodexProvider(command=config.codex_command, default_model=config.codex_model),
    )
    return registry
