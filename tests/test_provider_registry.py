"""Tests for ProviderRegistry lookups and availability checks."""
from __future__ import annotations

import pytest

from agentrelay.engine.config import RelayConfig
from agentrelay.engine.errors import ProviderNotAvailableError
from agentrelay.engine.providers.claude_provider import ClaudeProvider
from agentrelay.engine.providers.codex_provider import CodexProvider
from agentrelay.engine.providers.registry import ProviderRegistry, build_provider_registry


class _Stub:
    def __init__(self, available: bool) -> None:
        self._available = available

    def is_available(self) -> bool:
        return self._available


class TestProviderRegistry:
    def test_get_or_raise_lists_registered_names(self):
        registry = ProviderRegistry()
        registry.register("codex", _Stub(True))
        registry.register("claude", _Stub(True))

        with pytest.raises(ProviderNotAvailableError) as info:
            registry.get_or_raise("gemini")

        assert info.value.available == ["claude", "codex"]
        assert "gemini" in str(info.value)

    def test_membership_and_get(self):
        registry = ProviderRegistry()
        stub = _Stub(True)
        registry.register("claude", stub)

        assert "claude" in registry
        assert "codex" not in registry
        assert registry.get("claude") is stub
        assert registry.get("codex") is None

    def test_validate_reports_missing_clis(self, caplog):
        registry = ProviderRegistry()
        registry.register("claude", _Stub(True))
        registry.register("codex", _Stub(False))

        with caplog.at_level("WARNING"):
            report = registry.validate()

        assert report == {"claude": True, "codex": False}
        assert "codex unavailable" in caplog.text


def test_default_registry_has_both_providers():
    registry = build_provider_registry(RelayConfig())

    assert isinstance(registry.get("claude"), ClaudeProvider)
    assert isinstance(registry.get("codex"), CodexProvider)
