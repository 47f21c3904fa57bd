"""Provider adapters for the supported agent CLIs."""
from .base import EventParser, Provider
from .claude_provider import ClaudeProvider, ClaudeStreamParser
from .codex_provider import CodexJsonParser, CodexProvider
from .registry import ProviderRegistry, build_provider_registry

__all__ = [
    "ClaudeProvider",
    "ClaudeStreamParser",
    "CodexJsonParser",
    "CodexProvider",
    "EventParser",
    "Provider",
    "ProviderRegistry",
    "build_provider_registry",
]
