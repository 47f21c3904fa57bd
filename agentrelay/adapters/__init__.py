"""Adapters between the relay engine and chat frontends."""
from __future__ import annotations

__all__ = [
    "ChatSurface",
    "ChoiceQuestion",
    "ConsoleSurface",
    "StatusContent",
]

from agentrelay.adapters.surface import ChatSurface, ChoiceQuestion, StatusContent
from agentrelay.adapters.console_surface import ConsoleSurface
