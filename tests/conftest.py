"""Shared fakes for relay tests."""
from __future__ import annotations

import itertools

import pytest

from agentrelay.adapters.surface import ChatSurface, ChoiceQuestion, StatusContent
from agentrelay.engine.models import MessageHandle


class FakeSurface(ChatSurface):
    """Records every chat call; message ids are sequential."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, StatusContent]] = []
        self.updates: list[tuple[MessageHandle, StatusContent]] = []
        self.approvals: list[tuple[str, str, str]] = []
        self.choices: list[tuple[str, ChoiceQuestion, str]] = []
        self.fail_approvals = False
        self.fail_choices = False
        self._ids = itertools.count(1)

    def _handle(self, channel_id: str) -> MessageHandle:
        return MessageHandle(channel_id=channel_id, message_id=f"m{next(self._ids)}")

    async def send_status_message(self, channel_id, content):
        self.sent.append((channel_id, content))
        return self._handle(channel_id)

    async def update_status_message(self, handle, content):
        self.updates.append((handle, content))

    async def present_approval(self, channel_id, tool_name, preview):
        if self.fail_approvals:
            raise RuntimeError("surface offline")
        handle = self._handle(channel_id)
        self.approvals.append((channel_id, tool_name, handle.message_id))
        return handle

    async def present_choice(self, channel_id, question, correlation_id):
        if self.fail_choices:
            raise RuntimeError("surface offline")
        self.choices.append((channel_id, question, correlation_id))
        return self._handle(channel_id)

    def titles(self) -> list[str]:
        return [content.title for _, content in self.sent]


@pytest.fixture
def surface() -> FakeSurface:
    return FakeSurface()
