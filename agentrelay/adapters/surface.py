"""Chat surface interface.

The relay never talks to a chat platform directly. A surface posts and
edits messages and shows approval and choice widgets; human decisions
come back through ``PermissionManager.handle_external_decision``.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any

from agentrelay.engine.models import MessageHandle


@dataclass
class StatusContent:
    """A chat message body.

    tone is one of: info, success, error, warning, tool, assistant,
    reasoning. Surfaces map it to colours or icons.
    """
    title: str = ""
    body: str = ""
    tone: str = "info"
    footer: str = ""


@dataclass
class ChoiceQuestion:
    """One question offered to the user with clickable options."""
    question: str
    header: str = ""
    options: list[dict[str, Any]] = field(default_factory=list)
    multi_select: bool = False

    @classmethod
    def from_payload(cls, payload: dict) -> ChoiceQuestion:
        return cls(
            question=str(payload.get("question", "")),
            header=str(payload.get("header", "")),
            options=[
                opt for opt in payload.get("options") or []
                if isinstance(opt, dict)
            ],
            multi_select=bool(payload.get("multiSelect", False)),
        )


class ChatSurface(abc.ABC):
    """Abstract chat surface."""

    @abc.abstractmethod
    async def send_status_message(
        self,
        channel_id: str,
        content: StatusContent,
    ) -> MessageHandle:
        """Post a new message and return its handle."""

    @abc.abstractmethod
    async def update_status_message(
        self,
        handle: MessageHandle,
        content: StatusContent,
    ) -> None:
        """Replace the body of a previously posted message."""

    @abc.abstractmethod
    async def present_approval(
        self,
        channel_id: str,
        tool_name: str,
        preview: str,
    ) -> MessageHandle:
        """Show an approve/deny widget. Its message id keys the decision."""

    @abc.abstractmethod
    async def present_choice(
        self,
        channel_id: str,
        question: ChoiceQuestion,
        correlation_id: str,
    ) -> MessageHandle:
        """Show a question with one button per option plus a free-text "Other"."""
