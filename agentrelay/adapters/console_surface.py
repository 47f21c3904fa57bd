"""Terminal chat surface.

Renders status messages as rich panels on a console and keeps every
posted message in memory so edits can be replayed. Approval and choice
widgets print the correlation id a human (or a bot frontend) posts back
to ``POST /channels/{id}/decisions``.
"""
from __future__ import annotations

import itertools
import logging

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.text import Text

from agentrelay.engine.models import MessageHandle

from .surface import ChatSurface, ChoiceQuestion, StatusContent

logger = logging.getLogger(__name__)

TONE_STYLES = {
    "info": "blue",
    "success": "green",
    "error": "red",
    "warning": "yellow",
    "tool": "cyan",
    "assistant": "white",
    "reasoning": "dim",
}


class ConsoleSurface(ChatSurface):
    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(stderr=True)
        self.messages: dict[str, StatusContent] = {}
        self.approvals: list[tuple[str, str, str]] = []
        self._ids = itertools.count(1)

    def _next_handle(self, channel_id: str) -> MessageHandle:
        return MessageHandle(channel_id=channel_id, message_id=f"msg-{next(self._ids)}")

    def _render(self, handle: MessageHandle, content: StatusContent, edited: bool = False) -> None:
        style = TONE_STYLES.get(content.tone, "white")
        body = content.body
        if content.footer:
            body = f"{body}\n\n*{content.footer}*" if body else f"*{content.footer}*"
        subtitle = f"#{handle.channel_id} · {handle.message_id}"
        if edited:
            subtitle += " (edited)"
        self.console.print(Panel(
            Markdown(body) if body else Text(""),
            title=content.title or None,
            subtitle=subtitle,
            border_style=style,
        ))

    async def send_status_message(self, channel_id: str, content: StatusContent) -> MessageHandle:
        handle = self._next_handle(channel_id)
        self.messages[handle.message_id] = content
        self._render(handle, content)
        return handle

    async def update_status_message(self, handle: MessageHandle, content: StatusContent) -> None:
        if handle.message_id not in self.messages:
            logger.debug("Editing unknown message %s", handle.message_id)
        self.messages[handle.message_id] = content
        self._render(handle, content, edited=True)

    async def present_approval(self, channel_id: str, tool_name: str, preview: str) -> MessageHandle:
        handle = self._next_handle(channel_id)
        self.approvals.append((channel_id, handle.message_id, tool_name))
        content = StatusContent(
            title=f"🔐 Permission required: {tool_name}",
            body=f"```\n{preview}\n```",
            tone="warning",
            footer=f"correlation id: {handle.message_id}",
        )
        self.messages[handle.message_id] = content
        self._render(handle, content)
        return handle

    async def present_choice(
        self,
        channel_id: str,
        question: ChoiceQuestion,
        correlation_id: str,
    ) -> MessageHandle:
        handle = self._next_handle(channel_id)
        lines = [f"**{question.question}**"]
        for i, option in enumerate(question.options, 1):
            label = option.get("label", "")
            desc = option.get("description", "")
            lines.append(f"{i}. {label}" + (f": {desc}" if desc else ""))
        lines.append(f"{len(question.options) + 1}. Other (free text)")
        content = StatusContent(
            title=f"❓ {question.header or 'Question from the agent'}",
            body="\n".join(lines),
            tone="info",
            footer=f"correlation id: {correlation_id}",
        )
        self.messages[handle.message_id] = content
        self._render(handle, content)
        return handle
