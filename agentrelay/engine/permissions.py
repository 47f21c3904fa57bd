"""Pending human interactions: tool approvals and multiple-choice questions.

Each interaction is presented on the chat surface and parked on an
asyncio future keyed by a correlation id: the approval widget's message
id for approvals, a synthetic id for questions. It is resolved exactly
once, either by ``handle_external_decision`` or by its timeout default
(deny for approvals, ``"No response (timed out)"`` for questions).
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from agentrelay.adapters.surface import ChatSurface, ChoiceQuestion, StatusContent

from .config import RelayConfig
from .errors import ApprovalTimeout
from .models import ChannelContext, MessageHandle

logger = logging.getLogger(__name__)

QUESTION_TIMEOUT_ANSWER = "No response (timed out)"
PREVIEW_LIMIT = 1000


@dataclass
class ApprovalDecision:
    approved: bool
    message: str = ""
    timed_out: bool = False
    user_id: str | None = None

    def to_payload(self, tool_input: dict[str, Any] | None = None) -> dict[str, Any]:
        """Permission-prompt response as the CLI expects it."""
        if self.approved:
            return {"behavior": "allow", "updatedInput": tool_input or {}}
        return {"behavior": "deny", "message": self.message or "Denied"}

    @classmethod
    def deny(cls, message: str, timed_out: bool = False) -> ApprovalDecision:
        return cls(approved=False, message=message, timed_out=timed_out)


@dataclass
class PendingInteraction:
    correlation_id: str
    kind: str  # "approval" | "question"
    channel_id: str
    future: asyncio.Future
    tool_name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    context: ChannelContext | None = None
    handle: MessageHandle | None = None
    created_at: float = field(default_factory=time.monotonic)

    def default(self) -> Any:
        if self.kind == "approval":
            return ApprovalDecision.deny("Permission request timed out", timed_out=True)
        return QUESTION_TIMEOUT_ANSWER


def approval_preview(tool_name: str, tool_input: dict[str, Any]) -> str:
    """Truncated rendering of a tool input for the approval widget."""
    if tool_name == "Bash" and isinstance(tool_input.get("command"), str):
        text = tool_input["command"]
    elif tool_name == "ExitPlanMode" and isinstance(tool_input.get("plan"), str):
        text = tool_input["plan"]
    else:
        text = json.dumps(tool_input, indent=2, ensure_ascii=False, default=str)
    if len(text) > PREVIEW_LIMIT:
        text = text[:PREVIEW_LIMIT] + "\n... (truncated)"
    return text


class PermissionManager:
    """Owns every pending interaction, keyed by correlation id only."""

    def __init__(
        self,
        surface: ChatSurface | None,
        config: RelayConfig | None = None,
    ) -> None:
        self._surface = surface
        self._config = config or RelayConfig()
        self._pending: dict[str, PendingInteraction] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_for(self, channel_id: str) -> list[PendingInteraction]:
        return [p for p in self._pending.values() if p.channel_id == channel_id]

    def is_pending(self, correlation_id: str) -> bool:
        return correlation_id in self._pending

    async def request_approval(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        context: ChannelContext | None,
        timeout: float | None = None,
    ) -> ApprovalDecision:
        """Ask a human to allow one tool use. Never raises for timeouts."""
        if context is None or self._surface is None:
            logger.warning("Approval for %s denied: no chat context", tool_name)
            return ApprovalDecision.deny("No chat context available")
        if timeout is None:
            timeout = self._config.approval_timeout_for(tool_name)

        try:
            handle = await self._surface.present_approval(
                context.channel_id, tool_name, approval_preview(tool_name, tool_input),
            )
        except Exception as exc:
            logger.exception("Failed to present approval for %s", tool_name)
            return ApprovalDecision.deny(f"Permission request failed: {exc}")

        pending = PendingInteraction(
            correlation_id=handle.message_id,
            kind="approval",
            channel_id=context.channel_id,
            future=asyncio.get_running_loop().create_future(),
            tool_name=tool_name,
            input=tool_input,
            context=context,
            handle=handle,
        )
        logger.info(
            "Approval requested: tool=%s channel=%s correlation=%s timeout=%.0fs",
            tool_name, context.channel_id, pending.correlation_id, timeout,
        )
        decision = await self._wait(pending, timeout)
        if decision.timed_out:
            await self._mark_expired(pending, "⏰ Approval timed out, request denied")
        return decision

    async def request_question(
        self,
        questions: list[dict[str, Any]],
        context: ChannelContext | None,
        timeout: float | None = None,
    ) -> dict[str, str]:
        """Ask each question in turn; returns ``{question: answer}``."""
        if context is None or self._surface is None:
            raise ValueError("No chat context available")
        if timeout is None:
            timeout = self._config.question_timeout_seconds

        answers: dict[str, str] = {}
        for raw in questions:
            question = ChoiceQuestion.from_payload(raw)
            correlation_id = uuid.uuid4().hex
            handle = await self._surface.present_choice(
                context.channel_id, question, correlation_id,
            )
            pending = PendingInteraction(
                correlation_id=correlation_id,
                kind="question",
                channel_id=context.channel_id,
                future=asyncio.get_running_loop().create_future(),
                tool_name="AskUserQuestion",
                input=raw,
                context=context,
                handle=handle,
            )
            answer = await self._wait(pending, timeout)
            if answer == QUESTION_TIMEOUT_ANSWER:
                await self._mark_expired(pending, "⏰ No response, question timed out")
            answers[question.question] = answer
        return answers

    async def _wait(self, pending: PendingInteraction, timeout: float) -> Any:
        self._pending[pending.correlation_id] = pending
        future = pending.future
        try:
            await asyncio.wait_for(
                asyncio.shield(future), timeout if timeout and timeout > 0 else None,
            )
        except asyncio.TimeoutError:
            if not future.done():
                future.set_result(pending.default())
                logger.warning(
                    "%s",
                    ApprovalTimeout(pending.correlation_id, timeout),
                )
        except asyncio.CancelledError:
            if not future.done():
                future.set_result(pending.default())
            raise
        finally:
            self._pending.pop(pending.correlation_id, None)
        return future.result()

    async def _mark_expired(self, pending: PendingInteraction, text: str) -> None:
        if self._surface is None or pending.handle is None:
            return
        try:
            await self._surface.update_status_message(
                pending.handle,
                StatusContent(title=pending.tool_name, body=text, tone="warning"),
            )
        except Exception:
            logger.exception("Failed to update expired interaction %s", pending.correlation_id)

    def is_authorized(self, pending: PendingInteraction, user_id: str | None) -> bool:
        """The configured allowed user or the user who started the run.

        Anonymous decisions are accepted only when no allowed user is
        configured.
        """
        allowed_user = self._config.allowed_user_id
        if user_id is None:
            return not allowed_user
        requester = pending.context.user_id if pending.context else ""
        permitted = {u for u in (allowed_user, requester) if u}
        return not permitted or user_id in permitted

    def handle_external_decision(
        self,
        channel_id: str,
        correlation_id: str,
        approved: bool | None = None,
        answer: str | None = None,
        feedback: str | None = None,
        user_id: str | None = None,
    ) -> bool:
        """Resolve a pending interaction from a human decision.

        Returns False (and changes nothing) for unknown, already-resolved,
        mismatched or unauthorized decisions, so duplicate deliveries are
        harmless.
        """
        pending = self._pending.get(correlation_id)
        if pending is None or pending.future.done():
            logger.info(
                "Decision for %s ignored (missing or already done)", correlation_id
            )
            return False
        if pending.channel_id != channel_id:
            logger.warning(
                "Decision for %s ignored: channel %s does not own it",
                correlation_id, channel_id,
            )
            return False
        if not self.is_authorized(pending, user_id):
            logger.warning(
                "Decision for %s ignored: user %s is not allowed to answer it",
                correlation_id, user_id or "<anonymous>",
            )
            return False

        if pending.kind == "approval":
            if approved is None:
                logger.warning("Approval decision %s has no verdict", correlation_id)
                return False
            message = feedback or ("" if approved else "Denied by user")
            pending.future.set_result(ApprovalDecision(
                approved=bool(approved), message=message, user_id=user_id,
            ))
        else:
            if answer is None:
                logger.warning("Answer for %s is empty", correlation_id)
                return False
            pending.future.set_result(answer)
        logger.info(
            "Decision resolved: correlation=%s kind=%s approved=%s user=%s",
            correlation_id, pending.kind, approved, user_id,
        )
        return True

    def expire_channel(self, channel_id: str, message_id: str | None = None) -> int:
        """Resolve pending interactions of a channel to their default.

        With *message_id*, only those raised by the run that prompt started.
        """
        count = 0
        for pending in self.pending_for(channel_id):
            if message_id is not None and (
                pending.context is None or pending.context.message_id != message_id
            ):
                continue
            if not pending.future.done():
                pending.future.set_result(pending.default())
                count += 1
        if count:
            logger.info("Expired %d pending interaction(s) for channel %s", count, channel_id)
        return count

    def cleanup(self) -> None:
        """Resolve everything. Called on shutdown."""
        for pending in list(self._pending.values()):
            if not pending.future.done():
                pending.future.set_result(pending.default())
        self._pending.clear()
