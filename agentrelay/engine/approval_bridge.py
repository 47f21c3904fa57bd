"""Round trip for in-band approvals.

On ``PermissionRequested`` the bridge asks the permission manager for a
decision, serializes it as the provider's tool-result line and writes it
to the run's stdin. The wait runs as a side task owned by the run, so
the ordered event consumer keeps going and the task is cancelled if the
process exits first.
"""
from __future__ import annotations

import asyncio
import json
import logging

from .errors import BridgeUnavailable
from .events import PermissionRequested
from .permissions import ApprovalDecision, PermissionManager
from .process_manager import ProcessRun

logger = logging.getLogger(__name__)


def decision_content(decision: ApprovalDecision) -> tuple[str, bool]:
    """(content, is_error) of the tool result carrying *decision*."""
    if decision.approved:
        return "", False
    return json.dumps({"behavior": "deny", "message": decision.message}), True


class ApprovalBridge:
    def __init__(self, permissions: PermissionManager) -> None:
        self._permissions = permissions

    def submit(self, run: ProcessRun, event: PermissionRequested) -> asyncio.Task:
        """Start the round trip for *event* without blocking the caller."""
        task = asyncio.create_task(
            self.resolve(run, event),
            name=f"relay-approval-{event.invocation_id}",
        )
        return run.track(task)

    async def resolve(self, run: ProcessRun, event: PermissionRequested) -> bool:
        """Fetch a decision and deliver it. Returns True if it was written."""
        context = run.request.context
        if event.tool_name == "AskUserQuestion":
            questions = event.input.get("questions") or []
            try:
                answers = await self._permissions.request_question(questions, context)
            except ValueError as exc:
                logger.warning("Question %s not asked: %s", event.invocation_id, exc)
                return await self._deliver_question_error(run, event.invocation_id, exc)
            except Exception as exc:
                logger.exception("Question %s failed", event.invocation_id)
                return await self._deliver_question_error(run, event.invocation_id, exc)
            content = json.dumps({"answers": answers})
            return await self._deliver(run, event.invocation_id, content, False)

        decision = await self._permissions.request_approval(
            event.tool_name, event.input, context,
        )
        content, is_error = decision_content(decision)
        logger.info(
            "Approval for %s (%s) in channel %s: %s%s",
            event.tool_name, event.invocation_id, run.channel_id,
            "allow" if decision.approved else "deny",
            " (timed out)" if decision.timed_out else "",
        )
        return await self._deliver(run, event.invocation_id, content, is_error)

    async def _deliver_question_error(
        self, run: ProcessRun, invocation_id: str, exc: Exception,
    ) -> bool:
        content = json.dumps({"answers": {}, "error": str(exc)})
        return await self._deliver(run, invocation_id, content, True)

    async def _deliver(
        self,
        run: ProcessRun,
        invocation_id: str,
        content: str,
        is_error: bool,
    ) -> bool:
        payload = run.provider.build_tool_result(invocation_id, content, is_error)
        if payload is None:
            logger.warning("%s", BridgeUnavailable(
                run.channel_id, f"{run.provider.name} does not accept tool results",
            ))
            return False
        if not await run.write_stdin(payload):
            # The process is gone or its stdin closed; nothing to retry.
            logger.warning("%s", BridgeUnavailable(run.channel_id, "stdin closed"))
            return False
        return True
