"""Ordered event handling for a run: chat rendering and state updates.

The process manager calls ``StreamHandler`` once per event, in order,
from the run's consumer task. State updates happen before chat calls so
a failing surface never loses a continuation id or a tool-call record.
"""
from __future__ import annotations

import logging

from agentrelay.adapters.surface import ChatSurface, StatusContent
from agentrelay.shared.formatters.tool_call import (
    STATUS_DONE,
    STATUS_FAILED,
    FormattedToolCall,
    format_cost,
    format_tool_call,
    render_tool_call,
    render_tool_result,
)
from agentrelay.shared.services.session_store import SessionStore

from .approval_bridge import ApprovalBridge
from .errors import BridgeUnavailable, OrphanToolResult, ProcessExitNonZero
from .events import (
    AssistantText,
    Malformed,
    PermissionRequested,
    ProviderWarning,
    RunEnded,
    RunEvent,
    SessionStarted,
    ToolInvoked,
    ToolResult,
    TurnCompleted,
)
from .models import PermissionMode, ProcessState, ToolCallRecord
from .permissions import PermissionManager
from .process_manager import ProcessRun
from .session import ChannelSessionRegistry

logger = logging.getLogger(__name__)

PLAN_RESULT_MIN_CHARS = 50
PLAN_RESULT_MAX_CHARS = 3800


def turn_footer(event: TurnCompleted) -> str:
    """``3 turns · 1.25¢`` plus token usage when the provider reports it."""
    parts = []
    if event.turn_count is not None:
        parts.append(f"{event.turn_count} turn{'s' if event.turn_count != 1 else ''}")
    cost = format_cost(event.cost)
    if cost:
        parts.append(cost)
    if event.usage is not None and event.cost is None:
        tokens = f"{event.usage.total_tokens:,} tokens"
        if event.usage.cached_input_tokens:
            tokens += f" ({event.usage.cached_input_tokens:,} cached)"
        parts.append(tokens)
    return " · ".join(parts)


class StreamHandler:
    def __init__(
        self,
        surface: ChatSurface,
        registry: ChannelSessionRegistry,
        store: SessionStore | None = None,
        bridge: ApprovalBridge | None = None,
        permissions: PermissionManager | None = None,
    ) -> None:
        self._surface = surface
        self._registry = registry
        self._store = store
        self._bridge = bridge
        self._permissions = permissions

    async def __call__(self, run: ProcessRun, event: RunEvent) -> None:
        if isinstance(event, SessionStarted):
            await self._on_session_started(run, event)
        elif isinstance(event, AssistantText):
            await self._on_text(run, event)
        elif isinstance(event, ToolInvoked):
            await self._on_tool_invoked(run, event)
        elif isinstance(event, ToolResult):
            await self._on_tool_result(run, event)
        elif isinstance(event, PermissionRequested):
            self._on_permission_requested(run, event)
        elif isinstance(event, TurnCompleted):
            await self._on_turn_completed(run, event)
        elif isinstance(event, ProviderWarning):
            await self._on_warning(run, event)
        elif isinstance(event, Malformed):
            logger.debug(
                "Channel %s: skipped malformed line (%s)", run.channel_id, event.reason
            )
        elif isinstance(event, RunEnded):
            await self._on_run_ended(run, event)

    def _is_current(self, run: ProcessRun) -> bool:
        session = self._registry.get(run.channel_id)
        if session is None:
            return False
        if session.run is run:
            return True
        # Events can still be queued after the exit path cleared the run.
        return session.run is None and run.kill_reason != ProcessState.SUPERSEDED

    def _remember_continuation(self, run: ProcessRun, continuation_id: str | None) -> None:
        if not continuation_id or not self._is_current(run):
            return
        session = self._registry.get(run.channel_id)
        session.continuation_id = continuation_id
        if self._store is not None:
            context = run.request.context
            self._store.set_session(
                run.channel_id, continuation_id, context.channel_name if context else "",
            )

    async def _send(self, run: ProcessRun, content: StatusContent):
        return await self._surface.send_status_message(run.channel_id, content)

    async def _on_session_started(self, run: ProcessRun, event: SessionStarted) -> None:
        self._remember_continuation(run, event.continuation_id)
        lines = []
        if event.working_dir:
            lines.append(f"**Working directory:** {event.working_dir}")
        if event.summary:
            lines.append(f"**Model:** {event.summary}")
        content = StatusContent(
            title="🚀 Session started", body="\n".join(lines), tone="info",
        )
        if run.status_message is not None:
            await self._surface.update_status_message(run.status_message, content)
        else:
            await self._send(run, content)

    async def _on_text(self, run: ProcessRun, event: AssistantText) -> None:
        if event.reasoning:
            await self._send(run, StatusContent(body=event.text, tone="reasoning"))
        else:
            await self._send(run, StatusContent(
                title="💬 Agent", body=event.text, tone="assistant",
            ))

    async def _on_tool_invoked(self, run: ProcessRun, event: ToolInvoked) -> None:
        fmt = format_tool_call(event.name, event.input, run.request.working_dir)
        body = render_tool_call(fmt)
        record = ToolCallRecord(
            invocation_id=event.invocation_id,
            name=event.name,
            input=event.input,
            rendered=body,
        )
        run.tool_calls[event.invocation_id] = record
        record.handle = await self._send(run, StatusContent(body=body, tone="tool"))

    async def _on_tool_result(self, run: ProcessRun, event: ToolResult) -> None:
        record = run.tool_calls.get(event.invocation_id)
        if record is None:
            logger.info("%s", OrphanToolResult(run.channel_id, event.invocation_id))
            status = STATUS_FAILED if event.is_error else STATUS_DONE
            body = render_tool_call(
                FormattedToolCall(label="Tool result"), status,
            )
            if event.summary:
                body += f"\n*{event.summary}*"
            await self._send(run, StatusContent(
                body=body, tone="error" if event.is_error else "success",
            ))
            return

        record.completed = True
        fmt = format_tool_call(record.name, record.input, run.request.working_dir)
        record.rendered = render_tool_result(fmt, event.summary, event.is_error)
        content = StatusContent(
            body=record.rendered, tone="error" if event.is_error else "success",
        )
        if record.handle is not None:
            await self._surface.update_status_message(record.handle, content)
        else:
            record.handle = await self._send(run, content)

    def _on_permission_requested(self, run: ProcessRun, event: PermissionRequested) -> None:
        if self._bridge is None or not run.accepts_stdin:
            logger.warning("%s", BridgeUnavailable(
                run.channel_id, f"no stdin for approval of {event.tool_name}",
            ))
            return
        self._bridge.submit(run, event)

    async def _on_turn_completed(self, run: ProcessRun, event: TurnCompleted) -> None:
        self._remember_continuation(run, event.continuation_id)
        footer = turn_footer(event)
        if event.success:
            body = f"*{footer}*" if footer else ""
            result = event.result_text
            if (
                run.request.mode == PermissionMode.PLAN
                and len(result) > PLAN_RESULT_MIN_CHARS
            ):
                if len(result) > PLAN_RESULT_MAX_CHARS:
                    result = result[:PLAN_RESULT_MAX_CHARS] + "\n\n*... (truncated)*"
                body = f"{result}\n\n{body}" if body else result
            await self._send(run, StatusContent(
                title="✅ Session complete", body=body, tone="success",
            ))
        else:
            reason = event.result_text or "error"
            body = f"Task failed: {reason}"
            if footer:
                body += f"\n*{footer}*"
            await self._send(run, StatusContent(
                title="❌ Session failed", body=body, tone="error",
            ))

    async def _on_warning(self, run: ProcessRun, event: ProviderWarning) -> None:
        if event.terminal:
            await self._send(run, StatusContent(
                title="⏰ Timeout", body=event.text, tone="error",
            ))
        else:
            await self._send(run, StatusContent(
                title="⚠️ Warning", body=event.text, tone="warning",
            ))

    def _expire_interactions(self, run: ProcessRun) -> None:
        """Nobody is left to act on the dead run's approvals or questions."""
        if self._permissions is None:
            return
        context = run.request.context
        if context is not None and context.message_id:
            self._permissions.expire_channel(run.channel_id, message_id=context.message_id)
        elif self._is_current(run):
            self._permissions.expire_channel(run.channel_id)

    async def _on_run_ended(self, run: ProcessRun, event: RunEnded) -> None:
        self._expire_interactions(run)
        outcome = event.outcome
        if outcome == ProcessState.FAILED:
            logger.warning("%s", ProcessExitNonZero(run.channel_id, event.exit_code))
            await self._send(run, StatusContent(
                title="❌ Agent process failed",
                body=f"Process exited with code: {event.exit_code}",
                tone="error",
            ))
        elif outcome == ProcessState.STOPPED:
            await self._send(run, StatusContent(
                title="🛑 Stopped", body="The agent process was stopped.", tone="warning",
            ))

        if run.status_message is None:
            return
        titles = {
            ProcessState.COMPLETED: ("✅ Finished", "success"),
            ProcessState.FAILED: ("❌ Failed", "error"),
            ProcessState.TIMED_OUT: ("⏰ Timed out", "error"),
            ProcessState.STOPPED: ("🛑 Stopped", "warning"),
            ProcessState.SUPERSEDED: ("↪️ Superseded by a newer prompt", "warning"),
        }
        title, tone = titles.get(outcome, (outcome.value, "info"))
        await self._surface.update_status_message(
            run.status_message, StatusContent(title=title, tone=tone),
        )
