"""OpenAI Codex CLI provider.

Runs ``codex exec --json`` (or ``codex exec resume --json`` to continue a
thread) and parses its JSONL event stream. Codex has no stdin channel
for tool decisions, so approvals are never brokered for it: ``auto``
bypasses approvals and sandboxing, other modes run ``--full-auto``.
"""
from __future__ import annotations

import logging
import os
import shutil

from ..events import (
    AssistantText,
    ProviderEvent,
    ProviderWarning,
    SessionStarted,
    TokenUsage,
    ToolInvoked,
    ToolResult,
    TurnCompleted,
)
from ..models import PermissionMode, RunRequest
from ...shared.formatters.tool_call import summarize_result
from .base import EventParser, Provider

logger = logging.getLogger(__name__)


class CodexJsonParser(EventParser):
    """Parser for ``codex exec --json``.

    Event types: thread.started, turn.started, turn.completed,
    turn.failed, item.started, item.updated, item.completed, error.

    Item types of interest:
      agent_message, reasoning: text output
      command_execution: shell commands (reported as ``Bash``)
      file_change: patches, reported once on completion
      mcp_tool_call, web_search: other tool use
      error: non-fatal item errors
    """

    def __init__(self) -> None:
        self._thread_id: str | None = None
        # item ids that already produced a ToolInvoked
        self._started: set[str] = set()

    def parse_event(self, data: dict) -> list[ProviderEvent]:
        etype = data.get("type", "")
        if etype == "thread.started":
            self._thread_id = data.get("thread_id") or self._thread_id
            return [SessionStarted(continuation_id=self._thread_id, summary="codex")]
        if etype == "session.created":
            # Older CLI releases
            self._thread_id = data.get("session_id") or self._thread_id
            return [SessionStarted(continuation_id=self._thread_id, summary="codex")]
        if etype == "item.started":
            return self._parse_item_started(data.get("item") or {})
        if etype == "item.completed":
            return self._parse_item_completed(data.get("item") or {})
        if etype == "turn.completed":
            usage = data.get("usage") or {}
            return [TurnCompleted(
                success=True,
                continuation_id=self._thread_id,
                usage=TokenUsage(
                    input_tokens=int(usage.get("input_tokens", 0) or 0),
                    cached_input_tokens=int(usage.get("cached_input_tokens", 0) or 0),
                    output_tokens=int(usage.get("output_tokens", 0) or 0),
                ),
            )]
        if etype == "turn.failed":
            error = data.get("error") or {}
            return [TurnCompleted(
                success=False,
                result_text=str(error.get("message", "")),
                continuation_id=self._thread_id,
            )]
        if etype == "error":
            return [ProviderWarning(text=str(data.get("message", "Codex error")))]
        return []

    def _invoked(self, item: dict) -> ToolInvoked | None:
        item_id = item["id"]
        item_type = item.get("type", "")
        if item_type == "command_execution":
            event = ToolInvoked(
                invocation_id=item_id, name="Bash",
                input={"command": item.get("command", "")},
            )
        elif item_type == "mcp_tool_call":
            server = item.get("server", "")
            tool = item.get("tool") or item.get("tool_name") or item.get("name", "")
            args = item.get("arguments")
            event = ToolInvoked(
                invocation_id=item_id,
                name=f"mcp__{server}__{tool}" if server else tool,
                input=args if isinstance(args, dict) else {},
            )
        elif item_type == "web_search":
            event = ToolInvoked(
                invocation_id=item_id, name="WebSearch",
                input={"query": item.get("query", "")},
            )
        elif item_type == "file_change":
            event = ToolInvoked(
                invocation_id=item_id, name="FileChange",
                input={"changes": item.get("changes") or []},
            )
        else:
            return None
        self._started.add(item_id)
        return event

    def _parse_item_started(self, item: dict) -> list[ProviderEvent]:
        if item.get("type") == "file_change":
            # Reported in full on completion
            return []
        event = self._invoked(item)
        return [event] if event else []

    def _parse_item_completed(self, item: dict) -> list[ProviderEvent]:
        item_type = item.get("type", "")
        if item_type == "agent_message":
            text = item.get("text", "")
            return [AssistantText(text=text)] if text.strip() else []
        if item_type == "reasoning":
            text = item.get("text", "")
            return [AssistantText(text=text, reasoning=True)] if text.strip() else []
        if item_type == "error":
            return [ProviderWarning(text=str(item.get("message", "")))]

        events: list[ProviderEvent] = []
        item_id = item.get("id", "")
        if item_id not in self._started:
            # Self-contained record: invoke and result in one line
            invoked = self._invoked(item)
            if invoked is None:
                return []
            events.append(invoked)
        self._started.discard(item_id)

        failed = item.get("status") == "failed"
        if item_type == "command_execution":
            exit_code = item.get("exit_code")
            summary = summarize_result(item.get("aggregated_output", ""))
            if not summary and exit_code is not None:
                summary = f"exit code {exit_code}"
            events.append(ToolResult(
                invocation_id=item_id,
                summary=summary,
                is_error=failed or (exit_code not in (None, 0)),
            ))
        elif item_type == "file_change":
            changes = item.get("changes") or []
            summary = ", ".join(
                f"{c.get('kind', 'update')} {os.path.basename(c.get('path', ''))}"
                for c in changes if isinstance(c, dict)
            )
            events.append(ToolResult(
                invocation_id=item_id,
                summary=summarize_result(summary),
                is_error=failed,
            ))
        elif item_type == "mcp_tool_call":
            result = item.get("result") or item.get("error") or ""
            events.append(ToolResult(
                invocation_id=item_id,
                summary=summarize_result(result),
                is_error=failed,
            ))
        else:
            events.append(ToolResult(invocation_id=item_id, is_error=failed))
        return events


class CodexProvider(Provider):
    """Provider backed by the OpenAI Codex CLI."""

    def __init__(
        self,
        command: str = "codex",
        default_model: str | None = None,
    ) -> None:
        self._command = self.resolve_command(command, "codex")
        self._default_model = default_model

    @property
    def name(self) -> str:
        return "codex"

    def is_available(self) -> bool:
        return shutil.which(self._command) is not None

    def build_command(self, request: RunRequest) -> list[str]:
        cmd = [self._command, "exec"]
        if request.continuation_id:
            cmd.append("resume")
        cmd.append("--json")
        if request.mode == PermissionMode.AUTO:
            cmd.append("--dangerously-bypass-approvals-and-sandbox")
        else:
            cmd.append("--full-auto")
        if request.skip_git_check:
            cmd.append("--skip-git-repo-check")
        model = request.model or self._default_model
        if model:
            cmd.extend(["-m", model])
        if request.continuation_id:
            cmd.append(request.continuation_id)
        else:
            cmd.extend(["-C", request.working_dir])
        cmd.append(request.prompt)
        return cmd

    def create_parser(self, request: RunRequest) -> CodexJsonParser:
        return CodexJsonParser()
