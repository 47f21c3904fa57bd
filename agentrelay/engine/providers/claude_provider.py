"""Claude Code CLI provider.

Runs ``claude -p --output-format stream-json --verbose`` and parses its
stream-json lines. Approvals reach the relay one of two ways:

- relay transport: the CLI is pointed at the approval relay program via
  ``--permission-prompt-tool`` and a per-run MCP config file.
- stdin transport: the parser flags risky tool uses with
  ``PermissionRequested`` and the decision is written back to stdin as a
  ``tool_result`` user message.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import shutil
import sys
import tempfile
import time
from pathlib import Path

from ..events import (
    AssistantText,
    PermissionRequested,
    ProviderEvent,
    SessionStarted,
    TokenUsage,
    ToolInvoked,
    ToolResult,
    TurnCompleted,
)
from ..models import ApprovalTransport, PermissionMode, RunRequest
from ...shared.formatters.tool_call import summarize_result
from .base import EventParser, Provider

logger = logging.getLogger(__name__)

RELAY_SERVER_NAME = "relay-permissions"
MCP_CONFIG_PREFIX = "mcp-config-agentrelay-"
MCP_CONFIG_MAX_AGE_SECONDS = 3600

# Tool uses that need a human decision when approvals travel over stdin.
EDIT_TOOLS = frozenset({"Bash", "Write", "Edit", "MultiEdit", "NotebookEdit"})
PLAN_TOOLS = frozenset({"ExitPlanMode"})
QUESTION_TOOLS = frozenset({"AskUserQuestion"})


class ClaudeStreamParser(EventParser):
    """Parser for ``--output-format stream-json``.

    Record types: ``system`` (subtype ``init``), ``assistant`` (text,
    thinking and tool_use blocks), ``user`` (tool_result blocks) and
    ``result``.
    """

    def __init__(self, approval_tools: frozenset[str] = frozenset()) -> None:
        self._approval_tools = approval_tools

    def parse_event(self, data: dict) -> list[ProviderEvent]:
        etype = data.get("type", "")
        if etype == "system":
            return self._parse_system(data)
        if etype == "assistant":
            return self._parse_assistant(data)
        if etype == "user":
            return self._parse_user(data)
        if etype == "result":
            return [self._parse_result(data)]
        logger.debug("Ignoring stream-json record type=%s", etype or "<none>")
        return []

    def _parse_system(self, data: dict) -> list[ProviderEvent]:
        if data.get("subtype") != "init":
            return []
        model = data.get("model") or "unknown model"
        tools = data.get("tools") or []
        return [SessionStarted(
            continuation_id=data.get("session_id"),
            working_dir=data.get("cwd", ""),
            summary=f"{model} · {len(tools)} tools available",
        )]

    def _parse_assistant(self, data: dict) -> list[ProviderEvent]:
        content = (data.get("message") or {}).get("content")
        if isinstance(content, str):
            return [AssistantText(text=content)] if content.strip() else []
        events: list[ProviderEvent] = []
        for block in content or []:
            btype = block.get("type")
            if btype == "text":
                text = block.get("text", "")
                if text.strip():
                    events.append(AssistantText(text=text))
            elif btype == "thinking":
                text = block.get("thinking", "")
                if text.strip():
                    events.append(AssistantText(text=text, reasoning=True))
            elif btype == "tool_use":
                tool_id = block["id"]
                name = block.get("name", "")
                tool_input = block.get("input") or {}
                events.append(ToolInvoked(
                    invocation_id=tool_id, name=name, input=tool_input,
                ))
                if name in self._approval_tools:
                    events.append(PermissionRequested(
                        invocation_id=tool_id, tool_name=name, input=tool_input,
                    ))
        return events

    def _parse_user(self, data: dict) -> list[ProviderEvent]:
        content = (data.get("message") or {}).get("content")
        if not isinstance(content, list):
            return []
        return [
            ToolResult(
                invocation_id=block["tool_use_id"],
                summary=summarize_result(block.get("content")),
                is_error=bool(block.get("is_error")),
            )
            for block in content
            if isinstance(block, dict) and block.get("type") == "tool_result"
        ]

    def _parse_result(self, data: dict) -> TurnCompleted:
        usage = data.get("usage") or {}
        cost = data.get("total_cost_usd")
        return TurnCompleted(
            turn_count=data.get("num_turns"),
            cost=float(cost) if cost is not None else None,
            result_text=str(data.get("result") or ""),
            success=data.get("subtype") == "success" and not data.get("is_error"),
            continuation_id=data.get("session_id"),
            usage=TokenUsage(
                input_tokens=int(usage.get("input_tokens", 0) or 0),
                cached_input_tokens=int(usage.get("cache_read_input_tokens", 0) or 0),
                output_tokens=int(usage.get("output_tokens", 0) or 0),
            ) if usage else None,
        )


class ClaudeProvider(Provider):
    """Provider backed by the Claude Code CLI."""

    def __init__(
        self,
        command: str = "claude",
        server_host: str = "127.0.0.1",
        config_dir: str | None = None,
    ) -> None:
        self._command = self.resolve_command(command, "claude")
        self._server_host = server_host
        self._config_dir = Path(config_dir or tempfile.gettempdir())

    @property
    def name(self) -> str:
        return "claude"

    def is_available(self) -> bool:
        return shutil.which(self._command) is not None

    def _uses_stdin(self, request: RunRequest) -> bool:
        return (
            request.approval_transport == ApprovalTransport.STDIN
            and request.mode != PermissionMode.AUTO
        )

    def build_command(self, request: RunRequest) -> list[str]:
        cmd = [self._command]
        if request.continuation_id:
            cmd.extend(["--resume", request.continuation_id])
        cmd.extend(["--output-format", "stream-json"])
        if request.model:
            cmd.extend(["--model", request.model])
        cmd.extend(["-p", request.prompt, "--verbose"])

        if request.mode == PermissionMode.AUTO:
            cmd.append("--dangerously-skip-permissions")
            return cmd

        if request.mode == PermissionMode.PLAN:
            cmd.extend(["--permission-mode", "plan"])
        elif self._uses_stdin(request):
            cmd.extend(["--permission-mode", "default"])

        if not self._uses_stdin(request):
            config_path = self.write_mcp_config(request)
            cmd.extend([
                "--mcp-config", config_path,
                "--permission-prompt-tool",
                f"mcp__{RELAY_SERVER_NAME}__approve_tool",
                "--allowedTools", f"mcp__{RELAY_SERVER_NAME}",
            ])
        return cmd

    def create_parser(self, request: RunRequest) -> ClaudeStreamParser:
        if not self._uses_stdin(request):
            return ClaudeStreamParser()
        tools = PLAN_TOOLS | QUESTION_TOOLS
        if request.mode == PermissionMode.APPROVE:
            tools = tools | EDIT_TOOLS
        return ClaudeStreamParser(approval_tools=tools)

    def accepts_stdin_results(self, request: RunRequest) -> bool:
        return self._uses_stdin(request)

    def build_tool_result(
        self,
        invocation_id: str,
        content: str,
        is_error: bool,
    ) -> bytes:
        message = {
            "type": "user",
            "message": {
                "role": "user",
                "content": [{
                    "type": "tool_result",
                    "tool_use_id": invocation_id,
                    "content": content,
                    "is_error": is_error,
                }],
            },
        }
        return json.dumps(message).encode("utf-8") + b"\n"

    # ── Relay MCP config ──

    def write_mcp_config(self, request: RunRequest) -> str:
        """Write the per-run MCP config that launches the approval relay.

        The channel context travels in the relay's environment so every
        request it forwards identifies its channel.
        """
        self.cleanup_stale_configs()
        context = request.context
        port = request.relay_port or 3001
        env = {
            "RELAY_SERVER_URL": f"http://{self._server_host}:{port}",
            "RELAY_CHANNEL_ID": request.channel_id,
            "RELAY_CHANNEL_NAME": context.channel_name if context else "",
            "RELAY_USER_ID": context.user_id if context else "",
            "RELAY_MESSAGE_ID": context.message_id if context else "",
        }
        config = {
            "mcpServers": {
                RELAY_SERVER_NAME: {
                    "command": sys.executable,
                    "args": ["-m", "agentrelay.engine.mcp_server.relay"],
                    "env": env,
                },
            },
        }
        self._config_dir.mkdir(parents=True, exist_ok=True)
        name = (
            f"{MCP_CONFIG_PREFIX}{request.channel_id}-"
            f"{int(time.time() * 1000)}-{secrets.token_hex(4)}.json"
        )
        path = self._config_dir / name
        path.write_text(json.dumps(config, indent=2), encoding="utf-8")
        request.mcp_config_path = str(path)
        logger.debug("Wrote relay MCP config %s", path)
        return str(path)

    def release(self, request: RunRequest) -> None:
        if not request.mcp_config_path:
            return
        try:
            os.unlink(request.mcp_config_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning(
                "Could not remove MCP config %s: %s", request.mcp_config_path, exc
            )
        request.mcp_config_path = None

    def cleanup_stale_configs(
        self,
        max_age_seconds: float = MCP_CONFIG_MAX_AGE_SECONDS,
    ) -> int:
        """Delete leftover MCP config files older than *max_age_seconds*."""
        if not self._config_dir.is_dir():
            return 0
        cutoff = time.time() - max_age_seconds
        removed = 0
        for path in self._config_dir.glob(f"{MCP_CONFIG_PREFIX}*.json"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError as exc:
                logger.debug("Skipping stale config %s: %s", path, exc)
        if removed:
            logger.info("Removed %d stale MCP config file(s)", removed)
        return removed
