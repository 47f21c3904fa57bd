"""Tests for the Claude stream-json parser and command builder."""
from __future__ import annotations

import json
import os
import time
from pathlib import Path

import pytest

from agentrelay.engine.events import (
    AssistantText,
    Malformed,
    PermissionRequested,
    SessionStarted,
    TokenUsage,
    ToolInvoked,
    ToolResult,
    TurnCompleted,
)
from agentrelay.engine.models import (
    ApprovalTransport,
    ChannelContext,
    PermissionMode,
    RunRequest,
)
from agentrelay.engine.providers.claude_provider import (
    MCP_CONFIG_PREFIX,
    ClaudeProvider,
    ClaudeStreamParser,
)


def _line(payload: dict) -> str:
    return json.dumps(payload)


def _request(**overrides) -> RunRequest:
    values = dict(
        channel_id="c1",
        prompt="fix the tests",
        working_dir="/work/proj",
        context=ChannelContext(channel_id="c1", channel_name="proj", user_id="u1", message_id="m1"),
        relay_port=4010,
    )
    values.update(overrides)
    return RunRequest(**values)


class TestClaudeStreamParser:
    def test_init_record(self):
        events = ClaudeStreamParser().parse_line(_line({
            "type": "system", "subtype": "init", "session_id": "sess-1",
            "cwd": "/work/proj", "model": "claude-sonnet", "tools": ["Bash", "Read"],
        }))
        assert events == [SessionStarted(
            continuation_id="sess-1",
            working_dir="/work/proj",
            summary="claude-sonnet · 2 tools available",
        )]

    def test_other_system_records_ignored(self):
        assert ClaudeStreamParser().parse_line(_line({"type": "system", "subtype": "hook"})) == []

    def test_assistant_blocks_in_order(self):
        events = ClaudeStreamParser().parse_line(_line({
            "type": "assistant",
            "message": {"content": [
                {"type": "thinking", "thinking": "considering"},
                {"type": "text", "text": "Running tests"},
                {"type": "tool_use", "id": "tu_1", "name": "Bash", "input": {"command": "pytest"}},
                {"type": "text", "text": "   "},
            ]},
        }))
        assert events == [
            AssistantText(text="considering", reasoning=True),
            AssistantText(text="Running tests"),
            ToolInvoked(invocation_id="tu_1", name="Bash", input={"command": "pytest"}),
        ]

    def test_approval_tool_also_requests_permission(self):
        parser = ClaudeStreamParser(approval_tools=frozenset({"ExitPlanMode"}))
        events = parser.parse_line(_line({
            "type": "assistant",
            "message": {"content": [
                {"type": "tool_use", "id": "tu_9", "name": "ExitPlanMode", "input": {"plan": "p"}},
            ]},
        }))
        assert events == [
            ToolInvoked(invocation_id="tu_9", name="ExitPlanMode", input={"plan": "p"}),
            PermissionRequested(invocation_id="tu_9", tool_name="ExitPlanMode", input={"plan": "p"}),
        ]

    def test_tool_results(self):
        events = ClaudeStreamParser().parse_line(_line({
            "type": "user",
            "message": {"content": [
                {"type": "tool_result", "tool_use_id": "tu_1", "content": "3 passed\nok"},
                {"type": "tool_result", "tool_use_id": "tu_2",
                 "content": [{"type": "text", "text": "boom"}], "is_error": True},
            ]},
        }))
        assert events == [
            ToolResult(invocation_id="tu_1", summary="3 passed"),
            ToolResult(invocation_id="tu_2", summary="boom", is_error=True),
        ]

    def test_result_record(self):
        events = ClaudeStreamParser().parse_line(_line({
            "type": "result", "subtype": "success", "is_error": False,
            "num_turns": 3, "total_cost_usd": 0.0125, "result": "done",
            "session_id": "sess-1",
            "usage": {"input_tokens": 10, "cache_read_input_tokens": 4, "output_tokens": 5},
        }))
        assert events == [TurnCompleted(
            turn_count=3, cost=0.0125, result_text="done", success=True,
            continuation_id="sess-1",
            usage=TokenUsage(input_tokens=10, cached_input_tokens=4, output_tokens=5),
        )]

    def test_error_result_is_not_success(self):
        (event,) = ClaudeStreamParser().parse_line(_line({
            "type": "result", "subtype": "error_max_turns", "is_error": True,
        }))
        assert isinstance(event, TurnCompleted)
        assert event.success is False
        assert event.usage is None

    def test_invalid_json_is_malformed(self):
        (event,) = ClaudeStreamParser().parse_line("{not json")
        assert isinstance(event, Malformed)
        assert event.raw_line == "{not json"

    def test_non_object_is_malformed(self):
        (event,) = ClaudeStreamParser().parse_line("[1, 2]")
        assert isinstance(event, Malformed)
        assert event.reason == "not a JSON object"

    def test_tool_use_without_id_is_malformed(self):
        (event,) = ClaudeStreamParser().parse_line(_line({
            "type": "assistant",
            "message": {"content": [{"type": "tool_use", "name": "Bash"}]},
        }))
        assert isinstance(event, Malformed)

    def test_unknown_type_ignored(self):
        assert ClaudeStreamParser().parse_line(_line({"type": "stream_event"})) == []


class TestClaudeProviderCommand:
    def test_auto_mode_skips_permissions(self, tmp_path: Path):
        provider = ClaudeProvider(command="claude", config_dir=str(tmp_path))
        cmd = provider.build_command(_request(model="sonnet"))
        assert cmd == [
            "claude", "--output-format", "stream-json", "--model", "sonnet",
            "-p", "fix the tests", "--verbose", "--dangerously-skip-permissions",
        ]
        assert not provider.accepts_stdin_results(_request())

    def test_resume_comes_first(self, tmp_path: Path):
        provider = ClaudeProvider(command="claude", config_dir=str(tmp_path))
        cmd = provider.build_command(_request(continuation_id="sess-1"))
        assert cmd[1:3] == ["--resume", "sess-1"]

    def test_approve_mode_uses_relay_config(self, tmp_path: Path):
        provider = ClaudeProvider(command="claude", config_dir=str(tmp_path))
        request = _request(mode=PermissionMode.APPROVE)
        cmd = provider.build_command(request)

        assert "--permission-prompt-tool" in cmd
        assert cmd[cmd.index("--permission-prompt-tool") + 1] == (
            "mcp__relay-permissions__approve_tool"
        )
        config_path = Path(cmd[cmd.index("--mcp-config") + 1])
        assert config_path.name.startswith(MCP_CONFIG_PREFIX)
        assert request.mcp_config_path == str(config_path)

        server = json.loads(config_path.read_text())["mcpServers"]["relay-permissions"]
        assert server["args"] == ["-m", "agentrelay.engine.mcp_server.relay"]
        assert server["env"] == {
            "RELAY_SERVER_URL": "http://127.0.0.1:4010",
            "RELAY_CHANNEL_ID": "c1",
            "RELAY_CHANNEL_NAME": "proj",
            "RELAY_USER_ID": "u1",
            "RELAY_MESSAGE_ID": "m1",
        }

        provider.release(request)
        assert not config_path.exists()
        assert request.mcp_config_path is None

    def test_plan_mode(self, tmp_path: Path):
        provider = ClaudeProvider(command="claude", config_dir=str(tmp_path))
        cmd = provider.build_command(_request(mode=PermissionMode.PLAN))
        assert cmd[cmd.index("--permission-mode") + 1] == "plan"
        assert "--mcp-config" in cmd

    def test_stdin_transport(self, tmp_path: Path):
        provider = ClaudeProvider(command="claude", config_dir=str(tmp_path))
        request = _request(mode=PermissionMode.APPROVE, approval_transport=ApprovalTransport.STDIN)
        cmd = provider.build_command(request)
        assert cmd[cmd.index("--permission-mode") + 1] == "default"
        assert "--mcp-config" not in cmd
        assert provider.accepts_stdin_results(request)
        assert list(tmp_path.iterdir()) == []

        parser = provider.create_parser(request)
        events = parser.parse_line(_line({
            "type": "assistant",
            "message": {"content": [
                {"type": "tool_use", "id": "tu_1", "name": "Edit", "input": {}},
            ]},
        }))
        assert [type(e) for e in events] == [ToolInvoked, PermissionRequested]

    def test_tool_result_line(self, tmp_path: Path):
        provider = ClaudeProvider(command="claude", config_dir=str(tmp_path))
        payload = provider.build_tool_result("tu_1", "", False)
        assert payload.endswith(b"\n")
        message = json.loads(payload)
        assert message["type"] == "user"
        assert message["message"]["content"] == [{
            "type": "tool_result", "tool_use_id": "tu_1", "content": "", "is_error": False,
        }]

    @pytest.mark.parametrize("age, kept", [(0, True), (7200, False)])
    def test_cleanup_stale_configs(self, tmp_path: Path, age, kept):
        stale = tmp_path / f"{MCP_CONFIG_PREFIX}old.json"
        stale.write_text("{}")
        mtime = time.time() - age
        os.utime(stale, (mtime, mtime))
        provider = ClaudeProvider(command="claude", config_dir=str(tmp_path))
        provider.cleanup_stale_configs()
        assert stale.exists() is kept
