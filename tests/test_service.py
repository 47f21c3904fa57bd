"""Tests for RelayService intake rules and channel settings."""
from __future__ import annotations

import asyncio
import sys

import pytest

from agentrelay.engine.config import RelayConfig
from agentrelay.engine.errors import ProviderNotAvailableError
from agentrelay.engine.models import ChannelContext, ProcessState, RunRequest
from agentrelay.engine.providers.base import Provider
from agentrelay.engine.providers.claude_provider import ClaudeStreamParser
from agentrelay.engine.providers.registry import ProviderRegistry
from agentrelay.engine.service import RelayService
from agentrelay.shared.services.session_store import SessionStore

INIT_SCRIPT = (
    "import json\n"
    "print(json.dumps({'type': 'system', 'subtype': 'init', 'session_id': 'sess-1',"
    " 'model': 'm', 'tools': []}), flush=True)\n"
    "print(json.dumps({'type': 'result', 'subtype': 'success', 'session_id': 'sess-1'}), flush=True)\n"
)


class _FakeClaude(Provider):
    def __init__(self) -> None:
        self.requests: list[RunRequest] = []

    @property
    def name(self) -> str:
        return "claude"

    def is_available(self) -> bool:
        return True

    def build_command(self, request: RunRequest) -> list[str]:
        self.requests.append(request)
        return [sys.executable, "-c", INIT_SCRIPT]

    def create_parser(self, request: RunRequest) -> ClaudeStreamParser:
        return ClaudeStreamParser()


@pytest.fixture
def service(tmp_path, surface):
    (tmp_path / "proj").mkdir()
    config = RelayConfig(base_folder=str(tmp_path), exit_grace_seconds=0.1)
    providers = ProviderRegistry()
    providers.register("claude", _FakeClaude())
    return RelayService(config, surface, SessionStore(tmp_path / "db.sqlite3"), providers)


def _ctx(name: str = "proj") -> ChannelContext:
    return ChannelContext(channel_id="c1", channel_name=name, user_id="u1", message_id="m1")


@pytest.mark.asyncio
async def test_prompt_runs_and_resumes(service, surface) -> None:
    run = await service.handle_prompt(_ctx(), "  fix it  ")
    assert run is not None
    assert await asyncio.wait_for(run.wait(), 10) == ProcessState.COMPLETED
    assert service.store.get_session("c1") == "sess-1"
    assert surface.titles()[0] == "🆕 Starting new session"

    run = await service.handle_prompt(_ctx(), "again")
    await asyncio.wait_for(run.wait(), 10)
    provider = service.providers.get("claude")
    assert provider.requests[0].prompt == "fix it"
    assert provider.requests[1].continuation_id == "sess-1"
    assert "🔄 Continuing session" in surface.titles()


@pytest.mark.asyncio
async def test_busy_channel_drops_prompt(service, surface) -> None:
    service.processes.reserve("c1")
    assert await service.handle_prompt(_ctx(), "hello") is None
    assert surface.sent == []
    service.processes.release("c1")


@pytest.mark.asyncio
async def test_general_channel_and_commands_ignored(service, surface) -> None:
    assert await service.handle_prompt(_ctx("general"), "hello") is None
    assert await service.handle_prompt(_ctx(), "/mode plan") is None
    assert await service.handle_prompt(_ctx(), "   ") is None
    assert surface.sent == []
    assert not service.registry.is_busy("c1")


@pytest.mark.asyncio
async def test_missing_directory_reported(service, surface) -> None:
    assert await service.handle_prompt(_ctx("elsewhere"), "hello") is None
    (_, status) = surface.updates[-1]
    assert status.title == "❌ Directory not found"
    assert not service.registry.is_busy("c1")


@pytest.mark.asyncio
async def test_path_override(service, tmp_path) -> None:
    service.set_path("c1", str(tmp_path / "proj"))
    assert service.resolve_working_dir(_ctx("anything")) == str(tmp_path / "proj")
    service.set_path("c1", None)
    assert service.resolve_working_dir(_ctx("x")) == str(tmp_path / "x")


def test_set_provider_requires_registration(service) -> None:
    with pytest.raises(ProviderNotAvailableError):
        service.set_provider("c1", "codex")
    assert service.store.get_provider("c1") == "claude"


def test_switching_provider_clears_session(service) -> None:
    service.providers.register("codex", _FakeClaude())
    service.store.set_session("c1", "sess-1")
    service.set_provider("c1", "claude")
    assert service.store.get_session("c1") == "sess-1"
    service.set_provider("c1", "codex")
    assert service.store.get_session("c1") is None
    assert service.store.get_provider("c1") == "codex"


def test_status_reports_settings(service) -> None:
    service.set_mode("c1", "plan")
    service.set_timeout("c1", 7)
    status = service.status("c1")
    assert status["state"] == "idle"
    assert status["mode"] == "plan"
    assert status["timeout_minutes"] == 7
    assert status["provider"] == "claude"
    assert status["pending_interactions"] == 0


def test_reset_forgets_session(service) -> None:
    service.store.set_session("c1", "sess-1")
    service.reset("c1")
    assert service.store.get_session("c1") is None
    assert service.stop("c1") is False


class _UnwritableConfigClaude(_FakeClaude):
    def build_command(self, request: RunRequest) -> list[str]:
        raise OSError("mcp config dir not writable")


@pytest.mark.asyncio
async def test_command_build_failure_reported_and_channel_freed(service, surface) -> None:
    service.providers.register("claude", _UnwritableConfigClaude())
    assert await service.handle_prompt(_ctx(), "hello") is None
    (_, status) = surface.updates[-1]
    assert status.title == "❌ Process error"
    assert "not writable" in status.body
    assert not service.registry.is_busy("c1")


@pytest.mark.asyncio
async def test_prompts_limited_to_allowed_user(service, surface) -> None:
    service.config.allowed_user_id = "owner"
    assert await service.handle_prompt(_ctx(), "hello") is None
    assert surface.sent == []
    assert not service.registry.is_busy("c1")

    service.config.allowed_user_id = "u1"
    run = await service.handle_prompt(_ctx(), "hello")
    assert run is not None
    await asyncio.wait_for(run.wait(), 10)


class _SleepyClaude(_FakeClaude):
    def build_command(self, request: RunRequest) -> list[str]:
        self.requests.append(request)
        return [sys.executable, "-c", "import time\ntime.sleep(1)\n"]


@pytest.mark.asyncio
async def test_run_exit_expires_its_pending_approvals(service) -> None:
    service.providers.register("claude", _SleepyClaude())
    run = await service.handle_prompt(_ctx(), "hello")
    assert run is not None

    own = asyncio.create_task(
        service.permissions.request_approval("Write", {}, _ctx()),
    )
    later_ctx = ChannelContext(
        channel_id="c1", channel_name="proj", user_id="u1", message_id="m-later",
    )
    other = asyncio.create_task(
        service.permissions.request_approval("Write", {}, later_ctx),
    )

    decision = await asyncio.wait_for(own, 10)
    assert decision.approved is False
    assert decision.timed_out is True
    assert not other.done()

    service.permissions.cleanup()
    await other
