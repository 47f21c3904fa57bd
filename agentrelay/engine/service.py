"""Intake facade: prompts in, runs out.

``RelayService`` wires the engine together and is what chat frontends
and the HTTP server talk to. It enforces the intake rules: one active
process per channel (prompts for a busy channel are dropped), nothing
runs in the ``general`` channel, and slash-prefixed messages are left to
the command layer.
"""
from __future__ import annotations

import logging
import os
from typing import Any

from agentrelay.adapters.surface import ChatSurface, StatusContent
from agentrelay.shared.services.session_store import SessionStore

from .approval_bridge import ApprovalBridge
from .config import RelayConfig
from .errors import (
    ChannelBusyError,
    DirectoryNotFound,
    ProcessSpawnError,
    ProviderNotAvailableError,
)
from .models import (
    ApprovalTransport,
    ChannelContext,
    PermissionMode,
    ProcessState,
    RunRequest,
)
from .permissions import PermissionManager
from .process_manager import ProcessManager, ProcessRun
from .providers.claude_provider import ClaudeProvider
from .providers.registry import ProviderRegistry, build_provider_registry
from .session import ChannelSessionRegistry
from .stream_handler import StreamHandler

logger = logging.getLogger(__name__)

IGNORED_CHANNELS = frozenset({"general"})


class RelayService:
    def __init__(
        self,
        config: RelayConfig,
        surface: ChatSurface,
        store: SessionStore | None = None,
        providers: ProviderRegistry | None = None,
    ) -> None:
        self.config = config
        self.surface = surface
        self.store = store if store is not None else SessionStore(config.db_path)
        self.providers = providers if providers is not None else build_provider_registry(config)
        self.registry = ChannelSessionRegistry()
        self.permissions = PermissionManager(surface, config)
        self.bridge = ApprovalBridge(self.permissions)
        self.handler = StreamHandler(
            surface, self.registry, self.store, self.bridge, self.permissions,
        )
        self.processes = ProcessManager(
            self.registry, self.providers, config, self.handler,
        )
        # Port the approval relay posts to; the server updates it once bound.
        self.relay_port = config.server_port

    def start(self) -> None:
        removed = self.store.cleanup_old_sessions(self.config.session_retention_days)
        claude = self.providers.get("claude")
        if isinstance(claude, ClaudeProvider):
            claude.cleanup_stale_configs()
        logger.info(
            "Relay service started (db=%s, purged %d old session(s))",
            self.store.db_path, removed,
        )

    async def shutdown(self) -> None:
        self.permissions.cleanup()
        await self.processes.shutdown()
        logger.info("Relay service stopped")

    # ── Intake ──

    def resolve_working_dir(self, context: ChannelContext) -> str:
        """Path override if set, else ``<base_folder>/<channel name>``."""
        override = self.store.get_path(context.channel_id)
        if override:
            return os.path.expanduser(override)
        name = context.channel_name or context.channel_id
        return os.path.join(os.path.expanduser(self.config.base_folder), name)

    async def handle_prompt(self, context: ChannelContext, prompt: str) -> ProcessRun | None:
        """Start a run for *prompt*. Returns None when the prompt is dropped."""
        channel_id = context.channel_id
        text = prompt.strip()
        if context.channel_name in IGNORED_CHANNELS:
            logger.debug("Ignoring prompt in #%s", context.channel_name)
            return None
        if not text or text.startswith("/"):
            return None
        allowed_user = self.config.allowed_user_id
        if allowed_user and context.user_id != allowed_user:
            logger.info(
                "Ignoring prompt from user %s in channel %s (not allowed)",
                context.user_id or "<unknown>", channel_id,
            )
            return None
        if self.registry.is_busy(channel_id):
            logger.info("%s; dropping prompt", ChannelBusyError(channel_id))
            return None

        provider_name = self.store.get_provider(channel_id, self.config.default_provider)
        mode = PermissionMode(self.store.get_mode(channel_id, self.config.default_mode))
        model = (
            self.store.get_model(channel_id, self.config.default_model)
            if provider_name == "claude" else None
        )
        continuation_id = self.store.get_session(channel_id)
        timeout_minutes = self.store.get_timeout(channel_id, default=0)
        transport = ApprovalTransport(self.config.approval_transport)

        # Claim the channel before the first await.
        session = self.processes.reserve(
            channel_id, continuation_id=continuation_id, context=context,
        )
        session.continuation_id = continuation_id
        try:
            session.status_message = await self.surface.send_status_message(
                channel_id,
                StatusContent(
                    title=(
                        "🔄 Continuing session" if continuation_id
                        else "🆕 Starting new session"
                    ),
                    body=f"**Provider:** {provider_name} · **Mode:** {mode.value}",
                    tone="info",
                ),
            )
        except Exception:
            logger.exception("Failed to post status message for channel %s", channel_id)
            session.status_message = None

        request = RunRequest(
            channel_id=channel_id,
            prompt=text,
            working_dir=self.resolve_working_dir(context),
            continuation_id=continuation_id,
            mode=mode,
            model=model,
            skip_git_check=self.store.get_skip_git_check(channel_id),
            timeout_seconds=timeout_minutes * 60 if timeout_minutes else None,
            context=context,
            approval_transport=transport,
            relay_port=self.relay_port,
        )
        try:
            return await self.processes.spawn(request, provider_name)
        except (DirectoryNotFound, ProcessSpawnError, ProviderNotAvailableError) as exc:
            logger.warning("Channel %s: run not started: %s", channel_id, exc)
            self.processes.release(channel_id)
            await self._report_start_failure(session.status_message, channel_id, exc)
            return None
        except ValueError:
            # Channel was reset while the status message was being posted
            logger.info("Channel %s: reservation lost before spawn", channel_id)
            return None

    async def _report_start_failure(self, status_message, channel_id: str, exc: Exception) -> None:
        if isinstance(exc, DirectoryNotFound):
            content = StatusContent(
                title="❌ Directory not found",
                body=f"`{exc.working_dir}` does not exist. Create it or set a path override.",
                tone="error",
            )
        else:
            content = StatusContent(title="❌ Process error", body=str(exc), tone="error")
        try:
            if status_message is not None:
                await self.surface.update_status_message(status_message, content)
            else:
                await self.surface.send_status_message(channel_id, content)
        except Exception:
            logger.exception("Failed to report start failure for channel %s", channel_id)

    # ── Control ──

    def stop(self, channel_id: str) -> bool:
        """Kill the channel's running process. False if nothing was running."""
        killed = self.processes.kill(channel_id, ProcessState.STOPPED)
        self.permissions.expire_channel(channel_id)
        return killed

    def reset(self, channel_id: str) -> None:
        """Stop any run and forget the channel's conversation."""
        self.processes.kill(channel_id, ProcessState.STOPPED)
        self.permissions.expire_channel(channel_id)
        self.store.clear_session(channel_id)
        self.registry.delete(channel_id)
        logger.info("Channel %s reset", channel_id)

    def set_mode(self, channel_id: str, mode: str) -> None:
        self.store.set_mode(channel_id, mode)

    def set_model(self, channel_id: str, model: str) -> None:
        self.store.set_model(channel_id, model)

    def set_provider(self, channel_id: str, provider: str) -> None:
        """Switch provider. The stored continuation belongs to the old one."""
        self.providers.get_or_raise(provider)
        if self.store.get_provider(channel_id, self.config.default_provider) != provider:
            self.store.clear_session(channel_id)
        self.store.set_provider(channel_id, provider)

    def set_path(self, channel_id: str, path: str | None) -> None:
        if path:
            self.store.set_path(channel_id, path)
        else:
            self.store.clear_path(channel_id)

    def set_timeout(self, channel_id: str, minutes: int) -> None:
        self.store.set_timeout(channel_id, minutes)

    def set_skip_git_check(self, channel_id: str, enabled: bool) -> None:
        self.store.set_skip_git_check(channel_id, enabled)

    def status(self, channel_id: str) -> dict[str, Any]:
        info = self.processes.describe(channel_id)
        info.update({
            "provider": info.get("provider") or self.store.get_provider(
                channel_id, self.config.default_provider,
            ),
            "mode": self.store.get_mode(channel_id, self.config.default_mode),
            "model": self.store.get_model(channel_id, self.config.default_model),
            "path": self.store.get_path(channel_id),
            "timeout_minutes": (
                self.store.get_timeout(channel_id, default=0)
                or self.config.process_timeout_seconds / 60
            ),
            "skip_git_check": self.store.get_skip_git_check(channel_id),
            "stored_session": self.store.get_session(channel_id),
            "pending_interactions": len(self.permissions.pending_for(channel_id)),
        })
        return info
