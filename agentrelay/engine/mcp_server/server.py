"""HTTP endpoint for approvals, questions and headless channel control.

Approval relays call ``POST /approve`` and ``POST /ask-question`` with
the channel identified by ``X-Channel-Id``, ``X-Channel-Name``,
``X-User-Id`` and ``X-Message-Id`` headers (or a ``context`` object in
the body). Each request blocks until a human decides or the interaction
times out, then returns one JSON response.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any

from aiohttp import web

from ..errors import ProviderNotAvailableError
from ..models import ChannelContext
from ..service import RelayService

logger = logging.getLogger(__name__)

CONTEXT_HEADERS = {
    "channel_id": "X-Channel-Id",
    "channel_name": "X-Channel-Name",
    "user_id": "X-User-Id",
    "message_id": "X-Message-Id",
}


def context_from_request(request: web.Request, body: dict[str, Any]) -> ChannelContext | None:
    """Channel context from headers, falling back to ``body["context"]``."""
    channel_id = request.headers.get(CONTEXT_HEADERS["channel_id"], "")
    if channel_id and channel_id != "unknown":
        return ChannelContext(
            channel_id=channel_id,
            channel_name=request.headers.get(CONTEXT_HEADERS["channel_name"], ""),
            user_id=request.headers.get(CONTEXT_HEADERS["user_id"], ""),
            message_id=request.headers.get(CONTEXT_HEADERS["message_id"], ""),
        )
    raw = body.get("context")
    if isinstance(raw, dict) and raw.get("channel_id"):
        return ChannelContext(
            channel_id=str(raw["channel_id"]),
            channel_name=str(raw.get("channel_name", "")),
            user_id=str(raw.get("user_id", "")),
            message_id=str(raw.get("message_id", "")),
        )
    return None


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "invalid JSON body"}),
            content_type="application/json",
        )
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "JSON body must be an object"}),
            content_type="application/json",
        )
    return body


class RelayServer:
    """aiohttp application wrapping a RelayService."""

    def __init__(
        self,
        service: RelayService,
        host: str = "127.0.0.1",
        port: int = 3001,
    ) -> None:
        self._service = service
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = str(uuid.uuid4())[:8]
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_post("/approve", self._handle_approve)
        r.add_post("/ask-question", self._handle_ask_question)
        r.add_get("/channels/{channel_id}", self._handle_channel_status)
        r.add_post("/channels/{channel_id}/prompt", self._handle_prompt)
        r.add_post("/channels/{channel_id}/stop", self._handle_stop)
        r.add_post("/channels/{channel_id}/reset", self._handle_reset)
        r.add_post("/channels/{channel_id}/settings", self._handle_settings)
        r.add_post("/channels/{channel_id}/decisions", self._handle_decision)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Bind the listening socket."""
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        actual_port = self._resolve_port(site, self._runner)
        if actual_port is None:
            raise RuntimeError("Relay server started but no listening socket was reported.")
        self._port = actual_port
        self._service.relay_port = actual_port
        logger.info("Relay server listening on %s:%d", self._host, actual_port)

    async def stop(self) -> None:
        await self._service.shutdown()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            logger.info("Server shutting down")
        finally:
            await self.stop()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "server": "agentrelay",
            "port": self._port,
            "active_runs": len(self._service.registry.active()),
        })

    async def _handle_approve(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        tool_name = str(body.get("tool_name", ""))
        tool_input = body.get("input") if isinstance(body.get("input"), dict) else {}
        context = context_from_request(request, body)
        logger.info(
            "Approval request tool=%s channel=%s",
            tool_name, context.channel_id if context else "<none>",
        )
        try:
            decision = await self._service.permissions.request_approval(
                tool_name, tool_input, context,
            )
        except Exception as exc:
            logger.exception("Approval request for %s failed", tool_name)
            return web.json_response({
                "behavior": "deny",
                "message": f"Permission request failed: {exc}",
            })
        return web.json_response(decision.to_payload(tool_input))

    async def _handle_ask_question(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        questions = body.get("questions")
        if not isinstance(questions, list):
            return web.json_response(
                {"answers": {}, "error": "questions must be a list"}, status=400,
            )
        context = context_from_request(request, body)
        if context is None:
            return web.json_response({"answers": {}, "error": "No chat context available"})
        try:
            answers = await self._service.permissions.request_question(questions, context)
        except Exception as exc:
            logger.exception("Question request failed")
            return web.json_response({"answers": {}, "error": str(exc)})
        return web.json_response({"answers": answers})

    async def _handle_channel_status(self, request: web.Request) -> web.Response:
        channel_id = request.match_info["channel_id"]
        return web.json_response(self._service.status(channel_id))

    async def _handle_prompt(self, request: web.Request) -> web.Response:
        channel_id = request.match_info["channel_id"]
        body = await _read_json(request)
        prompt = str(body.get("prompt", ""))
        if not prompt.strip():
            return web.json_response({"error": "prompt is required"}, status=400)
        context = ChannelContext(
            channel_id=channel_id,
            channel_name=str(body.get("channel_name") or channel_id),
            user_id=str(body.get("user_id", "")),
            message_id=str(body.get("message_id", "")),
        )
        run = await self._service.handle_prompt(context, prompt)
        if run is None:
            return web.json_response(
                {"status": "dropped", **self._service.status(channel_id)}, status=409,
            )
        return web.json_response(
            {"status": "started", "pid": run.pid, "provider": run.provider.name},
            status=202,
        )

    async def _handle_stop(self, request: web.Request) -> web.Response:
        channel_id = request.match_info["channel_id"]
        return web.json_response({"stopped": self._service.stop(channel_id)})

    async def _handle_reset(self, request: web.Request) -> web.Response:
        channel_id = request.match_info["channel_id"]
        self._service.reset(channel_id)
        return web.json_response({"status": "reset"})

    async def _handle_settings(self, request: web.Request) -> web.Response:
        channel_id = request.match_info["channel_id"]
        body = await _read_json(request)
        service = self._service
        try:
            if "mode" in body:
                service.set_mode(channel_id, str(body["mode"]))
            if "model" in body:
                service.set_model(channel_id, str(body["model"]))
            if "provider" in body:
                service.set_provider(channel_id, str(body["provider"]))
            if "path" in body:
                service.set_path(channel_id, body["path"] or None)
            if "timeout_minutes" in body:
                service.set_timeout(channel_id, int(body["timeout_minutes"]))
            if "skip_git_check" in body:
                service.set_skip_git_check(channel_id, bool(body["skip_git_check"]))
        except (ValueError, TypeError, ProviderNotAvailableError) as exc:
            return web.json_response({"error": str(exc)}, status=400)
        return web.json_response(service.status(channel_id))

    async def _handle_decision(self, request: web.Request) -> web.Response:
        channel_id = request.match_info["channel_id"]
        body = await _read_json(request)
        correlation_id = str(body.get("correlation_id", ""))
        if not correlation_id:
            return web.json_response({"error": "correlation_id is required"}, status=400)
        approved = body.get("approved")
        resolved = self._service.permissions.handle_external_decision(
            channel_id,
            correlation_id,
            approved=bool(approved) if approved is not None else None,
            answer=body.get("answer"),
            feedback=body.get("feedback"),
            user_id=body.get("user_id"),
        )
        return web.json_response({"resolved": resolved})
