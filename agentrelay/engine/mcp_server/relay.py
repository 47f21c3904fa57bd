"""Approval relay launched by the Claude CLI as an MCP subprocess.

Speaks MCP on stdin/stdout (via FastMCP) and forwards each permission
prompt or question to the relay server over HTTP. The channel context
arrives in the environment, written into the per-run MCP config:

    RELAY_SERVER_URL    base URL of the relay server
    RELAY_CHANNEL_ID    channel the run belongs to
    RELAY_CHANNEL_NAME  display name of the channel
    RELAY_USER_ID       user who sent the prompt
    RELAY_MESSAGE_ID    message that started the run

Usage:
    python -m agentrelay.engine.mcp_server.relay
    python -m agentrelay.engine.mcp_server.relay --once --endpoint approve

``--once`` skips MCP: it reads one JSON request line from stdin, posts
it and writes the JSON response as one stdout line.

Tool call flow:
    CLI → MCP stdin/stdout → relay → HTTP → RelayServer → PermissionManager
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Any

import aiohttp
from mcp.server.fastmcp import Context, FastMCP

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://127.0.0.1:3001"
ENDPOINTS = {"approve": "/approve", "ask-question": "/ask-question"}
CONTEXT_ENV = {
    "X-Channel-Id": "RELAY_CHANNEL_ID",
    "X-Channel-Name": "RELAY_CHANNEL_NAME",
    "X-User-Id": "RELAY_USER_ID",
    "X-Message-Id": "RELAY_MESSAGE_ID",
}

# Server URL; set from CLI args before the MCP server starts
_server_url: str = ""


def context_headers(environ: dict[str, str] | None = None) -> dict[str, str]:
    """X-* headers identifying the channel, read from ``RELAY_*`` variables."""
    env = os.environ if environ is None else environ
    headers = {}
    for header, var in CONTEXT_ENV.items():
        value = env.get(var, "")
        if header == "X-Channel-Id" and not value:
            value = "unknown"
        headers[header] = value
    return headers


def deny_payload(message: str) -> dict[str, Any]:
    return {"behavior": "deny", "message": message}


class RelayClient:
    """HTTP client for the relay server.

    Requests block until a human decides, so there is no total timeout;
    only the connect phase is bounded and retried.
    """

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        max_attempts: int = 10,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = headers or {}
        self._max_attempts = max_attempts
        self._session: aiohttp.ClientSession | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def open(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=5),
                headers=self._headers,
            )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def post(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST *body* to *endpoint* and return the decoded JSON response.

        The server may still be binding when the CLI launches the relay,
        so connection failures are retried with exponential backoff
        (0.2s → 0.4s → 0.8s ... capped at 2s).
        """
        await self.open()
        url = f"{self._base_url}{endpoint}"
        delay = 0.2
        for attempt in range(1, self._max_attempts + 1):
            try:
                async with self._session.post(url, json=body) as resp:
                    data = await resp.json(content_type=None)
                    if not isinstance(data, dict):
                        raise ValueError(f"unexpected response from {url}: {data!r}")
                    if resp.status >= 400 and "error" in data:
                        logger.warning("Relay server returned %d: %s", resp.status, data["error"])
                    return data
            except aiohttp.ClientConnectionError as exc:
                if attempt == self._max_attempts:
                    logger.error(
                        "Failed to reach relay server at %s after %d attempts: %s",
                        url, self._max_attempts, exc,
                    )
                    raise
                logger.debug(
                    "Relay server attempt %d/%d failed: %s, retrying in %.1fs",
                    attempt, self._max_attempts, exc, delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, 2.0)
        raise RuntimeError("unreachable")

    async def approve(self, tool_name: str, tool_input: dict[str, Any]) -> dict[str, Any]:
        """Ask for a permission decision. Failures become a deny payload."""
        try:
            return await self.post(ENDPOINTS["approve"], {
                "tool_name": tool_name, "input": tool_input,
            })
        except (aiohttp.ClientError, ValueError) as exc:
            logger.error("Approval request for %s failed: %s", tool_name, exc)
            return deny_payload(f"Permission request failed: {exc}")

    async def ask(self, questions: list[dict[str, Any]]) -> dict[str, Any]:
        """Forward questions. Failures become ``{"answers": {}, "error": ...}``."""
        try:
            return await self.post(ENDPOINTS["ask-question"], {"questions": questions})
        except (aiohttp.ClientError, ValueError) as exc:
            logger.error("Question request failed: %s", exc)
            return {"answers": {}, "error": str(exc)}


# ── FastMCP lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def relay_lifespan(server: FastMCP):
    """Open the HTTP session on startup, close it on shutdown."""
    client = RelayClient(
        _server_url or os.environ.get("RELAY_SERVER_URL", DEFAULT_SERVER_URL),
        context_headers(),
    )
    await client.open()
    try:
        yield {"client": client}
    finally:
        await client.close()


# ── FastMCP server ────────────────────────────────────────────────

mcp = FastMCP(
    name="relay-permissions",
    instructions=(
        "Permission prompts for tool calls. Every request waits for a "
        "human in the chat channel to allow or deny it."
    ),
    lifespan=relay_lifespan,
)


def _client(ctx: Context) -> RelayClient:
    return ctx.request_context.lifespan_context["client"]


@mcp.tool(
    name="approve_tool",
    description=(
        "Request permission to run a tool. Returns a JSON object with "
        "behavior 'allow' (and updatedInput) or 'deny' (and message)."
    ),
)
async def approve_tool(
    tool_name: str,
    input: dict[str, Any],
    tool_use_id: str | None = None,
    ctx: Context = None,
) -> str:
    logger.info("Permission prompt for %s (%s)", tool_name, tool_use_id or "-")
    return json.dumps(await _client(ctx).approve(tool_name, input))


@mcp.tool(
    name="ask_user_question",
    description=(
        "Ask the user one or more multiple-choice questions. Returns a "
        "JSON object mapping each question to the chosen answer."
    ),
)
async def ask_user_question(
    questions: list[dict[str, Any]],
    ctx: Context = None,
) -> str:
    return json.dumps(await _client(ctx).ask(questions))


# ── One-shot mode ─────────────────────────────────────────────────

async def run_once(client: RelayClient, endpoint: str, line: str) -> dict[str, Any]:
    """Handle a single JSON request line for *endpoint*."""
    try:
        request = json.loads(line)
    except json.JSONDecodeError as exc:
        request = None
        error = f"invalid request: {exc}"
    else:
        error = None if isinstance(request, dict) else "invalid request: expected an object"

    if endpoint == "approve":
        if error:
            return deny_payload(f"Permission request failed: {error}")
        tool_input = request.get("input")
        return await client.approve(
            str(request.get("tool_name", "")),
            tool_input if isinstance(tool_input, dict) else {},
        )

    if error:
        return {"answers": {}, "error": error}
    questions = request.get("questions")
    return await client.ask(questions if isinstance(questions, list) else [])


async def _once(url: str, endpoint: str) -> int:
    line = sys.stdin.readline()
    client = RelayClient(url, context_headers())
    try:
        response = await run_once(client, endpoint, line)
    finally:
        await client.close()
    sys.stdout.write(json.dumps(response) + "\n")
    sys.stdout.flush()
    return 0


# ── Entry point ───────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> int:
    """Entry point when launched by the CLI as an MCP subprocess."""
    global _server_url

    parser = argparse.ArgumentParser(
        prog="agentrelay-relay",
        description="Approval relay between an agent CLI and the relay server",
    )
    parser.add_argument(
        "--url", default=os.environ.get("RELAY_SERVER_URL", DEFAULT_SERVER_URL),
        help="Relay server base URL (default: $RELAY_SERVER_URL)",
    )
    parser.add_argument(
        "--once", action="store_true",
        help="Handle one JSON request from stdin instead of serving MCP",
    )
    parser.add_argument(
        "--endpoint", choices=sorted(ENDPOINTS), default="approve",
        help="Endpoint used with --once",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args(argv)
    _server_url = args.url

    # Logging goes to stderr (stdout is the transport)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    if args.once:
        return asyncio.run(_once(args.url, args.endpoint))

    logger.info(
        "Starting approval relay (server=%s, channel=%s, pid=%d)",
        _server_url, os.environ.get("RELAY_CHANNEL_ID", "unknown"), os.getpid(),
    )
    mcp.run(transport="stdio")
    return 0


if __name__ == "__main__":
    sys.exit(main())
