"""Abstract base for provider adapters.

Each provider wraps one agent CLI (Claude Code, OpenAI Codex). The
process manager asks the provider for an argv and a per-run parser,
then feeds the parser one stdout line at a time. Everything a parser
returns is a canonical event from ``engine.events``.
"""
from __future__ import annotations

import abc
import json
import logging
import shutil

from ..errors import MalformedEventLine
from ..events import Malformed, ProviderEvent
from ..models import RunRequest

logger = logging.getLogger(__name__)


class EventParser(abc.ABC):
    """Translate one provider's JSON lines into canonical events.

    One parser per run; implementations may keep per-run state such as
    the set of open tool invocations.
    """

    def parse_line(self, line: str) -> list[ProviderEvent]:
        """Parse one complete stdout line.

        Never raises for bad input: anything that is not a JSON object
        becomes a single ``Malformed`` event.
        """
        stripped = line.strip()
        if not stripped:
            return []
        try:
            data = json.loads(stripped)
        except (json.JSONDecodeError, ValueError) as exc:
            logger.debug("%s", MalformedEventLine(stripped, str(exc)))
            return [Malformed(raw_line=line, reason=str(exc))]
        if not isinstance(data, dict):
            return [Malformed(raw_line=line, reason="not a JSON object")]
        try:
            return self.parse_event(data)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning(
                "Provider event did not match the expected shape (%s): %s",
                exc, stripped[:200],
            )
            return [Malformed(raw_line=line, reason=str(exc))]

    @abc.abstractmethod
    def parse_event(self, data: dict) -> list[ProviderEvent]:
        """Translate one decoded JSON object."""


class Provider(abc.ABC):
    """Abstract provider interface.

    Implementations wrap a specific agent CLI:
    - ClaudeProvider: ``claude -p --output-format stream-json``
    - CodexProvider: ``codex exec --json``
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'claude', 'codex')."""

    @abc.abstractmethod
    def build_command(self, request: RunRequest) -> list[str]:
        """Return the argv for one run. Never passed through a shell."""

    @abc.abstractmethod
    def create_parser(self, request: RunRequest) -> EventParser:
        """Return a fresh parser for one run."""

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Check if this provider's CLI is installed."""

    def accepts_stdin_results(self, request: RunRequest) -> bool:
        """Whether decisions for this run are written to the process stdin.

        When False the process gets no stdin pipe at all.
        """
        return False

    def build_tool_result(
        self,
        invocation_id: str,
        content: str,
        is_error: bool,
    ) -> bytes | None:
        """Serialize a tool result line for stdin, or None if unsupported."""
        return None

    def build_env(self, request: RunRequest) -> dict[str, str] | None:
        """Environment for the child process, or None to inherit."""
        return None

    def release(self, request: RunRequest) -> None:
        """Remove per-run artifacts once the process has exited."""
        return None

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a provider binary by preferring explicit command, then fallback.

        The command may point to a CLI that is not on PATH when using
        custom wrappers or tests. In that case, keep the raw value so
        callers can surface the configured command in error messages.
        """
        if command:
            if shutil.which(command):
                return command
            if fallback and shutil.which(fallback):
                logger.debug(
                    "Command %s not found; falling back to %s for provider %s",
                    command, fallback, self.name,
                )
                return fallback
            return command
        return fallback or command
