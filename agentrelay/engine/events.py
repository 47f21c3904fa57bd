"""Canonical provider events.

Both provider parsers translate their JSON lines into this closed set.
Everything downstream of a parser handles only these types, so adding
a provider never touches the renderer or the lifecycle manager.

``RunEnded`` is emitted by the process manager, never by a parser.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Union

from .models import ProcessState


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class SessionStarted:
    event_type: ClassVar[str] = "session_started"
    continuation_id: str | None = None
    working_dir: str = ""
    summary: str = ""


@dataclass(frozen=True)
class AssistantText:
    event_type: ClassVar[str] = "assistant_text"
    text: str = ""
    reasoning: bool = False


@dataclass(frozen=True)
class ToolInvoked:
    event_type: ClassVar[str] = "tool_invoked"
    invocation_id: str = ""
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    event_type: ClassVar[str] = "tool_result"
    invocation_id: str = ""
    summary: str = ""
    is_error: bool = False


@dataclass(frozen=True)
class PermissionRequested:
    event_type: ClassVar[str] = "permission_requested"
    invocation_id: str = ""
    tool_name: str = ""
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TurnCompleted:
    event_type: ClassVar[str] = "turn_completed"
    turn_count: int | None = None
    cost: float | None = None
    result_text: str = ""
    success: bool = True
    continuation_id: str | None = None
    usage: TokenUsage | None = None


@dataclass(frozen=True)
class ProviderWarning:
    event_type: ClassVar[str] = "warning"
    text: str = ""
    # Terminal warnings announce the end of the run (e.g. timeout).
    terminal: bool = False


@dataclass(frozen=True)
class Malformed:
    event_type: ClassVar[str] = "malformed"
    raw_line: str = ""
    reason: str = ""


@dataclass(frozen=True)
class RunEnded:
    event_type: ClassVar[str] = "run_ended"
    outcome: ProcessState = ProcessState.COMPLETED
    exit_code: int | None = None
    detail: str = ""


ProviderEvent = Union[
    SessionStarted,
    AssistantText,
    ToolInvoked,
    ToolResult,
    PermissionRequested,
    TurnCompleted,
    ProviderWarning,
    Malformed,
]

RunEvent = Union[ProviderEvent, RunEnded]
