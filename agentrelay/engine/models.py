"""Core data models for the relay engine.

Enums and plain dataclasses shared by the engine modules. Kept free of
engine imports to avoid circular imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ProcessState(str, Enum):
    """Per-channel process states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    RESERVED = "reserved"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SUPERSEDED = "superseded"
    STOPPED = "stopped"


TERMINAL_STATES = frozenset({
    ProcessState.COMPLETED,
    ProcessState.FAILED,
    ProcessState.TIMED_OUT,
    ProcessState.SUPERSEDED,
    ProcessState.STOPPED,
})


class PermissionMode(str, Enum):
    """How a run treats risky tool use."""
    AUTO = "auto"
    PLAN = "plan"
    APPROVE = "approve"


class ApprovalTransport(str, Enum):
    """Where approval requests reach the relay.

    RELAY: the CLI calls the approval relay program, which posts to the
    HTTP endpoint. STDIN: the parser flags tool uses and the decision is
    written back to the process stdin as a tool result.
    """
    RELAY = "relay"
    STDIN = "stdin"


@dataclass
class ChannelContext:
    """Identifies where a prompt came from."""
    channel_id: str
    channel_name: str = ""
    user_id: str = ""
    message_id: str = ""


@dataclass
class MessageHandle:
    """Reference to a message posted on the chat surface."""
    channel_id: str
    message_id: str


@dataclass
class ToolCallRecord:
    """A tool invocation rendered in the chat, awaiting its result."""
    invocation_id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    handle: MessageHandle | None = None
    rendered: str = ""
    completed: bool = False


@dataclass
class RunRequest:
    """Everything a provider needs to build one process invocation."""
    channel_id: str
    prompt: str
    working_dir: str
    continuation_id: str | None = None
    mode: PermissionMode = PermissionMode.AUTO
    model: str | None = None
    skip_git_check: bool = False
    timeout_seconds: float | None = None
    context: ChannelContext | None = None
    approval_transport: ApprovalTransport = ApprovalTransport.RELAY
    relay_port: int | None = None
    # Set by the provider when it writes a per-run MCP config file.
    mcp_config_path: str | None = None
