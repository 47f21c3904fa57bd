"""Channel process state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──> RESERVED ──> RUNNING ──┬──> COMPLETED ──┐
       ^       │  ^                 ├──> FAILED     ─┤
       │       │  │                 ├──> TIMED_OUT  ─┤
       │       │  │                 ├──> STOPPED    ─┼──> IDLE
       │       │  └──────────────── └──> SUPERSEDED ─┘
       └───────┘  (spawn failure)

A SUPERSEDED channel is immediately re-reserved by the prompt that
displaced it.
"""
from __future__ import annotations

from .models import ProcessState

VALID_TRANSITIONS: dict[ProcessState, set[ProcessState]] = {
    ProcessState.IDLE: {
        ProcessState.RESERVED,
    },
    ProcessState.RESERVED: {
        ProcessState.RESERVED,  # second reserve before spawn
        ProcessState.RUNNING,
        ProcessState.IDLE,
    },
    ProcessState.RUNNING: {
        ProcessState.COMPLETED,
        ProcessState.FAILED,
        ProcessState.TIMED_OUT,
        ProcessState.SUPERSEDED,
        ProcessState.STOPPED,
    },
    ProcessState.COMPLETED: {ProcessState.IDLE},
    ProcessState.FAILED: {ProcessState.IDLE},
    ProcessState.TIMED_OUT: {ProcessState.IDLE},
    ProcessState.STOPPED: {ProcessState.IDLE},
    ProcessState.SUPERSEDED: {
        ProcessState.RESERVED,
        ProcessState.IDLE,
    },
}


def validate_transition(current: ProcessState, target: ProcessState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
