"""Per-channel session state.

The registry owns one ``ChannelSession`` per channel. Only the process
manager changes ``state`` and ``run``; the ordered event consumer of the
active run owns the tool-call table and ``status_message``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .lifecycle import validate_transition
from .models import ChannelContext, MessageHandle, ProcessState, ToolCallRecord

if TYPE_CHECKING:
    from .process_manager import ProcessRun

logger = logging.getLogger(__name__)


@dataclass
class ChannelSession:
    channel_id: str
    working_dir: str = ""
    continuation_id: str | None = None
    state: ProcessState = ProcessState.IDLE
    run: ProcessRun | None = None
    status_message: MessageHandle | None = None
    context: ChannelContext | None = None
    # Bumped by every reserve(); a spawn that finds a newer reservation
    # has been superseded while it was starting.
    reservation: int = 0

    @property
    def busy(self) -> bool:
        return self.state != ProcessState.IDLE

    @property
    def tool_calls(self) -> dict[str, ToolCallRecord]:
        """Tool calls of the active run. Empty once the run is cleared."""
        return self.run.tool_calls if self.run is not None else {}

    def transition(self, target: ProcessState) -> None:
        """Move to *target*, raising ValueError if the move is not allowed."""
        validate_transition(self.state, target)
        logger.debug(
            "Channel %s: %s -> %s", self.channel_id, self.state.value, target.value
        )
        self.state = target

    def clear_run(self) -> None:
        self.run = None


class ChannelSessionRegistry:
    """All channel sessions, keyed by channel id."""

    def __init__(self) -> None:
        self._sessions: dict[str, ChannelSession] = {}

    def get(self, channel_id: str) -> ChannelSession | None:
        return self._sessions.get(channel_id)

    def get_or_create(self, channel_id: str) -> ChannelSession:
        session = self._sessions.get(channel_id)
        if session is None:
            session = ChannelSession(channel_id=channel_id)
            self._sessions[channel_id] = session
        return session

    def is_busy(self, channel_id: str) -> bool:
        session = self._sessions.get(channel_id)
        return session is not None and session.busy

    def delete(self, channel_id: str) -> ChannelSession | None:
        return self._sessions.pop(channel_id, None)

    def active(self) -> list[ChannelSession]:
        """Sessions with a live process."""
        return [s for s in self._sessions.values() if s.run is not None]

    def __contains__(self, channel_id: str) -> bool:
        return channel_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
