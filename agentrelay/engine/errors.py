"""Exception hierarchy for the relay engine.

One exception per failure mode. Line-level failures are reported as
events and never abort a stream; lifecycle failures end the run.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base exception for all relay errors."""


class DirectoryNotFound(RelayError):
    """The channel's working directory does not exist."""
    def __init__(self, channel_id: str, working_dir: str):
        self.channel_id = channel_id
        self.working_dir = working_dir
        super().__init__(
            f"Working directory for channel {channel_id} not found: {working_dir}"
        )


class ProcessSpawnError(RelayError):
    """The provider executable could not be started."""
    def __init__(self, channel_id: str, command: str, reason: str):
        self.channel_id = channel_id
        self.command = command
        self.reason = reason
        super().__init__(
            f"Failed to start '{command}' for channel {channel_id}: {reason}"
        )


class MalformedEventLine(RelayError):
    """A stdout line was not a valid provider event."""
    def __init__(self, raw_line: str, reason: str):
        self.raw_line = raw_line
        self.reason = reason
        super().__init__(f"Malformed event line ({reason}): {raw_line[:200]}")


class OrphanToolResult(RelayError):
    """A tool result referenced an invocation that was never seen."""
    def __init__(self, channel_id: str, invocation_id: str):
        self.channel_id = channel_id
        self.invocation_id = invocation_id
        super().__init__(
            f"Tool result {invocation_id} in channel {channel_id} "
            f"has no matching invocation"
        )


class ProcessTimeout(RelayError):
    """The provider process exceeded its overall time budget."""
    def __init__(self, channel_id: str, timeout_seconds: float):
        self.channel_id = channel_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Process for channel {channel_id} timed out after {timeout_seconds:g}s"
        )


class ProcessExitNonZero(RelayError):
    """The provider process exited with a failure code."""
    def __init__(self, channel_id: str, exit_code: int | None):
        self.channel_id = channel_id
        self.exit_code = exit_code
        super().__init__(
            f"Process for channel {channel_id} exited with code {exit_code}"
        )


class ApprovalTimeout(RelayError):
    """No human decision arrived before the approval deadline."""
    def __init__(self, correlation_id: str, timeout_seconds: float):
        self.correlation_id = correlation_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Approval {correlation_id} timed out after {timeout_seconds:g}s"
        )


class BridgeUnavailable(RelayError):
    """The decision could not be delivered to the provider process."""
    def __init__(self, channel_id: str, reason: str):
        self.channel_id = channel_id
        self.reason = reason
        super().__init__(
            f"Cannot deliver decision to channel {channel_id}: {reason}"
        )


class ChannelBusyError(RelayError):
    """A prompt arrived while the channel already has an active run."""
    def __init__(self, channel_id: str):
        self.channel_id = channel_id
        super().__init__(f"Channel {channel_id} already has an active process")


class ProviderNotAvailableError(RelayError):
    """Requested provider is not registered."""
    def __init__(self, provider_name: str, available: list[str]):
        self.provider_name = provider_name
        self.available = available
        avail_str = ", ".join(available) if available else "none"
        super().__init__(
            f"Provider '{provider_name}' is not available. "
            f"Available providers: {avail_str}"
        )
