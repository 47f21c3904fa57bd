"""Relay engine: agent CLI processes per channel, events, approvals."""
from .models import (
    ApprovalTransport,
    ChannelContext,
    MessageHandle,
    PermissionMode,
    ProcessState,
    RunRequest,
    ToolCallRecord,
)
from .config import RelayConfig
from .errors import (
    ApprovalTimeout,
    BridgeUnavailable,
    ChannelBusyError,
    DirectoryNotFound,
    MalformedEventLine,
    OrphanToolResult,
    ProcessExitNonZero,
    ProcessSpawnError,
    ProcessTimeout,
    ProviderNotAvailableError,
    RelayError,
)

__all__ = [
    # Service (lazy import to avoid circular deps)
    "RelayService",
    # Models
    "ApprovalTransport",
    "ChannelContext",
    "MessageHandle",
    "PermissionMode",
    "ProcessState",
    "RunRequest",
    "ToolCallRecord",
    # Config
    "RelayConfig",
    "load_yaml_config",
    # Runtime (lazy import)
    "ProcessManager",
    "PermissionManager",
    "ApprovalBridge",
    "LineFramer",
    # Providers (lazy import)
    "Provider",
    "ProviderRegistry",
    "ClaudeProvider",
    "CodexProvider",
    # Errors
    "ApprovalTimeout",
    "BridgeUnavailable",
    "ChannelBusyError",
    "DirectoryNotFound",
    "MalformedEventLine",
    "OrphanToolResult",
    "ProcessExitNonZero",
    "ProcessSpawnError",
    "ProcessTimeout",
    "ProviderNotAvailableError",
    "RelayError",
]


def __getattr__(name: str):
    if name == "RelayService":
        from .service import RelayService
        return RelayService
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "ProcessManager":
        from .process_manager import ProcessManager
        return ProcessManager
    if name == "PermissionManager":
        from .permissions import PermissionManager
        return PermissionManager
    if name == "ApprovalBridge":
        from .approval_bridge import ApprovalBridge
        return ApprovalBridge
    if name == "LineFramer":
        from .framing import LineFramer
        return LineFramer
    if name == "Provider":
        from .providers.base import Provider
        return Provider
    if name == "ProviderRegistry":
        from .providers.registry import ProviderRegistry
        return ProviderRegistry
    if name == "ClaudeProvider":
        from .providers.claude_provider import ClaudeProvider
        return ClaudeProvider
    if name == "CodexProvider":
        from .providers.codex_provider import CodexProvider
        return CodexProvider
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
