"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via RELAY_* env vars or
a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes"}


def _default_data_dir() -> Path:
    return Path.home() / ".agentrelay"


APPROVAL_TRANSPORTS = ("relay", "stdin")


@dataclass
class RelayConfig:
    """Relay service configuration."""

    # Channel working directories are resolved under this folder
    # (one sub-folder per channel name) unless a path override is set.
    base_folder: str = "."

    # Per-channel defaults, overridable through the session store.
    default_provider: str = "claude"
    default_model: str = "sonnet"
    default_mode: str = "auto"

    # Overall wall-clock budget for one provider process.
    process_timeout_seconds: float = 300.0
    # Pending approvals resolve to deny after this long.
    approval_timeout_seconds: float = 60.0
    # ExitPlanMode approvals get longer to read the plan.
    plan_approval_timeout_seconds: float = 600.0
    question_timeout_seconds: float = 60.0
    # Seconds to wait for the CLI to exit on its own after it reports
    # the end of the turn.
    exit_grace_seconds: float = 2.0

    # "relay": CLI -> relay program -> HTTP endpoint.
    # "stdin": decisions written to the process stdin as tool results.
    approval_transport: str = "relay"

    # When set, only this user (besides the user who started a run) may
    # send prompts and answer approvals or questions.
    allowed_user_id: str | None = None

    server_host: str = "127.0.0.1"
    server_port: int = 3001

    db_path: str = str(_default_data_dir() / "sessions.sqlite3")
    session_retention_days: int = 30

    claude_command: str = "claude"
    codex_command: str = "codex"
    codex_model: str | None = None

    # Surface provider stderr lines (other than INFO/DEBUG noise) as
    # chat warnings.
    stderr_warnings: bool = True
    # Optional file receiving a raw copy of provider stdout.
    stream_log_path: str | None = None

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.approval_transport not in APPROVAL_TRANSPORTS:
            raise ValueError(
                f"approval_transport must be one of {'|'.join(APPROVAL_TRANSPORTS)}, "
                f"got {self.approval_transport!r}"
            )

    @classmethod
    def from_env(cls) -> RelayConfig:
        """Load configuration from RELAY_* environment variables."""
        relay_vars = {
            k: v for k, v in os.environ.items() if k.startswith("RELAY_")
        }
        if relay_vars:
            logger.info(
                "RelayConfig.from_env: RELAY_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(relay_vars.items())),
            )
        else:
            logger.debug("RelayConfig.from_env: no RELAY_* env vars set, using defaults")

        config = cls(
            base_folder=os.getenv("RELAY_BASE_FOLDER", cls.base_folder),
            default_provider=os.getenv(
                "RELAY_DEFAULT_PROVIDER", cls.default_provider
            ),
            default_model=os.getenv("RELAY_DEFAULT_MODEL", cls.default_model),
            default_mode=os.getenv("RELAY_DEFAULT_MODE", cls.default_mode),
            process_timeout_seconds=float(os.getenv(
                "RELAY_PROCESS_TIMEOUT", str(cls.process_timeout_seconds)
            )),
            approval_timeout_seconds=float(os.getenv(
                "RELAY_APPROVAL_TIMEOUT", str(cls.approval_timeout_seconds)
            )),
            plan_approval_timeout_seconds=float(os.getenv(
                "RELAY_PLAN_APPROVAL_TIMEOUT",
                str(cls.plan_approval_timeout_seconds),
            )),
            question_timeout_seconds=float(os.getenv(
                "RELAY_QUESTION_TIMEOUT", str(cls.question_timeout_seconds)
            )),
            approval_transport=os.getenv(
                "RELAY_APPROVAL_TRANSPORT", cls.approval_transport
            ),
            allowed_user_id=os.getenv("RELAY_ALLOWED_USER_ID") or None,
            server_host=os.getenv("RELAY_HOST", cls.server_host),
            server_port=int(os.getenv("RELAY_PORT", str(cls.server_port))),
            db_path=os.getenv("RELAY_DB_PATH", cls.db_path),
            session_retention_days=int(os.getenv(
                "RELAY_SESSION_RETENTION_DAYS", str(cls.session_retention_days)
            )),
            claude_command=os.getenv("RELAY_CLAUDE_COMMAND", cls.claude_command),
            codex_command=os.getenv("RELAY_CODEX_COMMAND", cls.codex_command),
            codex_model=os.getenv("RELAY_CODEX_MODEL") or None,
            stderr_warnings=_env_bool("RELAY_STDERR_WARNINGS", cls.stderr_warnings),
            stream_log_path=os.getenv("RELAY_STREAM_LOG") or None,
            log_level=os.getenv("RELAY_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "RelayConfig.from_env: provider=%s model=%s mode=%s base=%s port=%d",
            config.default_provider, config.default_model,
            config.default_mode, config.base_folder, config.server_port,
        )
        return config

    def approval_timeout_for(self, tool_name: str) -> float:
        """Deadline for an approval of *tool_name*."""
        if tool_name == "ExitPlanMode":
            return self.plan_approval_timeout_seconds
        return self.approval_timeout_seconds
