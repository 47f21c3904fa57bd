"""Persisted per-channel state.

Continuation ids (provider session/thread ids) survive restarts so a
channel resumes its conversation; per-channel settings (mode, model,
provider, path override, timeout, git check) live beside them.
Last writer wins per channel key.
"""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

MODES = ("auto", "plan", "approve")
MODELS = ("opus", "sonnet", "haiku")
PROVIDERS = ("claude", "codex")

DEFAULT_MODE = "auto"
DEFAULT_MODEL = "sonnet"
DEFAULT_PROVIDER = "claude"
DEFAULT_TIMEOUT_MINUTES = 5


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso_utc(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat()


@dataclass
class StoredSession:
    channel_id: str
    session_id: str
    channel_name: str
    last_used: str


class SessionStore:
    """sqlite3-backed channel store."""

    def __init__(self, db_path: str | Path):
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS channel_sessions (
                    channel_id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    channel_name TEXT NOT NULL DEFAULT '',
                    last_used TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS channel_settings (
                    channel_id TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    PRIMARY KEY (channel_id, key)
                )
                """
            )
            conn.commit()

    # ── Sessions ──

    def get_session(self, channel_id: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT session_id FROM channel_sessions WHERE channel_id = ?",
                (channel_id,),
            ).fetchone()
        return row["session_id"] if row else None

    def set_session(self, channel_id: str, session_id: str, channel_name: str = "") -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO channel_sessions (channel_id, session_id, channel_name, last_used)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(channel_id) DO UPDATE SET
                    session_id = excluded.session_id,
                    channel_name = excluded.channel_name,
                    last_used = excluded.last_used
                """,
                (channel_id, session_id, channel_name, _iso_utc(_utc_now())),
            )
            conn.commit()

    def clear_session(self, channel_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM channel_sessions WHERE channel_id = ?", (channel_id,)
            )
            conn.commit()

    def list_sessions(self) -> list[StoredSession]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT channel_id, session_id, channel_name, last_used "
                "FROM channel_sessions ORDER BY last_used DESC"
            ).fetchall()
        return [StoredSession(**dict(row)) for row in rows]

    def cleanup_old_sessions(self, retention_days: int = 30) -> int:
        """Delete sessions unused for *retention_days*. Returns the count."""
        cutoff = _iso_utc(_utc_now() - timedelta(days=retention_days))
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM channel_sessions WHERE last_used < ?", (cutoff,)
            )
            conn.commit()
            removed = cursor.rowcount
        if removed:
            logger.info("Purged %d session(s) older than %d days", removed, retention_days)
        return removed

    # ── Settings ──

    def _get_setting(self, channel_id: str, key: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM channel_settings WHERE channel_id = ? AND key = ?",
                (channel_id, key),
            ).fetchone()
        return row["value"] if row else None

    def _set_setting(self, channel_id: str, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO channel_settings (channel_id, key, value) VALUES (?, ?, ?)
                ON CONFLICT(channel_id, key) DO UPDATE SET value = excluded.value
                """,
                (channel_id, key, value),
            )
            conn.commit()

    def _clear_setting(self, channel_id: str, key: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM channel_settings WHERE channel_id = ? AND key = ?",
                (channel_id, key),
            )
            conn.commit()

    @staticmethod
    def _check(kind: str, value: str, allowed: tuple[str, ...]) -> None:
        if value not in allowed:
            raise ValueError(
                f"Invalid {kind} '{value}'. Expected one of: {', '.join(allowed)}"
            )

    def get_mode(self, channel_id: str, default: str = DEFAULT_MODE) -> str:
        return self._get_setting(channel_id, "mode") or default

    def set_mode(self, channel_id: str, mode: str) -> None:
        self._check("mode", mode, MODES)
        self._set_setting(channel_id, "mode", mode)

    def get_model(self, channel_id: str, default: str = DEFAULT_MODEL) -> str:
        return self._get_setting(channel_id, "model") or default

    def set_model(self, channel_id: str, model: str) -> None:
        self._check("model", model, MODELS)
        self._set_setting(channel_id, "model", model)

    def get_provider(self, channel_id: str, default: str = DEFAULT_PROVIDER) -> str:
        return self._get_setting(channel_id, "provider") or default

    def set_provider(self, channel_id: str, provider: str) -> None:
        self._check("provider", provider, PROVIDERS)
        self._set_setting(channel_id, "provider", provider)

    def get_path(self, channel_id: str) -> str | None:
        return self._get_setting(channel_id, "path")

    def set_path(self, channel_id: str, path: str) -> None:
        self._set_setting(channel_id, "path", path)

    def clear_path(self, channel_id: str) -> None:
        self._clear_setting(channel_id, "path")

    def get_skip_git_check(self, channel_id: str) -> bool:
        return self._get_setting(channel_id, "skip_git_check") == "1"

    def set_skip_git_check(self, channel_id: str, enabled: bool) -> None:
        self._set_setting(channel_id, "skip_git_check", "1" if enabled else "0")

    def get_timeout(self, channel_id: str, default: int = DEFAULT_TIMEOUT_MINUTES) -> int:
        value = self._get_setting(channel_id, "timeout_minutes")
        return int(value) if value else default

    def set_timeout(self, channel_id: str, minutes: int) -> None:
        if minutes < 1:
            raise ValueError("Timeout must be at least one minute")
        self._set_setting(channel_id, "timeout_minutes", str(int(minutes)))

    def clear_channel(self, channel_id: str) -> None:
        """Forget the channel's session and every setting."""
        with self._connect() as conn:
            conn.execute("DELETE FROM channel_sessions WHERE channel_id = ?", (channel_id,))
            conn.execute("DELETE FROM channel_settings WHERE channel_id = ?", (channel_id,))
            conn.commit()
