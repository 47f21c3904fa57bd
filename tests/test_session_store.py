"""Tests for the sqlite-backed channel store."""
from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from agentrelay.shared.services.session_store import SessionStore


@pytest.fixture
def store(tmp_path: Path) -> SessionStore:
    return SessionStore(tmp_path / "nested" / "sessions.sqlite3")


def test_session_round_trip_and_last_writer_wins(store: SessionStore) -> None:
    assert store.get_session("c1") is None
    store.set_session("c1", "sess-1", "proj")
    store.set_session("c1", "sess-2", "proj")
    assert store.get_session("c1") == "sess-2"
    (stored,) = store.list_sessions()
    assert stored.channel_id == "c1"
    assert stored.channel_name == "proj"


def test_clear_session(store: SessionStore) -> None:
    store.set_session("c1", "sess-1")
    store.clear_session("c1")
    assert store.get_session("c1") is None


def test_persists_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "db.sqlite3"
    SessionStore(path).set_session("c1", "sess-1")
    assert SessionStore(path).get_session("c1") == "sess-1"


def test_cleanup_old_sessions(store: SessionStore) -> None:
    store.set_session("fresh", "s-new")
    store.set_session("stale", "s-old")
    with sqlite3.connect(store.db_path) as conn:
        conn.execute(
            "UPDATE channel_sessions SET last_used = ? WHERE channel_id = ?",
            ("2000-01-01T00:00:00+00:00", "stale"),
        )
    assert store.cleanup_old_sessions(30) == 1
    assert store.get_session("stale") is None
    assert store.get_session("fresh") == "s-new"


def test_settings_defaults_and_validation(store: SessionStore) -> None:
    assert store.get_mode("c1") == "auto"
    assert store.get_model("c1", "opus") == "opus"
    assert store.get_provider("c1") == "claude"
    assert store.get_timeout("c1") == 5
    assert store.get_skip_git_check("c1") is False

    store.set_mode("c1", "plan")
    store.set_model("c1", "haiku")
    store.set_provider("c1", "codex")
    store.set_timeout("c1", 12)
    store.set_skip_git_check("c1", True)
    assert store.get_mode("c1") == "plan"
    assert store.get_model("c1") == "haiku"
    assert store.get_provider("c1") == "codex"
    assert store.get_timeout("c1") == 12
    assert store.get_skip_git_check("c1") is True

    with pytest.raises(ValueError, match="Invalid mode"):
        store.set_mode("c1", "yolo")
    with pytest.raises(ValueError):
        store.set_provider("c1", "gemini")
    with pytest.raises(ValueError):
        store.set_timeout("c1", 0)


def test_path_override(store: SessionStore) -> None:
    store.set_path("c1", "~/src/app")
    assert store.get_path("c1") == "~/src/app"
    store.clear_path("c1")
    assert store.get_path("c1") is None


def test_clear_channel(store: SessionStore) -> None:
    store.set_session("c1", "sess-1")
    store.set_mode("c1", "approve")
    store.clear_channel("c1")
    assert store.get_session("c1") is None
    assert store.get_mode("c1") == "auto"
