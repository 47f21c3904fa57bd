"""Tests for the channel state machine and the session registry."""
from __future__ import annotations

import pytest

from agentrelay.engine.lifecycle import VALID_TRANSITIONS, validate_transition
from agentrelay.engine.models import TERMINAL_STATES, ProcessState
from agentrelay.engine.session import ChannelSessionRegistry


class TestTransitions:
    @pytest.mark.parametrize("target", [
        ProcessState.COMPLETED,
        ProcessState.FAILED,
        ProcessState.TIMED_OUT,
        ProcessState.SUPERSEDED,
        ProcessState.STOPPED,
    ])
    def test_running_to_every_outcome(self, target):
        validate_transition(ProcessState.RUNNING, target)

    def test_every_terminal_state_returns_to_idle(self):
        for state in TERMINAL_STATES:
            validate_transition(state, ProcessState.IDLE)

    def test_superseded_can_be_reserved_again(self):
        validate_transition(ProcessState.SUPERSEDED, ProcessState.RESERVED)

    def test_spawn_failure_returns_to_idle(self):
        validate_transition(ProcessState.RESERVED, ProcessState.IDLE)

    def test_idle_cannot_run_without_reservation(self):
        with pytest.raises(ValueError, match="idle -> running"):
            validate_transition(ProcessState.IDLE, ProcessState.RUNNING)

    def test_completed_cannot_restart(self):
        with pytest.raises(ValueError):
            validate_transition(ProcessState.COMPLETED, ProcessState.RUNNING)

    def test_every_state_has_an_entry(self):
        assert set(VALID_TRANSITIONS) == set(ProcessState)


class TestSessionRegistry:
    def test_get_or_create_starts_idle(self):
        registry = ChannelSessionRegistry()
        session = registry.get_or_create("c1")
        assert session.state == ProcessState.IDLE
        assert not session.busy
        assert registry.get_or_create("c1") is session
        assert "c1" in registry
        assert len(registry) == 1

    def test_reserved_and_running_are_busy(self):
        registry = ChannelSessionRegistry()
        session = registry.get_or_create("c1")
        session.transition(ProcessState.RESERVED)
        assert registry.is_busy("c1")

    def test_invalid_transition_leaves_state(self):
        session = ChannelSessionRegistry().get_or_create("c1")
        with pytest.raises(ValueError):
            session.transition(ProcessState.COMPLETED)
        assert session.state == ProcessState.IDLE

    def test_tool_calls_empty_without_run(self):
        session = ChannelSessionRegistry().get_or_create("c1")
        assert session.tool_calls == {}

    def test_delete(self):
        registry = ChannelSessionRegistry()
        registry.get_or_create("c1")
        assert registry.delete("c1") is not None
        assert registry.get("c1") is None
        assert not registry.is_busy("c1")
