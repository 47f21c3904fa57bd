"""Tests for PermissionManager: exactly-once resolution of human interactions."""
from __future__ import annotations

import asyncio

import pytest

from agentrelay.engine.config import RelayConfig
from agentrelay.engine.models import ChannelContext
from agentrelay.engine.permissions import (
    QUESTION_TIMEOUT_ANSWER,
    ApprovalDecision,
    PermissionManager,
    approval_preview,
)

CTX = ChannelContext(channel_id="c1", channel_name="proj", user_id="u1", message_id="m0")


async def _until_pending(manager: PermissionManager, count: int = 1) -> None:
    for _ in range(100):
        if manager.pending_count >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError("interaction never became pending")


@pytest.mark.asyncio
async def test_approval_resolved_by_decision(surface) -> None:
    manager = PermissionManager(surface, RelayConfig())
    task = asyncio.create_task(manager.request_approval("Bash", {"command": "ls"}, CTX))
    await _until_pending(manager)

    (channel_id, tool_name, correlation_id) = surface.approvals[0]
    assert (channel_id, tool_name) == ("c1", "Bash")
    assert manager.handle_external_decision("c1", correlation_id, approved=True, user_id="u1")

    decision = await task
    assert decision.approved is True
    assert decision.user_id == "u1"
    assert decision.to_payload({"command": "ls"}) == {
        "behavior": "allow", "updatedInput": {"command": "ls"},
    }
    assert manager.pending_count == 0


@pytest.mark.asyncio
async def test_duplicate_decision_is_ignored(surface) -> None:
    manager = PermissionManager(surface, RelayConfig())
    task = asyncio.create_task(manager.request_approval("Write", {}, CTX))
    await _until_pending(manager)
    correlation_id = surface.approvals[0][2]

    assert manager.handle_external_decision("c1", correlation_id, approved=False, feedback="no")
    assert not manager.handle_external_decision("c1", correlation_id, approved=True)

    decision = await task
    assert decision.approved is False
    assert decision.message == "no"


@pytest.mark.asyncio
async def test_decision_from_other_channel_rejected(surface) -> None:
    manager = PermissionManager(surface, RelayConfig())
    task = asyncio.create_task(manager.request_approval("Bash", {}, CTX, timeout=5))
    await _until_pending(manager)
    correlation_id = surface.approvals[0][2]

    assert not manager.handle_external_decision("c2", correlation_id, approved=True)
    assert not manager.handle_external_decision("c1", correlation_id)  # no verdict
    assert manager.is_pending(correlation_id)
    assert manager.handle_external_decision("c1", correlation_id, approved=True)
    assert (await task).approved


@pytest.mark.asyncio
async def test_timeout_denies_and_late_decision_is_ignored(surface) -> None:
    manager = PermissionManager(surface, RelayConfig())
    decision = await manager.request_approval("Bash", {}, CTX, timeout=0.01)
    assert decision.approved is False
    assert decision.timed_out is True
    assert "timed out" in decision.message

    correlation_id = surface.approvals[0][2]
    assert not manager.handle_external_decision("c1", correlation_id, approved=True)
    # The widget is marked expired.
    handle, content = surface.updates[-1]
    assert handle.message_id == correlation_id
    assert "timed out" in content.body


@pytest.mark.asyncio
async def test_no_context_denies_without_presenting(surface) -> None:
    manager = PermissionManager(surface, RelayConfig())
    decision = await manager.request_approval("Bash", {}, None)
    assert decision == ApprovalDecision.deny("No chat context available")
    assert surface.approvals == []


@pytest.mark.asyncio
async def test_surface_failure_denies(surface) -> None:
    surface.fail_approvals = True
    manager = PermissionManager(surface, RelayConfig())
    decision = await manager.request_approval("Bash", {}, CTX)
    assert decision.approved is False
    assert decision.message == "Permission request failed: surface offline"


@pytest.mark.asyncio
async def test_questions_answered_in_order(surface) -> None:
    manager = PermissionManager(surface, RelayConfig())
    questions = [
        {"question": "Which db?", "header": "DB", "options": [{"label": "sqlite"}, {"label": "pg"}]},
        {"question": "Add tests?", "options": [{"label": "yes"}]},
    ]
    task = asyncio.create_task(manager.request_question(questions, CTX))

    await _until_pending(manager)
    assert manager.handle_external_decision("c1", surface.choices[0][2], answer="pg")
    for _ in range(100):
        if len(surface.choices) == 2 and manager.is_pending(surface.choices[1][2]):
            break
        await asyncio.sleep(0)
    assert manager.handle_external_decision("c1", surface.choices[1][2], answer="yes")

    assert await task == {"Which db?": "pg", "Add tests?": "yes"}
    assert surface.choices[0][1].header == "DB"


@pytest.mark.asyncio
async def test_question_timeout_uses_default_answer(surface) -> None:
    manager = PermissionManager(surface, RelayConfig())
    answers = await manager.request_question([{"question": "Proceed?"}], CTX, timeout=0.01)
    assert answers == {"Proceed?": QUESTION_TIMEOUT_ANSWER}


@pytest.mark.asyncio
async def test_question_without_context_raises(surface) -> None:
    manager = PermissionManager(surface, RelayConfig())
    with pytest.raises(ValueError, match="No chat context"):
        await manager.request_question([{"question": "?"}], None)


@pytest.mark.asyncio
async def test_expire_channel_resolves_to_default(surface) -> None:
    manager = PermissionManager(surface, RelayConfig())
    task = asyncio.create_task(manager.request_approval("Bash", {}, CTX, timeout=30))
    await _until_pending(manager)

    assert manager.expire_channel("c1") == 1
    decision = await task
    assert decision.approved is False
    assert decision.timed_out is True


@pytest.mark.asyncio
async def test_expire_channel_scoped_to_message(surface) -> None:
    manager = PermissionManager(surface, RelayConfig())
    later = ChannelContext(channel_id="c1", channel_name="proj", user_id="u1", message_id="m9")
    old = asyncio.create_task(manager.request_approval("Bash", {}, CTX, timeout=30))
    new = asyncio.create_task(manager.request_approval("Bash", {}, later, timeout=30))
    await _until_pending(manager, 2)

    assert manager.expire_channel("c1", message_id="m0") == 1
    assert (await old).timed_out is True
    assert not new.done()

    manager.cleanup()
    assert (await new).approved is False


class TestDecisionAuthorization:
    @pytest.mark.asyncio
    async def test_only_requester_may_decide(self, surface) -> None:
        manager = PermissionManager(surface, RelayConfig())
        task = asyncio.create_task(manager.request_approval("Bash", {}, CTX))
        await _until_pending(manager)
        correlation_id = surface.approvals[0][2]

        assert not manager.handle_external_decision(
            "c1", correlation_id, approved=True, user_id="intruder",
        )
        assert manager.is_pending(correlation_id)
        assert manager.handle_external_decision("c1", correlation_id, approved=True, user_id="u1")
        assert (await task).approved is True

    @pytest.mark.asyncio
    async def test_allowed_user_may_decide_for_anyone(self, surface) -> None:
        manager = PermissionManager(surface, RelayConfig(allowed_user_id="owner"))
        task = asyncio.create_task(manager.request_approval("Bash", {}, CTX))
        await _until_pending(manager)
        correlation_id = surface.approvals[0][2]

        assert manager.handle_external_decision(
            "c1", correlation_id, approved=False, user_id="owner",
        )
        assert (await task).approved is False

    @pytest.mark.asyncio
    async def test_anonymous_decision_rejected_when_user_restricted(self, surface) -> None:
        manager = PermissionManager(surface, RelayConfig(allowed_user_id="owner"))
        task = asyncio.create_task(manager.request_question(
            [{"question": "Color?", "options": [{"label": "red"}]}], CTX, timeout=30,
        ))
        await _until_pending(manager)
        correlation_id = surface.choices[0][2]

        assert not manager.handle_external_decision("c1", correlation_id, answer="red")
        assert manager.handle_external_decision(
            "c1", correlation_id, answer="red", user_id="u1",
        )
        assert await task == {"Color?": "red"}


@pytest.mark.asyncio
async def test_cancelled_waiter_leaves_nothing_pending(surface) -> None:
    manager = PermissionManager(surface, RelayConfig())
    task = asyncio.create_task(manager.request_approval("Bash", {}, CTX, timeout=30))
    await _until_pending(manager)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert manager.pending_count == 0


def test_approval_preview_truncates() -> None:
    assert approval_preview("Bash", {"command": "ls"}) == "ls"
    preview = approval_preview("Write", {"content": "x" * 5000})
    assert preview.endswith("... (truncated)")
    assert len(preview) < 1100
