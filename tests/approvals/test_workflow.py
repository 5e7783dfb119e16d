"""Tests for approval request creation, resolution, bulk decisions and expiry."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from actiongate.approvals.notifier import NotificationDispatcher
from actiongate.approvals.workflow import (
    APPROVAL_EXPIRED_REASON,
    EXECUTION_WINDOW_PASSED_REASON,
    ApprovalWorkflowManager,
)
from actiongate.audit import AuditEventType, AuditTrail
from actiongate.errors import (
    ActionHeldError,
    ApprovalNotFoundError,
    AuditWriteError,
    StaleDecisionError,
)
from actiongate.lifecycle import RETRY_EXHAUSTED_REASON
from actiongate.models import (
    ApprovalDecision,
    ApprovalStatus,
    ScheduledActionStatus,
    UserApprovalResponse,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def notifier(channel) -> NotificationDispatcher:
    return NotificationDispatcher(channel, timeout_seconds=0.5)


@pytest.fixture
def workflow(store, audit_sink, policy_store, notifier) -> ApprovalWorkflowManager:
    audit = AuditTrail(audit_sink, store, notifier, operator_id="ops-team")
    return ApprovalWorkflowManager(
        store, audit, policy_store, notifier, default_approver="ops-team"
    )


@pytest.fixture
def open_request(workflow, store, make_action, make_result, now):
    """Store an action and open an approval request for it."""

    async def _open(**overrides):
        overrides.setdefault("execute_at", now + timedelta(hours=3))
        action = await store.insert_action(make_action(**overrides))
        return await workflow.create_request(
            action,
            make_result(action, confidence=0.6),
            "confidence below threshold",
            now=now,
        )

    return _open


def _response(request, decision, **kwargs) -> UserApprovalResponse:
    return UserApprovalResponse(
        request_id=request.id, decision=decision, responder_id="alice", **kwargs
    )


class TestCreateRequest:
    async def test_request_links_action_and_notifies(
        self, open_request, store, notifier, channel, audit_sink, now
    ):
        request, action = await open_request()
        await notifier.drain()

        assert request.status == ApprovalStatus.PENDING
        assert request.expires_at == now + timedelta(minutes=60)
        assert request.approver_id == "ops-team"
        assert action.status == ScheduledActionStatus.RELEVANCE_CHECK_PASSED
        assert action.pending_request_id == request.id
        assert await store.get_request(request.id) is not None
        assert [approver for approver, _ in channel.sent] == ["ops-team"]
        assert channel.sent[0][1]["request_id"] == str(request.id)
        assert audit_sink.records[-1].event_type == AuditEventType.APPROVAL_REQUESTED

    async def test_approver_from_parameters(self, open_request):
        request, _ = await open_request(parameters={"approver_id": "bob"})

        assert request.approver_id == "bob"

    async def test_slow_channel_does_not_block(
        self, store, audit_sink, policy_store, slow_channel, make_action, make_result
    ):
        notifier = NotificationDispatcher(slow_channel, timeout_seconds=10.0)
        workflow = ApprovalWorkflowManager(
            store, AuditTrail(audit_sink, store), policy_store, notifier
        )
        action = await store.insert_action(make_action())

        request, _ = await asyncio.wait_for(
            workflow.create_request(action, make_result(action), "review"), timeout=1.0
        )

        assert request.status == ApprovalStatus.PENDING
        assert notifier.pending == 1
        await notifier.drain(timeout_seconds=0.01)


class TestResolve:
    async def test_approve(self, open_request, workflow, store, audit_sink):
        request, action = await open_request()

        status = await workflow.resolve(request.id, _response(request, ApprovalDecision.APPROVE))

        stored = await store.get_action(action.id)
        assert status == ScheduledActionStatus.RELEVANCE_CHECK_PASSED
        assert stored.approved_by == "alice"
        assert stored.pending_request_id is None
        assert (await store.get_request(request.id)).status == ApprovalStatus.APPROVED
        assert audit_sink.records[-1].event_type == AuditEventType.ACTION_APPROVED
        assert audit_sink.records[-1].actor == "alice"

    async def test_reject(self, open_request, workflow, store):
        request, action = await open_request()

        status = await workflow.resolve(
            request.id, _response(request, ApprovalDecision.REJECT, reason="client moved away")
        )

        stored = await store.get_action(action.id)
        assert status == ScheduledActionStatus.SUPPRESSED
        assert stored.suppression_reason == "client moved away"

    async def test_modify_requires_parameters(self, open_request, workflow, store):
        request, _ = await open_request()

        with pytest.raises(ValueError, match="modified_parameters"):
            await workflow.resolve(request.id, _response(request, ApprovalDecision.MODIFY))
        assert (await store.get_request(request.id)).status == ApprovalStatus.PENDING

    async def test_modify_returns_action_to_pending(self, open_request, workflow, store):
        request, action = await open_request(parameters={"subject": "Hi", "tone": "warm"})

        status = await workflow.resolve(
            request.id,
            _response(
                request,
                ApprovalDecision.MODIFY,
                modified_parameters={"subject": "Hello again", "description": "Softer"},
            ),
        )

        stored = await store.get_action(action.id)
        assert status == ScheduledActionStatus.PENDING
        assert stored.parameters == {"subject": "Hello again", "tone": "warm"}
        assert stored.description == "Softer"
        assert (await store.get_request(request.id)).status == ApprovalStatus.MODIFIED

    async def test_defer_pushes_execution(self, open_request, workflow, store, now):
        request, action = await open_request()

        status = await workflow.resolve(
            request.id, _response(request, ApprovalDecision.DEFER), now=now
        )

        stored = await store.get_action(action.id)
        assert status == ScheduledActionStatus.PENDING
        assert stored.retry_attempts == 1
        assert stored.execute_at == action.execute_at + timedelta(minutes=60)

    async def test_defer_past_retry_limit_suppresses(
        self, open_request, workflow, store, audit_sink
    ):
        request, action = await open_request(retry_attempts=3, max_retry_attempts=3)

        status = await workflow.resolve(request.id, _response(request, ApprovalDecision.DEFER))

        stored = await store.get_action(action.id)
        assert status == ScheduledActionStatus.SUPPRESSED
        assert stored.suppression_reason == RETRY_EXHAUSTED_REASON
        assert stored.retry_attempts == 3
        assert audit_sink.records[-1].event_type == AuditEventType.ACTION_SUPPRESSED

    async def test_unknown_request(self, workflow, make_action):
        action = make_action()
        response = UserApprovalResponse(
            request_id=action.id, decision=ApprovalDecision.APPROVE, responder_id="alice"
        )

        with pytest.raises(ApprovalNotFoundError):
            await workflow.resolve(action.id, response)

    async def test_second_response_is_stale(self, open_request, workflow, store):
        request, _ = await open_request()
        await workflow.resolve(request.id, _response(request, ApprovalDecision.REJECT))

        with pytest.raises(StaleDecisionError) as excinfo:
            await workflow.resolve(request.id, _response(request, ApprovalDecision.APPROVE))

        assert excinfo.value.current_status == "rejected"
        assert (await store.get_request(request.id)).status == ApprovalStatus.REJECTED

    async def test_response_after_expiry_is_stale(self, open_request, workflow, store):
        request, action = await open_request()

        with pytest.raises(StaleDecisionError) as excinfo:
            await workflow.resolve(
                request.id,
                _response(request, ApprovalDecision.APPROVE),
                now=request.expires_at + timedelta(minutes=1),
            )

        assert excinfo.value.current_status == "expired"
        assert (await store.get_request(request.id)).status == ApprovalStatus.EXPIRED
        assert (await store.get_action(action.id)).status == ScheduledActionStatus.EXPIRED

    async def test_concurrent_responses_have_one_winner(self, open_request, workflow, store):
        request, _ = await open_request()

        outcomes = await asyncio.gather(
            workflow.resolve(request.id, _response(request, ApprovalDecision.APPROVE)),
            workflow.resolve(request.id, _response(request, ApprovalDecision.REJECT)),
            return_exceptions=True,
        )

        stale = [o for o in outcomes if isinstance(o, StaleDecisionError)]
        won = [o for o in outcomes if isinstance(o, ScheduledActionStatus)]
        assert len(stale) == 1
        assert len(won) == 1
        final = await store.get_request(request.id)
        expected = (
            ApprovalStatus.APPROVED
            if won[0] == ScheduledActionStatus.RELEVANCE_CHECK_PASSED
            else ApprovalStatus.REJECTED
        )
        assert final.status == expected

    async def test_response_racing_the_sweep_has_one_winner(
        self, open_request, workflow, store, now
    ):
        request, _ = await open_request()
        late = request.expires_at + timedelta(seconds=1)

        resolved, swept = await asyncio.gather(
            workflow.resolve(
                request.id, _response(request, ApprovalDecision.APPROVE), now=now
            ),
            workflow.sweep_expired(now=late),
            return_exceptions=True,
        )

        final = await store.get_request(request.id)
        if isinstance(resolved, StaleDecisionError):
            assert final.status == ApprovalStatus.EXPIRED
            assert swept == [request.action_id]
        else:
            assert final.status == ApprovalStatus.APPROVED
            assert swept == []

    async def test_audit_failure_holds_action(self, open_request, workflow, store, audit_sink):
        request, action = await open_request()
        audit_sink.failing = True

        with pytest.raises(AuditWriteError):
            await workflow.resolve(request.id, _response(request, ApprovalDecision.REJECT))

        stored = await store.get_action(action.id)
        assert stored.status == ScheduledActionStatus.RELEVANCE_CHECK_PASSED
        assert stored.needs_reconciliation is True

    async def test_held_rejection_is_applied_on_reconcile(
        self, open_request, workflow, store, audit_sink
    ):
        request, action = await open_request()
        audit_sink.failing = True
        with pytest.raises(AuditWriteError):
            await workflow.resolve(request.id, _response(request, ApprovalDecision.REJECT))
        assert (await store.get_request(request.id)).status == ApprovalStatus.REJECTED
        audit_sink.failing = False

        released = await workflow.reconcile(action.id, actor="ops-team")

        assert released.needs_reconciliation is False
        assert released.status == ScheduledActionStatus.SUPPRESSED
        assert released.pending_request_id is None
        events = [record.event_type for record in audit_sink.records]
        assert events[-2:] == [
            AuditEventType.ACTION_RECONCILED,
            AuditEventType.ACTION_REJECTED,
        ]

    async def test_held_action_refuses_resolution(self, open_request, workflow, store):
        request, action = await open_request()
        await store.flag_for_reconciliation(action.id)

        with pytest.raises(ActionHeldError):
            await workflow.resolve(request.id, _response(request, ApprovalDecision.APPROVE))

        assert (await store.get_request(request.id)).status == ApprovalStatus.PENDING
        assert (await store.get_action(action.id)).approved_by is None

    async def test_reconcile_leaves_unheld_action_alone(self, open_request, workflow, audit_sink):
        _, action = await open_request()
        count = len(audit_sink.records)

        released = await workflow.reconcile(action.id, actor="ops-team")

        assert released.status == action.status
        assert len(audit_sink.records) == count


class TestBulkResolution:
    async def test_applies_to_similar_pending_requests(self, open_request, workflow, store):
        first, _ = await open_request(action_type="market_update")
        second, second_action = await open_request(action_type="market_update")
        other, other_action = await open_request(action_type="birthday_card")

        resolution = await workflow.resolve_detailed(
            first.id,
            _response(first, ApprovalDecision.APPROVE, apply_to_similar_actions=True),
        )

        assert resolution.bulk_resolved == [second_action.id]
        sibling = await store.get_request(second.id)
        assert sibling.status == ApprovalStatus.APPROVED
        assert sibling.bulk_resolved_from == first.id
        assert (await store.get_action(second_action.id)).approved_by == "alice"
        assert (await store.get_request(other.id)).status == ApprovalStatus.PENDING
        assert (await store.get_action(other_action.id)).approved_by is None

    async def test_disabled_by_policy(self, open_request, workflow, store, policy_store):
        policy_store.update({"bulk_approval_enabled": False})
        first, _ = await open_request(action_type="market_update")
        second, _ = await open_request(action_type="market_update")

        resolution = await workflow.resolve_detailed(
            first.id,
            _response(first, ApprovalDecision.REJECT, apply_to_similar_actions=True),
        )

        assert resolution.bulk_resolved == []
        assert (await store.get_request(second.id)).status == ApprovalStatus.PENDING


class TestExpiry:
    async def test_sweep_expires_unanswered_requests(
        self, open_request, workflow, store, audit_sink
    ):
        request, action = await open_request()

        expired = await workflow.sweep_expired(now=request.expires_at + timedelta(minutes=1))

        stored = await store.get_action(action.id)
        assert expired == [action.id]
        assert stored.status == ScheduledActionStatus.EXPIRED
        assert stored.suppression_reason == APPROVAL_EXPIRED_REASON
        assert audit_sink.records[-1].event_type == AuditEventType.APPROVAL_EXPIRED

    async def test_sweep_expires_overdue_actions(self, workflow, store, make_action, now):
        overdue = await store.insert_action(make_action(execute_at=now - timedelta(hours=2)))
        fresh = await store.insert_action(make_action(execute_at=now - timedelta(minutes=30)))

        expired = await workflow.sweep_expired(now=now)

        assert expired == [overdue.id]
        stored = await store.get_action(overdue.id)
        assert stored.suppression_reason == EXECUTION_WINDOW_PASSED_REASON
        assert (await store.get_action(fresh.id)).status == ScheduledActionStatus.PENDING

    async def test_sweep_skips_held_actions(self, open_request, workflow, store):
        request, action = await open_request()
        await store.flag_for_reconciliation(action.id)

        expired = await workflow.sweep_expired(now=request.expires_at + timedelta(minutes=1))

        assert expired == []
        assert (await store.get_request(request.id)).status == ApprovalStatus.PENDING
        assert (await store.get_action(action.id)).status == action.status

    async def test_sweep_is_idempotent(self, open_request, workflow):
        request, _ = await open_request()
        late = request.expires_at + timedelta(minutes=1)

        await workflow.sweep_expired(now=late)

        assert await workflow.sweep_expired(now=late) == []

    async def test_expire_action_closes_its_request(self, open_request, workflow, store):
        request, action = await open_request()

        stored = await workflow.expire_action(action)

        assert stored.status == ScheduledActionStatus.EXPIRED
        assert (await store.get_request(request.id)).status == ApprovalStatus.EXPIRED


class TestQueries:
    async def test_list_pending_by_approver(self, open_request, workflow):
        mine, _ = await open_request(parameters={"approver_id": "bob"})
        await open_request()

        pending = await workflow.list_pending("bob")

        assert [r.id for r in pending] == [mine.id]

    async def test_expiring_soon(self, open_request, workflow, now):
        request, _ = await open_request()

        soon = await workflow.expiring_soon(timedelta(minutes=90), now=now)
        later = await workflow.expiring_soon(timedelta(minutes=30), now=now)

        assert [r.id for r in soon] == [request.id]
        assert later == []
