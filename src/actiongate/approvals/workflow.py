"""Approval workflow manager.

Owns the lifecycle of UserApprovalRequest rows:

- ``create_request`` persists a request, links it to its action and fires
  the approver notification without waiting for delivery.
- ``resolve`` applies a human response. The request row is claimed with a
  compare-and-set on ``status = 'pending'``; whoever loses (a second
  responder or the expiry sweep) gets :class:`StaleDecisionError`.
- ``sweep_expired`` expires unanswered requests and actions whose execution
  window has passed.
- ``reconcile`` releases an action held after a failed audit write and
  applies any resolution its request recorded in the meantime. Resolution
  and the expiry sweep leave held actions alone.

Decision mapping for the linked action:

    approve -> relevance_check_passed (approved_by set, executes on next process)
    reject  -> suppressed (reason from the response)
    modify  -> pending with modified parameters (re-enters relevance checking)
    defer   -> pending, retry_attempts + 1, execute_at pushed by defer_minutes;
               suppressed with "retry attempts exhausted" past the maximum
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from actiongate.approvals.notifier import NotificationDispatcher
from actiongate.approvals.policy import build_request
from actiongate.audit import AuditEventType, AuditTrail
from actiongate.config import ActionRelevanceConfig, PolicyStore
from actiongate.core.metrics import GateMetrics, gate_metrics
from actiongate.errors import (
    ActionBusyError,
    ActionHeldError,
    ActionNotFoundError,
    ApprovalNotFoundError,
    StaleDecisionError,
)
from actiongate.lifecycle import RETRY_EXHAUSTED_REASON, transition, with_retry
from actiongate.models import (
    ActionRelevanceResult,
    ApprovalDecision,
    ApprovalStatus,
    ScheduledAction,
    ScheduledActionStatus,
    UrgencyLevel,
    UserApprovalRequest,
    UserApprovalResponse,
    _parse_datetime,
    utcnow,
    validate_typed_mapping,
)
from actiongate.store import ActionStore

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
APPROVAL_EXPIRED_REASON = "approval request expired without a response"
EXECUTION_WINDOW_PASSED_REASON = "execution window passed"

_REQUEST_STATUS_FOR_DECISION: dict[ApprovalDecision, ApprovalStatus] = {
    ApprovalDecision.APPROVE: ApprovalStatus.APPROVED,
    ApprovalDecision.REJECT: ApprovalStatus.REJECTED,
    ApprovalDecision.MODIFY: ApprovalStatus.MODIFIED,
    ApprovalDecision.DEFER: ApprovalStatus.DEFERRED,
}

_EVENT_FOR_DECISION: dict[ApprovalDecision, AuditEventType] = {
    ApprovalDecision.APPROVE: AuditEventType.ACTION_APPROVED,
    ApprovalDecision.REJECT: AuditEventType.ACTION_REJECTED,
    ApprovalDecision.MODIFY: AuditEventType.ACTION_MODIFIED,
    ApprovalDecision.DEFER: AuditEventType.ACTION_DEFERRED,
}


@dataclass
class Resolution:
    """Outcome of resolving one request, including any bulk-resolved siblings."""

    request: UserApprovalRequest
    action_status: ScheduledActionStatus
    bulk_resolved: list[uuid.UUID] = field(default_factory=list)


def apply_modifications(
    action: ScheduledAction, modifications: Mapping[str, Any]
) -> dict[str, Any]:
    """Translate approver modifications into ScheduledAction field changes.

    ``description``, ``execute_at`` and ``priority`` update the matching
    fields; every other key is merged into the parameters.

    Raises
    ------
    ValueError
        If a modification value has an unsupported kind or format.
    """
    modifications = validate_typed_mapping(modifications, field_name="modified_parameters")
    changes: dict[str, Any] = {}
    parameters = dict(action.parameters)
    for key, value in modifications.items():
        normalized = key.lower().replace("_", "")
        if normalized == "description":
            changes["description"] = str(value)
        elif normalized == "executeat":
            changes["execute_at"] = _parse_datetime(value)
        elif normalized == "priority":
            changes["priority"] = UrgencyLevel(str(value).lower())
        else:
            parameters[key] = value
    changes["parameters"] = parameters
    return changes


class ApprovalWorkflowManager:
    """Creates, resolves and expires approval requests."""

    def __init__(
        self,
        store: ActionStore,
        audit: AuditTrail,
        policy_store: PolicyStore,
        notifier: NotificationDispatcher,
        *,
        default_approver: str = "operations",
        metrics: GateMetrics = gate_metrics,
    ) -> None:
        self._store = store
        self._audit = audit
        self._policy_store = policy_store
        self._notifier = notifier
        self._default_approver = default_approver
        self._metrics = metrics

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_request(
        self,
        action: ScheduledAction,
        result: ActionRelevanceResult,
        reason: str,
        *,
        policy: ActionRelevanceConfig | None = None,
        alternatives: list[str] | None = None,
        approver_id: str | None = None,
        now: datetime | None = None,
    ) -> tuple[UserApprovalRequest, ScheduledAction]:
        """Persist an approval request for *action* and notify the approver.

        *action* is the stored action (status pending or
        relevance_check_passed). Returns the request and the updated action,
        which stays ``relevance_check_passed`` with ``pending_request_id``
        set until the request is resolved or expires.
        """
        policy = policy or self._policy_store.current
        approver = approver_id or str(action.parameters.get("approver_id") or "")
        request = build_request(
            action,
            result,
            reason,
            policy,
            approver_id=approver or self._default_approver,
            alternatives=alternatives,
            now=now,
        )
        updated = transition(
            action,
            ScheduledActionStatus.RELEVANCE_CHECK_PASSED,
            pending_request_id=request.id,
            approved_by=None,
        )
        request.action = updated

        await self._audit.record(
            AuditEventType.APPROVAL_REQUESTED,
            actor=SYSTEM_ACTOR,
            action=updated,
            request=request,
            result=result,
            reason=reason,
            metadata={"expires_at": request.expires_at.isoformat()},
        )
        stored = await self._store.update_action(updated, expected_status=action.status)
        if stored is None:
            raise ActionBusyError(f"Action {action.id} changed while requesting approval")
        request = await self._store.insert_request(request)

        self._notifier.dispatch(
            request.approver_id,
            request.summary(),
            timeout_seconds=policy.notification_timeout_seconds,
        )
        logger.info(
            "Approval requested for action %s (request %s, approver %s, expires %s)",
            action.id,
            request.id,
            request.approver_id,
            request.expires_at.isoformat(),
        )
        return request, stored

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(
        self,
        request_id: uuid.UUID,
        response: UserApprovalResponse,
        *,
        now: datetime | None = None,
    ) -> ScheduledActionStatus:
        """Apply *response* and return the resulting status of the action."""
        resolution = await self.resolve_detailed(request_id, response, now=now)
        return resolution.action_status

    async def resolve_detailed(
        self,
        request_id: uuid.UUID,
        response: UserApprovalResponse,
        *,
        now: datetime | None = None,
    ) -> Resolution:
        """Like :meth:`resolve`, also reporting bulk-resolved action ids.

        Raises
        ------
        ApprovalNotFoundError
            If the request does not exist.
        StaleDecisionError
            If the request is no longer pending or has expired.
        ValueError
            If a modify response carries invalid modifications.
        """
        now = now or utcnow()
        policy = self._policy_store.current

        request = await self._store.get_request(request_id)
        if request is None:
            raise ApprovalNotFoundError(f"Approval request {request_id} not found")
        if request.status != ApprovalStatus.PENDING:
            raise StaleDecisionError(request_id, request.status.value)
        held = await self._store.get_action(request.action_id)
        if held is not None and held.needs_reconciliation:
            raise ActionHeldError(held.id)
        if request.is_expired(now):
            await self.expire_request(request, now)
            raise StaleDecisionError(
                request_id, ApprovalStatus.EXPIRED.value, "response arrived after expiry"
            )

        if response.decision == ApprovalDecision.MODIFY:
            if not response.modified_parameters:
                raise ValueError("A modify decision requires modified_parameters")
            apply_modifications(request.action, response.modified_parameters)

        status = _REQUEST_STATUS_FOR_DECISION[response.decision]
        claimed = await self._store.transition_request(
            request_id,
            status=status,
            resolved_at=now,
            resolved_by=response.responder_id,
            response=response,
        )
        if claimed is None:
            current = await self._store.get_request(request_id)
            current_status = current.status.value if current else "missing"
            raise StaleDecisionError(request_id, current_status)
        self._metrics.record_approval_resolved(status.value)

        action_status = await self._apply_decision(claimed, response, policy, now)
        resolution = Resolution(request=claimed, action_status=action_status)

        if response.apply_to_similar_actions:
            if policy.bulk_approval_enabled:
                resolution.bulk_resolved = await self._apply_bulk(claimed, response, policy, now)
            else:
                logger.info("Bulk resolution requested for %s but disabled by policy", request_id)
        return resolution

    async def _apply_bulk(
        self,
        source: UserApprovalRequest,
        response: UserApprovalResponse,
        policy: ActionRelevanceConfig,
        now: datetime,
    ) -> list[uuid.UUID]:
        similar = await self._store.list_pending_requests(
            action_type=source.action.action_type,
            organization_id=source.action.organization_id,
        )
        resolved: list[uuid.UUID] = []
        status = _REQUEST_STATUS_FOR_DECISION[response.decision]
        for other in similar:
            if other.id == source.id or other.is_expired(now):
                continue
            sibling = await self._store.get_action(other.action_id)
            if sibling is not None and sibling.needs_reconciliation:
                logger.warning(
                    "Bulk %s skipped request %s: action %s is held for reconciliation",
                    response.decision.value,
                    other.id,
                    sibling.id,
                )
                continue
            sibling_response = dataclasses.replace(
                response, request_id=other.id, apply_to_similar_actions=False
            )
            claimed = await self._store.transition_request(
                other.id,
                status=status,
                resolved_at=now,
                resolved_by=response.responder_id,
                response=sibling_response,
                bulk_resolved_from=source.id,
            )
            if claimed is None:
                continue
            self._metrics.record_approval_resolved(status.value)
            await self._apply_decision(claimed, sibling_response, policy, now)
            resolved.append(claimed.action_id)
        logger.info(
            "Bulk %s applied from request %s to %d similar action(s)",
            response.decision.value,
            source.id,
            len(resolved),
        )
        return resolved

    async def _apply_decision(
        self,
        request: UserApprovalRequest,
        response: UserApprovalResponse,
        policy: ActionRelevanceConfig,
        now: datetime,
    ) -> ScheduledActionStatus:
        action = await self._store.get_action(request.action_id)
        if action is None:
            raise ActionNotFoundError(f"Action {request.action_id} not found")
        if action.is_terminal:
            logger.warning(
                "Request %s resolved but action %s is already %s",
                request.id,
                action.id,
                action.status.value,
            )
            return action.status

        responder = response.responder_id
        decision = response.decision
        event = _EVENT_FOR_DECISION[decision]

        if decision == ApprovalDecision.APPROVE:
            updated = transition(
                action,
                ScheduledActionStatus.RELEVANCE_CHECK_PASSED,
                pending_request_id=None,
                approved_by=responder,
            )
        elif decision == ApprovalDecision.REJECT:
            updated = transition(
                action,
                ScheduledActionStatus.SUPPRESSED,
                pending_request_id=None,
                suppression_reason=response.reason or f"Rejected by {responder}",
            )
        elif decision == ApprovalDecision.MODIFY:
            updated = transition(
                action,
                ScheduledActionStatus.PENDING,
                pending_request_id=None,
                approved_by=None,
                **apply_modifications(action, response.modified_parameters or {}),
            )
        else:
            execute_at = max(action.execute_at, now) + timedelta(minutes=policy.defer_minutes)
            updated = with_retry(
                action,
                execute_at=execute_at,
                pending_request_id=None,
                approved_by=None,
            )
            if updated.status == ScheduledActionStatus.SUPPRESSED:
                event = AuditEventType.ACTION_SUPPRESSED

        metadata: dict[str, Any] = {"decision": decision.value}
        if request.bulk_resolved_from is not None:
            metadata["bulk_resolved_from"] = str(request.bulk_resolved_from)
        await self._audit.record(
            event,
            actor=responder,
            action=updated,
            request=request,
            reason=(
                RETRY_EXHAUSTED_REASON
                if event == AuditEventType.ACTION_SUPPRESSED
                else response.reason
            ),
            metadata=metadata,
        )
        stored = await self._store.update_action(updated, expected_status=action.status)
        if stored is None:
            current = await self._store.get_action(action.id)
            logger.warning(
                "Action %s changed concurrently while applying %s",
                action.id,
                decision.value,
            )
            return current.status if current else action.status
        logger.info(
            "Request %s %s by %s; action %s is now %s",
            request.id,
            request.status.value,
            responder,
            action.id,
            stored.status.value,
        )
        return stored.status

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def expire_request(
        self, request: UserApprovalRequest, now: datetime
    ) -> uuid.UUID | None:
        """Expire *request* and its action. Returns the action id when this call won."""
        held = await self._store.get_action(request.action_id)
        if held is not None and held.needs_reconciliation:
            logger.warning(
                "Not expiring request %s: action %s is held for reconciliation",
                request.id,
                held.id,
            )
            return None
        claimed = await self._store.transition_request(
            request.id,
            status=ApprovalStatus.EXPIRED,
            resolved_at=now,
            resolved_by=SYSTEM_ACTOR,
        )
        if claimed is None:
            return None
        self._metrics.record_approval_resolved(ApprovalStatus.EXPIRED.value)

        action = await self._store.get_action(claimed.action_id)
        if action is None or action.is_terminal:
            return None
        updated = transition(
            action,
            ScheduledActionStatus.EXPIRED,
            pending_request_id=None,
            suppression_reason=APPROVAL_EXPIRED_REASON,
        )
        await self._audit.record(
            AuditEventType.APPROVAL_EXPIRED,
            actor=SYSTEM_ACTOR,
            action=updated,
            request=claimed,
            reason=APPROVAL_EXPIRED_REASON,
        )
        stored = await self._store.update_action(updated, expected_status=action.status)
        if stored is None:
            return None
        logger.info("Approval request %s expired; action %s expired", request.id, action.id)
        return action.id

    async def expire_action(
        self,
        action: ScheduledAction,
        *,
        reason: str = EXECUTION_WINDOW_PASSED_REASON,
        now: datetime | None = None,
    ) -> ScheduledAction | None:
        """Expire a non-terminal action (and its outstanding request, if any).

        Returns the stored action, or None when another writer changed it first.
        """
        now = now or utcnow()
        updated = transition(
            action,
            ScheduledActionStatus.EXPIRED,
            pending_request_id=None,
            suppression_reason=reason,
        )
        await self._audit.record(
            AuditEventType.ACTION_EXPIRED,
            actor=SYSTEM_ACTOR,
            action=updated,
            reason=reason,
        )
        stored = await self._store.update_action(updated, expected_status=action.status)
        if stored is None:
            return None
        if action.pending_request_id is not None:
            claimed = await self._store.transition_request(
                action.pending_request_id,
                status=ApprovalStatus.EXPIRED,
                resolved_at=now,
                resolved_by=SYSTEM_ACTOR,
            )
            if claimed is not None:
                self._metrics.record_approval_resolved(ApprovalStatus.EXPIRED.value)
        logger.info("Action %s expired: %s", action.id, reason)
        return stored

    async def sweep_expired(self, *, now: datetime | None = None) -> list[uuid.UUID]:
        """Expire unanswered requests and overdue actions; return the expired action ids."""
        now = now or utcnow()
        policy = self._policy_store.current
        expired: list[uuid.UUID] = []

        for request in await self._store.list_expired_requests(now):
            action_id = await self.expire_request(request, now)
            if action_id is not None:
                expired.append(action_id)

        cutoff = now - timedelta(minutes=policy.execution_grace_minutes)
        for action in await self._store.list_overdue_actions(cutoff):
            if action.id in expired or action.needs_reconciliation:
                continue
            stored = await self.expire_action(action, now=now)
            if stored is not None:
                expired.append(action.id)

        if expired:
            logger.info("Expiry sweep expired %d action(s)", len(expired))
        return expired

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def apply_recorded_resolution(
        self, action: ScheduledAction, *, now: datetime | None = None
    ) -> ScheduledAction:
        """Bring *action* in line with a linked request that was already resolved.

        A request can be resolved while the outcome never reaches its action,
        e.g. when the audit write for that outcome failed. The recorded
        response is applied now; an expired request expires the action.
        """
        now = now or utcnow()
        if action.is_terminal or action.pending_request_id is None:
            return action
        request = await self._store.get_request(action.pending_request_id)
        if request is None or request.status == ApprovalStatus.PENDING:
            return action

        logger.warning(
            "Applying recorded '%s' of request %s to action %s",
            request.status.value,
            request.id,
            action.id,
        )
        if request.status == ApprovalStatus.EXPIRED:
            await self.expire_action(action, reason=APPROVAL_EXPIRED_REASON, now=now)
        elif request.response is not None:
            await self._apply_decision(request, request.response, self._policy_store.current, now)
        current = await self._store.get_action(action.id)
        return current or action

    async def reconcile(
        self,
        action_id: uuid.UUID,
        *,
        actor: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> ScheduledAction:
        """Release an action held after a failed audit write.

        Clears ``needs_reconciliation`` (audited), then applies any resolution
        its linked request recorded while the action was held. Actions that
        are not held are returned unchanged.

        Raises
        ------
        ActionNotFoundError
            If the action does not exist.
        ActionBusyError
            If the action changed while it was being released.
        """
        action = await self._store.get_action(action_id)
        if action is None:
            raise ActionNotFoundError(f"Action {action_id} not found")
        if not action.needs_reconciliation:
            return action

        released = dataclasses.replace(action, needs_reconciliation=False)
        await self._audit.record(
            AuditEventType.ACTION_RECONCILED,
            actor=actor,
            action=released,
            reason=reason or f"released by {actor}",
        )
        stored = await self._store.update_action(released, expected_status=action.status)
        if stored is None:
            raise ActionBusyError(f"Action {action_id} was changed by another writer")
        logger.info("Action %s released from reconciliation by %s", action_id, actor)
        return await self.apply_recorded_resolution(stored, now=now)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_pending(self, approver_id: str | None = None) -> list[UserApprovalRequest]:
        return await self._store.list_pending_requests(approver_id=approver_id)

    async def expiring_soon(
        self,
        within: timedelta,
        *,
        approver_id: str | None = None,
        now: datetime | None = None,
    ) -> list[UserApprovalRequest]:
        """Pending, not yet expired requests that expire within *within* (reminder surfacing)."""
        now = now or utcnow()
        horizon = now + within
        return [
            r
            for r in await self._store.list_pending_requests(approver_id=approver_id)
            if now < r.expires_at <= horizon
        ]
