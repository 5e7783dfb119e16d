"""Action execution gate: the single entry point for a due action.

``process`` runs the whole decision for one action under a per-action
lease and returns a :class:`GateOutcome`:

1. Terminal actions return their recorded decision unchanged. Actions held
   for reconciliation raise :class:`ActionHeldError`. Actions past
   ``execute_at + execution_grace_minutes`` expire.
2. An action with an outstanding approval request waits (no re-check). A
   linked request that was resolved without reaching the action has its
   recorded outcome applied first.
3. Context is refreshed when stale, then the relevance validator runs.
4. Not relevant: try one alternative while retries remain, else suppress.
5. Relevant: execute if a human already approved this attempt, otherwise
   ask the approval policy engine whether to request approval or execute.

Each decision is audited before the status change is persisted, so a failed
audit write leaves the stored action untouched.
"""

from __future__ import annotations

import dataclasses
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from actiongate.approvals.policy import ApprovalPolicyEngine
from actiongate.approvals.workflow import ApprovalWorkflowManager
from actiongate.audit import AuditEventType, AuditTrail
from actiongate.config import ActionRelevanceConfig, PolicyStore
from actiongate.context import ContextCache
from actiongate.core.logging import set_tenant_context
from actiongate.core.metrics import GateMetrics, gate_metrics
from actiongate.core.telemetry import get_tracer, tag_action_span
from actiongate.errors import (
    ActionBusyError,
    ActionHeldError,
    ActionNotFoundError,
    InvalidTransitionError,
)
from actiongate.leases import ActionLeases
from actiongate.lifecycle import transition, with_retry
from actiongate.models import (
    ActionRelevanceResult,
    ApprovalStatus,
    ContactContext,
    ExecutionDecision,
    ScheduledAction,
    ScheduledActionStatus,
    UserApprovalRequest,
    utcnow,
)
from actiongate.relevance.alternatives import suggest_alternatives
from actiongate.relevance.validator import RelevanceValidator
from actiongate.store import ActionStore

logger = logging.getLogger(__name__)

GATE_ACTOR = "action_gate"

_TERMINAL_DECISIONS: dict[ScheduledActionStatus, ExecutionDecision] = {
    ScheduledActionStatus.COMPLETED: ExecutionDecision.EXECUTE,
    ScheduledActionStatus.EXECUTING: ExecutionDecision.EXECUTE,
    ScheduledActionStatus.SUPPRESSED: ExecutionDecision.SUPPRESS,
    ScheduledActionStatus.FAILED: ExecutionDecision.SUPPRESS,
    ScheduledActionStatus.EXPIRED: ExecutionDecision.EXPIRED,
}


@dataclass
class GateOutcome:
    """Final go/no-go for one ``process`` call."""

    decision: ExecutionDecision
    reason: str
    action: ScheduledAction
    result: ActionRelevanceResult | None = None
    request: UserApprovalRequest | None = None
    alternative: ScheduledAction | None = None
    changed: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision.value,
            "reason": self.reason,
            "action": self.action.to_dict(),
            "result": self.result.to_dict() if self.result else None,
            "request": self.request.to_dict() if self.request else None,
            "alternative": self.alternative.to_dict() if self.alternative else None,
            "changed": self.changed,
        }


class ActionExecutionGate:
    def __init__(
        self,
        store: ActionStore,
        contexts: ContextCache,
        validator: RelevanceValidator,
        policy_engine: ApprovalPolicyEngine,
        workflow: ApprovalWorkflowManager,
        audit: AuditTrail,
        policy_store: PolicyStore,
        *,
        leases: ActionLeases | None = None,
        metrics: GateMetrics = gate_metrics,
    ) -> None:
        self._store = store
        self._contexts = contexts
        self._validator = validator
        self._policy_engine = policy_engine
        self._workflow = workflow
        self._audit = audit
        self._policy_store = policy_store
        self._leases = leases or ActionLeases()
        self._metrics = metrics

    @property
    def leases(self) -> ActionLeases:
        return self._leases

    async def _load(self, action_id: uuid.UUID) -> ScheduledAction:
        action = await self._store.get_action(action_id)
        if action is None:
            raise ActionNotFoundError(f"Action {action_id} not found")
        return action

    async def _persist(self, updated: ScheduledAction, previous: ScheduledAction) -> ScheduledAction:
        stored = await self._store.update_action(updated, expected_status=previous.status)
        if stored is None:
            raise ActionBusyError(f"Action {previous.id} was changed by another writer")
        return stored

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(self, action_id: uuid.UUID, *, now: datetime | None = None) -> GateOutcome:
        """Decide whether the due action *action_id* may execute.

        Raises
        ------
        ActionNotFoundError
            If the action does not exist.
        ActionBusyError
            If the action is already being processed.
        ActionHeldError
            If the action is held for manual reconciliation.
        AuditWriteError
            If the decision could not be audited; the action is flagged for
            reconciliation and left in its current state.
        """
        now = now or utcnow()
        policy = self._policy_store.current
        started = time.monotonic()
        tracer = get_tracer()
        with tracer.start_as_current_span("actiongate.process") as span:
            async with self._leases.hold(action_id):
                action = await self._load(action_id)
                set_tenant_context(action.organization_id)
                tag_action_span(span, action)
                outcome = await self._decide(action, policy, now)
            span.set_attribute("gate.decision", outcome.decision.value)
            span.set_attribute("gate.changed", outcome.changed)

        method = outcome.result.method.value if outcome.result else None
        self._metrics.record_decision(outcome.decision.value, method)
        self._metrics.record_process_latency((time.monotonic() - started) * 1000)
        logger.info(
            "Gate decision for action %s: %s (%s)",
            action_id,
            outcome.decision.value,
            outcome.reason,
        )
        return outcome

    async def _decide(
        self, action: ScheduledAction, policy: ActionRelevanceConfig, now: datetime
    ) -> GateOutcome:
        if action.status in _TERMINAL_DECISIONS:
            return GateOutcome(
                decision=_TERMINAL_DECISIONS[action.status],
                reason=action.suppression_reason or f"action already {action.status.value}",
                action=action,
                result=action.last_relevance_result,
                changed=False,
            )

        if action.needs_reconciliation:
            raise ActionHeldError(action.id)

        if now > action.execute_at + timedelta(minutes=policy.execution_grace_minutes):
            return await self._expire(action, now)

        if action.pending_request_id is not None:
            request = await self._store.get_request(action.pending_request_id)
            if request is not None and request.status == ApprovalStatus.PENDING:
                if request.is_expired(now):
                    await self._workflow.expire_request(request, now)
                    expired = await self._load(action.id)
                    return GateOutcome(
                        decision=_TERMINAL_DECISIONS.get(
                            expired.status, ExecutionDecision.EXPIRED
                        ),
                        reason=expired.suppression_reason or "approval request expired",
                        action=expired,
                        request=request,
                    )
                return GateOutcome(
                    decision=ExecutionDecision.AWAIT_APPROVAL,
                    reason=f"awaiting approval from {request.approver_id}",
                    action=action,
                    result=action.last_relevance_result,
                    request=request,
                    changed=False,
                )
            if request is not None:
                action = await self._workflow.apply_recorded_resolution(action, now=now)
                if action.status in _TERMINAL_DECISIONS:
                    return GateOutcome(
                        decision=_TERMINAL_DECISIONS[action.status],
                        reason=action.suppression_reason or f"request {request.status.value}",
                        action=action,
                        result=action.last_relevance_result,
                        request=request,
                    )

        context = await self._contexts.get(
            action.contact_id, action.organization_id, policy, now=now
        )
        result, checked = await self._validator.validate(action, context, policy=policy)
        await self._store.insert_relevance_result(result)

        if not result.is_relevant:
            return await self._not_relevant(action, checked, result, context, policy, now)

        if action.approved_by:
            return await self._execute(
                action, checked, result, f"approved by {action.approved_by}"
            )

        requirement = await self._policy_engine.requires_approval(
            checked, result, policy=policy, context=context
        )
        if requirement.required:
            request, stored = await self._workflow.create_request(
                checked,
                result,
                requirement.reason,
                policy=policy,
                alternatives=[a.action_type for a in suggest_alternatives(checked, result, now=now)],
                now=now,
            )
            return GateOutcome(
                decision=ExecutionDecision.AWAIT_APPROVAL,
                reason=requirement.reason,
                action=stored,
                result=result,
                request=request,
            )
        return await self._execute(action, checked, result, requirement.reason)

    async def _execute(
        self,
        action: ScheduledAction,
        checked: ScheduledAction,
        result: ActionRelevanceResult,
        reason: str,
    ) -> GateOutcome:
        passed = transition(checked, ScheduledActionStatus.RELEVANCE_CHECK_PASSED)
        executing = transition(
            passed,
            ScheduledActionStatus.EXECUTING,
            pending_request_id=None,
        )
        await self._audit.record(
            AuditEventType.ACTION_EXECUTING,
            actor=action.approved_by or GATE_ACTOR,
            action=executing,
            result=result,
            reason=reason,
        )
        stored = await self._persist(executing, action)
        return GateOutcome(
            decision=ExecutionDecision.EXECUTE,
            reason=reason,
            action=stored,
            result=result,
        )

    async def _not_relevant(
        self,
        action: ScheduledAction,
        checked: ScheduledAction,
        result: ActionRelevanceResult,
        context: ContactContext,
        policy: ActionRelevanceConfig,
        now: datetime,
    ) -> GateOutcome:
        failed = transition(checked, ScheduledActionStatus.RELEVANCE_CHECK_FAILED)

        if action.retries_remaining > 0:
            outcome = await self._try_alternative(action, failed, result, context, policy, now)
            if outcome is not None:
                return outcome

        suppressed = transition(
            failed,
            ScheduledActionStatus.SUPPRESSED,
            suppression_reason=result.reason,
        )
        await self._audit.record(
            AuditEventType.ACTION_SUPPRESSED,
            actor=GATE_ACTOR,
            action=suppressed,
            result=result,
            reason=result.reason,
            metadata={"failed_criteria": list(result.failed_criteria)},
        )
        stored = await self._persist(suppressed, action)
        return GateOutcome(
            decision=ExecutionDecision.SUPPRESS,
            reason=result.reason,
            action=stored,
            result=result,
        )

    async def _try_alternative(
        self,
        action: ScheduledAction,
        failed: ScheduledAction,
        result: ActionRelevanceResult,
        context: ContactContext,
        policy: ActionRelevanceConfig,
        now: datetime,
    ) -> GateOutcome | None:
        alternatives = suggest_alternatives(failed, result, now=now)
        if not alternatives:
            return None
        alt_result, alternative = await self._validator.validate(
            alternatives[0], context, policy=policy
        )
        if not alt_result.is_relevant:
            logger.info(
                "Alternative %s for action %s is not relevant either: %s",
                alternative.action_type,
                action.id,
                alt_result.reason,
            )
            return None

        reason = f"Replaced by alternative action {alternative.id}"
        replaced = transition(
            failed,
            ScheduledActionStatus.SUPPRESSED,
            suppression_reason=reason,
            retry_attempts=action.retry_attempts + 1,
        )
        await self._audit.record(
            AuditEventType.ACTION_REPLACED,
            actor=GATE_ACTOR,
            action=replaced,
            result=result,
            reason=reason,
            metadata={
                "alternative_action_id": str(alternative.id),
                "alternative_action_type": alternative.action_type,
            },
        )
        stored = await self._persist(replaced, action)
        alternative = await self._store.insert_action(alternative)
        await self._store.insert_relevance_result(alt_result)
        await self._audit.record(
            AuditEventType.ACTION_SCHEDULED,
            actor=GATE_ACTOR,
            action=alternative,
            result=alt_result,
            reason=f"Alternative to action {action.id}",
        )
        return GateOutcome(
            decision=ExecutionDecision.SUPPRESS,
            reason=reason,
            action=stored,
            result=result,
            alternative=alternative,
        )

    async def _expire(self, action: ScheduledAction, now: datetime) -> GateOutcome:
        stored = await self._workflow.expire_action(action, now=now)
        if stored is None:
            raise ActionBusyError(f"Action {action.id} was changed by another writer")
        return GateOutcome(
            decision=ExecutionDecision.EXPIRED,
            reason=stored.suppression_reason or "execution window passed",
            action=stored,
            result=action.last_relevance_result,
        )

    # ------------------------------------------------------------------
    # After execution
    # ------------------------------------------------------------------

    async def record_execution_result(
        self,
        action_id: uuid.UUID,
        *,
        success: bool,
        error: str | None = None,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> ScheduledAction:
        """Record the outcome of an action the caller executed.

        Success completes the action. A retryable failure re-queues it as
        pending (suppressed once retries are exhausted); any other failure
        marks it failed. A held action raises :class:`ActionHeldError`.
        """
        async with self._leases.hold(action_id):
            action = await self._load(action_id)
            if action.needs_reconciliation:
                raise ActionHeldError(action_id)
            if action.status != ScheduledActionStatus.EXECUTING:
                raise InvalidTransitionError(
                    f"Action {action_id} is '{action.status.value}', not 'executing'"
                )
            execution_result: dict[str, Any] = {"success": success, **(details or {})}
            if error:
                execution_result["error"] = error

            if success:
                updated = transition(
                    action,
                    ScheduledActionStatus.COMPLETED,
                    execution_result=execution_result,
                )
                event = AuditEventType.ACTION_COMPLETED
            elif retryable:
                updated = with_retry(
                    action,
                    execution_result=execution_result,
                    approved_by=None,
                )
                event = AuditEventType.ACTION_RETRY_SCHEDULED
                if updated.status == ScheduledActionStatus.SUPPRESSED:
                    updated = dataclasses.replace(updated, execution_result=execution_result)
                    event = AuditEventType.ACTION_SUPPRESSED
            else:
                updated = transition(
                    action,
                    ScheduledActionStatus.FAILED,
                    execution_result=execution_result,
                    suppression_reason=error,
                )
                event = AuditEventType.ACTION_FAILED

            await self._audit.record(
                event,
                actor=GATE_ACTOR,
                action=updated,
                reason=error or updated.suppression_reason,
                metadata={"retryable": retryable},
            )
            stored = await self._persist(updated, action)
        logger.info("Execution result for action %s: %s", action_id, stored.status.value)
        return stored

    async def cancel(
        self, action_id: uuid.UUID, *, actor: str, reason: str | None = None
    ) -> ScheduledAction:
        """Suppress a not-yet-executing action on behalf of *actor*.

        Terminal actions are returned unchanged; held actions raise
        :class:`ActionHeldError`.
        """
        async with self._leases.hold(action_id):
            action = await self._load(action_id)
            if action.is_terminal:
                return action
            if action.needs_reconciliation:
                raise ActionHeldError(action_id)
            if action.status == ScheduledActionStatus.EXECUTING:
                raise InvalidTransitionError(f"Action {action_id} is already executing")
            cancel_reason = reason or f"cancelled by {actor}"
            updated = transition(
                action,
                ScheduledActionStatus.SUPPRESSED,
                suppression_reason=cancel_reason,
                pending_request_id=None,
            )
            await self._audit.record(
                AuditEventType.ACTION_CANCELLED,
                actor=actor,
                action=updated,
                reason=cancel_reason,
            )
            stored = await self._persist(updated, action)
            if action.pending_request_id is not None:
                await self._store.transition_request(
                    action.pending_request_id,
                    status=ApprovalStatus.REJECTED,
                    resolved_at=utcnow(),
                    resolved_by=actor,
                )
        return stored
