"""ActionPipeline: wires the gate components behind one async facade.

Hosts (the REST API, the CLI, an embedding agent runtime) talk to the
pipeline only. It owns the store, the audit trail, the policy store and
the notification dispatcher, and hands the same instances to the validator,
the approval workflow and the execution gate.

Use :func:`build_pipeline` to assemble one from a :class:`GatewayConfig`.
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any

import asyncpg

from actiongate.approvals.notifier import (
    LoggingNotifier,
    NotificationChannel,
    NotificationDispatcher,
    WebhookNotifier,
)
from actiongate.approvals.policy import ApprovalPolicyEngine
from actiongate.approvals.workflow import ApprovalWorkflowManager, Resolution
from actiongate.audit import (
    AuditEventType,
    AuditQuery,
    AuditRecord,
    AuditSink,
    AuditTrail,
    InMemoryAuditSink,
)
from actiongate.config import ActionRelevanceConfig, GatewayConfig, PolicyStore, parse_policy_config
from actiongate.context import ContextCache, ContextProvider, StaticContextProvider
from actiongate.core.metrics import GateMetrics, gate_metrics
from actiongate.errors import ActionNotFoundError
from actiongate.gate import GATE_ACTOR, ActionExecutionGate, GateOutcome
from actiongate.models import (
    ActionRelevanceResult,
    ScheduledAction,
    ScheduledActionStatus,
    UserApprovalRequest,
    UserApprovalResponse,
    utcnow,
    validate_typed_mapping,
)
from actiongate.postgres import PostgresActionStore, PostgresAuditSink, create_schema
from actiongate.relevance.alternatives import suggest_alternatives
from actiongate.relevance.semantic import (
    HttpSemanticScorer,
    SemanticRelevanceChecker,
    SemanticScorer,
)
from actiongate.relevance.validator import RelevanceValidator
from actiongate.store import ActionStore, InMemoryActionStore

logger = logging.getLogger(__name__)

Closer = Callable[[], Awaitable[None]]


class ActionPipeline:
    """Facade over the relevance, approval and execution-gate components."""

    def __init__(
        self,
        *,
        store: ActionStore,
        audit_sink: AuditSink,
        context_provider: ContextProvider,
        policy_store: PolicyStore | None = None,
        scorer: SemanticScorer | None = None,
        channel: NotificationChannel | None = None,
        operator_id: str = "operations",
        metrics: GateMetrics = gate_metrics,
        closers: Sequence[Closer] = (),
    ) -> None:
        self.store = store
        self.policy_store = policy_store or PolicyStore()
        self.notifier = NotificationDispatcher(
            channel or LoggingNotifier(),
            timeout_seconds=self.policy_store.current.notification_timeout_seconds,
        )
        self.audit = AuditTrail(audit_sink, store, self.notifier, operator_id=operator_id)
        semantic = SemanticRelevanceChecker(scorer, metrics) if scorer is not None else None
        self.contexts = ContextCache(context_provider)
        self.validator = RelevanceValidator(self.policy_store, semantic=semantic)
        self.policy_engine = ApprovalPolicyEngine(self.policy_store, semantic)
        self.workflow = ApprovalWorkflowManager(
            store,
            self.audit,
            self.policy_store,
            self.notifier,
            default_approver=operator_id,
            metrics=metrics,
        )
        self.gate = ActionExecutionGate(
            store,
            self.contexts,
            self.validator,
            self.policy_engine,
            self.workflow,
            self.audit,
            self.policy_store,
            metrics=metrics,
        )
        self._closers = list(closers)

    async def aclose(self) -> None:
        """Flush in-flight notifications and release owned resources."""
        await self.notifier.drain(self.policy_store.current.notification_timeout_seconds)
        for closer in reversed(self._closers):
            await closer()
        self._closers.clear()

    async def _load(self, action_id: uuid.UUID) -> ScheduledAction:
        action = await self.store.get_action(action_id)
        if action is None:
            raise ActionNotFoundError(f"Action {action_id} not found")
        return action

    # ------------------------------------------------------------------
    # Scheduling and processing
    # ------------------------------------------------------------------

    async def schedule(self, action: ScheduledAction | Mapping[str, Any]) -> ScheduledAction:
        """Register a new pending action.

        Raises
        ------
        ValueError
            If the action is not pending or carries invalid typed maps.
        """
        if not isinstance(action, ScheduledAction):
            action = ScheduledAction.from_dict(action)
        if action.status != ScheduledActionStatus.PENDING:
            raise ValueError(f"New actions must be pending, got '{action.status.value}'")
        action = dataclasses.replace(
            action,
            parameters=validate_typed_mapping(action.parameters, field_name="parameters"),
            relevance_criteria=validate_typed_mapping(
                action.relevance_criteria, field_name="relevance_criteria", allow_constraints=True
            ),
            trace_id=action.trace_id or str(uuid.uuid4()),
        )

        stored = await self.store.insert_action(action)
        await self.audit.record(
            AuditEventType.ACTION_SCHEDULED,
            actor=action.scheduled_by_agent_id or GATE_ACTOR,
            action=stored,
            reason=action.justification,
            metadata={"execute_at": action.execute_at.isoformat()},
        )
        logger.info(
            "Scheduled %s action %s for contact %s at %s",
            stored.action_type,
            stored.id,
            stored.contact_id,
            stored.execute_at.isoformat(),
        )
        return stored

    async def process(self, action_id: uuid.UUID, *, now: datetime | None = None) -> GateOutcome:
        return await self.gate.process(action_id, now=now)

    async def record_execution_result(
        self,
        action_id: uuid.UUID,
        *,
        success: bool,
        error: str | None = None,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> ScheduledAction:
        return await self.gate.record_execution_result(
            action_id, success=success, error=error, retryable=retryable, details=details
        )

    async def cancel(
        self, action_id: uuid.UUID, *, actor: str, reason: str | None = None
    ) -> ScheduledAction:
        return await self.gate.cancel(action_id, actor=actor, reason=reason)

    async def reconcile(
        self,
        action_id: uuid.UUID,
        *,
        actor: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> ScheduledAction:
        """Release an action held after a failed audit write."""
        async with self.gate.leases.hold(action_id):
            return await self.workflow.reconcile(action_id, actor=actor, reason=reason, now=now)

    async def get_action(self, action_id: uuid.UUID) -> ScheduledAction:
        return await self._load(action_id)

    async def list_actions(
        self,
        *,
        organization_id: uuid.UUID | None = None,
        contact_id: uuid.UUID | None = None,
        status: ScheduledActionStatus | None = None,
        limit: int = 100,
    ) -> list[ScheduledAction]:
        return await self.store.list_actions(
            organization_id=organization_id, contact_id=contact_id, status=status, limit=limit
        )

    async def relevance_history(self, action_id: uuid.UUID) -> list[ActionRelevanceResult]:
        await self._load(action_id)
        return await self.store.list_relevance_results(action_id)

    # ------------------------------------------------------------------
    # Dry-run relevance checks
    # ------------------------------------------------------------------

    async def check_relevance(self, action_id: uuid.UUID) -> ActionRelevanceResult:
        """Check a stored action's relevance without changing its status.

        The result is kept in the relevance history and audited.
        """
        results = await self.check_relevance_batch([action_id])
        return results[0]

    async def check_relevance_batch(
        self, action_ids: Sequence[uuid.UUID]
    ) -> list[ActionRelevanceResult]:
        """Dry-run :meth:`check_relevance` for many actions, in input order.

        At most ``max_concurrent_checks`` semantic checks run at once.
        """
        policy = self.policy_store.current
        actions = [await self._load(action_id) for action_id in action_ids]
        pairs = [
            (
                action,
                await self.contexts.get(action.contact_id, action.organization_id, policy),
            )
            for action in actions
        ]
        checked = await self.validator.validate_batch(pairs, policy=policy)

        results: list[ActionRelevanceResult] = []
        for (action, _context), (result, _updated) in zip(pairs, checked, strict=True):
            await self.store.insert_relevance_result(result)
            await self.audit.record(
                AuditEventType.RELEVANCE_CHECKED,
                actor=GATE_ACTOR,
                action=action,
                result=result,
                reason=result.reason,
                metadata={"dry_run": True},
            )
            results.append(result)
        return results

    async def alternatives(self, action_id: uuid.UUID) -> list[ScheduledAction]:
        """Suggest replacement actions based on the latest relevance result.

        Runs a dry-run check first when the action has never been checked.
        Suggestions are not persisted.
        """
        action = await self._load(action_id)
        result = action.last_relevance_result
        if result is None:
            history = await self.store.list_relevance_results(action_id)
            result = history[-1] if history else await self.check_relevance(action_id)
        return suggest_alternatives(action, result)

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    async def resolve(
        self,
        request_id: uuid.UUID,
        response: UserApprovalResponse,
        *,
        now: datetime | None = None,
    ) -> ScheduledActionStatus:
        return await self.workflow.resolve(request_id, response, now=now)

    async def resolve_detailed(
        self,
        request_id: uuid.UUID,
        response: UserApprovalResponse,
        *,
        now: datetime | None = None,
    ) -> Resolution:
        return await self.workflow.resolve_detailed(request_id, response, now=now)

    async def sweep_expired(self, *, now: datetime | None = None) -> list[uuid.UUID]:
        return await self.workflow.sweep_expired(now=now)

    async def list_pending(self, approver_id: str | None = None) -> list[UserApprovalRequest]:
        return await self.workflow.list_pending(approver_id)

    async def expiring_soon(
        self, within: timedelta, *, approver_id: str | None = None
    ) -> list[UserApprovalRequest]:
        return await self.workflow.expiring_soon(within, approver_id=approver_id)

    # ------------------------------------------------------------------
    # Audit and policy
    # ------------------------------------------------------------------

    async def audit_log(self, query: AuditQuery | None = None) -> list[AuditRecord]:
        return await self.audit.sink.query(query or AuditQuery())

    def current_policy(self) -> ActionRelevanceConfig:
        return self.policy_store.current

    async def update_policy(
        self, raw: Mapping[str, Any], *, actor: str
    ) -> ActionRelevanceConfig:
        """Validate *raw* as a full ``[policy]`` section, audit it and swap it in.

        Raises
        ------
        ConfigError
            If *raw* is not a valid policy; the current policy is kept.
        """
        policy = parse_policy_config(raw)
        previous = self.policy_store.current
        await self.audit.record(
            AuditEventType.POLICY_UPDATED,
            actor=actor,
            reason="policy replaced",
            metadata={"previous": previous.to_dict(), "current": policy.to_dict()},
        )
        self.policy_store.replace(policy)
        return policy


async def build_pipeline(
    config: GatewayConfig,
    *,
    context_provider: ContextProvider | None = None,
    scorer: SemanticScorer | None = None,
    channel: NotificationChannel | None = None,
) -> ActionPipeline:
    """Assemble an :class:`ActionPipeline` from *config*.

    ``database_dsn`` selects the Postgres store and audit sink (the schema
    is created if missing); otherwise both live in memory. A ``[semantic]``
    section enables the HTTP scorer and a ``webhook_url`` the webhook
    notifier, unless *scorer* / *channel* are passed explicitly.
    """
    closers: list[Closer] = []
    store: ActionStore
    audit_sink: AuditSink
    if config.database_dsn:
        pool = await asyncpg.create_pool(dsn=config.database_dsn)
        await create_schema(pool)
        store = PostgresActionStore(pool)
        audit_sink = PostgresAuditSink(pool)
        closers.append(pool.close)
        logger.info("Using PostgreSQL action store for gateway %s", config.name)
    else:
        store = InMemoryActionStore()
        audit_sink = InMemoryAuditSink()
        logger.warning("No database_dsn configured; actions and audit kept in memory")

    if scorer is None and config.semantic is not None:
        http_scorer = HttpSemanticScorer(config.semantic)
        closers.append(http_scorer.aclose)
        scorer = http_scorer

    if channel is None and config.notifications.webhook_url:
        webhook = WebhookNotifier(config.notifications.webhook_url)
        closers.append(webhook.aclose)
        channel = webhook

    if context_provider is None:
        logger.warning("No context provider supplied; contacts resolve to empty contexts")
        context_provider = StaticContextProvider()

    return ActionPipeline(
        store=store,
        audit_sink=audit_sink,
        context_provider=context_provider,
        policy_store=PolicyStore(config.policy, source_path=config.source_path),
        scorer=scorer,
        channel=channel,
        operator_id=config.notifications.operator_id,
        closers=closers,
    )
