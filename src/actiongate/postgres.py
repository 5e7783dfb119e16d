"""asyncpg-backed ActionStore and AuditSink.

Status writes use ``UPDATE ... WHERE id = $1 AND status = $2 RETURNING *``
so concurrent writers cannot overwrite each other; a ``None`` row means the
compare-and-set lost.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any

from actiongate.audit import AuditQuery, AuditRecord
from actiongate.models import (
    ActionRelevanceResult,
    ApprovalStatus,
    ScheduledAction,
    ScheduledActionStatus,
    UserApprovalRequest,
    UserApprovalResponse,
    dump_typed_mapping,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS scheduled_actions (
    id UUID PRIMARY KEY,
    action_type TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    contact_id UUID NOT NULL,
    organization_id UUID NOT NULL,
    scheduled_by_agent_id TEXT NOT NULL,
    scheduled_at TIMESTAMPTZ NOT NULL,
    execute_at TIMESTAMPTZ NOT NULL,
    parameters JSONB NOT NULL DEFAULT '{}'::jsonb,
    relevance_criteria JSONB NOT NULL DEFAULT '{}'::jsonb,
    status TEXT NOT NULL,
    suppression_reason TEXT,
    priority TEXT NOT NULL DEFAULT 'medium',
    retry_attempts INTEGER NOT NULL DEFAULT 0,
    max_retry_attempts INTEGER NOT NULL DEFAULT 3,
    last_relevance_check TIMESTAMPTZ,
    last_relevance_result JSONB,
    scope TEXT NOT NULL DEFAULT 'hybrid',
    trace_id TEXT,
    justification TEXT,
    pending_request_id UUID,
    approved_by TEXT,
    needs_reconciliation BOOLEAN NOT NULL DEFAULT FALSE,
    execution_result JSONB,
    CHECK (retry_attempts <= max_retry_attempts)
);

CREATE INDEX IF NOT EXISTS idx_scheduled_actions_org_status
    ON scheduled_actions (organization_id, status);
CREATE INDEX IF NOT EXISTS idx_scheduled_actions_contact_status
    ON scheduled_actions (contact_id, status);

CREATE TABLE IF NOT EXISTS relevance_results (
    id UUID PRIMARY KEY,
    action_id UUID NOT NULL REFERENCES scheduled_actions (id) ON DELETE CASCADE,
    result JSONB NOT NULL,
    checked_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_relevance_results_action
    ON relevance_results (action_id, checked_at);

CREATE TABLE IF NOT EXISTS approval_requests (
    id UUID PRIMARY KEY,
    action_id UUID NOT NULL REFERENCES scheduled_actions (id) ON DELETE CASCADE,
    action_type TEXT NOT NULL,
    organization_id UUID NOT NULL,
    action_snapshot JSONB NOT NULL,
    relevance_result JSONB NOT NULL,
    reason TEXT NOT NULL DEFAULT '',
    approver_id TEXT NOT NULL,
    requested_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    alternative_actions JSONB NOT NULL DEFAULT '[]'::jsonb,
    response JSONB,
    resolved_at TIMESTAMPTZ,
    resolved_by TEXT,
    bulk_resolved_from UUID
);

CREATE INDEX IF NOT EXISTS idx_approval_requests_pending
    ON approval_requests (status, expires_at);

CREATE TABLE IF NOT EXISTS audit_events (
    id UUID PRIMARY KEY,
    event_type TEXT NOT NULL,
    actor TEXT NOT NULL,
    action_id UUID,
    request_id UUID,
    contact_id UUID,
    organization_id UUID,
    action_type TEXT,
    verdict TEXT,
    method TEXT,
    confidence DOUBLE PRECISION,
    reason TEXT,
    trace_id TEXT,
    event_metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    occurred_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_events_contact
    ON audit_events (contact_id, occurred_at);
"""

_UPDATE_ACTION_SQL = (
    "UPDATE scheduled_actions SET "
    "description = $3, execute_at = $4, parameters = $5, relevance_criteria = $6, "
    "status = $7, suppression_reason = $8, priority = $9, retry_attempts = $10, "
    "last_relevance_check = $11, last_relevance_result = $12, pending_request_id = $13, "
    "approved_by = $14, needs_reconciliation = $15, execution_result = $16 "
    "WHERE id = $1 AND status = $2 RETURNING *"
)


async def create_schema(pool: Any) -> None:
    """Create the gate tables if they do not exist."""
    await pool.execute(SCHEMA_SQL)
    logger.info("Action gate schema ensured")


def _json(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


class PostgresActionStore:
    """ActionStore over an asyncpg pool."""

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def insert_action(self, action: ScheduledAction) -> ScheduledAction:
        row = await self._pool.fetchrow(
            "INSERT INTO scheduled_actions "
            "(id, action_type, description, contact_id, organization_id, "
            "scheduled_by_agent_id, scheduled_at, execute_at, parameters, "
            "relevance_criteria, status, suppression_reason, priority, retry_attempts, "
            "max_retry_attempts, last_relevance_check, last_relevance_result, scope, "
            "trace_id, justification, pending_request_id, approved_by, "
            "needs_reconciliation, execution_result) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, "
            "$15, $16, $17, $18, $19, $20, $21, $22, $23, $24) RETURNING *",
            action.id,
            action.action_type,
            action.description,
            action.contact_id,
            action.organization_id,
            action.scheduled_by_agent_id,
            action.scheduled_at,
            action.execute_at,
            json.dumps(dump_typed_mapping(action.parameters)),
            json.dumps(dump_typed_mapping(action.relevance_criteria)),
            action.status.value,
            action.suppression_reason,
            action.priority.value,
            action.retry_attempts,
            action.max_retry_attempts,
            action.last_relevance_check,
            _json(action.last_relevance_result.to_dict() if action.last_relevance_result else None),
            action.scope.value,
            action.trace_id,
            action.justification,
            action.pending_request_id,
            action.approved_by,
            action.needs_reconciliation,
            _json(action.execution_result),
        )
        return ScheduledAction.from_row(row)

    async def get_action(self, action_id: uuid.UUID) -> ScheduledAction | None:
        row = await self._pool.fetchrow("SELECT * FROM scheduled_actions WHERE id = $1", action_id)
        return ScheduledAction.from_row(row) if row is not None else None

    async def update_action(
        self,
        action: ScheduledAction,
        *,
        expected_status: ScheduledActionStatus,
    ) -> ScheduledAction | None:
        row = await self._pool.fetchrow(
            _UPDATE_ACTION_SQL,
            action.id,
            expected_status.value,
            action.description,
            action.execute_at,
            json.dumps(dump_typed_mapping(action.parameters)),
            json.dumps(dump_typed_mapping(action.relevance_criteria)),
            action.status.value,
            action.suppression_reason,
            action.priority.value,
            action.retry_attempts,
            action.last_relevance_check,
            _json(action.last_relevance_result.to_dict() if action.last_relevance_result else None),
            action.pending_request_id,
            action.approved_by,
            action.needs_reconciliation,
            _json(action.execution_result),
        )
        return ScheduledAction.from_row(row) if row is not None else None

    async def list_actions(
        self,
        *,
        organization_id: uuid.UUID | None = None,
        contact_id: uuid.UUID | None = None,
        status: ScheduledActionStatus | None = None,
        limit: int = 100,
    ) -> list[ScheduledAction]:
        conditions: list[str] = []
        args: list[Any] = []
        if organization_id is not None:
            args.append(organization_id)
            conditions.append(f"organization_id = ${len(args)}")
        if contact_id is not None:
            args.append(contact_id)
            conditions.append(f"contact_id = ${len(args)}")
        if status is not None:
            args.append(status.value)
            conditions.append(f"status = ${len(args)}")
        where = f"WHERE {' AND '.join(conditions)} " if conditions else ""
        args.append(limit)
        rows = await self._pool.fetch(
            f"SELECT * FROM scheduled_actions {where}ORDER BY execute_at LIMIT ${len(args)}",
            *args,
        )
        return [ScheduledAction.from_row(r) for r in rows]

    async def list_overdue_actions(self, cutoff: datetime) -> list[ScheduledAction]:
        rows = await self._pool.fetch(
            "SELECT * FROM scheduled_actions "
            "WHERE status IN ($1, $2, $3) AND execute_at < $4",
            ScheduledActionStatus.PENDING.value,
            ScheduledActionStatus.RELEVANCE_CHECK_PASSED.value,
            ScheduledActionStatus.RELEVANCE_CHECK_FAILED.value,
            cutoff,
        )
        return [ScheduledAction.from_row(r) for r in rows]

    async def flag_for_reconciliation(self, action_id: uuid.UUID) -> None:
        await self._pool.execute(
            "UPDATE scheduled_actions SET needs_reconciliation = TRUE WHERE id = $1",
            action_id,
        )

    async def insert_relevance_result(self, result: ActionRelevanceResult) -> None:
        await self._pool.execute(
            "INSERT INTO relevance_results (id, action_id, result, checked_at) "
            "VALUES ($1, $2, $3, $4)",
            result.id,
            result.action_id,
            json.dumps(result.to_dict()),
            result.checked_at,
        )

    async def list_relevance_results(self, action_id: uuid.UUID) -> list[ActionRelevanceResult]:
        rows = await self._pool.fetch(
            "SELECT result FROM relevance_results WHERE action_id = $1 ORDER BY checked_at",
            action_id,
        )
        return [
            ActionRelevanceResult.from_dict(
                json.loads(r["result"]) if isinstance(r["result"], str) else r["result"]
            )
            for r in rows
        ]

    async def insert_request(self, request: UserApprovalRequest) -> UserApprovalRequest:
        row = await self._pool.fetchrow(
            "INSERT INTO approval_requests "
            "(id, action_id, action_type, organization_id, action_snapshot, relevance_result, "
            "reason, approver_id, requested_at, expires_at, status, alternative_actions) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12) RETURNING *",
            request.id,
            request.action.id,
            request.action.action_type,
            request.action.organization_id,
            json.dumps(request.action.to_dict()),
            json.dumps(request.relevance_result.to_dict()),
            request.reason,
            request.approver_id,
            request.requested_at,
            request.expires_at,
            request.status.value,
            json.dumps(list(request.alternative_actions)),
        )
        return UserApprovalRequest.from_row(row)

    async def get_request(self, request_id: uuid.UUID) -> UserApprovalRequest | None:
        row = await self._pool.fetchrow("SELECT * FROM approval_requests WHERE id = $1", request_id)
        return UserApprovalRequest.from_row(row) if row is not None else None

    async def transition_request(
        self,
        request_id: uuid.UUID,
        *,
        status: ApprovalStatus,
        resolved_at: datetime,
        resolved_by: str,
        response: UserApprovalResponse | None = None,
        bulk_resolved_from: uuid.UUID | None = None,
    ) -> UserApprovalRequest | None:
        row = await self._pool.fetchrow(
            "UPDATE approval_requests SET status = $2, resolved_at = $3, resolved_by = $4, "
            "response = $5, bulk_resolved_from = $6 "
            "WHERE id = $1 AND status = 'pending' RETURNING *",
            request_id,
            status.value,
            resolved_at,
            resolved_by,
            _json(response.to_dict() if response else None),
            bulk_resolved_from,
        )
        return UserApprovalRequest.from_row(row) if row is not None else None

    async def list_pending_requests(
        self,
        *,
        approver_id: str | None = None,
        action_type: str | None = None,
        organization_id: uuid.UUID | None = None,
    ) -> list[UserApprovalRequest]:
        conditions = ["status = 'pending'"]
        args: list[Any] = []
        if approver_id is not None:
            args.append(approver_id)
            conditions.append(f"approver_id = ${len(args)}")
        if action_type is not None:
            args.append(action_type)
            conditions.append(f"action_type = ${len(args)}")
        if organization_id is not None:
            args.append(organization_id)
            conditions.append(f"organization_id = ${len(args)}")
        rows = await self._pool.fetch(
            f"SELECT * FROM approval_requests WHERE {' AND '.join(conditions)} "
            "ORDER BY requested_at",
            *args,
        )
        return [UserApprovalRequest.from_row(r) for r in rows]

    async def list_expired_requests(self, now: datetime) -> list[UserApprovalRequest]:
        rows = await self._pool.fetch(
            "SELECT * FROM approval_requests WHERE status = 'pending' AND expires_at <= $1",
            now,
        )
        return [UserApprovalRequest.from_row(r) for r in rows]


class PostgresAuditSink:
    """Append-only AuditSink writing to ``audit_events``."""

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def append(self, record: AuditRecord) -> None:
        await self._pool.execute(
            "INSERT INTO audit_events "
            "(id, event_type, actor, action_id, request_id, contact_id, organization_id, "
            "action_type, verdict, method, confidence, reason, trace_id, event_metadata, "
            "occurred_at) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)",
            record.id,
            record.event_type.value,
            record.actor,
            record.action_id,
            record.request_id,
            record.contact_id,
            record.organization_id,
            record.action_type,
            record.verdict,
            record.method,
            record.confidence,
            record.reason,
            record.trace_id,
            json.dumps(dict(record.metadata)),
            record.occurred_at,
        )

    async def query(self, query: AuditQuery) -> list[AuditRecord]:
        conditions: list[str] = []
        args: list[Any] = []
        for column, value in (
            ("contact_id", query.contact_id),
            ("organization_id", query.organization_id),
            ("action_type", query.action_type),
            ("action_id", query.action_id),
            ("event_type", query.event_type.value if query.event_type else None),
        ):
            if value is not None:
                args.append(value)
                conditions.append(f"{column} = ${len(args)}")
        if query.start is not None:
            args.append(query.start)
            conditions.append(f"occurred_at >= ${len(args)}")
        if query.end is not None:
            args.append(query.end)
            conditions.append(f"occurred_at <= ${len(args)}")
        where = f"WHERE {' AND '.join(conditions)} " if conditions else ""
        args.append(query.limit)
        rows = await self._pool.fetch(
            f"SELECT * FROM audit_events {where}ORDER BY occurred_at DESC LIMIT ${len(args)}",
            *args,
        )
        return [AuditRecord.from_row(r) for r in rows]
