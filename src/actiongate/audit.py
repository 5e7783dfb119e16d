"""Immutable audit trail for gate decisions.

Every status-changing decision writes exactly one :class:`AuditRecord`
through an :class:`AuditSink`. Records are append-only; the sink never
updates or deletes them.
"""

from __future__ import annotations

import enum
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from actiongate.errors import AuditWriteError
from actiongate.models import (
    ActionRelevanceResult,
    ScheduledAction,
    UserApprovalRequest,
    _parse_datetime,
    _parse_jsonb,
    _parse_optional_uuid,
    _parse_uuid,
    _row_get,
    utcnow,
)

if TYPE_CHECKING:
    from actiongate.approvals.notifier import NotificationDispatcher
    from actiongate.store import ActionStore

logger = logging.getLogger(__name__)


class AuditEventType(enum.StrEnum):
    """Canonical event names for audit records."""

    ACTION_SCHEDULED = "action_scheduled"
    RELEVANCE_CHECKED = "relevance_checked"
    ACTION_SUPPRESSED = "action_suppressed"
    ACTION_REPLACED = "action_replaced"
    APPROVAL_REQUESTED = "approval_requested"
    ACTION_APPROVED = "action_approved"
    ACTION_REJECTED = "action_rejected"
    ACTION_MODIFIED = "action_modified"
    ACTION_DEFERRED = "action_deferred"
    APPROVAL_EXPIRED = "approval_expired"
    ACTION_EXPIRED = "action_expired"
    ACTION_EXECUTING = "action_executing"
    ACTION_COMPLETED = "action_completed"
    ACTION_FAILED = "action_failed"
    ACTION_RETRY_SCHEDULED = "action_retry_scheduled"
    ACTION_CANCELLED = "action_cancelled"
    ACTION_RECONCILED = "action_reconciled"
    POLICY_UPDATED = "policy_updated"


@dataclass(frozen=True)
class AuditRecord:
    """One immutable audit row."""

    event_type: AuditEventType
    actor: str
    action_id: uuid.UUID | None = None
    request_id: uuid.UUID | None = None
    contact_id: uuid.UUID | None = None
    organization_id: uuid.UUID | None = None
    action_type: str | None = None
    verdict: str | None = None
    method: str | None = None
    confidence: float | None = None
    reason: str | None = None
    trace_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)
    id: uuid.UUID = field(default_factory=uuid.uuid4)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "event_type": self.event_type.value,
            "actor": self.actor,
            "action_id": str(self.action_id) if self.action_id else None,
            "request_id": str(self.request_id) if self.request_id else None,
            "contact_id": str(self.contact_id) if self.contact_id else None,
            "organization_id": str(self.organization_id) if self.organization_id else None,
            "action_type": self.action_type,
            "verdict": self.verdict,
            "method": self.method,
            "confidence": self.confidence,
            "reason": self.reason,
            "trace_id": self.trace_id,
            "metadata": dict(self.metadata),
            "occurred_at": self.occurred_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: Any) -> AuditRecord:
        """Reconstruct a record from an ``audit_events`` row."""
        confidence = _row_get(row, "confidence")
        return cls(
            id=_parse_uuid(row["id"]),
            event_type=AuditEventType(row["event_type"]),
            actor=row["actor"],
            action_id=_parse_optional_uuid(_row_get(row, "action_id")),
            request_id=_parse_optional_uuid(_row_get(row, "request_id")),
            contact_id=_parse_optional_uuid(_row_get(row, "contact_id")),
            organization_id=_parse_optional_uuid(_row_get(row, "organization_id")),
            action_type=_row_get(row, "action_type"),
            verdict=_row_get(row, "verdict"),
            method=_row_get(row, "method"),
            confidence=float(confidence) if confidence is not None else None,
            reason=_row_get(row, "reason"),
            trace_id=_row_get(row, "trace_id"),
            metadata=_parse_jsonb(_row_get(row, "event_metadata")) or {},
            occurred_at=_parse_datetime(row["occurred_at"]),
        )


@dataclass(frozen=True)
class AuditQuery:
    """Filters for :meth:`AuditSink.query`. ``None`` means unfiltered."""

    contact_id: uuid.UUID | None = None
    organization_id: uuid.UUID | None = None
    action_type: str | None = None
    action_id: uuid.UUID | None = None
    event_type: AuditEventType | None = None
    start: datetime | None = None
    end: datetime | None = None
    limit: int = 500

    def matches(self, record: AuditRecord) -> bool:
        if self.contact_id is not None and record.contact_id != self.contact_id:
            return False
        if self.organization_id is not None and record.organization_id != self.organization_id:
            return False
        if self.action_type is not None and record.action_type != self.action_type:
            return False
        if self.action_id is not None and record.action_id != self.action_id:
            return False
        if self.event_type is not None and record.event_type != self.event_type:
            return False
        if self.start is not None and record.occurred_at < self.start:
            return False
        if self.end is not None and record.occurred_at > self.end:
            return False
        return True


class AuditSink(Protocol):
    """Append-only audit store."""

    async def append(self, record: AuditRecord) -> None: ...

    async def query(self, query: AuditQuery) -> list[AuditRecord]: ...


class InMemoryAuditSink:
    """Process-local audit sink, newest records last."""

    def __init__(self) -> None:
        self.records: list[AuditRecord] = []

    async def append(self, record: AuditRecord) -> None:
        self.records.append(record)

    async def query(self, query: AuditQuery) -> list[AuditRecord]:
        matched = [r for r in self.records if query.matches(r)]
        matched.sort(key=lambda r: r.occurred_at, reverse=True)
        return matched[: query.limit]


async def record_audit_event(
    sink: AuditSink,
    event_type: AuditEventType,
    *,
    actor: str,
    action: ScheduledAction | None = None,
    request: UserApprovalRequest | None = None,
    result: ActionRelevanceResult | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> AuditRecord:
    """Build and persist one audit record.

    Raises
    ------
    AuditWriteError
        If the sink fails to persist the record.
    """
    if action is None and request is not None:
        action = request.action
    record = AuditRecord(
        event_type=event_type,
        actor=actor,
        action_id=action.id if action else None,
        request_id=request.id if request else None,
        contact_id=action.contact_id if action else None,
        organization_id=action.organization_id if action else None,
        action_type=action.action_type if action else None,
        verdict=result.verdict.value if result else None,
        method=result.method.value if result else None,
        confidence=result.confidence if result else None,
        reason=reason,
        trace_id=(result.trace_id if result and result.trace_id else None)
        or (action.trace_id if action else None),
        metadata=metadata or {},
        occurred_at=occurred_at or utcnow(),
    )
    try:
        await sink.append(record)
    except AuditWriteError:
        raise
    except Exception as exc:
        raise AuditWriteError(
            f"Failed to write audit event {event_type.value} "
            f"for action {record.action_id}: {exc}"
        ) from exc
    logger.debug("Audit event %s recorded for action %s", event_type.value, record.action_id)
    return record


class AuditTrail:
    """Writes audit records and handles a failed write.

    A failed write flags the affected action for manual reconciliation,
    raises a critical alert and notifies the operator, then re-raises
    :class:`AuditWriteError`. The caller must not persist the status change
    it was auditing.
    """

    def __init__(
        self,
        sink: AuditSink,
        store: ActionStore,
        notifier: NotificationDispatcher | None = None,
        *,
        operator_id: str = "operations",
    ) -> None:
        self.sink = sink
        self._store = store
        self._notifier = notifier
        self._operator_id = operator_id

    async def record(
        self,
        event_type: AuditEventType,
        *,
        actor: str,
        action: ScheduledAction | None = None,
        request: UserApprovalRequest | None = None,
        result: ActionRelevanceResult | None = None,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditRecord:
        try:
            return await record_audit_event(
                self.sink,
                event_type,
                actor=actor,
                action=action,
                request=request,
                result=result,
                reason=reason,
                metadata=metadata,
            )
        except AuditWriteError as exc:
            action_id = action.id if action else (request.action_id if request else None)
            logger.critical(
                "Audit write failed for %s on action %s; held for reconciliation: %s",
                event_type.value,
                action_id,
                exc,
            )
            if action_id is not None:
                await self._store.flag_for_reconciliation(action_id)
            if self._notifier is not None:
                self._notifier.dispatch(
                    self._operator_id,
                    {
                        "message": "Audit write failed; action held for manual reconciliation",
                        "action_id": str(action_id) if action_id else None,
                        "event_type": event_type.value,
                    },
                )
            raise
