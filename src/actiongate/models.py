"""Data models for the action gate.

Defines ScheduledAction, ActionRelevanceResult, ContactContext and the
UserApprovalRequest / UserApprovalResponse pair. Each record maps 1:1 to a
database table (see ``actiongate.postgres``) and carries JSON serialisation
helpers for API responses and database round-tripping.
"""

from __future__ import annotations

import enum
import json
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any


class ScheduledActionStatus(enum.StrEnum):
    """Lifecycle statuses of a scheduled action."""

    PENDING = "pending"
    RELEVANCE_CHECK_PASSED = "relevance_check_passed"
    RELEVANCE_CHECK_FAILED = "relevance_check_failed"
    EXECUTING = "executing"
    COMPLETED = "completed"
    SUPPRESSED = "suppressed"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STATUSES: frozenset[ScheduledActionStatus] = frozenset(
    {
        ScheduledActionStatus.COMPLETED,
        ScheduledActionStatus.SUPPRESSED,
        ScheduledActionStatus.FAILED,
        ScheduledActionStatus.EXPIRED,
    }
)


class ActionScope(enum.StrEnum):
    """Blast radius of an action, used to scale validation rigor."""

    INNER_WORLD = "inner_world"
    HYBRID = "hybrid"
    REAL_WORLD = "real_world"


class UrgencyLevel(enum.StrEnum):
    """Execution priority of a scheduled action."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RelevanceVerdict(enum.StrEnum):
    """Outcome of a single relevance judgement."""

    RELEVANT = "relevant"
    NOT_RELEVANT = "not_relevant"
    UNKNOWN = "unknown"


class ValidationMethod(enum.StrEnum):
    """Which checker produced a relevance result."""

    RULE_BASED = "rule_based"
    SEMANTIC = "semantic"
    DEFAULT_POLICY = "default_policy"


class ApprovalStatus(enum.StrEnum):
    """Statuses of a human approval request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    MODIFIED = "modified"
    DEFERRED = "deferred"


class ApprovalDecision(enum.StrEnum):
    """Decisions a human approver may return."""

    APPROVE = "approve"
    REJECT = "reject"
    MODIFY = "modify"
    DEFER = "defer"


class ExecutionDecision(enum.StrEnum):
    """Final go/no-go signal returned by the execution gate."""

    EXECUTE = "execute"
    SUPPRESS = "suppress"
    AWAIT_APPROVAL = "await_approval"
    EXPIRED = "expired"


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(UTC)


def _parse_uuid(value: Any) -> uuid.UUID:
    """Parse a UUID from a string or UUID object."""
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _parse_optional_uuid(value: Any) -> uuid.UUID | None:
    if value is None:
        return None
    return _parse_uuid(value)


def _parse_datetime(value: Any) -> datetime:
    """Parse a datetime from a string or datetime object; naive values are UTC."""
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _parse_optional_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    return _parse_datetime(value)


def _parse_jsonb(value: Any) -> Any:
    """Parse a JSONB value (may be a string or an already-decoded object)."""
    if isinstance(value, str):
        return json.loads(value)
    return value


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _row_get(row: Any, key: str, default: Any = None) -> Any:
    """Read an optional column from an asyncpg Record or mapping."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except KeyError:
        return default


# ---------------------------------------------------------------------------
# Typed key-value maps
# ---------------------------------------------------------------------------

_SCALAR_TYPES: tuple[type, ...] = (str, bool, int, float, datetime)

CONSTRAINT_TYPES: frozenset[str] = frozenset(
    {"exact", "pattern", "any", "min", "max", "semantic"}
)

# Serialised form of a timestamp value: {"type": "timestamp", "value": <ISO 8601>}.
TIMESTAMP_TAG = "timestamp"


def _is_timestamp_tag(value: Any) -> bool:
    return isinstance(value, Mapping) and value.get("type") == TIMESTAMP_TAG


def _load_typed_value(value: Any, *, label: str) -> Any:
    """Decode a tagged timestamp back into a datetime; other values pass through."""
    if not _is_timestamp_tag(value):
        return value
    try:
        return _parse_datetime(value["value"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"{label} is not a valid timestamp: {value.get('value')!r}") from exc


def validate_typed_mapping(
    values: Mapping[str, Any] | None,
    *,
    field_name: str,
    allow_constraints: bool = False,
) -> dict[str, Any]:
    """Validate a parameters/criteria map at ingestion time.

    Values must be strings, numbers, booleans or timestamps. Timestamps may
    arrive as datetimes or in their serialised ``{"type": "timestamp",
    "value": <ISO 8601>}`` form and always come back as datetimes. When
    *allow_constraints* is set, a value may also be a constraint object
    ``{"type": <constraint type>, "value": <scalar>}``.

    Raises
    ------
    ValueError
        If a key is not a non-empty string or a value has an unsupported kind.
    """
    if values is None:
        return {}
    if not isinstance(values, Mapping):
        raise ValueError(f"{field_name} must be a mapping, got {type(values).__name__}")

    validated: dict[str, Any] = {}
    for key, value in values.items():
        if not isinstance(key, str) or not key.strip():
            raise ValueError(f"{field_name} keys must be non-empty strings: {key!r}")
        value = _load_typed_value(value, label=f"{field_name}[{key!r}]")
        if allow_constraints and isinstance(value, Mapping):
            ctype = value.get("type")
            if ctype not in CONSTRAINT_TYPES:
                allowed = ", ".join(sorted(CONSTRAINT_TYPES))
                raise ValueError(
                    f"{field_name}[{key!r}] has unknown constraint type {ctype!r}. "
                    f"Expected one of: {allowed}"
                )
            inner = _load_typed_value(value.get("value"), label=f"{field_name}[{key!r}]")
            if inner is not None and not isinstance(inner, _SCALAR_TYPES):
                raise ValueError(
                    f"{field_name}[{key!r}] constraint value must be a scalar, "
                    f"got {type(inner).__name__}"
                )
            validated[key] = {**value, "value": inner} if "value" in value else dict(value)
            continue
        if value is None or not isinstance(value, _SCALAR_TYPES):
            raise ValueError(
                f"{field_name}[{key!r}] must be a string, number, boolean or timestamp, "
                f"got {type(value).__name__}"
            )
        validated[key] = value
    return validated


def dump_typed_mapping(values: Mapping[str, Any]) -> dict[str, Any]:
    """Return a JSON-safe copy of a typed map.

    Timestamps are tagged so :func:`validate_typed_mapping` can restore them.
    """

    def _dump(value: Any) -> Any:
        if isinstance(value, datetime):
            return {"type": TIMESTAMP_TAG, "value": value.isoformat()}
        if isinstance(value, Mapping):
            return {k: _dump(v) for k, v in value.items()}
        return value

    return {key: _dump(value) for key, value in values.items()}


# ---------------------------------------------------------------------------
# Contact context
# ---------------------------------------------------------------------------


@dataclass
class ContactContext:
    """Snapshot of a contact's current situation, consumed read-only."""

    contact_id: uuid.UUID
    organization_id: uuid.UUID | None = None
    contact_status: str | None = None
    deal_status: str | None = None
    engagement_level: str | None = None
    last_interaction_at: datetime | None = None
    sentiment_score: float | None = None
    interaction_summary: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    retrieved_at: datetime = field(default_factory=utcnow)

    def is_stale(self, max_age_minutes: int, now: datetime | None = None) -> bool:
        """Return whether the snapshot is older than *max_age_minutes*."""
        now = now or utcnow()
        return now - self.retrieved_at > timedelta(minutes=max_age_minutes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "contact_id": str(self.contact_id),
            "organization_id": str(self.organization_id) if self.organization_id else None,
            "contact_status": self.contact_status,
            "deal_status": self.deal_status,
            "engagement_level": self.engagement_level,
            "last_interaction_at": _isoformat(self.last_interaction_at),
            "sentiment_score": self.sentiment_score,
            "interaction_summary": self.interaction_summary,
            "attributes": dump_typed_mapping(self.attributes),
            "retrieved_at": self.retrieved_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ContactContext:
        retrieved_at = data.get("retrieved_at")
        return cls(
            contact_id=_parse_uuid(data["contact_id"]),
            organization_id=_parse_optional_uuid(data.get("organization_id")),
            contact_status=data.get("contact_status"),
            deal_status=data.get("deal_status"),
            engagement_level=data.get("engagement_level"),
            last_interaction_at=_parse_optional_datetime(data.get("last_interaction_at")),
            sentiment_score=data.get("sentiment_score"),
            interaction_summary=data.get("interaction_summary"),
            attributes={
                key: _load_typed_value(value, label=f"attributes[{key!r}]")
                for key, value in (data.get("attributes") or {}).items()
            },
            retrieved_at=_parse_datetime(retrieved_at) if retrieved_at else utcnow(),
        )


# ---------------------------------------------------------------------------
# Relevance result
# ---------------------------------------------------------------------------


@dataclass
class ActionRelevanceResult:
    """Outcome of one relevance check.

    Maps 1:1 to the ``relevance_results`` database table. Rule-based results
    carry a deterministic confidence of 1.0 (definitive) or 0.0
    (inconclusive); only semantic results carry a graded confidence.
    """

    action_id: uuid.UUID
    verdict: RelevanceVerdict
    confidence: float
    reason: str
    method: ValidationMethod
    checked_by: str
    checked_at: datetime = field(default_factory=utcnow)
    failed_criteria: list[str] = field(default_factory=list)
    alternative_actions: list[str] = field(default_factory=list)
    recommended_action: str | None = None
    trace_id: str | None = None
    context_snapshot: dict[str, Any] = field(default_factory=dict)
    id: uuid.UUID = field(default_factory=uuid.uuid4)

    @property
    def is_relevant(self) -> bool:
        return self.verdict == RelevanceVerdict.RELEVANT

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-safe dictionary."""
        return {
            "id": str(self.id),
            "action_id": str(self.action_id),
            "verdict": self.verdict.value,
            "is_relevant": self.is_relevant,
            "confidence": self.confidence,
            "reason": self.reason,
            "method": self.method.value,
            "checked_by": self.checked_by,
            "checked_at": self.checked_at.isoformat(),
            "failed_criteria": list(self.failed_criteria),
            "alternative_actions": list(self.alternative_actions),
            "recommended_action": self.recommended_action,
            "trace_id": self.trace_id,
            "context_snapshot": self.context_snapshot,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ActionRelevanceResult:
        """Reconstruct a result from a dictionary (e.g. from to_dict())."""
        return cls(
            id=_parse_uuid(data["id"]) if data.get("id") else uuid.uuid4(),
            action_id=_parse_uuid(data["action_id"]),
            verdict=RelevanceVerdict(data["verdict"]),
            confidence=float(data["confidence"]),
            reason=data.get("reason", ""),
            method=ValidationMethod(data["method"]),
            checked_by=data.get("checked_by", ""),
            checked_at=_parse_datetime(data["checked_at"]),
            failed_criteria=list(data.get("failed_criteria") or []),
            alternative_actions=list(data.get("alternative_actions") or []),
            recommended_action=data.get("recommended_action"),
            trace_id=data.get("trace_id"),
            context_snapshot=dict(data.get("context_snapshot") or {}),
        )


def _parse_optional_result(value: Any) -> ActionRelevanceResult | None:
    if value is None:
        return None
    if isinstance(value, ActionRelevanceResult):
        return value
    return ActionRelevanceResult.from_dict(_parse_jsonb(value))


# ---------------------------------------------------------------------------
# Scheduled action
# ---------------------------------------------------------------------------


@dataclass
class ScheduledAction:
    """A proposed future action awaiting relevance confirmation.

    Maps 1:1 to the ``scheduled_actions`` database table. Instances are
    treated as values: state changes go through
    :func:`actiongate.lifecycle.transition`, which returns a new instance.
    """

    action_type: str
    description: str
    contact_id: uuid.UUID
    organization_id: uuid.UUID
    scheduled_by_agent_id: str
    execute_at: datetime
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    scheduled_at: datetime = field(default_factory=utcnow)
    parameters: dict[str, Any] = field(default_factory=dict)
    relevance_criteria: dict[str, Any] = field(default_factory=dict)
    status: ScheduledActionStatus = ScheduledActionStatus.PENDING
    suppression_reason: str | None = None
    priority: UrgencyLevel = UrgencyLevel.MEDIUM
    retry_attempts: int = 0
    max_retry_attempts: int = 3
    last_relevance_check: datetime | None = None
    last_relevance_result: ActionRelevanceResult | None = None
    scope: ActionScope = ActionScope.HYBRID
    trace_id: str | None = None
    justification: str | None = None
    pending_request_id: uuid.UUID | None = None
    approved_by: str | None = None
    needs_reconciliation: bool = False
    execution_result: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        if self.retry_attempts > self.max_retry_attempts:
            raise ValueError(
                f"retry_attempts ({self.retry_attempts}) exceeds "
                f"max_retry_attempts ({self.max_retry_attempts})"
            )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def retries_remaining(self) -> int:
        return self.max_retry_attempts - self.retry_attempts

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-safe dictionary."""
        return {
            "id": str(self.id),
            "action_type": self.action_type,
            "description": self.description,
            "contact_id": str(self.contact_id),
            "organization_id": str(self.organization_id),
            "scheduled_by_agent_id": self.scheduled_by_agent_id,
            "scheduled_at": self.scheduled_at.isoformat(),
            "execute_at": self.execute_at.isoformat(),
            "parameters": dump_typed_mapping(self.parameters),
            "relevance_criteria": dump_typed_mapping(self.relevance_criteria),
            "status": self.status.value,
            "suppression_reason": self.suppression_reason,
            "priority": self.priority.value,
            "retry_attempts": self.retry_attempts,
            "max_retry_attempts": self.max_retry_attempts,
            "last_relevance_check": _isoformat(self.last_relevance_check),
            "last_relevance_result": (
                self.last_relevance_result.to_dict() if self.last_relevance_result else None
            ),
            "scope": self.scope.value,
            "trace_id": self.trace_id,
            "justification": self.justification,
            "pending_request_id": (
                str(self.pending_request_id) if self.pending_request_id else None
            ),
            "approved_by": self.approved_by,
            "needs_reconciliation": self.needs_reconciliation,
            "execution_result": self.execution_result,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ScheduledAction:
        """Reconstruct a ScheduledAction from a dictionary, validating typed maps."""
        return cls(
            id=_parse_uuid(data["id"]) if data.get("id") else uuid.uuid4(),
            action_type=str(data["action_type"]),
            description=str(data.get("description", "")),
            contact_id=_parse_uuid(data["contact_id"]),
            organization_id=_parse_uuid(data["organization_id"]),
            scheduled_by_agent_id=str(data.get("scheduled_by_agent_id", "")),
            scheduled_at=(
                _parse_datetime(data["scheduled_at"]) if data.get("scheduled_at") else utcnow()
            ),
            execute_at=_parse_datetime(data["execute_at"]),
            parameters=validate_typed_mapping(
                _parse_jsonb(data.get("parameters")), field_name="parameters"
            ),
            relevance_criteria=validate_typed_mapping(
                _parse_jsonb(data.get("relevance_criteria")),
                field_name="relevance_criteria",
                allow_constraints=True,
            ),
            status=ScheduledActionStatus(data.get("status", ScheduledActionStatus.PENDING)),
            suppression_reason=data.get("suppression_reason"),
            priority=UrgencyLevel(data.get("priority", UrgencyLevel.MEDIUM)),
            retry_attempts=int(data.get("retry_attempts", 0)),
            max_retry_attempts=int(data.get("max_retry_attempts", 3)),
            last_relevance_check=_parse_optional_datetime(data.get("last_relevance_check")),
            last_relevance_result=_parse_optional_result(data.get("last_relevance_result")),
            scope=ActionScope(data.get("scope", ActionScope.HYBRID)),
            trace_id=data.get("trace_id"),
            justification=data.get("justification"),
            pending_request_id=_parse_optional_uuid(data.get("pending_request_id")),
            approved_by=data.get("approved_by"),
            needs_reconciliation=bool(data.get("needs_reconciliation", False)),
            execution_result=_parse_jsonb(data.get("execution_result")),
        )

    @classmethod
    def from_row(cls, row: Any) -> ScheduledAction:
        """Reconstruct a ScheduledAction from a database row (asyncpg Record or mapping)."""
        return cls.from_dict({key: _row_get(row, key) for key in _ACTION_COLUMNS})


_ACTION_COLUMNS: tuple[str, ...] = (
    "id",
    "action_type",
    "description",
    "contact_id",
    "organization_id",
    "scheduled_by_agent_id",
    "scheduled_at",
    "execute_at",
    "parameters",
    "relevance_criteria",
    "status",
    "suppression_reason",
    "priority",
    "retry_attempts",
    "max_retry_attempts",
    "last_relevance_check",
    "last_relevance_result",
    "scope",
    "trace_id",
    "justification",
    "pending_request_id",
    "approved_by",
    "needs_reconciliation",
    "execution_result",
)


# ---------------------------------------------------------------------------
# Human-in-the-loop exchange
# ---------------------------------------------------------------------------


@dataclass
class UserApprovalResponse:
    """A human approver's answer to an approval request."""

    request_id: uuid.UUID
    decision: ApprovalDecision
    responder_id: str
    reason: str | None = None
    modified_parameters: dict[str, Any] | None = None
    apply_to_similar_actions: bool = False
    responded_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": str(self.request_id),
            "decision": self.decision.value,
            "responder_id": self.responder_id,
            "reason": self.reason,
            "modified_parameters": (
                dump_typed_mapping(self.modified_parameters)
                if self.modified_parameters is not None
                else None
            ),
            "apply_to_similar_actions": self.apply_to_similar_actions,
            "responded_at": self.responded_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> UserApprovalResponse:
        modified = data.get("modified_parameters")
        return cls(
            request_id=_parse_uuid(data["request_id"]),
            decision=ApprovalDecision(data["decision"]),
            responder_id=str(data["responder_id"]),
            reason=data.get("reason"),
            modified_parameters=(
                validate_typed_mapping(modified, field_name="modified_parameters")
                if modified is not None
                else None
            ),
            apply_to_similar_actions=bool(data.get("apply_to_similar_actions", False)),
            responded_at=(
                _parse_datetime(data["responded_at"]) if data.get("responded_at") else utcnow()
            ),
        )


@dataclass
class UserApprovalRequest:
    """A pending human sign-off on a scheduled action.

    Maps 1:1 to the ``approval_requests`` database table. ``action`` is a
    snapshot of the action at request time.
    """

    action: ScheduledAction
    relevance_result: ActionRelevanceResult
    reason: str
    approver_id: str
    requested_at: datetime
    expires_at: datetime
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    status: ApprovalStatus = ApprovalStatus.PENDING
    alternative_actions: list[str] = field(default_factory=list)
    response: UserApprovalResponse | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    bulk_resolved_from: uuid.UUID | None = None

    @property
    def action_id(self) -> uuid.UUID:
        return self.action.id

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return now >= self.expires_at

    def summary(self) -> dict[str, Any]:
        """Short human-readable payload sent to the notification channel."""
        return {
            "request_id": str(self.id),
            "action_id": str(self.action.id),
            "action_type": self.action.action_type,
            "description": self.action.description,
            "reason": self.reason,
            "confidence": self.relevance_result.confidence,
            "expires_at": self.expires_at.isoformat(),
            "alternatives": list(self.alternative_actions),
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-safe dictionary."""
        return {
            "id": str(self.id),
            "action": self.action.to_dict(),
            "relevance_result": self.relevance_result.to_dict(),
            "reason": self.reason,
            "approver_id": self.approver_id,
            "requested_at": self.requested_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "status": self.status.value,
            "alternative_actions": list(self.alternative_actions),
            "response": self.response.to_dict() if self.response else None,
            "resolved_at": _isoformat(self.resolved_at),
            "resolved_by": self.resolved_by,
            "bulk_resolved_from": (
                str(self.bulk_resolved_from) if self.bulk_resolved_from else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> UserApprovalRequest:
        """Reconstruct a request from a dictionary (e.g. from to_dict())."""
        response = _parse_jsonb(data.get("response"))
        return cls(
            id=_parse_uuid(data["id"]),
            action=ScheduledAction.from_dict(_parse_jsonb(data["action"])),
            relevance_result=ActionRelevanceResult.from_dict(
                _parse_jsonb(data["relevance_result"])
            ),
            reason=data.get("reason", ""),
            approver_id=str(data.get("approver_id", "")),
            requested_at=_parse_datetime(data["requested_at"]),
            expires_at=_parse_datetime(data["expires_at"]),
            status=ApprovalStatus(data.get("status", ApprovalStatus.PENDING)),
            alternative_actions=list(_parse_jsonb(data.get("alternative_actions")) or []),
            response=UserApprovalResponse.from_dict(response) if response else None,
            resolved_at=_parse_optional_datetime(data.get("resolved_at")),
            resolved_by=data.get("resolved_by"),
            bulk_resolved_from=_parse_optional_uuid(data.get("bulk_resolved_from")),
        )

    @classmethod
    def from_row(cls, row: Any) -> UserApprovalRequest:
        """Reconstruct a request from a database row (asyncpg Record or mapping)."""
        return cls.from_dict(
            {
                "id": row["id"],
                "action": row["action_snapshot"],
                "relevance_result": row["relevance_result"],
                "reason": _row_get(row, "reason", ""),
                "approver_id": _row_get(row, "approver_id", ""),
                "requested_at": row["requested_at"],
                "expires_at": row["expires_at"],
                "status": row["status"],
                "alternative_actions": _row_get(row, "alternative_actions"),
                "response": _row_get(row, "response"),
                "resolved_at": _row_get(row, "resolved_at"),
                "resolved_by": _row_get(row, "resolved_by"),
                "bulk_resolved_from": _row_get(row, "bulk_resolved_from"),
            }
        )
