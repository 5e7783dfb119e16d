"""Pydantic request/response models for the gate API.

Domain objects are returned through their ``to_dict()`` form wrapped in
:class:`ApiResponse`; only request bodies get dedicated models.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, TypeVar
from uuid import UUID

from pydantic import BaseModel, Field

from actiongate.models import ActionScope, ApprovalDecision, UrgencyLevel


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """All successful responses follow ``{"data": T, "meta": {...}}``."""

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class ScheduleActionRequest(BaseModel):
    """Body for ``POST /api/actions``."""

    action_type: str
    description: str = ""
    contact_id: UUID
    organization_id: UUID
    scheduled_by_agent_id: str
    execute_at: datetime
    parameters: dict[str, Any] = Field(default_factory=dict)
    relevance_criteria: dict[str, Any] = Field(default_factory=dict)
    priority: UrgencyLevel = UrgencyLevel.MEDIUM
    max_retry_attempts: int = Field(default=3, ge=0)
    scope: ActionScope = ActionScope.HYBRID
    justification: str | None = None
    trace_id: str | None = None


class CancelActionRequest(BaseModel):
    actor: str
    reason: str | None = None


class ReconcileActionRequest(BaseModel):
    """Operator release of an action held after a failed audit write."""

    actor: str
    reason: str | None = None


class ExecutionResultRequest(BaseModel):
    """Outcome reported by the executor of an ``execute`` decision."""

    success: bool
    error: str | None = None
    retryable: bool = False
    details: dict[str, Any] = Field(default_factory=dict)


class ValidateBatchRequest(BaseModel):
    action_ids: list[UUID] = Field(min_length=1)


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------


class ApprovalResponseRequest(BaseModel):
    """Body for ``POST /api/approvals/{request_id}/resolve``."""

    decision: ApprovalDecision
    responder_id: str
    reason: str | None = None
    modified_parameters: dict[str, Any] | None = None
    apply_to_similar_actions: bool = False


class ResolutionResult(BaseModel):
    request_id: UUID
    request_status: str
    action_status: str
    bulk_resolved: list[UUID] = Field(default_factory=list)


class SweepResult(BaseModel):
    expired_action_ids: list[UUID]


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class PolicyUpdateRequest(BaseModel):
    """A complete ``[policy]`` section; omitted keys take their defaults."""

    actor: str
    policy: dict[str, Any]
