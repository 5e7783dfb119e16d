"""Approval request endpoints: pending queue, resolution and expiry sweep."""

from __future__ import annotations

from datetime import timedelta
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from actiongate.api.deps import get_pipeline
from actiongate.api.models import (
    ApiResponse,
    ApprovalResponseRequest,
    ResolutionResult,
    SweepResult,
)
from actiongate.models import UserApprovalResponse
from actiongate.pipeline import ActionPipeline

router = APIRouter(prefix="/api/approvals", tags=["approvals"])


@router.get("")
async def list_pending(
    approver_id: str | None = Query(default=None),
    expiring_within_minutes: int | None = Query(default=None, ge=1),
    pipeline: ActionPipeline = Depends(get_pipeline),
) -> ApiResponse[list[dict[str, Any]]]:
    """List pending requests, optionally only those expiring soon."""
    if expiring_within_minutes is not None:
        requests = await pipeline.expiring_soon(
            timedelta(minutes=expiring_within_minutes), approver_id=approver_id
        )
    else:
        requests = await pipeline.list_pending(approver_id)
    return ApiResponse(data=[r.to_dict() for r in requests])


@router.post("/sweep")
async def sweep_expired(
    pipeline: ActionPipeline = Depends(get_pipeline),
) -> ApiResponse[SweepResult]:
    """Expire unanswered requests and overdue actions."""
    expired = await pipeline.sweep_expired()
    return ApiResponse(data=SweepResult(expired_action_ids=expired))


@router.post("/{request_id}/resolve")
async def resolve_request(
    request_id: UUID,
    body: ApprovalResponseRequest,
    pipeline: ActionPipeline = Depends(get_pipeline),
) -> ApiResponse[ResolutionResult]:
    response = UserApprovalResponse(
        request_id=request_id,
        decision=body.decision,
        responder_id=body.responder_id,
        reason=body.reason,
        modified_parameters=body.modified_parameters,
        apply_to_similar_actions=body.apply_to_similar_actions,
    )
    resolution = await pipeline.resolve_detailed(request_id, response)
    return ApiResponse(
        data=ResolutionResult(
            request_id=resolution.request.id,
            request_status=resolution.request.status.value,
            action_status=resolution.action_status.value,
            bulk_resolved=resolution.bulk_resolved,
        )
    )
