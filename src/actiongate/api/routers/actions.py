"""Scheduled action endpoints: schedule, inspect, process and report outcomes."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from actiongate.api.deps import get_pipeline
from actiongate.api.models import (
    ApiResponse,
    CancelActionRequest,
    ExecutionResultRequest,
    ReconcileActionRequest,
    ScheduleActionRequest,
    ValidateBatchRequest,
)
from actiongate.models import ScheduledActionStatus
from actiongate.pipeline import ActionPipeline

router = APIRouter(prefix="/api/actions", tags=["actions"])


@router.post("", status_code=201)
async def schedule_action(
    body: ScheduleActionRequest,
    pipeline: ActionPipeline = Depends(get_pipeline),
) -> ApiResponse[dict[str, Any]]:
    """Register a new pending action."""
    action = await pipeline.schedule(body.model_dump(mode="json"))
    return ApiResponse(data=action.to_dict())


@router.get("")
async def list_actions(
    organization_id: UUID | None = Query(default=None),
    contact_id: UUID | None = Query(default=None),
    status: ScheduledActionStatus | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    pipeline: ActionPipeline = Depends(get_pipeline),
) -> ApiResponse[list[dict[str, Any]]]:
    actions = await pipeline.list_actions(
        organization_id=organization_id, contact_id=contact_id, status=status, limit=limit
    )
    return ApiResponse(data=[a.to_dict() for a in actions])


@router.post("/validate")
async def validate_actions(
    body: ValidateBatchRequest,
    pipeline: ActionPipeline = Depends(get_pipeline),
) -> ApiResponse[list[dict[str, Any]]]:
    """Dry-run relevance checks for several actions; statuses are not changed."""
    results = await pipeline.check_relevance_batch(body.action_ids)
    return ApiResponse(data=[r.to_dict() for r in results])


@router.get("/{action_id}")
async def get_action(
    action_id: UUID,
    pipeline: ActionPipeline = Depends(get_pipeline),
) -> ApiResponse[dict[str, Any]]:
    action = await pipeline.get_action(action_id)
    return ApiResponse(data=action.to_dict())


@router.get("/{action_id}/relevance")
async def relevance_history(
    action_id: UUID,
    pipeline: ActionPipeline = Depends(get_pipeline),
) -> ApiResponse[list[dict[str, Any]]]:
    results = await pipeline.relevance_history(action_id)
    return ApiResponse(data=[r.to_dict() for r in results])


@router.post("/{action_id}/validate")
async def validate_action(
    action_id: UUID,
    pipeline: ActionPipeline = Depends(get_pipeline),
) -> ApiResponse[dict[str, Any]]:
    """Dry-run relevance check for one action; its status is not changed."""
    result = await pipeline.check_relevance(action_id)
    return ApiResponse(data=result.to_dict())


@router.get("/{action_id}/alternatives")
async def action_alternatives(
    action_id: UUID,
    pipeline: ActionPipeline = Depends(get_pipeline),
) -> ApiResponse[list[dict[str, Any]]]:
    alternatives = await pipeline.alternatives(action_id)
    return ApiResponse(data=[a.to_dict() for a in alternatives])


@router.post("/{action_id}/process")
async def process_action(
    action_id: UUID,
    pipeline: ActionPipeline = Depends(get_pipeline),
) -> ApiResponse[dict[str, Any]]:
    """Run the execution gate for a due action."""
    outcome = await pipeline.process(action_id)
    return ApiResponse(data=outcome.to_dict())


@router.post("/{action_id}/cancel")
async def cancel_action(
    action_id: UUID,
    body: CancelActionRequest,
    pipeline: ActionPipeline = Depends(get_pipeline),
) -> ApiResponse[dict[str, Any]]:
    action = await pipeline.cancel(action_id, actor=body.actor, reason=body.reason)
    return ApiResponse(data=action.to_dict())


@router.post("/{action_id}/reconcile")
async def reconcile_action(
    action_id: UUID,
    body: ReconcileActionRequest,
    pipeline: ActionPipeline = Depends(get_pipeline),
) -> ApiResponse[dict[str, Any]]:
    """Release an action held for reconciliation and apply any recorded resolution."""
    action = await pipeline.reconcile(action_id, actor=body.actor, reason=body.reason)
    return ApiResponse(data=action.to_dict())


@router.post("/{action_id}/result")
async def record_execution_result(
    action_id: UUID,
    body: ExecutionResultRequest,
    pipeline: ActionPipeline = Depends(get_pipeline),
) -> ApiResponse[dict[str, Any]]:
    """Report the outcome of an action the caller executed."""
    action = await pipeline.record_execution_result(
        action_id,
        success=body.success,
        error=body.error,
        retryable=body.retryable,
        details=body.details,
    )
    return ApiResponse(data=action.to_dict())
