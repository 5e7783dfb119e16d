"""Relevance policy endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from actiongate.api.deps import get_pipeline
from actiongate.api.models import ApiResponse, PolicyUpdateRequest
from actiongate.pipeline import ActionPipeline

router = APIRouter(prefix="/api/policy", tags=["policy"])


@router.get("")
async def get_policy(
    pipeline: ActionPipeline = Depends(get_pipeline),
) -> ApiResponse[dict[str, Any]]:
    return ApiResponse(data=pipeline.current_policy().to_dict())


@router.put("")
async def update_policy(
    body: PolicyUpdateRequest,
    pipeline: ActionPipeline = Depends(get_pipeline),
) -> ApiResponse[dict[str, Any]]:
    """Replace the whole policy; in-flight checks keep the policy they started with."""
    policy = await pipeline.update_policy(body.policy, actor=body.actor)
    return ApiResponse(data=policy.to_dict())
