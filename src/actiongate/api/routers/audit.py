"""Audit log query endpoint."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from actiongate.api.deps import get_pipeline
from actiongate.api.models import ApiResponse
from actiongate.audit import AuditEventType, AuditQuery
from actiongate.pipeline import ActionPipeline

router = APIRouter(prefix="/api/audit", tags=["audit"])


@router.get("")
async def query_audit(
    contact_id: UUID | None = Query(default=None),
    organization_id: UUID | None = Query(default=None),
    action_type: str | None = Query(default=None),
    action_id: UUID | None = Query(default=None),
    event_type: AuditEventType | None = Query(default=None),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    limit: int = Query(default=500, ge=1, le=5000),
    pipeline: ActionPipeline = Depends(get_pipeline),
) -> ApiResponse[list[dict[str, Any]]]:
    """Audit records matching every given filter, newest first."""
    if start is not None and end is not None and start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")
    records = await pipeline.audit_log(
        AuditQuery(
            contact_id=contact_id,
            organization_id=organization_id,
            action_type=action_type,
            action_id=action_id,
            event_type=event_type,
            start=start,
            end=end,
            limit=limit,
        )
    )
    return ApiResponse(data=[r.to_dict() for r in records])
