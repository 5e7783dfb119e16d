"""Persistence interface for scheduled actions, relevance results and approval requests.

All status writes are compare-and-set: an update names the status it
expects the row to be in and returns ``None`` when another writer got there
first. Callers treat ``None`` as "lost the race" and never overwrite.
"""

from __future__ import annotations

import asyncio
import copy
import dataclasses
import uuid
from datetime import datetime
from typing import Protocol

from actiongate.models import (
    TERMINAL_STATUSES,
    ActionRelevanceResult,
    ApprovalStatus,
    ScheduledAction,
    ScheduledActionStatus,
    UserApprovalRequest,
    UserApprovalResponse,
)


class ActionStore(Protocol):
    """Storage backend used by the gate and the approval workflow."""

    async def insert_action(self, action: ScheduledAction) -> ScheduledAction: ...

    async def get_action(self, action_id: uuid.UUID) -> ScheduledAction | None: ...

    async def update_action(
        self,
        action: ScheduledAction,
        *,
        expected_status: ScheduledActionStatus,
    ) -> ScheduledAction | None: ...

    async def list_actions(
        self,
        *,
        organization_id: uuid.UUID | None = None,
        contact_id: uuid.UUID | None = None,
        status: ScheduledActionStatus | None = None,
        limit: int = 100,
    ) -> list[ScheduledAction]: ...

    async def list_overdue_actions(self, cutoff: datetime) -> list[ScheduledAction]: ...

    async def flag_for_reconciliation(self, action_id: uuid.UUID) -> None: ...

    async def insert_relevance_result(self, result: ActionRelevanceResult) -> None: ...

    async def list_relevance_results(
        self, action_id: uuid.UUID
    ) -> list[ActionRelevanceResult]: ...

    async def insert_request(self, request: UserApprovalRequest) -> UserApprovalRequest: ...

    async def get_request(self, request_id: uuid.UUID) -> UserApprovalRequest | None: ...

    async def transition_request(
        self,
        request_id: uuid.UUID,
        *,
        status: ApprovalStatus,
        resolved_at: datetime,
        resolved_by: str,
        response: UserApprovalResponse | None = None,
        bulk_resolved_from: uuid.UUID | None = None,
    ) -> UserApprovalRequest | None: ...

    async def list_pending_requests(
        self,
        *,
        approver_id: str | None = None,
        action_type: str | None = None,
        organization_id: uuid.UUID | None = None,
    ) -> list[UserApprovalRequest]: ...

    async def list_expired_requests(self, now: datetime) -> list[UserApprovalRequest]: ...


class InMemoryActionStore:
    """Dictionary-backed ActionStore.

    A single ``asyncio.Lock`` serialises every write so compare-and-set
    semantics match the Postgres store. Stored values are deep-copied on the
    way in and out; callers never share state with the store.
    """

    def __init__(self) -> None:
        self._actions: dict[uuid.UUID, ScheduledAction] = {}
        self._results: dict[uuid.UUID, list[ActionRelevanceResult]] = {}
        self._requests: dict[uuid.UUID, UserApprovalRequest] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def insert_action(self, action: ScheduledAction) -> ScheduledAction:
        async with self._lock:
            if action.id in self._actions:
                raise ValueError(f"Action {action.id} already exists")
            self._actions[action.id] = copy.deepcopy(action)
            return copy.deepcopy(action)

    async def get_action(self, action_id: uuid.UUID) -> ScheduledAction | None:
        action = self._actions.get(action_id)
        return copy.deepcopy(action) if action is not None else None

    async def update_action(
        self,
        action: ScheduledAction,
        *,
        expected_status: ScheduledActionStatus,
    ) -> ScheduledAction | None:
        async with self._lock:
            current = self._actions.get(action.id)
            if current is None or current.status != expected_status:
                return None
            self._actions[action.id] = copy.deepcopy(action)
            return copy.deepcopy(action)

    async def list_actions(
        self,
        *,
        organization_id: uuid.UUID | None = None,
        contact_id: uuid.UUID | None = None,
        status: ScheduledActionStatus | None = None,
        limit: int = 100,
    ) -> list[ScheduledAction]:
        matched = [
            a
            for a in self._actions.values()
            if (organization_id is None or a.organization_id == organization_id)
            and (contact_id is None or a.contact_id == contact_id)
            and (status is None or a.status == status)
        ]
        matched.sort(key=lambda a: a.execute_at)
        return [copy.deepcopy(a) for a in matched[:limit]]

    async def list_overdue_actions(self, cutoff: datetime) -> list[ScheduledAction]:
        return [
            copy.deepcopy(a)
            for a in self._actions.values()
            if a.status not in TERMINAL_STATUSES
            and a.status != ScheduledActionStatus.EXECUTING
            and a.execute_at < cutoff
        ]

    async def flag_for_reconciliation(self, action_id: uuid.UUID) -> None:
        async with self._lock:
            current = self._actions.get(action_id)
            if current is not None:
                self._actions[action_id] = dataclasses.replace(
                    current, needs_reconciliation=True
                )

    # ------------------------------------------------------------------
    # Relevance results
    # ------------------------------------------------------------------

    async def insert_relevance_result(self, result: ActionRelevanceResult) -> None:
        async with self._lock:
            self._results.setdefault(result.action_id, []).append(copy.deepcopy(result))

    async def list_relevance_results(self, action_id: uuid.UUID) -> list[ActionRelevanceResult]:
        return [copy.deepcopy(r) for r in self._results.get(action_id, [])]

    # ------------------------------------------------------------------
    # Approval requests
    # ------------------------------------------------------------------

    async def insert_request(self, request: UserApprovalRequest) -> UserApprovalRequest:
        async with self._lock:
            if request.action.id not in self._actions:
                raise ValueError(f"Action {request.action.id} does not exist")
            self._requests[request.id] = copy.deepcopy(request)
            return copy.deepcopy(request)

    async def get_request(self, request_id: uuid.UUID) -> UserApprovalRequest | None:
        request = self._requests.get(request_id)
        return copy.deepcopy(request) if request is not None else None

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
        async with self._lock:
            current = self._requests.get(request_id)
            if current is None or current.status != ApprovalStatus.PENDING:
                return None
            updated = dataclasses.replace(
                current,
                status=status,
                resolved_at=resolved_at,
                resolved_by=resolved_by,
                response=copy.deepcopy(response),
                bulk_resolved_from=bulk_resolved_from,
            )
            self._requests[request_id] = updated
            return copy.deepcopy(updated)

    async def list_pending_requests(
        self,
        *,
        approver_id: str | None = None,
        action_type: str | None = None,
        organization_id: uuid.UUID | None = None,
    ) -> list[UserApprovalRequest]:
        matched = [
            r
            for r in self._requests.values()
            if r.status == ApprovalStatus.PENDING
            and (approver_id is None or r.approver_id == approver_id)
            and (action_type is None or r.action.action_type == action_type)
            and (organization_id is None or r.action.organization_id == organization_id)
        ]
        matched.sort(key=lambda r: r.requested_at)
        return [copy.deepcopy(r) for r in matched]

    async def list_expired_requests(self, now: datetime) -> list[UserApprovalRequest]:
        return [
            copy.deepcopy(r)
            for r in self._requests.values()
            if r.status == ApprovalStatus.PENDING and r.expires_at <= now
        ]
