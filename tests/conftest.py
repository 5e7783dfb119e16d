"""Shared fakes and fixtures for the action gate test suite.

Everything here is in-memory: the store and audit sink are the real
in-memory implementations, while the scorer, notification channel and a
failing audit sink are fakes that record how they were called.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import pytest

from actiongate.audit import AuditRecord, InMemoryAuditSink
from actiongate.config import ActionRelevanceConfig, PolicyStore
from actiongate.context import StaticContextProvider
from actiongate.errors import SemanticResponseError
from actiongate.models import (
    ActionRelevanceResult,
    ActionScope,
    ContactContext,
    RelevanceVerdict,
    ScheduledAction,
    ValidationMethod,
    utcnow,
)
from actiongate.pipeline import ActionPipeline
from actiongate.relevance.semantic import ReviewScore, SemanticScore
from actiongate.store import InMemoryActionStore

ORG_ID = uuid.UUID("00000000-0000-4000-8000-0000000000aa")
CONTACT_ID = uuid.UUID("00000000-0000-4000-8000-0000000000cc")


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeScorer:
    """SemanticScorer double with a configurable answer, delay or error."""

    def __init__(
        self,
        score: SemanticScore | None = None,
        *,
        review: ReviewScore | None = None,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.next_score = score or SemanticScore(
            relevant=True, confidence=0.95, rationale="still appropriate"
        )
        self.next_review = review
        self.delay = delay
        self.error = error
        self.calls = 0
        self.review_calls = 0
        self.last_criteria: dict[str, Any] | None = None

    async def score(
        self,
        description: str,
        parameters: Any,
        context: ContactContext,
        *,
        criteria: Any,
        deadline: float,
    ) -> SemanticScore:
        self.calls += 1
        self.last_criteria = dict(criteria)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.next_score

    async def review(
        self,
        description: str,
        parameters: Any,
        context: ContactContext,
        *,
        confidence: float,
        deadline: float,
    ) -> ReviewScore:
        self.review_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.next_review is None:
            raise SemanticResponseError("no review configured")
        return self.next_review


class RecordingChannel:
    """NotificationChannel that records deliveries, optionally failing or hanging."""

    def __init__(self, *, fail: bool = False, delay: float = 0.0) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.fail = fail
        self.delay = delay

    async def notify(self, approver_id: str, summary: dict[str, Any]) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("channel down")
        self.sent.append((approver_id, summary))


class FailingAuditSink(InMemoryAuditSink):
    """Audit sink whose writes fail once ``failing`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.failing = False

    async def append(self, record: AuditRecord) -> None:
        if self.failing:
            raise OSError("audit database unavailable")
        await super().append(record)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def now() -> datetime:
    return utcnow()


@pytest.fixture
def make_action(now: datetime) -> Callable[..., ScheduledAction]:
    def _make(**overrides: Any) -> ScheduledAction:
        values: dict[str, Any] = {
            "action_type": "follow_up_email",
            "description": "Send a follow-up email about the listing",
            "contact_id": CONTACT_ID,
            "organization_id": ORG_ID,
            "scheduled_by_agent_id": "agent-7",
            "execute_at": now,
            "scope": ActionScope.HYBRID,
        }
        values.update(overrides)
        return ScheduledAction(**values)

    return _make


@pytest.fixture
def make_context() -> Callable[..., ContactContext]:
    def _make(**overrides: Any) -> ContactContext:
        values: dict[str, Any] = {
            "contact_id": CONTACT_ID,
            "organization_id": ORG_ID,
            "contact_status": "active",
            "deal_status": "open",
            "engagement_level": "high",
            "last_interaction_at": utcnow() - timedelta(days=2),
            "sentiment_score": 0.6,
        }
        values.update(overrides)
        return ContactContext(**values)

    return _make


@pytest.fixture
def make_result() -> Callable[..., ActionRelevanceResult]:
    def _make(action: ScheduledAction, **overrides: Any) -> ActionRelevanceResult:
        values: dict[str, Any] = {
            "action_id": action.id,
            "verdict": RelevanceVerdict.RELEVANT,
            "confidence": 1.0,
            "reason": "All relevance criteria passed",
            "method": ValidationMethod.RULE_BASED,
            "checked_by": "relevance_validator",
        }
        values.update(overrides)
        return ActionRelevanceResult(**values)

    return _make


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> InMemoryActionStore:
    return InMemoryActionStore()


@pytest.fixture
def audit_sink() -> FailingAuditSink:
    return FailingAuditSink()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def failing_channel() -> RecordingChannel:
    return RecordingChannel(fail=True)


@pytest.fixture
def slow_channel() -> RecordingChannel:
    return RecordingChannel(delay=5.0)


@pytest.fixture
def scorer() -> FakeScorer:
    return FakeScorer()


@pytest.fixture
def policy() -> ActionRelevanceConfig:
    return ActionRelevanceConfig(check_timeout_seconds=0.5, notification_timeout_seconds=0.5)


@pytest.fixture
def policy_store(policy: ActionRelevanceConfig) -> PolicyStore:
    return PolicyStore(policy)


@pytest.fixture
def contexts(make_context) -> StaticContextProvider:
    return StaticContextProvider([make_context()])


@pytest.fixture
async def pipeline(
    store: InMemoryActionStore,
    audit_sink: FailingAuditSink,
    contexts: StaticContextProvider,
    policy_store: PolicyStore,
    scorer: FakeScorer,
    channel: RecordingChannel,
):
    pipeline = ActionPipeline(
        store=store,
        audit_sink=audit_sink,
        context_provider=contexts,
        policy_store=policy_store,
        scorer=scorer,
        channel=channel,
        operator_id="ops-team",
    )
    yield pipeline
    await pipeline.aclose()
