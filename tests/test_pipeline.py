"""Tests for the ActionPipeline facade and build_pipeline wiring."""

from __future__ import annotations

import uuid

import pytest

from actiongate.approvals.notifier import WebhookNotifier
from actiongate.audit import AuditEventType, AuditQuery, InMemoryAuditSink
from actiongate.config import OverrideMode, parse_config
from actiongate.context import StaticContextProvider
from actiongate.errors import ActionNotFoundError, AuditWriteError, ConfigError
from actiongate.models import RelevanceVerdict, ScheduledActionStatus
from actiongate.pipeline import ActionPipeline, build_pipeline
from actiongate.store import InMemoryActionStore

pytestmark = pytest.mark.unit


class TestSchedule:
    async def test_schedule_from_mapping(self, pipeline, audit_sink, make_action, now):
        template = make_action()
        action = await pipeline.schedule(
            {
                "action_type": "follow_up_email",
                "description": "Check in after the viewing",
                "contact_id": str(template.contact_id),
                "organization_id": str(template.organization_id),
                "scheduled_by_agent_id": "agent-7",
                "execute_at": now.isoformat(),
                "parameters": {"subject": "How was the viewing?"},
                "relevance_criteria": {"dealStatus": {"type": "any", "value": "open,pending"}},
            }
        )

        assert action.status == ScheduledActionStatus.PENDING
        assert action.trace_id
        assert (await pipeline.get_action(action.id)).parameters == {
            "subject": "How was the viewing?"
        }
        record = audit_sink.records[-1]
        assert record.event_type == AuditEventType.ACTION_SCHEDULED
        assert record.actor == "agent-7"
        assert record.trace_id == action.trace_id

    async def test_caller_action_is_not_mutated(self, pipeline, make_action):
        action = make_action()

        stored = await pipeline.schedule(action)

        assert action.trace_id is None
        assert stored.trace_id
        assert stored.id == action.id

    async def test_rejects_non_pending_actions(self, pipeline, make_action):
        with pytest.raises(ValueError, match="must be pending"):
            await pipeline.schedule(make_action(status=ScheduledActionStatus.COMPLETED))

    async def test_rejects_untyped_parameters(self, pipeline, make_action):
        with pytest.raises(ValueError, match="parameters"):
            await pipeline.schedule(make_action(parameters={"recipients": ["a", "b"]}))

    async def test_rejects_unknown_constraint_type(self, pipeline, make_action):
        with pytest.raises(ValueError, match="unknown constraint type"):
            await pipeline.schedule(
                make_action(relevance_criteria={"dealStatus": {"type": "regex", "value": "x"}})
            )

    async def test_audit_failure_flags_scheduled_action(
        self, pipeline, make_action, store, audit_sink
    ):
        audit_sink.failing = True
        action = make_action()

        with pytest.raises(AuditWriteError):
            await pipeline.schedule(action)

        stored = await store.get_action(action.id)
        assert stored.needs_reconciliation is True


class TestQueries:
    async def test_get_unknown_action(self, pipeline):
        with pytest.raises(ActionNotFoundError):
            await pipeline.get_action(uuid.uuid4())

    async def test_list_actions_filters_by_status(self, pipeline, make_action):
        kept = await pipeline.schedule(make_action())
        cancelled = await pipeline.schedule(make_action())
        await pipeline.cancel(cancelled.id, actor="bob")

        pending = await pipeline.list_actions(status=ScheduledActionStatus.PENDING)

        assert [a.id for a in pending] == [kept.id]
        assert len(await pipeline.list_actions(organization_id=kept.organization_id)) == 2

    async def test_audit_log_is_newest_first(self, pipeline, make_action):
        action = await pipeline.schedule(make_action())
        await pipeline.cancel(action.id, actor="bob")

        records = await pipeline.audit_log(AuditQuery(action_id=action.id))

        assert [r.event_type for r in records] == [
            AuditEventType.ACTION_CANCELLED,
            AuditEventType.ACTION_SCHEDULED,
        ]


class TestDryRun:
    async def test_check_relevance_keeps_status(self, pipeline, make_action, audit_sink):
        action = await pipeline.schedule(make_action(relevance_criteria={"dealStatus": "lost"}))

        result = await pipeline.check_relevance(action.id)

        assert result.verdict == RelevanceVerdict.NOT_RELEVANT
        stored = await pipeline.get_action(action.id)
        assert stored.status == ScheduledActionStatus.PENDING
        assert [r.id for r in await pipeline.relevance_history(action.id)] == [result.id]
        record = audit_sink.records[-1]
        assert record.event_type == AuditEventType.RELEVANCE_CHECKED
        assert record.metadata == {"dry_run": True}

    async def test_batch_keeps_input_order(self, pipeline, make_action):
        relevant = await pipeline.schedule(make_action(relevance_criteria={"dealStatus": "open"}))
        stale = await pipeline.schedule(make_action(relevance_criteria={"dealStatus": "lost"}))

        results = await pipeline.check_relevance_batch([stale.id, relevant.id])

        assert [r.action_id for r in results] == [stale.id, relevant.id]
        assert [r.verdict for r in results] == [
            RelevanceVerdict.NOT_RELEVANT,
            RelevanceVerdict.RELEVANT,
        ]

    async def test_batch_with_unknown_action(self, pipeline, make_action):
        action = await pipeline.schedule(make_action())

        with pytest.raises(ActionNotFoundError):
            await pipeline.check_relevance_batch([action.id, uuid.uuid4()])

    async def test_alternatives_runs_a_check_when_needed(self, pipeline, make_action, store):
        action = await pipeline.schedule(
            make_action(action_type="congrats_email", relevance_criteria={"dealStatus": "won"})
        )

        alternatives = await pipeline.alternatives(action.id)

        assert [a.action_type for a in alternatives] == ["follow_up_email"]
        assert alternatives[0].relevance_criteria == {}
        assert len(await store.list_relevance_results(action.id)) == 1
        assert await store.get_action(alternatives[0].id) is None


class TestPolicy:
    async def test_update_is_audited_and_swapped(self, pipeline, audit_sink):
        policy = await pipeline.update_policy({"override_mode": "always_ask"}, actor="admin")

        assert pipeline.current_policy() is policy
        assert policy.override_mode == OverrideMode.ALWAYS_ASK
        record = audit_sink.records[-1]
        assert record.event_type == AuditEventType.POLICY_UPDATED
        assert record.actor == "admin"
        assert record.metadata["current"]["override_mode"] == "always_ask"

    async def test_invalid_update_keeps_policy(self, pipeline, audit_sink):
        before = pipeline.current_policy()

        with pytest.raises(ConfigError):
            await pipeline.update_policy({"minimum_confidence": 3}, actor="admin")

        assert pipeline.current_policy() is before
        assert audit_sink.records == []

    async def test_audit_failure_keeps_policy(self, pipeline, audit_sink):
        before = pipeline.current_policy()
        audit_sink.failing = True

        with pytest.raises(AuditWriteError):
            await pipeline.update_policy({"defer_minutes": 5}, actor="admin")

        assert pipeline.current_policy() is before


class TestBuildPipeline:
    async def test_in_memory_defaults(self, scorer, channel):
        config = parse_config({"gateway": {"name": "crm"}, "policy": {"defer_minutes": 15}})

        pipeline = await build_pipeline(config, scorer=scorer, channel=channel)
        try:
            assert isinstance(pipeline.store, InMemoryActionStore)
            assert isinstance(pipeline.audit.sink, InMemoryAuditSink)
            assert pipeline.current_policy().defer_minutes == 15
            assert pipeline.notifier.channel is channel
            assert pipeline.validator.semantic is not None
        finally:
            await pipeline.aclose()

    async def test_configured_http_clients(self):
        config = parse_config(
            {
                "gateway": {"name": "crm"},
                "semantic": {"endpoint": "https://llm.test/v1/chat"},
                "notifications": {"webhook_url": "https://hooks.test/approvals"},
            }
        )

        pipeline = await build_pipeline(config)
        try:
            assert isinstance(pipeline.notifier.channel, WebhookNotifier)
            assert pipeline.validator.semantic is not None
        finally:
            await pipeline.aclose()

    async def test_aclose_runs_closers_in_reverse(self):
        closed: list[str] = []

        async def first() -> None:
            closed.append("first")

        async def second() -> None:
            closed.append("second")

        pipeline = ActionPipeline(
            store=InMemoryActionStore(),
            audit_sink=InMemoryAuditSink(),
            context_provider=StaticContextProvider(),
            closers=[first, second],
        )

        await pipeline.aclose()
        await pipeline.aclose()

        assert closed == ["second", "first"]
