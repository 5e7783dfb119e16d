"""Tests for domain model serialisation and typed-map validation."""

from __future__ import annotations

import json
import uuid
from datetime import timedelta

import pytest

from actiongate.models import (
    ActionScope,
    ApprovalDecision,
    ContactContext,
    ScheduledAction,
    UrgencyLevel,
    UserApprovalRequest,
    UserApprovalResponse,
    utcnow,
    dump_typed_mapping,
    validate_typed_mapping,
)

pytestmark = pytest.mark.unit


class TestTypedMapping:
    def test_accepts_scalars(self, now):
        values = {"subject": "Hi", "count": 3, "ratio": 0.5, "urgent": True, "at": now}
        assert validate_typed_mapping(values, field_name="parameters") == values

    def test_none_is_empty(self):
        assert validate_typed_mapping(None, field_name="parameters") == {}

    @pytest.mark.parametrize("value", [None, [1, 2], {"nested": 1}, object()])
    def test_rejects_non_scalars(self, value):
        with pytest.raises(ValueError, match="parameters"):
            validate_typed_mapping({"key": value}, field_name="parameters")

    def test_rejects_blank_keys(self):
        with pytest.raises(ValueError, match="non-empty strings"):
            validate_typed_mapping({" ": 1}, field_name="parameters")

    def test_constraint_objects_only_in_criteria(self):
        criteria = {"dealStatus": {"type": "any", "value": "open,pending"}}
        assert validate_typed_mapping(
            criteria, field_name="relevance_criteria", allow_constraints=True
        ) == criteria
        with pytest.raises(ValueError):
            validate_typed_mapping(criteria, field_name="parameters")

    def test_tagged_timestamps_are_restored(self, now):
        criteria = validate_typed_mapping(
            {
                "renewal_due": {
                    "type": "max",
                    "value": {"type": "timestamp", "value": now.isoformat()},
                },
                "signed_at": {"type": "timestamp", "value": now.isoformat()},
            },
            field_name="relevance_criteria",
            allow_constraints=True,
        )

        assert criteria == {"renewal_due": {"type": "max", "value": now}, "signed_at": now}

    def test_malformed_timestamp_tag(self):
        with pytest.raises(ValueError, match="not a valid timestamp"):
            validate_typed_mapping(
                {"send_at": {"type": "timestamp", "value": "next tuesday"}},
                field_name="parameters",
            )

    def test_dump_tags_timestamps(self, now):
        dumped = dump_typed_mapping({"send_at": now, "due": {"type": "max", "value": now}})

        assert dumped == {
            "send_at": {"type": "timestamp", "value": now.isoformat()},
            "due": {"type": "max", "value": {"type": "timestamp", "value": now.isoformat()}},
        }

    def test_unknown_constraint_type(self):
        with pytest.raises(ValueError, match="unknown constraint type"):
            validate_typed_mapping(
                {"dealStatus": {"type": "regex", "value": "open"}},
                field_name="relevance_criteria",
                allow_constraints=True,
            )


class TestScheduledAction:
    def test_dict_round_trip(self, make_action, make_result, now):
        action = make_action(
            parameters={"subject": "Congrats", "send_at": now},
            relevance_criteria={"dealStatus": "closed_won"},
            priority=UrgencyLevel.HIGH,
            scope=ActionScope.REAL_WORLD,
            trace_id="trace-1",
        )
        action.last_relevance_result = make_result(action)
        action.last_relevance_check = now

        restored = ScheduledAction.from_dict(action.to_dict())

        assert restored.id == action.id
        assert restored.priority == UrgencyLevel.HIGH
        assert restored.scope == ActionScope.REAL_WORLD
        assert restored.parameters["subject"] == "Congrats"
        assert restored.parameters["send_at"] == now
        assert restored.last_relevance_result is not None
        assert restored.last_relevance_result.id == action.last_relevance_result.id
        assert restored.execute_at == action.execute_at

    def test_from_row_decodes_jsonb_strings(self, make_action):
        action = make_action(parameters={"subject": "Hi"})
        row = action.to_dict()
        row["id"] = action.id
        row["parameters"] = json.dumps(row["parameters"])
        row["relevance_criteria"] = json.dumps({})
        row["execute_at"] = action.execute_at

        restored = ScheduledAction.from_row(row)

        assert restored.id == action.id
        assert restored.parameters == {"subject": "Hi"}

    def test_json_round_trip_keeps_timestamp_kinds(self, make_action, now):
        due = now + timedelta(days=3)
        action = make_action(
            parameters={"send_at": now},
            relevance_criteria={"renewal_due": {"type": "max", "value": due}},
        )

        restored = ScheduledAction.from_dict(json.loads(json.dumps(action.to_dict())))

        assert restored.parameters == {"send_at": now}
        assert restored.relevance_criteria == {"renewal_due": {"type": "max", "value": due}}

    def test_from_dict_validates_parameters(self, make_action):
        data = make_action().to_dict()
        data["parameters"] = {"bad": [1, 2]}
        with pytest.raises(ValueError, match="parameters"):
            ScheduledAction.from_dict(data)

    def test_retries_remaining(self, make_action):
        assert make_action(retry_attempts=1, max_retry_attempts=3).retries_remaining == 2


class TestContactContext:
    def test_staleness(self, make_context):
        context = make_context()
        context.retrieved_at = utcnow() - timedelta(minutes=10)

        assert context.is_stale(5)
        assert not context.is_stale(15)

    def test_round_trip(self, make_context):
        context = make_context(attributes={"tier": "gold", "renewal_date": utcnow()})
        restored = ContactContext.from_dict(context.to_dict())
        assert restored == context


class TestApprovalRequest:
    def test_expiry_boundary(self, make_action, make_result, now):
        action = make_action()
        request = UserApprovalRequest(
            action=action,
            relevance_result=make_result(action),
            reason="needs review",
            approver_id="ops",
            requested_at=now,
            expires_at=now + timedelta(minutes=60),
        )

        assert not request.is_expired(now + timedelta(minutes=59))
        assert request.is_expired(now + timedelta(minutes=60))

    def test_dict_round_trip_with_response(self, make_action, make_result, now):
        action = make_action()
        request = UserApprovalRequest(
            action=action,
            relevance_result=make_result(action),
            reason="needs review",
            approver_id="ops",
            requested_at=now,
            expires_at=now + timedelta(minutes=60),
            alternative_actions=["market_update"],
        )
        request.response = UserApprovalResponse(
            request_id=request.id,
            decision=ApprovalDecision.MODIFY,
            responder_id="alex",
            modified_parameters={"subject": "Updated"},
        )

        restored = UserApprovalRequest.from_dict(request.to_dict())

        assert restored.id == request.id
        assert restored.action_id == action.id
        assert restored.response is not None
        assert restored.response.decision == ApprovalDecision.MODIFY
        assert restored.response.modified_parameters == {"subject": "Updated"}
        assert restored.alternative_actions == ["market_update"]

    def test_summary_is_short(self, make_action, make_result, now):
        action = make_action()
        request = UserApprovalRequest(
            action=action,
            relevance_result=make_result(action, confidence=0.65),
            reason="low confidence",
            approver_id="ops",
            requested_at=now,
            expires_at=now + timedelta(minutes=60),
        )

        summary = request.summary()

        assert summary["request_id"] == str(request.id)
        assert summary["action_id"] == str(action.id)
        assert summary["confidence"] == 0.65
        assert uuid.UUID(summary["request_id"]) == request.id
