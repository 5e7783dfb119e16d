"""Alternative-action suggestions for actions that are no longer relevant."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from actiongate.models import ActionRelevanceResult, ScheduledAction, utcnow

# action_type -> (alternative action_type, description)
ALTERNATIVE_ACTIONS: dict[str, tuple[str, str]] = {
    "congrats_email": ("follow_up_email", "Follow up on recent activity"),
    "appointment_reminder": ("reschedule_request", "Request to reschedule appointment"),
    "property_recommendation": ("market_update", "Send market update instead"),
}

ALTERNATIVE_DELAY = timedelta(hours=1)


def build_alternative(
    original: ScheduledAction,
    action_type: str,
    description: str,
    result: ActionRelevanceResult,
    *,
    now: datetime | None = None,
) -> ScheduledAction:
    """Derive a fresh pending action from *original*.

    The criteria that made the original irrelevant are dropped; the rest are
    carried over together with the parameters, contact and scope.
    """
    now = now or utcnow()
    criteria = {
        key: value
        for key, value in original.relevance_criteria.items()
        if key not in result.failed_criteria
    }
    return ScheduledAction(
        action_type=action_type,
        description=description,
        contact_id=original.contact_id,
        organization_id=original.organization_id,
        scheduled_by_agent_id=original.scheduled_by_agent_id,
        execute_at=now + ALTERNATIVE_DELAY,
        scheduled_at=now,
        parameters=dict(original.parameters),
        relevance_criteria=criteria,
        priority=original.priority,
        max_retry_attempts=original.max_retry_attempts,
        scope=original.scope,
        trace_id=original.trace_id or str(uuid.uuid4()),
        justification=f"Alternative to {original.action_type} action {original.id}",
    )


def suggest_alternatives(
    original: ScheduledAction,
    result: ActionRelevanceResult,
    *,
    now: datetime | None = None,
) -> list[ScheduledAction]:
    """Alternatives for *original*, semantic suggestions first, then the static table."""
    suggestions: list[tuple[str, str]] = []
    for action_type in result.alternative_actions:
        action_type = action_type.strip()
        if action_type and action_type != original.action_type:
            suggestions.append((action_type, f"Suggested alternative to {original.action_type}"))
    static = ALTERNATIVE_ACTIONS.get(original.action_type.lower())
    if static is not None:
        suggestions.append(static)

    seen: set[str] = set()
    alternatives: list[ScheduledAction] = []
    for action_type, description in suggestions:
        if action_type in seen:
            continue
        seen.add(action_type)
        alternatives.append(build_alternative(original, action_type, description, result, now=now))
    return alternatives
