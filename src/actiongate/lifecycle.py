"""Scheduled-action lifecycle: the transition table and the pure transition function.

Transitions never mutate an action in place. :func:`transition` validates the
move against ``_VALID_TRANSITIONS`` and returns a new ScheduledAction; the
caller persists it with a compare-and-set on the previous status.
"""

from __future__ import annotations

import dataclasses
from typing import Any

from actiongate.errors import InvalidTransitionError
from actiongate.models import ScheduledAction, ScheduledActionStatus

RETRY_EXHAUSTED_REASON = "retry attempts exhausted"

_S = ScheduledActionStatus

# Valid status transitions: source -> set of valid targets
_VALID_TRANSITIONS: dict[ScheduledActionStatus, frozenset[ScheduledActionStatus]] = {
    _S.PENDING: frozenset(
        {
            _S.RELEVANCE_CHECK_PASSED,
            _S.RELEVANCE_CHECK_FAILED,
            _S.SUPPRESSED,
            _S.EXPIRED,
        }
    ),
    _S.RELEVANCE_CHECK_PASSED: frozenset(
        {
            _S.RELEVANCE_CHECK_PASSED,
            _S.RELEVANCE_CHECK_FAILED,
            _S.EXECUTING,
            _S.PENDING,
            _S.SUPPRESSED,
            _S.EXPIRED,
        }
    ),
    _S.RELEVANCE_CHECK_FAILED: frozenset({_S.SUPPRESSED, _S.EXPIRED}),
    _S.EXECUTING: frozenset({_S.COMPLETED, _S.FAILED, _S.PENDING, _S.SUPPRESSED}),
    _S.COMPLETED: frozenset(),
    _S.SUPPRESSED: frozenset(),
    _S.FAILED: frozenset(),
    _S.EXPIRED: frozenset(),
}


def validate_transition(current: ScheduledActionStatus, target: ScheduledActionStatus) -> None:
    """Validate that a status transition is allowed.

    Raises InvalidTransitionError if the transition is not in the valid set.
    """
    valid = _VALID_TRANSITIONS.get(current, frozenset())
    if target not in valid:
        raise InvalidTransitionError(
            f"Cannot transition from '{current.value}' to '{target.value}'"
        )


def transition(
    action: ScheduledAction,
    target: ScheduledActionStatus,
    **changes: Any,
) -> ScheduledAction:
    """Return a copy of *action* moved to *target* with *changes* applied."""
    validate_transition(action.status, target)
    return dataclasses.replace(action, status=target, **changes)


def with_retry(action: ScheduledAction, **changes: Any) -> ScheduledAction:
    """Re-queue *action* as pending, consuming one retry attempt.

    When the attempt would exceed ``max_retry_attempts`` the action is
    suppressed with :data:`RETRY_EXHAUSTED_REASON` instead. The counter never
    exceeds the maximum.
    """
    attempts = action.retry_attempts + 1
    if attempts > action.max_retry_attempts:
        return transition(
            action,
            ScheduledActionStatus.SUPPRESSED,
            suppression_reason=RETRY_EXHAUSTED_REASON,
            pending_request_id=None,
        )
    return transition(
        action,
        ScheduledActionStatus.PENDING,
        retry_attempts=attempts,
        **changes,
    )
