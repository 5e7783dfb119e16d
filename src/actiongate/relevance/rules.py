"""Deterministic rule-based relevance checker.

Evaluates an action's relevance criteria against a ContactContext with no
I/O. Each criterion ends up passed, failed or undetermined:

- Any failure makes the verdict definitively NOT_RELEVANT (confidence 1.0).
- All passing makes it definitively RELEVANT (confidence 1.0).
- Otherwise the check is inconclusive (UNKNOWN, confidence 0.0) and the
  undetermined criteria are handed to the semantic checker.

Well-known criterion keys map to ContactContext fields (matched
case-insensitively). Any other key is looked up in ``context.attributes``;
a key that is found nowhere fails rather than raising.
"""

from __future__ import annotations

import enum
import fnmatch
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from actiongate.models import ContactContext, RelevanceVerdict, utcnow

logger = logging.getLogger(__name__)


class CriterionOutcome(enum.StrEnum):
    PASSED = "passed"
    FAILED = "failed"
    UNDETERMINED = "undetermined"


def _days_since_last_interaction(context: ContactContext, now: datetime) -> float | None:
    if context.last_interaction_at is None:
        return None
    return (now - context.last_interaction_at).total_seconds() / 86400


# criterion key (lower-cased) -> (context reader, default constraint type)
_KNOWN_CRITERIA: dict[str, tuple[Callable[[ContactContext, datetime], Any], str]] = {
    "dealstatus": (lambda ctx, _now: ctx.deal_status, "exact"),
    "contactstatus": (lambda ctx, _now: ctx.contact_status, "exact"),
    "contactengagement": (lambda ctx, _now: ctx.engagement_level, "exact"),
    "lastinteractionage": (_days_since_last_interaction, "max"),
    "minsentiment": (lambda ctx, _now: ctx.sentiment_score, "min"),
}


@dataclass
class RuleCheckResult:
    """Outcome of evaluating every criterion of one action."""

    verdict: RelevanceVerdict
    confidence: float
    reason: str
    failed: list[str] = field(default_factory=list)
    undetermined: list[str] = field(default_factory=list)
    details: dict[str, str] = field(default_factory=dict)

    @property
    def definitive(self) -> bool:
        return self.verdict != RelevanceVerdict.UNKNOWN


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _ordered(actual: Any, expected: Any) -> tuple[Any, Any] | None:
    """Return a comparable (actual, expected) pair, or None if they are not comparable."""
    if isinstance(actual, datetime) and isinstance(expected, datetime):
        return actual, expected
    a, e = _as_number(actual), _as_number(expected)
    if a is None or e is None:
        return None
    return a, e


def _text(value: Any) -> str:
    return str(value).strip().casefold()


def compare(constraint_type: str, actual: Any, expected: Any) -> bool:
    """Apply one constraint to a context value."""
    if constraint_type == "exact":
        if isinstance(actual, bool) or isinstance(expected, bool):
            return actual is expected or _text(actual) == _text(expected)
        pair = _ordered(actual, expected)
        if pair is not None and not isinstance(actual, str):
            return pair[0] == pair[1]
        return _text(actual) == _text(expected)
    if constraint_type == "pattern":
        return fnmatch.fnmatchcase(_text(actual), _text(expected))
    if constraint_type == "any":
        options = {_text(option) for option in str(expected).split(",") if option.strip()}
        return _text(actual) in options
    if constraint_type in ("min", "max"):
        pair = _ordered(actual, expected)
        if pair is None:
            return False
        return pair[0] >= pair[1] if constraint_type == "min" else pair[0] <= pair[1]
    raise ValueError(f"Unknown constraint type: {constraint_type!r}")


class RuleBasedChecker:
    """Evaluates relevance criteria against a contact context."""

    checked_by = "rule_based_checker"

    def check(
        self,
        criteria: Mapping[str, Any],
        context: ContactContext,
        *,
        now: datetime | None = None,
    ) -> RuleCheckResult:
        now = now or utcnow()
        failed: list[str] = []
        undetermined: list[str] = []
        details: dict[str, str] = {}

        for key, expected in criteria.items():
            outcome, detail = self._evaluate(key, expected, context, now)
            details[key] = detail
            if outcome is CriterionOutcome.FAILED:
                failed.append(key)
            elif outcome is CriterionOutcome.UNDETERMINED:
                undetermined.append(key)

        if failed:
            reason = "Failed criteria: " + "; ".join(f"{k} ({details[k]})" for k in failed)
            logger.debug("Rule check failed: %s", reason)
            return RuleCheckResult(
                verdict=RelevanceVerdict.NOT_RELEVANT,
                confidence=1.0,
                reason=reason,
                failed=failed,
                undetermined=undetermined,
                details=details,
            )
        if undetermined:
            return RuleCheckResult(
                verdict=RelevanceVerdict.UNKNOWN,
                confidence=0.0,
                reason="Undetermined criteria: " + ", ".join(undetermined),
                undetermined=undetermined,
                details=details,
            )
        return RuleCheckResult(
            verdict=RelevanceVerdict.RELEVANT,
            confidence=1.0,
            reason="All relevance criteria passed",
            details=details,
        )

    def _evaluate(
        self,
        key: str,
        expected: Any,
        context: ContactContext,
        now: datetime,
    ) -> tuple[CriterionOutcome, str]:
        constraint_type: str | None = None
        if isinstance(expected, Mapping):
            constraint_type = expected.get("type")
            expected = expected.get("value")
            if constraint_type == "semantic":
                return CriterionOutcome.UNDETERMINED, "requires semantic judgement"

        known = _KNOWN_CRITERIA.get(key.lower())
        if known is not None:
            reader, default_type = known
            actual = reader(context, now)
            if actual is None:
                return CriterionOutcome.UNDETERMINED, "context value unavailable"
        elif key in context.attributes:
            actual = context.attributes[key]
            default_type = "exact"
        else:
            logger.warning("Unknown relevance criterion: %s", key)
            return CriterionOutcome.FAILED, "unknown criterion"

        constraint_type = constraint_type or default_type
        if compare(constraint_type, actual, expected):
            return CriterionOutcome.PASSED, f"{constraint_type} {expected!r} matched"
        return (
            CriterionOutcome.FAILED,
            f"{constraint_type} {expected!r} not met by {actual!r}",
        )
