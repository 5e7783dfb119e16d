"""Semantic relevance checker backed by an external language-model scorer.

The checker owns the per-call timeout. Any scorer failure, from a timeout
to a malformed response or an unexpected exception, degrades to an
``unknown`` verdict so the validator can apply the configured
default-on-uncertainty policy; none escape as exceptions. Cancellation of
the surrounding task is not swallowed.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from actiongate.config import ActionRelevanceConfig, SemanticConfig
from actiongate.core.metrics import GateMetrics, gate_metrics
from actiongate.core.telemetry import get_tracer, tag_action_span
from actiongate.errors import SemanticResponseError
from actiongate.models import (
    ActionRelevanceResult,
    ContactContext,
    RelevanceVerdict,
    ScheduledAction,
    ValidationMethod,
    dump_typed_mapping,
)

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "You verify whether a previously scheduled CRM action still makes sense "
    "for a contact right now. Answer strictly in JSON."
)

_RELEVANCE_PROMPT = """\
Analyze whether the following scheduled action is still relevant given the current contact context.

SCHEDULED ACTION:
- Description: {description}
- Parameters: {parameters}
- Conditions that could not be checked mechanically: {criteria}

CURRENT CONTACT CONTEXT:
{context}

Respond in JSON format:
{{"isRelevant": true/false, "confidenceScore": 0.0-1.0, "reason": "explanation",
"recommendedAction": "proceed/reschedule/modify/cancel", "alternativeActions": ["action_type"]}}"""

_REVIEW_PROMPT = """\
An automated relevance check approved the following action with confidence {confidence:.2f}.
Decide whether a human should review it before it is executed.

ACTION:
- Description: {description}
- Parameters: {parameters}

CURRENT CONTACT CONTEXT:
{context}

Respond in JSON format:
{{"requiresReview": true/false, "reason": "explanation"}}"""


@dataclass
class SemanticScore:
    """A scorer's verdict on one action."""

    relevant: bool
    confidence: float
    rationale: str
    alternatives: list[str] = field(default_factory=list)
    recommended_action: str | None = None


@dataclass
class ReviewScore:
    required: bool
    rationale: str


class SemanticScorer(Protocol):
    """External generative-language scorer."""

    async def score(
        self,
        description: str,
        parameters: Mapping[str, Any],
        context: ContactContext,
        *,
        criteria: Mapping[str, Any],
        deadline: float,
    ) -> SemanticScore: ...

    async def review(
        self,
        description: str,
        parameters: Mapping[str, Any],
        context: ContactContext,
        *,
        confidence: float,
        deadline: float,
    ) -> ReviewScore: ...


# ---------------------------------------------------------------------------
# HTTP scorer
# ---------------------------------------------------------------------------


def _parse_content(payload: Any) -> dict[str, Any]:
    """Extract the JSON object answer from a chat-completions payload."""
    try:
        content = payload["choices"][0]["message"]["content"]
        parsed = json.loads(content)
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        raise SemanticResponseError(f"Unexpected scorer payload: {exc}") from exc
    if not isinstance(parsed, dict):
        raise SemanticResponseError("Scorer answer is not a JSON object")
    return parsed


def parse_semantic_score(answer: Mapping[str, Any]) -> SemanticScore:
    """Validate a decoded relevance answer."""
    relevant = answer.get("isRelevant")
    confidence = answer.get("confidenceScore")
    if not isinstance(relevant, bool):
        raise SemanticResponseError("isRelevant missing or not a boolean")
    if isinstance(confidence, bool) or not isinstance(confidence, int | float):
        raise SemanticResponseError("confidenceScore missing or not a number")
    if not 0.0 <= float(confidence) <= 1.0:
        raise SemanticResponseError(f"confidenceScore out of range: {confidence}")
    alternatives = answer.get("alternativeActions") or []
    if not isinstance(alternatives, list):
        raise SemanticResponseError("alternativeActions must be a list")
    return SemanticScore(
        relevant=relevant,
        confidence=float(confidence),
        rationale=str(answer.get("reason") or "semantic verdict"),
        alternatives=[str(a) for a in alternatives if a],
        recommended_action=answer.get("recommendedAction"),
    )


class HttpSemanticScorer:
    """Chat-completions style scorer over httpx."""

    def __init__(
        self,
        config: SemanticConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _complete(self, prompt: str, deadline: float) -> dict[str, Any]:
        headers: dict[str, str] = {}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        response = await self._http_client.post(
            self._config.endpoint,
            json={
                "model": self._config.model,
                "messages": [
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                "response_format": {"type": "json_object"},
                "temperature": 0,
            },
            headers=headers,
            timeout=deadline,
        )
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as exc:
            raise SemanticResponseError("Scorer returned invalid JSON") from exc
        return _parse_content(payload)

    async def score(
        self,
        description: str,
        parameters: Mapping[str, Any],
        context: ContactContext,
        *,
        criteria: Mapping[str, Any],
        deadline: float,
    ) -> SemanticScore:
        prompt = _RELEVANCE_PROMPT.format(
            description=description,
            parameters=json.dumps(dump_typed_mapping(parameters)),
            criteria=json.dumps(dump_typed_mapping(criteria)),
            context=json.dumps(context.to_dict(), indent=2),
        )
        return parse_semantic_score(await self._complete(prompt, deadline))

    async def review(
        self,
        description: str,
        parameters: Mapping[str, Any],
        context: ContactContext,
        *,
        confidence: float,
        deadline: float,
    ) -> ReviewScore:
        prompt = _REVIEW_PROMPT.format(
            confidence=confidence,
            description=description,
            parameters=json.dumps(dump_typed_mapping(parameters)),
            context=json.dumps(context.to_dict(), indent=2),
        )
        answer = await self._complete(prompt, deadline)
        required = answer.get("requiresReview")
        if not isinstance(required, bool):
            raise SemanticResponseError("requiresReview missing or not a boolean")
        return ReviewScore(required=required, rationale=str(answer.get("reason") or ""))


# ---------------------------------------------------------------------------
# Checker
# ---------------------------------------------------------------------------


class SemanticRelevanceChecker:
    """Wraps a SemanticScorer with timeout, error mapping and confidence floors."""

    checked_by = "semantic_checker"

    def __init__(self, scorer: SemanticScorer, metrics: GateMetrics = gate_metrics) -> None:
        self._scorer = scorer
        self._metrics = metrics

    def _unknown(
        self, action: ScheduledAction, reason: str, trace_id: str | None
    ) -> ActionRelevanceResult:
        self._metrics.record_semantic_check(RelevanceVerdict.UNKNOWN.value)
        return ActionRelevanceResult(
            action_id=action.id,
            verdict=RelevanceVerdict.UNKNOWN,
            confidence=0.0,
            reason=reason,
            method=ValidationMethod.SEMANTIC,
            checked_by=self.checked_by,
            trace_id=trace_id,
        )

    async def check(
        self,
        action: ScheduledAction,
        context: ContactContext,
        policy: ActionRelevanceConfig,
        *,
        criteria: Mapping[str, Any] | None = None,
        trace_id: str | None = None,
    ) -> ActionRelevanceResult:
        """Score *action* against *context*; never raises for scorer failures."""
        timeout = policy.check_timeout_seconds
        tracer = get_tracer()
        with tracer.start_as_current_span("actiongate.semantic_check") as span:
            tag_action_span(span, action)
            try:
                score = await asyncio.wait_for(
                    self._scorer.score(
                        action.description,
                        action.parameters,
                        context,
                        criteria=criteria if criteria is not None else action.relevance_criteria,
                        deadline=timeout,
                    ),
                    timeout=timeout,
                )
            except TimeoutError:
                logger.warning(
                    "Semantic check timed out after %.1fs for action %s", timeout, action.id
                )
                return self._unknown(
                    action, f"semantic check timed out after {timeout:g}s", trace_id
                )
            except httpx.HTTPError as exc:
                logger.warning("Semantic scorer unavailable for action %s: %s", action.id, exc)
                return self._unknown(action, f"semantic scorer unavailable: {exc}", trace_id)
            except SemanticResponseError as exc:
                logger.warning("Malformed semantic response for action %s: %s", action.id, exc)
                return self._unknown(action, f"malformed semantic response: {exc}", trace_id)
            except Exception as exc:
                logger.warning(
                    "Semantic check failed for action %s", action.id, exc_info=True
                )
                return self._unknown(action, f"semantic scorer unavailable: {exc!r}", trace_id)

            span.set_attribute("semantic.confidence", score.confidence)
            floor = policy.confidence_floor(action.scope)
            if score.confidence < floor:
                return self._unknown(
                    action,
                    f"semantic confidence {score.confidence:.2f} below floor {floor:.2f} "
                    f"for scope {action.scope.value}: {score.rationale}",
                    trace_id,
                )

        verdict = RelevanceVerdict.RELEVANT if score.relevant else RelevanceVerdict.NOT_RELEVANT
        self._metrics.record_semantic_check(verdict.value)
        return ActionRelevanceResult(
            action_id=action.id,
            verdict=verdict,
            confidence=score.confidence,
            reason=score.rationale,
            method=ValidationMethod.SEMANTIC,
            checked_by=self.checked_by,
            alternative_actions=list(score.alternatives),
            recommended_action=score.recommended_action,
            trace_id=trace_id,
        )

    async def review_required(
        self,
        action: ScheduledAction,
        result: ActionRelevanceResult,
        context: ContactContext | None,
        policy: ActionRelevanceConfig,
    ) -> bool | None:
        """Ask the scorer whether a human should review *action*.

        Returns None when the scorer cannot answer, so the caller can fall
        back to the risk-based rules.
        """
        if context is None:
            return None
        timeout = policy.check_timeout_seconds
        try:
            review = await asyncio.wait_for(
                self._scorer.review(
                    action.description,
                    action.parameters,
                    context,
                    confidence=result.confidence,
                    deadline=timeout,
                ),
                timeout=timeout,
            )
        except (TimeoutError, httpx.HTTPError, SemanticResponseError) as exc:
            logger.warning("Review decision unavailable for action %s: %s", action.id, exc)
            return None
        except Exception:
            logger.warning("Review decision failed for action %s", action.id, exc_info=True)
            return None
        logger.debug("Review decision for action %s: %s", action.id, review.rationale)
        return review.required
