"""Relevance checking: rule-based fast path, semantic fallback, alternatives."""

from actiongate.relevance.alternatives import ALTERNATIVE_ACTIONS, suggest_alternatives
from actiongate.relevance.rules import RuleBasedChecker, RuleCheckResult
from actiongate.relevance.semantic import (
    HttpSemanticScorer,
    ReviewScore,
    SemanticRelevanceChecker,
    SemanticScore,
    SemanticScorer,
)
from actiongate.relevance.validator import RelevanceValidator

__all__ = [
    "ALTERNATIVE_ACTIONS",
    "HttpSemanticScorer",
    "RelevanceValidator",
    "ReviewScore",
    "RuleBasedChecker",
    "RuleCheckResult",
    "SemanticRelevanceChecker",
    "SemanticScore",
    "SemanticScorer",
    "suggest_alternatives",
]
