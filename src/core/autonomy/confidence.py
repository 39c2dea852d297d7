"""
Confidence Estimator — six-factor trust score for a proposed action.

Each factor falls back to a neutral default when evidence is thin, so a
new user or a new action starts at a moderate score instead of zero.
Factor values and the composite are rounded to 3 decimals.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Dict, Optional

import numpy as np

from src.core.autonomy.config import ConfidenceConfig, ConfidenceWeights
from src.core.ledger.models import FeedbackType, OutcomeType
from src.core.ledger.store import DecisionLedger
from src.core.memory.service import MemoryService

logger = logging.getLogger(__name__)

FACTOR_NAMES = (
    "historical_accuracy",
    "source_quality",
    "precedent_alignment",
    "rule_alignment",
    "golden_alignment",
    "outcome_tracking",
)

DEFAULT_WEIGHTS = ConfidenceWeights()


@dataclass(frozen=True)
class ConfidenceFactors:
    """The six factors plus their weighted composite."""
    historical_accuracy: float
    source_quality: float
    precedent_alignment: float
    rule_alignment: float
    golden_alignment: float
    outcome_tracking: float
    composite: float

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def compute_composite(factors: Dict[str, float], weights: Optional[ConfidenceWeights] = None) -> float:
    """Weighted sum of the six factors, clamped to [0, 1] and rounded."""
    w = (weights or DEFAULT_WEIGHTS).model_dump()
    total = sum(w[name] * float(factors[name]) for name in FACTOR_NAMES)
    return round(min(1.0, max(0.0, total)), 3)


def build_factors(values: Dict[str, float], weights: Optional[ConfidenceWeights] = None) -> ConfidenceFactors:
    rounded = {name: round(min(1.0, max(0.0, float(values[name]))), 3) for name in FACTOR_NAMES}
    return ConfidenceFactors(composite=compute_composite(rounded, weights), **rounded)


@dataclass
class ConfidenceContext:
    """What the estimator knows about one proposed action."""
    user_id: str
    action_name: str
    category: str
    topic: Optional[str] = None
    embedding: Optional[np.ndarray] = None
    intent_hash: Optional[str] = None


class ConfidenceEstimator:
    """Computes ConfidenceFactors from ledger and memory evidence."""

    def __init__(
        self,
        ledger: DecisionLedger,
        memory: MemoryService,
        config: Optional[ConfidenceConfig] = None,
    ) -> None:
        self._ledger = ledger
        self._memory = memory
        self._config = config or ConfidenceConfig()

    # ── Individual factors ───────────────────────────────────────

    def historical_accuracy(self, user_id: str, action_name: str) -> float:
        genome = self._ledger.get_genome(user_id, action_name)
        if genome is None or genome.total_executions < self._config.min_executions:
            return self._config.defaults.historical_accuracy
        return genome.ema_success_rate

    def source_quality(self, category: str) -> float:
        return self._config.source_quality.get(category, self._config.defaults.source_quality)

    def precedent_alignment(self, user_id: str, action_name: str, embedding: Optional[np.ndarray]) -> float:
        outcome = self._memory.similar_decisions(
            user_id, embedding, action_name=action_name, limit=self._config.precedent_window,
        )
        feedback = [d.feedback for d in outcome.items if d.feedback is not None]
        if len(feedback) < self._config.min_feedback_samples:
            return self._config.defaults.precedent_alignment
        approved = sum(1 for f in feedback if f == FeedbackType.APPROVED)
        return approved / len(feedback)

    def rule_alignment(self, user_id: str, topic: Optional[str], embedding: Optional[np.ndarray]) -> float:
        outcome = self._memory.similar_rules(
            user_id, embedding, category=topic, limit=self._config.max_rules,
        )
        rules = outcome.items[: self._config.max_rules]
        if not rules:
            return self._config.defaults.rule_alignment
        return sum(r.confidence for r in rules) / len(rules)

    def golden_alignment(self, user_id: str, action_name: str, intent_hash: Optional[str]) -> float:
        if not intent_hash:
            return self._config.defaults.golden_alignment
        trajectory = self._ledger.golden_trajectory(user_id, intent_hash)
        if trajectory is not None and action_name in trajectory.actions:
            return 1.0
        return self._config.defaults.golden_alignment

    def outcome_tracking(self, user_id: str, action_name: str) -> float:
        outcomes = self._ledger.recent_outcomes(user_id, action_name, self._config.outcome_window)
        if len(outcomes) < self._config.min_outcomes:
            return self._config.defaults.outcome_tracking
        successes = sum(1 for o in outcomes if o.outcome_type == OutcomeType.SUCCESS)
        return successes / len(outcomes)

    # ── Composite ────────────────────────────────────────────────

    def _safe(self, name: str, fn, *args) -> float:
        try:
            return float(fn(*args))
        except Exception as exc:
            logger.warning("Confidence factor %s failed, using default: %s", name, exc)
            return getattr(self._config.defaults, name)

    def estimate(self, ctx: ConfidenceContext) -> ConfidenceFactors:
        values = {
            "historical_accuracy": self._safe(
                "historical_accuracy", self.historical_accuracy, ctx.user_id, ctx.action_name,
            ),
            "source_quality": self._safe("source_quality", self.source_quality, ctx.category),
            "precedent_alignment": self._safe(
                "precedent_alignment", self.precedent_alignment, ctx.user_id, ctx.action_name, ctx.embedding,
            ),
            "rule_alignment": self._safe("rule_alignment", self.rule_alignment, ctx.user_id, ctx.topic, ctx.embedding),
            "golden_alignment": self._safe(
                "golden_alignment", self.golden_alignment, ctx.user_id, ctx.action_name, ctx.intent_hash,
            ),
            "outcome_tracking": self._safe("outcome_tracking", self.outcome_tracking, ctx.user_id, ctx.action_name),
        }
        factors = build_factors(values, self._config.weights)
        logger.debug("Confidence for %s (%s): %.3f", ctx.action_name, ctx.user_id, factors.composite)
        return factors
