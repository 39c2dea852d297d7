"""
Learning Pipeline — turns human feedback into rule confidence changes and
new rules.

Per feedback event:
1. Matching rules get +0.05 (approved), -0.10 (corrected) or -0.15
   (rejected), clamped to [0, 1]; below 0.3 they are deactivated.
2. A correction with text is stored, categorised, and compared with the
   user's unmatched corrections in the same category. Three or more
   similar corrections become a rule unless a near-identical rule exists.

run_batch() repeats step 2 for every user with unmatched corrections so a
missed event is picked up later.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import numpy as np

from src.core.autonomy.config import LearningConfig
from src.core.errors import ConflictSkip
from src.core.learning.classifier import (
    compute_intent_hash,
    detect_correction,
    first_n_chars,
    infer_category,
    shared_word_count,
    synthesize_rule_text,
    word_overlap,
)
from src.core.learning.graduation import GraduationTracker
from src.core.learning.models import (
    Correction,
    ErrorType,
    FeedbackResult,
    PatternResult,
    Rule,
    RuleSource,
    RuleUpdate,
)
from src.core.learning.store import LearningStore, clamp_confidence
from src.core.ledger.models import FeedbackType
from src.core.ledger.store import DecisionLedger
from src.core.memory.embeddings import cosine_similarity
from src.core.memory.preferences import PreferenceSource
from src.core.memory.service import MemoryService
from src.core.storage import utc_now

logger = logging.getLogger(__name__)


def feedback_delta(feedback: FeedbackType, config: LearningConfig) -> float:
    return {
        FeedbackType.APPROVED: config.approved_delta,
        FeedbackType.CORRECTED: config.corrected_delta,
        FeedbackType.REJECTED: config.rejected_delta,
    }[feedback]


def apply_feedback(rule: Rule, feedback: FeedbackType, config: Optional[LearningConfig] = None) -> RuleUpdate:
    """Pure confidence update for one rule."""
    config = config or LearningConfig()
    new_confidence = clamp_confidence(rule.confidence + feedback_delta(feedback, config))
    return RuleUpdate(
        rule_id=rule.id,
        old_confidence=rule.confidence,
        new_confidence=new_confidence,
        should_deactivate=new_confidence < config.deactivate_below,
    )


class LearningPipeline:
    """Feedback ingestion, pattern detection and rule maintenance."""

    def __init__(
        self,
        ledger: DecisionLedger,
        store: LearningStore,
        memory: MemoryService,
        graduation: Optional[GraduationTracker] = None,
        config: Optional[LearningConfig] = None,
    ) -> None:
        self._ledger = ledger
        self._store = store
        self._memory = memory
        self._graduation = graduation
        self._config = config or LearningConfig()

    @property
    def store(self) -> LearningStore:
        return self._store

    # ── Rule confidence ──────────────────────────────────────────

    def rule_matches(self, rule: Rule, reasoning: str, reasoning_embedding: Optional[np.ndarray]) -> bool:
        """Semantic match when both sides are embedded, else prefix containment."""
        if reasoning_embedding is not None and rule.embedding is not None:
            return cosine_similarity(rule.embedding, reasoning_embedding) > self._config.rule_match_threshold
        prefix = first_n_chars(rule.rule_text, self._config.rule_prefix_chars)
        return bool(prefix) and prefix in reasoning.lower()

    def matching_rules(self, user_id: str, reasoning: str) -> List[Rule]:
        if not reasoning:
            return []
        embedding = self._memory.embed(reasoning)
        return [
            rule for rule in self._store.list_rules(user_id, active_only=True)
            if self.rule_matches(rule, reasoning, embedding)
        ]

    def update_rule_confidence(self, user_id: str, reasoning: str, feedback: FeedbackType) -> List[RuleUpdate]:
        updates: List[RuleUpdate] = []
        for rule in self.matching_rules(user_id, reasoning):
            update = apply_feedback(rule, feedback, self._config)
            self._store.update_rule(
                rule.id,
                update.new_confidence,
                active=not update.should_deactivate,
                applied=True,
                rejected=feedback == FeedbackType.REJECTED,
                reinforced=feedback == FeedbackType.APPROVED,
            )
            if update.should_deactivate:
                logger.info(
                    "Rule %s deactivated for user %s (confidence %.2f→%.2f)",
                    rule.id, user_id, update.old_confidence, update.new_confidence,
                )
            updates.append(update)
        return updates

    # ── Corrections and patterns ─────────────────────────────────

    def record_correction(
        self,
        user_id: str,
        correction_text: str,
        original_action: str = "",
        decision_id: Optional[str] = None,
    ) -> Correction:
        correction = Correction(
            user_id=user_id,
            decision_id=decision_id,
            original_action=original_action,
            correction_text=correction_text.strip(),
            category=infer_category(correction_text),
            embedding=self._memory.embed(correction_text),
        )
        return self._store.add_correction(correction)

    def is_similar(self, a: Correction, b: Correction) -> bool:
        if a.embedding is not None and b.embedding is not None:
            return cosine_similarity(a.embedding, b.embedding) > self._config.pattern_similarity_threshold
        return word_overlap(a.correction_text, b.correction_text) > self._config.pattern_overlap_threshold

    def find_similar_corrections(self, correction: Correction) -> List[Correction]:
        """The correction plus unmatched same-category corrections similar to it."""
        candidates = self._store.unmatched_corrections(
            correction.user_id, correction.category, self._config.pattern_scan_limit,
        )
        cluster = [correction]
        for other in candidates:
            if other.id == correction.id:
                continue
            if self.is_similar(correction, other):
                cluster.append(other)
        return cluster

    def find_conflict(
        self, user_id: str, category: str, rule_text: str, embedding: Optional[np.ndarray]
    ) -> Optional[Tuple[Rule, float]]:
        """Most similar existing active rule above the conflict search threshold."""
        best: Optional[Tuple[Rule, float]] = None
        if embedding is not None:
            outcome = self._memory.similar_rules(
                user_id, embedding,
                threshold=self._config.conflict_search_threshold,
                limit=self._config.conflict_search_limit,
            )
            for hit in outcome.results:
                if hit.method == "vector" and (best is None or hit.similarity > best[1]):
                    best = (hit.item, hit.similarity)
            return best
        for rule in self._store.list_rules(user_id, active_only=True, category=category):
            score = word_overlap(rule.rule_text, rule_text)
            if score > self._config.conflict_search_threshold and (best is None or score > best[1]):
                best = (rule, score)
        return best

    def check_conflict(self, user_id: str, category: str, rule_text: str, embedding: Optional[np.ndarray]) -> None:
        """Raise ConflictSkip when an existing rule makes the candidate redundant."""
        conflict = self.find_conflict(user_id, category, rule_text, embedding)
        if conflict is None:
            return
        rule, similarity = conflict
        if similarity > self._config.conflict_skip_threshold:
            raise ConflictSkip(rule.id, similarity)
        logger.info(
            "Moderate conflict with rule %s (similarity=%.2f) for user %s; creating anyway",
            rule.id, similarity, user_id,
        )

    def detect_pattern(self, correction: Correction) -> PatternResult:
        cluster = self.find_similar_corrections(correction)
        if len(cluster) < self._config.pattern_min_corrections:
            return PatternResult(
                status="below_threshold",
                category=correction.category,
                similar_count=len(cluster),
            )

        ids = [c.id for c in cluster]
        rule_text = synthesize_rule_text(correction.category, [c.correction_text for c in cluster])
        embedding = self._memory.embed(rule_text)
        try:
            self.check_conflict(correction.user_id, correction.category, rule_text, embedding)
        except ConflictSkip as skip:
            self._store.mark_pattern_matched(ids)
            logger.info("Rule candidate for user %s skipped: %s", correction.user_id, skip)
            return PatternResult(
                status="conflict_skipped",
                category=correction.category,
                similar_count=len(cluster),
                conflicting_rule_id=skip.existing_rule_id,
                conflict_similarity=skip.similarity,
                correction_ids=ids,
            )

        rule = self._store.add_rule(Rule(
            user_id=correction.user_id,
            rule_text=rule_text,
            category=correction.category,
            confidence=self._config.pattern_rule_confidence,
            source=RuleSource.CORRECTION_PATTERN,
            derived_from=ids,
            embedding=embedding,
        ))
        self._store.mark_pattern_matched(ids)
        return PatternResult(
            status="created",
            category=correction.category,
            similar_count=len(cluster),
            rule=rule,
            correction_ids=ids,
        )

    # ── Entry points ─────────────────────────────────────────────

    def process_feedback(
        self,
        decision_id: str,
        feedback: FeedbackType,
        correction_text: Optional[str] = None,
    ) -> FeedbackResult:
        """Apply one human feedback event.

        Raises:
            KeyError: If the decision does not exist.
        """
        decision = self._ledger.set_feedback(decision_id, feedback, correction_text)
        if decision is None:
            raise KeyError(f"No decision with id {decision_id}")

        result = FeedbackResult(decision_id=decision_id, feedback=feedback.value)
        result.rule_updates = self.update_rule_confidence(decision.user_id, decision.reasoning, feedback)

        if feedback == FeedbackType.CORRECTED and correction_text and correction_text.strip():
            result.correction = self.record_correction(
                decision.user_id,
                correction_text,
                original_action=f"{decision.action_name}: {decision.reasoning}".strip(": "),
                decision_id=decision.id,
            )
            result.pattern = self.detect_pattern(result.correction)

        if self._graduation is not None:
            result.graduation = self._graduation.record_feedback(
                decision.user_id, decision.category, feedback,
            )

        logger.info(
            "Feedback %s on decision %s: %d rule(s) updated",
            feedback.value, decision_id, len(result.rule_updates),
        )
        return result

    def process_user_message(
        self, user_id: str, message: str, decision_id: Optional[str] = None
    ) -> Optional[PatternResult]:
        """Store an inline correction spotted in a chat message."""
        text = detect_correction(message)
        if text is None:
            return None
        correction = self.record_correction(user_id, text, decision_id=decision_id)
        return self.detect_pattern(correction)

    def process_message_feedback(self, user_id: str, message_text: str, positive: bool) -> List[RuleUpdate]:
        """Thumbs up/down on an assistant message nudges rules that shaped it."""
        delta = (
            self._config.message_feedback_positive if positive
            else self._config.message_feedback_negative
        )
        updates: List[RuleUpdate] = []
        for rule in self._store.list_rules(user_id, active_only=True):
            if shared_word_count(rule.rule_text, message_text) < self._config.message_feedback_min_words:
                continue
            new_confidence = clamp_confidence(rule.confidence + delta)
            deactivate = new_confidence < self._config.deactivate_below
            self._store.update_rule(
                rule.id, new_confidence, active=not deactivate,
                applied=True, rejected=not positive, reinforced=positive,
            )
            updates.append(RuleUpdate(rule.id, rule.confidence, new_confidence, deactivate))
        return updates

    def classify_and_learn(
        self,
        user_id: str,
        decision_id: Optional[str],
        error_type: ErrorType,
        detail: str,
    ) -> Dict[str, Optional[str]]:
        """Learn from a classified assistant error.

        Reasoning errors and tool misuse become low-confidence rules;
        factual errors and missing context become preferences.
        """
        category = infer_category(detail)
        if error_type in (ErrorType.REASONING_ERROR, ErrorType.TOOL_MISUSE):
            prefix = "Reasoning" if error_type == ErrorType.REASONING_ERROR else "Tool use"
            rule_text = f"{prefix} guidance: {detail.strip()}"
            embedding = self._memory.embed(rule_text)
            try:
                self.check_conflict(user_id, category, rule_text, embedding)
            except ConflictSkip as skip:
                logger.info("Error-classification rule skipped for %s: %s", user_id, skip)
                return {"kind": "rule", "status": "conflict_skipped", "id": skip.existing_rule_id}
            rule = self._store.add_rule(Rule(
                user_id=user_id,
                rule_text=rule_text,
                category=category,
                confidence=self._config.error_rule_confidence,
                source=RuleSource.ERROR_CLASSIFICATION,
                derived_from=[decision_id] if decision_id else [],
                embedding=embedding,
            ))
            return {"kind": "rule", "status": "created", "id": rule.id}

        key = "fact" if error_type == ErrorType.FACTUAL_ERROR else "context"
        pref = self._memory.remember_preference(
            user_id,
            category,
            f"{key}:{compute_intent_hash(detail)[:8]}",
            detail.strip(),
            source=PreferenceSource.ERROR_CLASSIFICATION,
            confidence=0.8,
        )
        return {"kind": "preference", "status": "created", "id": f"{pref.category}.{pref.key}"}

    def run_batch(self, user_id: Optional[str] = None) -> Dict[str, int]:
        """Re-run pattern detection over unmatched corrections."""
        users = [user_id] if user_id else self._store.users_with_unmatched_corrections()
        created = skipped = 0
        for uid in users:
            seen: set = set()
            for correction in self._store.unmatched_corrections(uid, limit=self._config.pattern_scan_limit):
                if correction.id in seen:
                    continue
                result = self.detect_pattern(correction)
                seen.update(result.correction_ids)
                if result.status == "created":
                    created += 1
                elif result.status == "conflict_skipped":
                    skipped += 1
        return {"users": len(users), "rules_created": created, "conflicts_skipped": skipped}

    def decay_stale_rules(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Lower confidence of rules nobody has touched for a while."""
        now = now or utc_now()
        cutoff = now - timedelta(days=self._config.decay_after_days)
        decayed = deactivated = 0
        for rule in self._store.stale_rules(cutoff):
            new_confidence = clamp_confidence(rule.confidence - self._config.decay_amount)
            active = new_confidence >= self._config.deactivate_below
            self._store.decay_rule(rule.id, new_confidence, active)
            decayed += 1
            if not active:
                deactivated += 1
        if decayed:
            logger.info("Rule decay: %d decayed, %d deactivated", decayed, deactivated)
        return {"decayed": decayed, "deactivated": deactivated}
