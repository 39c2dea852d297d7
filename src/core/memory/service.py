"""
Semantic Memory Service — "what did we decide before" and "what does this
user prefer".

Each lookup builds a SearchQuery and hands it to search_with_fallback()
with a vector strategy over embedded rows and a category/recency fallback.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

import numpy as np

from src.core.autonomy.config import MemoryConfig
from src.core.ledger.models import Decision, DecisionType, Verdict
from src.core.ledger.store import DecisionLedger
from src.core.learning.models import Rule
from src.core.learning.store import LearningStore

from .embeddings import Embedder, decision_text, preference_text, safe_embed
from .preferences import Preference, PreferenceSource, PreferenceStore
from .search import (
    FallbackSearch,
    SearchOutcome,
    SearchQuery,
    VectorSearch,
    search_with_fallback,
)

logger = logging.getLogger(__name__)


class MemoryService:
    """Similarity search over decisions, rules and preferences."""

    def __init__(
        self,
        ledger: DecisionLedger,
        learning_store: LearningStore,
        preferences: PreferenceStore,
        embedder: Optional[Embedder] = None,
        config: Optional[MemoryConfig] = None,
    ) -> None:
        self._ledger = ledger
        self._learning = learning_store
        self._preferences = preferences
        self._embedder = embedder
        self._config = config or MemoryConfig()

        self._decision_vector = VectorSearch(
            lambda q: self._ledger.embedded_decisions(q.user_id, with_feedback=True)
        )
        self._decision_fallback = FallbackSearch(
            lambda q: self._ledger.decisions_with_feedback(q.user_id, q.action_name, q.limit)
        )
        self._rule_vector = VectorSearch(
            lambda q: self._learning.embedded_active_rules(q.user_id)
        )
        self._rule_fallback = FallbackSearch(self._recent_rules)
        self._pref_vector = VectorSearch(lambda q: self._preferences.embedded(q.user_id))
        self._pref_fallback = FallbackSearch(
            lambda q: self._preferences.list(q.user_id, q.category, q.limit)
        )

    @property
    def embedder(self) -> Optional[Embedder]:
        return self._embedder

    def embed(self, text: str) -> Optional[np.ndarray]:
        return safe_embed(self._embedder, text)

    def embed_decision(self, action_name: str, reasoning: str, parameters: dict) -> Optional[np.ndarray]:
        return self.embed(
            decision_text(action_name, reasoning, parameters, self._config.decision_input_chars)
        )

    def _recent_rules(self, query: SearchQuery) -> List[Rule]:
        rules = self._learning.list_rules(query.user_id, True, query.category, query.limit)
        if not rules and query.category:
            rules = self._learning.list_rules(query.user_id, True, None, query.limit)
        return rules

    # ── Searches ─────────────────────────────────────────────────

    def similar_decisions(
        self,
        user_id: str,
        embedding: Optional[np.ndarray],
        action_name: Optional[str] = None,
        threshold: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> SearchOutcome[Decision]:
        """Past decisions with feedback that resemble this one."""
        query = SearchQuery(
            user_id=user_id,
            embedding=embedding,
            threshold=self._config.decisions.threshold if threshold is None else threshold,
            limit=limit or self._config.decisions.limit,
            action_name=action_name,
        )
        return search_with_fallback(query, self._decision_vector, self._decision_fallback)

    def similar_rules(
        self,
        user_id: str,
        embedding: Optional[np.ndarray],
        category: Optional[str] = None,
        threshold: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> SearchOutcome[Rule]:
        """Active rules relevant to the context."""
        query = SearchQuery(
            user_id=user_id,
            embedding=embedding,
            threshold=self._config.rules.threshold if threshold is None else threshold,
            limit=limit or self._config.rules.limit,
            category=category,
        )
        return search_with_fallback(query, self._rule_vector, self._rule_fallback)

    def similar_preferences(
        self,
        user_id: str,
        embedding: Optional[np.ndarray],
        category: Optional[str] = None,
        threshold: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> SearchOutcome[Preference]:
        query = SearchQuery(
            user_id=user_id,
            embedding=embedding,
            threshold=self._config.preferences.threshold if threshold is None else threshold,
            limit=limit or self._config.preferences.limit,
            category=category,
        )
        return search_with_fallback(query, self._pref_vector, self._pref_fallback)

    def recall(self, user_id: str, text: str, category: Optional[str] = None) -> SearchOutcome[Preference]:
        """Preferences relevant to free text."""
        return self.similar_preferences(user_id, self.embed(text), category)

    # ── Preferences ──────────────────────────────────────────────

    def remember_preference(
        self,
        user_id: str,
        category: str,
        key: str,
        value: Any,
        source: PreferenceSource = PreferenceSource.EXPLICIT,
        confidence: float = 1.0,
    ) -> Preference:
        """Upsert a preference and log the change to the ledger."""
        embedding = self.embed(
            preference_text(category, key, value, self._config.preference_text_chars)
        )
        pref = Preference(
            user_id=user_id,
            category=category,
            key=key,
            value=value,
            source=source,
            confidence=max(0.0, min(1.0, confidence)),
            embedding=embedding,
        )
        previous = self._preferences.upsert(pref)
        self._ledger.record_decision(Decision(
            user_id=user_id,
            action_name="remember",
            category="memory",
            verdict=Verdict.AUTO_EXECUTED,
            decision_type=DecisionType.PREFERENCE_CHANGED,
            parameters={
                "category": category,
                "key": key,
                "value": value,
                "previous": previous.value if previous else None,
                "source": source.value,
            },
            reasoning=f"Preference {category}.{key} set from {source.value}",
        ))
        logger.info("Preference %s.%s updated for user %s (%s)", category, key, user_id, source.value)
        return pref

    def get_preference(self, user_id: str, category: str, key: str) -> Optional[Preference]:
        return self._preferences.get(user_id, category, key)

    def list_preferences(self, user_id: str, category: Optional[str] = None) -> List[Preference]:
        return self._preferences.list(user_id, category)
