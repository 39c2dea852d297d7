"""
Tests for Semantic Memory: embeddings, vector search and preferences.

These tests validate:
- Cosine similarity edge cases
- Model-backed embeddings normalized and dimension-checked
- Deterministic, normalized hashing embeddings
- Vector search thresholds, ordering and limits
- Fallback selection (no embedding, no results, error)
- Preference upsert with a ledger changelog
"""

from types import SimpleNamespace

import numpy as np
import pytest
from pydantic import ValidationError

from src.core.autonomy.config import MemoryConfig
from src.core.ledger.models import Decision, DecisionType, FeedbackType, Verdict
from src.core.memory import is_semantic_memory_enabled
from src.core.memory.embeddings import (
    ChromaEmbedder,
    HashingEmbedder,
    build_embedder,
    cosine_similarity,
    decision_text,
    preference_text,
    safe_embed,
)
from src.core.memory.preferences import PreferenceSource
from src.core.memory.search import FallbackSearch, SearchQuery, VectorSearch, search_with_fallback


def _item(name, vector):
    return SimpleNamespace(name=name, embedding=np.asarray(vector, dtype=np.float32))


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------
class TestCosineSimilarity:
    def test_orthogonal(self):
        assert cosine_similarity([1, 0], [0, 1]) == 0.0

    def test_identical(self):
        assert cosine_similarity([0.3, 0.4], [0.3, 0.4]) == pytest.approx(1.0)

    def test_opposite(self):
        assert cosine_similarity([1, 2], [-1, -2]) == pytest.approx(-1.0)

    @pytest.mark.parametrize("a,b", [
        (None, [1, 0]),
        ([], []),
        ([0, 0], [1, 1]),
        ([1, 0, 0], [1, 0]),
    ])
    def test_degenerate_inputs(self, a, b):
        assert cosine_similarity(a, b) == 0.0


class TestChromaEmbedder:
    class FakeModel:
        """Stands in for a chromadb embedding function: documents → vectors."""

        def __init__(self, vector):
            self.vector = vector
            self.calls = []

        def __call__(self, documents):
            self.calls.append(list(documents))
            return [np.asarray(self.vector, dtype=np.float32) for _ in documents]

    def test_normalizes_model_output(self):
        model = self.FakeModel([3.0, 4.0, 0.0, 0.0])
        vector = ChromaEmbedder(4, embedding_function=model).embed("Book a plumber")
        assert vector.dtype == np.float32
        assert vector.tolist() == pytest.approx([0.6, 0.8, 0.0, 0.0])
        assert model.calls == [["Book a plumber"]]

    def test_blank_text_skips_model(self):
        model = self.FakeModel([1.0, 0.0])
        assert ChromaEmbedder(2, embedding_function=model).embed("   ") is None
        assert model.calls == []

    def test_dimension_mismatch(self):
        embedder = ChromaEmbedder(384, embedding_function=self.FakeModel([1.0, 0.0]))
        with pytest.raises(ValueError, match="expected 384"):
            embedder.embed("Book a plumber")

    def test_model_failure_becomes_fallback(self):
        def broken(documents):
            raise RuntimeError("model download failed")

        assert safe_embed(ChromaEmbedder(embedding_function=broken), "Book a plumber") is None

    def test_config_rejects_unknown_embedder(self):
        assert MemoryConfig().embedder == "chroma"
        with pytest.raises(ValidationError):
            MemoryConfig(embedder="word2vec")


class TestHashingEmbedder:
    def test_deterministic_and_normalized(self):
        embedder = HashingEmbedder(64)
        a = embedder.embed("Send the rent reminder to the tenant")
        b = embedder.embed("Send the rent reminder to the tenant")
        assert a.shape == (64,)
        assert np.array_equal(a, b)
        assert float(np.linalg.norm(a)) == pytest.approx(1.0, abs=1e-5)

    def test_related_text_closer(self):
        embedder = HashingEmbedder()
        base = embedder.embed("book a plumber for the leaking tap")
        near = embedder.embed("book a plumber for the leaking shower")
        far = embedder.embed("publish the listing for the new apartment")
        assert cosine_similarity(base, near) > cosine_similarity(base, far)

    def test_nothing_to_embed(self):
        assert HashingEmbedder().embed("!!! ...") is None

    def test_dimension_minimum(self):
        with pytest.raises(ValueError):
            HashingEmbedder(4)

    def test_build_embedder(self):
        assert isinstance(build_embedder("hashing", 64), HashingEmbedder)
        assert isinstance(build_embedder("chroma"), ChromaEmbedder)
        with pytest.raises(ValueError):
            build_embedder("word2vec")

    def test_text_builders(self):
        text = decision_text("send_message", "Chase the tenant", {"to": "t1"})
        assert text.startswith("tool: send_message | Chase the tenant | input: ")
        assert preference_text("communication", "channel", "sms") == "communication: channel = sms"
        assert len(preference_text("notes", "k", "x" * 1000, max_chars=50)) == 50


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------
class TestVectorSearch:
    def _search(self, items, **kwargs):
        query = SearchQuery(user_id="u1", embedding=np.array([1, 0, 0], dtype=np.float32), **kwargs)
        return VectorSearch(lambda q: items).search(query)

    def test_threshold_and_order(self):
        items = [
            _item("weak", [0.5, 1.0, 0]),
            _item("best", [1.0, 0, 0]),
            _item("good", [1.0, 0.3, 0]),
            _item("orthogonal", [0, 0, 1]),
        ]
        results = self._search(items, threshold=0.7, limit=5)
        assert [r.item.name for r in results] == ["best", "good"]
        assert results[0].similarity == pytest.approx(1.0)
        assert all(r.method == "vector" for r in results)

    def test_limit(self):
        items = [_item(str(i), [1.0, 0.01 * i, 0]) for i in range(6)]
        assert len(self._search(items, threshold=0.5, limit=3)) == 3

    def test_skips_mismatched_and_missing(self):
        items = [SimpleNamespace(name="none", embedding=None), _item("short", [1.0, 0])]
        assert self._search(items, threshold=0.1) == []


class _Exploding:
    name = "vector"

    def search(self, query):
        raise RuntimeError("index corrupt")


class TestSearchWithFallback:
    def _fallback(self):
        return FallbackSearch(lambda q: ["recent-1", "recent-2", "recent-3"])

    def test_no_embedding(self):
        outcome = search_with_fallback(SearchQuery(user_id="u1", limit=2), _Exploding(), self._fallback())
        assert outcome.method == "fallback"
        assert outcome.fallback_reason == "no_embedding"
        assert outcome.items == ["recent-1", "recent-2"]

    def test_no_results(self):
        primary = VectorSearch(lambda q: [])
        query = SearchQuery(user_id="u1", embedding=np.ones(3, dtype=np.float32))
        outcome = search_with_fallback(query, primary, self._fallback())
        assert outcome.fallback_reason == "no_results"
        assert len(outcome) == 3

    def test_error(self):
        query = SearchQuery(user_id="u1", embedding=np.ones(3, dtype=np.float32))
        outcome = search_with_fallback(query, _Exploding(), self._fallback())
        assert outcome.method == "fallback"
        assert outcome.fallback_reason == "error"

    def test_primary_wins(self):
        primary = VectorSearch(lambda q: [_item("hit", [1, 1, 1])])
        query = SearchQuery(user_id="u1", embedding=np.ones(3, dtype=np.float32))
        outcome = search_with_fallback(query, primary, self._fallback())
        assert outcome.method == "vector"
        assert outcome.fallback_reason is None
        assert outcome.items[0].name == "hit"


# ---------------------------------------------------------------------------
# Memory service
# ---------------------------------------------------------------------------
class TestMemoryService:
    def test_flag_helper(self, env_override):
        assert is_semantic_memory_enabled() is True
        env_override(FEATURE_SEMANTIC_MEMORY="false")
        assert is_semantic_memory_enabled() is False

    def test_similar_decisions_vector(self, engine):
        memory = engine.memory
        vector = memory.embed_decision("send_message", "Chase Jo about the heater", {"to": "jo"})
        d = engine.ledger.record_decision(Decision(
            user_id="u1", action_name="send_message", category="action",
            verdict=Verdict.GATED, embedding=vector,
        ))
        engine.ledger.set_feedback(d.id, FeedbackType.APPROVED)

        outcome = memory.similar_decisions("u1", vector)
        assert outcome.method == "vector"
        assert outcome.items[0].id == d.id
        assert outcome.results[0].similarity == pytest.approx(1.0, abs=1e-3)

    def test_similar_decisions_fallback_filters_action(self, engine):
        for action in ("send_message", "create_listing"):
            d = engine.ledger.record_decision(Decision(
                user_id="u1", action_name=action, category="action", verdict=Verdict.GATED,
            ))
            engine.ledger.set_feedback(d.id, FeedbackType.REJECTED)
        outcome = engine.memory.similar_decisions("u1", None, action_name="create_listing")
        assert outcome.method == "fallback"
        assert [d.action_name for d in outcome.items] == ["create_listing"]

    def test_preference_recall(self, engine):
        memory = engine.memory
        pref = memory.remember_preference("u1", "communication", "channel", "sms")
        assert pref.embedding is not None
        outcome = memory.recall("u1", "communication: channel = sms")
        assert outcome.method == "vector"
        assert outcome.items[0].value == "sms"

    def test_preference_changelog(self, engine):
        memory = engine.memory
        memory.remember_preference("u1", "communication", "channel", "email")
        memory.remember_preference("u1", "communication", "channel", "sms",
                                   source=PreferenceSource.INFERRED, confidence=1.4)
        stored = memory.get_preference("u1", "communication", "channel")
        assert stored.value == "sms"
        assert stored.source == PreferenceSource.INFERRED
        assert stored.confidence == 1.0

        log = engine.ledger.list_decisions("u1", decision_type=DecisionType.PREFERENCE_CHANGED)
        assert len(log) == 2
        latest = max(log, key=lambda d: d.created_at)
        assert latest.parameters["previous"] == "email"
        assert latest.parameters["value"] == "sms"

    def test_structured_values(self, engine):
        engine.memory.remember_preference("u1", "maintenance", "preferred_trades", {"plumber": "Bobs Plumbing"})
        assert engine.memory.list_preferences("u1", "maintenance")[0].value == {"plumber": "Bobs Plumbing"}

    def test_fallback_only_without_embedder(self, make_engine):
        memory = make_engine(semantic=False).memory
        pref = memory.remember_preference("u1", "communication", "channel", "sms")
        assert pref.embedding is None
        outcome = memory.recall("u1", "how should I contact tenants", category="communication")
        assert outcome.method == "fallback"
        assert outcome.fallback_reason == "no_embedding"
        assert outcome.items[0].key == "channel"
