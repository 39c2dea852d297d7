"""
Semantic Memory — preferences and past decisions as text plus embeddings.

This package provides:
- Embedders (chromadb model or local hashing) and cosine similarity (embeddings.py)
- Vector search with a recency/exact-match fallback (search.py)
- Preference persistence (preferences.py)
- The MemoryService facade (service.py)

Feature Flag: FEATURE_SEMANTIC_MEMORY (default: true). When disabled the
service runs without an embedder and every lookup takes the fallback path.

Usage:
    from src.core.memory import MemoryService, HashingEmbedder

    outcome = service.similar_decisions(user_id, embedding, action_name="send_message")
    for hit in outcome.results:
        ...
"""

from __future__ import annotations

from ..feature_flags import FEATURE_SEMANTIC_MEMORY


def is_semantic_memory_enabled() -> bool:
    """
    Check if vector search is enabled.

    Returns:
        True if FEATURE_SEMANTIC_MEMORY is enabled
    """
    from src.core import feature_flags
    return feature_flags.FEATURE_SEMANTIC_MEMORY


from .embeddings import (
    EMBEDDING_DIMENSION,
    ChromaEmbedder,
    Embedder,
    HashingEmbedder,
    build_embedder,
    cosine_similarity,
    decision_text,
    preference_text,
)
from .preferences import Preference, PreferenceSource, PreferenceStore
from .search import (
    FallbackSearch,
    SearchOutcome,
    SearchQuery,
    SearchResult,
    VectorSearch,
    search_with_fallback,
)
from .service import MemoryService

__all__ = [
    "FEATURE_SEMANTIC_MEMORY",
    "is_semantic_memory_enabled",
    "EMBEDDING_DIMENSION",
    "ChromaEmbedder",
    "Embedder",
    "HashingEmbedder",
    "build_embedder",
    "cosine_similarity",
    "decision_text",
    "preference_text",
    "Preference",
    "PreferenceSource",
    "PreferenceStore",
    "FallbackSearch",
    "SearchOutcome",
    "SearchQuery",
    "SearchResult",
    "VectorSearch",
    "search_with_fallback",
    "MemoryService",
]
