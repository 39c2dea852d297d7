"""
Semantic Memory Search — primary vector search with recency fallback.

Two strategies share one interface. search_with_fallback() is the single
place that decides which one answers a query: the vector strategy when the
query carries an embedding and returns rows, otherwise the fallback.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterable, List, Optional, Protocol, TypeVar

import numpy as np

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class SearchQuery:
    """Similarity query parameters."""
    user_id: str
    embedding: Optional[np.ndarray] = None
    threshold: float = 0.7
    limit: int = 5
    category: Optional[str] = None
    action_name: Optional[str] = None


@dataclass
class SearchResult(Generic[T]):
    """A single hit with its similarity (0.0 for fallback hits)."""
    item: T
    similarity: float = 0.0
    method: str = "vector"


@dataclass
class SearchOutcome(Generic[T]):
    """Results plus which strategy produced them."""
    results: List[SearchResult[T]] = field(default_factory=list)
    method: str = "vector"
    fallback_reason: Optional[str] = None

    @property
    def items(self) -> List[T]:
        return [r.item for r in self.results]

    def __len__(self) -> int:
        return len(self.results)


class SearchStrategy(Protocol[T]):
    name: str

    def search(self, query: SearchQuery) -> List[SearchResult[T]]:
        ...


class VectorSearch(Generic[T]):
    """Brute-force cosine search over candidate rows that carry embeddings."""

    name = "vector"

    def __init__(
        self,
        candidates: Callable[[SearchQuery], Iterable[T]],
        vector_of: Callable[[T], Optional[np.ndarray]] = lambda item: getattr(item, "embedding", None),
    ) -> None:
        self._candidates = candidates
        self._vector_of = vector_of

    def search(self, query: SearchQuery) -> List[SearchResult[T]]:
        if query.embedding is None:
            return []
        q = np.asarray(query.embedding, dtype=np.float32)
        q_norm = float(np.linalg.norm(q))
        if q.size == 0 or q_norm < 1e-12:
            return []

        items: List[T] = []
        vectors: List[np.ndarray] = []
        for item in self._candidates(query):
            vec = self._vector_of(item)
            if vec is None or vec.shape != q.shape:
                continue
            items.append(item)
            vectors.append(vec)
        if not items:
            return []

        matrix = np.vstack(vectors).astype(np.float32)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms < 1e-12] = 1.0
        scores = (matrix @ q) / (norms * q_norm)

        order = np.argsort(-scores)
        results: List[SearchResult[T]] = []
        for idx in order:
            score = float(scores[idx])
            if score <= query.threshold:
                break
            results.append(SearchResult(item=items[idx], similarity=round(score, 4), method=self.name))
            if len(results) >= query.limit:
                break
        return results


class FallbackSearch(Generic[T]):
    """Exact-match / recency lookup used when vector search cannot answer."""

    name = "fallback"

    def __init__(self, lookup: Callable[[SearchQuery], List[T]]) -> None:
        self._lookup = lookup

    def search(self, query: SearchQuery) -> List[SearchResult[T]]:
        rows = self._lookup(query)[: query.limit]
        return [SearchResult(item=row, similarity=0.0, method=self.name) for row in rows]


def search_with_fallback(
    query: SearchQuery,
    primary: SearchStrategy[Any],
    fallback: SearchStrategy[Any],
) -> SearchOutcome[Any]:
    """Run the primary strategy; use the fallback on no embedding, no rows or error."""
    reason: Optional[str] = None
    if query.embedding is None:
        reason = "no_embedding"
    else:
        try:
            results = primary.search(query)
            if results:
                return SearchOutcome(results=results, method=primary.name)
            reason = "no_results"
        except Exception as exc:
            logger.warning("Vector search failed for user %s, falling back: %s", query.user_id, exc)
            reason = "error"

    results = fallback.search(query)
    return SearchOutcome(results=results, method=fallback.name, fallback_reason=reason)
