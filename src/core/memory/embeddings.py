"""
Semantic Memory Embeddings — text → normalized vectors, cosine similarity.

The engine only depends on the Embedder protocol. ChromaEmbedder, the
default, wraps chromadb's bundled ONNX all-MiniLM-L6-v2 sentence model
(384 dimensions, downloaded on first use). HashingEmbedder is a
deterministic offline stand-in (signed feature hashing of word unigrams and
bigrams) for tests and air-gapped installs; its similarities are lexical,
not semantic.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import numpy as np
from chromadb.utils import embedding_functions

logger = logging.getLogger(__name__)

EMBEDDING_DIMENSION = 384

_TOKEN_RE = re.compile(r"[a-z0-9]+")


class Embedder(Protocol):
    dimension: int

    def embed(self, text: str) -> Optional[np.ndarray]:
        """Return a unit-length vector, or None when text cannot be embedded."""
        ...


def tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def normalize(vector: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(vector))
    if norm < 1e-12:
        return vector
    return vector / norm


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """Cosine similarity of two vectors.

    Returns 0.0 for missing, empty, zero or mismatched vectors.
    """
    if a is None or b is None:
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.size == 0 or vb.size == 0 or va.shape != vb.shape:
        return 0.0
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a < 1e-12 or norm_b < 1e-12:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))


class HashingEmbedder:
    """Deterministic local embedder based on signed feature hashing."""

    def __init__(self, dimension: int = EMBEDDING_DIMENSION) -> None:
        if dimension < 8:
            raise ValueError(f"dimension must be >= 8, got {dimension}")
        self.dimension = dimension

    def _slot(self, feature: str) -> tuple[int, float]:
        digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
        value = int.from_bytes(digest, "big")
        sign = 1.0 if value & 1 else -1.0
        return (value >> 1) % self.dimension, sign

    def embed(self, text: str) -> Optional[np.ndarray]:
        tokens = tokenize(text)
        if not tokens:
            return None
        vector = np.zeros(self.dimension, dtype=np.float32)
        features = list(tokens)
        features.extend(f"{a}_{b}" for a, b in zip(tokens, tokens[1:]))
        for feature in features:
            index, sign = self._slot(feature)
            vector[index] += sign
        vector = normalize(vector)
        if not np.any(vector):
            return None
        return vector.astype(np.float32)


# documents → one vector per document
EmbeddingFunction = Callable[[List[str]], Sequence[Sequence[float]]]


class ChromaEmbedder:
    """Sentence embeddings through a chromadb embedding function.

    The model is created lazily so importing the engine never triggers a
    download; the first embed() call loads it once for all threads.
    """

    def __init__(
        self,
        dimension: int = EMBEDDING_DIMENSION,
        embedding_function: Optional[EmbeddingFunction] = None,
    ) -> None:
        self.dimension = dimension
        self._function = embedding_function
        self._lock = threading.Lock()

    @property
    def function(self) -> EmbeddingFunction:
        if self._function is None:
            with self._lock:
                if self._function is None:
                    logger.info("Loading chromadb default embedding model")
                    self._function = embedding_functions.DefaultEmbeddingFunction()
        return self._function

    def embed(self, text: str) -> Optional[np.ndarray]:
        if not text or not text.strip():
            return None
        vectors = self.function([text])
        vector = np.asarray(vectors[0], dtype=np.float32)
        if vector.shape != (self.dimension,):
            raise ValueError(
                f"embedding model returned {vector.shape[0]} dimensions, expected {self.dimension}"
            )
        vector = normalize(vector)
        if not np.any(vector):
            return None
        return vector


def build_embedder(kind: str, dimension: int = EMBEDDING_DIMENSION) -> Embedder:
    if kind == "hashing":
        return HashingEmbedder(dimension)
    if kind == "chroma":
        return ChromaEmbedder(dimension)
    raise ValueError(f"Unknown embedder: {kind}")


# ── Text builders ────────────────────────────────────────────────

def decision_text(action_name: str, reasoning: str, parameters: Dict[str, Any], input_chars: int = 300) -> str:
    """Text embedded for a decision."""
    payload = json.dumps(parameters, default=str, sort_keys=True)[:input_chars]
    parts = [f"tool: {action_name}"]
    if reasoning:
        parts.append(reasoning)
    parts.append(f"input: {payload}")
    return " | ".join(parts)


def preference_text(category: str, key: str, value: Any, max_chars: int = 500) -> str:
    """Text embedded for a preference."""
    rendered = value if isinstance(value, str) else json.dumps(value, default=str, sort_keys=True)
    return f"{category}: {key} = {rendered}"[:max_chars]


def safe_embed(embedder: Optional[Embedder], text: str) -> Optional[np.ndarray]:
    """Embed text, logging and returning None on any embedder failure."""
    if embedder is None or not text:
        return None
    try:
        return embedder.embed(text)
    except Exception as exc:
        logger.warning("Embedding failed, continuing without vector: %s", exc)
        return None
