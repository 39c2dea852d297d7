"""
Text classifiers used by the learning pipeline.

- infer_category: ordered keyword matching, first match wins
- detect_correction: spots inline corrections in user messages
- word_overlap: bag-of-words similarity used when no embedding exists
- synthesize_rule_text: builds rule guidance from similar corrections
- compute_intent_hash: stable key for a task type
"""

from __future__ import annotations

import hashlib
import re
from collections import Counter
from typing import List, Optional, Sequence, Set, Tuple

# Patterns anchor at a word start; stems like "schedul" or "plumb" may
# continue into longer words, while whole words carry a trailing \b.
CATEGORY_PATTERNS: List[Tuple[str, re.Pattern]] = [
    ("maintenance", re.compile(
        r"\b(maintenance|repair|plumb|electri|trade(?:s|sman)?\b|contractor|leak|broken)", re.I)),
    ("financial", re.compile(
        r"\b(rent\b|payment|bond\b|fee\b|fees\b|cost|price|financial|money|expense|invoice)", re.I)),
    ("scheduling", re.compile(
        r"\b(schedul|inspect|appointment|calendar|reschedul)", re.I)),
    ("tenant_relations", re.compile(
        r"\b(tenant|lease\b|application|vacancy|applicant)", re.I)),
    ("compliance", re.compile(
        r"\b(compliance|smoke\b|pool\b|gas\b|safety|insurance)", re.I)),
    ("communication", re.compile(
        r"\b(message|email|sms\b|notify|notification|communicat|call\b|text\b|phone\b)", re.I)),
]

GENERAL_CATEGORY = "general"


def infer_category(text: str) -> str:
    """Classify free text into a learning category."""
    if not text:
        return GENERAL_CATEGORY
    for category, pattern in CATEGORY_PATTERNS:
        if pattern.search(text):
            return category
    return GENERAL_CATEGORY


CORRECTION_PATTERNS: List[re.Pattern] = [
    re.compile(r"^\s*no[,.!]?\s+(i\s+meant|i\s+said|it\s+should|that'?s\s+not|use|don'?t)", re.I),
    re.compile(r"^\s*actually[,]?\s+", re.I),
    re.compile(r"\bthat'?s\s+(wrong|incorrect|not\s+right|not\s+what\s+i)", re.I),
    re.compile(r"\b(i\s+told\s+you|i\s+already\s+said)\b", re.I),
    re.compile(r"\b(don'?t|do\s+not|never)\s+(do|use|send|contact|call|book|schedule)\b", re.I),
    re.compile(r"\b(instead\s+of|rather\s+than)\b", re.I),
    re.compile(r"\b(always|from\s+now\s+on|in\s+future|next\s+time)\b.*\b(use|send|ask|contact|check|call)\b", re.I),
]


def detect_correction(message: str) -> Optional[str]:
    """Return the correction text if the message reads as a correction."""
    if not message or len(message.strip()) < 8:
        return None
    for pattern in CORRECTION_PATTERNS:
        if pattern.search(message):
            return message.strip()
    return None


_WORD_RE = re.compile(r"[a-z0-9']+")

STOPWORDS: Set[str] = {
    "this", "that", "with", "from", "have", "they", "them", "then", "than", "when",
    "what", "were", "will", "would", "should", "could", "there", "their", "your",
    "into", "about", "just", "only", "also", "been", "does", "dont", "don't",
}


def content_words(text: str, min_length: int = 4) -> Set[str]:
    """Lowercase words of at least `min_length` chars, minus stopwords."""
    return {
        w for w in _WORD_RE.findall(text.lower())
        if len(w) >= min_length and w not in STOPWORDS
    }


def word_overlap(a: str, b: str) -> float:
    """|common| / max(|a|, |b|) over content words longer than 3 chars."""
    wa = content_words(a)
    wb = content_words(b)
    if not wa or not wb:
        return 0.0
    return len(wa & wb) / max(len(wa), len(wb))


def common_terms(texts: Sequence[str], min_share: float = 0.5, limit: int = 8) -> List[str]:
    """Content words appearing in at least `min_share` of the texts."""
    if not texts:
        return []
    counts: Counter = Counter()
    for text in texts:
        counts.update(content_words(text))
    needed = max(2, int(len(texts) * min_share + 0.999))
    shared = [w for w, c in counts.most_common() if c >= needed]
    return shared[:limit]


def synthesize_rule_text(category: str, corrections: Sequence[str]) -> str:
    """Deterministic rule guidance from a cluster of similar corrections.

    The most recent correction is used verbatim as the instruction; the
    shared terms become the trigger description.
    """
    latest = corrections[0].strip().rstrip(".")
    terms = common_terms(corrections)
    if terms:
        trigger = ", ".join(terms)
        return f"When handling {category.replace('_', ' ')} involving {trigger}: {latest}."
    return f"When handling {category.replace('_', ' ')}: {latest}."


def compute_intent_hash(text: str) -> str:
    """Order-insensitive hash of the content words of an intent."""
    words = sorted(content_words(text, min_length=3))
    if not words:
        words = [text.strip().lower()]
    digest = hashlib.sha256(" ".join(words).encode("utf-8")).hexdigest()
    return digest[:16]


def shared_word_count(a: str, b: str, min_length: int = 5) -> int:
    """Number of shared words longer than 4 chars."""
    return len(content_words(a, min_length) & content_words(b, min_length))


def first_n_chars(text: str, n: int) -> str:
    return text.strip().lower()[:n]

