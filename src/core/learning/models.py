"""
Learning Pipeline Data Models

Rules learned from human corrections, the corrections themselves, and
the result objects returned by the pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np

from src.core.storage import generate_id, utc_now


class RuleSource(str, Enum):
    CORRECTION_PATTERN = "correction_pattern"
    ERROR_CLASSIFICATION = "error_classification"
    EXPLICIT = "explicit"


class ErrorType(str, Enum):
    """Classes of assistant mistakes reported by the user."""
    FACTUAL_ERROR = "FACTUAL_ERROR"
    REASONING_ERROR = "REASONING_ERROR"
    TOOL_MISUSE = "TOOL_MISUSE"
    CONTEXT_MISSING = "CONTEXT_MISSING"


@dataclass
class Rule:
    """A learned condition → guidance pairing."""
    user_id: str
    rule_text: str
    category: str = "general"
    confidence: float = 0.7
    active: bool = True
    source: RuleSource = RuleSource.CORRECTION_PATTERN
    derived_from: List[str] = field(default_factory=list)
    embedding: Optional[np.ndarray] = None
    applications_count: int = 0
    rejections_count: int = 0
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    last_reinforced_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "rule_text": self.rule_text,
            "category": self.category,
            "confidence": self.confidence,
            "active": self.active,
            "source": self.source.value,
            "derived_from": list(self.derived_from),
            "applications_count": self.applications_count,
            "rejections_count": self.rejections_count,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_reinforced_at": self.last_reinforced_at.isoformat() if self.last_reinforced_at else None,
        }


@dataclass
class Correction:
    """Raw human correction; append-only."""
    user_id: str
    original_action: str
    correction_text: str
    category: str = "general"
    decision_id: Optional[str] = None
    embedding: Optional[np.ndarray] = None
    pattern_matched: bool = False
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class RuleUpdate:
    """One rule confidence change caused by feedback."""
    rule_id: str
    old_confidence: float
    new_confidence: float
    should_deactivate: bool


@dataclass
class PatternResult:
    """Outcome of pattern detection for one correction."""
    status: str  # "below_threshold" | "created" | "conflict_skipped"
    category: str
    similar_count: int = 0
    rule: Optional[Rule] = None
    conflicting_rule_id: Optional[str] = None
    conflict_similarity: Optional[float] = None
    correction_ids: List[str] = field(default_factory=list)


@dataclass
class GraduationProposal:
    """Suggestion to raise a category's autonomy tier."""
    user_id: str
    category: str
    current_tier: int
    proposed_tier: int
    consecutive_approvals: int
    id: str = field(default_factory=generate_id)
    status: str = "pending"  # pending | accepted | declined


@dataclass
class FeedbackResult:
    """Everything one feedback event changed."""
    decision_id: str
    feedback: str
    rule_updates: List[RuleUpdate] = field(default_factory=list)
    correction: Optional[Correction] = None
    pattern: Optional[PatternResult] = None
    graduation: Optional[GraduationProposal] = None

    @property
    def rules_deactivated(self) -> List[str]:
        return [u.rule_id for u in self.rule_updates if u.should_deactivate]
