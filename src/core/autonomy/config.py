"""
Autonomy Engine Configuration — Pydantic models for config/autonomy.yaml.

Loads and validates the engine configuration, falling back to defaults when
the file is missing or invalid.
"""

from __future__ import annotations

import logging
import os
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)


def _unit_interval(name: str, v: float) -> float:
    if v < 0.0 or v > 1.0:
        raise ValueError(f"{name} must be 0.0-1.0, got {v}")
    return v


# ── Confidence ───────────────────────────────────────────────────

class ConfidenceWeights(BaseModel):
    """Weights of the six confidence factors. Must sum to 1.0."""
    historical_accuracy: float = 0.30
    source_quality: float = 0.10
    precedent_alignment: float = 0.20
    rule_alignment: float = 0.15
    golden_alignment: float = 0.10
    outcome_tracking: float = 0.15

    @model_validator(mode="after")
    def validate_sum(self) -> "ConfidenceWeights":
        total = sum(self.model_dump().values())
        if abs(total - 1.0) > 1e-9:
            raise ValueError(f"confidence weights must sum to 1.0, got {total}")
        return self


class ConfidenceDefaults(BaseModel):
    """Neutral factor values used when evidence is insufficient."""
    historical_accuracy: float = 0.8
    precedent_alignment: float = 0.7
    rule_alignment: float = 0.8
    golden_alignment: float = 0.5
    outcome_tracking: float = 0.7
    source_quality: float = 0.7


class ConfidenceConfig(BaseModel):
    """Confidence estimator settings."""
    weights: ConfidenceWeights = ConfidenceWeights()
    defaults: ConfidenceDefaults = ConfidenceDefaults()
    source_quality: Dict[str, float] = Field(default_factory=lambda: {
        "query": 0.95,
        "memory": 0.90,
        "action": 0.85,
        "planning": 0.80,
        "generate": 0.75,
        "workflow": 0.70,
        "external": 0.65,
        "integration": 0.60,
    })
    ema_alpha: float = 0.15
    min_executions: int = 3
    min_feedback_samples: int = 2
    precedent_window: int = 5
    min_outcomes: int = 3
    outcome_window: int = 20
    max_rules: int = 5

    @field_validator("ema_alpha")
    @classmethod
    def validate_alpha(cls, v: float) -> float:
        if v <= 0.0 or v > 1.0:
            raise ValueError(f"ema_alpha must be in (0, 1], got {v}")
        return v


# ── Gate ─────────────────────────────────────────────────────────

class GateConfig(BaseModel):
    """Autonomy gate settings."""
    financial_threshold: float = 200.0
    escalation_threshold: float = 0.4
    low_confidence_threshold: float = 0.5
    category_min_confidence: Dict[str, float] = Field(default_factory=dict)
    amount_keys: list[str] = Field(
        default_factory=lambda: ["amount", "cost", "price", "total", "payment_amount"]
    )

    @field_validator("escalation_threshold", "low_confidence_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        return _unit_interval("threshold", v)

    def min_confidence_for(self, category: str) -> float:
        return self.category_min_confidence.get(category, self.escalation_threshold)


# ── Heartbeat ────────────────────────────────────────────────────

class HeartbeatConfig(BaseModel):
    """Heartbeat scanner settings."""
    enabled: bool = True
    interval_s: int = 3600
    batch_size: int = 5
    task_budget: int = 15
    lease_windows_days: list[int] = Field(default_factory=lambda: [14, 30, 60])
    arrears_lookback_hours: int = 24
    arrears_auto_remind: bool = True
    stale_listing_days: int = 21
    stale_maintenance_days: int = 7
    inspection_lookahead_days: int = 14
    compliance_lookahead_days: int = 30
    application_stale_hours: int = 48
    communication_stale_hours: int = 24
    cleanup_interval_hours: int = 24
    pending_ttl_days: int = 7

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if v < 1 or v > 50:
            raise ValueError(f"batch_size must be 1-50, got {v}")
        return v

    @field_validator("task_budget")
    @classmethod
    def validate_budget(cls, v: int) -> int:
        if v < 0 or v > 500:
            raise ValueError(f"task_budget must be 0-500, got {v}")
        return v


# ── Learning ─────────────────────────────────────────────────────

class GraduationConfig(BaseModel):
    """Autonomy graduation proposal settings."""
    enabled: bool = True
    approval_threshold: int = 10
    max_backoff_multiplier: int = 8


class LearningConfig(BaseModel):
    """Learning pipeline settings."""
    rule_match_threshold: float = 0.65
    rule_prefix_chars: int = 50
    approved_delta: float = 0.05
    corrected_delta: float = -0.10
    rejected_delta: float = -0.15
    deactivate_below: float = 0.3
    pattern_similarity_threshold: float = 0.6
    pattern_overlap_threshold: float = 0.3
    pattern_min_corrections: int = 3
    pattern_scan_limit: int = 50
    pattern_rule_confidence: float = 0.70
    error_rule_confidence: float = 0.50
    conflict_search_threshold: float = 0.75
    conflict_skip_threshold: float = 0.85
    conflict_search_limit: int = 3
    decay_after_days: int = 30
    decay_amount: float = 0.02
    message_feedback_positive: float = 0.02
    message_feedback_negative: float = -0.05
    message_feedback_min_words: int = 3
    graduation: GraduationConfig = GraduationConfig()

    @field_validator(
        "rule_match_threshold", "deactivate_below", "pattern_similarity_threshold",
        "pattern_overlap_threshold", "pattern_rule_confidence", "error_rule_confidence",
        "conflict_search_threshold", "conflict_skip_threshold",
    )
    @classmethod
    def validate_unit(cls, v: float) -> float:
        return _unit_interval("learning threshold", v)

    @field_validator("pattern_min_corrections")
    @classmethod
    def validate_min_corrections(cls, v: int) -> int:
        if v < 2:
            raise ValueError(f"pattern_min_corrections must be >= 2, got {v}")
        return v


# ── Memory ───────────────────────────────────────────────────────

class SearchLimits(BaseModel):
    threshold: float
    limit: int


class MemoryConfig(BaseModel):
    """Semantic memory settings."""
    embedder: str = "chroma"
    embedding_dimension: int = 384
    decisions: SearchLimits = SearchLimits(threshold=0.7, limit=3)
    rules: SearchLimits = SearchLimits(threshold=0.6, limit=5)
    preferences: SearchLimits = SearchLimits(threshold=0.5, limit=10)
    decision_input_chars: int = 300
    preference_text_chars: int = 500

    @field_validator("embedder")
    @classmethod
    def validate_embedder(cls, v: str) -> str:
        if v not in ("chroma", "hashing"):
            raise ValueError(f"embedder must be 'chroma' or 'hashing', got {v!r}")
        return v


# ── Persistence / Retention ──────────────────────────────────────

class PersistenceConfig(BaseModel):
    data_dir: str = "data"
    db_file: str = "autonomy.sqlite"
    retention_days: int = 90
    rule_cleanup_below: float = 0.2
    genome_reset_rate: float = 0.9


class AutonomyConfig(BaseModel):
    """Top-level autonomy engine configuration."""
    version: str = "1.0"
    confidence: ConfidenceConfig = ConfidenceConfig()
    gate: GateConfig = GateConfig()
    heartbeat: HeartbeatConfig = HeartbeatConfig()
    learning: LearningConfig = LearningConfig()
    memory: MemoryConfig = MemoryConfig()
    persistence: PersistenceConfig = PersistenceConfig()

    @property
    def db_path(self) -> str:
        return os.path.join(self.persistence.data_dir, self.persistence.db_file)


# ── Loader ───────────────────────────────────────────────────────

def load_autonomy_config(config_path: Optional[str] = None) -> AutonomyConfig:
    """Load autonomy config from YAML.

    Args:
        config_path: Path to autonomy.yaml. If None, searches standard locations.

    Returns:
        Parsed AutonomyConfig. Returns defaults if file is missing or invalid.
    """
    if config_path is None:
        candidates = [
            os.environ.get("KEYSTONE_AUTONOMY_CONFIG", ""),
            "config/autonomy.yaml",
            os.path.join(os.path.dirname(__file__), "../../../config/autonomy.yaml"),
        ]
        for candidate in candidates:
            if candidate and os.path.exists(candidate):
                config_path = candidate
                break

    if config_path is None or not os.path.exists(config_path):
        logger.warning("Autonomy config not found, using defaults")
        return AutonomyConfig()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)

        if raw is None:
            logger.warning("Autonomy config is empty, using defaults")
            return AutonomyConfig()

        return AutonomyConfig.model_validate(raw)
    except Exception as e:
        logger.error("Failed to load autonomy config: %s", e)
        return AutonomyConfig()
