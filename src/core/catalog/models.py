"""
Action Catalog Data Models

Immutable descriptions of executable action types: category, risk level,
minimum autonomy tier, reversibility and resilience policy. These models
have zero external dependencies beyond stdlib.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Optional


# ── Category / Risk Enums ────────────────────────────────────────

class ActionCategory(str, Enum):
    """Kind of action, used for autonomy presets and source quality."""
    QUERY = "query"
    ACTION = "action"
    GENERATE = "generate"
    EXTERNAL = "external"
    INTEGRATION = "integration"
    WORKFLOW = "workflow"
    MEMORY = "memory"
    PLANNING = "planning"


class RiskLevel(IntEnum):
    """Ordered risk levels. CRITICAL actions are always held for approval."""
    NONE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Any) -> RiskLevel:
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        return cls[str(value).upper()]


MIN_TIER = 1
MAX_TIER = 5


# ── Resilience ───────────────────────────────────────────────────

class ErrorCategory(str, Enum):
    """How an execution failure should be treated."""
    TRANSIENT = "transient"
    DEGRADED = "degraded"
    PERMANENT_SYSTEM = "permanent_system"
    PERMANENT_LOGIC = "permanent_logic"
    USER_ACTION_REQUIRED = "user_action_required"
    SAFETY_HALT = "safety_halt"

    @property
    def retryable(self) -> bool:
        return self in (ErrorCategory.TRANSIENT, ErrorCategory.DEGRADED)


TIMEOUT_TIERS: Dict[str, float] = {
    "fast": 5.0,
    "standard": 10.0,
    "extended": 30.0,
    "long": 60.0,
    "workflow": 120.0,
}


@dataclass(frozen=True)
class ResiliencePolicy:
    """Retry and timeout policy for one action type."""
    max_attempts: int = 2
    timeout_tier: str = "standard"
    fallback: str = "manual_escalation"
    backoff_base_s: float = 0.5
    backoff_max_s: float = 8.0

    @property
    def timeout_s(self) -> float:
        return TIMEOUT_TIERS.get(self.timeout_tier, TIMEOUT_TIERS["standard"])

    def backoff_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        if self.backoff_base_s <= 0:
            return 0.0
        return min(self.backoff_base_s * (2 ** (attempt - 1)), self.backoff_max_s)


RESILIENCE_PRESETS: Dict[ActionCategory, ResiliencePolicy] = {
    ActionCategory.QUERY: ResiliencePolicy(max_attempts=3, timeout_tier="fast", fallback="cache"),
    ActionCategory.ACTION: ResiliencePolicy(max_attempts=2, timeout_tier="standard", fallback="manual_escalation"),
    ActionCategory.GENERATE: ResiliencePolicy(max_attempts=2, timeout_tier="extended", fallback="simplified"),
    ActionCategory.EXTERNAL: ResiliencePolicy(max_attempts=3, timeout_tier="extended", fallback="cache"),
    ActionCategory.INTEGRATION: ResiliencePolicy(max_attempts=3, timeout_tier="extended", fallback="manual_escalation"),
    ActionCategory.WORKFLOW: ResiliencePolicy(max_attempts=1, timeout_tier="workflow", fallback="manual_escalation"),
    ActionCategory.MEMORY: ResiliencePolicy(max_attempts=2, timeout_tier="fast", fallback="skip"),
    ActionCategory.PLANNING: ResiliencePolicy(max_attempts=2, timeout_tier="standard", fallback="simplified"),
}


# ── Action Definition ────────────────────────────────────────────

@dataclass(frozen=True)
class ActionDefinition:
    """Catalog entry for one executable action type."""
    name: str
    category: ActionCategory
    risk_level: RiskLevel
    min_autonomy_tier: int
    reversible: bool = False
    compensation_action: Optional[str] = None
    resilience: Optional[ResiliencePolicy] = None
    description: str = ""

    @property
    def policy(self) -> ResiliencePolicy:
        """Explicit policy, else the category preset."""
        return self.resilience or RESILIENCE_PRESETS[self.category]

    @property
    def is_critical(self) -> bool:
        return self.risk_level >= RiskLevel.CRITICAL

    @property
    def is_read_only(self) -> bool:
        return self.category == ActionCategory.QUERY

    def to_dict(self) -> Dict[str, Any]:
        policy = self.policy
        return {
            "name": self.name,
            "category": self.category.value,
            "risk_level": self.risk_level.label,
            "min_autonomy_tier": self.min_autonomy_tier,
            "reversible": self.reversible,
            "compensation_action": self.compensation_action,
            "resilience": {
                "max_attempts": policy.max_attempts,
                "timeout_s": policy.timeout_s,
                "tier": policy.timeout_tier,
                "fallback": policy.fallback,
            },
            "description": self.description,
        }


@dataclass
class ExecutionResult:
    """What a handler run produced, with attempt bookkeeping."""
    action_name: str
    success: bool
    data: Any = None
    error: str = ""
    error_category: Optional[ErrorCategory] = None
    attempts: int = 1
    duration_ms: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
