"""
Decision Ledger

Append-only evidence store: decisions, pending approvals, outcomes,
trajectories and per-action execution statistics.
"""

from src.core.ledger.models import (
    Decision,
    DecisionType,
    FeedbackType,
    Outcome,
    OutcomeType,
    PendingAction,
    PendingStatus,
    ToolGenome,
    Trajectory,
    Verdict,
)
from src.core.ledger.store import DecisionLedger

__all__ = [
    "Decision",
    "DecisionLedger",
    "DecisionType",
    "FeedbackType",
    "Outcome",
    "OutcomeType",
    "PendingAction",
    "PendingStatus",
    "ToolGenome",
    "Trajectory",
    "Verdict",
]
