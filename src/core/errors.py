"""
Autonomy Engine Errors — exception taxonomy shared by every subsystem.

ScannerDataError and ConflictSkip are expected, non-fatal conditions;
callers log and continue. ActionExecutionError and GateViolation always
propagate to the requester.
"""

from __future__ import annotations

from typing import Optional


class AutonomyError(Exception):
    """Base class for all autonomy engine errors."""


class CatalogError(AutonomyError):
    """Action catalog or handler registry is inconsistent."""


class ScannerDataError(AutonomyError):
    """One scanner's input data is malformed or missing for one user."""

    def __init__(self, scanner: str, user_id: str, message: str) -> None:
        self.scanner = scanner
        self.user_id = user_id
        super().__init__(f"[user:{user_id}] {scanner}: {message}")


class ActionExecutionError(AutonomyError):
    """An action failed after its resilience policy was exhausted."""

    def __init__(
        self,
        action_name: str,
        message: str,
        attempts: int = 1,
        error_category: str = "permanent_system",
        decision_id: Optional[str] = None,
    ) -> None:
        self.action_name = action_name
        self.attempts = attempts
        self.error_category = error_category
        self.decision_id = decision_id
        super().__init__(
            f"{action_name} failed after {attempts} attempt(s): {message}"
        )


class GateViolation(AutonomyError):
    """An execution was attempted without a valid grant from the gate."""


class ConflictSkip(AutonomyError):
    """A rule candidate duplicates an existing rule; creation is a no-op."""

    def __init__(self, existing_rule_id: str, similarity: float) -> None:
        self.existing_rule_id = existing_rule_id
        self.similarity = similarity
        super().__init__(
            f"Rule candidate redundant with {existing_rule_id} "
            f"(similarity={similarity:.3f})"
        )


class PendingActionError(AutonomyError):
    """A pending action is unknown or no longer pending."""

    def __init__(self, pending_id: str, message: str, status: Optional[str] = None) -> None:
        self.pending_id = pending_id
        self.status = status
        super().__init__(f"Pending action {pending_id}: {message}")
