"""
Autonomy Graduation — proposes raising a category's tier after a streak of
approvals.

A streak of `approval_threshold × backoff` consecutive approvals in one
category yields a proposal to raise that category's tier by one. Declining
doubles the backoff (capped); accepting writes the category override.
Any rejection or correction resets the streak.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from src.core.autonomy.config import GraduationConfig
from src.core.autonomy.settings import AutonomySettingsStore
from src.core.catalog.models import MAX_TIER
from src.core.learning.models import GraduationProposal
from src.core.learning.store import LearningStore
from src.core.ledger.models import FeedbackType
from src.core.storage import generate_id

logger = logging.getLogger(__name__)


class GraduationTracker:
    """Tracks approval streaks per (user, category)."""

    def __init__(
        self,
        store: LearningStore,
        settings: AutonomySettingsStore,
        config: Optional[GraduationConfig] = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._config = config or GraduationConfig()

    def record_feedback(
        self, user_id: str, category: str, feedback: FeedbackType
    ) -> Optional[GraduationProposal]:
        """Update the streak; return a new proposal when the threshold is met."""
        if not self._config.enabled:
            return None

        state = self._store.get_graduation_state(user_id, category)
        if feedback != FeedbackType.APPROVED:
            if state["consecutive_approvals"]:
                logger.debug("Graduation streak reset for %s/%s", user_id, category)
            state["consecutive_approvals"] = 0
            self._store.save_graduation_state(state)
            return None

        state["consecutive_approvals"] += 1
        proposal: Optional[GraduationProposal] = None
        current = self._settings.get(user_id).tier_for(category)
        threshold = self._config.approval_threshold * state["backoff_multiplier"]
        if (
            state["proposal_id"] is None
            and current < MAX_TIER
            and state["consecutive_approvals"] >= threshold
        ):
            proposal = GraduationProposal(
                id=generate_id(),
                user_id=user_id,
                category=category,
                current_tier=current,
                proposed_tier=current + 1,
                consecutive_approvals=state["consecutive_approvals"],
            )
            state["proposal_id"] = proposal.id
            state["proposed_tier"] = proposal.proposed_tier
            logger.info(
                "Graduation proposal for %s/%s: L%d→L%d (%d approvals)",
                user_id, category, current, current + 1, state["consecutive_approvals"],
            )
        self._store.save_graduation_state(state)
        return proposal

    def pending(self, user_id: str) -> List[GraduationProposal]:
        return self._store.pending_graduations(user_id)

    def respond(self, user_id: str, category: str, accept: bool) -> GraduationProposal:
        """Accept or decline the open proposal for a category.

        Raises:
            KeyError: If there is no open proposal.
        """
        state = self._store.get_graduation_state(user_id, category)
        if state["proposal_id"] is None:
            raise KeyError(f"No graduation proposal for {user_id}/{category}")

        proposed = int(state["proposed_tier"])
        proposal = GraduationProposal(
            id=state["proposal_id"],
            user_id=user_id,
            category=category,
            current_tier=proposed - 1,
            proposed_tier=proposed,
            consecutive_approvals=state["consecutive_approvals"],
        )
        if accept:
            self._settings.set_override(user_id, category, proposed)
            state["backoff_multiplier"] = 1
            proposal.status = "accepted"
            logger.info("Graduation accepted for %s/%s → L%d", user_id, category, proposed)
        else:
            state["backoff_multiplier"] = min(
                state["backoff_multiplier"] * 2, self._config.max_backoff_multiplier
            )
            proposal.status = "declined"
            logger.info(
                "Graduation declined for %s/%s (backoff=%d)",
                user_id, category, state["backoff_multiplier"],
            )
        state["consecutive_approvals"] = 0
        state["proposal_id"] = None
        state["proposed_tier"] = None
        self._store.save_graduation_state(state)
        return proposal
