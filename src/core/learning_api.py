"""
Learning API — /api/learning/*

Feedback on decisions, learned rules, message ratings, error reports and
autonomy graduation responses.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from src.core import feature_flags
from src.core.ledger.models import FeedbackType
from src.core.learning.models import ErrorType, FeedbackResult, GraduationProposal, PatternResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/learning", tags=["learning"])

_engine = None


def init_learning_api(engine=None) -> None:
    global _engine
    _engine = engine
    logger.info("Learning API initialised (engine=%s)", _engine is not None)


def _safe_error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, "status": status_code})


def _unavailable() -> Optional[JSONResponse]:
    if not feature_flags.FEATURE_LEARNING or (_engine is not None and _engine.learning is None):
        return _safe_error(503, "Learning is disabled")
    if _engine is None:
        return _safe_error(503, "Autonomy engine not initialised")
    return None


def _proposal_dict(p: Optional[GraduationProposal]) -> Optional[Dict[str, Any]]:
    if p is None:
        return None
    return {
        "id": p.id,
        "user_id": p.user_id,
        "category": p.category,
        "current_tier": p.current_tier,
        "proposed_tier": p.proposed_tier,
        "consecutive_approvals": p.consecutive_approvals,
        "status": p.status,
    }


def _pattern_dict(p: Optional[PatternResult]) -> Optional[Dict[str, Any]]:
    if p is None:
        return None
    return {
        "status": p.status,
        "category": p.category,
        "similar_count": p.similar_count,
        "rule": p.rule.to_dict() if p.rule else None,
        "conflicting_rule_id": p.conflicting_rule_id,
        "conflict_similarity": p.conflict_similarity,
    }


def _feedback_dict(r: FeedbackResult) -> Dict[str, Any]:
    return {
        "decision_id": r.decision_id,
        "feedback": r.feedback,
        "rule_updates": [
            {
                "rule_id": u.rule_id,
                "old_confidence": u.old_confidence,
                "new_confidence": u.new_confidence,
                "deactivated": u.should_deactivate,
            }
            for u in r.rule_updates
        ],
        "correction_id": r.correction.id if r.correction else None,
        "pattern": _pattern_dict(r.pattern),
        "graduation": _proposal_dict(r.graduation),
    }


class FeedbackRequest(BaseModel):
    decision_id: str
    feedback: FeedbackType
    correction: Optional[str] = None


class MessageFeedbackRequest(BaseModel):
    user_id: str
    message_text: str
    positive: bool


class ErrorReportRequest(BaseModel):
    user_id: str
    error_type: ErrorType
    detail: str
    decision_id: Optional[str] = None


class GraduationResponse(BaseModel):
    accept: bool


@router.post("/feedback")
async def submit_feedback(body: FeedbackRequest):
    """Approve, reject or correct a recorded decision."""
    unavailable = _unavailable()
    if unavailable:
        return unavailable
    if body.feedback == FeedbackType.CORRECTED and not (body.correction or "").strip():
        return _safe_error(400, "A correction needs correction text")
    try:
        result = _engine.record_feedback(body.decision_id, body.feedback, body.correction)
        return _feedback_dict(result)
    except KeyError:
        return _safe_error(404, f"Decision {body.decision_id} not found")
    except Exception as exc:
        logger.error("submit_feedback error: %s", exc)
        return _safe_error(500, "Failed to record feedback")


@router.post("/message-feedback")
async def message_feedback(body: MessageFeedbackRequest):
    """Thumbs up or down on an assistant message."""
    unavailable = _unavailable()
    if unavailable:
        return unavailable
    try:
        updates = _engine.learning.process_message_feedback(body.user_id, body.message_text, body.positive)
        return {"rules_updated": len(updates), "rules_deactivated": sum(u.should_deactivate for u in updates)}
    except Exception as exc:
        logger.error("message_feedback error: %s", exc)
        return _safe_error(500, "Failed to record message feedback")


@router.post("/errors")
async def report_error(body: ErrorReportRequest):
    """Learn from a classified assistant mistake."""
    unavailable = _unavailable()
    if unavailable:
        return unavailable
    if not body.detail.strip():
        return _safe_error(400, "detail must not be empty")
    try:
        return _engine.learning.classify_and_learn(body.user_id, body.decision_id, body.error_type, body.detail)
    except Exception as exc:
        logger.error("report_error error: %s", exc)
        return _safe_error(500, "Failed to learn from error report")


@router.get("/rules/{user_id}")
async def list_rules(user_id: str, active_only: bool = True):
    unavailable = _unavailable()
    if unavailable:
        return unavailable
    try:
        rules = _engine.learning.store.list_rules(user_id, active_only=active_only)
        return {"rules": [r.to_dict() for r in rules], "total": len(rules)}
    except Exception as exc:
        logger.error("list_rules error: %s", exc)
        return _safe_error(500, "Failed to list rules")


@router.get("/graduation/{user_id}")
async def pending_graduations(user_id: str):
    if _engine is None or _engine.graduation is None:
        return _safe_error(503, "Graduation tracking not initialised")
    try:
        return {"proposals": [_proposal_dict(p) for p in _engine.graduation.pending(user_id)]}
    except Exception as exc:
        logger.error("pending_graduations error: %s", exc)
        return _safe_error(500, "Failed to list graduation proposals")


@router.post("/graduation/{user_id}/{category}")
async def respond_graduation(user_id: str, category: str, body: GraduationResponse):
    """Accept or decline a proposed autonomy tier increase."""
    if _engine is None or _engine.graduation is None:
        return _safe_error(503, "Graduation tracking not initialised")
    try:
        proposal = _engine.graduation.respond(user_id, category, body.accept)
        return _proposal_dict(proposal)
    except KeyError:
        return _safe_error(404, f"No open graduation proposal for {category}")
    except Exception as exc:
        logger.error("respond_graduation error: %s", exc)
        return _safe_error(500, "Failed to respond to graduation proposal")
