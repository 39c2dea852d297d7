"""
Autonomy API — /api/autonomy/*

Proposals, pending approvals, compensation and per-user autonomy settings.
"""

import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.core.autonomy.settings import AutonomyPreset, AutonomySettings, normalize_overrides
from src.core.errors import ActionExecutionError, AutonomyError, PendingActionError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/autonomy", tags=["autonomy"])

_engine = None


def init_autonomy_api(engine=None) -> None:
    global _engine
    _engine = engine
    logger.info("Autonomy API initialised (engine=%s)", _engine is not None)


def _safe_error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, "status": status_code, **extra})


class ProposeRequest(BaseModel):
    user_id: str
    action_name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    reasoning: str = ""
    conversation_id: str = ""
    intent: Optional[str] = None


class ResolveRequest(BaseModel):
    verdict: Literal["approve", "reject"]
    resolved_by: Optional[str] = None


class SettingsRequest(BaseModel):
    preset: AutonomyPreset = AutonomyPreset.BALANCED
    category_overrides: Dict[str, Any] = Field(default_factory=dict)


def _pending_dict(p) -> Dict[str, Any]:
    return {
        "id": p.id,
        "decision_id": p.decision_id,
        "user_id": p.user_id,
        "action_name": p.action_name,
        "parameters": p.parameters,
        "reason": p.reason,
        "status": p.status.value,
        "created_at": p.created_at.isoformat(),
        "resolved_at": p.resolved_at.isoformat() if p.resolved_at else None,
        "resolved_by": p.resolved_by,
    }


def _execution_error(exc: ActionExecutionError) -> JSONResponse:
    pretty = exc.action_name.replace("_", " ")
    return _safe_error(
        502,
        f"I tried to {pretty} {exc.attempts} time(s) but it failed.",
        decision_id=exc.decision_id,
        error_category=exc.error_category,
    )


@router.post("/propose")
async def propose(body: ProposeRequest):
    """Gate a proposed action and run it if allowed."""
    if _engine is None:
        return _safe_error(503, "Autonomy engine not initialised")
    try:
        verdict = _engine.propose(
            body.user_id, body.action_name, body.parameters,
            body.reasoning, body.conversation_id, body.intent,
        )
        return verdict.to_dict()
    except ActionExecutionError as exc:
        return _execution_error(exc)
    except Exception as exc:
        logger.error("propose error: %s", exc)
        return _safe_error(500, "Failed to evaluate action")


@router.get("/pending")
async def list_pending(user_id: Optional[str] = None):
    """Pending actions awaiting approval."""
    if _engine is None:
        return _safe_error(503, "Autonomy engine not initialised")
    try:
        pending = _engine.list_pending(user_id)
        return {"pending": [_pending_dict(p) for p in pending], "total": len(pending)}
    except Exception as exc:
        logger.error("list_pending error: %s", exc)
        return _safe_error(500, "Failed to list pending actions")


@router.post("/pending/{pending_id}/resolve")
async def resolve_pending(pending_id: str, body: ResolveRequest):
    """Approve (and execute) or reject a pending action."""
    if _engine is None:
        return _safe_error(503, "Autonomy engine not initialised")
    try:
        verdict = _engine.resolve_pending(
            pending_id, approve=body.verdict == "approve", resolved_by=body.resolved_by,
        )
        return verdict.to_dict()
    except PendingActionError as exc:
        if exc.status is None:
            return _safe_error(404, str(exc))
        return _safe_error(409, str(exc), current_status=exc.status)
    except ActionExecutionError as exc:
        return _execution_error(exc)
    except Exception as exc:
        logger.error("resolve_pending error: %s", exc)
        return _safe_error(500, "Failed to resolve pending action")


@router.post("/decisions/{decision_id}/compensate")
async def compensate(decision_id: str):
    """Undo an executed action with its compensation action."""
    if _engine is None:
        return _safe_error(503, "Autonomy engine not initialised")
    try:
        return _engine.compensate(decision_id).to_dict()
    except KeyError:
        return _safe_error(404, f"Decision {decision_id} not found")
    except ActionExecutionError as exc:
        return _execution_error(exc)
    except AutonomyError as exc:
        return _safe_error(409, str(exc))
    except Exception as exc:
        logger.error("compensate error: %s", exc)
        return _safe_error(500, "Failed to compensate decision")


@router.get("/settings/{user_id}")
async def get_settings(user_id: str):
    if _engine is None:
        return _safe_error(503, "Autonomy engine not initialised")
    try:
        return _engine.settings.get(user_id).to_dict()
    except Exception as exc:
        logger.error("get_settings error: %s", exc)
        return _safe_error(500, "Failed to load autonomy settings")


@router.put("/settings/{user_id}")
async def put_settings(user_id: str, body: SettingsRequest):
    if _engine is None:
        return _safe_error(503, "Autonomy engine not initialised")
    try:
        overrides = normalize_overrides(body.category_overrides)
    except ValueError as exc:
        return _safe_error(400, str(exc))
    try:
        saved = _engine.settings.save(AutonomySettings(
            user_id=user_id, preset=body.preset, category_overrides=overrides,
        ))
        return saved.to_dict()
    except Exception as exc:
        logger.error("put_settings error: %s", exc)
        return _safe_error(500, "Failed to save autonomy settings")
