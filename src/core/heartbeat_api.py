"""
Heartbeat API — /api/heartbeat/*

Manual heartbeat runs, the last run summary and task management.
"""

import logging
import sqlite3
from typing import Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from src.core import feature_flags
from src.core.heartbeat.tasks import TaskStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/heartbeat", tags=["heartbeat"])

_runner = None


def init_heartbeat_api(runner=None) -> None:
    global _runner
    _runner = runner
    logger.info("Heartbeat API initialised (runner=%s)", _runner is not None)


def _safe_error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, "status": status_code})


def _unavailable() -> Optional[JSONResponse]:
    if not feature_flags.FEATURE_HEARTBEAT:
        return _safe_error(503, "Heartbeat is disabled")
    if _runner is None:
        return _safe_error(503, "Heartbeat runner not initialised")
    return None


class RunRequest(BaseModel):
    user_id: Optional[str] = None


class TaskStatusRequest(BaseModel):
    status: TaskStatus


@router.post("/run")
async def run_heartbeat(body: Optional[RunRequest] = None):
    """Run one heartbeat pass for a single user or everyone."""
    unavailable = _unavailable()
    if unavailable:
        return unavailable
    try:
        result = _runner.run(body.user_id if body else None)
        return result.to_dict()
    except Exception as exc:
        logger.error("run_heartbeat error: %s", exc)
        return _safe_error(500, "Heartbeat run failed")


@router.get("/status")
async def heartbeat_status():
    unavailable = _unavailable()
    if unavailable:
        return unavailable
    last = _runner.last_result
    return {"last_result": last.to_dict() if last else None}


@router.get("/tasks/{user_id}")
async def list_tasks(user_id: str, open_only: bool = False, limit: int = 100):
    unavailable = _unavailable()
    if unavailable:
        return unavailable
    try:
        tasks = _runner.tasks.list_tasks(user_id, open_only=open_only, limit=limit)
        return {"tasks": [t.to_dict() for t in tasks], "total": len(tasks)}
    except Exception as exc:
        logger.error("list_tasks error: %s", exc)
        return _safe_error(500, "Failed to list tasks")


@router.patch("/tasks/{task_id}")
async def update_task(task_id: str, body: TaskStatusRequest):
    """Move a task to a new status; terminal tasks are scored on the next run."""
    unavailable = _unavailable()
    if unavailable:
        return unavailable
    try:
        task = _runner.tasks.update_status(task_id, body.status)
    except sqlite3.IntegrityError:
        return _safe_error(409, "Another open task already covers this item")
    except Exception as exc:
        logger.error("update_task error: %s", exc)
        return _safe_error(500, "Failed to update task")
    if task is None:
        return _safe_error(404, f"Task {task_id} not found")
    return task.to_dict()
