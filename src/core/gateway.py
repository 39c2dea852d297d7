"""
Gateway — FastAPI application wiring the autonomy, heartbeat and learning
routers to one engine.

The host application owns the action handlers and the property data
source, so it builds the engine and hands it in:

    engine = AutonomyEngine.from_config(handlers)
    app = create_app(engine, HeartbeatRunner(engine, source, tasks))
"""

import logging
import os
import time
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.core import autonomy_api, feature_flags, heartbeat_api, learning_api
from src.core.autonomy.engine import AutonomyEngine
from src.core.heartbeat.runner import HeartbeatRunner
from src.core.heartbeat.sources import PropertyDataSource
from src.core.heartbeat.tasks import TaskStore

LOG_LEVEL = os.getenv("KEYSTONE_LOG_LEVEL", "INFO").upper()
logger = logging.getLogger(__name__)


def build_runner(engine: AutonomyEngine, source: PropertyDataSource) -> HeartbeatRunner:
    """Heartbeat runner sharing the engine's SQLite file."""
    tasks = TaskStore(engine.config.db_path)
    tasks.initialize()
    return HeartbeatRunner(engine, source, tasks)


def create_app(
    engine: Optional[AutonomyEngine] = None,
    runner: Optional[HeartbeatRunner] = None,
    start_heartbeat: bool = False,
) -> FastAPI:
    """Build the API app. Routers answer 503 for missing subsystems."""
    logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))
    app = FastAPI(title="Keystone Autonomy Engine")
    startup_time = time.time()

    allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    autonomy_api.init_autonomy_api(engine)
    learning_api.init_learning_api(engine)
    heartbeat_api.init_heartbeat_api(runner)
    app.include_router(autonomy_api.router)
    app.include_router(learning_api.router)
    app.include_router(heartbeat_api.router)

    @app.on_event("startup")
    async def startup_event():
        feature_flags.log_feature_flags()
        if engine is None:
            logger.warning("No autonomy engine configured; autonomy routes will answer 503")
        if start_heartbeat and runner is not None:
            runner.start_tick_loop()
        logger.info("Keystone gateway started.")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Keystone gateway shutting down.")
        if runner is not None:
            runner.stop()

    @app.get("/health")
    def health_check():
        try:
            components = {
                "engine": "ok" if engine is not None else "unavailable",
                "learning": "ok" if engine is not None and engine.learning is not None else "disabled",
                "semantic_memory": "ok" if feature_flags.FEATURE_SEMANTIC_MEMORY else "fallback",
                "heartbeat": "ok" if runner is not None and feature_flags.FEATURE_HEARTBEAT else "disabled",
            }
            return {
                "status": "online",
                "components": components,
                "flags": feature_flags.get_all_flags(),
                "uptime_seconds": round(time.time() - startup_time, 1),
            }
        except Exception as exc:
            logger.error("Health check error: %s", exc)
            return JSONResponse(
                status_code=500,
                content={"status": "error", "error": "Health check failed"},
            )

    return app
