"""
Fleet Orchestrator - Main Application Entry Point
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from app.config import settings
from app.db import init_db, async_session_maker
from app.api import vps_router, instances_router, deployments_router, set_orchestrator
from app.errors import register_exception_handlers
from app.services.deployment_orchestrator import DeploymentOrchestrator
from app.services.provisioner import get_provisioner
from app.structured_logging import setup_logging

logger = logging.getLogger(__name__)

# Global start time for uptime tracking
_app_start_time = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - runs on startup and shutdown"""
    global _app_start_time
    _app_start_time = time.time()

    # Startup
    setup_logging(settings.log_level, json_output=settings.log_json)
    logger.info("%s starting up...", settings.app_name)
    await init_db()
    logger.info("Database initialized")

    orchestrator = DeploymentOrchestrator(async_session_maker, get_provisioner(settings))
    set_orchestrator(orchestrator)
    logger.info("Deployment orchestrator ready (provider: %s)", settings.provisioner_backend)

    if settings.resume_deployments_on_startup:
        await orchestrator.resume_inflight()

    yield

    # Shutdown: workflows stop, their state stays durable for the next start
    logger.info("%s shutting down...", settings.app_name)
    await orchestrator.shutdown()
    set_orchestrator(None)
    logger.info("%s shutdown complete.", settings.app_name)


app = FastAPI(
    title=settings.app_name,
    description="Tenant provisioning and VPS fleet orchestration",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Include routers
app.include_router(vps_router, prefix=settings.api_prefix)
app.include_router(instances_router, prefix=settings.api_prefix)
app.include_router(deployments_router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "status": "healthy",
        "version": "1.0.0",
    }


@app.get("/health")
async def health():
    """Health check with a database probe and the number of running workflows."""
    db_status = "connected"
    try:
        async with async_session_maker() as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        db_status = f"error: {e}"

    from app.api.deps import _orchestrator
    uptime = time.time() - _app_start_time if _app_start_time else 0

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": "1.0.0",
        "uptime_seconds": round(uptime, 1),
        "database": db_status,
        "provisioner": settings.provisioner_backend,
        "running_deployments": len(_orchestrator.running()) if _orchestrator else 0,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
