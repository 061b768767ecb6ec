"""Shared FastAPI dependencies"""

from typing import Optional

from app.services.deployment_orchestrator import DeploymentOrchestrator

# Set by the application lifespan
_orchestrator: Optional[DeploymentOrchestrator] = None


def set_orchestrator(orchestrator: Optional[DeploymentOrchestrator]) -> None:
    global _orchestrator
    _orchestrator = orchestrator


def get_orchestrator() -> DeploymentOrchestrator:
    if _orchestrator is None:
        raise RuntimeError("Deployment orchestrator is not running")
    return _orchestrator
