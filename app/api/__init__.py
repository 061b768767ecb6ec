from app.api.vps import router as vps_router
from app.api.instances import router as instances_router
from app.api.deployments import router as deployments_router
from app.api.deps import get_orchestrator, set_orchestrator

__all__ = [
    "vps_router",
    "instances_router",
    "deployments_router",
    "get_orchestrator",
    "set_orchestrator",
]
