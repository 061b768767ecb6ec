"""
Deployment queue endpoints.

GET /api/deployments/stats — deployment counts by status
"""

from fastapi import APIRouter, Depends

from app.api.deps import get_orchestrator
from app.schemas import DeploymentStatsResponse
from app.services.deployment_orchestrator import DeploymentOrchestrator

router = APIRouter(prefix="/deployments", tags=["Deployments"])


@router.get("/stats", response_model=DeploymentStatsResponse)
async def deployment_stats(orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    return DeploymentStatsResponse(**await orchestrator.deployment_stats())
