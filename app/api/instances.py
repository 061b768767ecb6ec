"""
Tenant instance endpoints.

POST   /api/instances                        — create a tenant (201 shared, 202 dedicated)
GET    /api/instances/{deployment_id}/status — dedicated deployment progress
GET    /api/instances                        — list tenants
GET    /api/instances/by-slug/{slug}         — one tenant
DELETE /api/instances/{slug}                 — offboard a shared tenant
"""

import logging
from typing import List, Union

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_orchestrator
from app.config import settings
from app.db import get_db
from app.errors import NotFoundError
from app.schemas import (
    InstanceCreate, SharedInstanceResponse, DedicatedInstanceResponse,
    DeploymentStatusResponse, TenantResponse, VPSSummary,
)
from app.services.deployment_orchestrator import DeploymentOrchestrator
from app.services.tenant_registry import TenantRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/instances", tags=["Instances"])


@router.post(
    "",
    response_model=Union[SharedInstanceResponse, DedicatedInstanceResponse],
    status_code=status.HTTP_201_CREATED,
    responses={202: {"model": DedicatedInstanceResponse, "description": "Dedicated deployment accepted"}},
)
async def create_instance(
    data: InstanceCreate,
    response: Response,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Place a shared tenant immediately, or start a dedicated deployment."""
    result = await orchestrator.provision_tenant(data)
    tenant = TenantResponse.model_validate(result.tenant)

    if not result.is_dedicated:
        return SharedInstanceResponse(tenant=tenant, vps=VPSSummary.model_validate(result.vps))

    deployment = result.deployment
    response.status_code = status.HTTP_202_ACCEPTED
    return DedicatedInstanceResponse(
        deployment_id=deployment.id,
        status=deployment.status,
        status_url=f"{settings.api_prefix}{router.prefix}/{deployment.id}/status",
        tenant=tenant,
        submitted=data.model_dump(by_alias=True, mode="json"),
    )


@router.get("/{deployment_id}/status", response_model=DeploymentStatusResponse)
async def get_deployment_status(
    deployment_id: str,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_deployment(deployment_id)


@router.get("", response_model=List[TenantResponse])
async def list_instances(db: AsyncSession = Depends(get_db)):
    return await TenantRegistry(db).list_all()


@router.get("/by-slug/{slug}", response_model=TenantResponse)
async def get_instance(slug: str, db: AsyncSession = Depends(get_db)):
    tenant = await TenantRegistry(db).get_by_slug(slug)
    if tenant is None:
        raise NotFoundError(f"Tenant '{slug}' not found")
    return tenant


@router.delete("/{slug}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_instance(
    slug: str,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Offboard a shared tenant; its slot on the VPS is released."""
    await orchestrator.release_tenant(slug)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
