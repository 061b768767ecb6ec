"""
Capacity Allocator — decides where a new tenant goes.

The decision is advisory: the subsequent atomic increment in the Fleet
Registry is what actually takes the slot, and a lost race there surfaces as
CapacityExceededError for the caller to retry.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from app.db.models import VPS, VPSStatus, DeploymentType
from app.errors import PlacementError, NoCapacityError, NotFoundError
from app.services.fleet_registry import FleetRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlacementDecision:
    """Either an existing shared VPS, or the DEDICATED sentinel (``vps is None``)."""
    deployment_model: DeploymentType
    vps: Optional[VPS] = None

    @property
    def is_dedicated(self) -> bool:
        return self.deployment_model == DeploymentType.DEDICATED


DEDICATED = PlacementDecision(deployment_model=DeploymentType.DEDICATED)


class CapacityAllocator:
    def __init__(self, fleet: FleetRegistry):
        self.fleet = fleet

    async def decide_placement(
        self,
        deployment_model: DeploymentType,
        vps_id: Optional[str] = None,
    ) -> PlacementDecision:
        """Pick a VPS for a tenant.

        Dedicated tenants always get a fresh machine. Shared tenants go on the
        requested VPS when ``vps_id`` is given (after validating it can take
        them), otherwise on the active shared VPS with the fewest tenants.
        """
        if DeploymentType(deployment_model) == DeploymentType.DEDICATED:
            if vps_id:
                raise PlacementError(
                    "Dedicated tenants cannot be placed on an existing VPS",
                    details={"vps_id": vps_id},
                )
            return DEDICATED

        if vps_id:
            vps = await self._validate_explicit(vps_id)
            logger.info("Placing shared tenant on requested VPS %s (%s/%s)", vps.name, vps.current_tenants, vps.max_tenants)
            return PlacementDecision(deployment_model=DeploymentType.SHARED, vps=vps)

        candidates = await self.fleet.list_available_shared()
        if not candidates:
            raise NoCapacityError("No shared VPS has a free tenant slot")

        # list_available_shared is ordered least-loaded first, ties by id
        vps = candidates[0]
        logger.info(
            "Least-loaded shared VPS is %s (%s/%s of %d candidates)",
            vps.name, vps.current_tenants, vps.max_tenants, len(candidates),
        )
        return PlacementDecision(deployment_model=DeploymentType.SHARED, vps=vps)

    async def _validate_explicit(self, vps_id: str) -> VPS:
        try:
            vps = await self.fleet.get(vps_id)
        except NotFoundError:
            raise PlacementError(f"VPS {vps_id} does not exist", details={"vps_id": vps_id})

        if vps.deployment_type != DeploymentType.SHARED.value:
            raise PlacementError(f"VPS {vps.name} is not a shared VPS", details={"vps_id": vps_id})
        if vps.status != VPSStatus.ACTIVE.value:
            raise PlacementError(
                f"VPS {vps.name} is {vps.status}, not active",
                details={"vps_id": vps_id, "status": vps.status},
            )
        if vps.current_tenants >= (vps.max_tenants or 0):
            raise PlacementError(
                f"VPS {vps.name} is full ({vps.current_tenants}/{vps.max_tenants})",
                details={"vps_id": vps_id},
            )
        return vps
