from app.services.fleet_registry import FleetRegistry
from app.services.tenant_registry import TenantRegistry, slugify, normalize_slug
from app.services.capacity_allocator import CapacityAllocator, PlacementDecision, DEDICATED
from app.services.provisioner import (
    ProvisionerAdapter, ProviderState, ProviderStatus, VPSSpec, get_provisioner, spec_for_tier,
)
from app.services.deployment_orchestrator import DeploymentOrchestrator, ProvisionResult

__all__ = [
    "FleetRegistry",
    "TenantRegistry",
    "slugify",
    "normalize_slug",
    "CapacityAllocator",
    "PlacementDecision",
    "DEDICATED",
    # Provider contract
    "ProvisionerAdapter",
    "ProviderState",
    "ProviderStatus",
    "VPSSpec",
    "get_provisioner",
    "spec_for_tier",
    "DeploymentOrchestrator",
    "ProvisionResult",
]
