"""
External Provisioner Adapter contract.

The orchestrator only ever talks to a provider through these three calls:
``create_vps`` returns an opaque handle, ``poll_status`` reports progress for
that handle, and ``teardown`` releases it. Transport failures raise
``ProviderUnavailableError``; anything the provider itself rejects raises
``ProviderError``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol, runtime_checkable

from app.config import Settings, settings as default_settings


class ProviderState(str, Enum):
    IN_PROGRESS = "in_progress"
    READY = "ready"
    ERROR = "error"


@dataclass
class VPSSpec:
    """What the orchestrator asks the provider to build"""
    name: str
    tier: str
    cpu_cores: int
    memory_mb: int
    disk_gb: int
    tags: dict[str, str] = field(default_factory=dict)
    # Repeating create_vps with the same token must not build a second machine
    client_token: Optional[str] = None


@dataclass
class ProviderStatus:
    state: ProviderState
    detail: str = ""
    ip_address: Optional[str] = None  # set when state is READY


@runtime_checkable
class ProvisionerAdapter(Protocol):
    async def create_vps(self, spec: VPSSpec) -> str:
        ...

    async def poll_status(self, handle: str) -> ProviderStatus:
        ...

    async def teardown(self, handle: str) -> None:
        ...


def spec_for_tier(
    name: str,
    tier: str,
    cfg: Settings = None,
    tags: Optional[dict[str, str]] = None,
    client_token: Optional[str] = None,
) -> VPSSpec:
    """Build a VPSSpec from the configured sizing of a tier."""
    cfg = cfg or default_settings
    sizing = cfg.tier_sizing.get(tier) or cfg.tier_sizing["starter"]
    return VPSSpec(
        name=name,
        tier=tier,
        cpu_cores=sizing["cpu_cores"],
        memory_mb=sizing["memory_mb"],
        disk_gb=sizing["disk_gb"],
        tags=dict(tags or {}),
        client_token=client_token,
    )


def get_provisioner(cfg: Settings = None) -> ProvisionerAdapter:
    """Instantiate the adapter selected by ``provisioner_backend``."""
    cfg = cfg or default_settings
    backend = (cfg.provisioner_backend or "").strip().lower()

    if backend == "aws":
        from app.services.aws_service import Ec2Provisioner
        return Ec2Provisioner(cfg)
    if backend == "simulated":
        from app.services.simulated_provisioner import SimulatedProvisioner
        return SimulatedProvisioner(steps_per_stage=cfg.simulated_steps_per_stage)

    raise ValueError(f"Unknown provisioner backend: {cfg.provisioner_backend!r}")
