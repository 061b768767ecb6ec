"""
In-process provisioner for development and demos.

Each handle walks through a fixed list of install steps, spending
``steps_per_stage`` polls on each, and then reports ready with an address from
the 198.51.100.0/24 documentation range.
"""

import logging
import uuid
from dataclasses import dataclass

from app.errors import ProviderError
from app.services.provisioner import VPSSpec, ProviderStatus, ProviderState

logger = logging.getLogger(__name__)

INSTALL_STEPS = [
    "Allocating server",
    "Installing operating system",
    "Configuring network",
    "Installing tenant stack",
    "Running health checks",
]


@dataclass
class _SimulatedMachine:
    spec: VPSSpec
    ip_address: str
    polls: int = 0
    torn_down: bool = False


class SimulatedProvisioner:
    def __init__(self, steps_per_stage: int = 1):
        self.steps_per_stage = max(1, int(steps_per_stage))
        self._machines: dict[str, _SimulatedMachine] = {}
        self._next_host = 10
        # client token -> handle
        self._by_token: dict[str, str] = {}

    async def create_vps(self, spec: VPSSpec) -> str:
        if spec.client_token in self._by_token:
            return self._by_token[spec.client_token]

        handle = f"sim-{uuid.uuid4().hex[:12]}"
        ip_address = f"198.51.100.{self._next_host}"
        self._next_host = 10 if self._next_host >= 250 else self._next_host + 1
        self._machines[handle] = _SimulatedMachine(spec=spec, ip_address=ip_address)
        if spec.client_token:
            self._by_token[spec.client_token] = handle
        logger.info("Simulated VPS %s created for %s", handle, spec.name)
        return handle

    async def poll_status(self, handle: str) -> ProviderStatus:
        machine = self._machines.get(handle)
        if machine is None:
            # Handles do not survive a restart of the process
            return ProviderStatus(ProviderState.ERROR, f"Unknown simulated VPS {handle}")
        if machine.torn_down:
            return ProviderStatus(ProviderState.ERROR, f"Simulated VPS {handle} was torn down")

        step = machine.polls // self.steps_per_stage
        machine.polls += 1
        if step < len(INSTALL_STEPS):
            return ProviderStatus(ProviderState.IN_PROGRESS, INSTALL_STEPS[step])
        return ProviderStatus(ProviderState.READY, "Server ready", ip_address=machine.ip_address)

    async def teardown(self, handle: str) -> None:
        machine = self._machines.get(handle)
        if machine is None:
            raise ProviderError(f"Unknown simulated VPS {handle}")
        machine.torn_down = True
        logger.info("Simulated VPS %s torn down", handle)
