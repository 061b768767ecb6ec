"""
Fleet Registry — durable record of every VPS and its capacity.

Capacity changes are single conditional UPDATE statements executed inside the
caller's transaction, so "check there is a free slot" and "take the slot" can
never be split by a concurrent placement. Methods flush but never commit;
the caller owns the transaction.
"""

import ipaddress
import logging
from typing import Dict, List, Optional

from sqlalchemy import select, update, func, case
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import VPS, VPSStatus, DeploymentType, utcnow
from app.errors import ValidationError, NotFoundError, ConflictError, CapacityExceededError
from app.schemas import VPSCreate

logger = logging.getLogger(__name__)


def validate_ip_address(value: str) -> str:
    """Return the canonical form of an IPv4/IPv6 address or raise ValidationError."""
    try:
        return str(ipaddress.ip_address((value or "").strip()))
    except ValueError:
        raise ValidationError(f"Invalid IP address: {value!r}", details={"field": "ip_address"})


class FleetRegistry:
    """CRUD over VPS rows plus the capacity-sensitive reads and writes"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Registration ─────────────────────────────────────────────────────

    async def register(self, data: VPSCreate) -> VPS:
        """Insert an operator-registered VPS with ``current_tenants = 0``."""
        ip = validate_ip_address(data.ip_address)
        deployment_type = DeploymentType(data.deployment_type)

        if deployment_type == DeploymentType.SHARED:
            if data.max_tenants is None or data.max_tenants < 1:
                raise ValidationError(
                    "Shared VPS requires max_tenants >= 1", details={"field": "max_tenants"}
                )
            max_tenants = data.max_tenants
        else:
            max_tenants = None  # Ignored for dedicated

        name = data.name.strip()
        existing = await self.db.execute(select(VPS.id).where(VPS.name == name))
        if existing.scalar_one_or_none():
            raise ConflictError(f"A VPS named '{name}' is already registered")

        vps = VPS(
            name=name,
            ip_address=ip,
            location=data.location,
            deployment_type=deployment_type.value,
            status=VPSStatus(data.status).value,
            max_tenants=max_tenants,
            current_tenants=0,
            cpu_cores=data.cpu_cores,
            memory_mb=data.memory_mb,
            disk_gb=data.disk_gb,
        )
        self.db.add(vps)
        try:
            await self.db.flush()
        except IntegrityError:
            raise ConflictError(f"A VPS named '{name}' is already registered")

        logger.info("Registered %s VPS %s (%s, max_tenants=%s)", deployment_type.value, vps.id, name, max_tenants)
        return vps

    async def create_dedicated(
        self,
        name: str,
        cpu_cores: int,
        memory_mb: int,
        disk_gb: int,
        provider_handle: str,
        location: Optional[str] = None,
    ) -> VPS:
        """Insert the row for a dedicated VPS the provider is still building."""
        vps = VPS(
            name=name,
            ip_address=None,
            location=location,
            deployment_type=DeploymentType.DEDICATED.value,
            status=VPSStatus.PROVISIONING.value,
            max_tenants=None,
            current_tenants=0,
            cpu_cores=cpu_cores,
            memory_mb=memory_mb,
            disk_gb=disk_gb,
            provider_handle=provider_handle,
        )
        self.db.add(vps)
        await self.db.flush()
        return vps

    # ── Reads ────────────────────────────────────────────────────────────

    async def get(self, vps_id: str) -> VPS:
        vps = await self.db.get(VPS, vps_id)
        if vps is None:
            raise NotFoundError(f"VPS {vps_id} not found")
        return vps

    async def list_all(self) -> List[VPS]:
        result = await self.db.execute(
            select(VPS).order_by(VPS.deployment_type, VPS.name)
        )
        return list(result.scalars().all())

    async def list_available_shared(self) -> List[VPS]:
        """Active shared VPS with a free slot, least-loaded first, ties by id."""
        result = await self.db.execute(
            select(VPS)
            .where(VPS.deployment_type == DeploymentType.SHARED.value)
            .where(VPS.status == VPSStatus.ACTIVE.value)
            .where(VPS.current_tenants < VPS.max_tenants)
            .order_by(VPS.current_tenants.asc(), VPS.id.asc())
        )
        return list(result.scalars().all())

    async def stats(self) -> Dict[str, int]:
        """Aggregate counts computed on demand from the rows."""
        is_shared = VPS.deployment_type == DeploymentType.SHARED.value
        is_active_shared = (VPS.deployment_type == DeploymentType.SHARED.value) & (
            VPS.status == VPSStatus.ACTIVE.value
        )
        row = (
            await self.db.execute(
                select(
                    func.count(VPS.id),
                    func.sum(case((is_shared, 1), else_=0)),
                    func.sum(case((VPS.deployment_type == DeploymentType.DEDICATED.value, 1), else_=0)),
                    func.sum(case((VPS.status == VPSStatus.ACTIVE.value, 1), else_=0)),
                    func.sum(VPS.current_tenants),
                    func.sum(case((is_active_shared, VPS.max_tenants), else_=0)),
                    func.sum(case((is_active_shared, VPS.current_tenants), else_=0)),
                )
            )
        ).one()
        total, shared, dedicated, active, tenants, capacity, used = (int(v or 0) for v in row)
        return {
            "total_vps": total,
            "shared_vps": shared,
            "dedicated_vps": dedicated,
            "active_vps": active,
            "total_tenants": tenants,
            "shared_capacity": capacity,
            "shared_used": used,
        }

    # ── Capacity ─────────────────────────────────────────────────────────

    async def increment_tenant_count(self, vps_id: str) -> int:
        """Take one slot on a VPS. Returns the new count.

        The capacity check lives in the WHERE clause, so two concurrent
        increments against the last free slot cannot both match.
        """
        result = await self.db.execute(
            update(VPS)
            .where(VPS.id == vps_id)
            .where(
                ((VPS.deployment_type == DeploymentType.SHARED.value) & (VPS.current_tenants < VPS.max_tenants))
                | ((VPS.deployment_type == DeploymentType.DEDICATED.value) & (VPS.current_tenants < 1))
            )
            .values(current_tenants=VPS.current_tenants + 1, updated_at=utcnow())
            .returning(VPS.current_tenants)
            .execution_options(synchronize_session=False)
        )
        new_count = result.scalar_one_or_none()
        if new_count is None:
            await self._raise_missing_or_full(vps_id)
        logger.debug("VPS %s tenant count -> %s", vps_id, new_count)
        return new_count

    async def decrement_tenant_count(self, vps_id: str) -> int:
        """Release one slot on a VPS. Returns the new count."""
        result = await self.db.execute(
            update(VPS)
            .where(VPS.id == vps_id)
            .where(VPS.current_tenants > 0)
            .values(current_tenants=VPS.current_tenants - 1, updated_at=utcnow())
            .returning(VPS.current_tenants)
            .execution_options(synchronize_session=False)
        )
        new_count = result.scalar_one_or_none()
        if new_count is None:
            vps = await self.get(vps_id)
            raise ConflictError(f"VPS {vps.id} has no tenants to release")
        logger.debug("VPS %s tenant count -> %s", vps_id, new_count)
        return new_count

    async def _raise_missing_or_full(self, vps_id: str) -> None:
        vps = await self.get(vps_id)
        raise CapacityExceededError(
            f"VPS {vps.name} is at capacity",
            details={"vps_id": vps.id, "max_tenants": vps.max_tenants},
        )

    # ── Status & telemetry ───────────────────────────────────────────────

    async def set_status(self, vps_id: str, status: VPSStatus) -> VPS:
        vps = await self.get(vps_id)
        status = VPSStatus(status)
        if vps.deployment_type == DeploymentType.DEDICATED.value and status == VPSStatus.ACTIVE and not vps.ip_address:
            raise ValidationError("A dedicated VPS without an IP address cannot be activated manually")
        vps.status = status.value
        await self.db.flush()
        logger.info("VPS %s status -> %s", vps.id, status.value)
        return vps

    async def mark_dedicated_active(self, vps_id: str, ip_address: str) -> VPS:
        """Provider reported ready: VPS goes active and hosts its single tenant."""
        vps = await self.get(vps_id)
        vps.ip_address = validate_ip_address(ip_address)
        vps.status = VPSStatus.ACTIVE.value
        await self.db.flush()
        await self.increment_tenant_count(vps_id)
        await self.db.refresh(vps)
        return vps

    async def mark_offline(self, vps_id: str) -> VPS:
        vps = await self.get(vps_id)
        vps.status = VPSStatus.OFFLINE.value
        await self.db.flush()
        return vps

    async def update_telemetry(self, vps_id: str, cpu_pct: float, mem_pct: float) -> bool:
        """Best-effort telemetry write. Never raises; returns whether it was stored."""
        try:
            result = await self.db.execute(
                update(VPS)
                .where(VPS.id == vps_id)
                .values(
                    cpu_usage_percent=float(cpu_pct),
                    memory_usage_percent=float(mem_pct),
                    telemetry_updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                logger.debug("Telemetry for unknown VPS %s ignored", vps_id)
                return False
            return True
        except (SQLAlchemyError, TypeError, ValueError) as exc:
            logger.warning("Telemetry update for VPS %s dropped: %s", vps_id, exc)
            await self.db.rollback()
            return False
