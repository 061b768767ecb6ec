"""
Deployment Orchestrator — entry point for putting a tenant on the fleet.

Shared tenants are placed synchronously. Dedicated tenants get a Deployment
record and a background workflow task that drives the provider:

    pending ──create_vps──▶ provisioning ──poll…──▶ active
       │                        │
       └────────────────────────┴──────────────────▶ failed

The workflow communicates only through the durable Deployment row and its
append-only log, so it can be resumed after a restart. Every database step
uses its own short transaction; nothing is held open while sleeping between
polls.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional, Set

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from app.config import settings
from app.db.models import (
    VPS, Organization, Deployment, DeploymentLog,
    DeploymentType, DeploymentStatus, DEPLOYMENT_TRANSITIONS, utcnow,
)
from app.errors import (
    ConflictError, NotFoundError, NoCapacityError, CapacityExceededError,
    InvalidTransitionError, ProviderError, ProviderUnavailableError, ProvisioningTimeoutError,
)
from app.schemas import InstanceCreate
from app.services.capacity_allocator import CapacityAllocator
from app.services.fleet_registry import FleetRegistry
from app.services.provisioner import ProvisionerAdapter, ProviderState, spec_for_tier
from app.services.tenant_registry import TenantRegistry, normalize_slug, slugify
from app.structured_logging import deployment_id_var

logger = logging.getLogger(__name__)


def error_code_for(exc: BaseException) -> str:
    """Machine-readable failure code recorded on a failed deployment."""
    if isinstance(exc, ProvisioningTimeoutError):
        return "provider_timeout"
    if isinstance(exc, ProviderUnavailableError):
        return "provider_unreachable"
    if isinstance(exc, ProviderError):
        return "provider_error"
    return "internal_error"


@dataclass
class ProvisionResult:
    """Outcome of a provisioning request.

    Shared: ``vps`` is the VPS the tenant landed on. Dedicated: ``deployment``
    is the pending Deployment whose workflow has been started.
    """
    tenant: Organization
    vps: Optional[VPS] = None
    deployment: Optional[Deployment] = None

    @property
    def is_dedicated(self) -> bool:
        return self.deployment is not None


class DeploymentOrchestrator:
    """Owns the placement flow and every running deployment workflow"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provisioner: ProvisionerAdapter,
        *,
        poll_interval: Optional[float] = None,
        provisioning_timeout: Optional[float] = None,
        poll_retry_limit: Optional[int] = None,
        placement_attempts: Optional[int] = None,
        tenant_base_domain: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.provisioner = provisioner
        self.poll_interval = settings.provision_poll_interval_seconds if poll_interval is None else poll_interval
        self.provisioning_timeout = (
            settings.provision_timeout_seconds if provisioning_timeout is None else provisioning_timeout
        )
        self.poll_retry_limit = settings.provision_poll_retry_limit if poll_retry_limit is None else poll_retry_limit
        self.placement_attempts = placement_attempts or settings.placement_max_attempts
        self.tenant_base_domain = tenant_base_domain or settings.tenant_base_domain
        # deployment id -> running workflow task
        self._tasks: Dict[str, asyncio.Task] = {}
        # create-and-record steps that must finish even when their workflow is cancelled
        self._critical: Set[asyncio.Task] = set()

    # ── Entry points ─────────────────────────────────────────────────────

    async def provision_tenant(self, request: InstanceCreate) -> ProvisionResult:
        """Create a tenant and place it. Raises FleetError subclasses on rejection."""
        slug = normalize_slug(request.slug or slugify(request.organization_name))

        if DeploymentType(request.deployment_model) == DeploymentType.DEDICATED:
            if request.explicit_vps_id:
                # Let the allocator phrase the rejection
                async with self.session_factory() as db:
                    await CapacityAllocator(FleetRegistry(db)).decide_placement(
                        DeploymentType.DEDICATED, request.explicit_vps_id
                    )
            return await self._submit_dedicated(request, slug)

        return await self._place_shared(request, slug)

    async def get_deployment(self, deployment_id: str) -> Deployment:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Deployment)
                .options(selectinload(Deployment.logs))
                .where(Deployment.id == deployment_id)
            )
            deployment = result.scalar_one_or_none()
        if deployment is None:
            raise NotFoundError(f"Deployment {deployment_id} not found")
        return deployment

    async def deployment_stats(self) -> Dict[str, int]:
        """Deployment counts by status, computed on demand."""
        async with self.session_factory() as db:
            rows = (
                await db.execute(select(Deployment.status, func.count(Deployment.id)).group_by(Deployment.status))
            ).all()
        counts = {status.value: 0 for status in DeploymentStatus}
        counts.update({status: int(count) for status, count in rows})
        return {
            "total": sum(counts.values()),
            **counts,
            "in_flight": counts[DeploymentStatus.PENDING.value] + counts[DeploymentStatus.PROVISIONING.value],
            "running_workflows": len(self.running()),
        }

    async def release_tenant(self, slug: str) -> None:
        """Offboard a shared tenant and give its slot back."""
        async with self.session_factory() as db:
            tenants = TenantRegistry(db)
            tenant = await tenants.get_by_slug(slug, for_update=True)
            if tenant is None:
                raise NotFoundError(f"Tenant '{slug}' not found")
            if tenant.deployment_model == DeploymentType.DEDICATED.value:
                raise ConflictError(
                    f"Tenant '{tenant.slug}' runs on a dedicated VPS; decommission it manually",
                    details={"slug": tenant.slug},
                )
            if tenant.vps_id:
                await FleetRegistry(db).decrement_tenant_count(tenant.vps_id)
            await tenants.delete(tenant)
            await db.commit()
        logger.info("Released shared tenant %s", slug)

    # ── Shared placement ─────────────────────────────────────────────────

    async def _place_shared(self, request: InstanceCreate, slug: str) -> ProvisionResult:
        for attempt in range(1, self.placement_attempts + 1):
            async with self.session_factory() as db:
                fleet = FleetRegistry(db)
                tenants = TenantRegistry(db)

                tenant = await tenants.create(
                    name=request.organization_name,
                    slug=slug,
                    tier=request.tier,
                    deployment_model=DeploymentType.SHARED,
                    admin_email=request.admin_user.email,
                    admin_name=request.admin_user.name,
                )
                decision = await CapacityAllocator(fleet).decide_placement(
                    DeploymentType.SHARED, request.explicit_vps_id
                )
                # Rollback expires ORM state; read what the log needs first
                vps_name = decision.vps.name
                try:
                    await fleet.increment_tenant_count(decision.vps.id)
                except CapacityExceededError:
                    await db.rollback()
                    logger.info(
                        "Lost the race for VPS %s placing %s (attempt %d/%d)",
                        vps_name, slug, attempt, self.placement_attempts,
                    )
                    continue

                await tenants.assign_vps(tenant, decision.vps)
                await db.refresh(decision.vps)
                await db.commit()

            logger.info(
                "Placed shared tenant %s on %s (%s/%s)",
                slug, decision.vps.name, decision.vps.current_tenants, decision.vps.max_tenants,
            )
            return ProvisionResult(tenant=tenant, vps=decision.vps)

        raise NoCapacityError(
            f"No shared capacity after {self.placement_attempts} placement attempts",
            details={"slug": slug},
        )

    # ── Dedicated submission ─────────────────────────────────────────────

    async def _submit_dedicated(self, request: InstanceCreate, slug: str) -> ProvisionResult:
        async with self.session_factory() as db:
            tenants = TenantRegistry(db)
            tenant = await tenants.get_by_slug(slug, for_update=True)
            if tenant is None:
                tenant = await tenants.create(
                    name=request.organization_name,
                    slug=slug,
                    tier=request.tier,
                    deployment_model=DeploymentType.DEDICATED,
                    admin_email=request.admin_user.email,
                    admin_name=request.admin_user.name,
                )
            else:
                await self._ensure_retryable(tenants, tenant)
                tenant.name = request.organization_name.strip()
                tenant.tier = request.tier.value
                tenant.admin_email = request.admin_user.email
                tenant.admin_name = request.admin_user.name
                logger.info("Retrying dedicated deployment for %s after a failed attempt", slug)

            deployment = Deployment(
                tenant_id=tenant.id,
                status=DeploymentStatus.PENDING.value,
                status_message="Waiting for provider",
            )
            db.add(deployment)
            await db.flush()
            await self._append_log(db, deployment.id, f"Deployment requested for '{slug}' ({tenant.tier})")
            await db.commit()

        self.start(deployment.id)
        return ProvisionResult(tenant=tenant, deployment=deployment)

    async def _ensure_retryable(self, tenants: TenantRegistry, tenant: Organization) -> None:
        """A taken slug may only be reused by a dedicated tenant whose last deployment failed."""
        if tenant.deployment_model != DeploymentType.DEDICATED.value or tenant.vps_id:
            raise ConflictError(f"Slug '{tenant.slug}' is already taken", details={"slug": tenant.slug})

        latest = await tenants.latest_deployment(tenant.id)
        if latest is None or latest.status != DeploymentStatus.FAILED.value:
            raise ConflictError(
                f"Slug '{tenant.slug}' already has a deployment in progress",
                details={"slug": tenant.slug, "deployment_id": latest.id if latest else None},
            )

    # ── Workflow task management ─────────────────────────────────────────

    def start(self, deployment_id: str) -> asyncio.Task:
        """Launch (or return the running) workflow task for a deployment."""
        task = self._tasks.get(deployment_id)
        if task is not None and not task.done():
            return task

        task = asyncio.create_task(self._execute(deployment_id), name=f"deployment-{deployment_id}")
        self._tasks[deployment_id] = task
        task.add_done_callback(lambda t: self._forget(deployment_id, t))
        logger.debug("Workflow task started for deployment %s", deployment_id)
        return task

    def _forget(self, deployment_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(deployment_id) is task:
            del self._tasks[deployment_id]

    def running(self) -> List[str]:
        return [dep_id for dep_id, task in self._tasks.items() if not task.done()]

    async def wait(self, deployment_id: str, timeout: Optional[float] = None) -> None:
        """Block until the workflow for ``deployment_id`` (if any) finishes."""
        task = self._tasks.get(deployment_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)

    async def resume_inflight(self) -> List[str]:
        """Re-attach workflows for every deployment left pending or provisioning."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Deployment.id)
                .where(Deployment.status.in_([DeploymentStatus.PENDING.value, DeploymentStatus.PROVISIONING.value]))
                .order_by(Deployment.created_at)
            )
            deployment_ids = list(result.scalars().all())

        for deployment_id in deployment_ids:
            self.start(deployment_id)
        if deployment_ids:
            logger.info("Resumed %d in-flight deployment(s)", len(deployment_ids))
        return deployment_ids

    async def shutdown(self) -> None:
        """Cancel running workflows. Their durable state is left for resume.

        A workflow cancelled while its machine is being created still gets the
        handle recorded before this returns.
        """
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Stopped %d deployment workflow(s)", len(tasks))
        if self._critical:
            await asyncio.gather(*list(self._critical), return_exceptions=True)
        self._tasks.clear()

    async def _execute(self, deployment_id: str) -> None:
        token = deployment_id_var.set(deployment_id)
        try:
            await self.run_deployment(deployment_id)
        except asyncio.CancelledError:
            logger.info("Workflow for deployment %s cancelled", deployment_id)
            raise
        except Exception as exc:
            logger.exception("Workflow for deployment %s crashed", deployment_id)
            try:
                await self._fail(deployment_id, exc)
            except Exception:
                logger.exception("Could not record failure of deployment %s", deployment_id)
        finally:
            deployment_id_var.reset(token)

    # ── Workflow ─────────────────────────────────────────────────────────

    async def run_deployment(self, deployment_id: str) -> None:
        """Drive one deployment from its current state to a terminal one."""
        async with self.session_factory() as db:
            deployment = await db.get(Deployment, deployment_id)
            if deployment is None:
                raise NotFoundError(f"Deployment {deployment_id} not found")
            tenant = await db.get(Organization, deployment.tenant_id)
            status = DeploymentStatus(deployment.status)
            handle = deployment.provider_handle
            started_at = deployment.provisioning_started_at

        if status.is_terminal:
            return

        if status == DeploymentStatus.PENDING:
            started = await self._begin_provisioning(deployment_id, tenant)
            if started is None:
                return
            handle, started_at = started
        elif not handle:
            await self._fail(deployment_id, ProviderError("Provider handle was lost; cannot resume polling"))
            return
        else:
            logger.info("Resuming polling of %s for deployment %s", handle, deployment_id)

        await self._poll_until_done(deployment_id, handle, started_at)

    async def _begin_provisioning(self, deployment_id: str, tenant: Organization):
        """pending -> provisioning. Returns (handle, started_at) or None if the deployment failed.

        Creating the machine and recording its handle run as one shielded
        step: cancelling the workflow (``shutdown``) lets the step finish, so
        a resumed workflow always finds the handle instead of creating again.
        """
        step = asyncio.create_task(
            self._create_and_record(deployment_id, tenant), name=f"deployment-{deployment_id}-create"
        )
        self._critical.add(step)
        step.add_done_callback(self._critical.discard)
        return await asyncio.shield(step)

    async def _create_and_record(self, deployment_id: str, tenant: Organization):
        spec = spec_for_tier(
            name=f"dedicated-{tenant.slug}-{deployment_id[:8]}",
            tier=tenant.tier,
            tags={"TenantSlug": tenant.slug, "DeploymentId": deployment_id},
            client_token=deployment_id,
        )
        try:
            handle = await self.provisioner.create_vps(spec)
        except ProviderError as exc:
            await self._fail(deployment_id, type(exc)(f"VPS creation failed: {exc}"))
            return None

        async with self.session_factory() as db:
            deployment = await db.get(Deployment, deployment_id)
            vps = await FleetRegistry(db).create_dedicated(
                name=spec.name,
                cpu_cores=spec.cpu_cores,
                memory_mb=spec.memory_mb,
                disk_gb=spec.disk_gb,
                provider_handle=handle,
            )
            self._transition(deployment, DeploymentStatus.PROVISIONING)
            deployment.vps_id = vps.id
            deployment.provider_handle = handle
            deployment.provisioning_started_at = utcnow()
            deployment.status_message = "Provisioning dedicated VPS"
            await self._append_log(db, deployment_id, f"VPS creation accepted by provider (handle {handle})")
            await db.commit()
            started_at = deployment.provisioning_started_at

        logger.info("Deployment %s provisioning on %s", deployment_id, handle)
        return handle, started_at

    async def _poll_until_done(self, deployment_id: str, handle: str, started_at) -> None:
        deadline = (started_at or utcnow()) + timedelta(seconds=self.provisioning_timeout)
        consecutive_failures = 0

        while True:
            remaining = (deadline - utcnow()).total_seconds()
            if remaining <= 0:
                await self._fail_timeout(deployment_id, handle)
                return

            try:
                status = await asyncio.wait_for(self.provisioner.poll_status(handle), timeout=remaining)
            except asyncio.TimeoutError:
                await self._fail_timeout(deployment_id, handle)
                return
            except ProviderUnavailableError as exc:
                consecutive_failures += 1
                if consecutive_failures > self.poll_retry_limit:
                    await self._fail(
                        deployment_id,
                        ProviderUnavailableError(
                            f"Provider unreachable after {consecutive_failures} consecutive attempts: {exc}"
                        ),
                        handle,
                    )
                    return
                logger.warning(
                    "Provider unreachable polling %s (%d/%d): %s",
                    handle, consecutive_failures, self.poll_retry_limit, exc,
                )
                await asyncio.sleep(min(self.poll_interval, remaining))
                continue
            except ProviderError as exc:
                await self._fail(deployment_id, exc, handle)
                return

            consecutive_failures = 0

            if status.state == ProviderState.READY:
                if not status.ip_address:
                    await self._fail(deployment_id, ProviderError("Provider reported ready without an IP address"), handle)
                else:
                    await self._complete(deployment_id, status.ip_address)
                return

            if status.state == ProviderState.ERROR:
                await self._fail(deployment_id, ProviderError(status.detail or "Provider reported an error"), handle)
                return

            await self._record_progress(deployment_id, status.detail)
            await asyncio.sleep(min(self.poll_interval, max(remaining, 0)))

    async def _record_progress(self, deployment_id: str, detail: str) -> None:
        async with self.session_factory() as db:
            deployment = await db.get(Deployment, deployment_id)
            if not detail or detail == deployment.status_message:
                return
            deployment.status_message = detail
            await self._append_log(db, deployment_id, detail)
            await db.commit()

    async def _complete(self, deployment_id: str, ip_address: str) -> None:
        """provisioning -> active: VPS, tenant and deployment change together."""
        async with self.session_factory() as db:
            deployment = await db.get(Deployment, deployment_id)
            tenant = await db.get(Organization, deployment.tenant_id)

            vps = await FleetRegistry(db).mark_dedicated_active(deployment.vps_id, ip_address)
            await TenantRegistry(db).assign_vps(tenant, vps)

            self._transition(deployment, DeploymentStatus.ACTIVE)
            deployment.status_message = "Deployment complete"
            deployment.access_url = f"https://{tenant.slug}.{self.tenant_base_domain}"
            deployment.credentials = {
                "admin_email": tenant.admin_email,
                "admin_name": tenant.admin_name,
                "temporary_password": secrets.token_urlsafe(16),
            }
            deployment.completed_at = utcnow()
            await self._append_log(db, deployment_id, f"VPS ready at {vps.ip_address}; tenant live at {deployment.access_url}")
            await db.commit()

        logger.info("Deployment %s active on %s", deployment_id, ip_address)

    async def _fail_timeout(self, deployment_id: str, handle: str) -> None:
        await self._fail(
            deployment_id,
            ProvisioningTimeoutError(f"Provisioning timed out after {self.provisioning_timeout:g}s"),
            handle,
        )

    async def _fail(self, deployment_id: str, exc: BaseException, handle: Optional[str] = None) -> None:
        """Release provider resources, then move the deployment to failed and take its VPS offline.

        The teardown outcome is logged in the same transaction as the
        transition, so nothing is appended once the deployment is terminal.
        """
        code = error_code_for(exc)
        message = str(exc) or type(exc).__name__
        if code == "internal_error":
            message = f"Internal error: {type(exc).__name__}: {message}"

        async with self.session_factory() as db:
            deployment = await db.get(Deployment, deployment_id)
            if deployment is None or DeploymentStatus(deployment.status).is_terminal:
                return
            handle = handle or deployment.provider_handle

        teardown_note = await self._teardown(handle) if handle else None

        async with self.session_factory() as db:
            deployment = await db.get(Deployment, deployment_id)
            if DeploymentStatus(deployment.status).is_terminal:
                return
            self._transition(deployment, DeploymentStatus.FAILED)
            deployment.error_code = code
            deployment.error_message = message
            deployment.status_message = "Deployment failed"
            deployment.completed_at = utcnow()
            await self._append_log(db, deployment_id, f"Deployment failed: {message}")
            if teardown_note:
                await self._append_log(db, deployment_id, teardown_note)
            if deployment.vps_id:
                await FleetRegistry(db).mark_offline(deployment.vps_id)
            await db.commit()

        logger.warning("Deployment %s failed (%s): %s", deployment_id, code, message)

    async def _teardown(self, handle: str) -> str:
        """Best-effort release of a provider machine. Returns the note for the deployment log."""
        try:
            await self.provisioner.teardown(handle)
        except Exception as exc:
            logger.warning("Teardown of %s failed: %s", handle, exc)
            return f"Teardown of {handle} failed: {exc}"
        return f"Released provider resources ({handle})"

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _transition(deployment: Deployment, new_status: DeploymentStatus) -> None:
        current = DeploymentStatus(deployment.status)
        if new_status not in DEPLOYMENT_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Deployment {deployment.id} cannot move from {current.value} to {new_status.value}"
            )
        deployment.status = new_status.value

    @staticmethod
    async def _append_log(db: AsyncSession, deployment_id: str, message: str) -> DeploymentLog:
        last_seq = await db.execute(
            select(func.coalesce(func.max(DeploymentLog.seq), 0)).where(DeploymentLog.deployment_id == deployment_id)
        )
        entry = DeploymentLog(
            deployment_id=deployment_id,
            seq=last_seq.scalar_one() + 1,
            timestamp=utcnow(),
            message=message,
        )
        db.add(entry)
        await db.flush()
        return entry
