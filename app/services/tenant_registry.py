"""
Tenant Registry — organizations and the VPS hosting them.

Slugs are stored lower-case, which makes the unique index case-insensitive.
"""

import logging
import re
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Organization, VPS, Deployment, DeploymentType, Tier
from app.errors import ValidationError, NotFoundError, ConflictError

logger = logging.getLogger(__name__)

SLUG_MAX_LENGTH = 50
SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def slugify(name: str) -> str:
    """URL-friendly slug from an organization name ("Acme Corp." -> "acme-corp")."""
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")
    return slug[:SLUG_MAX_LENGTH].rstrip("-")


def normalize_slug(slug: str) -> str:
    """Lower-case and validate a client-supplied slug."""
    normalized = (slug or "").strip().lower()
    if not normalized or len(normalized) > SLUG_MAX_LENGTH or not SLUG_PATTERN.match(normalized):
        raise ValidationError(
            f"Invalid slug {slug!r}: use lower-case letters, digits and single hyphens "
            f"(max {SLUG_MAX_LENGTH} characters)",
            details={"field": "slug"},
        )
    return normalized


class TenantRegistry:
    """CRUD over organizations plus the slug-uniqueness check"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        name: str,
        slug: str,
        tier: Tier,
        deployment_model: DeploymentType,
        admin_email: Optional[str] = None,
        admin_name: Optional[str] = None,
    ) -> Organization:
        slug = normalize_slug(slug)
        if await self.get_by_slug(slug) is not None:
            raise ConflictError(f"Slug '{slug}' is already taken", details={"slug": slug})

        tenant = Organization(
            name=name.strip(),
            slug=slug,
            tier=Tier(tier).value,
            deployment_model=DeploymentType(deployment_model).value,
            admin_email=admin_email,
            admin_name=admin_name,
        )
        self.db.add(tenant)
        try:
            await self.db.flush()
        except IntegrityError:
            # Lost a race with a concurrent create of the same slug
            raise ConflictError(f"Slug '{slug}' is already taken", details={"slug": slug})

        logger.info("Created %s tenant %s (%s)", tenant.deployment_model, tenant.id, slug)
        return tenant

    async def get(self, tenant_id: str) -> Organization:
        tenant = await self.db.get(Organization, tenant_id)
        if tenant is None:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        return tenant

    async def get_by_slug(self, slug: str, for_update: bool = False) -> Optional[Organization]:
        stmt = select(Organization).where(Organization.slug == (slug or "").strip().lower())
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self) -> List[Organization]:
        result = await self.db.execute(select(Organization).order_by(Organization.created_at, Organization.slug))
        return list(result.scalars().all())

    async def latest_deployment(self, tenant_id: str) -> Optional[Deployment]:
        result = await self.db.execute(
            select(Deployment)
            .where(Deployment.tenant_id == tenant_id)
            .order_by(Deployment.created_at.desc(), Deployment.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def assign_vps(self, tenant: Organization, vps: VPS) -> Organization:
        """Point a tenant at its VPS; the VPS type must match the tenant's model."""
        if vps.deployment_type != tenant.deployment_model:
            raise ValidationError(
                f"Tenant '{tenant.slug}' is {tenant.deployment_model} "
                f"but VPS {vps.name} is {vps.deployment_type}"
            )
        tenant.vps_id = vps.id
        await self.db.flush()
        return tenant

    async def delete(self, tenant: Organization) -> None:
        await self.db.delete(tenant)
        await self.db.flush()
        logger.info("Deleted tenant %s (%s)", tenant.id, tenant.slug)
