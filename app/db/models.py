"""
Database models for the Fleet Orchestrator

- VPS: every server in the fleet, shared or dedicated, with declared capacity
  and advisory telemetry
- Organization: tenants and the VPS hosting them
- Deployment / DeploymentLog: the durable record of a dedicated provisioning
  workflow and its append-only progress log
"""

from datetime import datetime, timezone
from typing import Optional, List
from enum import Enum
import uuid

from sqlalchemy import (
    String, Text, DateTime, Float, Integer, ForeignKey, JSON, Index,
    CheckConstraint, UniqueConstraint,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column, declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite drops tzinfo, so everything is stored naive)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid.uuid4())


class DeploymentType(str, Enum):
    """How a VPS (or a tenant) is hosted"""
    SHARED = "shared"         # Many tenants up to max_tenants
    DEDICATED = "dedicated"   # Exactly one tenant


class VPSStatus(str, Enum):
    ACTIVE = "active"
    PROVISIONING = "provisioning"
    MAINTENANCE = "maintenance"
    OFFLINE = "offline"


class Tier(str, Enum):
    """Informational sizing hint, not enforced"""
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentStatus.ACTIVE, DeploymentStatus.FAILED)


# Allowed status moves. pending -> failed covers a synchronous create failure.
DEPLOYMENT_TRANSITIONS: dict[DeploymentStatus, frozenset[DeploymentStatus]] = {
    DeploymentStatus.PENDING: frozenset({DeploymentStatus.PROVISIONING, DeploymentStatus.FAILED}),
    DeploymentStatus.PROVISIONING: frozenset({DeploymentStatus.ACTIVE, DeploymentStatus.FAILED}),
    DeploymentStatus.ACTIVE: frozenset(),
    DeploymentStatus.FAILED: frozenset(),
}


class VPS(Base):
    """A server in the fleet."""
    __tablename__ = "vps"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    # Null only while a dedicated VPS is still being created by the provider
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    deployment_type: Mapped[str] = mapped_column(String(20), nullable=False)  # shared | dedicated
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=VPSStatus.ACTIVE.value)
    # Capacity
    max_tenants: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # shared only
    current_tenants: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cpu_cores: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    memory_mb: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    disk_gb: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Telemetry (advisory, never used for placement)
    cpu_usage_percent: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    memory_usage_percent: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    telemetry_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Provider-side identifier for orchestrator-created machines
    provider_handle: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    tenants: Mapped[List["Organization"]] = relationship("Organization", back_populates="vps")

    __table_args__ = (
        CheckConstraint("current_tenants >= 0", name="ck_vps_tenants_non_negative"),
        CheckConstraint(
            "(deployment_type != 'shared') OR (max_tenants >= 1 AND current_tenants <= max_tenants)",
            name="ck_vps_shared_capacity",
        ),
        CheckConstraint(
            "(deployment_type != 'dedicated') OR (current_tenants <= 1)",
            name="ck_vps_dedicated_single_tenant",
        ),
        Index("ix_vps_type_status", "deployment_type", "status"),
    )


class Organization(Base):
    """A tenant of the platform."""
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(50), nullable=False)  # always lower-case
    tier: Mapped[str] = mapped_column(String(20), nullable=False, default=Tier.STARTER.value)
    deployment_model: Mapped[str] = mapped_column(String(20), nullable=False)  # immutable
    vps_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("vps.id"), nullable=True)
    # Requested admin user
    admin_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    admin_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    vps: Mapped[Optional["VPS"]] = relationship("VPS", back_populates="tenants")
    deployments: Mapped[List["Deployment"]] = relationship(
        "Deployment", back_populates="tenant", order_by="Deployment.created_at"
    )

    __table_args__ = (
        UniqueConstraint("slug", name="uq_organizations_slug"),
        Index("ix_organizations_vps_id", "vps_id"),
    )


class Deployment(Base):
    """Tracked workflow for provisioning a dedicated VPS. Retained for audit."""
    __tablename__ = "deployments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=DeploymentStatus.PENDING.value)
    status_message: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    # Failure details (failed only)
    error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Result (active only)
    access_url: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    credentials: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    # Provider linkage, needed to resume polling after a restart
    vps_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("vps.id"), nullable=True)
    provider_handle: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    provisioning_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    tenant: Mapped["Organization"] = relationship("Organization", back_populates="deployments")
    logs: Mapped[List["DeploymentLog"]] = relationship(
        "DeploymentLog", back_populates="deployment", order_by="DeploymentLog.seq"
    )

    __table_args__ = (
        Index("ix_deployments_tenant_id", "tenant_id"),
        Index("ix_deployments_status", "status"),
    )


class DeploymentLog(Base):
    """One append-only progress line of a deployment."""
    __tablename__ = "deployment_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deployment_id: Mapped[str] = mapped_column(String(36), ForeignKey("deployments.id"), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    deployment: Mapped["Deployment"] = relationship("Deployment", back_populates="logs")

    __table_args__ = (
        UniqueConstraint("deployment_id", "seq", name="uq_deployment_logs_seq"),
    )
