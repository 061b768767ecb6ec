"""Pydantic schemas for API request/response validation"""

from datetime import datetime
from typing import Optional, List, Dict, Any, Literal
from pydantic import BaseModel, Field, EmailStr

from app.db.models import DeploymentType, VPSStatus, Tier, DeploymentStatus


# ============ Fleet Schemas ============

class VPSCreate(BaseModel):
    """Operator registration of an existing server"""
    name: str = Field(..., min_length=1, max_length=100)
    ip_address: str = Field(..., min_length=1, max_length=45)
    location: Optional[str] = Field(None, max_length=100)
    deployment_type: DeploymentType = DeploymentType.SHARED
    status: VPSStatus = VPSStatus.ACTIVE
    max_tenants: Optional[int] = None  # required for shared
    cpu_cores: int = Field(4, ge=1)
    memory_mb: int = Field(8192, ge=1)
    disk_gb: int = Field(100, ge=1)


class VPSStatusUpdate(BaseModel):
    status: VPSStatus


class TelemetryUpdate(BaseModel):
    cpu_usage_percent: float = Field(..., ge=0, le=100)
    memory_usage_percent: float = Field(..., ge=0, le=100)


class VPSResponse(BaseModel):
    id: str
    name: str
    ip_address: Optional[str]
    location: Optional[str]
    deployment_type: DeploymentType
    status: VPSStatus
    max_tenants: Optional[int]
    current_tenants: int
    cpu_cores: int
    memory_mb: int
    disk_gb: int
    cpu_usage_percent: Optional[float] = None
    memory_usage_percent: Optional[float] = None
    telemetry_updated_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class FleetStatsResponse(BaseModel):
    total_vps: int
    shared_vps: int
    dedicated_vps: int
    active_vps: int
    total_tenants: int
    shared_capacity: int  # Sum of max_tenants over active shared VPS
    shared_used: int      # Sum of current_tenants over active shared VPS


# ============ Instance (tenant) Schemas ============

class AdminUser(BaseModel):
    email: EmailStr
    name: Optional[str] = Field(None, max_length=255)


class InstanceCreate(BaseModel):
    """Create a tenant and place it on the fleet"""
    organization_name: str = Field(..., alias="organizationName", min_length=1, max_length=255)
    slug: Optional[str] = Field(None, max_length=50)  # derived from the name when omitted
    tier: Tier = Tier.STARTER
    deployment_model: DeploymentType = Field(..., alias="deploymentModel")
    vps_id: Optional[str] = Field(None, alias="vpsId")  # shared only; None or "auto" selects least-loaded
    admin_user: AdminUser = Field(..., alias="adminUser")

    class Config:
        populate_by_name = True

    @property
    def explicit_vps_id(self) -> Optional[str]:
        if self.vps_id is None or self.vps_id.strip().lower() in ("", "auto"):
            return None
        return self.vps_id.strip()


class TenantResponse(BaseModel):
    id: str
    name: str
    slug: str
    tier: Tier
    deployment_model: DeploymentType
    vps_id: Optional[str]
    admin_email: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class VPSSummary(BaseModel):
    id: str
    name: str
    ip_address: Optional[str]
    location: Optional[str]
    current_tenants: int
    max_tenants: Optional[int]

    class Config:
        from_attributes = True


class SharedInstanceResponse(BaseModel):
    """201: shared placement completed synchronously"""
    deployment_model: Literal["shared"] = "shared"
    tenant: TenantResponse
    vps: VPSSummary


class DedicatedInstanceResponse(BaseModel):
    """202: dedicated deployment accepted, poll the status URL"""
    deployment_model: Literal["dedicated"] = "dedicated"
    deployment_id: str = Field(..., alias="deploymentId")
    status: DeploymentStatus
    status_url: str
    tenant: TenantResponse
    submitted: Dict[str, Any]

    class Config:
        populate_by_name = True


# ============ Deployment Schemas ============

class DeploymentLogEntry(BaseModel):
    timestamp: datetime
    message: str

    class Config:
        from_attributes = True


class DeploymentStatusResponse(BaseModel):
    id: str
    tenant_id: str
    status: DeploymentStatus
    status_message: Optional[str] = None
    logs: List[DeploymentLogEntry] = []
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    access_url: Optional[str] = None
    credentials: Optional[Dict[str, Any]] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    provisioning_started_at: Optional[datetime] = None
    vps_id: Optional[str] = None

    class Config:
        from_attributes = True


class DeploymentStatsResponse(BaseModel):
    total: int
    pending: int
    provisioning: int
    active: int
    failed: int
    in_flight: int          # pending + provisioning
    running_workflows: int  # workflow tasks alive in this process
