from app.db.models import (
    Base, utcnow,
    # Fleet
    VPS, VPSStatus, DeploymentType,
    # Tenants
    Organization, Tier,
    # Provisioning workflow
    Deployment, DeploymentLog, DeploymentStatus, DEPLOYMENT_TRANSITIONS,
)
from app.db.database import (
    get_db, init_db, drop_db, async_session_maker, engine,
    build_engine, build_session_maker,
)

__all__ = [
    "Base",
    "utcnow",
    # Fleet
    "VPS",
    "VPSStatus",
    "DeploymentType",
    # Tenants
    "Organization",
    "Tier",
    # Provisioning workflow
    "Deployment",
    "DeploymentLog",
    "DeploymentStatus",
    "DEPLOYMENT_TRANSITIONS",
    # Database
    "get_db",
    "init_db",
    "drop_db",
    "async_session_maker",
    "engine",
    "build_engine",
    "build_session_maker",
]
