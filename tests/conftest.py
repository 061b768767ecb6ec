"""
Shared fixtures.

Every test gets its own file-backed SQLite database under ``tmp_path``; a file
rather than ``:memory:`` so concurrent sessions use separate connections.
"""

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from app.api.deps import get_orchestrator
from app.db import build_engine, build_session_maker, init_db, get_db, VPS, VPSStatus, DeploymentType
from app.main import app
from app.services.deployment_orchestrator import DeploymentOrchestrator
from tests.fakes import ScriptedProvisioner


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{(tmp_path / 'fleet.db').as_posix()}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return build_session_maker(engine)


@pytest_asyncio.fixture
async def db_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def provisioner():
    return ScriptedProvisioner()


@pytest_asyncio.fixture
async def orchestrator(session_maker, provisioner):
    orchestrator = DeploymentOrchestrator(
        session_maker,
        provisioner,
        poll_interval=0,
        provisioning_timeout=30,
        poll_retry_limit=3,
        placement_attempts=3,
        tenant_base_domain="tenants.test",
    )
    yield orchestrator
    await orchestrator.shutdown()


@pytest_asyncio.fixture
async def client(session_maker, orchestrator):
    """Async test client wired to the per-test database and orchestrator"""
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def add_vps(session_maker):
    """Insert a VPS row directly, with an arbitrary starting load."""
    async def _add_vps(
        name: str,
        max_tenants: int = 10,
        current_tenants: int = 0,
        status: VPSStatus = VPSStatus.ACTIVE,
        deployment_type: DeploymentType = DeploymentType.SHARED,
        ip_address: str = "203.0.113.10",
    ) -> VPS:
        async with session_maker() as session:
            vps = VPS(
                name=name,
                ip_address=ip_address,
                deployment_type=deployment_type.value,
                status=status.value,
                max_tenants=max_tenants if deployment_type == DeploymentType.SHARED else None,
                current_tenants=current_tenants,
                cpu_cores=4,
                memory_mb=8192,
                disk_gb=100,
            )
            session.add(vps)
            await session.commit()
            return vps

    return _add_vps

