"""
Tests for the Deployment Orchestrator: shared placement, the dedicated
provisioning workflow, slug policy, resume and concurrency.
"""

import asyncio

import pytest
from sqlalchemy import select

from app.db import VPS, Organization, Deployment, DeploymentStatus
from app.errors import (
    CapacityExceededError, ConflictError, NoCapacityError, NotFoundError, PlacementError, ValidationError,
    InvalidTransitionError, ProviderError, ProviderUnavailableError,
)
from app.services.deployment_orchestrator import DeploymentOrchestrator, error_code_for
from app.services.fleet_registry import FleetRegistry
from tests.fakes import READY_IP, in_progress, ready, error, instance_request


async def submit_and_finish(orchestrator, request):
    result = await orchestrator.provision_tenant(request)
    await orchestrator.wait(result.deployment.id, timeout=10)
    return await orchestrator.get_deployment(result.deployment.id)


# ============ Shared placement ============

@pytest.mark.asyncio
async def test_shared_auto_placement_on_least_loaded(add_vps, orchestrator, session_maker):
    await add_vps("vps-a", max_tenants=10, current_tenants=3)
    b = await add_vps("vps-b", max_tenants=10, current_tenants=1)

    result = await orchestrator.provision_tenant(instance_request("Acme Corp"))

    assert not result.is_dedicated
    assert result.vps.id == b.id
    assert result.vps.current_tenants == 2
    assert result.tenant.slug == "acme-corp"
    assert result.tenant.vps_id == b.id
    async with session_maker() as session:
        assert (await session.get(VPS, b.id)).current_tenants == 2


@pytest.mark.asyncio
async def test_shared_explicit_full_vps_rejected(add_vps, orchestrator, session_maker):
    full = await add_vps("full", max_tenants=2, current_tenants=2)
    await add_vps("idle", max_tenants=10)

    with pytest.raises(PlacementError):
        await orchestrator.provision_tenant(instance_request("Acme", vps_id=full.id))

    async with session_maker() as session:
        assert (await session.execute(select(Organization))).scalars().all() == []
        assert (await session.get(VPS, full.id)).current_tenants == 2


@pytest.mark.asyncio
async def test_shared_auto_keyword_means_least_loaded(add_vps, orchestrator):
    vps = await add_vps("only", max_tenants=3)

    result = await orchestrator.provision_tenant(instance_request("Acme", vps_id="auto"))

    assert result.vps.id == vps.id


@pytest.mark.asyncio
async def test_shared_without_capacity(add_vps, orchestrator):
    await add_vps("full", max_tenants=1, current_tenants=1)

    with pytest.raises(NoCapacityError):
        await orchestrator.provision_tenant(instance_request("Acme"))


@pytest.mark.asyncio
async def test_invalid_slug_rejected(orchestrator):
    with pytest.raises(ValidationError):
        await orchestrator.provision_tenant(instance_request("Acme", slug="not valid"))


@pytest.mark.asyncio
async def test_concurrent_shared_placements_respect_capacity(add_vps, orchestrator, session_maker):
    """Seven tenants race for four slots: four are placed, three are refused."""
    first = await add_vps("vps-1", max_tenants=2)
    second = await add_vps("vps-2", max_tenants=2)

    results = await asyncio.gather(
        *(orchestrator.provision_tenant(instance_request(f"Tenant {i}")) for i in range(7)),
        return_exceptions=True,
    )

    placed = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, Exception)]
    assert len(placed) == 4
    assert len(refused) == 3
    assert all(isinstance(r, NoCapacityError) for r in refused)

    async with session_maker() as session:
        for vps_id in (first.id, second.id):
            assert (await session.get(VPS, vps_id)).current_tenants == 2


@pytest.mark.asyncio
async def test_lost_capacity_race_is_retried(add_vps, orchestrator, session_maker, monkeypatch):
    vps = await add_vps("vps", max_tenants=5)
    increment = FleetRegistry.increment_tenant_count
    calls = []

    async def lose_first_race(self, vps_id):
        calls.append(vps_id)
        if len(calls) == 1:
            raise CapacityExceededError(f"VPS {vps_id} is full")
        return await increment(self, vps_id)

    monkeypatch.setattr(FleetRegistry, "increment_tenant_count", lose_first_race)

    result = await orchestrator.provision_tenant(instance_request("Acme"))

    assert calls == [vps.id, vps.id]
    assert result.vps.id == vps.id
    assert result.vps.current_tenants == 1
    async with session_maker() as session:
        tenants = (await session.execute(select(Organization))).scalars().all()
    assert [(t.slug, t.vps_id) for t in tenants] == [("acme", vps.id)]


@pytest.mark.asyncio
async def test_capacity_race_lost_every_time_is_no_capacity(add_vps, orchestrator, session_maker, monkeypatch):
    vps = await add_vps("vps", max_tenants=5)
    calls = []

    async def always_full(self, vps_id):
        calls.append(vps_id)
        raise CapacityExceededError(f"VPS {vps_id} is full")

    monkeypatch.setattr(FleetRegistry, "increment_tenant_count", always_full)

    with pytest.raises(NoCapacityError):
        await orchestrator.provision_tenant(instance_request("Acme"))

    assert len(calls) == orchestrator.placement_attempts
    async with session_maker() as session:
        assert (await session.execute(select(Organization))).scalars().all() == []
        assert (await session.get(VPS, vps.id)).current_tenants == 0


@pytest.mark.asyncio
async def test_release_shared_tenant_frees_slot(add_vps, orchestrator, session_maker):
    vps = await add_vps("vps", max_tenants=1)
    await orchestrator.provision_tenant(instance_request("Acme"))

    await orchestrator.release_tenant("acme")

    async with session_maker() as session:
        assert (await session.get(VPS, vps.id)).current_tenants == 0
    # The slot and the slug are both free again
    result = await orchestrator.provision_tenant(instance_request("Acme"))
    assert result.vps.id == vps.id


@pytest.mark.asyncio
async def test_release_rejects_dedicated_and_unknown(orchestrator):
    await submit_and_finish(orchestrator, instance_request("Solo", model="dedicated"))

    with pytest.raises(ConflictError):
        await orchestrator.release_tenant("solo")
    with pytest.raises(NotFoundError):
        await orchestrator.release_tenant("nobody")


# ============ Dedicated workflow ============

@pytest.mark.asyncio
async def test_dedicated_deployment_succeeds(orchestrator, provisioner, session_maker):
    provisioner.script(
        in_progress("Installing OS"),
        in_progress("Installing OS"),
        in_progress("Configuring network"),
        ready(),
    )

    result = await orchestrator.provision_tenant(instance_request("Acme Corp", model="dedicated"))
    assert result.is_dedicated
    assert result.deployment.status == DeploymentStatus.PENDING.value

    await orchestrator.wait(result.deployment.id, timeout=10)
    deployment = await orchestrator.get_deployment(result.deployment.id)

    assert deployment.status == "active"
    assert deployment.access_url == "https://acme-corp.tenants.test"
    assert deployment.credentials["admin_email"] == "admin@acme.io"
    assert deployment.credentials["temporary_password"]
    assert deployment.completed_at is not None
    assert deployment.error_message is None

    messages = [entry.message for entry in deployment.logs]
    assert messages.count("Installing OS") == 1
    assert messages.index("Installing OS") < messages.index("Configuring network")
    assert [entry.seq for entry in deployment.logs] == list(range(1, len(messages) + 1))

    async with session_maker() as session:
        vps = await session.get(VPS, deployment.vps_id)
        tenant = await session.get(Organization, deployment.tenant_id)
    assert vps.deployment_type == "dedicated"
    assert vps.status == "active"
    assert vps.ip_address == READY_IP
    assert vps.current_tenants == 1
    assert tenant.vps_id == vps.id

    assert provisioner.created[0].tier == "starter"
    assert provisioner.torn_down == []


@pytest.mark.asyncio
async def test_dedicated_provider_error_fails_and_tears_down(orchestrator, provisioner, session_maker):
    provisioner.script(in_progress("Installing OS"), in_progress("Configuring network"), error("Disk quota exceeded"))

    deployment = await submit_and_finish(orchestrator, instance_request("Acme", model="dedicated"))

    assert deployment.status == "failed"
    assert deployment.error_code == "provider_error"
    assert "Disk quota exceeded" in deployment.error_message
    assert deployment.access_url is None
    assert deployment.credentials is None
    assert provisioner.torn_down == ["fake-1"]
    assert provisioner.poll_counts["fake-1"] == 3
    # The teardown outcome is committed together with the failure
    assert [entry.message for entry in deployment.logs][-2:] == [
        "Deployment failed: Disk quota exceeded",
        "Released provider resources (fake-1)",
    ]

    async with session_maker() as session:
        vps = await session.get(VPS, deployment.vps_id)
        tenant = await session.get(Organization, deployment.tenant_id)
    assert vps.status == "offline"
    assert vps.current_tenants == 0
    assert tenant.vps_id is None


@pytest.mark.asyncio
async def test_create_failure_fails_from_pending(orchestrator, provisioner, session_maker):
    provisioner.create_error = ProviderError("quota exhausted")

    deployment = await submit_and_finish(orchestrator, instance_request("Acme", model="dedicated"))

    assert deployment.status == "failed"
    assert deployment.error_code == "provider_error"
    assert "quota exhausted" in deployment.error_message
    assert deployment.vps_id is None
    assert deployment.provisioning_started_at is None
    assert provisioner.torn_down == []
    async with session_maker() as session:
        assert (await session.execute(select(VPS))).scalars().all() == []


@pytest.mark.asyncio
async def test_timeout_fails_deployment(session_maker, provisioner):
    provisioner.script(in_progress("Still installing"))
    orchestrator = DeploymentOrchestrator(
        session_maker, provisioner, poll_interval=0.01, provisioning_timeout=0.2, tenant_base_domain="tenants.test"
    )
    try:
        deployment = await submit_and_finish(orchestrator, instance_request("Slow", model="dedicated"))
    finally:
        await orchestrator.shutdown()

    assert deployment.status == "failed"
    assert deployment.error_code == "provider_timeout"
    assert "timed out" in deployment.error_message
    assert provisioner.torn_down == ["fake-1"]


@pytest.mark.asyncio
async def test_transient_poll_failures_are_retried(orchestrator, provisioner):
    flaky = ProviderUnavailableError("connection reset")
    provisioner.script(in_progress("Booting"), flaky, flaky, flaky, ready())

    deployment = await submit_and_finish(orchestrator, instance_request("Flaky", model="dedicated"))

    assert deployment.status == "active"


@pytest.mark.asyncio
async def test_poll_failures_beyond_retry_limit_fail(orchestrator, provisioner):
    provisioner.script(ProviderUnavailableError("connection refused"))

    deployment = await submit_and_finish(orchestrator, instance_request("Down", model="dedicated"))

    assert deployment.status == "failed"
    assert deployment.error_code == "provider_unreachable"
    # One initial attempt plus three retries
    assert provisioner.poll_counts["fake-1"] == 4


@pytest.mark.asyncio
async def test_teardown_failure_is_logged_not_raised(orchestrator, provisioner):
    provisioner.script(error("Kernel panic"))
    provisioner.teardown_error = ProviderError("instance already gone")

    deployment = await submit_and_finish(orchestrator, instance_request("Broken", model="dedicated"))

    assert deployment.status == "failed"
    assert deployment.error_code == "provider_error"
    assert any("Teardown of fake-1 failed" in entry.message for entry in deployment.logs)


@pytest.mark.asyncio
async def test_ready_without_ip_fails(orchestrator, provisioner):
    provisioner.script(ready(ip_address=None))

    deployment = await submit_and_finish(orchestrator, instance_request("NoIP", model="dedicated"))

    assert deployment.status == "failed"
    assert "without an IP address" in deployment.error_message


@pytest.mark.asyncio
async def test_logs_are_append_only(orchestrator, provisioner):
    gate = asyncio.Event()
    provisioner.poll_gate = gate
    provisioner.script(in_progress("Step one"), in_progress("Step two"), ready())

    result = await orchestrator.provision_tenant(instance_request("Logs", model="dedicated"))
    await asyncio.wait_for(provisioner.polling.wait(), timeout=5)
    before = [(e.seq, e.message) for e in (await orchestrator.get_deployment(result.deployment.id)).logs]

    gate.set()
    await orchestrator.wait(result.deployment.id, timeout=10)
    after = [(e.seq, e.message) for e in (await orchestrator.get_deployment(result.deployment.id)).logs]

    assert before
    assert after[: len(before)] == before
    assert len(after) > len(before)


# ============ State machine ============

def test_transitions_only_move_forward():
    deployment = Deployment(id="d-1", tenant_id="t-1", status=DeploymentStatus.ACTIVE.value)
    with pytest.raises(InvalidTransitionError):
        DeploymentOrchestrator._transition(deployment, DeploymentStatus.PROVISIONING)

    deployment.status = DeploymentStatus.PROVISIONING.value
    with pytest.raises(InvalidTransitionError):
        DeploymentOrchestrator._transition(deployment, DeploymentStatus.PENDING)

    DeploymentOrchestrator._transition(deployment, DeploymentStatus.FAILED)
    assert deployment.status == "failed"


def test_error_codes():
    assert error_code_for(ProviderError("x")) == "provider_error"
    assert error_code_for(ProviderUnavailableError("x")) == "provider_unreachable"
    assert error_code_for(RuntimeError("x")) == "internal_error"


# ============ Slug policy ============

@pytest.mark.asyncio
async def test_slug_conflict_while_deployment_in_flight(orchestrator, provisioner):
    gate = asyncio.Event()
    provisioner.poll_gate = gate
    provisioner.script(ready())

    first = await orchestrator.provision_tenant(instance_request("Acme", model="dedicated"))
    with pytest.raises(ConflictError):
        await orchestrator.provision_tenant(instance_request("Acme", model="dedicated"))

    gate.set()
    await orchestrator.wait(first.deployment.id, timeout=10)
    # Succeeded tenants keep their slug
    with pytest.raises(ConflictError):
        await orchestrator.provision_tenant(instance_request("Acme", model="dedicated"))


@pytest.mark.asyncio
async def test_slug_taken_by_shared_tenant(add_vps, orchestrator):
    await add_vps("vps", max_tenants=5)
    await orchestrator.provision_tenant(instance_request("Acme"))

    with pytest.raises(ConflictError):
        await orchestrator.provision_tenant(instance_request("Acme"))
    with pytest.raises(ConflictError):
        await orchestrator.provision_tenant(instance_request("Acme", model="dedicated"))


@pytest.mark.asyncio
async def test_failed_deployment_frees_slug_for_retry(add_vps, orchestrator, provisioner, session_maker):
    provisioner.script(error("Out of stock"))
    failed = await submit_and_finish(orchestrator, instance_request("Acme", model="dedicated"))
    assert failed.status == "failed"

    # A different model cannot take over the tenant
    await add_vps("vps", max_tenants=5)
    with pytest.raises(ConflictError):
        await orchestrator.provision_tenant(instance_request("Acme"))

    provisioner.script(ready())
    retried = await submit_and_finish(orchestrator, instance_request("Acme", model="dedicated"))

    assert retried.status == "active"
    assert retried.id != failed.id
    assert retried.tenant_id == failed.tenant_id
    async with session_maker() as session:
        deployments = (await session.execute(select(Deployment))).scalars().all()
    assert {d.status for d in deployments} == {"failed", "active"}


# ============ Lifecycle ============

@pytest.mark.asyncio
async def test_resume_after_restart(session_maker, provisioner):
    gate = asyncio.Event()
    provisioner.poll_gate = gate
    provisioner.script(ready())

    first = DeploymentOrchestrator(session_maker, provisioner, poll_interval=0, tenant_base_domain="tenants.test")
    result = await first.provision_tenant(instance_request("Acme", model="dedicated"))
    await asyncio.wait_for(provisioner.polling.wait(), timeout=5)
    await first.shutdown()

    interrupted = await first.get_deployment(result.deployment.id)
    assert interrupted.status == "provisioning"

    gate.set()
    second = DeploymentOrchestrator(session_maker, provisioner, poll_interval=0, tenant_base_domain="tenants.test")
    try:
        resumed = await second.resume_inflight()
        assert resumed == [result.deployment.id]
        await second.wait(result.deployment.id, timeout=10)
        deployment = await second.get_deployment(result.deployment.id)
    finally:
        await second.shutdown()

    assert deployment.status == "active"
    assert deployment.provisioning_started_at == interrupted.provisioning_started_at
    # The provider was asked for exactly one machine
    assert len(provisioner.created) == 1


@pytest.mark.asyncio
async def test_shutdown_during_create_keeps_the_machine(session_maker, provisioner):
    provisioner.create_gate = asyncio.Event()
    provisioner.script(ready())

    first = DeploymentOrchestrator(session_maker, provisioner, poll_interval=0, tenant_base_domain="tenants.test")
    result = await first.provision_tenant(instance_request("Acme", model="dedicated"))
    await asyncio.wait_for(provisioner.creating.wait(), timeout=5)

    stopping = asyncio.create_task(first.shutdown())
    while first.running():
        await asyncio.sleep(0)
    # The workflow is cancelled but shutdown still waits for the handle to be recorded
    assert not stopping.done()
    provisioner.create_gate.set()
    await asyncio.wait_for(stopping, timeout=5)

    interrupted = await first.get_deployment(result.deployment.id)
    assert interrupted.status == "provisioning"
    assert interrupted.provider_handle == "fake-1"

    second = DeploymentOrchestrator(session_maker, provisioner, poll_interval=0, tenant_base_domain="tenants.test")
    try:
        await second.resume_inflight()
        await second.wait(result.deployment.id, timeout=10)
        deployment = await second.get_deployment(result.deployment.id)
    finally:
        await second.shutdown()

    assert deployment.status == "active"
    assert len(provisioner.created) == 1
    assert provisioner.created[0].client_token == result.deployment.id


@pytest.mark.asyncio
async def test_deployment_stats_by_status(orchestrator, provisioner):
    provisioner.script(ready())
    await submit_and_finish(orchestrator, instance_request("Live", model="dedicated"))
    provisioner.script(error("Region out of capacity"))
    await submit_and_finish(orchestrator, instance_request("Broken", model="dedicated"))

    gate = asyncio.Event()
    provisioner.poll_gate = gate
    provisioner.polling.clear()
    provisioner.script(ready())
    pending = await orchestrator.provision_tenant(instance_request("Waiting", model="dedicated"))
    await asyncio.wait_for(provisioner.polling.wait(), timeout=5)

    stats = await orchestrator.deployment_stats()

    assert stats == {
        "total": 3,
        "pending": 0,
        "provisioning": 1,
        "active": 1,
        "failed": 1,
        "in_flight": 1,
        "running_workflows": 1,
    }
    gate.set()
    await orchestrator.wait(pending.deployment.id, timeout=10)


@pytest.mark.asyncio
async def test_deployment_stats_on_empty_queue(orchestrator):
    stats = await orchestrator.deployment_stats()
    assert stats["total"] == 0
    assert stats["in_flight"] == 0


@pytest.mark.asyncio
async def test_get_unknown_deployment(orchestrator):
    with pytest.raises(NotFoundError):
        await orchestrator.get_deployment("missing")
