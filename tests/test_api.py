"""
Tests for the Fleet Orchestrator HTTP API
"""

import pytest
from httpx import AsyncClient

from tests.fakes import in_progress, ready, error


SHARED_VPS = {"name": "shared-eu-1", "ip_address": "203.0.113.10", "max_tenants": 10, "location": "eu-west"}


def instance_body(name: str, model: str = "shared", **extra) -> dict:
    body = {
        "organizationName": name,
        "tier": "starter",
        "deploymentModel": model,
        "adminUser": {"email": "admin@acme.io", "name": "Ada Admin"},
    }
    body.update(extra)
    return body


async def register(client: AsyncClient, **overrides) -> dict:
    response = await client.post("/api/vps", json={**SHARED_VPS, **overrides})
    assert response.status_code == 201, response.text
    return response.json()


# ============ Fleet ============

@pytest.mark.asyncio
async def test_register_and_list_vps(client: AsyncClient):
    vps = await register(client)
    assert vps["current_tenants"] == 0
    assert vps["deployment_type"] == "shared"

    response = await client.get("/api/vps")
    assert response.status_code == 200
    assert [v["id"] for v in response.json()] == [vps["id"]]

    response = await client.get(f"/api/vps/{vps['id']}")
    assert response.status_code == 200
    assert response.json()["name"] == "shared-eu-1"


@pytest.mark.asyncio
async def test_register_invalid_ip_is_400(client: AsyncClient):
    response = await client.post("/api/vps", json={**SHARED_VPS, "ip_address": "999.0.0.1"})
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_register_malformed_body_is_400(client: AsyncClient):
    response = await client.post("/api/vps", json={"ip_address": "203.0.113.10"})
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "validation_error"
    assert body["details"]["errors"]


@pytest.mark.asyncio
async def test_register_duplicate_name_is_409(client: AsyncClient):
    await register(client)
    response = await client.post("/api/vps", json={**SHARED_VPS, "ip_address": "203.0.113.11"})
    assert response.status_code == 409
    assert response.json()["error"] == "conflict"


@pytest.mark.asyncio
async def test_unknown_vps_is_404(client: AsyncClient):
    response = await client.get("/api/vps/nope")
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


@pytest.mark.asyncio
async def test_available_and_stats(client: AsyncClient):
    a = await register(client, name="a", max_tenants=2)
    b = await register(client, name="b", max_tenants=5)
    await register(client, name="c", max_tenants=5)
    await client.post("/api/instances", json=instance_body("One", vpsId=a["id"]))
    await client.post("/api/instances", json=instance_body("Two", vpsId=a["id"]))
    await client.post("/api/instances", json=instance_body("Three", vpsId=b["id"]))

    response = await client.patch(f"/api/vps/{b['id']}/status", json={"status": "maintenance"})
    assert response.status_code == 200
    assert response.json()["status"] == "maintenance"

    available = (await client.get("/api/vps/available")).json()
    assert [v["name"] for v in available] == ["c"]

    stats = (await client.get("/api/vps/stats")).json()
    assert stats["total_vps"] == 3
    assert stats["shared_vps"] == 3
    assert stats["dedicated_vps"] == 0
    assert stats["total_tenants"] == 3
    assert stats["active_vps"] == 2


@pytest.mark.asyncio
async def test_telemetry_is_accepted_even_for_unknown_vps(client: AsyncClient):
    vps = await register(client)

    response = await client.put(
        f"/api/vps/{vps['id']}/telemetry", json={"cpu_usage_percent": 37.5, "memory_usage_percent": 52.0}
    )
    assert response.status_code == 202
    assert response.json()["stored"] is True
    assert (await client.get(f"/api/vps/{vps['id']}")).json()["cpu_usage_percent"] == 37.5

    response = await client.put(
        "/api/vps/unknown/telemetry", json={"cpu_usage_percent": 1, "memory_usage_percent": 1}
    )
    assert response.status_code == 202
    assert response.json()["stored"] is False


# ============ Shared instances ============

@pytest.mark.asyncio
async def test_create_shared_instance_auto(client: AsyncClient):
    await register(client, name="busy", max_tenants=10)
    idle = await register(client, name="idle", max_tenants=10)
    await client.post("/api/instances", json=instance_body("Warmup", vpsId=(await client.get("/api/vps")).json()[0]["id"]))

    response = await client.post("/api/instances", json=instance_body("Acme Corp", vpsId="auto"))

    assert response.status_code == 201
    body = response.json()
    assert body["tenant"]["slug"] == "acme-corp"
    assert body["tenant"]["deployment_model"] == "shared"
    assert body["vps"]["id"] == idle["id"]
    assert body["vps"]["current_tenants"] == 1


@pytest.mark.asyncio
async def test_explicit_full_vps_is_409_and_nothing_changes(client: AsyncClient):
    full = await register(client, name="tiny", max_tenants=1)
    await register(client, name="roomy", max_tenants=10)
    await client.post("/api/instances", json=instance_body("First", vpsId=full["id"]))

    response = await client.post("/api/instances", json=instance_body("Second", vpsId=full["id"]))

    assert response.status_code == 409
    assert response.json()["error"] == "placement_error"
    assert (await client.get(f"/api/vps/{full['id']}")).json()["current_tenants"] == 1
    assert (await client.get("/api/instances/by-slug/second")).status_code == 404


@pytest.mark.asyncio
async def test_no_capacity_is_409(client: AsyncClient):
    response = await client.post("/api/instances", json=instance_body("Acme"))
    assert response.status_code == 409
    assert response.json()["error"] == "no_capacity"


@pytest.mark.asyncio
async def test_duplicate_slug_is_409(client: AsyncClient):
    await register(client)
    assert (await client.post("/api/instances", json=instance_body("Acme", slug="acme"))).status_code == 201

    response = await client.post("/api/instances", json=instance_body("Acme Again", slug="ACME"))

    assert response.status_code == 409
    assert response.json()["error"] == "conflict"


@pytest.mark.asyncio
async def test_invalid_instance_body_is_400(client: AsyncClient):
    body = instance_body("Acme")
    del body["adminUser"]
    response = await client.post("/api/instances", json=body)
    assert response.status_code == 400

    response = await client.post("/api/instances", json=instance_body("Acme", deploymentModel="hybrid"))
    assert response.status_code == 400

    await register(client)
    response = await client.post("/api/instances", json=instance_body("Acme", slug="Bad Slug!"))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_list_and_delete_shared_instance(client: AsyncClient):
    vps = await register(client)
    await client.post("/api/instances", json=instance_body("Acme"))

    tenants = (await client.get("/api/instances")).json()
    assert [t["slug"] for t in tenants] == ["acme"]

    response = await client.delete("/api/instances/acme")
    assert response.status_code == 204
    assert (await client.get(f"/api/vps/{vps['id']}")).json()["current_tenants"] == 0
    assert (await client.get("/api/instances")).json() == []


# ============ Dedicated instances ============

@pytest.mark.asyncio
async def test_dedicated_instance_lifecycle(client: AsyncClient, orchestrator, provisioner):
    provisioner.script(in_progress("Installing OS"), in_progress("Starting services"), ready())

    response = await client.post("/api/instances", json=instance_body("Acme Corp", model="dedicated", tier="enterprise"))

    assert response.status_code == 202
    body = response.json()
    deployment_id = body["deploymentId"]
    assert body["status"] == "pending"
    assert body["status_url"] == f"/api/instances/{deployment_id}/status"
    assert body["submitted"]["organizationName"] == "Acme Corp"

    await orchestrator.wait(deployment_id, timeout=10)

    response = await client.get(f"/api/instances/{deployment_id}/status")
    assert response.status_code == 200
    status = response.json()
    assert status["status"] == "active"
    assert status["access_url"] == "https://acme-corp.tenants.test"
    assert status["credentials"]["admin_email"] == "admin@acme.io"
    assert [entry["message"] for entry in status["logs"]][2:4] == ["Installing OS", "Starting services"]

    stats = (await client.get("/api/vps/stats")).json()
    assert stats["dedicated_vps"] == 1
    assert stats["total_tenants"] == 1
    assert provisioner.created[0].tier == "enterprise"


@pytest.mark.asyncio
async def test_dedicated_failure_is_reported_on_status(client: AsyncClient, orchestrator, provisioner):
    provisioner.script(error("Region out of capacity"))

    response = await client.post("/api/instances", json=instance_body("Acme", model="dedicated"))
    deployment_id = response.json()["deploymentId"]
    await orchestrator.wait(deployment_id, timeout=10)

    status = (await client.get(f"/api/instances/{deployment_id}/status")).json()
    assert status["status"] == "failed"
    assert status["error_code"] == "provider_error"
    assert "Region out of capacity" in status["error_message"]
    assert status["access_url"] is None

    vps = (await client.get("/api/vps")).json()
    assert vps[0]["status"] == "offline"


@pytest.mark.asyncio
async def test_dedicated_with_vps_id_is_409(client: AsyncClient):
    vps = await register(client)
    response = await client.post("/api/instances", json=instance_body("Acme", model="dedicated", vpsId=vps["id"]))
    assert response.status_code == 409
    assert response.json()["error"] == "placement_error"


@pytest.mark.asyncio
async def test_unknown_deployment_is_404(client: AsyncClient):
    response = await client.get("/api/instances/does-not-exist/status")
    assert response.status_code == 404


# ============ Deployment queue ============

@pytest.mark.asyncio
async def test_deployment_stats(client: AsyncClient, orchestrator, provisioner):
    await register(client)
    await client.post("/api/instances", json=instance_body("Shared Co"))
    provisioner.script(error("Region out of capacity"))
    response = await client.post("/api/instances", json=instance_body("Acme", model="dedicated"))
    await orchestrator.wait(response.json()["deploymentId"], timeout=10)

    response = await client.get("/api/deployments/stats")

    assert response.status_code == 200
    stats = response.json()
    assert stats["total"] == 1
    assert stats["failed"] == 1
    assert stats["active"] == 0
    assert stats["in_flight"] == 0
    assert stats["running_workflows"] == 0
