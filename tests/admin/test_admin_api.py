"""
Tests for the Admin HTTP API.

Tests cover:
- Response envelope and status codes
- Trigger acceptance (202) and rejection (409)
- Exception creation (201), duplicates (409) and lookups (404)
- Invalid bodies and parameters (400)
"""

import asyncio

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from admin.api import create_admin_app, setup_admin_routes


@pytest_asyncio.fixture
async def client(admin_service):
    test_client = TestClient(TestServer(create_admin_app(admin_service)))
    await test_client.start_server()
    yield test_client
    await test_client.close()


async def rule_id(client, collector_name, name):
    response = await client.get(f"/collectors/{collector_name}/rules")
    rules = (await response.json())["data"]
    return next(r["id"] for r in rules if r["name"] == name)


# =============================================================
# TEST: Collectors
# =============================================================

class TestCollectorEndpoints:
    """Collector configuration routes."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        """Health check answers without touching the stores."""
        response = await client.get("/health")
        assert response.status == 200
        assert (await response.json())["service"] == "health-engine"

    @pytest.mark.asyncio
    async def test_list_collectors(self, client):
        """Configs are wrapped in the ok envelope."""
        response = await client.get("/collectors")
        body = await response.json()
        assert response.status == 200
        assert body["status"] == "ok"
        assert len(body["data"]) == 13

    @pytest.mark.asyncio
    async def test_summary_route(self, client):
        """The summary route is not taken for a collector name."""
        response = await client.get("/collectors/summary")
        assert response.status == 200
        assert (await response.json())["data"]["total_collectors"] == 13

    @pytest.mark.asyncio
    async def test_unknown_collector(self, client):
        """Unknown kinds answer 404 with the error type."""
        response = await client.get("/collectors/Replication")
        body = await response.json()
        assert response.status == 404
        assert body["type"] == "CollectorNotFoundError"

    @pytest.mark.asyncio
    async def test_patch_collector(self, client):
        """Updates return the saved config."""
        response = await client.patch(
            "/collectors/CPU",
            json={"interval_seconds": 600, "weight": 15},
            headers={"X-Operator": "dba"},
        )
        data = (await response.json())["data"]
        assert response.status == 200
        assert data["interval_seconds"] == 600
        assert data["weight"] == 15.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{"interval_seconds": 1}, [1, 2]])
    async def test_patch_invalid(self, client, body):
        """Invalid values and non-object bodies answer 400."""
        response = await client.patch("/collectors/CPU", json=body)
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_patch_malformed_json(self, client):
        """A body that is not JSON answers 400."""
        response = await client.patch(
            "/collectors/CPU", data="{not json", headers={"Content-Type": "application/json"},
        )
        assert response.status == 400


# =============================================================
# TEST: Triggers and Logs
# =============================================================

class TestTriggerEndpoints:
    """Manual trigger status codes."""

    @pytest.mark.asyncio
    async def test_accept_then_reject(self, client, admin_service, sampler):
        """202 while idle, 409 while the run is in flight."""
        sampler.set_payload("CPU", {"p95_cpu_percent": 10.0})
        sampler.gate = asyncio.Event()

        first = await client.post("/collectors/CPU/trigger", headers={"X-Operator": "dba"})
        second = await client.post("/collectors/CPU/trigger")

        assert first.status == 202
        assert (await first.json())["outcome"] == "started"
        assert second.status == 409
        assert (await second.json())["outcome"] == "already_running"

        sampler.gate.set()
        await admin_service._orchestrator.wait_for_run("CPU")

        logs = await (await client.get("/collectors/CPU/logs?limit=5")).json()
        assert logs["data"][0]["triggered_by"] == "dba"

    @pytest.mark.asyncio
    async def test_disabled_is_rejected(self, client):
        """Disabled collectors answer 409."""
        await client.patch("/collectors/CPU", json={"enabled": False})
        response = await client.post("/collectors/CPU/trigger")
        assert response.status == 409
        assert (await response.json())["outcome"] == "disabled"

    @pytest.mark.asyncio
    async def test_invalid_limit(self, client):
        """Non-integer query parameters answer 400."""
        response = await client.get("/collectors/CPU/logs?limit=many")
        assert response.status == 400


# =============================================================
# TEST: Rules
# =============================================================

class TestRuleEndpoints:
    """Rule routes."""

    @pytest.mark.asyncio
    async def test_patch_rule(self, client):
        """A single rule is updated by id."""
        high = await rule_id(client, "CPU", "P95CPU_High")
        response = await client.patch(f"/rules/{high}", json={"threshold_value": 85})
        assert response.status == 200
        assert (await response.json())["data"]["threshold_value"] == 85.0

    @pytest.mark.asyncio
    async def test_patch_rule_errors(self, client):
        """Unknown ids answer 404, malformed ids 400."""
        assert (await client.patch("/rules/99999", json={"threshold_value": 1})).status == 404
        assert (await client.patch("/rules/abc", json={"threshold_value": 1})).status == 400

    @pytest.mark.asyncio
    async def test_bulk_update_and_reset(self, client):
        """PUT applies a list of updates; reset restores defaults."""
        high = await rule_id(client, "CPU", "P95CPU_High")

        response = await client.put("/collectors/CPU/rules", json=[{"id": high, "threshold_value": 70}])
        rules = {r["name"]: r for r in (await response.json())["data"]}
        assert response.status == 200
        assert rules["P95CPU_High"]["threshold_value"] == 70.0

        response = await client.post("/collectors/CPU/rules/reset")
        rules = {r["name"]: r for r in (await response.json())["data"]}
        assert rules["P95CPU_High"]["threshold_value"] == 80.0

    @pytest.mark.asyncio
    async def test_bulk_update_requires_list(self, client):
        """PUT bodies must be lists."""
        response = await client.put("/collectors/CPU/rules", json={"threshold_value": 70})
        assert response.status == 400


# =============================================================
# TEST: Exceptions
# =============================================================

class TestExceptionEndpoints:
    """Exception routes."""

    @pytest.mark.asyncio
    async def test_create_list_remove(self, client):
        """201 on create; listed as effective; removed by id."""
        response = await client.post("/exceptions", json={
            "collector_name": "Backups",
            "server_name": "SQL01",
            "exception_type": "LogBackup",
            "reason": "simple recovery model",
            "expires_at": "2026-02-01T00:00:00Z",
        })
        created = (await response.json())["data"]
        assert response.status == 201
        assert created["expires_at"].startswith("2026-02-01T00:00:00")

        listed = (await (await client.get("/exceptions?collector=Backups")).json())["data"]
        assert [e["effective"] for e in listed] == [True]

        response = await client.delete(f"/exceptions/{created['id']}")
        assert response.status == 200
        assert (await client.delete(f"/exceptions/{created['id']}")).status == 404

    @pytest.mark.asyncio
    async def test_duplicate_conflict(self, client):
        """A duplicate active entry answers 409."""
        body = {"collector_name": "CPU", "server_name": "SQL01"}
        assert (await client.post("/exceptions", json=body)).status == 201
        response = await client.post("/exceptions", json=body)
        assert response.status == 409
        assert (await response.json())["type"] == "DuplicateExceptionError"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"collector_name": "CPU"},
        {"collector_name": "Backups", "server_name": "SQL01", "exception_type": "CHECKDB"},
        {"collector_name": "CPU", "server_name": "SQL01", "expires_at": "next tuesday"},
    ])
    async def test_invalid_exception(self, client, body):
        """Missing fields, wrong types and bad timestamps answer 400."""
        response = await client.post("/exceptions", json=body)
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_exception_types(self, client):
        """Supported types are listed per collector."""
        response = await client.get("/collectors/Backups/exception-types")
        types = [t["type"] for t in (await response.json())["data"]]
        assert types == ["FullBackup", "LogBackup", "DiffBackup"]


# =============================================================
# TEST: Consolidation and Scores
# =============================================================

class TestScoreEndpoints:
    """Consolidation and score routes."""

    @pytest.mark.asyncio
    async def test_run_consolidation(self, client):
        """A cycle over empty stores scores nobody."""
        response = await client.post("/consolidation/run")
        assert response.status == 200
        assert (await response.json())["data"]["instances_scored"] == 0

        status = (await (await client.get("/consolidation/status")).json())["data"]
        assert status["configured"]
        assert status["last_result"]["instances_scored"] == 0

    @pytest.mark.asyncio
    async def test_score_views(self, client):
        """Fleet, transitions and history answer over empty stores."""
        fleet = await client.get("/fleet/summary?worst=5")
        transitions = await client.get("/transitions?instance=SQL01")
        history = await client.get("/instances/SQL01/history")

        assert (await fleet.json())["data"]["total_instances"] == 0
        assert (await transitions.json())["data"]["events"] == []
        assert (await history.json())["data"]["final_scores"] == []


class TestMounting:
    """setup_admin_routes mounts under a prefix."""

    @pytest.mark.asyncio
    async def test_prefix(self, admin_service):
        """Routes are reachable under /api."""
        app = web.Application()
        setup_admin_routes(app, admin_service)
        test_client = TestClient(TestServer(app))
        await test_client.start_server()
        try:
            response = await test_client.get("/api/collectors/CPU")
            assert response.status == 200
            assert (await response.json())["data"]["collector_name"] == "CPU"
        finally:
            await test_client.close()
