"""
Integration tests for the flag lifecycle: create, roll out, evaluate, delete.
"""

from datetime import datetime

import httpx
import pytest
import pytest_asyncio

from shared.config import get_config
from service_flags.app.main import FlagsService
from service_flags.app.persistence.memory import InMemoryAuditLedger, InMemoryFlagStore


def parse_time(value):
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class TestFlagLifecycle:
    """Integration tests for the Flags service."""

    @pytest.fixture
    def admin_headers(self):
        return {"x-user-roles": "admin", "x-user-id": "release-bot", "x-correlation-id": "rollout-1"}

    @pytest.fixture
    def service(self):
        config = get_config("flags", 8013, store_backend="memory", environment="prod")
        return FlagsService(config=config, store=InMemoryFlagStore(), ledger=InMemoryAuditLedger())

    @pytest_asyncio.fixture
    async def client(self, service):
        transport = httpx.ASGITransport(app=service.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://flags") as client:
            yield client
        await service.evaluator.drain()

    @pytest.mark.asyncio
    async def test_rollout_then_delete(self, client, admin_headers):
        """A flag goes from Beta to GA and is then deleted; its history survives."""
        create_response = await client.post(
            "/flags",
            json={"name": "new-dashboard", "status": "Beta", "owner": "team-ui"},
            headers=admin_headers
        )
        assert create_response.status_code == 201

        await client.post("/flags/new-dashboard/allowlist/tenant", json={"subjectId": "acme"},
                          headers=admin_headers)

        acme = await client.post("/flags/evaluate", json={"flagName": "new-dashboard", "tenantId": "acme"})
        globex = await client.post("/flags/evaluate", json={"flagName": "new-dashboard", "tenantId": "globex"})
        assert acme.json()["enabled"] is True
        assert globex.json()["reason"] == "tenant_not_in_beta_allowlist"

        promote = await client.patch("/flags/new-dashboard", json={"status": "GA"}, headers=admin_headers)
        assert promote.status_code == 200
        assert parse_time(promote.json()["updatedAt"]) > parse_time(create_response.json()["updatedAt"])

        globex = await client.post("/flags/evaluate", json={"flagName": "new-dashboard", "tenantId": "globex"})
        assert globex.json()["enabled"] is True
        assert globex.json()["reason"] == "ga_rollout"

        delete_response = await client.delete("/flags/new-dashboard", headers=admin_headers)
        assert delete_response.status_code == 200
        assert delete_response.json()["success"] is True

        after = await client.post("/flags/evaluate", json={"flagName": "new-dashboard", "tenantId": "acme"})
        assert after.json()["enabled"] is False
        assert after.json()["reason"] == "flag_not_found"

        history = await client.get("/audit", params={"flagName": "new-dashboard"}, headers=admin_headers)
        actions = [event["action"] for event in history.json()["events"]]
        assert actions[0] == "created"
        assert "deleted" in actions
        assert actions.count("evaluated") == 4

    @pytest.mark.asyncio
    async def test_admin_changes_share_request_correlation_id(self, client, admin_headers):
        """Every change made under one correlation ID can be retrieved together."""
        await client.post("/flags", json={"name": "checkout", "status": "Alpha"}, headers=admin_headers)
        await client.post("/flags/checkout/allowlist/user", json={"subjectId": "u1"}, headers=admin_headers)
        await client.patch("/flags/checkout", json={"owner": "team-pay"}, headers=admin_headers)

        response = await client.get("/audit", params={"correlationId": "rollout-1"}, headers=admin_headers)

        events = response.json()["events"]
        assert [e["action"] for e in events] == ["created", "allowlist_added", "updated"]
        assert all(e["userId"] == "release-bot" for e in events)
        assert events[2]["reason"] == "owner:release-bot->team-pay"

    @pytest.mark.asyncio
    async def test_environments_are_isolated(self, client, admin_headers):
        await client.post("/flags", json={"name": "search", "status": "GA", "environment": "staging"},
                          headers=admin_headers)

        staging = await client.post("/flags/evaluate", json={"flagName": "search", "environment": "staging"})
        prod = await client.post("/flags/evaluate", json={"flagName": "search"})

        assert staging.json()["enabled"] is True
        assert prod.json()["reason"] == "flag_not_found"

        listing = await client.get("/flags", params={"environment": "staging"}, headers=admin_headers)
        assert listing.json()["total"] == 1
