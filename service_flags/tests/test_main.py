"""
Unit tests for the Flags service HTTP surface.
"""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from shared.config import get_config
from shared.errors import DatabaseError
from service_flags.app.main import FlagsService, create_app
from service_flags.app.persistence.memory import InMemoryAuditLedger, InMemoryFlagStore

ADMIN_HEADERS = {"x-user-roles": "viewer, admin", "x-user-id": "admin-1", "x-tenant-id": "ops"}


class TestFlagsService:
    """Test cases for FlagsService."""

    @pytest.fixture
    def config(self):
        return get_config("flags", 8013, store_backend="memory", environment="prod")

    @pytest.fixture
    def service(self, config):
        """Create FlagsService instance over in-memory backends."""
        return FlagsService(config=config, store=InMemoryFlagStore(), ledger=InMemoryAuditLedger())

    @pytest.fixture
    def client(self, service):
        """Create test client."""
        with TestClient(service.app) as test_client:
            yield test_client

    def create_flag(self, client, name="new-dashboard", status="Beta", **extra):
        payload = {"name": name, "status": status, "owner": "team-ui", **extra}
        return client.post("/flags", json=payload, headers=ADMIN_HEADERS)

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["service"] == "flags"

    def test_health_reports_dependencies(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"] == {"flag_store": "ok", "audit_ledger": "ok"}

    def test_create_app_builds_default_backends(self):
        """create_app falls back to the configured backend."""
        app = create_app(config=get_config("flags", 8013, store_backend="memory"))

        assert app.title == "Flags Service"

    def test_evaluate_unknown_flag(self, client):
        """Unknown flags answer disabled, not an error."""
        response = client.post("/flags/evaluate", json={"flagName": "ghost", "tenantId": "acme"},
                               headers={"x-correlation-id": "req-123"})

        assert response.status_code == 200
        data = response.json()
        assert data["enabled"] is False
        assert data["reason"] == "flag_not_found"
        assert data["correlationId"] == "req-123"
        assert response.headers["x-correlation-id"] == "req-123"

    def test_correlation_id_generated_when_absent(self, client):
        response = client.post("/flags/evaluate", json={"flagName": "ghost"})

        generated = response.headers["x-correlation-id"]
        assert generated
        assert response.json()["correlationId"] == generated

    def test_evaluate_requires_flag_name(self, client):
        """Malformed bodies are rejected with a validation error."""
        response = client.post("/flags/evaluate", json={"tenantId": "acme"})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert "x-correlation-id" in response.headers

    def test_oversized_correlation_id_rejected(self, service, client):
        """A correlation ID longer than the audit column is refused before evaluation."""
        response = client.post("/flags/evaluate", json={"flagName": "ghost"},
                               headers={"x-correlation-id": "c" * 5000})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert response.json()["details"]["header"] == "x-correlation-id"
        assert len(response.headers["x-correlation-id"]) <= 255
        assert service.ledger._events == []

    def test_correlation_id_at_column_width_accepted(self, client):
        correlation_id = "c" * 255
        response = client.post("/flags/evaluate", json={"flagName": "ghost"},
                               headers={"x-correlation-id": correlation_id})

        assert response.status_code == 200
        assert response.json()["correlationId"] == correlation_id

    @pytest.mark.parametrize("header", ["x-user-id", "x-tenant-id"])
    def test_oversized_identity_header_rejected(self, service, client, header):
        headers = {**ADMIN_HEADERS, header: "u" * 5000}

        response = client.post("/flags", json={"name": "checkout", "status": "Beta"}, headers=headers)

        assert response.status_code == 400
        assert response.json()["details"]["header"] == header
        assert service.ledger._events == []

    def test_bulk_rejects_blank_names(self, client):
        response = client.post("/flags/evaluate-bulk", json={"flagNames": ["a", " "]})

        assert response.status_code == 400

    def test_admin_requires_role(self, client):
        """Administrative routes reject callers without the admin role."""
        response = client.post("/flags", json={"name": "x"}, headers={"x-user-roles": "viewer"})

        assert response.status_code == 403
        assert response.json()["code"] == "AUTHORIZATION_ERROR"

    def test_audit_requires_role(self, client):
        response = client.get("/audit", params={"correlationId": "req-1"})

        assert response.status_code == 403

    def test_create_flag(self, client):
        response = self.create_flag(client)

        assert response.status_code == 201
        data = response.json()
        assert data["name"] == "new-dashboard"
        assert data["environment"] == "prod"
        assert data["status"] == "Beta"
        assert data["createdAt"] == data["updatedAt"]

    def test_create_duplicate_flag(self, client):
        self.create_flag(client)

        response = self.create_flag(client)

        assert response.status_code == 409
        assert response.json()["code"] == "DUPLICATE_FLAG"

    def test_create_rejects_unknown_status(self, client):
        response = self.create_flag(client, status="Sunset")

        assert response.status_code == 400

    def test_create_rejects_invalid_name(self, client):
        response = self.create_flag(client, name="has spaces")

        assert response.status_code == 400

    def test_get_unknown_flag(self, client):
        response = client.get("/flags/ghost", headers=ADMIN_HEADERS)

        assert response.status_code == 404
        assert response.json()["code"] == "FLAG_NOT_FOUND"

    def test_update_requires_a_field(self, client):
        self.create_flag(client)

        response = client.patch("/flags/new-dashboard", json={}, headers=ADMIN_HEADERS)

        assert response.status_code == 400

    def test_allowlist_round_trip(self, client):
        """Allowlist membership drives evaluation of a gated flag."""
        self.create_flag(client)

        added = client.post("/flags/new-dashboard/allowlist/tenant", json={"subjectId": "acme"},
                            headers=ADMIN_HEADERS)
        again = client.post("/flags/new-dashboard/allowlist/tenant", json={"subjectId": "acme"},
                            headers=ADMIN_HEADERS)
        evaluation = client.post("/flags/evaluate", json={"flagName": "new-dashboard", "tenantId": "acme"})

        assert added.status_code == 200
        assert added.json()["subjects"] == ["acme"]
        assert added.json()["changed"] is True
        assert again.json()["changed"] is False
        assert evaluation.json()["reason"] == "tenant_in_beta_allowlist"

        removed = client.delete("/flags/new-dashboard/allowlist/tenant/acme", headers=ADMIN_HEADERS)
        assert removed.json()["subjects"] == []

    def test_unknown_allowlist_kind(self, client):
        self.create_flag(client)

        response = client.get("/flags/new-dashboard/allowlist/group", headers=ADMIN_HEADERS)

        assert response.status_code == 400

    def test_bulk_evaluation_order(self, client):
        self.create_flag(client, name="a", status="GA")
        self.create_flag(client, name="b", status="Disabled")

        response = client.post("/flags/evaluate-bulk", json={"flagNames": ["b", "missing", "a"]})

        assert response.status_code == 200
        assert [r["flagName"] for r in response.json()] == ["b", "missing", "a"]
        assert [r["reason"] for r in response.json()] == ["flag_disabled", "flag_not_found", "ga_rollout"]

    def test_audit_by_correlation_id(self, client):
        client.post("/flags/evaluate", json={"flagName": "ghost"}, headers={"x-correlation-id": "trace-9"})

        response = client.get("/audit", params={"correlationId": "trace-9"}, headers=ADMIN_HEADERS)

        assert response.status_code == 200
        events = response.json()["events"]
        assert len(events) == 1
        assert events[0]["action"] == "evaluated"
        assert events[0]["result"] is False

    def test_audit_by_flag_paginates(self, client):
        self.create_flag(client)
        for subject in ["t1", "t2", "t3"]:
            client.post("/flags/new-dashboard/allowlist/tenant", json={"subjectId": subject},
                        headers=ADMIN_HEADERS)

        first = client.get("/audit", params={"flagName": "new-dashboard", "limit": 2}, headers=ADMIN_HEADERS)
        cursor = first.json()["nextCursor"]
        second = client.get("/audit", params={"flagName": "new-dashboard", "limit": 2, "cursor": cursor},
                            headers=ADMIN_HEADERS)

        assert len(first.json()["events"]) == 2
        assert len(second.json()["events"]) == 2
        assert second.json()["nextCursor"] is None

    def test_audit_by_correlation_id_paginates(self, client):
        """Correlation queries honour limit and cursor."""
        client.post("/flags/evaluate-bulk", json={"flagNames": ["a", "b", "c"]},
                    headers={"x-correlation-id": "bulk-42"})

        seen, cursor = [], None
        for _ in range(3):
            params = {"correlationId": "bulk-42", "limit": 1}
            if cursor is not None:
                params["cursor"] = cursor
            response = client.get("/audit", params=params, headers=ADMIN_HEADERS)
            assert response.status_code == 200
            page = response.json()
            assert len(page["events"]) == 1
            seen.extend(e["flagName"] for e in page["events"])
            cursor = page["nextCursor"]

        assert sorted(seen) == ["a", "b", "c"]
        last = client.get("/audit", params={"correlationId": "bulk-42", "limit": 1, "cursor": cursor},
                          headers=ADMIN_HEADERS)
        assert last.json() == {"events": [], "nextCursor": None}

    def test_audit_requires_filter(self, client):
        response = client.get("/audit", headers=ADMIN_HEADERS)

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_storage_failure_maps_to_503(self, service, client):
        """Storage faults surface with a generic message."""
        service.store.list_flags = AsyncMock(side_effect=DatabaseError("list_flags"))

        response = client.get("/flags", headers=ADMIN_HEADERS)

        assert response.status_code == 503
        assert response.json()["code"] == "DATABASE_ERROR"
        assert response.json()["message"] == "Storage operation failed"

    def test_metrics_endpoint(self, client):
        client.post("/flags/evaluate", json={"flagName": "ghost"})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "flag_evaluations_total" in response.text
        assert "http_requests_total" in response.text
