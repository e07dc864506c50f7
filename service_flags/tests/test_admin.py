"""
Unit tests for flag administration and audit queries.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from shared.errors import DatabaseError, DuplicateFlagError, FlagNotFoundError, ValidationError
from shared.metrics import MetricsCollector
from service_flags.app.admin.service import FlagAdministration
from service_flags.app.persistence.memory import InMemoryAuditLedger, InMemoryFlagStore
from service_flags.app.rules.models import (
    Actor, AllowlistKind, AuditAction, FeatureFlag, FlagPatch, FlagStatus
)


class TestFlagAdministration:
    """Test cases for FlagAdministration."""

    @pytest.fixture
    def store(self):
        return InMemoryFlagStore()

    @pytest.fixture
    def ledger(self):
        return InMemoryAuditLedger()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("flags")

    @pytest.fixture
    def admin(self, store, ledger, metrics):
        """Create FlagAdministration over in-memory backends."""
        return FlagAdministration(store, ledger, metrics)

    @pytest.fixture
    def actor(self):
        return Actor(user_id="admin-1", tenant_id="ops", correlation_id="admin-req")

    @pytest.fixture
    def flag(self):
        return FeatureFlag(name="checkout", environment="prod", status=FlagStatus.ALPHA, owner="team-pay")

    @pytest.mark.asyncio
    async def test_create_writes_audit_event(self, admin, ledger, actor, flag):
        """Creation is recorded with the caller's identity."""
        created = await admin.create_flag(flag, actor)

        events = (await ledger.query_by_correlation_id("admin-req")).events
        assert created.name == "checkout"
        assert len(events) == 1
        assert events[0].action == AuditAction.CREATED
        assert events[0].user_id == "admin-1"
        assert events[0].reason == "status:Alpha,owner:team-pay"

    @pytest.mark.asyncio
    async def test_duplicate_create_writes_nothing(self, admin, ledger, actor, flag, metrics):
        await admin.create_flag(flag, actor)

        with pytest.raises(DuplicateFlagError):
            await admin.create_flag(flag, actor)

        assert len((await ledger.query_by_correlation_id("admin-req")).events) == 1
        assert metrics.registry.get_sample_value(
            "flag_mutations_total", {"action": "created", "outcome": "failure"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_required_audit_failure_rolls_back_mutation(self, store, ledger, actor, flag):
        """A mutation whose audit cannot be written does not happen."""
        admin = FlagAdministration(store, ledger)
        await admin.create_flag(flag, actor)
        ledger._append = AsyncMock(side_effect=OSError("ledger down"))

        with pytest.raises(DatabaseError):
            await admin.update_flag("checkout", "prod", FlagPatch(status=FlagStatus.GA), actor)

        assert (await store.get("checkout", "prod")).status == FlagStatus.ALPHA

    @pytest.mark.asyncio
    async def test_failed_create_audit_leaves_no_flag(self, store, ledger, actor, flag):
        ledger._append = AsyncMock(side_effect=OSError("ledger down"))
        admin = FlagAdministration(store, ledger)

        with pytest.raises(DatabaseError):
            await admin.create_flag(flag, actor)

        assert await store.get("checkout", "prod") is None

    @pytest.mark.asyncio
    async def test_update_records_diff(self, admin, ledger, actor, flag):
        await admin.create_flag(flag, actor)

        updated = await admin.update_flag("checkout", "prod",
                                          FlagPatch(status=FlagStatus.BETA, owner="team-core"), actor)

        events = (await ledger.query_by_correlation_id("admin-req")).events
        assert updated.status == FlagStatus.BETA
        assert events[-1].action == AuditAction.UPDATED
        assert events[-1].reason == "status:Alpha->Beta,owner:team-pay->team-core"

    @pytest.mark.asyncio
    async def test_update_empty_patch_rejected(self, admin, actor, flag):
        await admin.create_flag(flag, actor)

        with pytest.raises(ValidationError):
            await admin.update_flag("checkout", "prod", FlagPatch(), actor)

    @pytest.mark.asyncio
    async def test_update_missing_flag(self, admin, ledger, actor):
        """Updating an unknown flag raises and writes nothing."""
        with pytest.raises(FlagNotFoundError):
            await admin.update_flag("ghost", "prod", FlagPatch(owner="x"), actor)

        assert (await ledger.query_by_correlation_id("admin-req")).events == []

    @pytest.mark.asyncio
    async def test_delete_keeps_audit_trail(self, admin, store, ledger, actor, flag):
        """History for a deleted flag stays queryable."""
        await admin.create_flag(flag, actor)
        await admin.add_to_allowlist("checkout", "prod", AllowlistKind.TENANT, "acme", actor)

        await admin.delete_flag("checkout", "prod", actor)

        assert await store.get("checkout", "prod") is None
        page = await admin.audit_by_flag("checkout", "prod")
        assert [e.action for e in page.events] == [
            AuditAction.CREATED, AuditAction.ALLOWLIST_ADDED, AuditAction.DELETED
        ]

    @pytest.mark.asyncio
    async def test_delete_missing_flag(self, admin, actor):
        with pytest.raises(FlagNotFoundError):
            await admin.delete_flag("ghost", "prod", actor)

    @pytest.mark.asyncio
    async def test_recreate_after_delete(self, admin, actor, flag):
        """A deleted key can be created again."""
        await admin.create_flag(flag, actor)
        await admin.delete_flag("checkout", "prod", actor)

        recreated = await admin.create_flag(flag, actor)

        assert recreated.status == FlagStatus.ALPHA

    @pytest.mark.asyncio
    async def test_allowlist_noop_writes_no_event(self, admin, ledger, actor, flag):
        """Repeated adds and removals of non-members are not audited."""
        await admin.create_flag(flag, actor)

        assert await admin.add_to_allowlist("checkout", "prod", AllowlistKind.USER, "u1", actor) is True
        assert await admin.add_to_allowlist("checkout", "prod", AllowlistKind.USER, "u1", actor) is False
        assert await admin.remove_from_allowlist("checkout", "prod", AllowlistKind.USER, "u2", actor) is False
        assert await admin.remove_from_allowlist("checkout", "prod", AllowlistKind.USER, "u1", actor) is True

        actions = [e.action for e in (await ledger.query_by_correlation_id("admin-req")).events]
        assert actions == [AuditAction.CREATED, AuditAction.ALLOWLIST_ADDED, AuditAction.ALLOWLIST_REMOVED]

    @pytest.mark.asyncio
    async def test_allowlist_requires_subject(self, admin, actor, flag):
        await admin.create_flag(flag, actor)

        with pytest.raises(ValidationError):
            await admin.add_to_allowlist("checkout", "prod", AllowlistKind.TENANT, " ", actor)

    @pytest.mark.asyncio
    async def test_allowlist_on_missing_flag(self, admin, actor):
        with pytest.raises(FlagNotFoundError):
            await admin.add_to_allowlist("ghost", "prod", AllowlistKind.TENANT, "acme", actor)

    @pytest.mark.asyncio
    async def test_get_flag_returns_allowlists(self, admin, actor, flag):
        await admin.create_flag(flag, actor)
        await admin.add_to_allowlist("checkout", "prod", AllowlistKind.TENANT, "acme", actor)
        await admin.add_to_allowlist("checkout", "prod", AllowlistKind.USER, "u1", actor)

        fetched, tenants, users = await admin.get_flag("checkout", "prod")

        assert fetched.owner == "team-pay"
        assert tenants == frozenset({"acme"})
        assert users == frozenset({"u1"})

    @pytest.mark.asyncio
    async def test_get_missing_flag(self, admin):
        with pytest.raises(FlagNotFoundError):
            await admin.get_flag("ghost", "prod")

    @pytest.mark.asyncio
    async def test_audit_pagination(self, admin, actor, flag):
        """Pages chain through next_cursor until exhausted."""
        await admin.create_flag(flag, actor)
        for i in range(5):
            await admin.add_to_allowlist("checkout", "prod", AllowlistKind.USER, f"u{i}", actor)

        first = await admin.audit_by_flag("checkout", "prod", limit=4)
        second = await admin.audit_by_flag("checkout", "prod", limit=4, cursor=first.next_cursor)

        assert len(first.events) == 4
        assert first.next_cursor == first.events[-1].id
        assert len(second.events) == 2
        assert second.next_cursor is None

    @pytest.mark.asyncio
    async def test_audit_naive_bounds_treated_as_utc(self, admin, actor, flag):
        await admin.create_flag(flag, actor)
        now = datetime.now(timezone.utc).replace(tzinfo=None)

        page = await admin.audit_by_flag("checkout", "prod",
                                         start=now - timedelta(minutes=1), end=now + timedelta(minutes=1))

        assert len(page.events) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"limit": 0},
        {"limit": 501},
        {"cursor": -1},
        {"start": datetime(2024, 2, 1, tzinfo=timezone.utc), "end": datetime(2024, 1, 1, tzinfo=timezone.utc)},
    ])
    async def test_audit_query_validation(self, admin, kwargs):
        with pytest.raises(ValidationError):
            await admin.audit_by_flag("checkout", "prod", **kwargs)

    @pytest.mark.asyncio
    async def test_audit_by_correlation_id_requires_value(self, admin):
        with pytest.raises(ValidationError):
            await admin.audit_by_correlation_id("")

    @pytest.mark.asyncio
    async def test_audit_by_correlation_id_paginates(self, admin, actor, flag):
        await admin.create_flag(flag, actor)
        for i in range(3):
            await admin.add_to_allowlist("checkout", "prod", AllowlistKind.USER, f"u{i}", actor)

        first = await admin.audit_by_correlation_id("admin-req", limit=3)
        second = await admin.audit_by_correlation_id("admin-req", limit=3, cursor=first.next_cursor)

        assert [e.action for e in first.events] == [
            AuditAction.CREATED, AuditAction.ALLOWLIST_ADDED, AuditAction.ALLOWLIST_ADDED
        ]
        assert len(second.events) == 1
        assert second.next_cursor is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [{"limit": 0}, {"limit": 501}, {"cursor": -1}])
    async def test_audit_by_correlation_id_page_validation(self, admin, kwargs):
        with pytest.raises(ValidationError):
            await admin.audit_by_correlation_id("admin-req", **kwargs)
