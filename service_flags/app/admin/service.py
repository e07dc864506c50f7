"""
Administration and audit query operations for the Flags Service.

Every mutation runs in one store transaction together with its required
audit append, so a mutation either commits with its audit event or not at
all.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import FrozenSet, List, Optional, Tuple

from shared.errors import FlagNotFoundError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tracing import get_tracer, trace_operation

from ..persistence.base import AuditLedger, FlagStore
from ..rules.models import (
    Actor, AllowlistKind, AuditAction, AuditEvent, AuditPage, FeatureFlag, FlagPatch
)

MAX_AUDIT_PAGE = 500


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _check_page(limit: int, cursor: Optional[int]):
    if limit < 1 or limit > MAX_AUDIT_PAGE:
        raise ValidationError(f"limit must be between 1 and {MAX_AUDIT_PAGE}", {"field": "limit"})
    if cursor is not None and cursor < 0:
        raise ValidationError("cursor must not be negative", {"field": "cursor"})


class FlagAdministration:
    """Audited CRUD over flags and allowlists, plus audit retrieval."""

    def __init__(self, store: FlagStore, ledger: AuditLedger, metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.ledger = ledger
        self.metrics = metrics
        self.logger = get_logger("flags.admin")
        self.tracer = get_tracer(__name__)

    @contextmanager
    def _observe(self, action: AuditAction, name: str, environment: str):
        with trace_operation(self.tracer, f"flags.admin.{action.value}",
                             **{"flag.name": name, "flag.environment": environment}):
            try:
                yield
            except Exception as e:
                self._count(action, "failure")
                self.logger.warning("Flag mutation failed", action=action.value, name=name,
                                    environment=environment, error_type=type(e).__name__)
                raise
        self._count(action, "success")

    def _count(self, action: AuditAction, outcome: str):
        if self.metrics:
            self.metrics.increment_counter("flag_mutations_total", action=action.value, outcome=outcome)

    @staticmethod
    def _event(action: AuditAction, name: str, environment: str, actor: Actor, reason: str) -> AuditEvent:
        return AuditEvent(
            flag_name=name,
            environment=environment,
            action=action,
            correlation_id=actor.correlation_id,
            reason=reason,
            tenant_id=actor.tenant_id,
            user_id=actor.user_id
        )

    @staticmethod
    def _require_subject(subject_id: str):
        if not subject_id or not subject_id.strip():
            raise ValidationError("Subject ID is required", {"field": "subjectId"})

    async def create_flag(self, flag: FeatureFlag, actor: Actor) -> FeatureFlag:
        """Create a flag. Raises DuplicateFlagError without touching existing state."""
        with self._observe(AuditAction.CREATED, flag.name, flag.environment):
            async with self.store.transaction(flag.name, flag.environment) as tx:
                created = await self.store.create(flag, tx=tx)
                await self.ledger.append_required(
                    self._event(AuditAction.CREATED, created.name, created.environment, actor,
                                f"status:{created.status.value},owner:{created.owner}"),
                    tx=tx
                )

        self.logger.info("Flag created", name=created.name, environment=created.environment,
                         status=created.status.value, actor=actor.user_id)
        return created

    async def update_flag(self, name: str, environment: str, patch: FlagPatch, actor: Actor) -> FeatureFlag:
        """Change status and/or owner. Raises FlagNotFoundError when absent."""
        if patch.is_empty():
            raise ValidationError("At least one of status or owner is required")

        with self._observe(AuditAction.UPDATED, name, environment):
            async with self.store.transaction(name, environment) as tx:
                current = await self.store.get(name, environment, tx=tx)
                if current is None:
                    raise FlagNotFoundError(name, environment)
                updated = await self.store.update(name, environment, patch, tx=tx)
                await self.ledger.append_required(
                    self._event(AuditAction.UPDATED, name, environment, actor, patch.describe(current)),
                    tx=tx
                )

        self.logger.info("Flag updated", name=name, environment=environment,
                         status=updated.status.value, actor=actor.user_id)
        return updated

    async def delete_flag(self, name: str, environment: str, actor: Actor) -> FeatureFlag:
        """Delete a flag. Its audit trail is kept."""
        with self._observe(AuditAction.DELETED, name, environment):
            async with self.store.transaction(name, environment) as tx:
                current = await self.store.get(name, environment, tx=tx)
                if current is None:
                    raise FlagNotFoundError(name, environment)
                await self.ledger.append_required(
                    self._event(AuditAction.DELETED, name, environment, actor,
                                f"status:{current.status.value}"),
                    tx=tx
                )
                deleted = await self.store.delete(name, environment, tx=tx)

        self.logger.info("Flag deleted", name=name, environment=environment, actor=actor.user_id)
        return deleted

    async def add_to_allowlist(self, name: str, environment: str, kind: AllowlistKind,
                               subject_id: str, actor: Actor) -> bool:
        """Add a subject; a repeated add changes nothing and writes no event."""
        self._require_subject(subject_id)

        with self._observe(AuditAction.ALLOWLIST_ADDED, name, environment):
            async with self.store.transaction(name, environment) as tx:
                changed = await self.store.add_to_allowlist(name, environment, kind, subject_id, tx=tx)
                if changed:
                    await self.ledger.append_required(
                        self._event(AuditAction.ALLOWLIST_ADDED, name, environment, actor,
                                    f"{kind.value}:{subject_id}"),
                        tx=tx
                    )
        return changed

    async def remove_from_allowlist(self, name: str, environment: str, kind: AllowlistKind,
                                    subject_id: str, actor: Actor) -> bool:
        """Remove a subject; removing a non-member changes nothing and writes no event."""
        self._require_subject(subject_id)

        with self._observe(AuditAction.ALLOWLIST_REMOVED, name, environment):
            async with self.store.transaction(name, environment) as tx:
                changed = await self.store.remove_from_allowlist(name, environment, kind, subject_id, tx=tx)
                if changed:
                    await self.ledger.append_required(
                        self._event(AuditAction.ALLOWLIST_REMOVED, name, environment, actor,
                                    f"{kind.value}:{subject_id}"),
                        tx=tx
                    )
        return changed

    async def get_flag(self, name: str, environment: str) -> Tuple[FeatureFlag, FrozenSet[str], FrozenSet[str]]:
        """Return a flag with its tenant and user allowlists."""
        flag = await self.store.get(name, environment)
        if flag is None:
            raise FlagNotFoundError(name, environment)
        tenants = await self.store.list_allowlist(name, environment, AllowlistKind.TENANT)
        users = await self.store.list_allowlist(name, environment, AllowlistKind.USER)
        return flag, tenants, users

    async def list_flags(self, environment: Optional[str] = None) -> List[FeatureFlag]:
        return await self.store.list_flags(environment)

    async def list_allowlist(self, name: str, environment: str, kind: AllowlistKind) -> FrozenSet[str]:
        if await self.store.get(name, environment) is None:
            raise FlagNotFoundError(name, environment)
        return await self.store.list_allowlist(name, environment, kind)

    async def audit_by_correlation_id(self, correlation_id: str, limit: int = 100,
                                      cursor: Optional[int] = None) -> AuditPage:
        if not correlation_id or not correlation_id.strip():
            raise ValidationError("Correlation ID is required", {"field": "correlationId"})
        _check_page(limit, cursor)
        return await self.ledger.query_by_correlation_id(correlation_id, limit=limit, cursor=cursor)

    async def audit_by_flag(self, name: str, environment: str,
                            start: Optional[datetime] = None, end: Optional[datetime] = None,
                            limit: int = 100, cursor: Optional[int] = None) -> AuditPage:
        if not name or not name.strip():
            raise ValidationError("Flag name is required", {"field": "flagName"})
        _check_page(limit, cursor)

        start, end = _as_utc(start), _as_utc(end)
        if start and end and start > end:
            raise ValidationError("'from' must not be after 'to'", {"field": "from"})

        return await self.ledger.query_by_flag(name, environment, start=start, end=end,
                                               limit=limit, cursor=cursor)
