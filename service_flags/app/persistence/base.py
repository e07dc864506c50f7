"""
Storage contracts for the Flags Service.

A FlagStore owns flag definitions and allowlists; an AuditLedger owns the
append-only audit log. Both are constructed once at start-up and handed to
the evaluator and the administration layer.

Every store mutation runs inside a Transaction scoped to one
``(name, environment)`` key. Mutations on the same key are serialized;
mutations on different keys run in parallel. A ledger given the same
transaction commits or rolls back together with the mutation.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import AsyncContextManager, FrozenSet, List, Optional

from shared.errors import DatabaseError
from shared.logging import get_logger

from ..rules.engine import GATED_STAGES
from ..rules.models import (
    AllowlistKind, AuditEvent, AuditPage, FeatureFlag, FlagPatch, FlagSnapshot, utcnow
)


def bump_updated_at(previous: datetime) -> datetime:
    """Return a timestamp strictly later than ``previous``."""
    now = utcnow()
    if now > previous:
        return now
    return previous + timedelta(microseconds=1)


class Transaction(ABC):
    """All-or-nothing unit of work holding the lock for one flag key."""

    def __init__(self, name: str, environment: str):
        self.name = name
        self.environment = environment

    def check_key(self, name: str, environment: str):
        if (name, environment) != (self.name, self.environment):
            raise ValueError(
                f"Transaction for {self.environment}/{self.name} cannot write {environment}/{name}"
            )


class FlagStore(ABC):
    """Durable CRUD for flags and their allowlists."""

    async def start(self):
        """Open connections and prepare the schema."""

    async def stop(self):
        """Release connections."""

    async def health_check(self) -> bool:
        return True

    @abstractmethod
    def transaction(self, name: str, environment: str) -> AsyncContextManager[Transaction]:
        """Open a transaction serialized on ``(name, environment)``."""

    @abstractmethod
    async def get(self, name: str, environment: str, tx: Optional[Transaction] = None) -> Optional[FeatureFlag]:
        """Return the flag, or None when it does not exist. Never raises for a missing flag."""

    @abstractmethod
    async def list_flags(self, environment: Optional[str] = None) -> List[FeatureFlag]:
        """List flags ordered by environment then name."""

    @abstractmethod
    async def list_allowlist(self, flag_name: str, environment: str, kind: AllowlistKind) -> FrozenSet[str]:
        """Return allowlist membership."""

    async def get_snapshot(self, name: str, environment: str) -> Optional[FlagSnapshot]:
        """Load a flag and, for gated stages, both of its allowlists."""
        flag = await self.get(name, environment)
        if flag is None:
            return None
        if flag.status not in GATED_STAGES:
            return FlagSnapshot(flag=flag)

        tenants, users = await asyncio.gather(
            self.list_allowlist(name, environment, AllowlistKind.TENANT),
            self.list_allowlist(name, environment, AllowlistKind.USER),
        )
        return FlagSnapshot(flag=flag, tenant_allowlist=tenants, user_allowlist=users)

    async def create(self, flag: FeatureFlag, tx: Optional[Transaction] = None) -> FeatureFlag:
        """Create a flag. Raises DuplicateFlagError when the key exists."""
        if tx is None:
            async with self.transaction(flag.name, flag.environment) as own_tx:
                return await self._create(flag, own_tx)
        tx.check_key(flag.name, flag.environment)
        return await self._create(flag, tx)

    async def update(self, name: str, environment: str, patch: FlagPatch,
                     tx: Optional[Transaction] = None) -> FeatureFlag:
        """Apply a patch. Raises FlagNotFoundError when absent; bumps updated_at."""
        if tx is None:
            async with self.transaction(name, environment) as own_tx:
                return await self._update(name, environment, patch, own_tx)
        tx.check_key(name, environment)
        return await self._update(name, environment, patch, tx)

    async def delete(self, name: str, environment: str, tx: Optional[Transaction] = None) -> FeatureFlag:
        """Delete a flag and its allowlists. Raises FlagNotFoundError when absent."""
        if tx is None:
            async with self.transaction(name, environment) as own_tx:
                return await self._delete(name, environment, own_tx)
        tx.check_key(name, environment)
        return await self._delete(name, environment, tx)

    async def add_to_allowlist(self, flag_name: str, environment: str, kind: AllowlistKind,
                               subject_id: str, tx: Optional[Transaction] = None) -> bool:
        """Add a subject. Returns False when it was already a member."""
        if tx is None:
            async with self.transaction(flag_name, environment) as own_tx:
                return await self._add_to_allowlist(flag_name, environment, kind, subject_id, own_tx)
        tx.check_key(flag_name, environment)
        return await self._add_to_allowlist(flag_name, environment, kind, subject_id, tx)

    async def remove_from_allowlist(self, flag_name: str, environment: str, kind: AllowlistKind,
                                    subject_id: str, tx: Optional[Transaction] = None) -> bool:
        """Remove a subject. Returns False when it was not a member."""
        if tx is None:
            async with self.transaction(flag_name, environment) as own_tx:
                return await self._remove_from_allowlist(flag_name, environment, kind, subject_id, own_tx)
        tx.check_key(flag_name, environment)
        return await self._remove_from_allowlist(flag_name, environment, kind, subject_id, tx)

    @abstractmethod
    async def _create(self, flag: FeatureFlag, tx: Transaction) -> FeatureFlag:
        ...

    @abstractmethod
    async def _update(self, name: str, environment: str, patch: FlagPatch, tx: Transaction) -> FeatureFlag:
        ...

    @abstractmethod
    async def _delete(self, name: str, environment: str, tx: Transaction) -> FeatureFlag:
        ...

    @abstractmethod
    async def _add_to_allowlist(self, flag_name: str, environment: str, kind: AllowlistKind,
                                subject_id: str, tx: Transaction) -> bool:
        ...

    @abstractmethod
    async def _remove_from_allowlist(self, flag_name: str, environment: str, kind: AllowlistKind,
                                     subject_id: str, tx: Transaction) -> bool:
        ...


class AuditLedger(ABC):
    """Append-only audit log. Exposes no update or delete."""

    def __init__(self):
        self.logger = get_logger("flags.audit_ledger")

    async def start(self):
        """Prepare the ledger."""

    async def stop(self):
        """Release resources."""

    async def health_check(self) -> bool:
        return True

    async def append_required(self, event: AuditEvent, tx: Optional[Transaction] = None) -> AuditEvent:
        """
        Append an event whose loss is unacceptable (administrative mutations).

        Raises DatabaseError on failure. With a transaction, the event is
        committed or discarded together with the surrounding mutation.
        """
        try:
            return await self._append(event, tx)
        except DatabaseError:
            raise
        except Exception as e:
            self.logger.error(
                "Required audit append failed",
                flag_name=event.flag_name,
                action=event.action.value,
                correlation_id=event.correlation_id,
                error=str(e)
            )
            raise DatabaseError("audit_append") from e

    async def append_best_effort(self, event: AuditEvent) -> bool:
        """
        Append an evaluation event. Never raises; returns whether it was written.
        """
        try:
            await self._append(event, None)
            return True
        except Exception as e:
            self.logger.warning(
                "Best-effort audit append failed",
                flag_name=event.flag_name,
                action=event.action.value,
                correlation_id=event.correlation_id,
                error=str(e)
            )
            return False

    @abstractmethod
    async def _append(self, event: AuditEvent, tx: Optional[Transaction]) -> AuditEvent:
        ...

    @abstractmethod
    async def query_by_correlation_id(self, correlation_id: str, limit: int = 100,
                                      cursor: Optional[int] = None) -> AuditPage:
        """Events sharing a correlation ID, oldest first, paged like ``query_by_flag``."""

    @abstractmethod
    async def query_by_flag(self, flag_name: str, environment: str,
                            start: Optional[datetime] = None, end: Optional[datetime] = None,
                            limit: int = 100, cursor: Optional[int] = None) -> AuditPage:
        """
        Events for one flag within ``[start, end]``, oldest first.

        ``cursor`` is the id of the last event of the previous page.
        """
