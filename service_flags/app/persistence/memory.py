"""
In-process storage backend for the Flags Service.

Used for local runs and the test suite. Mutations take a per-key asyncio
lock and keep an undo log so that a failure anywhere inside a transaction
restores the previous state.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from shared.errors import DuplicateFlagError, FlagNotFoundError
from shared.logging import get_logger

from ..rules.models import AllowlistKind, AuditEvent, AuditPage, FeatureFlag, FlagPatch, utcnow
from .base import AuditLedger, FlagStore, Transaction, bump_updated_at

FlagKey = Tuple[str, str]
AllowlistKey = Tuple[str, str, AllowlistKind]


class InMemoryTransaction(Transaction):
    """Transaction with an undo log and commit hooks."""

    def __init__(self, name: str, environment: str):
        super().__init__(name, environment)
        self._undo: List[Callable[[], None]] = []
        self._on_commit: List[Callable[[], None]] = []

    def record_undo(self, action: Callable[[], None]):
        self._undo.append(action)

    def on_commit(self, action: Callable[[], None]):
        self._on_commit.append(action)

    def commit(self):
        for action in self._on_commit:
            action()
        self._undo.clear()
        self._on_commit.clear()

    def rollback(self):
        for action in reversed(self._undo):
            action()
        self._undo.clear()
        self._on_commit.clear()


class InMemoryFlagStore(FlagStore):
    """Dictionary-backed flag store."""

    def __init__(self, latency_seconds: float = 0.0):
        self.logger = get_logger("flags.persistence.memory")
        self.latency_seconds = latency_seconds
        self._flags: Dict[FlagKey, FeatureFlag] = {}
        self._allowlists: Dict[AllowlistKey, Dict[str, datetime]] = {}
        self._locks: Dict[FlagKey, asyncio.Lock] = {}
        self._lock_users: Dict[FlagKey, int] = {}

    async def _io(self):
        # Simulated round trip; yields to the event loop even at zero latency
        await asyncio.sleep(self.latency_seconds)

    @asynccontextmanager
    async def transaction(self, name: str, environment: str):
        key = (name, environment)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                tx = InMemoryTransaction(name, environment)
                try:
                    yield tx
                except BaseException:
                    tx.rollback()
                    raise
                tx.commit()
        finally:
            # Locks live only while a transaction holds or awaits them
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def get(self, name: str, environment: str, tx: Optional[Transaction] = None) -> Optional[FeatureFlag]:
        await self._io()
        flag = self._flags.get((name, environment))
        return replace(flag) if flag else None

    async def list_flags(self, environment: Optional[str] = None) -> List[FeatureFlag]:
        await self._io()
        flags = [
            replace(flag) for (_, env), flag in self._flags.items()
            if environment is None or env == environment
        ]
        flags.sort(key=lambda f: (f.environment, f.name))
        return flags

    async def list_allowlist(self, flag_name: str, environment: str, kind: AllowlistKind) -> FrozenSet[str]:
        await self._io()
        return frozenset(self._allowlists.get((flag_name, environment, kind), {}))

    async def _create(self, flag: FeatureFlag, tx: InMemoryTransaction) -> FeatureFlag:
        key = (flag.name, flag.environment)
        if key in self._flags:
            raise DuplicateFlagError(flag.name, flag.environment)

        now = utcnow()
        stored = replace(flag, created_at=now, updated_at=now)
        self._flags[key] = stored
        tx.record_undo(lambda: self._flags.pop(key, None))

        self.logger.info("Flag created", name=flag.name, environment=flag.environment,
                         status=flag.status.value)
        return replace(stored)

    async def _update(self, name: str, environment: str, patch: FlagPatch,
                      tx: InMemoryTransaction) -> FeatureFlag:
        key = (name, environment)
        current = self._flags.get(key)
        if current is None:
            raise FlagNotFoundError(name, environment)

        updated = replace(
            current,
            status=patch.status if patch.status is not None else current.status,
            owner=patch.owner if patch.owner is not None else current.owner,
            updated_at=bump_updated_at(current.updated_at),
        )
        self._flags[key] = updated
        tx.record_undo(lambda: self._flags.__setitem__(key, current))

        self.logger.info("Flag updated", name=name, environment=environment,
                         status=updated.status.value)
        return replace(updated)

    async def _delete(self, name: str, environment: str, tx: InMemoryTransaction) -> FeatureFlag:
        key = (name, environment)
        current = self._flags.pop(key, None)
        if current is None:
            raise FlagNotFoundError(name, environment)
        tx.record_undo(lambda: self._flags.__setitem__(key, current))

        for kind in AllowlistKind:
            list_key = (name, environment, kind)
            members = self._allowlists.pop(list_key, None)
            if members is not None:
                tx.record_undo(lambda list_key=list_key, members=members:
                               self._allowlists.__setitem__(list_key, members))

        self.logger.info("Flag deleted", name=name, environment=environment)
        return replace(current)

    async def _add_to_allowlist(self, flag_name: str, environment: str, kind: AllowlistKind,
                                subject_id: str, tx: InMemoryTransaction) -> bool:
        if (flag_name, environment) not in self._flags:
            raise FlagNotFoundError(flag_name, environment)

        members = self._allowlists.setdefault((flag_name, environment, kind), {})
        if subject_id in members:
            return False

        members[subject_id] = utcnow()
        tx.record_undo(lambda: members.pop(subject_id, None))
        return True

    async def _remove_from_allowlist(self, flag_name: str, environment: str, kind: AllowlistKind,
                                     subject_id: str, tx: InMemoryTransaction) -> bool:
        if (flag_name, environment) not in self._flags:
            raise FlagNotFoundError(flag_name, environment)

        members = self._allowlists.get((flag_name, environment, kind), {})
        if subject_id not in members:
            return False

        added_at = members.pop(subject_id)
        tx.record_undo(lambda: members.__setitem__(subject_id, added_at))
        return True


class InMemoryAuditLedger(AuditLedger):
    """List-backed audit ledger. Ids are assigned in commit order."""

    def __init__(self, latency_seconds: float = 0.0):
        super().__init__()
        self.latency_seconds = latency_seconds
        self._events: List[AuditEvent] = []
        self._next_id = 1

    def _commit(self, event: AuditEvent):
        event.id = self._next_id
        self._next_id += 1
        self._events.append(replace(event))

    async def _append(self, event: AuditEvent, tx: Optional[Transaction]) -> AuditEvent:
        await asyncio.sleep(self.latency_seconds)
        if tx is None:
            self._commit(event)
            return event
        if not isinstance(tx, InMemoryTransaction):
            raise TypeError("InMemoryAuditLedger requires an InMemoryTransaction")
        tx.on_commit(lambda: self._commit(event))
        return event

    def _page(self, matches: Callable[[AuditEvent], bool], limit: int,
              cursor: Optional[int]) -> AuditPage:
        matched = []
        for event in self._events:
            if cursor is not None and event.id <= cursor:
                continue
            if not matches(event):
                continue
            matched.append(replace(event))
            if len(matched) > limit:
                break

        if len(matched) > limit:
            page = matched[:limit]
            return AuditPage(events=page, next_cursor=page[-1].id)
        return AuditPage(events=matched)

    async def query_by_correlation_id(self, correlation_id: str, limit: int = 100,
                                      cursor: Optional[int] = None) -> AuditPage:
        return self._page(lambda e: e.correlation_id == correlation_id, limit, cursor)

    async def query_by_flag(self, flag_name: str, environment: str,
                            start: Optional[datetime] = None, end: Optional[datetime] = None,
                            limit: int = 100, cursor: Optional[int] = None) -> AuditPage:
        def matches(event: AuditEvent) -> bool:
            if event.flag_name != flag_name or event.environment != environment:
                return False
            if start is not None and event.timestamp < start:
                return False
            if end is not None and event.timestamp > end:
                return False
            return True

        return self._page(matches, limit, cursor)
