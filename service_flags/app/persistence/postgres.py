"""
PostgreSQL persistence layer for the Flags Service.
"""

import asyncio
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import asyncpg

from shared.errors import DatabaseError, DuplicateFlagError, FlagNotFoundError
from shared.logging import get_logger

from ..rules.models import (
    AllowlistKind, AuditAction, AuditEvent, AuditPage, FeatureFlag, FlagPatch, FlagStatus
)
from .base import AuditLedger, FlagStore, Transaction

# Driver-level failures that are translated into DatabaseError
STORAGE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)

# Two-key form, disjoint from the single-key per-flag locks
AUDIT_ORDER_LOCK = "SELECT pg_advisory_xact_lock(hashtext('audit_log'), 0)"

ALLOWLIST_TABLES: Dict[AllowlistKind, Tuple[str, str]] = {
    AllowlistKind.TENANT: ("tenant_allowlist", "tenant_id"),
    AllowlistKind.USER: ("user_allowlist", "user_id"),
}

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS feature_flags (
        name VARCHAR(255) NOT NULL,
        environment VARCHAR(64) NOT NULL,
        status VARCHAR(16) NOT NULL,
        owner VARCHAR(255) NOT NULL,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        PRIMARY KEY (name, environment)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tenant_allowlist (
        flag_name VARCHAR(255) NOT NULL,
        environment VARCHAR(64) NOT NULL,
        tenant_id VARCHAR(255) NOT NULL,
        added_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        PRIMARY KEY (flag_name, environment, tenant_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_allowlist (
        flag_name VARCHAR(255) NOT NULL,
        environment VARCHAR(64) NOT NULL,
        user_id VARCHAR(255) NOT NULL,
        added_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        PRIMARY KEY (flag_name, environment, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id BIGSERIAL PRIMARY KEY,
        flag_name VARCHAR(255) NOT NULL,
        environment VARCHAR(64) NOT NULL,
        action VARCHAR(32) NOT NULL,
        result BOOLEAN,
        reason TEXT,
        tenant_id VARCHAR(255),
        user_id VARCHAR(255),
        correlation_id VARCHAR(255) NOT NULL,
        timestamp TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_log_correlation ON audit_log(correlation_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_log_flag_time ON audit_log(flag_name, timestamp)",
]


@contextmanager
def storage_guard(logger, operation: str, **log_fields):
    """Translate driver failures into DatabaseError without leaking their text."""
    try:
        yield
    except STORAGE_ERRORS as e:
        logger.error("Storage operation failed", operation=operation,
                     error_type=type(e).__name__, error=str(e), **log_fields)
        raise DatabaseError(operation) from e


class PostgresDatabase:
    """Connection pool shared by the flag store and the audit ledger."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10, command_timeout: float = 30):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.logger = get_logger("flags.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Create the pool and the schema."""
        if self.pool is not None:
            return
        with storage_guard(self.logger, "start"):
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )
            await self._create_tables()
        self.logger.info("PostgreSQL persistence started")

    async def stop(self):
        """Close the pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement)

    def acquire(self):
        if self.pool is None:
            raise DatabaseError("acquire", "Storage is not started")
        return self.pool.acquire()

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False


class PostgresTransaction(Transaction):
    """Transaction bound to one pooled connection."""

    def __init__(self, connection, name: str, environment: str):
        super().__init__(name, environment)
        self.connection = connection


class PostgresFlagStore(FlagStore):
    """Flag store over PostgreSQL."""

    def __init__(self, database: PostgresDatabase):
        self.database = database
        self.logger = get_logger("flags.persistence.postgres")

    async def start(self):
        await self.database.start()

    async def stop(self):
        await self.database.stop()

    async def health_check(self) -> bool:
        return await self.database.health_check()

    @asynccontextmanager
    async def transaction(self, name: str, environment: str):
        with storage_guard(self.logger, "transaction", name=name, environment=environment):
            async with self.database.acquire() as conn:
                async with conn.transaction():
                    # Serializes every mutation of this key, including creation
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext($1))", f"{environment}/{name}"
                    )
                    yield PostgresTransaction(conn, name, environment)

    @asynccontextmanager
    async def _connection(self, tx: Optional[Transaction]):
        if isinstance(tx, PostgresTransaction):
            yield tx.connection
            return
        async with self.database.acquire() as conn:
            yield conn

    async def get(self, name: str, environment: str, tx: Optional[Transaction] = None) -> Optional[FeatureFlag]:
        with storage_guard(self.logger, "get_flag", name=name, environment=environment):
            async with self._connection(tx) as conn:
                row = await conn.fetchrow(
                    "SELECT * FROM feature_flags WHERE name = $1 AND environment = $2",
                    name, environment
                )
        return self._row_to_flag(row) if row else None

    async def list_flags(self, environment: Optional[str] = None) -> List[FeatureFlag]:
        with storage_guard(self.logger, "list_flags", environment=environment):
            async with self.database.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT * FROM feature_flags
                    WHERE $1::varchar IS NULL OR environment = $1
                    ORDER BY environment, name
                    """,
                    environment
                )
        return [self._row_to_flag(row) for row in rows]

    async def list_allowlist(self, flag_name: str, environment: str, kind: AllowlistKind) -> FrozenSet[str]:
        table, column = ALLOWLIST_TABLES[kind]
        with storage_guard(self.logger, "list_allowlist", name=flag_name, kind=kind.value):
            async with self.database.acquire() as conn:
                rows = await conn.fetch(
                    f"SELECT {column} FROM {table} WHERE flag_name = $1 AND environment = $2",
                    flag_name, environment
                )
        return frozenset(row[column] for row in rows)

    async def _create(self, flag: FeatureFlag, tx: PostgresTransaction) -> FeatureFlag:
        with storage_guard(self.logger, "create_flag", name=flag.name, environment=flag.environment):
            row = await tx.connection.fetchrow(
                """
                INSERT INTO feature_flags (name, environment, status, owner, created_at, updated_at)
                VALUES ($1, $2, $3, $4, NOW(), NOW())
                ON CONFLICT (name, environment) DO NOTHING
                RETURNING *
                """,
                flag.name, flag.environment, flag.status.value, flag.owner
            )
        if row is None:
            raise DuplicateFlagError(flag.name, flag.environment)

        self.logger.info("Flag created", name=flag.name, environment=flag.environment)
        return self._row_to_flag(row)

    async def _update(self, name: str, environment: str, patch: FlagPatch,
                      tx: PostgresTransaction) -> FeatureFlag:
        with storage_guard(self.logger, "update_flag", name=name, environment=environment):
            row = await tx.connection.fetchrow(
                """
                UPDATE feature_flags
                SET status = COALESCE($3, status),
                    owner = COALESCE($4, owner),
                    updated_at = GREATEST(NOW(), updated_at + INTERVAL '1 microsecond')
                WHERE name = $1 AND environment = $2
                RETURNING *
                """,
                name, environment,
                patch.status.value if patch.status is not None else None,
                patch.owner
            )
        if row is None:
            raise FlagNotFoundError(name, environment)

        self.logger.info("Flag updated", name=name, environment=environment)
        return self._row_to_flag(row)

    async def _delete(self, name: str, environment: str, tx: PostgresTransaction) -> FeatureFlag:
        with storage_guard(self.logger, "delete_flag", name=name, environment=environment):
            row = await tx.connection.fetchrow(
                "DELETE FROM feature_flags WHERE name = $1 AND environment = $2 RETURNING *",
                name, environment
            )
            if row is not None:
                for table, _ in ALLOWLIST_TABLES.values():
                    await tx.connection.execute(
                        f"DELETE FROM {table} WHERE flag_name = $1 AND environment = $2",
                        name, environment
                    )
        if row is None:
            raise FlagNotFoundError(name, environment)

        self.logger.info("Flag deleted", name=name, environment=environment)
        return self._row_to_flag(row)

    async def _require_flag(self, conn, name: str, environment: str):
        exists = await conn.fetchval(
            "SELECT 1 FROM feature_flags WHERE name = $1 AND environment = $2",
            name, environment
        )
        if not exists:
            raise FlagNotFoundError(name, environment)

    async def _add_to_allowlist(self, flag_name: str, environment: str, kind: AllowlistKind,
                                subject_id: str, tx: PostgresTransaction) -> bool:
        table, column = ALLOWLIST_TABLES[kind]
        with storage_guard(self.logger, "add_to_allowlist", name=flag_name, kind=kind.value):
            await self._require_flag(tx.connection, flag_name, environment)
            status = await tx.connection.execute(
                f"""
                INSERT INTO {table} (flag_name, environment, {column}, added_at)
                VALUES ($1, $2, $3, NOW())
                ON CONFLICT DO NOTHING
                """,
                flag_name, environment, subject_id
            )
        return status == "INSERT 0 1"

    async def _remove_from_allowlist(self, flag_name: str, environment: str, kind: AllowlistKind,
                                     subject_id: str, tx: PostgresTransaction) -> bool:
        table, column = ALLOWLIST_TABLES[kind]
        with storage_guard(self.logger, "remove_from_allowlist", name=flag_name, kind=kind.value):
            await self._require_flag(tx.connection, flag_name, environment)
            status = await tx.connection.execute(
                f"DELETE FROM {table} WHERE flag_name = $1 AND environment = $2 AND {column} = $3",
                flag_name, environment, subject_id
            )
        return status == "DELETE 1"

    def _row_to_flag(self, row) -> FeatureFlag:
        """Convert database row to FeatureFlag."""
        try:
            status = FlagStatus(row["status"])
        except ValueError as e:
            self.logger.error("Corrupted flag row", name=row["name"], status=row["status"])
            raise DatabaseError("decode_flag", "Stored flag data is invalid") from e

        return FeatureFlag(
            name=row["name"],
            environment=row["environment"],
            status=status,
            owner=row["owner"],
            created_at=row["created_at"],
            updated_at=row["updated_at"]
        )


class PostgresAuditLedger(AuditLedger):
    """Audit ledger over the append-only ``audit_log`` table."""

    def __init__(self, database: PostgresDatabase):
        super().__init__()
        self.database = database

    async def start(self):
        await self.database.start()

    async def health_check(self) -> bool:
        return await self.database.health_check()

    async def _append(self, event: AuditEvent, tx: Optional[Transaction]) -> AuditEvent:
        with storage_guard(self.logger, "audit_append", correlation_id=event.correlation_id):
            if isinstance(tx, PostgresTransaction):
                event.id = await self._insert(tx.connection, event)
            else:
                async with self.database.acquire() as conn:
                    async with conn.transaction():
                        event.id = await self._insert(conn, event)
        return event

    @staticmethod
    async def _insert(conn, event: AuditEvent) -> int:
        # Held until commit so ids become visible in increasing order
        await conn.execute(AUDIT_ORDER_LOCK)
        return await conn.fetchval(
            """
            INSERT INTO audit_log (
                flag_name, environment, action, result, reason,
                tenant_id, user_id, correlation_id, timestamp
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING id
            """,
            event.flag_name, event.environment, event.action.value, event.result, event.reason,
            event.tenant_id, event.user_id, event.correlation_id, event.timestamp
        )

    async def query_by_correlation_id(self, correlation_id: str, limit: int = 100,
                                      cursor: Optional[int] = None) -> AuditPage:
        with storage_guard(self.logger, "audit_query_correlation", correlation_id=correlation_id):
            async with self.database.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT * FROM audit_log
                    WHERE correlation_id = $1
                      AND ($2::bigint IS NULL OR id > $2)
                    ORDER BY id
                    LIMIT $3
                    """,
                    correlation_id, cursor, limit + 1
                )
        return self._to_page(rows, limit)

    async def query_by_flag(self, flag_name, environment, start=None, end=None,
                            limit: int = 100, cursor: Optional[int] = None) -> AuditPage:
        with storage_guard(self.logger, "audit_query_flag", name=flag_name):
            async with self.database.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT * FROM audit_log
                    WHERE flag_name = $1 AND environment = $2
                      AND ($3::timestamptz IS NULL OR timestamp >= $3)
                      AND ($4::timestamptz IS NULL OR timestamp <= $4)
                      AND ($5::bigint IS NULL OR id > $5)
                    ORDER BY id
                    LIMIT $6
                    """,
                    flag_name, environment, start, end, cursor, limit + 1
                )

        return self._to_page(rows, limit)

    def _to_page(self, rows, limit: int) -> AuditPage:
        events = [self._row_to_event(row) for row in rows]
        if len(events) > limit:
            events = events[:limit]
            return AuditPage(events=events, next_cursor=events[-1].id)
        return AuditPage(events=events)

    @staticmethod
    def _row_to_event(row: Any) -> AuditEvent:
        return AuditEvent(
            id=row["id"],
            flag_name=row["flag_name"],
            environment=row["environment"],
            action=AuditAction(row["action"]),
            result=row["result"],
            reason=row["reason"],
            tenant_id=row["tenant_id"],
            user_id=row["user_id"],
            correlation_id=row["correlation_id"],
            timestamp=row["timestamp"]
        )
