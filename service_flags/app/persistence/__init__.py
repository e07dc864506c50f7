"""
Persistence package.

- base: FlagStore, AuditLedger and Transaction contracts.
- memory: in-process backend for local runs and tests.
- postgres: asyncpg backend sharing one pool between store and ledger.
"""

from typing import Tuple

from .base import AuditLedger, FlagStore


def build_backends(config) -> Tuple[FlagStore, AuditLedger]:
    """Construct the store/ledger pair selected by ``config.store_backend``."""
    backend = config.store_backend.lower()

    if backend == "memory":
        from .memory import InMemoryAuditLedger, InMemoryFlagStore
        return InMemoryFlagStore(), InMemoryAuditLedger()

    if backend == "postgres":
        from .postgres import PostgresAuditLedger, PostgresDatabase, PostgresFlagStore
        database = PostgresDatabase(
            config.postgres_dsn,
            min_size=config.pool_min_size,
            max_size=config.pool_max_size,
            command_timeout=config.command_timeout
        )
        return PostgresFlagStore(database), PostgresAuditLedger(database)

    raise ValueError(f"Unknown store backend: {config.store_backend}")
