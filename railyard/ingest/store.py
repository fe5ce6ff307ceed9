"""
Railyard - Train/Wagon Store

The narrow persistence surface the ingestion pipeline needs, plus its
PostgreSQL implementation on psycopg 3.

A ``StoreSession`` is one open transaction. Nested work (one CSV row inside
a batch) runs under ``session.savepoint()`` so a failing row rolls back alone.

Usage:
    store = PostgresRailStore(pool)

    async with store.transaction() as session:
        train = await session.find_train("7478 035 6980")
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncContextManager, AsyncIterator, Optional, Protocol

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from railyard.core.logging import get_logger
from railyard.core.models import ProcessedEvent, Train, TrainStats, Wagon

logger = get_logger(__name__)


class StoreSession(Protocol):
    """Operations available inside one store transaction."""

    async def event_exists(self, event_id: str) -> bool: ...

    async def lock_index(self, normalized_index: str) -> None: ...

    async def find_train(self, normalized_index: str) -> Optional[Train]: ...

    async def insert_train(self, normalized_index: str, created_at: datetime) -> Optional[Train]:
        """Insert a train; ``None`` when a concurrent writer got there first."""
        ...

    async def find_wagon(self, number: str, train_id: int) -> Optional[Wagon]: ...

    async def insert_wagon(
        self,
        number: str,
        train_id: int,
        is_loaded: bool,
        weight_kg: Decimal,
        date: datetime,
    ) -> Optional[Wagon]:
        """Insert a wagon; ``None`` when ``(number, train_id)`` already exists."""
        ...

    async def update_wagon(
        self,
        wagon_id: int,
        is_loaded: bool,
        weight_kg: Decimal,
        date: datetime,
    ) -> Wagon: ...

    async def insert_processed_event(self, event: ProcessedEvent) -> bool:
        """Record an applied event; ``False`` when the event id is already present."""
        ...

    async def train_stats(self, normalized_index: str) -> Optional[TrainStats]: ...

    def savepoint(self) -> AsyncContextManager[None]: ...


class RailStore(Protocol):
    def transaction(
        self, lock_timeout_ms: Optional[int] = None
    ) -> AsyncContextManager[StoreSession]:
        """
        Open one transaction.

        ``lock_timeout_ms`` overrides the store default for this transaction;
        ``0`` waits for locks indefinitely.
        """
        ...


# =============================================================================
# PostgreSQL implementation
# =============================================================================

DEFAULT_LOCK_TIMEOUT_MS = 5000

_TRAIN_COLUMNS = "id, normalized_index, created_at"
_WAGON_COLUMNS = "id, number, train_id, is_loaded, weight_kg, date"


class PostgresSession:
    """StoreSession over one psycopg connection inside ``conn.transaction()``."""

    def __init__(self, conn: psycopg.AsyncConnection):
        self._conn = conn

    async def _fetchone(self, query: str, params: tuple) -> Optional[dict]:
        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(query, params)
            return await cur.fetchone()

    async def event_exists(self, event_id: str) -> bool:
        row = await self._fetchone(
            "SELECT 1 AS found FROM processed_events WHERE event_id = %s",
            (event_id,),
        )
        return row is not None

    async def lock_index(self, normalized_index: str) -> None:
        # Transaction-scoped; released on commit or rollback.
        await self._fetchone(
            "SELECT pg_advisory_xact_lock(hashtextextended(%s, 0))",
            (normalized_index,),
        )

    async def find_train(self, normalized_index: str) -> Optional[Train]:
        row = await self._fetchone(
            f"SELECT {_TRAIN_COLUMNS} FROM trains WHERE normalized_index = %s",
            (normalized_index,),
        )
        return Train(**row) if row else None

    async def insert_train(self, normalized_index: str, created_at: datetime) -> Optional[Train]:
        row = await self._fetchone(
            f"""
            INSERT INTO trains (normalized_index, created_at)
            VALUES (%s, %s)
            ON CONFLICT (normalized_index) DO NOTHING
            RETURNING {_TRAIN_COLUMNS}
            """,
            (normalized_index, created_at),
        )
        return Train(**row) if row else None

    async def find_wagon(self, number: str, train_id: int) -> Optional[Wagon]:
        row = await self._fetchone(
            f"SELECT {_WAGON_COLUMNS} FROM wagons WHERE number = %s AND train_id = %s",
            (number, train_id),
        )
        return Wagon(**row) if row else None

    async def insert_wagon(
        self,
        number: str,
        train_id: int,
        is_loaded: bool,
        weight_kg: Decimal,
        date: datetime,
    ) -> Optional[Wagon]:
        row = await self._fetchone(
            f"""
            INSERT INTO wagons (number, train_id, is_loaded, weight_kg, date)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (number, train_id) DO NOTHING
            RETURNING {_WAGON_COLUMNS}
            """,
            (number, train_id, is_loaded, weight_kg, date),
        )
        return Wagon(**row) if row else None

    async def update_wagon(
        self,
        wagon_id: int,
        is_loaded: bool,
        weight_kg: Decimal,
        date: datetime,
    ) -> Wagon:
        row = await self._fetchone(
            f"""
            UPDATE wagons
            SET is_loaded = %s, weight_kg = %s, date = %s
            WHERE id = %s
            RETURNING {_WAGON_COLUMNS}
            """,
            (is_loaded, weight_kg, date, wagon_id),
        )
        if row is None:
            raise LookupError(f"Wagon {wagon_id} disappeared during update")
        return Wagon(**row)

    async def insert_processed_event(self, event: ProcessedEvent) -> bool:
        row = await self._fetchone(
            """
            INSERT INTO processed_events (event_id, source, processed_at, wagon_number, train_id)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (event_id) DO NOTHING
            RETURNING id
            """,
            (
                event.event_id,
                event.source,
                event.processed_at,
                event.wagon_number,
                event.train_id,
            ),
        )
        return row is not None

    async def train_stats(self, normalized_index: str) -> Optional[TrainStats]:
        row = await self._fetchone(
            """
            SELECT
                t.normalized_index,
                t.created_at,
                count(w.id) AS total_wagons,
                count(w.id) FILTER (WHERE w.is_loaded) AS loaded_wagons,
                count(w.id) FILTER (WHERE NOT w.is_loaded) AS empty_wagons,
                coalesce(sum(w.weight_kg), 0) AS total_weight,
                avg(w.weight_kg) AS average_weight,
                max(w.weight_kg) AS max_weight,
                min(w.weight_kg) AS min_weight,
                min(w.date) AS earliest_wagon_date,
                max(w.date) AS latest_wagon_date
            FROM trains t
            LEFT JOIN wagons w ON w.train_id = t.id
            WHERE t.normalized_index = %s
            GROUP BY t.id
            """,
            (normalized_index,),
        )
        return TrainStats(**row) if row else None

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        async with self._conn.transaction():
            yield


class PostgresRailStore:
    """RailStore backed by a psycopg_pool.AsyncConnectionPool."""

    def __init__(
        self,
        pool: AsyncConnectionPool,
        lock_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
    ):
        self._pool = pool
        self.lock_timeout_ms = lock_timeout_ms

    @asynccontextmanager
    async def transaction(
        self, lock_timeout_ms: Optional[int] = None
    ) -> AsyncIterator[PostgresSession]:
        """
        Open a transaction; commit on clean exit, roll back on any exception.

        Nested ``savepoint()`` blocks become SAVEPOINTs of this transaction.
        A lock wait past the timeout raises ``LockNotAvailable``, which the
        pipeline reports as retryable.
        """
        timeout = self.lock_timeout_ms if lock_timeout_ms is None else lock_timeout_ms
        async with self._pool.connection() as conn:
            async with conn.transaction():
                await conn.execute(
                    "SELECT set_config('lock_timeout', %s, true)",
                    (f"{timeout}ms",),
                )
                yield PostgresSession(conn)


async def apply_schema(pool: AsyncConnectionPool, ddl: str) -> None:
    """Execute the bundled DDL in one transaction."""
    async with pool.connection() as conn:
        async with conn.transaction():
            await conn.execute(ddl)
    logger.info("Schema applied")
