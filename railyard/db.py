# railyard/db.py
"""
Railyard - Database Layer

Async PostgreSQL connection pooling via psycopg3 + psycopg_pool, with:
- Exponential backoff retry on pool initialization
- Structured logging of DSN host/port/dbname/user (never the password)
- Pool health state for the worker's startup checks
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from loguru import logger
from psycopg_pool import AsyncConnectionPool

from . import __version__
from .config import Settings, get_settings

# ---------------------------------------------------------------------------
# Pool Health State
# ---------------------------------------------------------------------------


@dataclass
class PoolHealthState:
    """Tracks database pool initialization state."""

    initialized: bool = False
    healthy: bool = False
    last_error: str | None = None
    init_attempts: int = 0
    init_duration_ms: float | None = None


_pool_health = PoolHealthState()
_db_pool: Optional[AsyncConnectionPool] = None

MAX_RETRY_ATTEMPTS = 6
MAX_TOTAL_WAIT_SECONDS = 60.0
BASE_DELAY_SECONDS = 1.0


def get_pool_health() -> PoolHealthState:
    return _pool_health


def _parse_dsn_for_logging(dsn: str) -> dict[str, str | None]:
    """Extract loggable DSN components (no password)."""
    try:
        parsed = urlparse(dsn)
        return {
            "host": parsed.hostname,
            "port": str(parsed.port) if parsed.port else "5432",
            "dbname": parsed.path.lstrip("/") if parsed.path else None,
            "user": parsed.username,
        }
    except ValueError as e:
        return {"error": str(e)}


def _backoff_delay(attempt: int, elapsed: float) -> float:
    delay = BASE_DELAY_SECONDS * (2 ** (attempt - 1))
    jitter = random.uniform(0, delay * 0.3)
    return min(delay + jitter, MAX_TOTAL_WAIT_SECONDS - elapsed)


async def init_db_pool(settings: Settings | None = None) -> AsyncConnectionPool:
    """
    Open the shared pool, retrying with exponential backoff.

    Raises:
        RuntimeError: RAILYARD_DB_URL is missing or every attempt failed.
    """
    global _db_pool

    if _db_pool is not None:
        return _db_pool

    settings = settings or get_settings()
    dsn = settings.require_db_url()

    dsn_info = _parse_dsn_for_logging(dsn)
    logger.info(
        "Database connection parameters",
        host=dsn_info.get("host"),
        port=dsn_info.get("port"),
        dbname=dsn_info.get("dbname"),
        user=dsn_info.get("user"),
    )

    app_name = "railyard_v" + __version__.replace(".", "_")
    start_time = time.monotonic()
    last_error: Exception | None = None

    for attempt in range(1, MAX_RETRY_ATTEMPTS + 1):
        _pool_health.init_attempts = attempt
        elapsed = time.monotonic() - start_time
        if elapsed >= MAX_TOTAL_WAIT_SECONDS:
            logger.error(f"DB pool init: time budget exhausted ({elapsed:.1f}s)")
            break

        pool = AsyncConnectionPool(
            dsn,
            min_size=settings.DB_POOL_MIN_SIZE,
            max_size=settings.DB_POOL_MAX_SIZE,
            kwargs={"application_name": app_name},
            open=False,
        )
        try:
            logger.info(f"DB pool init: attempt {attempt}/{MAX_RETRY_ATTEMPTS}")
            await pool.open(wait=True)
            async with pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute("SELECT 1;")
                    row = await cur.fetchone()
                    if row is None or row[0] != 1:
                        raise RuntimeError("SELECT 1 did not return expected result")
        except Exception as e:
            last_error = e
            _pool_health.last_error = f"{type(e).__name__}: {str(e)[:200]}"
            _pool_health.healthy = False
            logger.warning(f"DB pool init attempt {attempt} failed: {type(e).__name__}: {e}")
            await pool.close()

            if attempt < MAX_RETRY_ATTEMPTS:
                delay = _backoff_delay(attempt, elapsed)
                if delay > 0:
                    logger.info(f"DB pool init: waiting {delay:.1f}s before retry")
                    await asyncio.sleep(delay)
            continue

        duration = (time.monotonic() - start_time) * 1000
        _db_pool = pool
        _pool_health.initialized = True
        _pool_health.healthy = True
        _pool_health.last_error = None
        _pool_health.init_duration_ms = duration
        logger.info(f"Database pool initialized (attempt {attempt}, {duration:.0f}ms total)")
        return pool

    _pool_health.initialized = False
    _pool_health.healthy = False
    raise RuntimeError(
        f"Failed to initialize database pool after {_pool_health.init_attempts} attempts: "
        f"{last_error}"
    )


async def close_db_pool() -> None:
    """Close the shared pool and reset health state."""
    global _db_pool
    if _db_pool is not None:
        logger.info("Closing PostgreSQL connection pool")
        await _db_pool.close()
        _db_pool = None
        _pool_health.initialized = False
        _pool_health.healthy = False


async def get_pool() -> AsyncConnectionPool:
    """Return the shared pool, initializing it on first use."""
    if _db_pool is None:
        return await init_db_pool()
    return _db_pool
