"""
Wagon update worker entry point.

Builds the object graph once (pool, store, caches, pipeline, broker,
consumer), then runs the consumer under a restart supervisor. A failure of
the consumer's control loop restarts it after an exponential backoff; a run
of consecutive failures past the crash-loop threshold ends the process.
SIGTERM/SIGINT stop the consumer gracefully.

    railyard-worker
"""

from __future__ import annotations

import asyncio
import logging
import random
import signal
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from railyard.config import Settings, configure_logging, get_settings
from railyard.core.cache import InMemoryCache
from railyard.db import close_db_pool, init_db_pool
from railyard.ingest.ledger import IdempotencyLedger
from railyard.ingest.pipeline import IngestionPipeline
from railyard.ingest.stats_cache import DerivedCacheInvalidator
from railyard.ingest.store import PostgresRailStore
from workers.broker import BrokerConnection
from workers.settings import BrokerSettings
from workers.wagon_consumer import WagonUpdateConsumer

logger = logging.getLogger(__name__)

INITIAL_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 60.0
BACKOFF_MULTIPLIER = 2.0
BACKOFF_JITTER = 0.1
CRASH_LOOP_THRESHOLD = 10
# A run that lasted this long counts as healthy and resets the backoff.
HEALTHY_RUN_SECONDS = 60.0


@dataclass
class RestartBackoff:
    """Exponential backoff with jitter for consumer restarts."""

    consecutive_failures: int = 0
    total_failures: int = 0

    def record_failure(self) -> float:
        self.consecutive_failures += 1
        self.total_failures += 1
        delay = min(
            INITIAL_BACKOFF_SECONDS * BACKOFF_MULTIPLIER ** (self.consecutive_failures - 1),
            MAX_BACKOFF_SECONDS,
        )
        jitter = delay * BACKOFF_JITTER * random.uniform(-1, 1)
        return max(INITIAL_BACKOFF_SECONDS, delay + jitter)

    def record_success(self) -> None:
        self.consecutive_failures = 0

    def is_in_crash_loop(self, threshold: int = CRASH_LOOP_THRESHOLD) -> bool:
        return self.consecutive_failures >= threshold


async def supervise(
    run_once: Callable[[], Awaitable[None]],
    stop_event: asyncio.Event,
    backoff: Optional[RestartBackoff] = None,
    crash_loop_threshold: int = CRASH_LOOP_THRESHOLD,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """
    Run ``run_once`` until ``stop_event`` is set, restarting it on failure.

    Raises:
        Exception: the last failure, once the crash-loop threshold is reached.
    """
    backoff = backoff or RestartBackoff()
    while not stop_event.is_set():
        started = clock()
        try:
            await run_once()
        except asyncio.CancelledError:
            raise
        except Exception:
            if clock() - started >= HEALTHY_RUN_SECONDS:
                backoff.record_success()
            delay = backoff.record_failure()
            if backoff.is_in_crash_loop(crash_loop_threshold):
                logger.critical(
                    "Consumer failed %s times in a row; giving up",
                    backoff.consecutive_failures,
                )
                raise
            logger.exception(
                "Consumer loop failed (attempt %s); restarting in %.1fs",
                backoff.consecutive_failures,
                delay,
            )
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            continue

        backoff.record_success()
        if not stop_event.is_set():
            logger.warning("Consumer loop returned without a stop request; restarting")


def _install_signal_handlers(stop: Callable[[], None]) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop)
        except NotImplementedError:
            # Windows event loops do not support signal handlers.
            logger.debug("Signal handler for %s not supported", sig)


async def run_worker(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()

    pool = await init_db_pool(settings)
    cache = InMemoryCache()
    pipeline = IngestionPipeline(
        store=PostgresRailStore(pool, lock_timeout_ms=settings.DB_LOCK_TIMEOUT_MS),
        ledger=IdempotencyLedger(cache, ttl_seconds=settings.PROCESSED_EVENT_CACHE_TTL),
        invalidator=DerivedCacheInvalidator(cache, ttl_seconds=settings.TRAIN_STATS_CACHE_TTL),
    )
    broker = BrokerConnection(BrokerSettings.from_settings(settings))
    consumer = WagonUpdateConsumer(broker, pipeline, prefetch=settings.RABBITMQ_PREFETCH)

    stop_event = asyncio.Event()

    def request_stop() -> None:
        logger.info("Shutdown requested, waiting for in-flight messages...")
        stop_event.set()
        consumer.request_stop()

    _install_signal_handlers(request_stop)

    try:
        await supervise(consumer.run, stop_event)
    finally:
        await consumer.stop()
        await broker.close()
        await close_db_pool()
        logger.info("Worker stopped")


def main() -> None:
    configure_logging()
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
