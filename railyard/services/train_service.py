"""
Train service.

The collaborator surface the outer (HTTP) layer consumes:
``create_or_update_train`` and ``invalidate_cache``, plus the cached stats
lookup whose entries the ingestion paths evict.
"""

from __future__ import annotations

from typing import Optional, Protocol

from railyard.core.logging import get_logger
from railyard.core.models import Train, TrainStats
from railyard.ingest.stats_cache import DerivedCacheInvalidator
from railyard.ingest.store import RailStore
from railyard.ingest.upsert import TrainWagonUpsertEngine

logger = get_logger(__name__)


class TrainServiceProtocol(Protocol):
    async def create_or_update_train(self, normalized_index: str) -> Train: ...

    def invalidate_cache(self, normalized_index: str) -> None: ...


class TrainService:
    def __init__(
        self,
        store: RailStore,
        invalidator: DerivedCacheInvalidator,
        upsert: Optional[TrainWagonUpsertEngine] = None,
    ):
        self._store = store
        self._invalidator = invalidator
        self._upsert = upsert or TrainWagonUpsertEngine()

    async def get_train(self, normalized_index: str) -> Optional[Train]:
        async with self._store.transaction() as session:
            return await session.find_train(normalized_index)

    async def create_or_update_train(self, normalized_index: str) -> Train:
        """Return the train for ``normalized_index``, creating it on first sight."""
        async with self._store.transaction() as session:
            await session.lock_index(normalized_index)
            return await self._upsert.ensure_train(session, normalized_index)

    async def get_train_stats(self, normalized_index: str) -> Optional[TrainStats]:
        cached = self._invalidator.get(normalized_index)
        if cached is not None:
            logger.debug("Train stats served from cache", extra={"normalized_index": normalized_index})
            return cached

        async with self._store.transaction() as session:
            stats = await session.train_stats(normalized_index)
        if stats is None:
            logger.warning("Train not found", extra={"normalized_index": normalized_index})
            return None

        self._invalidator.put(stats)
        return stats

    def invalidate_cache(self, normalized_index: str) -> None:
        self._invalidator.invalidate(normalized_index)
        logger.info("Invalidated train stats cache", extra={"normalized_index": normalized_index})
