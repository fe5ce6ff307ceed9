"""
Derived train statistics cache and its invalidation.

The cache is advisory: a failing backend degrades to a miss and is logged,
it never fails the write that triggered the eviction.
"""

from __future__ import annotations

from typing import Optional

from railyard.core.cache import CacheBackend
from railyard.core.logging import get_logger
from railyard.core.models import TrainStats

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 60


def cache_key(normalized_index: str) -> str:
    return f"train_stats_{normalized_index}"


class DerivedCacheInvalidator:
    """Owns the ``train_stats_*`` entries: read, populate, evict."""

    def __init__(self, cache: CacheBackend, ttl_seconds: float = DEFAULT_TTL_SECONDS):
        self._cache = cache
        self._ttl = ttl_seconds

    def get(self, normalized_index: str) -> Optional[TrainStats]:
        try:
            return self._cache.get(cache_key(normalized_index))
        except Exception:
            logger.warning(
                "Train stats cache read failed",
                exc_info=True,
                extra={"normalized_index": normalized_index},
            )
            return None

    def put(self, stats: TrainStats) -> None:
        try:
            self._cache.set(cache_key(stats.normalized_index), stats, ttl_seconds=self._ttl)
        except Exception:
            logger.warning(
                "Train stats cache write failed",
                exc_info=True,
                extra={"normalized_index": stats.normalized_index},
            )

    def invalidate(self, normalized_index: str) -> None:
        try:
            self._cache.invalidate(cache_key(normalized_index))
        except Exception:
            logger.warning(
                "Train stats cache eviction failed",
                exc_info=True,
                extra={"normalized_index": normalized_index},
            )
            return
        logger.debug("Invalidated train stats", extra={"normalized_index": normalized_index})
