"""
Idempotency ledger.

``processed_events`` is the sole authority for "already applied". The cache
in front of it only ever holds positives, and only after the store confirmed
them, so a cache hit can never be wrong and a miss always asks the store.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from railyard.core.cache import CacheBackend
from railyard.core.errors import DuplicateEvent
from railyard.core.logging import get_logger
from railyard.core.models import ProcessedEvent
from railyard.ingest.store import StoreSession

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 30 * 60


def cache_key(event_id: str) -> str:
    return f"processed_event_{event_id}"


class IdempotencyLedger:
    def __init__(self, cache: CacheBackend, ttl_seconds: float = DEFAULT_TTL_SECONDS):
        self._cache = cache
        self._ttl = ttl_seconds

    def is_known(self, event_id: str) -> bool:
        """Cache-only check; ``False`` means "unknown", not "not processed"."""
        return self._cache.get(cache_key(event_id)) is not None

    async def is_processed(self, session: StoreSession, event_id: str) -> bool:
        if self.is_known(event_id):
            return True
        exists = await session.event_exists(event_id)
        if exists:
            self.remember(event_id)
        return exists

    async def mark_processed(
        self,
        session: StoreSession,
        event_id: str,
        source: str,
        wagon_number: str,
        train_id: Optional[int],
        processed_at: Optional[datetime] = None,
    ) -> ProcessedEvent:
        """
        Insert the ledger row inside the caller's transaction.

        Raises:
            DuplicateEvent: a concurrent writer recorded the same event id.
        """
        event = ProcessedEvent(
            event_id=event_id,
            source=source,
            processed_at=processed_at or datetime.now(timezone.utc),
            wagon_number=wagon_number,
            train_id=train_id,
        )
        if not await session.insert_processed_event(event):
            logger.info("Ledger conflict, event applied concurrently", extra={"event_id": event_id})
            raise DuplicateEvent(event_id)
        return event

    def remember(self, event_id: str) -> None:
        """Cache a positive. Call only after the ledger row is committed."""
        self._cache.set(cache_key(event_id), True, ttl_seconds=self._ttl)
