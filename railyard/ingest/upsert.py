"""Find-or-create train, find-or-create/overwrite wagon, inside one transaction."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from railyard.core.logging import get_logger
from railyard.core.models import Train, Wagon
from railyard.ingest.store import StoreSession

logger = get_logger(__name__)


class TrainWagonUpsertEngine:
    """
    Last write wins; no versioning.

    Writers for the same normalized index are serialized by an advisory lock
    held until the caller's transaction ends. Inserts also use
    ``ON CONFLICT DO NOTHING`` and re-read, so a writer that bypasses the lock
    still converges on the existing row instead of failing.
    """

    async def ensure_train(self, session: StoreSession, normalized_index: str) -> Train:
        train = await session.find_train(normalized_index)
        if train is not None:
            return train

        train = await session.insert_train(normalized_index, datetime.now(timezone.utc))
        if train is None:
            train = await session.find_train(normalized_index)
            if train is None:
                raise LookupError(f"Train '{normalized_index}' vanished after insert conflict")
        else:
            logger.info("Created train", extra={"normalized_index": normalized_index, "train_id": train.id})
        return train

    async def upsert_wagon(
        self,
        session: StoreSession,
        train: Train,
        wagon_number: str,
        is_loaded: bool,
        weight_kg: Decimal,
        date: datetime,
    ) -> Wagon:
        existing = await session.find_wagon(wagon_number, train.id)
        if existing is None:
            created = await session.insert_wagon(wagon_number, train.id, is_loaded, weight_kg, date)
            if created is not None:
                return created
            existing = await session.find_wagon(wagon_number, train.id)
            if existing is None:
                raise LookupError(f"Wagon '{wagon_number}' vanished after insert conflict")
        return await session.update_wagon(existing.id, is_loaded, weight_kg, date)

    async def apply(
        self,
        session: StoreSession,
        normalized_index: str,
        wagon_number: str,
        is_loaded: bool,
        weight_kg: Decimal,
        date: datetime,
    ) -> tuple[int, int]:
        """Returns ``(train_id, wagon_id)``."""
        await session.lock_index(normalized_index)
        train = await self.ensure_train(session, normalized_index)
        wagon = await self.upsert_wagon(session, train, wagon_number, is_loaded, weight_kg, date)
        return train.id, wagon.id
