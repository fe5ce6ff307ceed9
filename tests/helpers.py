"""
tests/helpers.py

In-memory RailStore fake plus small builders shared across the suite.

The fake keeps real transaction semantics: a transaction works on a copy of
the committed state and publishes it only on clean exit; a savepoint restores
its snapshot when its block raises. Faults are injected per method name.
"""

from __future__ import annotations

import copy
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Optional
from unittest.mock import AsyncMock

from railyard.core.cache import InMemoryCache
from railyard.core.models import ProcessedEvent, Train, TrainStats, Wagon
from railyard.ingest.ledger import IdempotencyLedger
from railyard.ingest.pipeline import IngestionPipeline
from railyard.ingest.stats_cache import DerivedCacheInvalidator


@dataclass
class StoreState:
    trains: dict[str, Train] = field(default_factory=dict)
    wagons: dict[tuple[str, int], Wagon] = field(default_factory=dict)
    events: dict[str, ProcessedEvent] = field(default_factory=dict)
    next_id: int = 1

    def allocate_id(self) -> int:
        value = self.next_id
        self.next_id += 1
        return value


class FakeSession:
    def __init__(self, store: "InMemoryRailStore", state: StoreState):
        self._store = store
        self.state = state

    def _maybe_fail(self, operation: str) -> None:
        self._store.calls.append(operation)
        failures = self._store.failures.get(operation)
        if failures:
            raise failures.pop(0)

    async def event_exists(self, event_id: str) -> bool:
        self._maybe_fail("event_exists")
        return event_id in self.state.events

    async def lock_index(self, normalized_index: str) -> None:
        self._maybe_fail("lock_index")
        self._store.locked.append(normalized_index)

    async def find_train(self, normalized_index: str) -> Optional[Train]:
        self._maybe_fail("find_train")
        return self.state.trains.get(normalized_index)

    async def insert_train(self, normalized_index: str, created_at: datetime) -> Optional[Train]:
        self._maybe_fail("insert_train")
        if normalized_index in self.state.trains:
            return None
        train = Train(
            id=self.state.allocate_id(),
            normalized_index=normalized_index,
            created_at=created_at,
        )
        self.state.trains[normalized_index] = train
        return train

    async def find_wagon(self, number: str, train_id: int) -> Optional[Wagon]:
        self._maybe_fail("find_wagon")
        return self.state.wagons.get((number, train_id))

    async def insert_wagon(
        self,
        number: str,
        train_id: int,
        is_loaded: bool,
        weight_kg: Decimal,
        date: datetime,
    ) -> Optional[Wagon]:
        self._maybe_fail("insert_wagon")
        if (number, train_id) in self.state.wagons:
            return None
        wagon = Wagon(
            id=self.state.allocate_id(),
            number=number,
            train_id=train_id,
            is_loaded=is_loaded,
            weight_kg=weight_kg,
            date=date,
        )
        self.state.wagons[(number, train_id)] = wagon
        return wagon

    async def update_wagon(
        self,
        wagon_id: int,
        is_loaded: bool,
        weight_kg: Decimal,
        date: datetime,
    ) -> Wagon:
        self._maybe_fail("update_wagon")
        for key, wagon in self.state.wagons.items():
            if wagon.id == wagon_id:
                updated = wagon.model_copy(
                    update={"is_loaded": is_loaded, "weight_kg": weight_kg, "date": date}
                )
                self.state.wagons[key] = updated
                return updated
        raise LookupError(wagon_id)

    async def insert_processed_event(self, event: ProcessedEvent) -> bool:
        self._maybe_fail("insert_processed_event")
        if event.event_id in self.state.events:
            return False
        self.state.events[event.event_id] = event
        return True

    async def train_stats(self, normalized_index: str) -> Optional[TrainStats]:
        self._maybe_fail("train_stats")
        train = self.state.trains.get(normalized_index)
        if train is None:
            return None
        wagons = [w for w in self.state.wagons.values() if w.train_id == train.id]
        weights = [w.weight_kg for w in wagons]
        return TrainStats(
            normalized_index=normalized_index,
            created_at=train.created_at,
            total_wagons=len(wagons),
            loaded_wagons=sum(1 for w in wagons if w.is_loaded),
            empty_wagons=sum(1 for w in wagons if not w.is_loaded),
            total_weight=sum(weights, Decimal("0")),
            max_weight=max(weights) if weights else None,
            min_weight=min(weights) if weights else None,
        )

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        snapshot = copy.deepcopy(self.state)
        try:
            yield
        except BaseException:
            self.state.trains = snapshot.trains
            self.state.wagons = snapshot.wagons
            self.state.events = snapshot.events
            self.state.next_id = snapshot.next_id
            self._store.savepoint_rollbacks += 1
            raise


class InMemoryRailStore:
    def __init__(self) -> None:
        self.state = StoreState()
        self.failures: dict[str, list[BaseException]] = {}
        self.calls: list[str] = []
        self.locked: list[str] = []
        self.lock_timeouts: list[Optional[int]] = []
        self.commits = 0
        self.rollbacks = 0
        self.savepoint_rollbacks = 0

    def fail(self, operation: str, *errors: BaseException) -> None:
        """Make the next call(s) of ``operation`` raise the given errors in order."""
        self.failures.setdefault(operation, []).extend(errors)

    @asynccontextmanager
    async def transaction(self, lock_timeout_ms: Optional[int] = None) -> AsyncIterator[FakeSession]:
        self.lock_timeouts.append(lock_timeout_ms)
        working = copy.deepcopy(self.state)
        session = FakeSession(self, working)
        try:
            yield session
        except BaseException:
            self.rollbacks += 1
            raise
        self._maybe_fail_commit()
        self.state = session.state
        self.commits += 1

    def _maybe_fail_commit(self) -> None:
        failures = self.failures.get("commit")
        if failures:
            self.rollbacks += 1
            raise failures.pop(0)

    # Convenience views over committed state
    @property
    def trains(self) -> dict[str, Train]:
        return self.state.trains

    @property
    def wagons(self) -> list[Wagon]:
        return list(self.state.wagons.values())

    @property
    def events(self) -> dict[str, ProcessedEvent]:
        return self.state.events


def build_pipeline(
    store: Optional[InMemoryRailStore] = None,
    cache: Optional[InMemoryCache] = None,
) -> tuple[IngestionPipeline, InMemoryRailStore, InMemoryCache]:
    if store is None:
        store = InMemoryRailStore()
    if cache is None:
        cache = InMemoryCache()
    pipeline = IngestionPipeline(
        store=store,
        ledger=IdempotencyLedger(cache),
        invalidator=DerivedCacheInvalidator(cache),
    )
    return pipeline, store, cache


def wagon_update(**overrides: Any) -> dict[str, Any]:
    """A valid queue payload; override any field."""
    payload: dict[str, Any] = {
        "wagon": "52012345",
        "load_flag": 1,
        "weight": "61500.50",
        "train_index_raw": "7478-035-6980",
        "date": "2026-10-18T08:30:00Z",
        "source": "asu-sto",
        "eventId": "evt-0001",
    }
    payload.update(overrides)
    return payload


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_mock_cursor(fetchone_results: list) -> AsyncMock:
    """Create a mock cursor with proper async context manager support."""
    mock_cursor = AsyncMock()
    mock_cursor.execute = AsyncMock()
    mock_cursor.fetchone = AsyncMock(side_effect=fetchone_results)
    return mock_cursor


def make_mock_connection(cursor_mock: AsyncMock) -> AsyncMock:
    """Create a mock connection whose cursor() yields ``cursor_mock``."""
    mock_conn = AsyncMock()

    cursor_cm = AsyncMock()
    cursor_cm.__aenter__ = AsyncMock(return_value=cursor_mock)
    cursor_cm.__aexit__ = AsyncMock(return_value=None)
    mock_conn.cursor = lambda **kwargs: cursor_cm

    tx_cm = AsyncMock()
    tx_cm.__aenter__ = AsyncMock(return_value=None)
    tx_cm.__aexit__ = AsyncMock(return_value=None)
    mock_conn.transaction = lambda: tx_cm
    mock_conn.tx_cm = tx_cm

    return mock_conn
