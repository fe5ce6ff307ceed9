"""
Railyard - Ingestion Pipeline

Applies one wagon update exactly once:

    Received -> Validated -> DuplicateCheck -> Upserted + Ledgered (commit)
             -> CacheInvalidated -> Success

Nothing raises across this boundary. Every path ends in a ProcessingOutcome:

    SUCCESS    state written, ledger row committed
    DUPLICATE  event id already in the ledger; no side effects
    TERMINAL   input can never succeed (bad train index, bad payload)
    RETRYABLE  store fault; the caller may try again

Two callers drive it: the queue consumer (one transaction per message) and
the CSV batch engine, which passes its own open session so each row runs in
a savepoint and cache work waits for the batch commit.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError

from railyard.core.errors import (
    ERR_VALIDATION_TRAIN_INDEX,
    DuplicateEvent,
    MessageValidationError,
    classify_store_error,
)
from railyard.core.logging import LogContext, Timer, get_logger
from railyard.core.models import (
    OutcomeKind,
    ProcessingOutcome,
    ProcessingResult,
    WagonUpdateMessage,
)
from railyard.indexing.train_index import Err, parse_result
from railyard.ingest.ledger import IdempotencyLedger
from railyard.ingest.stats_cache import DerivedCacheInvalidator
from railyard.ingest.store import RailStore, StoreSession
from railyard.ingest.upsert import TrainWagonUpsertEngine

logger = get_logger(__name__)

DUPLICATE_MESSAGE = "Event already processed"


def format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "Validation failed: " + "; ".join(parts)


def validate_message(payload: Mapping[str, Any]) -> WagonUpdateMessage:
    """
    Raises:
        MessageValidationError: the payload does not match the wagon update schema.
    """
    try:
        return WagonUpdateMessage.model_validate(payload)
    except ValidationError as exc:
        raise MessageValidationError(format_validation_error(exc)) from exc


class IngestionPipeline:
    def __init__(
        self,
        store: RailStore,
        ledger: IdempotencyLedger,
        invalidator: DerivedCacheInvalidator,
        upsert: Optional[TrainWagonUpsertEngine] = None,
    ):
        self._store = store
        self._ledger = ledger
        self._invalidator = invalidator
        self._upsert = upsert or TrainWagonUpsertEngine()

    async def process_update(
        self, message: Union[WagonUpdateMessage, Mapping[str, Any]]
    ) -> ProcessingResult:
        """Validate a raw payload and apply it."""
        if not isinstance(message, WagonUpdateMessage):
            try:
                message = validate_message(message)
            except MessageValidationError as exc:
                logger.warning(str(exc), extra={"error_code": exc.error_code.code})
                return ProcessingResult(
                    success=False, error_message=str(exc), should_retry=exc.retryable
                )
        return ProcessingResult.from_outcome(await self.apply(message))

    async def apply(
        self,
        record: WagonUpdateMessage,
        session: Optional[StoreSession] = None,
    ) -> ProcessingOutcome:
        """
        Apply one validated record.

        With ``session`` the record runs in a savepoint of the caller's
        transaction, and the caller must call ``after_commit`` once that
        transaction has committed.
        """
        with LogContext(event_id=record.event_id), Timer() as timer:
            if self._ledger.is_known(record.event_id):
                logger.info("Event already processed, skipping (cached)")
                return ProcessingOutcome(OutcomeKind.DUPLICATE, DUPLICATE_MESSAGE)

            parsed = parse_result(record.train_index_raw)
            if isinstance(parsed, Err):
                message = f"Invalid train index format: {record.train_index_raw} ({parsed.message})"
                logger.warning(message, extra={"error_code": ERR_VALIDATION_TRAIN_INDEX.code})
                return ProcessingOutcome(
                    OutcomeKind.TERMINAL,
                    message,
                    error_code=ERR_VALIDATION_TRAIN_INDEX.code,
                )
            normalized_index = parsed.value.normalized

            try:
                if session is None:
                    async with self._store.transaction() as tx:
                        train_id, wagon_id = await self._write(tx, record, normalized_index)
                    self.after_commit(record.event_id, normalized_index)
                else:
                    async with session.savepoint():
                        train_id, wagon_id = await self._write(session, record, normalized_index)
            except DuplicateEvent:
                logger.info("Event already processed, skipping")
                return ProcessingOutcome(
                    OutcomeKind.DUPLICATE, DUPLICATE_MESSAGE, normalized_index=normalized_index
                )
            except Exception as exc:
                error = classify_store_error(exc)
                logger.error(
                    f"Error processing wagon update: {error}",
                    exc_info=True,
                    extra={"error_code": error.error_code.code, "normalized_index": normalized_index},
                )
                return ProcessingOutcome(
                    OutcomeKind.RETRYABLE,
                    str(error),
                    normalized_index=normalized_index,
                    error_code=error.error_code.code,
                )

            logger.info(
                "Wagon update applied",
                extra={
                    "normalized_index": normalized_index,
                    "wagon_number": record.wagon,
                    "train_id": train_id,
                    "wagon_id": wagon_id,
                    "duration_ms": round(timer.elapsed_ms, 2),
                },
            )
            return ProcessingOutcome(
                OutcomeKind.SUCCESS,
                train_id=train_id,
                wagon_id=wagon_id,
                normalized_index=normalized_index,
            )

    async def _write(
        self,
        session: StoreSession,
        record: WagonUpdateMessage,
        normalized_index: str,
    ) -> tuple[int, int]:
        if await self._ledger.is_processed(session, record.event_id):
            raise DuplicateEvent(record.event_id)

        train_id, wagon_id = await self._upsert.apply(
            session,
            normalized_index,
            record.wagon,
            record.is_loaded,
            record.weight,
            record.date,
        )
        await self._ledger.mark_processed(
            session,
            event_id=record.event_id,
            source=record.source,
            wagon_number=record.wagon,
            train_id=train_id,
        )
        return train_id, wagon_id

    def after_commit(self, event_id: str, normalized_index: str) -> None:
        """Post-commit side effects: evict derived stats, cache the ledger positive."""
        self._invalidator.invalidate(normalized_index)
        self._ledger.remember(event_id)
