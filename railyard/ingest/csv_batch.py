"""
railyard/ingest/csv_batch.py
============================
Bulk wagon-state import from CSV, run as a tracked background job.

Guarantees:
1. submit() returns a job id immediately; parsing and writes run in a task
2. Every row goes through the same IngestionPipeline as queue messages
3. Re-uploading the same file is duplicate-suppressed: each row gets a
   deterministic event id ``csv:<sha256(file)[:16]>:<line>``
4. The whole batch is one transaction; each row runs in a savepoint, so a
   bad row is counted and skipped without aborting the batch. A row hit by
   a transient store fault is retried once in a fresh savepoint
5. Cancellation and unexpected faults roll the batch back
6. Train indexes are locked up front in sorted order, so concurrent
   batches wait on each other instead of deadlocking

Usage:
    engine = BatchIngestionEngine(store, pipeline)
    job_id = engine.submit(open("wagons.csv", "rb"))
    status = await engine.wait(job_id)
    print(status.result.message)
"""

from __future__ import annotations

import asyncio
import csv
import hashlib
import io
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, BinaryIO, Iterator, Optional, TextIO, Union

from pydantic import ValidationError

from railyard.core.errors import (
    ERR_STORE_TRANSIENT,
    BatchSubmissionError,
    JobCancelled,
    RowValidationError,
)
from railyard.core.logging import LogContext, get_logger, log_job_progress
from railyard.core.models import OutcomeKind, WagonUpdateMessage, ensure_utc
from railyard.ingest.jobs import BatchResult, JobState, JobStatus, JobTracker
from railyard.ingest.pipeline import IngestionPipeline, format_validation_error
from railyard.indexing.train_index import try_normalize
from railyard.ingest.store import RailStore

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

CSV_SOURCE = "csv"
DEFAULT_ERROR_LIMIT = 50
EMPTY_HEADER_MESSAGE = "CSV file is empty or has no header"

# Case-insensitive header aliases
CANONICAL_HEADERS = {
    "trainindex": "train_index",
    "index": "train_index",
    "traincode": "train_index",
    "wagonnumber": "wagon_number",
    "number": "wagon_number",
    "wagon": "wagon_number",
    "isloaded": "is_loaded",
    "loaded": "is_loaded",
    "load": "is_loaded",
    "weight": "weight",
    "weightkg": "weight",
    "kg": "weight",
    "date": "date",
    "datetime": "date",
    "time": "date",
}

TRUE_VALUES = frozenset({"true", "1", "yes", "loaded"})

DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
    "%d/%m/%Y",
    "%m/%d/%Y",
    "%d-%m-%Y",
    "%m-%d-%Y",
)

FALLBACK_DATE_FORMATS = (
    "%d.%m.%Y",
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y %H:%M",
    "%Y/%m/%d",
    "%Y/%m/%d %H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
    "%d %b %Y",
    "%d %B %Y",
    "%b %d, %Y",
    "%B %d, %Y",
)

_NUMBER = re.compile(r"^[+-]?(?:\d[\d,]*)?(?:\.\d*)?$")


# =============================================================================
# Row parsing
# =============================================================================


@dataclass(slots=True)
class CsvRow:
    """Raw cell values of one data row, keyed by canonical field."""

    line: int
    train_index: str = ""
    wagon_number: str = ""
    is_loaded: str = ""
    weight: str = ""
    date: str = ""


@dataclass(slots=True)
class ParsedCsv:
    file_key: str
    rows: list[CsvRow] = field(default_factory=list)


def parse_bool(value: str) -> bool:
    return value.strip().lower() in TRUE_VALUES


def parse_weight(value: str) -> Decimal:
    """Invariant-culture decimal; empty is 0; thousands separators allowed."""
    text = value.strip()
    if not text:
        return Decimal("0")
    if not _NUMBER.match(text) or not any(ch.isdigit() for ch in text):
        raise RowValidationError(f"Invalid weight value: {value}")
    try:
        weight = Decimal(text.replace(",", ""))
    except InvalidOperation as exc:
        raise RowValidationError(f"Invalid weight value: {value}") from exc
    if weight < 0:
        raise RowValidationError(f"Weight must not be negative: {value}")
    return weight


def parse_date(value: str, now: Optional[datetime] = None) -> datetime:
    """Exact formats first, then ISO-8601, then a short lenient list. Naive means UTC."""
    text = value.strip()
    if not text:
        return now or datetime.now(timezone.utc)

    for fmt in DATE_FORMATS:
        try:
            return ensure_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue

    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        pass

    for fmt in FALLBACK_DATE_FORMATS:
        try:
            return ensure_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue

    raise RowValidationError(f"Invalid date value: {value}")


def _column_map(header: list[str]) -> dict[str, int]:
    columns: dict[str, int] = {}
    for position, name in enumerate(header):
        key = name.strip().strip('"').lower()
        target = CANONICAL_HEADERS.get(key)
        if target is not None and target not in columns:
            columns[target] = position
    return columns


def _iter_rows(reader: Iterator[list[str]], columns: dict[str, int]) -> Iterator[CsvRow]:
    for values in reader:
        line = reader.line_num  # type: ignore[attr-defined]
        if not any(cell.strip() for cell in values):
            continue
        row = CsvRow(line=line)
        for target, position in columns.items():
            if position < len(values):
                setattr(row, target, values[position].strip())
        yield row


def parse_csv(data: bytes) -> ParsedCsv:
    """
    Decode (UTF-8, BOM tolerated) and split into rows.

    Raises:
        ValueError: the file has no header row.
        UnicodeDecodeError: the file is not UTF-8.
    """
    file_key = hashlib.sha256(data).hexdigest()[:16]
    text = data.decode("utf-8-sig")
    reader = csv.reader(io.StringIO(text, newline=""))

    header = next(reader, None)
    if header is None or not any(cell.strip() for cell in header):
        raise ValueError(EMPTY_HEADER_MESSAGE)

    parsed = ParsedCsv(file_key=file_key)
    parsed.rows.extend(_iter_rows(reader, _column_map(header)))
    return parsed


def row_event_id(file_key: str, line: int) -> str:
    return f"{CSV_SOURCE}:{file_key}:{line}"


def row_to_message(row: CsvRow, file_key: str, now: Optional[datetime] = None) -> WagonUpdateMessage:
    """
    Turn a raw row into the same payload the queue carries.

    Raises:
        RowValidationError: a required cell is missing or unparseable.
    """
    if not row.train_index:
        raise RowValidationError("Train index is required")
    if not row.wagon_number:
        raise RowValidationError("Wagon number is required")

    weight = parse_weight(row.weight)
    date = parse_date(row.date, now=now)
    try:
        return WagonUpdateMessage(
            wagon=row.wagon_number,
            load_flag=1 if parse_bool(row.is_loaded) else 0,
            weight=weight,
            train_index_raw=row.train_index,
            date=date,
            source=CSV_SOURCE,
            eventId=row_event_id(file_key, row.line),
        )
    except ValidationError as exc:
        raise RowValidationError(format_validation_error(exc)) from exc


def batch_lock_order(rows: list[CsvRow]) -> list[str]:
    """Distinct normalized indexes of ``rows`` in lock order; unparseable ones are skipped."""
    indexes = {try_normalize(row.train_index) for row in rows}
    indexes.discard(None)
    return sorted(indexes)  # type: ignore[arg-type]


def read_stream(stream: Union[BinaryIO, TextIO, None]) -> bytes:
    """
    Read a whole upload.

    Raises:
        BatchSubmissionError: the stream is missing, closed or unreadable.
    """
    if stream is None:
        raise BatchSubmissionError("CSV stream is required")
    if getattr(stream, "closed", False):
        raise BatchSubmissionError("CSV stream is closed")
    readable = getattr(stream, "readable", None)
    if readable is not None and not readable():
        raise BatchSubmissionError("CSV stream is not readable")
    try:
        data: Any = stream.read()
    except (OSError, ValueError) as exc:
        raise BatchSubmissionError(f"CSV stream could not be read: {exc}") from exc
    if isinstance(data, str):
        return data.encode("utf-8")
    if not isinstance(data, (bytes, bytearray)):
        raise BatchSubmissionError("CSV stream returned neither text nor bytes")
    return bytes(data)


# =============================================================================
# Engine
# =============================================================================


class BatchIngestionEngine:
    def __init__(
        self,
        store: RailStore,
        pipeline: IngestionPipeline,
        tracker: Optional[JobTracker] = None,
        error_limit: int = DEFAULT_ERROR_LIMIT,
    ):
        self._store = store
        self._pipeline = pipeline
        self.tracker = tracker or JobTracker()
        self._error_limit = error_limit

    def submit(self, stream: Union[BinaryIO, TextIO, None]) -> str:
        """
        Start a background import and return its job id.

        Must be called from inside a running event loop.

        Raises:
            BatchSubmissionError: no job is created.
        """
        data = read_stream(stream)
        loop = asyncio.get_running_loop()
        status = self.tracker.create()
        task = loop.create_task(self.run_job(status.job_id, data), name=f"csv-job-{status.job_id}")
        self.tracker.track(status.job_id, task)
        logger.info(
            "Started CSV processing job",
            extra={"job_id": status.job_id, "count": len(data)},
        )
        return status.job_id

    def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        return self.tracker.get(job_id)

    def get_job_result(self, job_id: str) -> Optional[BatchResult]:
        return self.tracker.result(job_id)

    def cancel(self, job_id: str) -> bool:
        return self.tracker.request_cancel(job_id)

    async def wait(self, job_id: str) -> Optional[JobStatus]:
        return await self.tracker.wait(job_id)

    async def run_job(self, job_id: str, data: bytes) -> BatchResult:
        with LogContext(job_id=job_id):
            try:
                result = await self._process(job_id, data)
            except JobCancelled:
                result = BatchResult(job_id, JobState.CANCELLED, "Processing was cancelled")
                logger.info("CSV processing job was cancelled")
            except asyncio.CancelledError:
                self.tracker.complete(
                    BatchResult(job_id, JobState.CANCELLED, "Processing was cancelled")
                )
                raise
            except Exception as exc:
                result = BatchResult(
                    job_id,
                    JobState.FAILED,
                    f"Processing failed: {exc}",
                    errors=(str(exc),),
                )
                logger.error("CSV processing job failed", exc_info=True)
            self.tracker.complete(result)
            return result

    async def _process(self, job_id: str, data: bytes) -> BatchResult:
        parsed = parse_csv(data)
        total = len(parsed.rows)
        logger.info(f"Processing {total} CSV records", extra={"count": total})

        valid = invalid = duplicates = 0
        errors: list[str] = []
        committed: list[tuple[str, str]] = []
        now = datetime.now(timezone.utc)

        # Batches wait for each other; row locks below are already held.
        async with self._store.transaction(lock_timeout_ms=0) as session:
            for normalized_index in batch_lock_order(parsed.rows):
                await session.lock_index(normalized_index)

            for done, row in enumerate(parsed.rows, start=1):
                if self.tracker.is_cancel_requested(job_id):
                    raise JobCancelled(job_id)

                try:
                    message = row_to_message(row, parsed.file_key, now=now)
                except RowValidationError as exc:
                    outcome_error: Optional[str] = str(exc)
                else:
                    outcome = await self._pipeline.apply(message, session=session)
                    if outcome.error_code == ERR_STORE_TRANSIENT.code:
                        logger.warning(
                            f"Retrying CSV record at row {row.line}: {outcome.message}",
                            extra={"error_code": outcome.error_code},
                        )
                        outcome = await self._pipeline.apply(message, session=session)
                    outcome_error = None if outcome.is_success else outcome.message
                    if outcome.kind is OutcomeKind.DUPLICATE:
                        duplicates += 1
                    elif outcome.kind is OutcomeKind.SUCCESS and outcome.normalized_index:
                        committed.append((message.event_id, outcome.normalized_index))

                if outcome_error is None:
                    valid += 1
                else:
                    invalid += 1
                    if len(errors) < self._error_limit:
                        errors.append(f"Row {row.line}: {outcome_error}")
                    logger.warning(f"Error processing CSV record at row {row.line}: {outcome_error}")

                progress = done * 100 // total
                self.tracker.update_progress(job_id, progress)
                log_job_progress(logger, job_id, progress)
                # Yield so cancel requests and status reads interleave with long batches.
                await asyncio.sleep(0)

            if self.tracker.is_cancel_requested(job_id):
                raise JobCancelled(job_id)

        for event_id, normalized_index in committed:
            self._pipeline.after_commit(event_id, normalized_index)

        logger.info(
            f"Completed CSV processing job: {valid} valid, {invalid} invalid records",
            extra={"count": total},
        )
        return BatchResult(
            job_id,
            JobState.COMPLETED,
            f"Successfully processed {valid} records, {invalid} errors",
            processed_records=total,
            valid_records=valid,
            invalid_records=invalid,
            duplicate_records=duplicates,
            errors=tuple(errors),
        )
