"""
Railyard - Error Taxonomy

Structured error classification for the ingestion paths. Every error has a
stable code that can be aggregated in logs and referenced from alerts.

Error Code Format: RYE-{CATEGORY}-{NUMBER}
- CATEGORY = VALIDATION, DUPLICATE, STORE, PROCESSING, JOB
- NUMBER = 3-digit error number

Handling policy:
- VALIDATION      terminal, never retried (dead-letter / invalid row)
- DUPLICATE       success with a no-op marker
- STORE transient retried exactly once via requeue
- PROCESSING      dead-letter, never silently dropped
- JOB             cancellation is cooperative and not a failure
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

import psycopg
from psycopg import errors as pg_errors

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    VALIDATION = "VALIDATION"
    DUPLICATE = "DUPLICATE"
    STORE = "STORE"
    PROCESSING = "PROCESSING"
    JOB = "JOB"


@dataclass(frozen=True)
class ErrorCode:
    """Immutable error code definition."""

    code: str
    category: ErrorCategory
    message: str
    retryable: bool = False

    def __str__(self) -> str:
        return self.code


ERR_VALIDATION_TRAIN_INDEX = ErrorCode(
    code="RYE-VALIDATION-500",
    category=ErrorCategory.VALIDATION,
    message="Train index could not be normalized",
)
ERR_VALIDATION_MESSAGE = ErrorCode(
    code="RYE-VALIDATION-501",
    category=ErrorCategory.VALIDATION,
    message="Wagon update failed schema validation",
)
ERR_VALIDATION_ROW = ErrorCode(
    code="RYE-VALIDATION-510",
    category=ErrorCategory.VALIDATION,
    message="CSV row could not be parsed",
)
ERR_DUPLICATE_EVENT = ErrorCode(
    code="RYE-DUPLICATE-200",
    category=ErrorCategory.DUPLICATE,
    message="Event already processed",
)
ERR_STORE_TRANSIENT = ErrorCode(
    code="RYE-STORE-100",
    category=ErrorCategory.STORE,
    message="Transient store failure",
    retryable=True,
)
ERR_STORE_PERMANENT = ErrorCode(
    code="RYE-STORE-110",
    category=ErrorCategory.STORE,
    message="Store rejected the write",
)
ERR_PROCESSING = ErrorCode(
    code="RYE-PROCESSING-900",
    category=ErrorCategory.PROCESSING,
    message="Processing failed permanently",
)
ERR_JOB_SUBMISSION = ErrorCode(
    code="RYE-JOB-300",
    category=ErrorCategory.JOB,
    message="Batch input could not be opened",
)


# =============================================================================
# Exceptions
# =============================================================================


class RailyardError(Exception):
    """Base exception carrying a stable error code."""

    error_code: ErrorCode = ERR_PROCESSING

    @property
    def retryable(self) -> bool:
        return self.error_code.retryable


class ValidationFailure(RailyardError):
    """Input that can never succeed, however often it is retried."""

    error_code = ERR_VALIDATION_MESSAGE


class TrainIndexValidationError(ValidationFailure):
    """A raw train index could not be resolved into a canonical triple."""

    error_code = ERR_VALIDATION_TRAIN_INDEX

    def __init__(self, kind: Enum, message: str):
        self.kind = kind
        super().__init__(message)


class MessageValidationError(ValidationFailure):
    """A wagon update is missing required fields or carries bad values."""


class RowValidationError(ValidationFailure):
    """A CSV row could not be turned into a wagon update."""

    error_code = ERR_VALIDATION_ROW


class DuplicateEvent(RailyardError):
    """The event id is already present in the idempotency ledger."""

    error_code = ERR_DUPLICATE_EVENT

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event '{event_id}' already processed")


class TransientStoreError(RailyardError):
    """Connectivity loss, lock timeout, deadlock or serialization failure."""

    error_code = ERR_STORE_TRANSIENT


class PermanentProcessingError(RailyardError):
    """A failure that survived its retry or was never retryable."""

    error_code = ERR_PROCESSING


class JobCancelled(RailyardError):
    """Raised inside a batch job when cooperative cancellation was requested."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' was cancelled")


class BatchSubmissionError(RailyardError):
    """The CSV stream handed to submit() cannot be read at all."""

    error_code = ERR_JOB_SUBMISSION


# =============================================================================
# Store error classifier
# =============================================================================

TRANSIENT_PG_ERRORS: tuple[type[BaseException], ...] = (
    pg_errors.SerializationFailure,
    pg_errors.DeadlockDetected,
    pg_errors.LockNotAvailable,
    pg_errors.QueryCanceled,
    pg_errors.AdminShutdown,
    pg_errors.CannotConnectNow,
    psycopg.OperationalError,
    psycopg.InterfaceError,
    ConnectionError,
    TimeoutError,
)


def is_transient_store_error(exc: BaseException) -> bool:
    """True when retrying the same write later may succeed."""
    if isinstance(exc, TransientStoreError):
        return True
    return isinstance(exc, TRANSIENT_PG_ERRORS)


def classify_store_error(exc: BaseException) -> RailyardError:
    """
    Wrap a raw store exception into the taxonomy.

    Already-classified errors pass through unchanged.
    """
    if isinstance(exc, RailyardError):
        return exc
    if is_transient_store_error(exc):
        wrapped: RailyardError = TransientStoreError(f"{type(exc).__name__}: {exc}")
    else:
        wrapped = PermanentProcessingError(f"{type(exc).__name__}: {exc}")
        wrapped.error_code = ERR_STORE_PERMANENT
    wrapped.__cause__ = exc
    return wrapped
