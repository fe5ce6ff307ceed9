"""Tests for message models, result mapping and the error taxonomy."""

from datetime import datetime, timezone
from decimal import Decimal

import psycopg
import pytest
from psycopg import errors as pg_errors
from pydantic import ValidationError

from railyard.core.errors import (
    ERR_STORE_PERMANENT,
    ERR_STORE_TRANSIENT,
    DuplicateEvent,
    PermanentProcessingError,
    RowValidationError,
    TransientStoreError,
    classify_store_error,
    is_transient_store_error,
)
from railyard.core.models import (
    OutcomeKind,
    ProcessingOutcome,
    ProcessingResult,
    WagonUpdateMessage,
    ensure_utc,
)
from tests.helpers import wagon_update


class TestWagonUpdateMessage:
    def test_parses_payload(self):
        message = WagonUpdateMessage.model_validate(wagon_update())
        assert message.wagon == "52012345"
        assert message.is_loaded is True
        assert message.weight == Decimal("61500.50")
        assert message.event_id == "evt-0001"
        assert message.date == datetime(2026, 10, 18, 8, 30, tzinfo=timezone.utc)

    def test_keys_match_case_insensitively(self):
        payload = {
            "Wagon": "1",
            "LOAD_FLAG": 0,
            "Weight": 5,
            "Train_Index_Raw": "7478-035-6980",
            "Date": "2026-10-18T00:00:00Z",
            "Source": "asu",
            "EventId": "e-1",
        }
        message = WagonUpdateMessage.model_validate(payload)
        assert message.event_id == "e-1"
        assert message.is_loaded is False

    def test_snake_case_event_id_is_accepted(self):
        payload = wagon_update()
        payload["event_id"] = payload.pop("eventId")
        assert WagonUpdateMessage.model_validate(payload).event_id == "evt-0001"

    def test_defaults_and_unknown_fields(self):
        payload = wagon_update(extra_field="ignored")
        del payload["weight"]
        del payload["load_flag"]
        message = WagonUpdateMessage.model_validate(payload)
        assert message.weight == Decimal("0")
        assert message.load_flag == 0

    def test_naive_date_is_utc(self):
        message = WagonUpdateMessage.model_validate(wagon_update(date="2026-10-18T08:30:00"))
        assert message.date.tzinfo == timezone.utc

    def test_strings_are_stripped(self):
        message = WagonUpdateMessage.model_validate(wagon_update(wagon="  77  "))
        assert message.wagon == "77"

    def test_whitespace_wagon_is_rejected(self):
        with pytest.raises(ValidationError):
            WagonUpdateMessage.model_validate(wagon_update(wagon="   "))

    def test_serializes_with_alias(self):
        message = WagonUpdateMessage.model_validate(wagon_update())
        dumped = message.model_dump(mode="json", by_alias=True)
        assert dumped["eventId"] == "evt-0001"
        assert WagonUpdateMessage.model_validate(dumped) == message

    def test_ensure_utc_converts_offsets(self):
        from datetime import timedelta

        aware = datetime(2026, 1, 1, 3, 0, tzinfo=timezone(timedelta(hours=3)))
        assert ensure_utc(aware) == datetime(2026, 1, 1, 0, 0, tzinfo=timezone.utc)


class TestProcessingResult:
    def test_success(self):
        result = ProcessingResult.from_outcome(
            ProcessingOutcome(OutcomeKind.SUCCESS, train_id=1, wagon_id=2)
        )
        assert result == ProcessingResult(success=True, train_id=1, wagon_id=2)

    def test_duplicate_is_success(self):
        result = ProcessingResult.from_outcome(ProcessingOutcome(OutcomeKind.DUPLICATE))
        assert result.success is True
        assert result.duplicate is True
        assert result.error_message == "Event already processed"

    def test_retryable_and_terminal(self):
        retry = ProcessingResult.from_outcome(ProcessingOutcome(OutcomeKind.RETRYABLE, "db"))
        final = ProcessingResult.from_outcome(ProcessingOutcome(OutcomeKind.TERMINAL, "bad"))
        assert (retry.success, retry.should_retry, retry.error_message) == (False, True, "db")
        assert (final.success, final.should_retry, final.error_message) == (False, False, "bad")

    def test_outcome_success_flag(self):
        assert ProcessingOutcome(OutcomeKind.DUPLICATE).is_success
        assert not ProcessingOutcome(OutcomeKind.RETRYABLE).is_success


class TestStoreErrorClassification:
    @pytest.mark.parametrize(
        "exc",
        [
            pg_errors.SerializationFailure("could not serialize"),
            pg_errors.DeadlockDetected("deadlock"),
            pg_errors.LockNotAvailable("lock timeout"),
            psycopg.OperationalError("connection lost"),
            ConnectionResetError("reset"),
            TimeoutError("slow"),
            TransientStoreError("already classified"),
        ],
    )
    def test_transient(self, exc):
        assert is_transient_store_error(exc)

    def test_wraps_transient(self):
        original = psycopg.OperationalError("connection lost")
        wrapped = classify_store_error(original)
        assert isinstance(wrapped, TransientStoreError)
        assert wrapped.retryable is True
        assert wrapped.error_code is ERR_STORE_TRANSIENT
        assert wrapped.__cause__ is original
        assert str(wrapped) == "OperationalError: connection lost"

    def test_wraps_permanent(self):
        original = pg_errors.CheckViolation("weight_kg_check")
        wrapped = classify_store_error(original)
        assert isinstance(wrapped, PermanentProcessingError)
        assert wrapped.retryable is False
        assert wrapped.error_code is ERR_STORE_PERMANENT

    def test_classified_errors_pass_through(self):
        duplicate = DuplicateEvent("e-1")
        row = RowValidationError("bad")
        assert classify_store_error(duplicate) is duplicate
        assert classify_store_error(row) is row
