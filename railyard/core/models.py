"""
Railyard - Core Data Models

Pydantic models validating every entry point plus the row types returned by
the store:
- WagonUpdateMessage: queue payload (and CSV rows once mapped)
- Train / Wagon / ProcessedEvent / TrainStats: persistent rows
- ProcessingOutcome / ProcessingResult: what the pipeline reports

Usage:
    from railyard.core.models import WagonUpdateMessage

    message = WagonUpdateMessage.model_validate(json.loads(body))
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# =============================================================================
# Column limits
# =============================================================================

NORMALIZED_INDEX_MAX = 13
WAGON_NUMBER_MAX = 20
EVENT_ID_MAX = 100
SOURCE_MAX = 50
# weight_kg NUMERIC(10, 2)
WEIGHT_MAX_DIGITS = 10
WEIGHT_DECIMAL_PLACES = 2


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Queue payload
# =============================================================================


class WagonUpdateMessage(BaseModel):
    """A single wagon state report.

    Field names match case-insensitively (``EventId``, ``eventid`` and
    ``eventId`` are the same field). ``load_flag == 1`` means loaded.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        str_strip_whitespace=True,
        frozen=True,
    )

    wagon: str = Field(min_length=1, max_length=WAGON_NUMBER_MAX)
    load_flag: int = Field(default=0, ge=0, le=1)
    weight: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        max_digits=WEIGHT_MAX_DIGITS,
        decimal_places=WEIGHT_DECIMAL_PLACES,
    )
    train_index_raw: str = Field(min_length=1)
    date: datetime
    source: str = Field(min_length=1, max_length=SOURCE_MAX)
    event_id: str = Field(alias="eventId", min_length=1, max_length=EVENT_ID_MAX)

    @model_validator(mode="before")
    @classmethod
    def _match_keys_case_insensitively(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        canonical = {
            "wagon": "wagon",
            "load_flag": "load_flag",
            "weight": "weight",
            "train_index_raw": "train_index_raw",
            "date": "date",
            "source": "source",
            "eventid": "eventId",
            "event_id": "eventId",
        }
        normalized: dict[str, Any] = {}
        for key, value in data.items():
            target = canonical.get(str(key).lower(), key)
            normalized.setdefault(target, value)
        return normalized

    @field_validator("date")
    @classmethod
    def _date_to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def is_loaded(self) -> bool:
        return self.load_flag == 1


# =============================================================================
# Store rows
# =============================================================================


class Train(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    normalized_index: str
    created_at: datetime


class Wagon(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    number: str
    train_id: int
    is_loaded: bool
    weight_kg: Decimal
    date: datetime


class ProcessedEvent(BaseModel):
    """Idempotency ledger row. Never deleted."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(max_length=EVENT_ID_MAX)
    source: str = Field(max_length=SOURCE_MAX)
    processed_at: datetime
    wagon_number: str = Field(max_length=WAGON_NUMBER_MAX)
    train_id: Optional[int] = None


class TrainStats(BaseModel):
    """Aggregate figures derived from a train's wagons."""

    model_config = ConfigDict(frozen=True)

    normalized_index: str
    created_at: datetime
    total_wagons: int = 0
    loaded_wagons: int = 0
    empty_wagons: int = 0
    total_weight: Decimal = Decimal("0")
    average_weight: Optional[Decimal] = None
    max_weight: Optional[Decimal] = None
    min_weight: Optional[Decimal] = None
    earliest_wagon_date: Optional[datetime] = None
    latest_wagon_date: Optional[datetime] = None


# =============================================================================
# Pipeline results
# =============================================================================


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    DUPLICATE = "duplicate"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


@dataclass(frozen=True, slots=True)
class ProcessingOutcome:
    """Tagged result of applying one record."""

    kind: OutcomeKind
    message: Optional[str] = None
    train_id: Optional[int] = None
    wagon_id: Optional[int] = None
    normalized_index: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.kind in (OutcomeKind.SUCCESS, OutcomeKind.DUPLICATE)


class ProcessingResult(BaseModel):
    """Boundary result of ``process_update``."""

    model_config = ConfigDict(frozen=True)

    success: bool
    error_message: Optional[str] = None
    should_retry: bool = False
    train_id: Optional[int] = None
    wagon_id: Optional[int] = None
    duplicate: bool = False

    @classmethod
    def from_outcome(cls, outcome: ProcessingOutcome) -> "ProcessingResult":
        if outcome.kind is OutcomeKind.SUCCESS:
            return cls(success=True, train_id=outcome.train_id, wagon_id=outcome.wagon_id)
        if outcome.kind is OutcomeKind.DUPLICATE:
            return cls(success=True, error_message="Event already processed", duplicate=True)
        return cls(
            success=False,
            error_message=outcome.message,
            should_retry=outcome.kind is OutcomeKind.RETRYABLE,
        )
