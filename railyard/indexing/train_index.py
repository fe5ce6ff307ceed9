"""
Railyard - Train Index Normalization

A train index is typed by humans as three numeric groups in no fixed layout:

    "7478-035-6980", "7478/6980/35", " 74785  035 69801 "

and always resolves to the canonical triple ``"FFFF NNN DDDD"``:
formation station (4 digits), train number (3 digits, zero padded) and
destination station (4 digits).

Usage:
    from railyard.indexing.train_index import normalize, parse_result, Ok

    normalize("7478/6980/35")          # "7478 035 6980"
    result = parse_result(raw)
    if isinstance(result, Ok):
        index = result.value
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from railyard.core.errors import TrainIndexValidationError

_DIGIT_RUN = re.compile(r"[0-9]+")


class TrainIndexErrorKind(str, Enum):
    """Why a raw index was rejected."""

    EMPTY = "empty"
    NO_DIGITS = "no_digits"
    TOO_FEW_PARTS = "too_few_parts"
    TOO_MANY_PARTS = "too_many_parts"
    INVALID_STATION_CODE = "invalid_station_code"
    AMBIGUOUS = "ambiguous"
    NO_TRAIN_NUMBER = "no_train_number"
    INSUFFICIENT_DATA = "insufficient_data"


@dataclass(frozen=True, slots=True)
class TrainIndex:
    """Canonical train index. Equality and hashing are structural."""

    formation_station_code: str
    train_number: str
    destination_station_code: str

    @property
    def normalized(self) -> str:
        return f"{self.formation_station_code} {self.train_number} {self.destination_station_code}"

    def __str__(self) -> str:
        return self.normalized


@dataclass(frozen=True, slots=True)
class Ok:
    value: TrainIndex


@dataclass(frozen=True, slots=True)
class Err:
    kind: TrainIndexErrorKind
    message: str


ParseResult = Union[Ok, Err]


# =============================================================================
# Group helpers
# =============================================================================


def _fail(kind: TrainIndexErrorKind, message: str) -> TrainIndexValidationError:
    return TrainIndexValidationError(kind, message)


def _is_train_number(group: str) -> bool:
    return 2 <= len(group) <= 3


def _station_code(group: str) -> str:
    if len(group) < 4:
        raise _fail(
            TrainIndexErrorKind.INVALID_STATION_CODE,
            f"Station code must contain at least 4 digits: {group}",
        )
    if len(group) > 5:
        raise _fail(
            TrainIndexErrorKind.INVALID_STATION_CODE,
            f"Station code must contain at most 5 digits: {group}",
        )
    return group[:4]


def _train_number(group: str) -> str:
    return group.zfill(3)


def _parse_two_groups(groups: list[str]) -> TrainIndex:
    # Formation station is still validated so the error names the first fault.
    _station_code(groups[0])
    if _is_train_number(groups[1]):
        raise _fail(
            TrainIndexErrorKind.INSUFFICIENT_DATA,
            "Insufficient data: destination station code is missing",
        )
    raise _fail(
        TrainIndexErrorKind.INSUFFICIENT_DATA,
        "Insufficient data: train number is missing",
    )


def _parse_three_groups(groups: list[str]) -> TrainIndex:
    first, second, third = groups
    formation = _station_code(first)

    second_is_number = _is_train_number(second)
    third_is_number = _is_train_number(third)

    if second_is_number and not third_is_number:
        number, destination = _train_number(second), _station_code(third)
    elif third_is_number and not second_is_number:
        destination, number = _station_code(second), _train_number(third)
    elif second_is_number and third_is_number:
        if len(second) <= len(third) and len(second) <= 3:
            number, destination = _train_number(second), _station_code(third)
        elif len(third) <= 3:
            number, destination = _train_number(third), _station_code(second)
        else:
            raise _fail(
                TrainIndexErrorKind.AMBIGUOUS,
                "Cannot tell the train number from the destination station",
            )
    else:
        raise _fail(
            TrainIndexErrorKind.NO_TRAIN_NUMBER,
            "No train number found (must contain 2-3 digits)",
        )

    return TrainIndex(formation, number, destination)


# =============================================================================
# Public API
# =============================================================================


def parse(raw: Optional[str]) -> TrainIndex:
    """
    Resolve a raw train index.

    Raises:
        TrainIndexValidationError: the input cannot be resolved; ``kind``
            carries a TrainIndexErrorKind.
    """
    if raw is None or not raw.strip():
        raise _fail(TrainIndexErrorKind.EMPTY, "Train index must not be empty or whitespace")

    groups = _DIGIT_RUN.findall(raw)
    if not groups:
        raise _fail(TrainIndexErrorKind.NO_DIGITS, "Train index must contain digits")
    if len(groups) < 2:
        raise _fail(
            TrainIndexErrorKind.TOO_FEW_PARTS,
            "Train index must contain at least 2 numeric parts",
        )
    if len(groups) > 3:
        raise _fail(
            TrainIndexErrorKind.TOO_MANY_PARTS,
            "Train index must contain at most 3 numeric parts",
        )

    if len(groups) == 2:
        return _parse_two_groups(groups)
    return _parse_three_groups(groups)


def parse_result(raw: Optional[str]) -> ParseResult:
    """Tagged-result form of :func:`parse`; never raises."""
    try:
        return Ok(parse(raw))
    except TrainIndexValidationError as exc:
        return Err(exc.kind, str(exc))


def try_parse(raw: Optional[str]) -> Optional[TrainIndex]:
    result = parse_result(raw)
    return result.value if isinstance(result, Ok) else None


def normalize(raw: Optional[str]) -> str:
    return parse(raw).normalized


def try_normalize(raw: Optional[str]) -> Optional[str]:
    index = try_parse(raw)
    return index.normalized if index is not None else None
