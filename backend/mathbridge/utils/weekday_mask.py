"""
7-bit day-of-week sets.

Bit 0 is Sunday and bit 6 is Saturday, so ``Weekday`` values double as bit
positions. Valid masks are 1..127.
"""

from __future__ import annotations

from datetime import date
from enum import IntEnum
from typing import Iterable, List

from ..core.exceptions import ValidationException

ALL = 127
WEEKDAYS = 62
MIN_MASK = 1
MAX_MASK = 127


class Weekday(IntEnum):
    SUNDAY = 0
    MONDAY = 1
    TUESDAY = 2
    WEDNESDAY = 3
    THURSDAY = 4
    FRIDAY = 5
    SATURDAY = 6

    @property
    def abbreviation(self) -> str:
        return self.name[:3].title()

    @property
    def bit(self) -> int:
        return 1 << self.value


def weekday_of(value: date) -> Weekday:
    """Return the Weekday for a date (Python's weekday() is Monday=0)."""
    return Weekday((value.weekday() + 1) % 7)


def validate(mask: int) -> int:
    if isinstance(mask, bool) or not isinstance(mask, int):
        raise ValidationException(
            f"Weekday mask must be an integer, got {type(mask).__name__}",
            code="INVALID_WEEKDAY_MASK",
        )
    if mask < MIN_MASK or mask > MAX_MASK:
        raise ValidationException(
            f"Weekday mask must be between {MIN_MASK} and {MAX_MASK}, got {mask}",
            code="INVALID_WEEKDAY_MASK",
            details={"mask": mask},
        )
    return mask


def as_weekday(day: Weekday | int) -> Weekday:
    try:
        return Weekday(day)
    except ValueError as exc:
        raise ValidationException(
            f"Weekday must be between 0 (Sunday) and 6 (Saturday), got {day!r}",
            code="INVALID_WEEKDAY",
            details={"weekday": day},
        ) from exc


def contains(mask: int, day: Weekday | int) -> bool:
    validate(mask)
    return bool(mask & as_weekday(day).bit)


def contains_date(mask: int, value: date) -> bool:
    return contains(mask, weekday_of(value))


def encode(days: Iterable[Weekday | int]) -> int:
    mask = 0
    for day in days:
        mask |= as_weekday(day).bit
    return validate(mask)


def decode(mask: int) -> List[Weekday]:
    validate(mask)
    return [day for day in Weekday if mask & day.bit]


def display(mask: int) -> str:
    return ", ".join(day.abbreviation for day in decode(mask))


def intersects(mask_a: int, mask_b: int) -> bool:
    return bool(validate(mask_a) & validate(mask_b))
