from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional, Union

LAST_DAY_OF_MONTH = 0
MAX_FIXED_RENEWAL_DAY = 28
DEFAULT_RENEWAL_DAY = 1

DateLike = Union[date, datetime]
CycleKey = tuple[int, int]


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def shift_month(year: int, month: int, delta: int) -> CycleKey:
    total_months = year * 12 + (month - 1) + delta
    return total_months // 12, total_months % 12 + 1


def clamp_day(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, days_in_month(year, month)))


def months_between(earlier: CycleKey, later: CycleKey) -> int:
    return (later[0] - earlier[0]) * 12 + (later[1] - earlier[1])


def in_calendar_month(value: DateLike, key: CycleKey) -> bool:
    return (value.year, value.month) == key


def clamp_renewal_day(raw: object) -> int:
    """Normalise a stored renewal day.

    Older releases allowed 29-31; those collapse to 28 instead of being
    discarded. Anything unreadable falls back to the default.
    """
    try:
        day = int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_RENEWAL_DAY
    if day == LAST_DAY_OF_MONTH:
        return LAST_DAY_OF_MONTH
    if MAX_FIXED_RENEWAL_DAY < day <= 31:
        return MAX_FIXED_RENEWAL_DAY
    if 1 <= day <= MAX_FIXED_RENEWAL_DAY:
        return day
    return DEFAULT_RENEWAL_DAY


def is_valid_renewal_day(day: int) -> bool:
    return day == LAST_DAY_OF_MONTH or 1 <= day <= MAX_FIXED_RENEWAL_DAY


@dataclass(frozen=True)
class RenewalCycleCalculator:
    """Maps calendar dates onto (year, month) renewal cycles.

    With a renewal day of 25, Jan 25 through Feb 24 is the January cycle.
    A renewal day of 0 means the cycle starts on the last day of each month.
    """

    renewal_day: int = field(default=DEFAULT_RENEWAL_DAY)

    def __post_init__(self) -> None:
        object.__setattr__(self, "renewal_day", clamp_renewal_day(self.renewal_day))

    @property
    def is_last_day_of_month(self) -> bool:
        return self.renewal_day == LAST_DAY_OF_MONTH

    def effective_renewal_day(self, year: int, month: int) -> int:
        if self.is_last_day_of_month:
            return days_in_month(year, month)
        return self.renewal_day

    def renewal_cycle(self, value: DateLike) -> CycleKey:
        threshold = self.effective_renewal_day(value.year, value.month)
        if value.day < threshold:
            return shift_month(value.year, value.month, -1)
        return value.year, value.month

    def cycle_start_date(self, year: int, month: int) -> Optional[date]:
        if not 1 <= month <= 12:
            return None
        if not date.min.year <= year <= date.max.year:
            return None
        return date(year, month, self.effective_renewal_day(year, month))

    def same_cycle(self, first: DateLike, second: DateLike) -> bool:
        return self.renewal_cycle(first) == self.renewal_cycle(second)

    def in_cycle(self, value: DateLike, key: CycleKey) -> bool:
        return self.renewal_cycle(value) == key
