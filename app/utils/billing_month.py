"""
Sieger Billing - Billing Month

Value type for a YYYY-MM calendar month, plus the window arithmetic used by
rule, pricing and credit applicability checks.
"""

import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union

from app.utils.error_handling import InvalidBillingMonthException


BILLING_MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


@dataclass(frozen=True, order=True)
class BillingMonth:
    """A calendar month. `start`/`end` bound it as a half-open UTC interval."""

    year: int
    month: int

    @classmethod
    def parse(cls, value: Union[str, "BillingMonth"]) -> "BillingMonth":
        if isinstance(value, BillingMonth):
            return value
        if not isinstance(value, str) or not BILLING_MONTH_PATTERN.match(value):
            raise InvalidBillingMonthException(value)
        year, month = value.split("-")
        return cls(int(year), int(month))

    @property
    def first_day(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def last_day(self) -> date:
        return date(self.year, self.month, calendar.monthrange(self.year, self.month)[1])

    @property
    def start(self) -> datetime:
        return datetime(self.year, self.month, 1, tzinfo=timezone.utc)

    @property
    def end(self) -> datetime:
        """Exclusive upper bound: midnight UTC on the first of next month."""
        return datetime.combine(self.last_day + timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc)

    @property
    def compact(self) -> str:
        """YYYYMM, as used in invoice numbers."""
        return f"{self.year:04d}{self.month:02d}"

    def contains(self, day: date) -> bool:
        if isinstance(day, datetime):
            day = day.date()
        return self.first_day <= day <= self.last_day

    def overlaps(self, start: Optional[date], end: Optional[date]) -> bool:
        """True when [start, end] (either end open) shares a day with the month."""
        if start is not None and start > self.last_day:
            return False
        if end is not None and end < self.first_day:
            return False
        return True

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


def window_covers(start: Optional[date], end: Optional[date], day: date) -> bool:
    """True when `day` lies inside [start, end]; a None bound is open."""
    if start is not None and day < start:
        return False
    if end is not None and day > end:
        return False
    return True
