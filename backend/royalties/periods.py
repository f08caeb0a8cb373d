"""
Reporting periods for analytics and revenue roll-ups.

A period resolves to a half-open [start, end) window. ``day`` starts at local
midnight, ``week``/``month``/``year`` are rolling 7/30/365 day windows ending
now, and ``all`` is unbounded.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Tuple

from django.utils import timezone

from .exceptions import InvalidInput


class Period(str, Enum):
    DAY = 'day'
    WEEK = 'week'
    MONTH = 'month'
    YEAR = 'year'
    ALL = 'all'


ROLLING_DAYS = {
    Period.WEEK: 7,
    Period.MONTH: 30,
    Period.YEAR: 365,
}


@dataclass(frozen=True)
class DateRange:
    start: Optional[datetime]
    end: Optional[datetime]
    empty: bool = False

    def filter_kwargs(self, field: str) -> dict:
        """Queryset filter arguments selecting rows whose ``field`` falls in the range."""
        kwargs = {}
        if self.start is not None:
            kwargs[f'{field}__gte'] = self.start
        if self.end is not None:
            kwargs[f'{field}__lt'] = self.end
        return kwargs


EMPTY_RANGE = DateRange(start=None, end=None, empty=True)


def parse_period(value, default: Period = Period.MONTH) -> Period:
    if value is None or value == '':
        return default
    if isinstance(value, Period):
        return value
    try:
        return Period(str(value).strip().lower())
    except ValueError:
        choices = ', '.join(p.value for p in Period)
        raise InvalidInput(f"Unknown period '{value}'. Expected one of: {choices}")


def resolve_range(period: Period, now: Optional[datetime] = None) -> DateRange:
    now = now or timezone.now()
    period = parse_period(period)

    if period == Period.ALL:
        return DateRange(start=None, end=None)
    if period == Period.DAY:
        local_now = timezone.localtime(now)
        midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        return DateRange(start=midnight, end=now)
    return DateRange(start=now - timedelta(days=ROLLING_DAYS[period]), end=now)


def comparison_ranges(period: Period, now: Optional[datetime] = None) -> Tuple[DateRange, DateRange]:
    """
    Current window and the window of equal length immediately before it.

    ``all`` has nothing before it, so its previous window is empty.
    """
    current = resolve_range(period, now)
    if current.start is None:
        return current, EMPTY_RANGE

    length = current.end - current.start
    previous = DateRange(start=current.start - length, end=current.start)
    return current, previous
