"""Month-sized fetch windows for historical syncs."""
from __future__ import annotations
import calendar
from dataclasses import dataclass
from datetime import date
from typing import Optional

from .errors import ConfigurationError


@dataclass(frozen=True)
class Window:
    """A bounded date range fetched and checkpointed as one unit."""

    bucket: str  # YYYY-MM
    start: date
    end: date

    def __str__(self) -> str:
        return f"{self.bucket} ({self.start} to {self.end})"


def month_windows(from_date: date, to_date: Optional[date] = None) -> list[Window]:
    """
    Split ``from_date``..``to_date`` into calendar-month windows.

    The first and last windows are clipped to the requested range.
    """
    to_date = to_date or date.today()
    if from_date > to_date:
        raise ConfigurationError(f"Window start {from_date} is after window end {to_date}")

    windows = []
    year, month = from_date.year, from_date.month
    while (year, month) <= (to_date.year, to_date.month):
        last_day = calendar.monthrange(year, month)[1]
        start = max(date(year, month, 1), from_date)
        end = min(date(year, month, last_day), to_date)
        windows.append(Window(bucket=f"{year:04d}-{month:02d}", start=start, end=end))
        if month == 12:
            year, month = year + 1, 1
        else:
            month += 1
    return windows
