"""
Date utilities for billing months and proration.

Month labels are `YYYY-MM` strings, the form used on payments and
subscription charges.
"""

import calendar
import re
from datetime import date
from typing import List, Tuple

from .exceptions import ValidationError


_MONTH_RE = re.compile(r'^(\d{4})-(\d{2})$')


def get_first_day_of_month(year: int, month: int) -> date:
    """
    Get the first day of a given month.

    Args:
        year: Target year
        month: Target month (1-12)

    Returns:
        date: First day of the specified month
    """
    return date(year, month, 1)


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def remaining_days_in_month(day: date) -> int:
    """Days from `day` to the end of its month, both inclusive."""
    return days_in_month(day.year, day.month) - day.day + 1


def parse_month(label: str) -> Tuple[int, int]:
    """
    Parse a `YYYY-MM` label.

    Raises:
        ValidationError: If the label is malformed
    """
    match = _MONTH_RE.match(label or '')
    if not match:
        raise ValidationError(f"Month must be formatted YYYY-MM, got {label!r}")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValidationError(f"Month out of range: {label!r}")
    return year, month


def same_month(a: date, b: date) -> bool:
    return a.year == b.year and a.month == b.month


def month_range(start: date, end: date) -> List[str]:
    """
    Generate `YYYY-MM` labels from start's month to end's month (inclusive).

    Returns an empty list when end is before start's month.
    """
    months = []
    year, month = start.year, start.month

    while (year, month) <= (end.year, end.month):
        months.append(f"{year:04d}-{month:02d}")
        month += 1
        if month > 12:
            year, month = year + 1, 1

    return months
