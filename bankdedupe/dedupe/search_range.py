"""Date window to fetch existing transactions for before classification.

A row's booking date and operation/value date can disagree (e.g. a
transfer booked 2025-12-30 with operation date 2026-01-02). The stored
counterpart may have been saved under either, so the window spans every
date field of every row. Covering only one field lets a duplicate fall
outside the fetch and come back as NEW.
"""

from __future__ import annotations

from collections.abc import Iterable

from .models import SearchRange
from .normalize import normalize_date_only


def row_dates(row) -> set[str]:
    """All normalized dates a row carries (booking, operation, value)."""
    dates = set()
    for value in (row.date, getattr(row, "operation_date", None), getattr(row, "value_date", None)):
        d = normalize_date_only(value)
        if d is not None:
            dates.add(d)
    return dates


def compute_search_range(rows: Iterable) -> SearchRange | None:
    """Return the inclusive [min, max] date window, or None if no row has a date.

    YYYY-MM-DD strings sort lexicographically in date order.
    """
    dates: set[str] = set()
    for row in rows:
        dates |= row_dates(row)
    if not dates:
        return None
    return SearchRange(date_from=min(dates), date_to=max(dates))


def covers(search_range: SearchRange | None, rows: Iterable) -> bool:
    """True if every date of every row lies inside the range."""
    rows = list(rows)
    all_dates = set().union(*(row_dates(r) for r in rows)) if rows else set()
    if search_range is None:
        return not all_dates
    return all(search_range.date_from <= d <= search_range.date_to for d in all_dates)
