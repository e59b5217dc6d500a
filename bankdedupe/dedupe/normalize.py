"""Comparison-safe forms of statement fields.

All functions are pure and total: bad input yields "" or None, never an
exception. None means "absent" and must never compare equal to another
absent value in a matching tier.
"""

from __future__ import annotations

import datetime as dt
import math
import re

_DATE_ONLY_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")


def normalize_description(text) -> str:
    """Trim, collapse all Unicode whitespace (incl. NBSP) to one space, uppercase."""
    if text is None:
        return ""
    return " ".join(str(text).split()).upper()


def normalize_date_only(value) -> str | None:
    """Return YYYY-MM-DD from a date-only string or timestamp, else None.

    No timezone conversion: "2025-12-30T23:30:00-05:00" is 2025-12-30.
    """
    if isinstance(value, dt.datetime):
        return value.date().isoformat()
    if isinstance(value, dt.date):
        return value.isoformat()
    if not isinstance(value, str):
        return None

    text = value.strip()
    for marker in ("T", " "):
        text = text.split(marker, 1)[0]
    m = _DATE_ONLY_RE.match(text)
    if not m:
        return None
    try:
        return dt.date(int(m.group(1)), int(m.group(2)), int(m.group(3))).isoformat()
    except ValueError:
        return None


def normalize_amount_minor_units(amount) -> int | None:
    """Amount in cents, rounded, so equality never depends on float drift."""
    if amount is None or isinstance(amount, bool):
        return None
    try:
        value = float(amount)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value):
        return None
    return int(round(value * 100))


def normalize_bank_reference(ref) -> str | None:
    if ref is None:
        return None
    text = str(ref).strip().upper()
    return text or None
