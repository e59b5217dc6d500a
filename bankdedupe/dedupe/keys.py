"""Dedupe fingerprints for statement rows and stored transactions.

Key tiers (first applicable wins):
1. Bank reference   "ref:<REFERENCE>"
2. Composite        "<YYYY-MM-DD>|<cents>|<DESCRIPTION>"

The date and cents fields never contain a pipe, so a key splits back
into its three parts unambiguously.

Both IncomingRow and the stored Transaction expose the same attribute
names, so every function here accepts either.
"""

from __future__ import annotations

from .normalize import (
    normalize_amount_minor_units,
    normalize_bank_reference,
    normalize_date_only,
    normalize_description,
)

REF_PREFIX = "ref:"


def _composite(date_value, row) -> str | None:
    date_key = normalize_date_only(date_value)
    cents = normalize_amount_minor_units(row.amount)
    if date_key is None or cents is None:
        return None
    return f"{date_key}|{cents}|{normalize_description(row.description)}"


def build_composite_key(row) -> str | None:
    """date|cents|DESCRIPTION using value_date when present, else date.

    Returns None when the date or amount is unreadable, so malformed rows
    never share a key with anything.
    """
    return _composite(getattr(row, "value_date", None) or row.date, row)


def build_dedupe_key(row) -> str | None:
    ref = normalize_bank_reference(getattr(row, "bank_reference", None))
    if ref is not None:
        return REF_PREFIX + ref
    return build_composite_key(row)


def is_ref_key(key: str | None) -> bool:
    return key is not None and key.startswith(REF_PREFIX)


def composite_key_variants(row) -> set[str]:
    """Composite key under every date the row carries.

    A statement re-export can move a line between booking and value date;
    matching on any shared variant keeps such rows from passing as new.
    """
    keys = set()
    for date_value in (
        getattr(row, "value_date", None),
        row.date,
        getattr(row, "operation_date", None),
    ):
        if date_value:
            key = _composite(date_value, row)
            if key is not None:
                keys.add(key)
    return keys
