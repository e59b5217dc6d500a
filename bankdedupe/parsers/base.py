"""Base parser: shared interface, data structures, and utility functions."""

from __future__ import annotations

import datetime as dt
import hashlib
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

MIN_YEAR = 1900
MAX_YEAR = 2100

_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[T\s].*)?$")
_EU_DATE_RE = re.compile(r"^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{2,4})$")


@dataclass(frozen=True)
class IncomingRow:
    """One parsed statement line, before dedup. Immutable within an import run."""
    date: str                          # YYYY-MM-DD booking date
    amount: float                      # signed: negative=outflow, positive=inflow
    description: str
    account_id: str
    operation_date: str | None = None  # date the bank reports as "operation"
    value_date: str | None = None      # economically effective date
    bank_reference: str | None = None  # bank-assigned line id, when exported
    balance_after: float | None = None
    raw_payload: dict = field(default_factory=dict, compare=False)


class BaseParser(ABC):
    """Abstract base for all statement parsers."""

    @abstractmethod
    def parse(self, file_path: Path) -> list[IncomingRow]:
        """Parse a statement file and return normalized rows.

        Implementations reject the whole file when a data row cannot be
        read; rows are never dropped silently.
        """

    @abstractmethod
    def detect(self, file_path: Path) -> bool:
        """Return True if this parser can handle the given file."""


def compute_file_hash(file_path: Path) -> str:
    """SHA256 of entire file contents."""
    h = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def _format_date(year: int, month: int, day: int) -> str | None:
    if year < MIN_YEAR or year > MAX_YEAR:
        return None
    try:
        return dt.date(year, month, day).isoformat()
    except ValueError:
        return None


def parse_date_to_iso(value) -> str | None:
    """Parse a statement date cell into YYYY-MM-DD.

    Handles formats:
        2026-01-15
        2026-01-15T10:30:00.000Z
        15/01/2026, 15-01-2026, 15.01.2026
        15/01/26

    Day-first is assumed for slash/dash/dot dates (European bank exports).
    Returns None if the value is empty or not a real calendar date.
    """
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return _format_date(value.year, value.month, value.day)
    if isinstance(value, dt.date):
        return _format_date(value.year, value.month, value.day)

    raw = str(value).strip()
    if not raw:
        return None

    m = _ISO_DATE_RE.match(raw)
    if m:
        return _format_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    m = _EU_DATE_RE.match(raw)
    if m:
        day, month, year = int(m.group(1)), int(m.group(2)), int(m.group(3))
        if year < 100:
            year += 2000
        return _format_date(year, month, day)

    return None


def _normalize_single_separator(raw: str, sep: str) -> str:
    """One kind of separator: decimal if followed by 1-2 digits, else thousands."""
    last = raw.rfind(sep)
    fraction_len = len(raw) - last - 1
    if 0 < fraction_len <= 2:
        return raw[:last].replace(sep, "") + "." + raw[last + 1:].replace(sep, "")
    return raw.replace(sep, "")


def parse_signed_number(value) -> float | None:
    """Parse an amount cell into a signed float.

    Accepts "1.234,56", "1,234.56", "-25,00", "(25.00)", "€ 1 000,50".
    Returns None when no number can be read.
    """
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value) if math.isfinite(value) else None

    raw = str(value).strip()
    if not raw:
        return None

    force_negative = False
    if raw.startswith("(") and raw.endswith(")"):
        force_negative = True
        raw = raw[1:-1]

    raw = re.sub(r"\s+", "", raw)
    raw = re.sub(r"[^\d,.\-+]", "", raw)
    if not re.search(r"\d", raw):
        return None

    sign = 1
    if raw.startswith("+"):
        raw = raw[1:]
    elif raw.startswith("-"):
        sign = -1
        raw = raw[1:]
    raw = raw.replace("+", "").replace("-", "")
    if not raw:
        return None

    has_comma = "," in raw
    has_dot = "." in raw
    if has_comma and has_dot:
        decimal_sep = "," if raw.rfind(",") > raw.rfind(".") else "."
        thousand_sep = "." if decimal_sep == "," else ","
        normalized = raw.replace(thousand_sep, "").replace(decimal_sep, ".")
    elif has_comma:
        normalized = _normalize_single_separator(raw, ",")
    elif has_dot:
        normalized = _normalize_single_separator(raw, ".")
    else:
        normalized = raw

    try:
        parsed = float(normalized)
    except ValueError:
        return None
    if not math.isfinite(parsed):
        return None
    return -abs(parsed) if force_negative else parsed * sign
