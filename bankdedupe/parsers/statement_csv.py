"""Bank statement CSV parser.

Spanish/Catalan bank exports put a few lines of account metadata above the
real header row, name their columns inconsistently ("F. Operación",
"Data valor", "Concepte", "Importe", "Debe"/"Haber") and use ';' as the
delimiter. The header row is located by keyword scoring over the first
rows, then columns are mapped through synonym lists.

Structural problems (no header, missing required columns) raise
StatementParseError, and so does any data row without a readable date,
description or amount: a statement is imported whole or not at all.
"""

from __future__ import annotations

import csv
import logging
import unicodedata
from dataclasses import dataclass
from pathlib import Path

from .base import BaseParser, IncomingRow, parse_date_to_iso, parse_signed_number

logger = logging.getLogger(__name__)

DEFAULT_SCAN_LIMIT = 20

# Column synonyms, matched in order against accent-stripped, lower-cased
# header cells. First synonym that hits any cell wins, an exact cell match
# before a substring hit.
DEFAULT_HEADER_SYNONYMS: dict[str, list[str]] = {
    "operation_date": [
        "f operacion", "fecha operacion", "data operacio", "data operativa",
        "d operativa", "operation date", "booking date",
    ],
    "value_date": ["f valor", "fecha valor", "data valor", "d valor", "value date"],
    "date": ["fecha", "data", "date"],
    "description": ["concepto", "concepte", "descripcion", "descripcio", "description", "detalle", "detall"],
    "amount": ["importe", "import", "amount", "cantidad", "quantitat"],
    "debit": ["debe", "deure", "cargo", "debit"],
    "credit": ["haber", "haver", "abono", "credit"],
    "balance": ["saldo", "balance"],
    "reference": ["referencia", "reference", "ref"],
    "category": ["categoria", "category"],
    "subcategory": ["subcategoria", "subcategory"],
    "comment": [
        "comentario", "comentari", "observaciones", "observacions", "comment", "notas", "notes",
    ],
}

# Columns joined into the description, in this order.
DESCRIPTION_PARTS = ("description", "category", "subcategory", "comment")
DESCRIPTION_SEPARATOR = " · "

# Header-row scoring groups: core groups weigh 2, optional groups 1.
_CORE_GROUPS = {
    "date": ("operation_date", "value_date", "date"),
    "description": ("description",),
    "amount": ("amount", "debit", "credit"),
}
_OPTIONAL_GROUPS = {
    "balance": ("balance",),
    "reference": ("reference",),
}
MIN_CORE_GROUPS = 2
MIN_HEADER_SCORE = 4

# A data row with none of these filled is a spacer or footer line.
_CONTENT_COLUMNS = (
    "operation_date", "value_date", "date", "description", "amount", "debit", "credit",
)


class StatementParseError(Exception):
    """Raised when a statement file cannot be interpreted at all."""

    def __init__(self, code: str, details: dict | None = None):
        self.code = code
        self.details = details or {}
        super().__init__(f"{code}: {self.details}" if self.details else code)


def normalize_header_cell(value) -> str:
    """Accent-strip, lower-case, map ._- to spaces and collapse whitespace."""
    if value is None:
        return ""
    text = unicodedata.normalize("NFD", str(value))
    text = "".join(c for c in text if not unicodedata.combining(c))
    text = text.strip().lower()
    for ch in "._-":
        text = text.replace(ch, " ")
    return " ".join(text.split())


def _compact(text: str) -> str:
    return "".join(c for c in text if c.isalnum())


def _keyword_hit(cell: str, keyword: str) -> bool:
    if not cell or not keyword:
        return False
    if keyword in cell:
        return True
    return _compact(keyword) in _compact(cell)


@dataclass
class HeaderDetection:
    index: int | None
    score: int = 0
    core_matched: int = 0


class StatementCsvParser(BaseParser):
    """Parse a bank statement CSV into IncomingRow objects for one account.

    Args:
        account_id: Bank account the whole file belongs to.
        header_synonyms: Extra synonyms per column, merged in front of the
            defaults. Configure in config/dedupe.yaml.
        scan_limit: How many leading rows to search for the header.
    """

    def __init__(
        self,
        account_id: str,
        header_synonyms: dict[str, list[str]] | None = None,
        scan_limit: int = DEFAULT_SCAN_LIMIT,
    ):
        self.account_id = account_id
        self.scan_limit = scan_limit
        self.synonyms = {
            key: [normalize_header_cell(s) for s in (header_synonyms or {}).get(key, []) + defaults]
            for key, defaults in DEFAULT_HEADER_SYNONYMS.items()
        }

    def detect(self, file_path: Path) -> bool:
        """A statement CSV has a recognizable header within the scan window."""
        try:
            rows = self._read_rows(file_path)
        except (OSError, UnicodeDecodeError, csv.Error):
            return False
        return self.find_header_row(rows).index is not None

    def parse(self, file_path: Path) -> list[IncomingRow]:
        rows = self._read_rows(file_path)
        return self.parse_rows(rows)

    def parse_rows(self, rows: list[list[str]]) -> list[IncomingRow]:
        """Parse already-split rows (header detection included).

        Raises:
            StatementParseError: HEADER_NOT_FOUND, MISSING_REQUIRED_COLUMNS,
                OPERATION_DATE_REQUIRED or INVALID_ROW (details carry the
                1-based ``row_index``), NO_VALID_TRANSACTIONS.
        """
        detection = self.find_header_row(rows)
        if detection.index is None:
            raise StatementParseError("HEADER_NOT_FOUND")

        header = [cell.strip() for cell in rows[detection.index]]
        columns = self.map_columns(header)
        missing = _missing_columns(columns)
        if missing:
            raise StatementParseError("MISSING_REQUIRED_COLUMNS", {"missing": missing})

        parsed: list[IncomingRow] = []
        for row_index, row in enumerate(rows[detection.index + 1:], start=detection.index + 2):
            incoming = self._parse_row(header, columns, row, row_index)
            if incoming is not None:
                parsed.append(incoming)

        if not parsed:
            raise StatementParseError("NO_VALID_TRANSACTIONS")
        return parsed

    # ── Header handling ────────────────────────────────────

    def find_header_row(self, rows: list[list[str]]) -> HeaderDetection:
        """Return the best-scoring header candidate within the scan window."""
        best = HeaderDetection(index=None)
        for i, row in enumerate(rows[: self.scan_limit]):
            cells = [c for c in (normalize_header_cell(v) for v in row) if c]
            score = 0
            core = 0
            for groups, weight in ((_CORE_GROUPS, 2), (_OPTIONAL_GROUPS, 1)):
                for keys in groups.values():
                    hits = {
                        kw for key in keys for kw in self.synonyms[key]
                        if any(_keyword_hit(cell, kw) for cell in cells)
                    }
                    if not hits:
                        continue
                    score += weight + (1 if len(hits) > 1 else 0)
                    if weight == 2:
                        core += 1
            if core < MIN_CORE_GROUPS or score < MIN_HEADER_SCORE:
                continue
            if best.index is None or (score, core) > (best.score, best.core_matched):
                best = HeaderDetection(index=i, score=score, core_matched=core)
        return best

    def map_columns(self, header: list[str]) -> dict[str, int]:
        """Map each known column kind to its header index (-1 if absent).

        An exact header match beats a substring hit, so "Categoria" and
        "Subcategoria" land on their own columns.
        """
        normalized = [normalize_header_cell(h) for h in header]
        columns: dict[str, int] = {}
        for key, names in self.synonyms.items():
            columns[key] = -1
            for name in names:
                idx = next((i for i, cell in enumerate(normalized) if cell == name), -1)
                if idx == -1:
                    idx = next(
                        (i for i, cell in enumerate(normalized) if _keyword_hit(cell, name)),
                        -1,
                    )
                if idx != -1:
                    columns[key] = idx
                    break
        return columns

    # ── Row handling ───────────────────────────────────────

    def _parse_row(
        self, header: list[str], columns: dict[str, int], row: list[str], row_index: int
    ) -> IncomingRow | None:
        """Parse one data row; None for rows with nothing in the mapped columns."""
        def cell(key: str) -> str:
            idx = columns[key]
            if idx < 0 or idx >= len(row):
                return ""
            return row[idx].strip()

        # Footer and spacer lines (totals in an unmapped column, blanks).
        if not any(cell(key) for key in _CONTENT_COLUMNS):
            return None

        operation = parse_date_to_iso(cell("operation_date"))
        value = parse_date_to_iso(cell("value_date"))
        generic = parse_date_to_iso(cell("date"))
        effective_date = value or operation or generic
        operation_date = operation or value or generic
        if effective_date is None:
            logger.warning("Rejecting statement: line %d has no parseable date", row_index)
            raise StatementParseError("OPERATION_DATE_REQUIRED", {"row_index": row_index})

        description = self._build_description(columns, cell)
        if not description:
            logger.warning("Rejecting statement: line %d has no description", row_index)
            raise StatementParseError(
                "INVALID_ROW", {"row_index": row_index, "reason": "missing_description"},
            )

        amount = parse_signed_number(cell("amount"))
        if amount is None:
            debit = parse_signed_number(cell("debit"))
            credit = parse_signed_number(cell("credit"))
            if debit is None and credit is None:
                logger.warning("Rejecting statement: line %d has no amount", row_index)
                raise StatementParseError(
                    "INVALID_ROW", {"row_index": row_index, "reason": "missing_amount"},
                )
            amount = abs(credit or 0.0) - abs(debit or 0.0)

        raw_payload = {name: (row[i] if i < len(row) else "") for i, name in enumerate(header) if name}

        return IncomingRow(
            date=effective_date,
            amount=amount,
            description=description,
            account_id=self.account_id,
            operation_date=operation_date,
            value_date=value,
            bank_reference=cell("reference") or None,
            balance_after=parse_signed_number(cell("balance")),
            raw_payload=raw_payload,
        )

    @staticmethod
    def _build_description(columns: dict[str, int], cell) -> str:
        parts = []
        seen = set()
        for key in DESCRIPTION_PARTS:
            idx = columns[key]
            if idx < 0 or idx in seen:
                continue
            seen.add(idx)
            text = cell(key)
            if text:
                parts.append(text)
        return DESCRIPTION_SEPARATOR.join(parts)

    @staticmethod
    def _read_rows(file_path: Path) -> list[list[str]]:
        with open(file_path, "r", newline="", encoding="utf-8-sig", errors="replace") as f:
            sample = f.read(8192)
            f.seek(0)
            return [row for row in csv.reader(f, delimiter=detect_delimiter(sample))]


def detect_delimiter(sample: str) -> str:
    """';' if present (amounts use ',' as decimal), else tab, else ','."""
    if ";" in sample:
        return ";"
    if "\t" in sample:
        return "\t"
    return ","


def _missing_columns(columns: dict[str, int]) -> list[str]:
    missing = []
    if all(columns[k] == -1 for k in ("operation_date", "value_date", "date")):
        missing.append("date")
    if all(columns[k] == -1 for k in DESCRIPTION_PARTS):
        missing.append("description")
    if all(columns[k] == -1 for k in ("amount", "debit", "credit")):
        missing.append("amount")
    return missing
