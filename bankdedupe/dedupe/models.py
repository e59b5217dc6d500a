"""Result types shared by the classifier, selection builder and review output."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from bankdedupe.database.models import Transaction
from bankdedupe.parsers.base import IncomingRow


class DedupeStatus(str, Enum):
    NEW = "NEW"
    DUPLICATE_SAFE = "DUPLICATE_SAFE"  # never imported
    DUPLICATE_CANDIDATE = "DUPLICATE_CANDIDATE"  # imported only on opt-in


class DedupeReason(str, Enum):
    INTRA_FILE = "INTRA_FILE"
    BANK_REF = "BANK_REF"
    BALANCE_AMOUNT_DATE = "BALANCE_AMOUNT_DATE"
    BASE_KEY = "BASE_KEY"
    ENRICHED_KEY = "ENRICHED_KEY"


@dataclass(frozen=True)
class ClassifiedRow:
    """Classification outcome for one incoming row."""
    row: IncomingRow
    status: DedupeStatus
    reason: DedupeReason | None = None
    matched_existing: tuple[Transaction, ...] = ()

    @property
    def matched_existing_ids(self) -> tuple[str, ...]:
        return tuple(t.id for t in self.matched_existing)


@dataclass(frozen=True)
class SearchRange:
    """Inclusive date-only window (YYYY-MM-DD) to fetch existing transactions for."""
    date_from: str
    date_to: str


@dataclass
class ImportStats:
    duplicate_skipped_count: int = 0
    candidate_count: int = 0
    candidate_user_imported_count: int = 0
    candidate_user_skipped_count: int = 0


@dataclass
class ImportSelection:
    """Rows to persist after the opt-in step, plus counts for the import record."""
    rows_to_import: list[IncomingRow] = field(default_factory=list)
    stats: ImportStats = field(default_factory=ImportStats)
