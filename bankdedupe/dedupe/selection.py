"""Build the final list of rows to persist from classified rows and user opt-ins.

NEW rows are always imported. DUPLICATE_SAFE rows never are, whatever the
selection says. DUPLICATE_CANDIDATE rows are imported only when their index
*within the candidate group* was selected; stale or out-of-range indexes
from a re-rendered review screen are ignored.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from .models import ClassifiedRow, DedupeStatus, ImportSelection, ImportStats


def partition(classified_rows: Iterable[ClassifiedRow]) -> dict[DedupeStatus, list[ClassifiedRow]]:
    """Group rows by status, keeping input order inside each group."""
    groups: dict[DedupeStatus, list[ClassifiedRow]] = {status: [] for status in DedupeStatus}
    for c in classified_rows:
        groups[c.status].append(c)
    return groups


def candidate_rows(classified_rows: Iterable[ClassifiedRow]) -> list[ClassifiedRow]:
    """Candidates in order; list position is the index callers select by."""
    return partition(classified_rows)[DedupeStatus.DUPLICATE_CANDIDATE]


def build_selection(
    classified_rows: Sequence[ClassifiedRow],
    selected_candidate_indexes: Iterable[int] = (),
) -> ImportSelection:
    groups = partition(classified_rows)
    candidates = groups[DedupeStatus.DUPLICATE_CANDIDATE]

    selected = {
        i for i in selected_candidate_indexes
        if isinstance(i, int) and not isinstance(i, bool) and 0 <= i < len(candidates)
    }

    rows = [c.row for c in groups[DedupeStatus.NEW]]
    rows.extend(c.row for i, c in enumerate(candidates) if i in selected)

    return ImportSelection(
        rows_to_import=rows,
        stats=ImportStats(
            duplicate_skipped_count=len(groups[DedupeStatus.DUPLICATE_SAFE]),
            candidate_count=len(candidates),
            candidate_user_imported_count=len(selected),
            candidate_user_skipped_count=len(candidates) - len(selected),
        ),
    )
