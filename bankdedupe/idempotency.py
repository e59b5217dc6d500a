"""Idempotent import runs.

An import run is identified by a hash of what it will write: the account,
the file name and the canonical form of every row to import. Committing
the same selection twice (a retried request, a double click) hits the
UNIQUE input_hash and writes nothing the second time.

Transaction ids are derived from that hash too, so a retried run produces
the same ids regardless of row order.
"""

from __future__ import annotations

import hashlib
import json
from collections import Counter
from collections.abc import Sequence

from bankdedupe.dedupe.normalize import (
    normalize_amount_minor_units,
    normalize_bank_reference,
    normalize_date_only,
    normalize_description,
)
from bankdedupe.parsers.base import IncomingRow


def canonical_row(row: IncomingRow) -> str:
    """Stable JSON for a row. Absent optional fields are omitted, not null."""
    data: dict = {
        "account_id": row.account_id,
        "date": normalize_date_only(row.date) or row.date,
        "amount": normalize_amount_minor_units(row.amount),
        "description": normalize_description(row.description),
    }
    optional = {
        "operation_date": normalize_date_only(row.operation_date),
        "value_date": normalize_date_only(row.value_date),
        "bank_reference": normalize_bank_reference(row.bank_reference),
        "balance_after": normalize_amount_minor_units(row.balance_after),
    }
    data.update({k: v for k, v in optional.items() if v is not None})
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_import_hash(
    account_id: str, file_name: str | None, rows: Sequence[IncomingRow]
) -> str:
    """SHA256 over account, file name and rows; independent of row order."""
    payload = {
        "account_id": account_id,
        "file_name": file_name or "",
        "total_rows": len(rows),
        "rows": sorted(canonical_row(r) for r in rows),
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode()).hexdigest()


def deterministic_transaction_ids(rows: Sequence[IncomingRow], input_hash: str) -> list[str]:
    """One id per row, aligned with rows.

    Identical rows get distinct ids through an occurrence counter; ids do not
    depend on the order rows were given in.
    """
    seen: Counter[str] = Counter()
    ids = []
    for row in rows:
        canonical = canonical_row(row)
        occurrence = seen[canonical]
        seen[canonical] += 1
        digest = hashlib.sha256(f"{input_hash}|{canonical}|{occurrence}".encode()).hexdigest()
        ids.append(digest[:32])
    return ids
