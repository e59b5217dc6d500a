"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly.
All primary keys are TEXT (UUID strings, or deterministic hashes for
transactions written by an import run).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Import:
    account_id: str
    input_hash: str
    id: str = field(default_factory=_new_id)
    file_name: str | None = None
    file_hash: str | None = None
    record_count: int | None = None
    duplicate_skipped_count: int = 0
    candidate_count: int = 0
    candidate_user_imported_count: int = 0
    candidate_user_skipped_count: int = 0
    status: str = "pending"
    error_message: str | None = None
    created_at: str = field(default_factory=_now)
    completed_at: str | None = None
    lock_expires_at: str | None = None  # only meaningful while pending


@dataclass
class Transaction:
    """A persisted bank transaction; the "existing" side of dedup."""
    account_id: str
    date: str
    amount: float
    description: str
    id: str = field(default_factory=_new_id)
    operation_date: str | None = None
    value_date: str | None = None
    normalized_description: str | None = None
    bank_reference: str | None = None
    balance_after: float | None = None
    raw_payload: dict = field(default_factory=dict)
    import_id: str | None = None
    dedup_key: str | None = None
    source: str = "bank"
    status: str = "imported"
    created_at: str = field(default_factory=_now)
