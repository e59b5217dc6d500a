"""Import pipeline: parse → range → fetch → classify → select → persist.

An import is two steps so a human can decide on candidates in between:

    preview = pipeline.preview(path, "main-checking")
    # show preview.classified / preview.candidates, collect opt-ins
    result = pipeline.commit(preview, selected_candidate_indexes={1})

Existing transactions are fetched once per preview, for the window computed
from every date field of the parsed rows. Committing is idempotent: the same
selection committed twice writes nothing the second time.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from bankdedupe.database.models import Import, Transaction
from bankdedupe.database.repository import DuplicateImportError
from bankdedupe.dedupe.classifier import classify, count_by_status
from bankdedupe.dedupe.keys import build_dedupe_key
from bankdedupe.dedupe.models import ClassifiedRow, DedupeStatus, SearchRange
from bankdedupe.dedupe.normalize import normalize_date_only, normalize_description
from bankdedupe.dedupe.search_range import compute_search_range
from bankdedupe.dedupe.selection import build_selection, candidate_rows
from bankdedupe.idempotency import compute_import_hash, deterministic_transaction_ids
from bankdedupe.parsers.base import IncomingRow, compute_file_hash
from bankdedupe.parsers.statement_csv import StatementCsvParser

if TYPE_CHECKING:
    from bankdedupe.config import Config
    from bankdedupe.database.repository import Repository

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".csv", ".txt"}

# A pending import older than this is treated as abandoned and retried.
IMPORT_LOCK_SECONDS = 10 * 60


@dataclass
class ImportPreview:
    """Classified rows of one statement, ready for review."""
    account_id: str
    classified: list[ClassifiedRow]
    search_range: SearchRange | None = None
    file_name: str | None = None
    file_hash: str | None = None

    @property
    def candidates(self) -> list[ClassifiedRow]:
        return candidate_rows(self.classified)

    def count(self, status: DedupeStatus) -> int:
        return count_by_status(self.classified)[status]


@dataclass
class ImportResult:
    """Result of committing one preview."""
    file_name: str | None
    status: str  # "success", "duplicate", "locked", "error"
    import_id: str | None = None
    imported_count: int = 0
    new_count: int = 0
    duplicate_skipped_count: int = 0
    candidate_count: int = 0
    candidate_imported_count: int = 0
    transactions: list[Transaction] = field(default_factory=list)
    error_message: str | None = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_transaction(row: IncomingRow, txn_id: str, import_id: str) -> Transaction:
    """Stored form of an incoming row; dates kept date-only."""
    return Transaction(
        id=txn_id,
        account_id=row.account_id,
        date=normalize_date_only(row.date) or row.date,
        operation_date=normalize_date_only(row.operation_date),
        value_date=normalize_date_only(row.value_date),
        amount=row.amount,
        description=row.description,
        normalized_description=normalize_description(row.description),
        bank_reference=row.bank_reference,
        balance_after=row.balance_after,
        raw_payload=dict(row.raw_payload),
        import_id=import_id,
        dedup_key=build_dedupe_key(row),
    )


class ImportPipeline:
    """Orchestrate statement imports for configured accounts.

    Args:
        repo: Database repository (the store of existing transactions).
        config: Application config (accounts, dedupe options).
        lock_seconds: How long a pending import blocks other commits of the
            same selection.
    """

    def __init__(self, repo: Repository, config: Config, lock_seconds: int = IMPORT_LOCK_SECONDS):
        self.repo = repo
        self.config = config
        self.lock_seconds = lock_seconds

    def _require_account(self, account_id: str) -> None:
        if self.config.account_by_id(account_id) is None:
            raise ValueError(f"Unknown account: {account_id} (add it to accounts.yaml)")

    def make_parser(self, account_id: str) -> StatementCsvParser:
        return StatementCsvParser(
            account_id,
            header_synonyms=self.config.header_synonyms,
            scan_limit=self.config.header_scan_limit,
        )

    # ── Step 1: preview ──────────────────────────────────

    def preview(self, filepath: Path, account_id: str) -> ImportPreview:
        """Parse a statement file and classify it against the store.

        Raises:
            ValueError: Unknown account or unsupported file extension.
            StatementParseError: No recognizable header, or a data row
                without a readable date, description or amount.
        """
        self._require_account(account_id)
        if filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
            raise ValueError(f"Unsupported file extension: {filepath.suffix}")

        parser = self.make_parser(account_id)
        rows = parser.parse(filepath)
        return self.preview_rows(
            rows, account_id,
            file_name=filepath.name,
            file_hash=compute_file_hash(filepath),
        )

    def preview_rows(
        self,
        rows: Sequence[IncomingRow],
        account_id: str,
        file_name: str | None = None,
        file_hash: str | None = None,
    ) -> ImportPreview:
        """Classify already-parsed rows against the store."""
        self._require_account(account_id)

        search_range = compute_search_range(rows)
        existing = (
            self.repo.get_transactions_in_range(account_id, search_range)
            if search_range is not None else []
        )
        logger.debug(
            "Fetched %d existing transaction(s) for %s in %s",
            len(existing), account_id, search_range,
        )

        classified = classify(
            rows, existing, account_id,
            extra_match_fields=self.config.extra_match_fields_for(account_id),
            strict_intra_file=self.config.strict_intra_file_for(account_id),
        )
        preview = ImportPreview(
            account_id=account_id,
            classified=classified,
            search_range=search_range,
            file_name=file_name,
            file_hash=file_hash,
        )
        logger.info(
            "%s: %d new, %d duplicates, %d candidates",
            file_name or account_id,
            preview.count(DedupeStatus.NEW),
            preview.count(DedupeStatus.DUPLICATE_SAFE),
            preview.count(DedupeStatus.DUPLICATE_CANDIDATE),
        )
        return preview

    # ── Step 2: commit ───────────────────────────────────

    def commit(
        self, preview: ImportPreview, selected_candidate_indexes: Iterable[int] = ()
    ) -> ImportResult:
        """Persist NEW rows plus the opted-in candidates of a preview."""
        selection = build_selection(preview.classified, selected_candidate_indexes)
        stats = selection.stats
        rows = selection.rows_to_import
        result = ImportResult(
            file_name=preview.file_name,
            status="success",
            new_count=preview.count(DedupeStatus.NEW),
            duplicate_skipped_count=stats.duplicate_skipped_count,
            candidate_count=stats.candidate_count,
            candidate_imported_count=stats.candidate_user_imported_count,
        )
        if not rows:
            logger.info("Nothing to import from %s", preview.file_name or preview.account_id)
            return result

        input_hash = compute_import_hash(preview.account_id, preview.file_name, rows)
        now = datetime.now(timezone.utc)
        lock_expires_at = (now + timedelta(seconds=self.lock_seconds)).isoformat()
        existing = self.repo.get_import_by_input_hash(input_hash)
        if existing is not None and existing.status == "completed":
            logger.info("Import already committed (%s), skipping", existing.id)
            result.status = "duplicate"
            result.import_id = existing.id
            return result

        if existing is not None:
            # Failed run, or a pending one abandoned past its lock.
            result.import_id = existing.id
            if not self.repo.claim_import(existing.id, now.isoformat(), lock_expires_at):
                logger.warning(
                    "Import %s is in progress (locked until %s)",
                    existing.id, existing.lock_expires_at,
                )
                result.status = "locked"
                return result
            logger.info("Retrying import %s (was %s)", existing.id, existing.status)
            imp = existing
        else:
            imp = Import(
                account_id=preview.account_id,
                input_hash=input_hash,
                file_name=preview.file_name,
                file_hash=preview.file_hash,
                duplicate_skipped_count=stats.duplicate_skipped_count,
                candidate_count=stats.candidate_count,
                candidate_user_imported_count=stats.candidate_user_imported_count,
                candidate_user_skipped_count=stats.candidate_user_skipped_count,
                lock_expires_at=lock_expires_at,
            )
            try:
                self.repo.insert_import(imp)
            except DuplicateImportError as e:
                # Another process committed the same selection in between.
                logger.info("Import already committed (race): %s", e.existing_import_id)
                result.status = "duplicate"
                result.import_id = e.existing_import_id
                return result

        result.import_id = imp.id
        try:
            ids = deterministic_transaction_ids(rows, input_hash)
            txns = [to_transaction(row, txn_id, imp.id) for row, txn_id in zip(rows, ids)]
            self.repo.insert_transactions_batch(txns)
            self.repo.update_import_status(
                imp.id, "completed",
                record_count=len(txns), completed_at=_now(), lock_expires_at=None,
            )
        except Exception as e:
            logger.exception("Import failed for %s", preview.file_name or preview.account_id)
            self.repo.update_import_status(
                imp.id, "error", error_message=str(e)[:500], lock_expires_at=None,
            )
            result.status = "error"
            result.error_message = str(e)
            return result

        result.imported_count = len(txns)
        result.transactions = txns
        return result

    def process_file(
        self,
        filepath: Path,
        account_id: str,
        selected_candidate_indexes: Iterable[int] = (),
    ) -> ImportResult:
        """Preview and commit in one go (candidates only if pre-selected)."""
        return self.commit(self.preview(filepath, account_id), selected_candidate_indexes)
