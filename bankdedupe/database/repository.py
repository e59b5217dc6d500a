"""Repository: CRUD operations against SQLite using raw SQL.

All methods take/return dataclass instances from models.py.
Connection management uses a single connection with WAL mode and
foreign keys enabled.
"""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path

from bankdedupe.dedupe.models import SearchRange

from .models import Import, Transaction

_TXN_COLUMNS = (
    "id, account_id, date, operation_date, value_date, amount, description,"
    " normalized_description, bank_reference, balance_after, raw_payload,"
    " import_id, dedup_key, source, status, created_at"
)


class DuplicateImportError(Exception):
    """Raised when an import run with the same input hash already exists."""

    def __init__(self, input_hash: str, existing_import_id: str | None = None):
        self.input_hash = input_hash
        self.existing_import_id = existing_import_id
        super().__init__(f"Import with input_hash '{input_hash}' already exists")


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path):
        """Apply all pending NNN_*.sql migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            "  version INTEGER PRIMARY KEY,"
            "  description TEXT,"
            "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
            ")"
        )
        self.conn.commit()

        row = self.conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        current = row[0] or 0

        for sql_file in sorted(migrations_dir.glob("*.sql")):
            version = int(sql_file.name.split("_")[0])
            if version <= current:
                continue
            try:
                self.conn.execute("BEGIN")
                # executescript() commits on its own; run statements one by one
                for statement in sql_file.read_text().split(";"):
                    statement = statement.strip()
                    if statement:
                        self.conn.execute(statement)
                self.conn.execute(
                    "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                    (version, sql_file.stem),
                )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    # ── Imports ─────────────────────────────────────────────

    def insert_import(self, imp: Import) -> Import:
        """Insert an import run record.

        Raises:
            DuplicateImportError: If a run with the same input hash exists,
                i.e. this exact selection was already committed.
        """
        try:
            self.conn.execute(
                "INSERT INTO imports (id, account_id, input_hash, file_name, file_hash,"
                " record_count, duplicate_skipped_count, candidate_count,"
                " candidate_user_imported_count, candidate_user_skipped_count,"
                " status, error_message, created_at, completed_at, lock_expires_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (imp.id, imp.account_id, imp.input_hash, imp.file_name,
                 imp.file_hash, imp.record_count, imp.duplicate_skipped_count,
                 imp.candidate_count, imp.candidate_user_imported_count,
                 imp.candidate_user_skipped_count, imp.status,
                 imp.error_message, imp.created_at, imp.completed_at,
                 imp.lock_expires_at),
            )
            self.conn.commit()
            return imp
        except sqlite3.IntegrityError as e:
            if "input_hash" in str(e):
                existing = self.get_import_by_input_hash(imp.input_hash)
                raise DuplicateImportError(
                    imp.input_hash, existing.id if existing else None,
                ) from e
            raise

    def get_import(self, import_id: str) -> Import | None:
        row = self.conn.execute(
            "SELECT * FROM imports WHERE id = ?", (import_id,)
        ).fetchone()
        return self._row_to_import(row) if row else None

    def get_import_by_input_hash(self, input_hash: str) -> Import | None:
        row = self.conn.execute(
            "SELECT * FROM imports WHERE input_hash = ?", (input_hash,)
        ).fetchone()
        return self._row_to_import(row) if row else None

    _IMPORT_UPDATE_COLS = ("record_count", "error_message", "completed_at", "lock_expires_at")

    def update_import_status(self, import_id: str, status: str, **kwargs):
        unknown = set(kwargs.keys()) - set(self._IMPORT_UPDATE_COLS)
        if unknown:
            raise ValueError(f"Unknown columns for update_import_status: {unknown}")

        sets = ["status = ?"]
        vals: list = [status]
        for col in self._IMPORT_UPDATE_COLS:
            if col in kwargs:
                sets.append(f"{col} = ?")
                vals.append(kwargs[col])
        vals.append(import_id)
        self.conn.execute(f"UPDATE imports SET {', '.join(sets)} WHERE id = ?", vals)
        self.conn.commit()

    def claim_import(self, import_id: str, now: str, lock_expires_at: str) -> bool:
        """Take over a failed or abandoned import run for a retry.

        Succeeds for runs in ``error`` and for ``pending`` runs whose lock
        expired (or never had one). Returns False when the run is completed
        or still locked by another commit.
        """
        cur = self.conn.execute(
            "UPDATE imports SET status = 'pending', error_message = NULL, lock_expires_at = ?"
            " WHERE id = ? AND (status = 'error' OR (status = 'pending'"
            " AND (lock_expires_at IS NULL OR lock_expires_at <= ?)))",
            (lock_expires_at, import_id, now),
        )
        self.conn.commit()
        return cur.rowcount == 1

    # ── Transactions ────────────────────────────────────────

    def insert_transaction(self, txn: Transaction) -> Transaction:
        """Insert one transaction, e.g. history entered outside an import run."""
        self.conn.execute(
            f"INSERT INTO transactions ({_TXN_COLUMNS})"
            " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
            self._transaction_params(txn),
        )
        self.conn.commit()
        return txn

    def insert_transactions_batch(self, txns: list[Transaction]):
        """Insert multiple transactions atomically.

        Uses a transaction wrapper so either all inserts succeed or none do.
        """
        try:
            self.conn.execute("BEGIN")
            self.conn.executemany(
                f"INSERT INTO transactions ({_TXN_COLUMNS})"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                [self._transaction_params(t) for t in txns],
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def get_transaction(self, txn_id: str) -> Transaction | None:
        """Fetch one stored transaction by id."""
        row = self.conn.execute(
            "SELECT * FROM transactions WHERE id = ?", (txn_id,)
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    def get_transactions_by_import_id(self, import_id: str) -> list[Transaction]:
        rows = self.conn.execute(
            "SELECT * FROM transactions WHERE import_id = ? ORDER BY date, rowid",
            (import_id,),
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def get_transactions_in_range(
        self, account_id: str, search_range: SearchRange
    ) -> list[Transaction]:
        """All account transactions with any date field inside the range (inclusive).

        Matches on date OR operation_date OR value_date, compared as
        date-only text so stored timestamps are still found.
        """
        lo, hi = search_range.date_from, search_range.date_to
        rows = self.conn.execute(
            "SELECT * FROM transactions"
            " WHERE account_id = ?"
            "   AND (substr(date, 1, 10) BETWEEN ? AND ?"
            "        OR substr(operation_date, 1, 10) BETWEEN ? AND ?"
            "        OR substr(value_date, 1, 10) BETWEEN ? AND ?)"
            " ORDER BY date, rowid",
            (account_id, lo, hi, lo, hi, lo, hi),
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def get_transactions_for_account(
        self, account_id: str, date_from: str | None = None,
        date_to: str | None = None,
    ) -> list[Transaction]:
        sql = "SELECT * FROM transactions WHERE account_id = ?"
        params: list = [account_id]
        if date_from:
            sql += " AND date >= ?"
            params.append(date_from)
        if date_to:
            sql += " AND date <= ?"
            params.append(date_to)
        sql += " ORDER BY date, rowid"
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def get_status_counts(self) -> dict[str, int]:
        """Totals for the status command."""
        row = self.conn.execute(
            "SELECT"
            "  (SELECT COUNT(*) FROM transactions) AS total_txns,"
            "  (SELECT COUNT(*) FROM imports) AS total_imports,"
            "  (SELECT COUNT(*) FROM imports WHERE status = 'completed') AS completed_imports,"
            "  (SELECT COUNT(*) FROM imports WHERE status = 'error') AS failed_imports,"
            "  (SELECT COALESCE(SUM(duplicate_skipped_count), 0) FROM imports) AS duplicates_skipped,"
            "  (SELECT COALESCE(SUM(candidate_user_imported_count), 0) FROM imports) AS candidates_imported"
        ).fetchone()
        return {k: row[k] for k in row.keys()}

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _transaction_params(t: Transaction) -> tuple:
        return (
            t.id, t.account_id, t.date, t.operation_date, t.value_date,
            t.amount, t.description, t.normalized_description,
            t.bank_reference, t.balance_after,
            json.dumps(t.raw_payload or {}, ensure_ascii=False, sort_keys=True),
            t.import_id, t.dedup_key, t.source, t.status, t.created_at,
        )

    @staticmethod
    def _row_to_import(row: sqlite3.Row) -> Import:
        return Import(
            id=row["id"], account_id=row["account_id"],
            input_hash=row["input_hash"], file_name=row["file_name"],
            file_hash=row["file_hash"], record_count=row["record_count"],
            duplicate_skipped_count=row["duplicate_skipped_count"],
            candidate_count=row["candidate_count"],
            candidate_user_imported_count=row["candidate_user_imported_count"],
            candidate_user_skipped_count=row["candidate_user_skipped_count"],
            status=row["status"], error_message=row["error_message"],
            created_at=row["created_at"], completed_at=row["completed_at"],
            lock_expires_at=row["lock_expires_at"],
        )

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"], account_id=row["account_id"],
            date=row["date"], operation_date=row["operation_date"],
            value_date=row["value_date"], amount=row["amount"],
            description=row["description"],
            normalized_description=row["normalized_description"],
            bank_reference=row["bank_reference"],
            balance_after=row["balance_after"],
            raw_payload=json.loads(row["raw_payload"] or "{}"),
            import_id=row["import_id"], dedup_key=row["dedup_key"],
            source=row["source"], status=row["status"],
            created_at=row["created_at"],
        )
