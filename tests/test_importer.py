"""Tests for bankdedupe.importer — preview/commit orchestration.

Uses a real in-memory repository and the fixture config so the whole path
(parse, range, fetch, classify, select, persist) runs end to end.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from bankdedupe.config import Config
from bankdedupe.database.models import Import
from bankdedupe.database.repository import Repository
from bankdedupe.dedupe.models import DedupeReason, DedupeStatus, SearchRange
from bankdedupe.dedupe.selection import build_selection
from bankdedupe.idempotency import compute_import_hash
from bankdedupe.importer import ImportPipeline, ImportResult, to_transaction
from bankdedupe.parsers.base import IncomingRow
from bankdedupe.parsers.statement_csv import StatementParseError
from tests.conftest import FIXTURE_CONFIG_DIR, MIGRATIONS_DIR

STATEMENT = """\
Cuenta;ES12 3456 7890 1234 5678 9012
F. Operación;F. Valor;Concepto;Importe;Saldo
02/01/2026;30/12/2025;Transferencia fina manent segimon;500,00;1.500,00
10/02/2026;10/02/2026;Quota soci;-25,00;1.475,00
11/02/2026;11/02/2026;Comissio manteniment;-2,00;1.473,00
"""

FEES_STATEMENT = """\
Fecha;Concepto;Importe;Num. soci
05/03/2026;Quota soci;30,00;SOCI 0012
05/03/2026;Quota soci;30,00;SOCI 0013
"""


# ── Helpers ──────────────────────────────────────────────


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


@pytest.fixture
def pipeline(repo):
    return ImportPipeline(repo, Config(FIXTURE_CONFIG_DIR))


def _write(tmp_path: Path, content: str, name: str = "extracte.csv") -> Path:
    f = tmp_path / name
    f.write_text(content, encoding="utf-8")
    return f


def _row(**overrides) -> IncomingRow:
    defaults = dict(
        date="2026-02-10", amount=-25.0, description="QUOTA SOCI", account_id="caixa-main",
    )
    defaults.update(overrides)
    return IncomingRow(**defaults)


# ── Preview ──────────────────────────────────────────────


class TestPreview:
    def test_fresh_statement_is_new(self, pipeline, tmp_path):
        preview = pipeline.preview(_write(tmp_path, STATEMENT), "caixa-main")
        assert [c.status for c in preview.classified] == [DedupeStatus.NEW] * 3
        assert preview.file_name == "extracte.csv"
        assert preview.file_hash is not None
        assert preview.search_range == SearchRange("2025-12-30", "2026-02-11")

    def test_unknown_account(self, pipeline, tmp_path):
        with pytest.raises(ValueError, match="Unknown account"):
            pipeline.preview(_write(tmp_path, STATEMENT), "nope")

    def test_unknown_account_checked_before_fetch(self, pipeline, repo):
        with patch.object(repo, "get_transactions_in_range") as fetch:
            with pytest.raises(ValueError):
                pipeline.preview_rows([_row(account_id="nope")], "nope")
        fetch.assert_not_called()

    def test_unsupported_extension(self, pipeline, tmp_path):
        with pytest.raises(ValueError, match="Unsupported file extension"):
            pipeline.preview(_write(tmp_path, STATEMENT, name="extracte.pdf"), "caixa-main")

    def test_unreadable_statement(self, pipeline, tmp_path):
        with pytest.raises(StatementParseError):
            pipeline.preview(_write(tmp_path, "hello\nworld\n"), "caixa-main")

    def test_fetches_existing_once(self, pipeline, repo, tmp_path):
        with patch.object(
            repo, "get_transactions_in_range", wraps=repo.get_transactions_in_range,
        ) as fetch:
            pipeline.preview(_write(tmp_path, STATEMENT), "caixa-main")
        fetch.assert_called_once_with("caixa-main", SearchRange("2025-12-30", "2026-02-11"))

    def test_no_dated_rows_skips_fetch(self, pipeline, repo):
        with patch.object(repo, "get_transactions_in_range") as fetch:
            preview = pipeline.preview_rows([_row(date="bad")], "caixa-main")
        fetch.assert_not_called()
        assert preview.search_range is None


# ── Commit ───────────────────────────────────────────────


class TestCommit:
    def test_imports_new_rows(self, pipeline, repo, tmp_path):
        preview = pipeline.preview(_write(tmp_path, STATEMENT), "caixa-main")
        result = pipeline.commit(preview)
        assert result.status == "success"
        assert result.imported_count == 3

        imp = repo.get_import(result.import_id)
        assert imp.status == "completed"
        assert imp.record_count == 3
        stored = repo.get_transactions_by_import_id(result.import_id)
        assert {t.operation_date for t in stored} == {"2026-01-02", "2026-02-10", "2026-02-11"}
        assert all(t.normalized_description == t.description.upper() for t in stored)

    def test_reimport_is_all_safe_duplicates(self, pipeline, tmp_path):
        f = _write(tmp_path, STATEMENT)
        pipeline.commit(pipeline.preview(f, "caixa-main"))

        preview = pipeline.preview(f, "caixa-main")
        assert [c.status for c in preview.classified] == [DedupeStatus.DUPLICATE_SAFE] * 3
        assert {c.reason for c in preview.classified} == {DedupeReason.BALANCE_AMOUNT_DATE}

        result = pipeline.commit(preview)
        assert result.imported_count == 0
        assert result.duplicate_skipped_count == 3

    def test_same_selection_committed_twice(self, pipeline, repo, tmp_path):
        preview = pipeline.preview(_write(tmp_path, STATEMENT), "caixa-main")
        first = pipeline.commit(preview)
        second = pipeline.commit(preview)
        assert second.status == "duplicate"
        assert second.import_id == first.import_id
        assert len(repo.get_transactions_for_account("caixa-main")) == 3

    def test_candidates_need_opt_in(self, pipeline, repo):
        repo.insert_transaction(to_transaction(_row(), "existing-1", None))
        rows = [_row(), _row(amount=-99.0, description="NEW ONE")]

        preview = pipeline.preview_rows(rows, "caixa-main", file_name="manual")
        assert [c.status for c in preview.classified] == [
            DedupeStatus.DUPLICATE_CANDIDATE, DedupeStatus.NEW,
        ]
        assert len(preview.candidates) == 1

        result = pipeline.commit(preview, selected_candidate_indexes=[])
        assert result.imported_count == 1
        assert result.candidate_count == 1
        assert result.candidate_imported_count == 0
        assert repo.get_import(result.import_id).candidate_user_skipped_count == 1

    def test_opted_in_candidate_imported(self, pipeline, repo):
        repo.insert_transaction(to_transaction(_row(), "existing-1", None))
        preview = pipeline.preview_rows([_row()], "caixa-main", file_name="manual")

        result = pipeline.commit(preview, selected_candidate_indexes=[0])
        assert result.imported_count == 1
        assert result.candidate_imported_count == 1
        assert len(repo.get_transactions_for_account("caixa-main")) == 2

    def test_nothing_to_import_writes_no_import(self, pipeline, repo):
        repo.insert_transaction(to_transaction(_row(), "existing-1", None))
        preview = pipeline.preview_rows([_row()], "caixa-main")
        result = pipeline.commit(preview)
        assert result.status == "success"
        assert result.import_id is None
        assert repo.get_status_counts()["total_imports"] == 0

    def test_extra_match_fields_from_config(self, pipeline, tmp_path):
        f = _write(tmp_path, FEES_STATEMENT)
        pipeline.commit(pipeline.preview(f, "sabadell-fees"), [])

        changed = FEES_STATEMENT.replace("SOCI 0013", "SOCI 0014")
        preview = pipeline.preview(_write(tmp_path, changed, name="march.csv"), "sabadell-fees")
        assert [(c.status, c.reason) for c in preview.classified] == [
            (DedupeStatus.DUPLICATE_CANDIDATE, DedupeReason.BASE_KEY),
            (DedupeStatus.NEW, DedupeReason.ENRICHED_KEY),
        ]

    def test_strict_intra_file_from_config(self, pipeline, tmp_path):
        twice = "Fecha;Concepto;Importe\n05/03/2026;Comissio;-1,50\n05/03/2026;Comissio;-1,50\n"
        f = _write(tmp_path, twice)
        strict = pipeline.preview(f, "triodos-ops")
        relaxed = pipeline.preview(f, "caixa-main")
        assert [c.status for c in strict.classified] == [DedupeStatus.NEW] * 2
        assert relaxed.classified[1].reason == DedupeReason.INTRA_FILE


class TestCommitFailure:
    def test_marks_import_error(self, pipeline, repo, tmp_path):
        preview = pipeline.preview(_write(tmp_path, STATEMENT), "caixa-main")
        with patch.object(repo, "insert_transactions_batch", side_effect=RuntimeError("disk full")):
            result = pipeline.commit(preview)

        assert result.status == "error"
        assert result.error_message == "disk full"
        imp = repo.get_import(result.import_id)
        assert imp.status == "error"
        assert imp.error_message == "disk full"
        assert repo.get_transactions_for_account("caixa-main") == []

    def test_retry_after_error(self, pipeline, repo, tmp_path):
        preview = pipeline.preview(_write(tmp_path, STATEMENT), "caixa-main")
        with patch.object(repo, "insert_transactions_batch", side_effect=RuntimeError("disk full")):
            failed = pipeline.commit(preview)

        retried = pipeline.commit(preview)
        assert retried.status == "success"
        assert retried.import_id == failed.import_id
        assert retried.imported_count == 3
        assert repo.get_import(failed.import_id).status == "completed"

    def _pending_import(self, repo, preview, lock_expires_at):
        selection = build_selection(preview.classified, ())
        input_hash = compute_import_hash("caixa-main", preview.file_name, selection.rows_to_import)
        return repo.insert_import(Import(
            account_id="caixa-main", input_hash=input_hash,
            file_name=preview.file_name, status="pending",
            lock_expires_at=lock_expires_at,
        ))

    def test_abandoned_pending_import_is_retried(self, pipeline, repo, tmp_path):
        preview = pipeline.preview(_write(tmp_path, STATEMENT), "caixa-main")
        stale = self._pending_import(repo, preview, "2026-01-01T00:00:00+00:00")

        result = pipeline.commit(preview)
        assert result.status == "success"
        assert result.import_id == stale.id
        assert len(repo.get_transactions_by_import_id(stale.id)) == 3
        imp = repo.get_import(stale.id)
        assert imp.status == "completed"
        assert imp.lock_expires_at is None

    def test_pending_without_lock_is_retried(self, pipeline, repo, tmp_path):
        preview = pipeline.preview(_write(tmp_path, STATEMENT), "caixa-main")
        stale = self._pending_import(repo, preview, None)
        assert pipeline.commit(preview).status == "success"
        assert repo.get_import(stale.id).status == "completed"

    def test_running_import_is_locked(self, pipeline, repo, tmp_path):
        preview = pipeline.preview(_write(tmp_path, STATEMENT), "caixa-main")
        running = self._pending_import(repo, preview, "2999-01-01T00:00:00+00:00")

        result = pipeline.commit(preview)
        assert result.status == "locked"
        assert result.import_id == running.id
        assert result.imported_count == 0
        assert repo.get_transactions_for_account("caixa-main") == []
        assert repo.get_import(running.id).status == "pending"

    def test_new_import_holds_lock_until_done(self, pipeline, repo, tmp_path):
        preview = pipeline.preview(_write(tmp_path, STATEMENT), "caixa-main")
        seen = {}

        def capture(txns):
            seen["import"] = repo.get_import(txns[0].import_id)
            return Repository.insert_transactions_batch(repo, txns)

        with patch.object(repo, "insert_transactions_batch", side_effect=capture):
            pipeline.commit(preview)
        assert seen["import"].status == "pending"
        assert seen["import"].lock_expires_at > datetime.now(timezone.utc).isoformat()


class TestRejectedStatement:
    def test_invalid_date_imports_nothing(self, pipeline, repo, tmp_path):
        content = (
            "Fecha;Concepto;Importe\n"
            "10/02/2026;Quota soci;-25,00\n"
            "31/02/2026;Donatiu;1.000,00\n"
        )
        with pytest.raises(StatementParseError) as exc:
            pipeline.process_file(_write(tmp_path, content), "caixa-main")
        assert exc.value.code == "OPERATION_DATE_REQUIRED"
        assert exc.value.details == {"row_index": 3}
        counts = repo.get_status_counts()
        assert counts["total_imports"] == 0
        assert counts["total_txns"] == 0


class TestProcessFile:
    def test_returns_result(self, pipeline, tmp_path):
        result = pipeline.process_file(_write(tmp_path, STATEMENT), "caixa-main")
        assert isinstance(result, ImportResult)
        assert result.new_count == 3
        assert result.imported_count == 3
