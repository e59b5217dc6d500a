"""CLI entry point for bankdedupe.

Commands:
    bankdedupe review FILE --account ID               Classify a statement, import nothing
    bankdedupe import FILE --account ID [--accept 0,2] Import NEW rows plus accepted candidates
    bankdedupe status                                  Import and transaction counts
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure logging based on BANKDEDUPE_LOG_LEVEL env var."""
    level = os.environ.get("BANKDEDUPE_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from bankdedupe.config import Config

    config_dir = os.environ.get("BANKDEDUPE_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_repo():
    """Create a Repository connected to the configured database."""
    from bankdedupe.database.repository import Repository

    db_path = os.environ.get("BANKDEDUPE_DB_PATH", "bankdedupe.db")
    return Repository(db_path=db_path)


def _get_migrations_dir() -> Path:
    """Get the migrations directory path."""
    default = Path(__file__).parent / "database" / "migrations"
    return Path(os.environ.get("BANKDEDUPE_MIGRATIONS_DIR", default))


def _parse_accept(value: str) -> list[int]:
    """Parse "0,2" into candidate indexes."""
    indexes = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        if not part.isdigit():
            raise argparse.ArgumentTypeError(f"invalid candidate index: {part!r}")
        indexes.append(int(part))
    return indexes


def _print_preview(preview) -> None:
    from bankdedupe.dedupe.models import DedupeStatus

    print(f"{preview.file_name}  ({preview.account_id})")
    if preview.search_range is not None:
        print(f"  Range: {preview.search_range.date_from} .. {preview.search_range.date_to}")
    print("-" * 80)

    candidate_index = 0
    for c in preview.classified:
        if c.status == DedupeStatus.DUPLICATE_CANDIDATE:
            tag = f"[{candidate_index}]"
            candidate_index += 1
        else:
            tag = ""
        reason = c.reason.value if c.reason else ""
        print(
            f"  {tag:>5} {c.status.value:<20} {reason:<20}"
            f" {c.row.date:<10} {c.row.amount:>10.2f}  {c.row.description[:30]}"
        )

    print("-" * 80)
    print(
        f"  {preview.count(DedupeStatus.NEW)} new,"
        f" {preview.count(DedupeStatus.DUPLICATE_SAFE)} duplicates,"
        f" {preview.count(DedupeStatus.DUPLICATE_CANDIDATE)} candidates"
    )


def _load_preview(pipeline, filepath: Path, account_id: str):
    """Preview a file, printing user-facing errors. Returns None on failure."""
    from bankdedupe.parsers.statement_csv import StatementParseError

    filepath = filepath.resolve()
    if not filepath.exists():
        print(f"Error: File not found: {filepath}")
        return None
    try:
        return pipeline.preview(filepath, account_id)
    except (StatementParseError, ValueError) as e:
        print(f"Error: {e}")
    return None


# ── Command handlers ─────────────────────────────────────


def cmd_review(args: argparse.Namespace) -> int:
    """Classify a statement against the database and print the result."""
    from bankdedupe.importer import ImportPipeline

    config = _get_config()
    repo = _get_repo()
    repo.apply_migrations(_get_migrations_dir())

    try:
        preview = _load_preview(ImportPipeline(repo, config), args.file, args.account)
        if preview is None:
            return 1
        _print_preview(preview)
        return 0
    finally:
        repo.close()


def cmd_import(args: argparse.Namespace) -> int:
    """Import NEW rows plus the accepted candidates of a statement."""
    from bankdedupe.dedupe.selection import build_selection
    from bankdedupe.importer import ImportPipeline

    config = _get_config()
    repo = _get_repo()
    repo.apply_migrations(_get_migrations_dir())
    pipeline = ImportPipeline(repo, config)

    try:
        preview = _load_preview(pipeline, args.file, args.account)
        if preview is None:
            return 1

        accept = args.accept or []
        if args.dry_run:
            _print_preview(preview)
            selection = build_selection(preview.classified, accept)
            stats = selection.stats
            print(
                f"\nDry run: would import {len(selection.rows_to_import)} row(s)"
                f" (skipped={stats.duplicate_skipped_count + stats.candidate_user_skipped_count},"
                f" candidates accepted={stats.candidate_user_imported_count})"
            )
            return 0

        result = pipeline.commit(preview, accept)
        print(
            f"{result.file_name}: {result.status}"
            f" (imported={result.imported_count}, new={result.new_count},"
            f" dup={result.duplicate_skipped_count},"
            f" candidates={result.candidate_imported_count}/{result.candidate_count})"
        )
        if result.error_message:
            print(f"Error: {result.error_message}")
        elif result.status == "locked":
            print("Error: the same import is still running; try again later")
        return 0 if result.status in ("success", "duplicate") else 1
    finally:
        repo.close()


def cmd_status(args: argparse.Namespace) -> int:
    """Display system status counts."""
    repo = _get_repo()
    repo.apply_migrations(_get_migrations_dir())
    counts = repo.get_status_counts()

    print("bankdedupe Status")
    print("=" * 40)
    print(f"  Total transactions:   {counts['total_txns']:,}")
    print(f"  Total imports:        {counts['total_imports']:,}")
    print(f"  Completed:            {counts['completed_imports']:,}")
    print(f"  Failed:               {counts['failed_imports']:,}")
    print(f"  Duplicates skipped:   {counts['duplicates_skipped']:,}")
    print(f"  Candidates imported:  {counts['candidates_imported']:,}")

    repo.close()
    return 0


# ── Main entry point ─────────────────────────────────────


_COMMANDS = {
    "review": cmd_review,
    "import": cmd_import,
    "status": cmd_status,
}


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="bankdedupe",
        description="Bank statement import deduplication",
    )
    subparsers = parser.add_subparsers(dest="command")

    # review
    review_p = subparsers.add_parser("review", help="Classify a statement without importing")
    review_p.add_argument("file", type=Path, help="Statement CSV file")
    review_p.add_argument("--account", required=True, help="Account ID from accounts.yaml")

    # import
    import_p = subparsers.add_parser("import", help="Import a statement")
    import_p.add_argument("file", type=Path, help="Statement CSV file")
    import_p.add_argument("--account", required=True, help="Account ID from accounts.yaml")
    import_p.add_argument(
        "--accept", type=_parse_accept, default=None,
        help="Comma-separated candidate indexes to import (see review)",
    )
    import_p.add_argument("--dry-run", action="store_true", help="Show what would be imported")

    # status
    subparsers.add_parser("status", help="Show import and transaction counts")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()
