"""Tiered duplicate classification for one statement import.

Tiers (evaluated in order, first match wins):
1. Intra-file: same dedupe key as an earlier row of this batch -> DUPLICATE_SAFE
2. Bank ref:   same normalized bank reference as a stored row -> DUPLICATE_SAFE
3. Balance:    same balance_after + amount + (operation_date|date) -> DUPLICATE_SAFE
4. Base key:   same date|amount|description as a stored row -> DUPLICATE_CANDIDATE
5. Otherwise -> NEW

A running balance is a cumulative fingerprint of every earlier line, so
three fields agreeing with it is treated as certain. Tier 4 only flags:
two membership fees of the same amount on the same day are legitimate
and must not disappear without a human decision.

Every DUPLICATE_SAFE tier needs all of its fields present on both sides.
Missing or unreadable fields only make a row fall to a weaker tier.

Optional extra match fields (raw payload columns the bank exports and we
store, e.g. a "Referencia 2" column) can clear a tier 4 match: when every
matched stored row carries those fields and none agrees, the row is NEW
with reason ENRICHED_KEY.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Sequence

from bankdedupe.database.models import Transaction
from bankdedupe.parsers.base import IncomingRow

from .keys import build_dedupe_key, composite_key_variants, is_ref_key
from .models import ClassifiedRow, DedupeReason, DedupeStatus
from .normalize import (
    normalize_amount_minor_units,
    normalize_bank_reference,
    normalize_date_only,
)

logger = logging.getLogger(__name__)


def balance_key(row) -> tuple[int, int, str] | None:
    """(balance cents, amount cents, operation_date or date), or None if any is missing."""
    balance = normalize_amount_minor_units(getattr(row, "balance_after", None))
    if balance is None:
        return None
    amount = normalize_amount_minor_units(row.amount)
    anchor = normalize_date_only(getattr(row, "operation_date", None) or row.date)
    if amount is None or anchor is None:
        return None
    return (balance, amount, anchor)


def extra_signature(payload: dict | None, fields: Sequence[str]) -> str:
    """Signature over extra raw-payload fields: "a=X|b=12345", or "" if none present.

    Numbers are compared in cents, strings whitespace-collapsed and uppercased.
    """
    if not fields or not payload:
        return ""
    parts = []
    for name in sorted(fields):
        value = payload.get(name)
        if value is None or value == "" or isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            cents = normalize_amount_minor_units(value)
            if cents is None:
                continue
            normalized = str(cents)
        elif isinstance(value, str):
            normalized = " ".join(value.split()).upper()
            if not normalized:
                continue
        else:
            normalized = str(value)
        parts.append(f"{name}={normalized}")
    return "|".join(parts)


def _unique(txns: Iterable[Transaction]) -> list[Transaction]:
    seen: set[str] = set()
    out = []
    for t in txns:
        if t.id not in seen:
            seen.add(t.id)
            out.append(t)
    return out


class Classifier:
    """Classify one batch of incoming rows against stored transactions.

    Stored rows for other accounts are ignored. An instance holds the
    intra-file state of a single run; use a fresh one per import.
    """

    def __init__(
        self,
        existing_rows: Iterable[Transaction],
        account_id: str,
        extra_match_fields: Sequence[str] | None = None,
        strict_intra_file: bool = False,
    ):
        self.account_id = account_id
        self.extra_match_fields = list(extra_match_fields or [])
        self.strict_intra_file = strict_intra_file

        self._by_ref: dict[str, list[Transaction]] = {}
        self._by_balance: dict[tuple[int, int, str], list[Transaction]] = {}
        self._by_composite: dict[str, list[Transaction]] = {}
        self._seen_keys: set[str] = set()

        for txn in existing_rows:
            if txn.account_id != account_id:
                continue
            ref = normalize_bank_reference(txn.bank_reference)
            if ref is not None:
                self._by_ref.setdefault(ref, []).append(txn)
            bkey = balance_key(txn)
            if bkey is not None:
                self._by_balance.setdefault(bkey, []).append(txn)
            for key in composite_key_variants(txn):
                self._by_composite.setdefault(key, []).append(txn)

    # ── Tier 1: Intra-file ────────────────────────────────

    def check_intra_file(self, row: IncomingRow) -> bool:
        """Return True if an earlier row of this batch had the same key.

        Records the row's key for later rows either way. Rows without a key
        (unreadable date or amount) never match.
        """
        key = build_dedupe_key(row)
        if key is None:
            return False
        signature = extra_signature(row.raw_payload, self.extra_match_fields)
        intra_key = f"{key}||{signature}" if signature else key

        can_skip = True
        if self.strict_intra_file:
            # Some banks emit genuinely identical lines; only a reference or
            # an extra-field signature can tell them apart with certainty.
            can_skip = is_ref_key(key) or bool(signature)

        if can_skip and intra_key in self._seen_keys:
            return True
        self._seen_keys.add(intra_key)
        return False

    # ── Tier 2: Bank reference ────────────────────────────

    def check_bank_reference(self, row: IncomingRow) -> list[Transaction]:
        ref = normalize_bank_reference(row.bank_reference)
        if ref is None:
            return []
        return list(self._by_ref.get(ref, []))

    # ── Tier 3: Balance + amount + date ───────────────────

    def check_balance(self, row: IncomingRow) -> list[Transaction]:
        """Stored rows agreeing on balance_after, amount and operation date.

        Skipped entirely when the incoming row has no balance.
        """
        bkey = balance_key(row)
        if bkey is None:
            return []
        return list(self._by_balance.get(bkey, []))

    # ── Tier 4: Base key ──────────────────────────────────

    def check_base_key(self, row: IncomingRow) -> list[Transaction]:
        """Stored rows sharing date|amount|description under any date of either side."""
        matches: list[Transaction] = []
        for key in sorted(composite_key_variants(row)):
            matches.extend(self._by_composite.get(key, []))
        return _unique(matches)

    def _enrichment_clears(self, row: IncomingRow, matches: list[Transaction]) -> bool:
        """True if extra fields prove the row differs from every base-key match."""
        incoming_sig = extra_signature(row.raw_payload, self.extra_match_fields)
        if not incoming_sig:
            return False
        for txn in matches:
            existing_sig = extra_signature(txn.raw_payload, self.extra_match_fields)
            if not existing_sig or existing_sig == incoming_sig:
                return False
        return True

    # ── Full pipeline ─────────────────────────────────────

    def classify_row(self, row: IncomingRow) -> ClassifiedRow:
        if self.check_intra_file(row):
            return ClassifiedRow(row, DedupeStatus.DUPLICATE_SAFE, DedupeReason.INTRA_FILE)

        matches = self.check_bank_reference(row)
        if matches:
            return ClassifiedRow(
                row, DedupeStatus.DUPLICATE_SAFE, DedupeReason.BANK_REF, tuple(matches),
            )

        matches = self.check_balance(row)
        if matches:
            return ClassifiedRow(
                row, DedupeStatus.DUPLICATE_SAFE, DedupeReason.BALANCE_AMOUNT_DATE,
                tuple(matches),
            )

        matches = self.check_base_key(row)
        if matches:
            if self._enrichment_clears(row, matches):
                return ClassifiedRow(row, DedupeStatus.NEW, DedupeReason.ENRICHED_KEY)
            return ClassifiedRow(
                row, DedupeStatus.DUPLICATE_CANDIDATE, DedupeReason.BASE_KEY, tuple(matches),
            )

        return ClassifiedRow(row, DedupeStatus.NEW)

    def classify_batch(self, rows: Iterable[IncomingRow]) -> list[ClassifiedRow]:
        return [self.classify_row(row) for row in rows]


def classify(
    incoming_rows: Iterable[IncomingRow],
    existing_rows: Iterable[Transaction],
    account_id: str,
    extra_match_fields: Sequence[str] | None = None,
    *,
    strict_intra_file: bool = False,
) -> list[ClassifiedRow]:
    """Classify incoming rows, in input order, against stored transactions."""
    classifier = Classifier(
        existing_rows, account_id,
        extra_match_fields=extra_match_fields,
        strict_intra_file=strict_intra_file,
    )
    results = classifier.classify_batch(incoming_rows)
    counts = count_by_status(results)
    logger.debug(
        "Classified %d row(s) for %s: %d new, %d safe duplicates, %d candidates",
        len(results), account_id,
        counts[DedupeStatus.NEW],
        counts[DedupeStatus.DUPLICATE_SAFE],
        counts[DedupeStatus.DUPLICATE_CANDIDATE],
    )
    return results


def count_by_status(classified: Iterable[ClassifiedRow]) -> dict[DedupeStatus, int]:
    """Count per status; every status is present, zero if unused."""
    counter = Counter(c.status for c in classified)
    return {status: counter.get(status, 0) for status in DedupeStatus}
