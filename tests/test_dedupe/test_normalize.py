"""Tests for dedupe.normalize — description, date and amount normalization."""

import datetime as dt

from bankdedupe.dedupe.normalize import (
    normalize_amount_minor_units,
    normalize_bank_reference,
    normalize_date_only,
    normalize_description,
)


class TestNormalizeDescription:
    def test_uppercase(self):
        assert normalize_description("Quota soci") == "QUOTA SOCI"

    def test_collapse_whitespace(self):
        assert normalize_description("  TRANSF   NOMINA\tMARÇ ") == "TRANSF NOMINA MARÇ"

    def test_non_breaking_space(self):
        assert normalize_description("Bizum\u00a0enviat") == "BIZUM ENVIAT"

    def test_none_is_empty(self):
        assert normalize_description(None) == ""

    def test_empty(self):
        assert normalize_description("   ") == ""


class TestNormalizeDateOnly:
    def test_date_only_unchanged(self):
        assert normalize_date_only("2026-01-02") == "2026-01-02"

    def test_strips_time(self):
        assert normalize_date_only("2025-12-30T00:00:00.000Z") == "2025-12-30"

    def test_no_timezone_shift(self):
        assert normalize_date_only("2025-12-30T23:30:00-05:00") == "2025-12-30"

    def test_space_separated_time(self):
        assert normalize_date_only("2026-03-01 10:15:00") == "2026-03-01"

    def test_date_objects(self):
        assert normalize_date_only(dt.date(2026, 2, 10)) == "2026-02-10"
        assert normalize_date_only(dt.datetime(2026, 2, 10, 23, 59)) == "2026-02-10"

    def test_invalid_returns_none(self):
        assert normalize_date_only("30/12/2025") is None
        assert normalize_date_only("2026-02-30") is None
        assert normalize_date_only("") is None
        assert normalize_date_only(None) is None
        assert normalize_date_only(20260101) is None


class TestNormalizeAmountMinorUnits:
    def test_rounds_to_cents(self):
        assert normalize_amount_minor_units(25) == 2500
        assert normalize_amount_minor_units(-12.34) == -1234

    def test_float_drift(self):
        assert normalize_amount_minor_units(0.1 + 0.2) == normalize_amount_minor_units(0.3)

    def test_numeric_string(self):
        assert normalize_amount_minor_units("500.00") == 50000

    def test_invalid_returns_none(self):
        assert normalize_amount_minor_units(None) is None
        assert normalize_amount_minor_units("abc") is None
        assert normalize_amount_minor_units(float("nan")) is None
        assert normalize_amount_minor_units(float("inf")) is None
        assert normalize_amount_minor_units(True) is None


class TestNormalizeBankReference:
    def test_trims_and_uppercases(self):
        assert normalize_bank_reference("  ab-123 ") == "AB-123"

    def test_blank_is_absent(self):
        assert normalize_bank_reference("   ") is None
        assert normalize_bank_reference(None) is None
