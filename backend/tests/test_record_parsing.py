"""
Record Parsing Tests

Boundary coercion: keys, names, amounts, dates, id ordering.
"""

import pytest
from datetime import date, datetime
from decimal import Decimal

from matching_policy_service import default_status_vocabulary
from reconciliation_errors import MalformedRecord
from reconciliation_models import InvoiceRecord, NormalizedStatus, RecordSource
from record_parsing import (
    id_sort_key, normalize_key, normalize_name, parse_amount, parse_date, prepare_record,
)


pytestmark = pytest.mark.unit


class TestKeyNormalization:

    def test_trims_lowercases_and_collapses_whitespace(self):
        assert normalize_key("  INV  100 ") == "inv 100"
        assert normalize_key("inv-100 ") == normalize_key("INV-100")

    def test_missing_key_is_empty(self):
        assert normalize_key(None) == ""
        assert normalize_key("   ") == ""


class TestNameNormalization:

    def test_punctuation_and_case_ignored(self):
        assert normalize_name("ACME CORP.") == normalize_name("Acme Corp")

    def test_legal_suffix_dropped(self):
        assert normalize_name("Globex, Inc.") == "globex"

    def test_bare_suffix_kept(self):
        assert normalize_name("Co") == "co"

    def test_empty_name(self):
        assert normalize_name(None) == ""
        assert normalize_name("") == ""


class TestAmountParsing:

    def test_numeric_strings(self):
        assert parse_amount("1,234.50") == Decimal("1234.50")
        assert parse_amount("$99") == Decimal("99")

    def test_numbers(self):
        assert parse_amount(10) == Decimal("10")
        assert parse_amount(10.1) == Decimal("10.1")
        assert parse_amount(Decimal("0.00")) == Decimal("0")

    @pytest.mark.parametrize("raw", ["not-a-number", "", None, "NaN", True, "-5", -0.01])
    def test_rejected_amounts(self, raw):
        with pytest.raises(MalformedRecord):
            parse_amount(raw, record_id=7)

    def test_error_carries_record_id(self):
        with pytest.raises(MalformedRecord) as exc_info:
            parse_amount("abc", record_id="S-1")
        assert exc_info.value.record_id == "S-1"
        assert "unparseable amount" in exc_info.value.reason


class TestDateParsing:

    def test_iso_and_day_first_formats(self):
        assert parse_date("2024-01-10") == date(2024, 1, 10)
        assert parse_date("10/01/2024") == date(2024, 1, 10)
        assert parse_date("2024-01-10T23:30:00Z") == date(2024, 1, 10)

    def test_datetime_truncated_to_date(self):
        assert parse_date(datetime(2024, 1, 10, 15, 45)) == date(2024, 1, 10)

    def test_missing_date_is_none(self):
        assert parse_date(None) is None
        assert parse_date("  ") is None

    def test_garbage_date_rejected(self):
        with pytest.raises(MalformedRecord):
            parse_date("someday", record_id=1, field_name="issue_date")


def test_id_sort_key_orders_ints_numerically_before_strings():
    assert sorted([10, "b", 9, "a"], key=id_sort_key) == [9, 10, "a", "b"]


class TestPrepareRecord:

    def test_coerces_all_fields(self):
        record = InvoiceRecord(
            id="S-1",
            source=RecordSource.SUBJECT,
            amount="1000.00",
            currency=" usd ",
            issue_date="2024-01-10",
            due_date="2024-02-09",
            status="pending_approval",
        )

        prepared = prepare_record(record, default_status_vocabulary())

        assert prepared.amount == Decimal("1000.00")
        assert prepared.issue_date == date(2024, 1, 10)
        assert prepared.due_date == date(2024, 2, 9)
        assert prepared.currency == "USD"
        assert prepared.status == NormalizedStatus.PENDING
        # Input record untouched
        assert record.amount == "1000.00"

    def test_numeric_currency_code_kept_as_text(self):
        record = InvoiceRecord(id=1, source=RecordSource.SUBJECT, amount="10.00", currency=840)

        assert prepare_record(record, default_status_vocabulary()).currency == "840"

    def test_malformed_record_tagged_with_source(self):
        record = InvoiceRecord(id=3, source=RecordSource.REFERENCE, amount="n/a")
        with pytest.raises(MalformedRecord) as exc_info:
            prepare_record(record, default_status_vocabulary())
        assert exc_info.value.source == RecordSource.REFERENCE

    def test_missing_id_rejected(self):
        record = InvoiceRecord(id="  ", source=RecordSource.SUBJECT, amount="1")
        with pytest.raises(MalformedRecord):
            prepare_record(record, default_status_vocabulary())
