"""
Record Parsing

Boundary coercion for invoice records: keys, names, amounts, dates and ids.
Everything here is pure; failures raise MalformedRecord so the coordinator
can isolate the offending record.
"""

import re
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Tuple

from reconciliation_errors import MalformedRecord
from reconciliation_models import InvoiceRecord, RecordId

# Suffixes dropped from counterparty names before comparison
LEGAL_SUFFIXES = (
    " ltd", " llc", " inc", " gmbh", " ag", " sa", " bv", " nv",
    " corp", " corporation", " co", " plc", " limited",
)

DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%Y/%m/%d", "%d.%m.%Y", "%m/%d/%Y")


def normalize_key(value: Any) -> str:
    """Normalize an invoice or PO number: lower-case, trimmed, internal whitespace collapsed."""
    if value is None:
        return ""
    return " ".join(str(value).lower().split())


def normalize_name(name: Optional[str]) -> str:
    """Normalize a supplier/customer name for similarity scoring."""
    if not name:
        return ""

    name = str(name).lower()

    # Remove punctuation
    name = re.sub(r"[^\w\s]", " ", name)

    # Collapse whitespace
    name = " ".join(name.split())

    # Remove common legal suffixes
    for suffix in LEGAL_SUFFIXES:
        if name.endswith(suffix) and len(name) > len(suffix):
            name = name[:-len(suffix)].rstrip()
            break

    return name


def parse_amount(value: Any, record_id: RecordId = None) -> Decimal:
    """
    Coerce a raw amount to Decimal.

    Accepts Decimal, int, float and numeric strings (thousands separators and
    currency symbols stripped). Negative and non-finite amounts are rejected.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise MalformedRecord(record_id, "missing amount")
    if isinstance(value, bool):
        raise MalformedRecord(record_id, f"unparseable amount {value!r}")

    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    else:
        cleaned = re.sub(r"[\s,$€£]", "", str(value))
        try:
            amount = Decimal(cleaned)
        except InvalidOperation:
            raise MalformedRecord(record_id, f"unparseable amount {value!r}")

    if not amount.is_finite():
        raise MalformedRecord(record_id, f"non-finite amount {value!r}")
    if amount < 0:
        raise MalformedRecord(record_id, f"negative amount {value!r}")
    return amount


def parse_date(value: Any, record_id: RecordId = None, field_name: str = "date") -> Optional[date]:
    """Coerce a raw date (date, datetime or string) to a timezone-naive calendar date."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise MalformedRecord(record_id, f"unparseable {field_name} {value!r}")


def id_sort_key(record_id: RecordId) -> Tuple[int, Any]:
    """Stable ordering for opaque ids: integers numerically, then strings."""
    if isinstance(record_id, int) and not isinstance(record_id, bool):
        return (0, record_id)
    return (1, str(record_id))


def date_sort_key(value: Optional[date]) -> Tuple[int, date]:
    """Earliest first; missing dates sort last."""
    if value is None:
        return (1, date.max)
    return (0, value)


def prepare_record(record: InvoiceRecord, status_vocabulary) -> InvoiceRecord:
    """
    Return a copy of the record with coerced amount, dates and status.

    Raises:
        MalformedRecord: If the id is missing or amount/dates cannot be parsed
    """
    if record.id is None or (isinstance(record.id, str) and not record.id.strip()):
        raise MalformedRecord(record.id, "missing record id", source=record.source)

    try:
        amount = parse_amount(record.amount, record.id)
        issue_date = parse_date(record.issue_date, record.id, "issue_date")
        due_date = parse_date(record.due_date, record.id, "due_date")
    except MalformedRecord as e:
        e.source = record.source
        raise

    # Currency codes sometimes arrive numeric (ISO 4217 840)
    currency = str(record.currency).strip().upper() if record.currency is not None else ""

    return replace(
        record,
        amount=amount,
        issue_date=issue_date,
        due_date=due_date,
        currency=currency or None,
        status=status_vocabulary.resolve(record.status),
    )
