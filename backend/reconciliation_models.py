"""
Reconciliation Models

In-memory data structures for invoice reconciliation runs.

All structured data uses dataclasses; money values use Decimal for precision.
Discrepancy values are a closed union (str | Decimal | date | None), never
untyped blobs.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union
import enum

from reconciliation_errors import RunSealedError


RecordId = Union[int, str]
DiscrepancyValue = Union[str, Decimal, date, None]


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class RecordSource(str, enum.Enum):
    """Which ledger a record came from."""
    REFERENCE = "REFERENCE"  # Ground truth for the run (buyer approval feed)
    SUBJECT = "SUBJECT"      # Ledger being reconciled (counterparty AR feed)


class NormalizedStatus(str, enum.Enum):
    """Closed status vocabulary the categorizer works with."""
    APPROVED = "APPROVED"
    PENDING = "PENDING"
    REJECTED = "REJECTED"
    OTHER = "OTHER"


class MatchType(str, enum.Enum):
    INVOICE_NUMBER = "INVOICE_NUMBER"
    PO_NUMBER = "PO_NUMBER"
    FUZZY = "FUZZY"


class DiscrepancyField(str, enum.Enum):
    AMOUNT = "amount"
    ISSUE_DATE = "issue_date"
    DUE_DATE = "due_date"
    CURRENCY = "currency"
    COUNTERPARTY = "counterparty"


class Category(str, enum.Enum):
    """Mutually exclusive outcome buckets."""
    MATCHED_APPROVED = "matched_approved"
    MATCHED_PENDING_APPROVAL = "matched_pending_approval"
    MATCHED_DISPUTED = "matched_disputed"
    UNMATCHED_REFERENCE_ONLY = "unmatched_reference_only"
    UNMATCHED_SUBJECT_ONLY = "unmatched_subject_only"


class RunStatus(str, enum.Enum):
    """Lifecycle of a comparison run."""
    CONSTRUCTED = "constructed"
    EXECUTING = "executing"
    COMPLETED = "completed"
    PARTIAL_FAILURE = "partial_failure"  # Completed, but with record or run errors


def _json_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    return value


# ═══════════════════════════════════════════════════════════════════════════════
# RECORDS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class InvoiceRecord:
    """
    One invoice/bill line from either ledger, in canonical shape.

    Raw values straight from the Normalizer are accepted for amount, dates and
    status; the coordinator coerces them (Decimal, date, NormalizedStatus)
    before matching and reports anything it cannot coerce.
    """
    id: RecordId
    source: RecordSource
    amount: Any
    invoice_number: Optional[str] = None
    po_number: Optional[str] = None
    currency: Optional[str] = None
    issue_date: Any = None
    due_date: Any = None
    supplier_or_customer_name: Optional[str] = None
    status: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": getattr(self.source, "value", self.source),
            "invoice_number": self.invoice_number,
            "po_number": self.po_number,
            "amount": _json_value(self.amount),
            "currency": self.currency,
            "issue_date": _json_value(self.issue_date),
            "due_date": _json_value(self.due_date),
            "supplier_or_customer_name": self.supplier_or_customer_name,
            "status": _json_value(self.status),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# MATCHES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Discrepancy:
    """A compared field whose values differ beyond tolerance."""
    field: DiscrepancyField
    subject_value: DiscrepancyValue
    reference_value: DiscrepancyValue
    difference: Union[Decimal, int, None] = None  # amount: subject - reference; dates: abs days

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field.value,
            "subject_value": _json_value(self.subject_value),
            "reference_value": _json_value(self.reference_value),
            "difference": _json_value(self.difference),
        }


@dataclass
class MatchCandidate:
    """A proposed pairing of one SUBJECT record to one REFERENCE record."""
    subject_id: RecordId
    reference_id: RecordId
    match_type: MatchType
    confidence: float  # 0.0 - 1.0
    discrepancies: List[Discrepancy] = field(default_factory=list)
    match_reasons: List[str] = field(default_factory=list)

    @property
    def match_id(self) -> str:
        return f"{self.subject_id}-{self.reference_id}"

    def has_discrepancy(self, discrepancy_field: DiscrepancyField) -> bool:
        return any(d.field == discrepancy_field for d in self.discrepancies)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "match_id": self.match_id,
            "subject_id": self.subject_id,
            "reference_id": self.reference_id,
            "match_type": self.match_type.value,
            "confidence": self.confidence,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "match_reasons": list(self.match_reasons),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# RUN RESULTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class CategoryBuckets:
    """Five disjoint buckets of record ids. Matched buckets hold SUBJECT ids."""
    matched_approved: List[RecordId] = field(default_factory=list)
    matched_pending_approval: List[RecordId] = field(default_factory=list)
    matched_disputed: List[RecordId] = field(default_factory=list)
    unmatched_reference_only: List[RecordId] = field(default_factory=list)
    unmatched_subject_only: List[RecordId] = field(default_factory=list)

    def bucket(self, category: Category) -> List[RecordId]:
        return getattr(self, category.value)

    def matched_category(self, subject_id: RecordId) -> Optional[Category]:
        """Category of a matched SUBJECT record, or None if it was not matched."""
        for category in (
            Category.MATCHED_APPROVED,
            Category.MATCHED_PENDING_APPROVAL,
            Category.MATCHED_DISPUTED,
        ):
            if subject_id in self.bucket(category):
                return category
        return None

    def to_dict(self) -> Dict[str, List[RecordId]]:
        return {category.value: list(self.bucket(category)) for category in Category}


@dataclass(frozen=True)
class RecordError:
    """A record excluded from matching, or a run-level failure (record_id None)."""
    record_id: Optional[RecordId]
    reason: str
    source: Optional[RecordSource] = None
    error_type: str = "malformed_record"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "source": self.source.value if self.source else None,
            "reason": self.reason,
            "error_type": self.error_type,
        }


@dataclass(frozen=True)
class RunSummary:
    """Run statistics, computed once after categorization."""
    total_reference: int
    total_subject: int
    matched: int
    match_rate: float      # matched / total_subject
    dispute_rate: float    # disputed / matched
    approval_rate: float   # approved / matched
    matched_approved: int = 0
    matched_pending_approval: int = 0
    matched_disputed: int = 0
    unmatched_reference_only: int = 0
    unmatched_subject_only: int = 0
    excluded_reference: int = 0
    excluded_subject: int = 0
    reference_total_amount: Decimal = Decimal("0")
    subject_total_amount: Decimal = Decimal("0")
    variance: Decimal = Decimal("0")  # subject_total_amount - reference_total_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_reference": self.total_reference,
            "total_subject": self.total_subject,
            "matched": self.matched,
            "match_rate": self.match_rate,
            "dispute_rate": self.dispute_rate,
            "approval_rate": self.approval_rate,
            "matched_approved": self.matched_approved,
            "matched_pending_approval": self.matched_pending_approval,
            "matched_disputed": self.matched_disputed,
            "unmatched_reference_only": self.unmatched_reference_only,
            "unmatched_subject_only": self.unmatched_subject_only,
            "excluded_reference": self.excluded_reference,
            "excluded_subject": self.excluded_subject,
            "reference_total_amount": str(self.reference_total_amount),
            "subject_total_amount": str(self.subject_total_amount),
            "variance": str(self.variance),
        }


@dataclass
class ComparisonRun:
    """
    The unit of work: two immutable input sets, options, and the outcome.

    A run is created fresh per invocation and sealed on completion. It is
    superseded by a new run, never mutated.
    """
    run_id: str
    reference_records: Tuple[InvoiceRecord, ...]
    subject_records: Tuple[InvoiceRecord, ...]
    options: Any  # MatchingOptions
    input_fingerprint: str = ""
    status: RunStatus = RunStatus.CONSTRUCTED
    matches: Tuple[MatchCandidate, ...] = ()
    categories: CategoryBuckets = field(default_factory=CategoryBuckets)
    summary: Optional[RunSummary] = None
    errors: Tuple[RecordError, ...] = ()
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def __setattr__(self, name, value):
        if self.__dict__.get("_sealed"):
            raise RunSealedError(
                f"Cannot modify completed comparison run {self.run_id}. "
                f"Submit a new run instead."
            )
        super().__setattr__(name, value)

    def seal(self) -> None:
        """Freeze the run once it has completed."""
        self.__dict__["_sealed"] = True

    @property
    def is_sealed(self) -> bool:
        return bool(self.__dict__.get("_sealed"))

    @property
    def is_partial_failure(self) -> bool:
        return self.status == RunStatus.PARTIAL_FAILURE

    def get_match_for_subject(self, subject_id: RecordId) -> Optional[MatchCandidate]:
        for match in self.matches:
            if match.subject_id == subject_id:
                return match
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "input_fingerprint": self.input_fingerprint,
            "status": self.status.value,
            "matches": [m.to_dict() for m in self.matches],
            "categories": self.categories.to_dict(),
            "summary": self.summary.to_dict() if self.summary else None,
            "errors": [e.to_dict() for e in self.errors],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
