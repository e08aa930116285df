"""
Confidence Scorer

confidence = w_name * name_similarity + w_amount * amount_similarity + w_date * date_similarity

- name_similarity: normalized counterparty names, 1.0 when identical,
  otherwise rapidfuzz token_sort_ratio mapped to [0, 1]
- amount_similarity: max(0, 1 - |delta| / max(amount_tolerance, 1))
- date_similarity: max(0, 1 - |delta_days| / max(date_tolerance, 1)) on issue date

A missing name or date on either side scores 0 for that component.
Discrepancies are recorded for every compared field beyond tolerance,
independent of whether the overall confidence clears the threshold.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from rapidfuzz import fuzz

from reconciliation_models import (
    Discrepancy, DiscrepancyField, InvoiceRecord, MatchType,
)
from record_parsing import normalize_name

# Confidence is reported with fixed precision so re-runs compare byte-for-byte
CONFIDENCE_PRECISION = 4

# Base confidence for exact-key matches
KEY_MATCH_BASE_CONFIDENCE = {
    MatchType.INVOICE_NUMBER: 1.0,
    MatchType.PO_NUMBER: 0.9,
}

# Penalty per discrepancy on an exact-key match
KEY_MATCH_PENALTIES = {
    DiscrepancyField.AMOUNT: 0.10,
    DiscrepancyField.ISSUE_DATE: 0.05,
    DiscrepancyField.DUE_DATE: 0.05,
}


@dataclass
class ScoreBreakdown:
    """Field-level similarities behind a confidence value."""
    name_similarity: float
    amount_similarity: float
    date_similarity: float
    confidence: float
    discrepancies: List[Discrepancy] = field(default_factory=list)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def name_similarity(subject_name: Optional[str], reference_name: Optional[str]) -> float:
    a = normalize_name(subject_name)
    b = normalize_name(reference_name)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return _clamp(fuzz.token_sort_ratio(a, b) / 100.0)


def amount_similarity(subject_amount: Decimal, reference_amount: Decimal, amount_tolerance: Decimal) -> float:
    delta = abs(subject_amount - reference_amount)
    scale = max(Decimal(amount_tolerance), Decimal("1"))
    return _clamp(float(Decimal("1") - delta / scale))


def date_similarity(subject_date, reference_date, date_tolerance: int) -> float:
    if subject_date is None or reference_date is None:
        return 0.0
    delta_days = abs((subject_date - reference_date).days)
    return _clamp(1.0 - delta_days / max(date_tolerance, 1))


class ConfidenceScorer:
    """
    Scores SUBJECT/REFERENCE pairings against one run's options.

    Expects coerced records (Decimal amounts, date objects).
    Stateless apart from the options, so safe to share across worker threads.
    """

    def __init__(self, options):
        self.options = options
        self.weights = options.weights

    def find_discrepancies(self, subject: InvoiceRecord, reference: InvoiceRecord) -> List[Discrepancy]:
        """Compare all fields; record those differing beyond tolerance."""
        discrepancies = []

        # Amount
        amount_diff = subject.amount - reference.amount
        if abs(amount_diff) > self.options.amount_tolerance:
            discrepancies.append(Discrepancy(
                field=DiscrepancyField.AMOUNT,
                subject_value=subject.amount,
                reference_value=reference.amount,
                difference=amount_diff,
            ))

        # Dates
        for date_field, attr in (
            (DiscrepancyField.ISSUE_DATE, "issue_date"),
            (DiscrepancyField.DUE_DATE, "due_date"),
        ):
            subject_date = getattr(subject, attr)
            reference_date = getattr(reference, attr)
            if subject_date is None or reference_date is None:
                continue
            days = abs((subject_date - reference_date).days)
            if days > self.options.date_tolerance:
                discrepancies.append(Discrepancy(
                    field=date_field,
                    subject_value=subject_date,
                    reference_value=reference_date,
                    difference=days,
                ))

        # Currency (no conversion, so any difference is reported)
        if subject.currency and reference.currency and subject.currency != reference.currency:
            discrepancies.append(Discrepancy(
                field=DiscrepancyField.CURRENCY,
                subject_value=subject.currency,
                reference_value=reference.currency,
            ))

        # Counterparty
        subject_name = normalize_name(subject.supplier_or_customer_name)
        reference_name = normalize_name(reference.supplier_or_customer_name)
        if subject_name and reference_name and subject_name != reference_name:
            discrepancies.append(Discrepancy(
                field=DiscrepancyField.COUNTERPARTY,
                subject_value=subject.supplier_or_customer_name,
                reference_value=reference.supplier_or_customer_name,
            ))

        return discrepancies

    def score(self, subject: InvoiceRecord, reference: InvoiceRecord) -> ScoreBreakdown:
        """Trial confidence for a candidate pairing (used by fuzzy matching)."""
        name_sim = name_similarity(subject.supplier_or_customer_name, reference.supplier_or_customer_name)
        amount_sim = amount_similarity(subject.amount, reference.amount, self.options.amount_tolerance)
        date_sim = date_similarity(subject.issue_date, reference.issue_date, self.options.date_tolerance)

        confidence = (
            self.weights.name * name_sim
            + self.weights.amount * amount_sim
            + self.weights.date * date_sim
        )

        return ScoreBreakdown(
            name_similarity=name_sim,
            amount_similarity=amount_sim,
            date_similarity=date_sim,
            confidence=round(_clamp(confidence), CONFIDENCE_PRECISION),
            discrepancies=self.find_discrepancies(subject, reference),
        )

    def key_match_confidence(self, match_type: MatchType, discrepancies: List[Discrepancy]) -> float:
        """Exact-key confidence: base for the key type minus a penalty per discrepancy."""
        confidence = KEY_MATCH_BASE_CONFIDENCE.get(match_type, 1.0)
        for discrepancy in discrepancies:
            confidence -= KEY_MATCH_PENALTIES.get(discrepancy.field, 0.0)
        return round(_clamp(confidence), CONFIDENCE_PRECISION)
