"""
Invoice Matching Engine

Pairs SUBJECT records with REFERENCE records in two phases:

- Phase 1: Key matching (invoice number, then PO number), exact after normalization
- Phase 2: Fuzzy matching (counterparty name + amount + issue date), threshold gated

Key Principles:
- A REFERENCE record is claimed by at most one SUBJECT record per run
- SUBJECT records are processed by id ascending (first claim wins)
- Fuzzy scoring is parallel and read-only; claiming is a serial pass by
  SUBJECT id, so worker scheduling never changes the outcome
- Ties break on amount proximity, then earliest issue date, then REFERENCE id
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from confidence_scorer import ConfidenceScorer, ScoreBreakdown
from matching_index import MatchingIndex
from reconciliation_models import InvoiceRecord, MatchCandidate, MatchType, RecordId
from record_parsing import date_sort_key, id_sort_key, normalize_key

logger = logging.getLogger(__name__)


def tie_break_key(subject: InvoiceRecord, reference: InvoiceRecord) -> Tuple[Decimal, Tuple, Tuple]:
    """Deterministic ordering among equally good REFERENCE candidates."""
    return (
        abs(subject.amount - reference.amount),
        date_sort_key(reference.issue_date),
        id_sort_key(reference.id),
    )


class ClaimTable:
    """
    Per-run claim state: which REFERENCE record belongs to which SUBJECT record.

    Reads are unsynchronized; try_claim is the single arbitration point.
    """

    def __init__(self):
        self._reference_to_subject: Dict[RecordId, RecordId] = {}
        self._subject_to_reference: Dict[RecordId, RecordId] = {}
        self._lock = threading.Lock()

    def try_claim(self, reference_id: RecordId, subject_id: RecordId) -> bool:
        """Compare-and-set: claim reference_id for subject_id if both are still free."""
        with self._lock:
            if reference_id in self._reference_to_subject:
                return False
            if subject_id in self._subject_to_reference:
                return False
            self._reference_to_subject[reference_id] = subject_id
            self._subject_to_reference[subject_id] = reference_id
            return True

    def is_claimed(self, reference_id: RecordId) -> bool:
        return reference_id in self._reference_to_subject

    def is_subject_matched(self, subject_id: RecordId) -> bool:
        return subject_id in self._subject_to_reference

    def claimed_by(self, reference_id: RecordId) -> Optional[RecordId]:
        return self._reference_to_subject.get(reference_id)

    def reset(self) -> None:
        with self._lock:
            self._reference_to_subject.clear()
            self._subject_to_reference.clear()

    def __len__(self) -> int:
        return len(self._reference_to_subject)


class KeyMatcher:
    """
    Exact-key matching against the REFERENCE index.

    Usage:
        matcher = KeyMatcher(index, scorer, claims)
        match = matcher.match(subject_record)
    """

    KEY_LABELS = {
        MatchType.INVOICE_NUMBER: "Invoice number",
        MatchType.PO_NUMBER: "PO number",
    }

    def __init__(self, index: MatchingIndex, scorer: ConfidenceScorer, claims: ClaimTable):
        self.index = index
        self.scorer = scorer
        self.claims = claims

    def match(self, subject: InvoiceRecord) -> Optional[MatchCandidate]:
        """Try invoice number first, then PO number. Claims the chosen REFERENCE record."""
        for match_type, raw_key, candidate_ids in (
            (MatchType.INVOICE_NUMBER, subject.invoice_number,
             self.index.lookup_invoice_number(subject.invoice_number)),
            (MatchType.PO_NUMBER, subject.po_number,
             self.index.lookup_po_number(subject.po_number)),
        ):
            match = self._match_on_key(subject, match_type, normalize_key(raw_key), candidate_ids)
            if match is not None:
                return match
        return None

    def _match_on_key(
        self,
        subject: InvoiceRecord,
        match_type: MatchType,
        key: str,
        candidate_ids: List[RecordId]
    ) -> Optional[MatchCandidate]:
        unclaimed = [
            self.index.get(ref_id) for ref_id in candidate_ids
            if not self.claims.is_claimed(ref_id)
        ]
        if not unclaimed:
            return None

        label = self.KEY_LABELS[match_type]
        reasons = [f"{label} match: {key}"]

        ranked = sorted(unclaimed, key=lambda ref: tie_break_key(subject, ref))
        if len(ranked) > 1:
            logger.debug(
                f"Ambiguous {label.lower()} {key!r} for subject {subject.id}: "
                f"{len(ranked)} unclaimed candidates"
            )
            reasons.append(
                f"Ambiguous key: {len(ranked)} unclaimed candidates, "
                f"resolved by amount proximity, issue date, then id"
            )

        for reference in ranked:
            discrepancies = self.scorer.find_discrepancies(subject, reference)
            confidence = self.scorer.key_match_confidence(match_type, discrepancies)
            if not self.claims.try_claim(reference.id, subject.id):
                continue
            if discrepancies:
                reasons.append(
                    "Discrepancies: " + ", ".join(d.field.value for d in discrepancies)
                )
            return MatchCandidate(
                subject_id=subject.id,
                reference_id=reference.id,
                match_type=match_type,
                confidence=confidence,
                discrepancies=discrepancies,
                match_reasons=reasons,
            )
        return None


@dataclass
class RankedCandidates:
    """Fuzzy candidates for one SUBJECT record, best first, all above threshold."""
    subject: InvoiceRecord
    candidates: List[Tuple[ScoreBreakdown, InvoiceRecord]] = field(default_factory=list)
    error: Optional[str] = None


class FuzzyMatcher:
    """
    Weighted-similarity matching for SUBJECT records without a key match.

    The candidate pool is fixed when the matcher is created (REFERENCE records
    still unclaimed after key matching), so results do not depend on batch
    size or worker count.
    """

    def __init__(
        self,
        scorer: ConfidenceScorer,
        claims: ClaimTable,
        reference_pool: Sequence[InvoiceRecord],
        options,
    ):
        self.scorer = scorer
        self.claims = claims
        self.options = options
        self.reference_pool = sorted(reference_pool, key=lambda r: id_sort_key(r.id))

    def rank_candidates(self, subject: InvoiceRecord) -> List[Tuple[ScoreBreakdown, InvoiceRecord]]:
        """Score the pool for one subject. Read-only; safe to run concurrently."""
        pool = self.reference_pool
        limit = self.options.max_candidates_per_record
        if limit is not None and len(pool) > limit:
            pool = sorted(pool, key=lambda ref: tie_break_key(subject, ref))[:limit]

        scored = []
        for reference in pool:
            breakdown = self.scorer.score(subject, reference)
            if breakdown.confidence >= self.options.fuzzy_threshold:
                scored.append((breakdown, reference))

        scored.sort(key=lambda item: (-item[0].confidence,) + tie_break_key(subject, item[1]))
        return scored

    def _rank_isolated(self, subject: InvoiceRecord) -> RankedCandidates:
        try:
            return RankedCandidates(subject=subject, candidates=self.rank_candidates(subject))
        except Exception as e:
            logger.warning(f"Fuzzy scoring failed for subject {subject.id}: {e}")
            return RankedCandidates(subject=subject, error=f"{type(e).__name__}: {e}")

    def score_batch(self, subjects: Sequence[InvoiceRecord], executor: Optional[ThreadPoolExecutor] = None) -> List[RankedCandidates]:
        """Score a batch of subjects, in parallel when an executor is given. Order is preserved."""
        if executor is None:
            return [self._rank_isolated(subject) for subject in subjects]
        return list(executor.map(self._rank_isolated, subjects))

    def resolve_claims(self, ranked_batch: Sequence[RankedCandidates]) -> List[MatchCandidate]:
        """
        Serial claim pass in SUBJECT id order.

        Each subject takes its best candidate that is still unclaimed.
        """
        matches = []
        for ranked in sorted(ranked_batch, key=lambda r: id_sort_key(r.subject.id)):
            if ranked.error is not None:
                continue
            subject = ranked.subject
            for breakdown, reference in ranked.candidates:
                if not self.claims.try_claim(reference.id, subject.id):
                    continue
                reasons = [
                    f"Fuzzy match: name {breakdown.name_similarity:.2f}, "
                    f"amount {breakdown.amount_similarity:.2f}, "
                    f"date {breakdown.date_similarity:.2f}"
                ]
                if breakdown.discrepancies:
                    reasons.append(
                        "Discrepancies: " + ", ".join(d.field.value for d in breakdown.discrepancies)
                    )
                matches.append(MatchCandidate(
                    subject_id=subject.id,
                    reference_id=reference.id,
                    match_type=MatchType.FUZZY,
                    confidence=breakdown.confidence,
                    discrepancies=list(breakdown.discrepancies),
                    match_reasons=reasons,
                ))
                break
            else:
                logger.debug(
                    f"No candidate above threshold {self.options.fuzzy_threshold} "
                    f"for subject {subject.id}"
                )
        return matches
