"""
Reconciliation Service

Batch coordinator for invoice comparison runs:
- Validates options (configuration problems abort before matching)
- Coerces records at the boundary, isolating malformed ones
- Runs key matching, then fuzzy matching over a bounded worker pool
- Checks a cancellation token between record batches
- Categorizes and summarizes once, at the end

Identical inputs and options always produce identical matches, confidences
and categories; results are audited.
"""

import hashlib
import json
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from categorization_service import categorize
from confidence_scorer import ConfidenceScorer
from matching_engine import ClaimTable, FuzzyMatcher, KeyMatcher
from matching_index import IndexCache, build_index, fingerprint_records
from matching_policy_service import (
    MatchingOptions, StatusVocabulary, default_status_vocabulary, validate_options,
)
from reconciliation_errors import MalformedRecord, RunCancelled
from reconciliation_models import (
    CategoryBuckets, ComparisonRun, InvoiceRecord, MatchCandidate,
    RecordError, RecordId, RecordSource, RunStatus, RunSummary,
)
from record_parsing import id_sort_key, prepare_record

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Run-level cancellation, checked between record batches.

    A caller may cancel() from another thread; a deadline turns into a
    cancellation the next time the token is checked. Each run checks its own
    token chained to the caller's, so a run's timeout never outlives the run.
    """

    def __init__(self, timeout_seconds: Optional[float] = None, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._deadline: Optional[float] = None
        self.parent = parent
        self.reason: Optional[str] = None
        if timeout_seconds is not None:
            self._deadline = time.monotonic() + timeout_seconds

    def cancel(self, reason: str = "Run cancelled by caller") -> None:
        self.reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("Run timed out")
            return True
        if self.parent is not None and self.parent.is_cancelled:
            self.cancel(self.parent.reason or "Run cancelled")
            return True
        return False

    def raise_if_cancelled(self) -> None:
        if self.parent is not None:
            self.parent.raise_if_cancelled()
        if self.is_cancelled:
            raise RunCancelled(self.reason or "Run cancelled")


def _batches(records: Sequence[InvoiceRecord], size: int) -> Iterator[Sequence[InvoiceRecord]]:
    for start in range(0, len(records), size):
        yield records[start:start + size]


def _rate(numerator: int, denominator: int) -> float:
    return round(numerator / denominator, 4) if denominator > 0 else 0.0


def compute_run_fingerprint(
    reference_records: Iterable[InvoiceRecord],
    subject_records: Iterable[InvoiceRecord],
    options: MatchingOptions,
) -> str:
    """
    Fingerprint of everything that determines a run's outcome.

    Execution settings (workers, batch size, timeout) are left out: they
    never change the result.
    """
    matching_options = options.to_dict()
    for execution_setting in ("max_workers", "batch_size", "timeout_seconds"):
        matching_options.pop(execution_setting, None)

    components = [
        fingerprint_records(reference_records),
        fingerprint_records(subject_records),
        json.dumps(matching_options, sort_keys=True, default=str),
    ]
    return hashlib.sha256("|".join(components).encode()).hexdigest()


class ReconciliationService:
    """
    Drives comparison runs.

    Usage:
        service = ReconciliationService()
        run = service.run(reference_records, subject_records, {"fuzzy_threshold": 0.85})
        run.summary.match_rate, run.categories.matched_disputed, run.errors
    """

    def __init__(
        self,
        status_vocabulary: Optional[StatusVocabulary] = None,
        index_cache: Optional[IndexCache] = None,
    ):
        self.status_vocabulary = status_vocabulary or default_status_vocabulary()
        self.index_cache = index_cache

    def run(
        self,
        reference_records: Iterable[InvoiceRecord],
        subject_records: Iterable[InvoiceRecord],
        options=None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> ComparisonRun:
        """
        Execute one comparison run.

        Raises:
            ConfigurationError: If options are invalid (before any matching)
        """
        options = validate_options(options)
        reference_records = tuple(reference_records)
        subject_records = tuple(subject_records)

        run = ComparisonRun(
            run_id=str(uuid.uuid4()),
            reference_records=reference_records,
            subject_records=subject_records,
            options=options,
            input_fingerprint=compute_run_fingerprint(reference_records, subject_records, options),
        )
        run.status = RunStatus.EXECUTING
        run.started_at = datetime.now(timezone.utc)
        start_time = time.time()

        logger.info(
            f"Starting comparison run {run.run_id}: {len(reference_records)} reference vs "
            f"{len(subject_records)} subject records"
        )

        token = CancellationToken(options.timeout_seconds, parent=cancellation_token)

        errors: List[RecordError] = []
        references, reference_errors = self._prepare(reference_records, RecordSource.REFERENCE)
        subjects, subject_errors = self._prepare(subject_records, RecordSource.SUBJECT)
        errors.extend(reference_errors)
        errors.extend(subject_errors)

        if self.index_cache is not None:
            index = self.index_cache.get_or_build(references)
        else:
            index = build_index(references)

        claims = ClaimTable()
        scorer = ConfidenceScorer(options)
        matches: List[MatchCandidate] = []
        failed_subjects: Set[RecordId] = set()
        run_errors: List[RecordError] = []

        try:
            self._run_key_phase(subjects, index, scorer, claims, options, token, matches, failed_subjects, errors)
            self._run_fuzzy_phase(subjects, references, scorer, claims, options, token, matches, failed_subjects, errors)
        except RunCancelled as e:
            logger.warning(f"Comparison run {run.run_id} stopped early: {e}")
            run_errors.append(RecordError(record_id=None, reason=str(e), error_type="run_cancelled"))

        participants = [s for s in subjects if s.id not in failed_subjects]
        categories = categorize(matches, participants, references)
        summary = build_summary(
            reference_records, subject_records, references, participants, matches, categories
        )

        errors.sort(key=lambda e: (e.source.value if e.source else "", id_sort_key(e.record_id)))
        run.matches = tuple(matches)
        run.categories = categories
        run.summary = summary
        run.errors = tuple(errors + run_errors)
        run.status = RunStatus.PARTIAL_FAILURE if run.errors else RunStatus.COMPLETED
        run.completed_at = datetime.now(timezone.utc)
        run.seal()

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Comparison run {run.run_id} {run.status.value} in {duration_ms:.0f}ms: "
            f"{summary.matched} matched, {summary.matched_disputed} disputed, "
            f"{summary.unmatched_subject_only} subject-only, "
            f"{summary.unmatched_reference_only} reference-only, {len(run.errors)} errors"
        )
        return run

    def _prepare(
        self,
        records: Sequence[InvoiceRecord],
        source: RecordSource,
    ) -> Tuple[List[InvoiceRecord], List[RecordError]]:
        """Coerce records; malformed, mis-tagged and duplicate records are excluded."""
        prepared: List[InvoiceRecord] = []
        errors: List[RecordError] = []
        seen_ids: Set[RecordId] = set()

        for record in records:
            try:
                if record.source != source:
                    tagged = getattr(record.source, "value", record.source)
                    raise MalformedRecord(record.id, f"record tagged {tagged} supplied as {source.value}")
                if record.id in seen_ids:
                    raise MalformedRecord(record.id, "duplicate record id")
                if record.id is not None:
                    seen_ids.add(record.id)
                prepared.append(prepare_record(record, self.status_vocabulary))
            except MalformedRecord as e:
                logger.warning(f"Excluding {source.value} record {record.id!r}: {e.reason}")
                errors.append(RecordError(record_id=record.id, reason=e.reason, source=source))
            except Exception as e:
                logger.warning(f"Excluding {source.value} record {record.id!r}: {type(e).__name__}: {e}")
                errors.append(RecordError(
                    record_id=record.id,
                    reason=f"{type(e).__name__}: {e}",
                    source=source,
                ))

        prepared.sort(key=lambda r: id_sort_key(r.id))
        return prepared, errors

    def _run_key_phase(self, subjects, index, scorer, claims, options, token, matches, failed_subjects, errors):
        key_matcher = KeyMatcher(index, scorer, claims)
        key_matched = 0

        for batch in _batches(subjects, options.batch_size):
            token.raise_if_cancelled()
            for subject in batch:
                try:
                    match = key_matcher.match(subject)
                except Exception as e:
                    logger.warning(f"Key matching failed for subject {subject.id!r}: {e}")
                    failed_subjects.add(subject.id)
                    errors.append(RecordError(
                        record_id=subject.id,
                        reason=f"{type(e).__name__}: {e}",
                        source=RecordSource.SUBJECT,
                        error_type="comparison_error",
                    ))
                    continue
                if match is not None:
                    matches.append(match)
                    key_matched += 1

        logger.info(f"Key matching: {key_matched} of {len(subjects)} subject records matched")

    def _run_fuzzy_phase(self, subjects, references, scorer, claims, options, token, matches, failed_subjects, errors):
        remaining = [
            s for s in subjects
            if not claims.is_subject_matched(s.id) and s.id not in failed_subjects
        ]
        pool = [r for r in references if not claims.is_claimed(r.id)]
        if not remaining or not pool:
            return

        fuzzy_matcher = FuzzyMatcher(scorer, claims, pool, options)
        fuzzy_matched = 0

        executor_context = (
            ThreadPoolExecutor(max_workers=options.max_workers, thread_name_prefix="fuzzy-match")
            if options.max_workers > 1 else nullcontext()
        )
        with executor_context as executor:
            for batch in _batches(remaining, options.batch_size):
                token.raise_if_cancelled()
                ranked_batch = fuzzy_matcher.score_batch(batch, executor)
                for ranked in ranked_batch:
                    if ranked.error is not None:
                        failed_subjects.add(ranked.subject.id)
                        errors.append(RecordError(
                            record_id=ranked.subject.id,
                            reason=ranked.error,
                            source=RecordSource.SUBJECT,
                            error_type="comparison_error",
                        ))
                batch_matches = fuzzy_matcher.resolve_claims(ranked_batch)
                matches.extend(batch_matches)
                fuzzy_matched += len(batch_matches)

        logger.info(
            f"Fuzzy matching: {fuzzy_matched} of {len(remaining)} remaining subject records "
            f"matched against {len(pool)} reference candidates"
        )


def build_summary(
    reference_records: Sequence[InvoiceRecord],
    subject_records: Sequence[InvoiceRecord],
    references: Sequence[InvoiceRecord],
    participants: Sequence[InvoiceRecord],
    matches: Sequence[MatchCandidate],
    categories: CategoryBuckets,
) -> RunSummary:
    """
    Summary statistics, computed once from the final categorization.

    Totals count every input record, including the ones excluded as malformed.
    """
    total_reference = len(reference_records)
    total_subject = len(subject_records)
    matched = len(matches)
    disputed = len(categories.matched_disputed)
    approved = len(categories.matched_approved)

    reference_amount = sum((r.amount for r in references), Decimal("0"))
    subject_amount = sum((s.amount for s in participants), Decimal("0"))

    return RunSummary(
        total_reference=total_reference,
        total_subject=total_subject,
        matched=matched,
        match_rate=_rate(matched, total_subject),
        dispute_rate=_rate(disputed, matched),
        approval_rate=_rate(approved, matched),
        matched_approved=approved,
        matched_pending_approval=len(categories.matched_pending_approval),
        matched_disputed=disputed,
        unmatched_reference_only=len(categories.unmatched_reference_only),
        unmatched_subject_only=len(categories.unmatched_subject_only),
        excluded_reference=total_reference - len(references),
        excluded_subject=total_subject - len(participants),
        reference_total_amount=reference_amount,
        subject_total_amount=subject_amount,
        variance=subject_amount - reference_amount,
    )


def run_comparison(
    reference_records: Iterable[InvoiceRecord],
    subject_records: Iterable[InvoiceRecord],
    options=None,
    status_vocabulary: Optional[StatusVocabulary] = None,
    cancellation_token: Optional[CancellationToken] = None,
) -> ComparisonRun:
    """Run a single comparison with a fresh service."""
    service = ReconciliationService(status_vocabulary=status_vocabulary)
    return service.run(reference_records, subject_records, options, cancellation_token)
