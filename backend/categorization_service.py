"""
Categorization Service

Sorts every record of a run into exactly one of five buckets.

Decision Matrix (matched SUBJECT records):
| Amount discrepancy? | Status    | Result                   |
|---------------------|-----------|--------------------------|
| yes                 | any       | matched_disputed         |
| no                  | REJECTED  | matched_disputed         |
| no                  | APPROVED  | matched_approved         |
| no                  | PENDING   | matched_pending_approval |
| no                  | OTHER     | matched_pending_approval |

Unclaimed REFERENCE records -> unmatched_reference_only
Unclaimed SUBJECT records   -> unmatched_subject_only

Statuses arrive already resolved to NormalizedStatus by the injected vocabulary.
"""

from typing import Dict, Iterable, Sequence

from reconciliation_models import (
    Category, CategoryBuckets, DiscrepancyField, InvoiceRecord,
    MatchCandidate, NormalizedStatus, RecordId,
)
from record_parsing import id_sort_key


def categorize_match(match: MatchCandidate, subject_status: NormalizedStatus) -> Category:
    """Category for one matched pair, from the SUBJECT status and the amount check."""
    if match.has_discrepancy(DiscrepancyField.AMOUNT):
        return Category.MATCHED_DISPUTED
    if subject_status == NormalizedStatus.REJECTED:
        return Category.MATCHED_DISPUTED
    if subject_status == NormalizedStatus.APPROVED:
        return Category.MATCHED_APPROVED
    # PENDING, and unclear statuses default to pending
    return Category.MATCHED_PENDING_APPROVAL


def categorize(
    matches: Sequence[MatchCandidate],
    subject_records: Iterable[InvoiceRecord],
    reference_records: Iterable[InvoiceRecord],
) -> CategoryBuckets:
    """
    Assign every SUBJECT and REFERENCE record to one bucket.

    Only records that took part in matching are passed in; records excluded
    as malformed are tracked in the run's error list instead.
    """
    buckets = CategoryBuckets()
    subjects: Dict[RecordId, InvoiceRecord] = {r.id: r for r in subject_records}
    matched_subjects = set()
    matched_references = set()

    for match in sorted(matches, key=lambda m: id_sort_key(m.subject_id)):
        subject = subjects[match.subject_id]
        category = categorize_match(match, subject.status)
        buckets.bucket(category).append(match.subject_id)
        matched_subjects.add(match.subject_id)
        matched_references.add(match.reference_id)

    for subject_id in sorted(subjects, key=id_sort_key):
        if subject_id not in matched_subjects:
            buckets.unmatched_subject_only.append(subject_id)

    for reference in sorted(reference_records, key=lambda r: id_sort_key(r.id)):
        if reference.id not in matched_references:
            buckets.unmatched_reference_only.append(reference.id)

    return buckets

