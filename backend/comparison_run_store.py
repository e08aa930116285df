"""
Comparison Run Store

Persists completed comparison runs at the coordinator's boundary.

- Runs are inserted once and never rewritten
- Re-submitting identical inputs for a company supersedes the older run
- Recent runs and per-company statistics for reporting
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from comparison_run_models import ComparisonRunRecord, MatchRecord
from reconciliation_models import ComparisonRun

logger = logging.getLogger(__name__)


class ComparisonRunStore:
    """
    Usage:
        store = ComparisonRunStore(db)
        record = store.save_run(run, company_id="acme")
        store.get_recent_runs("acme")
    """

    def __init__(self, db: Session):
        self.db = db

    def save_run(
        self,
        run: ComparisonRun,
        company_id: str,
        counterparty_id: Optional[str] = None,
        source_type_reference: Optional[str] = None,
        source_type_subject: Optional[str] = None,
        uploaded_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ComparisonRunRecord:
        """
        Store a completed run and supersede earlier runs over the same inputs.

        Raises:
            ValueError: If the run has not completed
        """
        if not run.is_sealed or run.summary is None:
            raise ValueError(f"Comparison run {run.run_id} has not completed")

        processing_time_ms = None
        if run.started_at and run.completed_at:
            processing_time_ms = (run.completed_at - run.started_at).total_seconds() * 1000

        record = ComparisonRunRecord(
            run_id=run.run_id,
            company_id=company_id,
            counterparty_id=counterparty_id,
            input_fingerprint=run.input_fingerprint,
            status=run.status.value,
            started_at=run.started_at,
            completed_at=run.completed_at,
            processing_time_ms=processing_time_ms,
            summary_json=run.summary.to_dict(),
            categories_json=run.categories.to_dict(),
            errors_json=[e.to_dict() for e in run.errors],
            options_json=run.options.to_dict(),
            source_type_reference=source_type_reference,
            source_type_subject=source_type_subject,
            uploaded_by=uploaded_by,
            notes=notes,
        )

        for match in run.matches:
            category = run.categories.matched_category(match.subject_id)
            record.matches.append(MatchRecord(
                match_id=match.match_id,
                subject_record_id=str(match.subject_id),
                reference_record_id=str(match.reference_id),
                match_type=match.match_type.value,
                confidence=match.confidence,
                category=category.value if category else "unknown",
                discrepancies_json=[d.to_dict() for d in match.discrepancies],
                match_reasons_json=list(match.match_reasons),
            ))

        self.db.add(record)
        self.db.flush()

        superseded = self.db.query(ComparisonRunRecord).filter(
            ComparisonRunRecord.company_id == company_id,
            ComparisonRunRecord.input_fingerprint == run.input_fingerprint,
            ComparisonRunRecord.superseded_by_id.is_(None),
            ComparisonRunRecord.id != record.id,
        ).all()
        for older in superseded:
            older.superseded_by_id = record.id

        self.db.commit()
        self.db.refresh(record)

        logger.info(
            f"Stored comparison run {run.run_id} for company {company_id} "
            f"({len(run.matches)} matches, {len(superseded)} superseded)"
        )
        return record

    def get_run(self, run_id: str) -> Optional[ComparisonRunRecord]:
        return self.db.query(ComparisonRunRecord).filter(
            ComparisonRunRecord.run_id == run_id
        ).first()

    def get_recent_runs(
        self,
        company_id: str,
        limit: int = 10,
        include_superseded: bool = False,
    ) -> List[ComparisonRunRecord]:
        """Most recent runs for a company, newest first."""
        query = self.db.query(ComparisonRunRecord).filter(
            ComparisonRunRecord.company_id == company_id
        )
        if not include_superseded:
            query = query.filter(ComparisonRunRecord.superseded_by_id.is_(None))
        return query.order_by(
            ComparisonRunRecord.match_run_date.desc(),
            ComparisonRunRecord.id.desc(),
        ).limit(limit).all()

    def get_company_statistics(self, company_id: str) -> Dict[str, Any]:
        """Aggregate statistics over a company's current (non-superseded) runs."""
        runs = self.db.query(ComparisonRunRecord).filter(
            ComparisonRunRecord.company_id == company_id,
            ComparisonRunRecord.superseded_by_id.is_(None),
        ).all()

        last_run = self.db.query(func.max(ComparisonRunRecord.match_run_date)).filter(
            ComparisonRunRecord.company_id == company_id
        ).scalar()

        match_rates = [(r.summary_json or {}).get("match_rate", 0.0) for r in runs]

        return {
            "company_id": company_id,
            "total_runs": len(runs),
            "avg_match_rate": round(sum(match_rates) / len(match_rates), 4) if match_rates else 0.0,
            "total_matched": sum((r.summary_json or {}).get("matched", 0) for r in runs),
            "total_disputed": sum((r.summary_json or {}).get("matched_disputed", 0) for r in runs),
            "partial_failures": sum(1 for r in runs if r.status == "partial_failure"),
            "last_run": last_run.isoformat() if last_run else None,
        }
