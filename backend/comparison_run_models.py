"""
Comparison Run Models

Persistent storage for completed comparison runs, their matches, and
per-company matching policies. Used only by the persistence boundary;
the engine works on in-memory records.
"""

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, ForeignKey, JSON, Text,
    CheckConstraint, Index
)
from sqlalchemy.orm import declarative_base, relationship
import datetime


Base = declarative_base()


# ═══════════════════════════════════════════════════════════════════════════════
# COMPARISON RUN MODEL
# ═══════════════════════════════════════════════════════════════════════════════

class ComparisonRunRecord(Base):
    """
    A stored comparison run. Never updated after insert except to mark it
    superseded by a later run over the same inputs.
    """
    __tablename__ = "comparison_runs"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(String(36), nullable=False, unique=True, index=True)
    company_id = Column(String(100), nullable=False, index=True)
    counterparty_id = Column(String(100), nullable=True, index=True)

    input_fingerprint = Column(String(64), nullable=False, index=True)
    status = Column(String(20), nullable=False)

    # Timing
    match_run_date = Column(DateTime, default=datetime.datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    processing_time_ms = Column(Float, nullable=True)

    # Results
    summary_json = Column(JSON, nullable=True)
    categories_json = Column(JSON, nullable=True)
    errors_json = Column(JSON, nullable=True)
    options_json = Column(JSON, nullable=True)

    # Provenance
    source_type_reference = Column(String(50), nullable=True)  # coupa, netsuite, xero, csv, manual
    source_type_subject = Column(String(50), nullable=True)
    uploaded_by = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)

    # Re-submission of identical inputs supersedes the older run
    superseded_by_id = Column(Integer, ForeignKey("comparison_runs.id"), nullable=True)

    matches = relationship("MatchRecord", back_populates="run", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint(
            "status IN ('completed', 'partial_failure')",
            name="ck_comparison_run_status"
        ),
        Index("ix_comparison_run_company_date", "company_id", "match_run_date"),
        Index("ix_comparison_run_company_counterparty", "company_id", "counterparty_id", "match_run_date"),
    )


class MatchRecord(Base):
    """One matched pair from a stored run."""
    __tablename__ = "comparison_matches"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(Integer, ForeignKey("comparison_runs.id"), nullable=False, index=True)

    match_id = Column(String(255), nullable=False)
    subject_record_id = Column(String(100), nullable=False)
    reference_record_id = Column(String(100), nullable=False)
    match_type = Column(String(20), nullable=False)
    confidence = Column(Float, nullable=False)
    category = Column(String(40), nullable=False)
    discrepancies_json = Column(JSON, nullable=True)
    match_reasons_json = Column(JSON, nullable=True)

    run = relationship("ComparisonRunRecord", back_populates="matches")

    __table_args__ = (
        CheckConstraint(
            "match_type IN ('INVOICE_NUMBER', 'PO_NUMBER', 'FUZZY')",
            name="ck_comparison_match_type"
        ),
        CheckConstraint(
            "confidence >= 0 AND confidence <= 1",
            name="ck_comparison_match_confidence"
        ),
        Index("ix_comparison_match_run_category", "run_id", "category"),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# MATCHING POLICY MODEL
# ═══════════════════════════════════════════════════════════════════════════════

class MatchingPolicyRecord(Base):
    """Matching tolerances configured per company."""
    __tablename__ = "matching_policies"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(String(100), nullable=False, unique=True, index=True)
    amount_tolerance = Column(String(32), default="0.01")  # Decimal as text
    date_tolerance_days = Column(Integer, default=3)
    fuzzy_threshold = Column(Float, default=0.8)
    max_candidates_per_record = Column(Integer, nullable=True)

    # Confidence blend weights
    name_weight = Column(Float, default=0.4)
    amount_weight = Column(Float, default=0.4)
    date_weight = Column(Float, default=0.2)

    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)
