"""
Matching Policy Service
Matching options (tolerances, threshold, weights), the injected status
vocabulary, and per-company policies stored alongside comparison runs.
"""

import os
import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from sqlalchemy.orm import Session

from reconciliation_errors import ConfigurationError
from reconciliation_models import NormalizedStatus

logger = logging.getLogger(__name__)


class ScoringWeights(BaseModel):
    """Weights of the linear confidence blend. Must sum to 1."""
    model_config = ConfigDict(frozen=True)

    name: float = Field(default=0.4, ge=0.0, le=1.0)
    amount: float = Field(default=0.4, ge=0.0, le=1.0)
    date: float = Field(default=0.2, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_sum(self):
        total = self.name + self.amount + self.date
        if abs(total - 1.0) > 1e-9:
            raise ValueError(f"scoring weights must sum to 1, got {total}")
        return self


class MatchingOptions(BaseModel):
    """
    Matching configuration for one comparison run.

    Constructing this model directly raises pydantic's ValidationError;
    use validate_options() to get a ConfigurationError instead.
    """
    model_config = ConfigDict(frozen=True)

    amount_tolerance: Decimal = Field(default=Decimal("0.01"), ge=0)  # Absolute currency units
    date_tolerance: int = Field(default=3, ge=0)  # Days
    fuzzy_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    max_candidates_per_record: Optional[int] = Field(default=None, ge=1)  # None = unlimited
    weights: ScoringWeights = Field(default_factory=ScoringWeights)

    # Execution
    max_workers: int = Field(default=4, ge=1)
    batch_size: int = Field(default=500, ge=1)  # Subject records between cancellation checks
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @classmethod
    def from_env(cls) -> "MatchingOptions":
        """Build options from RECON_* environment variables, falling back to defaults."""
        env_map = {
            "amount_tolerance": "RECON_AMOUNT_TOLERANCE",
            "date_tolerance": "RECON_DATE_TOLERANCE_DAYS",
            "fuzzy_threshold": "RECON_FUZZY_THRESHOLD",
            "max_candidates_per_record": "RECON_MAX_CANDIDATES",
            "max_workers": "RECON_MAX_WORKERS",
            "batch_size": "RECON_BATCH_SIZE",
            "timeout_seconds": "RECON_TIMEOUT_SECONDS",
        }
        values = {}
        for option, env_var in env_map.items():
            raw = os.getenv(env_var)
            if raw is not None and raw.strip() != "":
                values[option] = raw.strip()
        return validate_options(values)

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump()
        data["amount_tolerance"] = str(self.amount_tolerance)
        return data


def validate_options(options: Union[MatchingOptions, Mapping[str, Any], None]) -> MatchingOptions:
    """
    Validate matching options before a run starts.

    Raises:
        ConfigurationError: If any option is invalid
    """
    if options is None:
        return MatchingOptions()
    if isinstance(options, MatchingOptions):
        return options
    try:
        return MatchingOptions(**dict(options))
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or 'options'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ConfigurationError(
            f"Invalid matching options: {'; '.join(problems)}",
            errors=problems
        ) from e
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid matching options: {e}") from e


# ═══════════════════════════════════════════════════════════════════════════════
# STATUS VOCABULARY
# ═══════════════════════════════════════════════════════════════════════════════

# Coupa invoice status and approval status
COUPA_STATUSES = {
    "DRAFT": NormalizedStatus.PENDING,
    "PENDING_APPROVAL": NormalizedStatus.PENDING,
    "PENDING_BUYER": NormalizedStatus.PENDING,
    "REQUIRES_APPROVAL": NormalizedStatus.PENDING,
    "APPROVED": NormalizedStatus.APPROVED,
    "PAID": NormalizedStatus.APPROVED,
    "REJECTED": NormalizedStatus.REJECTED,
    "DISPUTED": NormalizedStatus.REJECTED,
    "CANCELLED": NormalizedStatus.OTHER,
    "UNKNOWN": NormalizedStatus.OTHER,
}

# NetSuite AR ledger statuses
NETSUITE_STATUSES = {
    "OPEN": NormalizedStatus.PENDING,
    "PENDING": NormalizedStatus.PENDING,
    "PARTIAL": NormalizedStatus.PENDING,
    "APPROVED": NormalizedStatus.APPROVED,
    "PAID": NormalizedStatus.APPROVED,
    "REJECTED": NormalizedStatus.REJECTED,
    "VOIDED": NormalizedStatus.REJECTED,
    "CANCELLED": NormalizedStatus.OTHER,
}

# Xero invoice statuses
XERO_STATUSES = {
    "DRAFT": NormalizedStatus.PENDING,
    "SUBMITTED": NormalizedStatus.PENDING,
    "AUTHORISED": NormalizedStatus.APPROVED,
    "PAID": NormalizedStatus.APPROVED,
    "VOIDED": NormalizedStatus.REJECTED,
    "DELETED": NormalizedStatus.OTHER,
}

# Free-text statuses from CSV uploads
GENERIC_STATUSES = {
    "AWAITING_APPROVAL": NormalizedStatus.PENDING,
    "OUTSTANDING": NormalizedStatus.PENDING,
    "SENT": NormalizedStatus.PENDING,
    "OVERDUE": NormalizedStatus.PENDING,
    "DISPUTE": NormalizedStatus.REJECTED,
}


def _status_key(raw: str) -> str:
    return "_".join(raw.strip().upper().replace("-", " ").split())


class StatusVocabulary:
    """
    Injected lookup table: raw source status -> NormalizedStatus.

    Onboarding a new upstream system means passing a new mapping,
    not changing the engine. Unknown or missing statuses resolve to OTHER.
    """

    def __init__(self, mapping: Optional[Mapping[str, Union[NormalizedStatus, str]]] = None):
        self._lookup: Dict[str, NormalizedStatus] = {}
        for raw, status in (mapping or {}).items():
            try:
                self._lookup[_status_key(raw)] = NormalizedStatus(status)
            except ValueError as e:
                raise ConfigurationError(f"Unknown normalized status {status!r} for {raw!r}") from e

    def resolve(self, raw_status: Any) -> NormalizedStatus:
        if isinstance(raw_status, NormalizedStatus):
            return raw_status
        if raw_status is None or not str(raw_status).strip():
            return NormalizedStatus.OTHER
        return self._lookup.get(_status_key(str(raw_status)), NormalizedStatus.OTHER)

    def with_overrides(self, mapping: Mapping[str, Union[NormalizedStatus, str]]) -> "StatusVocabulary":
        merged: Dict[str, Union[NormalizedStatus, str]] = dict(self._lookup)
        merged.update({_status_key(k): v for k, v in mapping.items()})
        return StatusVocabulary(merged)

    def __len__(self) -> int:
        return len(self._lookup)

    def __contains__(self, raw_status: str) -> bool:
        return _status_key(raw_status) in self._lookup


def default_status_vocabulary() -> StatusVocabulary:
    """Vocabulary covering the Coupa, NetSuite and Xero feeds plus common free text."""
    mapping: Dict[str, NormalizedStatus] = {}
    for vocabulary in (GENERIC_STATUSES, XERO_STATUSES, NETSUITE_STATUSES, COUPA_STATUSES):
        mapping.update(vocabulary)
    return StatusVocabulary(mapping)


# ═══════════════════════════════════════════════════════════════════════════════
# PER-COMPANY POLICY
# ═══════════════════════════════════════════════════════════════════════════════

def get_matching_options(db: Session, company_id: str) -> MatchingOptions:
    """
    Get matching options for a company.
    Falls back to environment defaults when no policy is stored.

    A stored policy holds tolerances, threshold and weights only; execution
    settings (workers, batch size, timeout) always come from the environment.
    """
    from comparison_run_models import MatchingPolicyRecord

    defaults = MatchingOptions.from_env()
    policy = db.query(MatchingPolicyRecord).filter(
        MatchingPolicyRecord.company_id == company_id
    ).first()

    if not policy:
        return defaults

    return validate_options({
        "amount_tolerance": policy.amount_tolerance,
        "date_tolerance": policy.date_tolerance_days,
        "fuzzy_threshold": policy.fuzzy_threshold,
        "max_candidates_per_record": policy.max_candidates_per_record,
        "weights": {
            "name": policy.name_weight,
            "amount": policy.amount_weight,
            "date": policy.date_weight,
        },
        "max_workers": defaults.max_workers,
        "batch_size": defaults.batch_size,
        "timeout_seconds": defaults.timeout_seconds,
    })


def set_matching_options(db: Session, company_id: str, options: Union[MatchingOptions, Mapping[str, Any]]):
    """
    Store matching options for a company (validated before saving).
    Execution settings are not stored; see get_matching_options.
    """
    from comparison_run_models import MatchingPolicyRecord

    options = validate_options(options)
    policy = db.query(MatchingPolicyRecord).filter(
        MatchingPolicyRecord.company_id == company_id
    ).first()

    if policy is None:
        policy = MatchingPolicyRecord(company_id=company_id)
        db.add(policy)

    policy.amount_tolerance = str(options.amount_tolerance)
    policy.date_tolerance_days = options.date_tolerance
    policy.fuzzy_threshold = options.fuzzy_threshold
    policy.max_candidates_per_record = options.max_candidates_per_record
    policy.name_weight = options.weights.name
    policy.amount_weight = options.weights.amount
    policy.date_weight = options.weights.date

    db.commit()
    logger.info(f"Matching policy updated for company {company_id}")
    return policy
