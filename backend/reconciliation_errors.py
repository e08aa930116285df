"""
Reconciliation Errors

Exception taxonomy for the invoice reconciliation engine.

Propagation policy:
- ConfigurationError aborts before any matching starts
- MalformedRecord is isolated per record and reported in the run's error list
- RunCancelled stops the run at the next batch checkpoint; partial results are kept
"""

from typing import Any, Optional


class ReconciliationError(Exception):
    """Base class for all reconciliation engine errors"""
    pass


class ConfigurationError(ReconciliationError):
    """Raised when MatchingOptions are invalid (e.g. negative tolerance)"""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []


class MalformedRecord(ReconciliationError):
    """Raised when a record cannot be compared (unparseable amount or date)"""

    def __init__(self, record_id: Any, reason: str, source: Any = None):
        super().__init__(f"Malformed record {record_id!r}: {reason}")
        self.record_id = record_id
        self.reason = reason
        self.source = source


class RunCancelled(ReconciliationError):
    """Raised at a batch checkpoint when the run was cancelled or timed out"""
    pass


class RunSealedError(ReconciliationError):
    """Raised when attempting to modify a completed comparison run"""
    pass
