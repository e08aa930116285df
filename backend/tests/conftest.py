"""
Pytest configuration and fixtures for the reconciliation engine test suite

Markers:
    - unit: Fast unit tests
    - property: Property-based tests (Hypothesis)
    - metamorphic: Metamorphic relation tests
    - slow: Performance and stress tests (excluded by default)
    - integration: Tests touching the persistence boundary
"""

import pytest
import sys
import os
from datetime import date
from decimal import Decimal
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import comparison_run_models
from matching_policy_service import MatchingOptions
from reconciliation_models import InvoiceRecord, RecordSource


# ═══════════════════════════════════════════════════════════════════════════════
# PYTEST CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "property: Property-based tests (Hypothesis)")
    config.addinivalue_line("markers", "metamorphic: Metamorphic relation tests")
    config.addinivalue_line("markers", "slow: Performance/stress tests (excluded by default)")
    config.addinivalue_line("markers", "integration: Tests touching the persistence boundary")


def pytest_addoption(parser):
    """Add custom CLI options."""
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="Run slow tests"
    )
    parser.addoption(
        "--perf-threshold",
        action="store",
        default="30",
        help="Performance test threshold in seconds"
    )


def pytest_collection_modifyitems(config, items):
    """Skip slow tests unless --run-slow is passed."""
    if config.getoption("--run-slow"):
        return

    skip_slow = pytest.mark.skip(reason="Need --run-slow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


# ═══════════════════════════════════════════════════════════════════════════════
# DATABASE FIXTURES
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    comparison_run_models.Base.metadata.create_all(engine)

    Session = sessionmaker(bind=engine)
    session = Session()

    yield session

    session.close()
    engine.dispose()


# ═══════════════════════════════════════════════════════════════════════════════
# RECORD FACTORIES
# ═══════════════════════════════════════════════════════════════════════════════

def make_record(
    record_id,
    source=RecordSource.SUBJECT,
    invoice_number=None,
    po_number=None,
    amount="1000.00",
    issue_date=date(2024, 1, 10),
    due_date=None,
    name="Acme Corp",
    status="APPROVED",
    currency="USD",
):
    return InvoiceRecord(
        id=record_id,
        source=source,
        invoice_number=invoice_number,
        po_number=po_number,
        amount=Decimal(amount) if isinstance(amount, str) and _is_number(amount) else amount,
        currency=currency,
        issue_date=issue_date,
        due_date=due_date,
        supplier_or_customer_name=name,
        status=status,
    )


def _is_number(text: str) -> bool:
    try:
        Decimal(text)
        return True
    except Exception:
        return False


@pytest.fixture
def subject_record():
    """Factory for SUBJECT records"""
    def _make(record_id, **kwargs):
        kwargs.setdefault("source", RecordSource.SUBJECT)
        return make_record(record_id, **kwargs)
    return _make


@pytest.fixture
def reference_record():
    """Factory for REFERENCE records"""
    def _make(record_id, **kwargs):
        kwargs.setdefault("source", RecordSource.REFERENCE)
        return make_record(record_id, **kwargs)
    return _make


@pytest.fixture
def default_options():
    # Single worker keeps unit tests free of thread scheduling
    return MatchingOptions(max_workers=1)
