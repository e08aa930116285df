"""
Comparison Run Store Tests

Persistence of completed runs: insert-once, supersession, reporting queries.
"""

import pytest
from sqlalchemy import create_engine, inspect
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

import database
from comparison_run_models import ComparisonRunRecord, MatchRecord
from comparison_run_store import ComparisonRunStore
from reconciliation_models import ComparisonRun
from reconciliation_service import ReconciliationService


pytestmark = pytest.mark.integration


@pytest.fixture
def store(db_session):
    return ComparisonRunStore(db_session)


@pytest.fixture
def completed_run(default_options, subject_record, reference_record):
    return ReconciliationService().run(
        [
            reference_record("A", invoice_number="INV-1"),
            reference_record("B", invoice_number="INV-2", amount="500.00"),
            reference_record("C", name="Globex", amount="7.00"),
        ],
        [
            subject_record(1, invoice_number="INV-1"),
            subject_record(2, invoice_number="INV-2", amount="450.00"),
            subject_record(3, amount="not-a-number"),
        ],
        default_options,
    )


class TestSaveRun:

    def test_stores_run_and_matches(self, store, completed_run):
        record = store.save_run(
            completed_run, company_id="acme", counterparty_id="globex",
            source_type_reference="coupa", source_type_subject="netsuite",
        )

        assert record.id is not None
        assert record.run_id == completed_run.run_id
        assert record.status == "partial_failure"
        assert record.summary_json["matched"] == 2
        assert record.categories_json["matched_disputed"] == [2]
        assert record.errors_json[0]["record_id"] == 3
        assert record.options_json["amount_tolerance"] == "0.01"
        assert record.processing_time_ms >= 0

        categories = {m.subject_record_id: m.category for m in record.matches}
        assert categories == {"1": "matched_approved", "2": "matched_disputed"}
        assert record.matches[0].match_id == "1-A"

    def test_unsealed_run_rejected(self, store, default_options):
        run = ComparisonRun(run_id="pending", reference_records=(), subject_records=(), options=default_options)

        with pytest.raises(ValueError):
            store.save_run(run, company_id="acme")

    def test_run_id_unique(self, store, db_session, completed_run):
        store.save_run(completed_run, company_id="acme")

        with pytest.raises(IntegrityError):
            store.save_run(completed_run, company_id="acme")
        db_session.rollback()

    def test_status_constraint(self, db_session):
        db_session.add(ComparisonRunRecord(
            run_id="bad", company_id="acme", input_fingerprint="x", status="executing",
        ))

        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_confidence_constraint(self, db_session, store, completed_run):
        record = store.save_run(completed_run, company_id="acme")
        db_session.add(MatchRecord(
            run_id=record.id, match_id="9-Z", subject_record_id="9", reference_record_id="Z",
            match_type="FUZZY", confidence=1.5, category="matched_approved",
        ))

        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()


class TestSupersession:

    def test_identical_inputs_supersede_older_run(self, store, default_options, subject_record, reference_record):
        refs = [reference_record("A", invoice_number="INV-1")]
        subjects = [subject_record(1, invoice_number="INV-1")]
        service = ReconciliationService()

        first = store.save_run(service.run(refs, subjects, default_options), company_id="acme")
        second = store.save_run(service.run(refs, subjects, default_options), company_id="acme")

        assert first.superseded_by_id == second.id
        assert second.superseded_by_id is None
        assert [r.run_id for r in store.get_recent_runs("acme")] == [second.run_id]
        assert len(store.get_recent_runs("acme", include_superseded=True)) == 2

    def test_other_company_not_superseded(self, store, default_options, subject_record):
        service = ReconciliationService()
        subjects = [subject_record(1)]

        first = store.save_run(service.run([], subjects, default_options), company_id="acme")
        store.save_run(service.run([], subjects, default_options), company_id="globex")

        assert first.superseded_by_id is None

    def test_different_inputs_not_superseded(self, store, default_options, subject_record):
        service = ReconciliationService()

        first = store.save_run(service.run([], [subject_record(1)], default_options), company_id="acme")
        store.save_run(service.run([], [subject_record(2)], default_options), company_id="acme")

        assert first.superseded_by_id is None
        assert len(store.get_recent_runs("acme")) == 2


class TestQueries:

    def test_get_run(self, store, completed_run):
        store.save_run(completed_run, company_id="acme")

        assert store.get_run(completed_run.run_id).company_id == "acme"
        assert store.get_run("missing") is None

    def test_recent_runs_limit(self, store, default_options, subject_record):
        service = ReconciliationService()
        for i in range(3):
            store.save_run(service.run([], [subject_record(i)], default_options), company_id="acme")

        assert len(store.get_recent_runs("acme", limit=2)) == 2

    def test_company_statistics(self, store, completed_run, default_options, subject_record):
        store.save_run(completed_run, company_id="acme")
        store.save_run(
            ReconciliationService().run([], [subject_record(1)], default_options),
            company_id="acme",
        )

        stats = store.get_company_statistics("acme")

        assert stats["total_runs"] == 2
        assert stats["total_matched"] == 2
        assert stats["total_disputed"] == 1
        assert stats["partial_failures"] == 1
        # (0.6667 + 0.0) / 2
        assert stats["avg_match_rate"] == pytest.approx(0.3334, abs=1e-4)
        assert stats["last_run"] is not None

    def test_statistics_for_unknown_company(self, store):
        stats = store.get_company_statistics("nobody")

        assert stats["total_runs"] == 0
        assert stats["avg_match_rate"] == 0.0
        assert stats["last_run"] is None


def test_init_db_creates_tables():
    engine = create_engine("sqlite:///:memory:")
    database.init_db(bind=engine)

    tables = set(inspect(engine).get_table_names())

    assert {"comparison_runs", "comparison_matches", "matching_policies"} <= tables


class TestSessionFactory:

    @pytest.fixture
    def memory_engine(self, monkeypatch):
        engine = database.create_db_engine("sqlite:///:memory:")
        database.init_db(bind=engine)
        monkeypatch.setattr(database, "SessionLocal", sessionmaker(bind=engine))
        yield engine
        engine.dispose()

    def test_get_db_session_backs_the_store(self, memory_engine, completed_run):
        sessions = database.get_db()
        ComparisonRunStore(next(sessions)).save_run(completed_run, company_id="acme")
        sessions.close()

        reader = database.get_db()
        stored = ComparisonRunStore(next(reader)).get_run(completed_run.run_id)

        assert stored is not None
        assert stored.company_id == "acme"
        reader.close()

    def test_get_db_rolls_back_on_failure(self, memory_engine):
        sessions = database.get_db()
        db = next(sessions)
        db.add(ComparisonRunRecord(
            run_id="r-1", company_id="acme", input_fingerprint="f", status="completed",
        ))
        db.flush()

        with pytest.raises(RuntimeError):
            sessions.throw(RuntimeError("store failure"))

        reader = database.get_db()
        assert next(reader).query(ComparisonRunRecord).count() == 0
        reader.close()

    def test_engine_url_from_environment(self, monkeypatch):
        monkeypatch.setenv("SQLALCHEMY_DATABASE_URL", "sqlite:///:memory:")

        engine = database.create_db_engine()

        assert engine.url.database == ":memory:"
        engine.dispose()
