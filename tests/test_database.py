"""
Tests for database.py and storage.py - tables, constraints and the
record/audit repositories.
"""

import json

import pytest
from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError

from kycflow.database import (
    AuditEvent,
    EntryState,
    IdempotencyEntry,
    IdentityStatus,
    OnboardingRecord,
    OverallStatus,
    ResidenceStatus,
    get_engine,
    get_session,
    init_database,
    session_scope,
)
from kycflow.errors import DuplicateCustomer, RecordImmutableError
from kycflow.storage import AuditSink, OnboardingRepository


class TestDatabaseInit:
    """Test database initialization."""

    def test_init_creates_database_file(self, tmp_path):
        db_path = tmp_path / "test.db"
        assert not db_path.exists()

        init_database(db_path)

        assert db_path.exists()

    def test_init_creates_tables(self, db_path):
        tables = set(inspect(get_engine(db_path)).get_table_names())
        assert {"onboarding_records", "idempotency_entries", "audit_events"} <= tables

    def test_init_creates_parent_directories(self, tmp_path):
        db_path = tmp_path / "nested" / "dir" / "test.db"

        init_database(db_path)

        assert db_path.exists()


class TestSessionScope:
    def test_commits_on_clean_exit(self, db_path, sample_request):
        with session_scope(db_path) as session:
            OnboardingRepository(session).create_pending(sample_request, "req-00000001")

        with session_scope(db_path) as session:
            assert OnboardingRepository(session).get_by_request_id("req-00000001") is not None

    def test_rolls_back_on_exception(self, db_path, sample_request):
        with pytest.raises(RuntimeError):
            with session_scope(db_path) as session:
                OnboardingRepository(session).create_pending(sample_request, "req-00000001")
                raise RuntimeError("crash between steps")

        with session_scope(db_path) as session:
            assert OnboardingRepository(session).get_by_request_id("req-00000001") is None


class TestOnboardingRepository:
    def test_create_pending(self, db_path, sample_request):
        with session_scope(db_path) as session:
            record = OnboardingRepository(session).create_pending(sample_request, "req-00000001")
            reference_id = record.reference_id

        with session_scope(db_path) as session:
            record = OnboardingRepository(session).get_by_reference(reference_id)
            assert record.identity_status == IdentityStatus.PENDING
            assert record.residence_status == ResidenceStatus.PENDING
            assert record.overall_status is None
            assert record.customer_id == "CUST-0001"
            assert record.finalized_at is None

    def test_create_pending_reuses_record_for_same_request(self, db_path, sample_request):
        with session_scope(db_path) as session:
            first = OnboardingRepository(session).create_pending(sample_request, "req-00000001").reference_id
        with session_scope(db_path) as session:
            second = OnboardingRepository(session).create_pending(sample_request, "req-00000001").reference_id

        assert first == second

    def test_duplicate_active_customer_rejected(self, db_path, sample_request):
        with session_scope(db_path) as session:
            OnboardingRepository(session).create_pending(sample_request, "req-00000001")

        with pytest.raises(DuplicateCustomer):
            with session_scope(db_path) as session:
                OnboardingRepository(session).create_pending(sample_request, "req-00000002")

    def seed_entry(self, db_path, request_id, state):
        with session_scope(db_path) as session:
            session.add(IdempotencyEntry(request_id=request_id, request_fingerprint="f" * 64, state=state))

    def test_abandoned_pending_record_is_taken_over(self, db_path, sample_request):
        self.seed_entry(db_path, "req-00000001", EntryState.FAILED)
        with session_scope(db_path) as session:
            first = OnboardingRepository(session).create_pending(sample_request, "req-00000001").reference_id

        with session_scope(db_path) as session:
            record = OnboardingRepository(session).create_pending(sample_request, "req-00000002")
            assert record.reference_id == first
            assert record.request_id == "req-00000002"

        with session_scope(db_path) as session:
            repo = OnboardingRepository(session)
            assert repo.get_by_request_id("req-00000001") is None
            assert session.query(OnboardingRecord).count() == 1

    def test_in_flight_pending_record_still_blocks(self, db_path, sample_request):
        self.seed_entry(db_path, "req-00000001", EntryState.IN_PROGRESS)
        with session_scope(db_path) as session:
            OnboardingRepository(session).create_pending(sample_request, "req-00000001")

        with pytest.raises(DuplicateCustomer):
            with session_scope(db_path) as session:
                OnboardingRepository(session).create_pending(sample_request, "req-00000002")

    def test_finalize_once(self, db_path, sample_request):
        with session_scope(db_path) as session:
            repo = OnboardingRepository(session)
            record = repo.create_pending(sample_request, "req-00000001")
            repo.finalize(
                record.reference_id,
                IdentityStatus.PASSED,
                ResidenceStatus.VERIFIED,
                OverallStatus.CREATED,
                identity_reference="idv-1",
            )
            reference_id = record.reference_id

        with pytest.raises(RecordImmutableError):
            with session_scope(db_path) as session:
                OnboardingRepository(session).finalize(
                    reference_id, IdentityStatus.FAILED, ResidenceStatus.FAILED, OverallStatus.FAILED
                )

        with session_scope(db_path) as session:
            record = OnboardingRepository(session).get_by_reference(reference_id)
            assert record.overall_status == OverallStatus.CREATED
            assert record.finalized_at is not None

    def test_finalize_unknown_reference(self, db_path):
        with pytest.raises(LookupError):
            with session_scope(db_path) as session:
                OnboardingRepository(session).finalize(
                    "missing", IdentityStatus.FAILED, ResidenceStatus.PENDING, OverallStatus.FAILED
                )


class TestActiveCustomerIndex:
    """The partial unique index enforces one active onboarding per customer."""

    def make_record(self, reference_id, request_id, overall_status=None):
        return OnboardingRecord(
            reference_id=reference_id,
            request_id=request_id,
            customer_id="CUST-1",
            full_name="a",
            email="a@b.c",
            mobile="1",
            tax_id="T",
            date_of_birth="2000-01-01",
            address_line1="x",
            city="c",
            state="s",
            postal_code="1",
            overall_status=overall_status,
        )

    def test_two_active_records_violate_index(self, db_path):
        session = get_session(db_path)
        session.add(self.make_record("ref-1", "req-1"))
        session.add(self.make_record("ref-2", "req-2", OverallStatus.CREATED))
        with pytest.raises(IntegrityError):
            session.commit()
        session.close()

    def test_failed_records_do_not_count(self, db_path):
        session = get_session(db_path)
        session.add(self.make_record("ref-1", "req-1", OverallStatus.FAILED))
        session.add(self.make_record("ref-2", "req-2", OverallStatus.FAILED))
        session.add(self.make_record("ref-3", "req-3"))
        session.commit()
        assert session.query(OnboardingRecord).count() == 3
        session.close()


class TestAuditSink:
    def test_append_redacts_and_orders(self, db_path, sample_request):
        with session_scope(db_path) as session:
            record = OnboardingRepository(session).create_pending(sample_request, "req-00000001")
            sink = AuditSink(session)
            sink.append(record.reference_id, "IdentityServiceUnavailable", {"tax_id": "ABCDE1234F"})
            sink.append(record.reference_id, "Created", sample_request.to_dict())
            reference_id = record.reference_id

        with session_scope(db_path) as session:
            events = AuditSink(session).list_for(reference_id)
            assert [e.event for e in events] == ["IdentityServiceUnavailable", "Created"]
            first = json.loads(events[0].payload)
            assert first["tax_id"] == "******234F"
            assert session.query(AuditEvent).count() == 2
