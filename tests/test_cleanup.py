"""Tests for stale in-progress reaping."""

from datetime import datetime, timedelta

import pytest

from kycflow.cleanup import reap_stale_entries
from kycflow.database import EntryState, IdempotencyEntry, get_session


class TestReapStaleEntries:
    """Test reaping of abandoned in-progress requests."""

    def seed(self, db_path, request_id, state, age):
        stamp = datetime.now() - age
        session = get_session(db_path)
        session.add(IdempotencyEntry(
            request_id=request_id,
            request_fingerprint="f" * 64,
            state=state,
            created_at=stamp,
            updated_at=stamp,
        ))
        session.commit()
        session.close()

    def state_of(self, db_path, request_id):
        session = get_session(db_path)
        try:
            return session.get(IdempotencyEntry, request_id).state
        finally:
            session.close()

    def test_reaps_old_in_progress_entries(self, db_path):
        self.seed(db_path, "req-crashed1", EntryState.IN_PROGRESS, timedelta(minutes=20))
        self.seed(db_path, "req-running1", EntryState.IN_PROGRESS, timedelta(seconds=5))
        self.seed(db_path, "req-finished", EntryState.COMPLETED, timedelta(days=3))

        reaped = reap_stale_entries(db_path, older_than=600)

        assert reaped == 1
        assert self.state_of(db_path, "req-crashed1") == EntryState.FAILED
        assert self.state_of(db_path, "req-running1") == EntryState.IN_PROGRESS
        assert self.state_of(db_path, "req-finished") == EntryState.COMPLETED

    def test_nothing_to_reap(self, db_path):
        assert reap_stale_entries(db_path, older_than=60) == 0

    def test_threshold_must_be_positive(self, db_path):
        with pytest.raises(ValueError):
            reap_stale_entries(db_path, older_than=0)
