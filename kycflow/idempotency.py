"""
Idempotency store.

Responsibilities:
- Arbitrate duplicate submissions of the same request id with one
  atomic write (primary-key insert, or a conditional UPDATE for re-claims).
- Cache the final response of a completed request.

Non-Responsibilities:
- No business decisions.
- No transaction management: callers pass an open session and commit it.

Invariant:
A completed entry never changes again.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .database import EntryState, IdempotencyEntry
from .errors import OnboardingError
from .logger import get_logger

logger = get_logger()


class IdempotencyStateError(OnboardingError):
    """Raised when finalizing an entry that is not in progress."""
    pass


class BeginStatus:
    INSERTED = "inserted"
    ALREADY_IN_PROGRESS = "already_in_progress"
    ALREADY_COMPLETED = "already_completed"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class BeginResult:
    status: str
    attempts: int = 1
    payload: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def inserted(self) -> bool:
        return self.status == BeginStatus.INSERTED


class IdempotencyStore:
    """Conditional writes against the idempotency_entries table."""

    def __init__(self, stale_after: Optional[float] = None):
        # Seconds after which an in_progress entry may be re-claimed; None disables.
        self.stale_after = stale_after

    def try_begin(
        self,
        session: Session,
        request_id: str,
        fingerprint: str,
        now: Optional[datetime] = None,
    ) -> BeginResult:
        """
        Claim a request id for execution.

        Must be the first write of the caller's transaction: a duplicate key
        rolls the session back before the existing row is inspected.

        Returns:
            BeginResult; INSERTED means the caller owns this attempt.
        """
        now = now or datetime.now()
        try:
            session.add(
                IdempotencyEntry(
                    request_id=request_id,
                    request_fingerprint=fingerprint,
                    state=EntryState.IN_PROGRESS,
                    attempts=1,
                    created_at=now,
                    updated_at=now,
                )
            )
            session.flush()
            logger.debug("Idempotency entry inserted", request_id=request_id)
            return BeginResult(BeginStatus.INSERTED, attempts=1)
        except IntegrityError:
            session.rollback()

        existing = self.get(session, request_id)
        if existing is None:
            # Row vanished between insert and read; never deleted in practice
            raise IdempotencyStateError(f"Entry {request_id} disappeared during claim")

        if existing.request_fingerprint != fingerprint:
            return BeginResult(BeginStatus.CONFLICT, attempts=existing.attempts)

        if existing.state == EntryState.COMPLETED:
            return BeginResult(
                BeginStatus.ALREADY_COMPLETED,
                attempts=existing.attempts,
                payload=existing.result_payload,
                status_code=existing.result_status_code,
            )

        if existing.state == EntryState.FAILED:
            if self._reclaim(session, existing, EntryState.FAILED, now):
                return BeginResult(BeginStatus.INSERTED, attempts=existing.attempts + 1)
            return self._reread(session, request_id)

        if self.stale_after is not None and existing.updated_at < now - timedelta(seconds=self.stale_after):
            if self._reclaim(session, existing, EntryState.IN_PROGRESS, now):
                logger.warning(
                    "Re-claimed stale in-progress request",
                    request_id=request_id,
                    last_update=existing.updated_at.isoformat(),
                )
                return BeginResult(BeginStatus.INSERTED, attempts=existing.attempts + 1)
            return self._reread(session, request_id)

        return BeginResult(BeginStatus.ALREADY_IN_PROGRESS, attempts=existing.attempts)

    def _reclaim(self, session: Session, entry: IdempotencyEntry, from_state: str, now: datetime) -> bool:
        """Flip an entry back to in_progress if nobody else did first."""
        result = session.execute(
            update(IdempotencyEntry)
            .where(
                and_(
                    IdempotencyEntry.request_id == entry.request_id,
                    IdempotencyEntry.state == from_state,
                    IdempotencyEntry.updated_at == entry.updated_at,
                )
            )
            .values(
                state=EntryState.IN_PROGRESS,
                result_payload=None,
                result_status_code=None,
                attempts=IdempotencyEntry.attempts + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _reread(self, session: Session, request_id: str) -> BeginResult:
        # Lost a re-claim race; report whatever the winner left behind
        session.expire_all()
        entry = self.get(session, request_id)
        if entry.state == EntryState.COMPLETED:
            return BeginResult(
                BeginStatus.ALREADY_COMPLETED,
                attempts=entry.attempts,
                payload=entry.result_payload,
                status_code=entry.result_status_code,
            )
        return BeginResult(BeginStatus.ALREADY_IN_PROGRESS, attempts=entry.attempts)

    def finalize(
        self,
        session: Session,
        request_id: str,
        state: str,
        payload: Optional[str] = None,
        status_code: Optional[int] = None,
        attempt: Optional[int] = None,
    ) -> None:
        """
        Move an in_progress entry to completed or failed.

        A failed entry never carries a payload so that a resubmission
        re-executes instead of replaying an error.

        Pass the `attempt` returned by try_begin: once a stale entry has
        been re-claimed, the earlier owner can no longer finalize it.
        """
        if state not in (EntryState.COMPLETED, EntryState.FAILED):
            raise ValueError(f"Cannot finalize into state {state!r}")
        if state == EntryState.COMPLETED and payload is None:
            raise ValueError("Completed entries must carry a payload")
        if state == EntryState.FAILED:
            payload, status_code = None, None

        conditions = [
            IdempotencyEntry.request_id == request_id,
            IdempotencyEntry.state == EntryState.IN_PROGRESS,
        ]
        if attempt is not None:
            conditions.append(IdempotencyEntry.attempts == attempt)

        result = session.execute(
            update(IdempotencyEntry)
            .where(and_(*conditions))
            .values(
                state=state,
                result_payload=payload,
                result_status_code=status_code,
                updated_at=datetime.now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise IdempotencyStateError(
                f"Entry {request_id} is not in progress under attempt {attempt}"
                if attempt is not None
                else f"Entry {request_id} is not in progress"
            )

    def get(self, session: Session, request_id: str) -> Optional[IdempotencyEntry]:
        return session.execute(
            select(IdempotencyEntry).where(IdempotencyEntry.request_id == request_id)
        ).scalar_one_or_none()

    def reap_stale(self, session: Session, older_than: datetime) -> int:
        """Mark in_progress entries untouched since `older_than` as failed."""
        result = session.execute(
            update(IdempotencyEntry)
            .where(
                and_(
                    IdempotencyEntry.state == EntryState.IN_PROGRESS,
                    IdempotencyEntry.updated_at < older_than,
                )
            )
            .values(
                state=EntryState.FAILED,
                result_payload=None,
                result_status_code=None,
                updated_at=datetime.now(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
