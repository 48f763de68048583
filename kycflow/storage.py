"""
Onboarding record store and audit sink.

Responsibilities:
- Create and finalize onboarding records.
- Append audit events.

Non-Responsibilities:
- No decision logic; the orchestrator passes final statuses in.
- No commits; every method runs inside the caller's session_scope().
"""

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .database import (
    AuditEvent,
    EntryState,
    IdempotencyEntry,
    IdentityStatus,
    OnboardingRecord,
    OverallStatus,
    ResidenceStatus,
)
from .errors import DuplicateCustomer, RecordImmutableError
from .logger import get_logger
from .normalize import redact
from .schema import CreateOnboardingRequest

logger = get_logger()


class OnboardingRepository:
    """Reads and writes onboarding_records."""

    def __init__(self, session: Session):
        self.session = session

    def create_pending(self, request: CreateOnboardingRequest, request_id: str) -> OnboardingRecord:
        """
        Insert a pending/pending record, or return the one an earlier
        aborted attempt left behind.

        A pending record whose request ended `failed` (partner outage,
        internal error, reaped) belongs to nobody, so a new request id for
        the same customer takes it over instead of being blocked by it.

        Raises:
            DuplicateCustomer: another active record exists for the customer
        """
        existing = self.get_by_request_id(request_id)
        if existing is not None:
            if existing.is_final:
                raise RecordImmutableError(existing.reference_id)
            return existing

        clash = self.session.execute(
            select(OnboardingRecord).where(
                and_(
                    OnboardingRecord.customer_id == request.customer_id,
                    or_(
                        OnboardingRecord.overall_status.is_(None),
                        OnboardingRecord.overall_status == OverallStatus.CREATED,
                    ),
                )
            )
        ).scalars().first()
        if clash is not None:
            if not self._is_abandoned(clash):
                raise DuplicateCustomer(request.customer_id)
            return self._take_over(clash, request, request_id)

        now = datetime.now()
        record = OnboardingRecord(
            reference_id=str(uuid.uuid4()),
            request_id=request_id,
            identity_status=IdentityStatus.PENDING,
            residence_status=ResidenceStatus.PENDING,
            overall_status=None,
            created_at=now,
            updated_at=now,
            **request.to_dict(),
        )
        self.session.add(record)
        try:
            self.session.flush()
        except IntegrityError as e:
            # Lost a race with a concurrent request for the same customer
            raise DuplicateCustomer(request.customer_id) from e
        return record

    def _is_abandoned(self, record: OnboardingRecord) -> bool:
        if record.is_final:
            return False
        state = self.session.execute(
            select(IdempotencyEntry.state).where(IdempotencyEntry.request_id == record.request_id)
        ).scalar_one_or_none()
        return state == EntryState.FAILED

    def _take_over(
        self, record: OnboardingRecord, request: CreateOnboardingRequest, request_id: str
    ) -> OnboardingRecord:
        logger.info(
            "Taking over abandoned pending record",
            reference_id=record.reference_id,
            previous_request_id=record.request_id,
            request_id=request_id,
        )
        for key, value in request.to_dict().items():
            setattr(record, key, value)
        record.request_id = request_id
        record.identity_status = IdentityStatus.PENDING
        record.residence_status = ResidenceStatus.PENDING
        record.updated_at = datetime.now()
        self.session.flush()
        return record

    def finalize(
        self,
        reference_id: str,
        identity_status: str,
        residence_status: str,
        overall_status: str,
        identity_reference: Optional[str] = None,
        residence_reference: Optional[str] = None,
        identity_risk_score: Optional[float] = None,
        residence_confidence: Optional[float] = None,
    ) -> OnboardingRecord:
        """Write the final statuses. A record can be finalized only once."""
        record = self.get_by_reference(reference_id)
        if record is None:
            raise LookupError(f"Onboarding record {reference_id} not found")
        if record.is_final:
            raise RecordImmutableError(reference_id)

        now = datetime.now()
        record.identity_status = identity_status
        record.residence_status = residence_status
        record.overall_status = overall_status
        record.identity_reference = identity_reference
        record.residence_reference = residence_reference
        record.identity_risk_score = identity_risk_score
        record.residence_confidence = residence_confidence
        record.updated_at = now
        record.finalized_at = now
        self.session.flush()
        return record

    def get_by_reference(self, reference_id: str) -> Optional[OnboardingRecord]:
        return self.session.get(OnboardingRecord, reference_id)

    def get_by_request_id(self, request_id: str) -> Optional[OnboardingRecord]:
        return self.session.execute(
            select(OnboardingRecord).where(OnboardingRecord.request_id == request_id)
        ).scalar_one_or_none()


class AuditSink:
    """Append-only writer for audit_events. There is no update or delete."""

    def __init__(self, session: Session):
        self.session = session

    def append(self, reference_id: str, event: str, snapshot: Dict[str, Any]) -> AuditEvent:
        audit = AuditEvent(
            reference_id=reference_id,
            event=event,
            payload=json.dumps(redact(snapshot), sort_keys=True, default=str),
            created_at=datetime.now(),
        )
        self.session.add(audit)
        self.session.flush()
        return audit

    def list_for(self, reference_id: str) -> List[AuditEvent]:
        return list(
            self.session.execute(
                select(AuditEvent)
                .where(AuditEvent.reference_id == reference_id)
                .order_by(AuditEvent.id)
            ).scalars()
        )
