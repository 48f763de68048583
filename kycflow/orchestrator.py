"""
Onboarding orchestrator.

Responsibilities:
- Deduplicate submissions through the idempotency store.
- Drive identity then residence verification (strictly sequential).
- Apply the decision rule and persist the outcome atomically.

Non-Responsibilities:
- No outbound HTTP (clients), no retry policy (ResilientVerifier).
- No field-format validation; requests arrive already checked.

Invariant:
A request id that reached `completed` replays the same response body
forever and never triggers another verification call.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .clients import (
    IdentityClient,
    OutcomeKind,
    ResidenceClient,
    VerificationOutcome,
    build_identity_payload,
    build_residence_payload,
)
from .config import Settings
from .database import (
    EntryState,
    IdentityStatus,
    OverallStatus,
    ResidenceStatus,
    session_scope,
)
from .errors import (
    ConcurrentDuplicate,
    ExternalUnavailable,
    IdentityServiceUnavailable,
    InternalError,
    InvalidRequestError,
    OnboardingError,
    RequestIdConflict,
    ResidenceServiceUnavailable,
)
from .idempotency import BeginStatus, IdempotencyStateError, IdempotencyStore
from .logger import get_logger
from .normalize import compute_fingerprint
from .retry import CircuitBreaker, ResilientVerifier
from .schema import CreateOnboardingRequest, validate_request, validate_request_id
from .storage import AuditSink, OnboardingRepository

logger = get_logger()

STATUS_CREATED = 201
STATUS_DECIDED_FAILED = 200


class OrchestrationState:
    RECEIVED = "received"
    DEDUPLICATING = "deduplicating"
    INITIALIZED = "initialized"
    VERIFYING_IDENTITY = "verifying_identity"
    VERIFYING_RESIDENCE = "verifying_residence"
    DECIDING = "deciding"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    ABORTED = "aborted"


class AuditEventType:
    CREATED = "Created"
    IDENTITY_FAILED = "IdentityFailed"
    RESIDENCE_FAILED = "ResidenceFailed"
    IDENTITY_UNAVAILABLE = "IdentityServiceUnavailable"
    RESIDENCE_UNAVAILABLE = "ResidenceServiceUnavailable"


@dataclass(frozen=True)
class OnboardingResponse:
    """Final answer for a request; `body` is the exact cached JSON text."""

    status_code: int
    body: str
    replayed: bool = False

    @property
    def payload(self) -> Dict[str, Any]:
        return json.loads(self.body)


@dataclass
class OrchestrationContext:
    """Per-call state machine bookkeeping."""

    request_id: str
    state: str = OrchestrationState.RECEIVED
    history: List[str] = field(default_factory=lambda: [OrchestrationState.RECEIVED])
    reference_id: Optional[str] = None
    attempt: Optional[int] = None

    def advance(self, state: str):
        logger.debug(
            f"Onboarding {self.state} -> {state}",
            request_id=self.request_id,
            reference_id=self.reference_id,
        )
        self.state = state
        self.history.append(state)


def decide(identity_status: str, residence_status: str) -> str:
    """Created iff identity passed and residence verified; anything else fails."""
    if identity_status == IdentityStatus.PASSED and residence_status == ResidenceStatus.VERIFIED:
        return OverallStatus.CREATED
    return OverallStatus.FAILED


def serialize_response(data: Dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


class OnboardingOrchestrator:
    """
    Runs one onboarding request as a single unit of work.

    Safe to share between threads: per-request state lives in an
    OrchestrationContext and every write happens in its own session_scope().
    """

    def __init__(
        self,
        db_path: Path,
        identity: ResilientVerifier,
        residence: ResilientVerifier,
        idempotency: Optional[IdempotencyStore] = None,
    ):
        self.db_path = Path(db_path)
        self.identity = identity
        self.residence = residence
        self.idempotency = idempotency or IdempotencyStore()

    @classmethod
    def from_settings(cls, settings: Settings, http_session=None) -> "OnboardingOrchestrator":
        """Wire real HTTP clients, breakers and retry budgets from configuration."""
        identity_client = IdentityClient(
            settings.identity.url,
            timeout=settings.identity.timeout,
            api_key=settings.identity.api_key,
            session=http_session,
        )
        residence_client = ResidenceClient(
            settings.residence.url,
            timeout=settings.residence.timeout,
            api_key=settings.residence.api_key,
            session=http_session,
            confidence_threshold=settings.residence_confidence_threshold,
        )
        identity = ResilientVerifier(
            identity_client,
            "identity",
            retry=settings.identity.retry,
            breaker=CircuitBreaker(settings.identity.breaker, name="identity"),
        )
        residence = ResilientVerifier(
            residence_client,
            "residence",
            retry=settings.residence.retry,
            breaker=CircuitBreaker(settings.residence.breaker, name="residence"),
        )
        return cls(
            settings.db_path,
            identity,
            residence,
            IdempotencyStore(stale_after=settings.stale_in_progress_after),
        )

    def create(self, request: CreateOnboardingRequest, request_id: str) -> OnboardingResponse:
        """
        Onboard a customer exactly once per request id.

        Raises:
            InvalidRequestError: Missing customer id or malformed request id
            RequestIdConflict: Request id reused with a different payload
            ConcurrentDuplicate: Same request still running elsewhere
            DuplicateCustomer: Customer already has an active onboarding
            IdentityServiceUnavailable / ResidenceServiceUnavailable:
                partner down; resubmit with the same request id
            InternalError: Anything unexpected; resubmit re-executes
        """
        errors = validate_request_id(request_id) + validate_request(request.to_dict())
        if errors:
            raise InvalidRequestError(errors)

        ctx = OrchestrationContext(request_id=request_id)
        fingerprint = compute_fingerprint(request)

        ctx.advance(OrchestrationState.DEDUPLICATING)
        try:
            replay = self._begin(ctx, request, fingerprint)
        except OnboardingError:
            ctx.advance(OrchestrationState.ABORTED)
            raise
        except Exception as e:
            ctx.advance(OrchestrationState.ABORTED)
            logger.error("Failed to initialize onboarding", request_id=request_id, error=repr(e))
            logger.record_abort(type(e).__name__)
            raise InternalError(request_id) from e
        if replay is not None:
            return replay

        try:
            return self._run(ctx, request)
        except ExternalUnavailable as e:
            self._abort(ctx, request, e)
            raise
        except IdempotencyStateError as e:
            # A newer attempt re-claimed the entry; it owns the outcome now
            ctx.advance(OrchestrationState.ABORTED)
            logger.warning(
                "Lost ownership of request to a newer attempt",
                request_id=request_id,
                attempt=ctx.attempt,
            )
            logger.record_abort(type(e).__name__)
            raise ConcurrentDuplicate(request_id) from e
        except Exception as e:
            logger.error(
                "Onboarding failed unexpectedly",
                request_id=request_id,
                reference_id=ctx.reference_id,
                state=ctx.state,
                error=repr(e),
            )
            self._abort(ctx, request, e)
            raise InternalError(request_id) from e

    def _begin(
        self, ctx: OrchestrationContext, request: CreateOnboardingRequest, fingerprint: str
    ) -> Optional[OnboardingResponse]:
        """Steps 1-2: claim the request id and create the pending record atomically."""
        with session_scope(self.db_path) as session:
            begin = self.idempotency.try_begin(session, ctx.request_id, fingerprint)

            if begin.status == BeginStatus.ALREADY_COMPLETED:
                logger.info("Replaying completed request", request_id=ctx.request_id)
                logger.record_replay()
                ctx.advance(OrchestrationState.COMPLETED)
                return OnboardingResponse(begin.status_code, begin.payload, replayed=True)
            if begin.status == BeginStatus.CONFLICT:
                logger.warning("Request id reused with different payload", request_id=ctx.request_id)
                raise RequestIdConflict(ctx.request_id)
            if begin.status == BeginStatus.ALREADY_IN_PROGRESS:
                raise ConcurrentDuplicate(ctx.request_id)

            record = OnboardingRepository(session).create_pending(request, ctx.request_id)
            ctx.reference_id = record.reference_id
            ctx.attempt = begin.attempts

        ctx.advance(OrchestrationState.INITIALIZED)
        logger.info(
            "Onboarding started",
            request_id=ctx.request_id,
            reference_id=ctx.reference_id,
            attempt=begin.attempts,
        )
        return None

    def _run(self, ctx: OrchestrationContext, request: CreateOnboardingRequest) -> OnboardingResponse:
        """Steps 3-7."""
        ctx.advance(OrchestrationState.VERIFYING_IDENTITY)
        try:
            identity = self.identity.execute(build_identity_payload(request))
        except ExternalUnavailable as e:
            raise IdentityServiceUnavailable(e) from e
        identity_status = _identity_status(identity)

        residence: Optional[VerificationOutcome] = None
        residence_status = ResidenceStatus.PENDING
        if identity_status == IdentityStatus.PASSED:
            ctx.advance(OrchestrationState.VERIFYING_RESIDENCE)
            try:
                residence = self.residence.execute(build_residence_payload(request))
            except ExternalUnavailable as e:
                raise ResidenceServiceUnavailable(e) from e
            residence_status = _residence_status(residence)
        else:
            logger.info("Identity failed, skipping residence check", request_id=ctx.request_id)

        ctx.advance(OrchestrationState.DECIDING)
        overall_status = decide(identity_status, residence_status)

        ctx.advance(OrchestrationState.PERSISTING)
        response = self._persist(ctx, request, identity, residence, identity_status, residence_status, overall_status)

        ctx.advance(OrchestrationState.COMPLETED)
        logger.record_decision(overall_status)
        logger.info(
            "Onboarding decided",
            request_id=ctx.request_id,
            reference_id=ctx.reference_id,
            overall_status=overall_status,
        )
        return response

    def _persist(
        self,
        ctx: OrchestrationContext,
        request: CreateOnboardingRequest,
        identity: VerificationOutcome,
        residence: Optional[VerificationOutcome],
        identity_status: str,
        residence_status: str,
        overall_status: str,
    ) -> OnboardingResponse:
        """Step 7: record, audit event and cached response in one transaction."""
        finalized_at = datetime.now()
        body = serialize_response({
            "reference_id": ctx.reference_id,
            "request_id": ctx.request_id,
            "customer_id": request.customer_id,
            "identity_status": identity_status,
            "residence_status": residence_status,
            "overall_status": overall_status,
            "identity_reference": identity.reference_id,
            "residence_reference": residence.reference_id if residence else None,
            "finalized_at": finalized_at.isoformat(),
        })
        status_code = STATUS_CREATED if overall_status == OverallStatus.CREATED else STATUS_DECIDED_FAILED

        if overall_status == OverallStatus.CREATED:
            event = AuditEventType.CREATED
        elif identity_status != IdentityStatus.PASSED:
            event = AuditEventType.IDENTITY_FAILED
        else:
            event = AuditEventType.RESIDENCE_FAILED

        with session_scope(self.db_path) as session:
            # Ownership check first: a re-claimed entry belongs to the newer attempt
            self.idempotency.finalize(
                session,
                ctx.request_id,
                EntryState.COMPLETED,
                body,
                status_code,
                attempt=ctx.attempt,
            )
            OnboardingRepository(session).finalize(
                ctx.reference_id,
                identity_status=identity_status,
                residence_status=residence_status,
                overall_status=overall_status,
                identity_reference=identity.reference_id,
                residence_reference=residence.reference_id if residence else None,
                identity_risk_score=identity.score,
                residence_confidence=residence.score if residence else None,
            )
            AuditSink(session).append(
                ctx.reference_id,
                event,
                {
                    **request.to_dict(),
                    "request_id": ctx.request_id,
                    "identity_status": identity_status,
                    "residence_status": residence_status,
                    "overall_status": overall_status,
                    "identity_attempts": identity.attempts,
                    "residence_attempts": residence.attempts if residence else 0,
                    "identity_detail": identity.detail,
                    "residence_detail": residence.detail if residence else "",
                },
            )
        return OnboardingResponse(status_code, body)

    def _abort(self, ctx: OrchestrationContext, request: CreateOnboardingRequest, error: Exception):
        """Leave the entry failed with no payload so a resubmission re-executes."""
        ctx.advance(OrchestrationState.ABORTED)
        logger.record_abort(type(error).__name__)
        logger.warning(
            "Onboarding aborted",
            request_id=ctx.request_id,
            reference_id=ctx.reference_id,
            error=type(error).__name__,
            history=ctx.history,
        )
        try:
            with session_scope(self.db_path) as session:
                self.idempotency.finalize(
                    session, ctx.request_id, EntryState.FAILED, attempt=ctx.attempt
                )
                if isinstance(error, IdentityServiceUnavailable):
                    event = AuditEventType.IDENTITY_UNAVAILABLE
                elif isinstance(error, ResidenceServiceUnavailable):
                    event = AuditEventType.RESIDENCE_UNAVAILABLE
                else:
                    event = None
                if event is not None and ctx.reference_id is not None:
                    AuditSink(session).append(
                        ctx.reference_id,
                        event,
                        {**request.to_dict(), "request_id": ctx.request_id, "detail": str(error)},
                    )
        except IdempotencyStateError:
            logger.warning(
                "Request already re-claimed by a newer attempt; leaving it alone",
                request_id=ctx.request_id,
                attempt=ctx.attempt,
            )
        except Exception as e:
            # Entry stays in_progress until reaped as stale
            logger.critical(
                "Could not mark request as failed",
                request_id=ctx.request_id,
                error=repr(e),
            )


def _identity_status(outcome: VerificationOutcome) -> str:
    if outcome.kind == OutcomeKind.SUCCESS:
        return IdentityStatus.PASSED
    return IdentityStatus.FAILED


def _residence_status(outcome: VerificationOutcome) -> str:
    if outcome.kind == OutcomeKind.SUCCESS:
        return ResidenceStatus.VERIFIED
    return ResidenceStatus.FAILED
