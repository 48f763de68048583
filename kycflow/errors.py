"""
Exception hierarchy for the onboarding flow.

Business rejections (identity or residence verification failing) are not
errors: they are recorded as failed onboardings and returned as normal
responses. Everything below is raised to the caller.
"""


class OnboardingError(Exception):
    """Base class for all onboarding errors."""

    retryable = False


class InvalidRequestError(OnboardingError):
    """Raised when a request fails the structural checks in schema.py."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid request")


# External availability


class ExternalUnavailable(OnboardingError):
    """A verification partner could not produce an answer.

    The caller may resubmit with the same request id; nothing was cached.
    """

    retryable = True

    def __init__(self, service: str, message: str = ""):
        self.service = service
        super().__init__(message or f"{service} verification service unavailable")


class RetryError(ExternalUnavailable):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, service: str, attempts: int, last_detail: str = ""):
        self.attempts = attempts
        self.last_detail = last_detail
        super().__init__(
            service,
            f"{service} failed after {attempts} attempts: {last_detail}".rstrip(": "),
        )


class CircuitOpenError(ExternalUnavailable):
    """Raised without calling out when the circuit breaker is OPEN."""

    def __init__(self, service: str, retry_after: float):
        self.retry_after = retry_after
        super().__init__(
            service,
            f"Circuit breaker for {service} is OPEN. Retry after {retry_after:.0f}s",
        )


class IdentityServiceUnavailable(ExternalUnavailable):
    def __init__(self, cause: ExternalUnavailable):
        self.cause = cause
        super().__init__("identity", str(cause))


class ResidenceServiceUnavailable(ExternalUnavailable):
    def __init__(self, cause: ExternalUnavailable):
        self.cause = cause
        super().__init__("residence", str(cause))


# Duplicate submissions and conflicts


class ConcurrentDuplicate(OnboardingError):
    """The same request is still being processed; retry after a backoff."""

    retryable = True

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Request {request_id} is already in progress")


class ConflictError(OnboardingError):
    """Caller error that resubmission cannot fix."""


class RequestIdConflict(ConflictError):
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(
            f"Request id {request_id} was already used with a different payload"
        )


class DuplicateCustomer(ConflictError):
    def __init__(self, customer_id: str):
        self.customer_id = customer_id
        super().__init__(f"Customer {customer_id} already has an active onboarding")


# Internal


class InternalError(OnboardingError):
    """Opaque failure surfaced to the caller. Details go to the log only."""

    retryable = True

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Internal error while processing request {request_id}")


class ResponseMappingError(OnboardingError):
    """A partner answered 2xx with a body that cannot be interpreted."""

    def __init__(self, service: str, detail: str):
        self.service = service
        super().__init__(f"Unexpected {service} response: {detail}")


class RecordImmutableError(OnboardingError):
    """Attempt to change an onboarding record that already has a final status."""

    def __init__(self, reference_id: str):
        self.reference_id = reference_id
        super().__init__(f"Onboarding record {reference_id} is already final")
