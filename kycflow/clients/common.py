"""Shared outbound call and outcome classification for verification clients."""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from ..errors import ResponseMappingError
from ..logger import get_logger
from ..retry import should_retry_http_status

logger = get_logger()


class OutcomeKind:
    SUCCESS = "success"
    REJECTED = "rejected"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class VerificationOutcome:
    """
    Tagged result of one verification call.

    status is the normalized business result ('passed'/'verified' on
    SUCCESS, 'failed' on REJECTED, None on TRANSIENT).
    """

    kind: str
    status: Optional[str] = None
    score: Optional[float] = None
    reference_id: Optional[str] = None
    detail: str = ""
    attempts: int = 1

    @property
    def is_transient(self) -> bool:
        return self.kind == OutcomeKind.TRANSIENT

    @classmethod
    def transient(cls, detail: str) -> "VerificationOutcome":
        return cls(kind=OutcomeKind.TRANSIENT, detail=detail)


class VerificationClient:
    """
    Issues exactly one POST per invocation; never retries.

    Subclasses implement map_response().
    """

    service = "verification"

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.api_key = api_key
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def post(self, payload: Dict[str, Any]) -> VerificationOutcome:
        """POST payload and classify the answer.

        Returns:
            VerificationOutcome of kind TRANSIENT for timeouts, connection
            errors and retryable statuses; REJECTED for other 4xx; otherwise
            whatever map_response() decides.

        Raises:
            ResponseMappingError: On a 2xx body that cannot be interpreted
        """
        try:
            resp = self.session.post(
                self.url, json=payload, headers=self._headers(), timeout=self.timeout
            )
        except requests.exceptions.Timeout:
            logger.warning(f"{self.service.capitalize()} request timed out", url=self.url)
            return VerificationOutcome.transient("timeout")
        except requests.exceptions.ConnectionError as e:
            logger.warning(f"{self.service.capitalize()} connection failed", url=self.url, error=str(e))
            return VerificationOutcome.transient("connection error")
        except requests.exceptions.RequestException as e:
            logger.error(f"{self.service.capitalize()} request error", url=self.url, error=str(e))
            return VerificationOutcome.transient(f"request error: {e}")

        status = resp.status_code
        if should_retry_http_status(status) or status >= 500:
            logger.warning(f"{self.service.capitalize()} returned retryable status", status=status)
            return VerificationOutcome.transient(f"HTTP {status}")
        if 400 <= status < 500:
            logger.info(f"{self.service.capitalize()} rejected request", status=status)
            return VerificationOutcome(kind=OutcomeKind.REJECTED, status="failed", detail=f"HTTP {status}")
        if status >= 300:
            return VerificationOutcome.transient(f"unexpected HTTP {status}")

        try:
            body = resp.json()
        except ValueError as e:
            raise ResponseMappingError(self.service, "body is not JSON") from e
        if not isinstance(body, dict):
            raise ResponseMappingError(self.service, "body is not a JSON object")
        return self.map_response(body)

    def __call__(self, payload: Dict[str, Any]) -> VerificationOutcome:
        return self.post(payload)

    def map_response(self, body: Dict[str, Any]) -> VerificationOutcome:
        raise NotImplementedError


def require(body: Dict[str, Any], key: str, service: str) -> Any:
    if key not in body or body[key] is None:
        raise ResponseMappingError(service, f"missing '{key}'")
    return body[key]


def as_score(value: Any, key: str, service: str) -> float:
    if isinstance(value, bool):
        raise ResponseMappingError(service, f"'{key}' is not a number")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ResponseMappingError(service, f"'{key}' is not a number") from e
