"""Residence (address) verification partner adapter."""

from typing import Any, Dict, Optional

import requests

from ..errors import ResponseMappingError
from ..normalize import compute_address_hash, normalize_postal_code
from ..schema import CreateOnboardingRequest
from .common import OutcomeKind, VerificationClient, VerificationOutcome, as_score, require

SERVICE = "residence"


def build_residence_payload(request: CreateOnboardingRequest) -> Dict[str, Any]:
    return {
        "city": " ".join(request.city.split()),
        "state": " ".join(request.state.split()),
        "postalCode": normalize_postal_code(request.postal_code),
        "addressHash": compute_address_hash(request),
    }


class ResidenceClient(VerificationClient):
    """
    POST {city, state, postalCode, addressHash}
    -> {verified: bool, confidence: number, referenceId}

    A positive flag alone is not enough: the confidence must also reach
    confidence_threshold.
    """

    service = SERVICE

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        confidence_threshold: float = 0.8,
    ):
        super().__init__(url, timeout=timeout, api_key=api_key, session=session)
        self.confidence_threshold = confidence_threshold

    def map_response(self, body: Dict[str, Any]) -> VerificationOutcome:
        verified = require(body, "verified", SERVICE)
        if not isinstance(verified, bool):
            raise ResponseMappingError(SERVICE, "'verified' is not a boolean")
        confidence = as_score(require(body, "confidence", SERVICE), "confidence", SERVICE)
        reference_id = body.get("referenceId")

        if verified and confidence >= self.confidence_threshold:
            return VerificationOutcome(
                kind=OutcomeKind.SUCCESS,
                status="verified",
                score=confidence,
                reference_id=reference_id,
            )
        detail = "address not verified" if not verified else (
            f"confidence {confidence} below threshold {self.confidence_threshold}"
        )
        return VerificationOutcome(
            kind=OutcomeKind.REJECTED,
            status="failed",
            score=confidence,
            reference_id=reference_id,
            detail=detail,
        )
