"""Identity verification partner adapter."""

from typing import Any, Dict

from ..errors import ResponseMappingError
from ..normalize import normalize_digits, normalize_tax_id
from ..schema import CreateOnboardingRequest
from .common import OutcomeKind, VerificationClient, VerificationOutcome, as_score, require

SERVICE = "identity"


def build_identity_payload(request: CreateOnboardingRequest) -> Dict[str, Any]:
    return {
        "taxId": normalize_tax_id(request.tax_id),
        "fullName": " ".join(request.full_name.split()),
        "dateOfBirth": request.date_of_birth.strip(),
        "mobile": normalize_digits(request.mobile),
    }


class IdentityClient(VerificationClient):
    """
    POST {taxId, fullName, dateOfBirth, mobile}
    -> {outcome: "Passed"|"Failed", riskScore, referenceId}
    """

    service = SERVICE

    def map_response(self, body: Dict[str, Any]) -> VerificationOutcome:
        outcome = str(require(body, "outcome", SERVICE)).strip().lower()
        risk_score = body.get("riskScore")
        if risk_score is not None:
            risk_score = as_score(risk_score, "riskScore", SERVICE)
        reference_id = body.get("referenceId")

        if outcome == "passed":
            return VerificationOutcome(
                kind=OutcomeKind.SUCCESS,
                status="passed",
                score=risk_score,
                reference_id=reference_id,
            )
        if outcome == "failed":
            return VerificationOutcome(
                kind=OutcomeKind.REJECTED,
                status="failed",
                score=risk_score,
                reference_id=reference_id,
                detail="identity verification failed",
            )
        raise ResponseMappingError(SERVICE, f"unknown outcome {body.get('outcome')!r}")
