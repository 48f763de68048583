from .common import OutcomeKind, VerificationClient, VerificationOutcome
from .identity import IdentityClient, build_identity_payload
from .residence import ResidenceClient, build_residence_payload

__all__ = [
    "OutcomeKind",
    "VerificationClient",
    "VerificationOutcome",
    "IdentityClient",
    "ResidenceClient",
    "build_identity_payload",
    "build_residence_payload",
]
