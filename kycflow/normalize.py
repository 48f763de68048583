import hashlib
import json
from typing import Any, Dict

from .schema import CreateOnboardingRequest


def normalize_text(s: str) -> str:
    return " ".join(s.strip().lower().split())


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_digits(value: str) -> str:
    # Keep a leading '+' for international mobile numbers
    value = value.strip()
    prefix = "+" if value.startswith("+") else ""
    return prefix + "".join(ch for ch in value if ch.isdigit())


def normalize_tax_id(tax_id: str) -> str:
    return "".join(tax_id.split()).upper()


def normalize_postal_code(postal_code: str) -> str:
    return "".join(postal_code.split()).upper()


def normalized_request(request: CreateOnboardingRequest) -> Dict[str, Any]:
    """Canonical form of a request, used for fingerprinting."""
    return {
        "customer_id": request.customer_id.strip(),
        "full_name": normalize_text(request.full_name),
        "email": normalize_email(request.email),
        "mobile": normalize_digits(request.mobile),
        "tax_id": normalize_tax_id(request.tax_id),
        "date_of_birth": request.date_of_birth.strip(),
        "address_line1": normalize_text(request.address_line1),
        "address_line2": normalize_text(request.address_line2 or ""),
        "city": normalize_text(request.city),
        "state": normalize_text(request.state),
        "postal_code": normalize_postal_code(request.postal_code),
        "country": normalize_text(request.country or ""),
    }


def _sha256(payload: Any) -> str:
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def compute_fingerprint(request: CreateOnboardingRequest) -> str:
    """Two requests with the same fingerprint are the same logical request."""
    return _sha256(normalized_request(request))


def compute_address_hash(request: CreateOnboardingRequest) -> str:
    n = normalized_request(request)
    return _sha256([
        n["address_line1"],
        n["address_line2"],
        n["city"],
        n["state"],
        n["postal_code"],
        n["country"],
    ])


def mask(value: str, keep: int = 4) -> str:
    if not value:
        return value
    if len(value) <= keep:
        return "*" * len(value)
    return "*" * (len(value) - keep) + value[-keep:]


def mask_email(email: str) -> str:
    local, sep, domain = email.partition("@")
    if not sep:
        return mask(email)
    return f"{local[:1]}***@{domain}"


def mask_name(name: str) -> str:
    return " ".join(part[:1] + "***" for part in name.split())


SENSITIVE_FIELDS = {
    "full_name": mask_name,
    "postal_code": lambda v: mask(v, keep=2),
    "tax_id": mask,
    "mobile": mask,
    "email": mask_email,
    "date_of_birth": lambda v: "****-**-**" if v else v,
    "address_line1": lambda v: "***" if v else v,
    "address_line2": lambda v: "***" if v else v,
}


def redact(data: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a flat dict with personal fields masked, for logs and audit events."""
    redacted = {}
    for key, value in data.items():
        masker = SENSITIVE_FIELDS.get(key)
        if masker is not None and isinstance(value, str):
            redacted[key] = masker(value)
        else:
            redacted[key] = value
    return redacted
