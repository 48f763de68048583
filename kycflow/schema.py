import re
from dataclasses import dataclass, fields, asdict
from typing import Any, Dict, List, Optional

REQUIRED_STR_FIELDS = [
    "customer_id",
    "full_name",
    "email",
    "mobile",
    "tax_id",
    "date_of_birth",
    "address_line1",
    "city",
    "state",
    "postal_code",
]
OPTIONAL_STR_FIELDS = [
    "address_line2",
    "country",
]

# UUIDs and similar opaque tokens; no whitespace, bounded length
REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]{7,127}$")


@dataclass(frozen=True)
class CreateOnboardingRequest:
    """A customer creation request whose field formats were already checked upstream."""

    customer_id: str
    full_name: str
    email: str
    mobile: str
    tax_id: str
    date_of_birth: str  # ISO date, YYYY-MM-DD
    address_line1: str
    city: str
    state: str
    postal_code: str
    address_line2: Optional[str] = None
    country: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CreateOnboardingRequest":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _is_non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v.strip() != ""


def validate_request(data: Dict[str, Any]) -> List[str]:
    """
    Returns a list of validation error messages. Empty list means valid.
    Only structural checks; field formats are the API layer's job.
    """
    errors: List[str] = []

    for f in REQUIRED_STR_FIELDS:
        if f not in data:
            errors.append(f"Missing required field: {f}")
        elif not _is_non_empty_str(data[f]):
            errors.append(f"Field '{f}' must be a non-empty string")

    for f in OPTIONAL_STR_FIELDS:
        if data.get(f) is not None and not isinstance(data[f], str):
            errors.append(f"Field '{f}' must be a string if provided")

    return errors


def validate_request_id(request_id: Any) -> List[str]:
    if not isinstance(request_id, str) or not request_id:
        return ["Missing request id"]
    if not REQUEST_ID_RE.match(request_id):
        return ["Request id must be 8-128 characters of letters, digits, '.', '_', ':' or '-'"]
    return []
