"""
Tests for request schema checks and normalization.
"""

from dataclasses import replace

import pytest

from kycflow.normalize import (
    compute_address_hash,
    compute_fingerprint,
    mask,
    normalize_digits,
    redact,
)
from kycflow.schema import CreateOnboardingRequest, validate_request, validate_request_id


class TestValidateRequest:
    def test_valid_request(self, valid_request_data):
        assert validate_request(valid_request_data) == []

    def test_missing_required_field(self, valid_request_data):
        del valid_request_data["tax_id"]
        errors = validate_request(valid_request_data)
        assert any("tax_id" in err for err in errors)

    def test_empty_customer_id(self, valid_request_data):
        valid_request_data["customer_id"] = "   "
        errors = validate_request(valid_request_data)
        assert any("customer_id" in err for err in errors)

    def test_optional_fields_may_be_missing(self, valid_request_data):
        del valid_request_data["address_line2"]
        del valid_request_data["country"]
        assert validate_request(valid_request_data) == []

    def test_optional_field_wrong_type(self, valid_request_data):
        valid_request_data["country"] = 91
        assert validate_request(valid_request_data) != []


class TestValidateRequestId:
    @pytest.mark.parametrize("request_id", [
        "3f1c2d4e-9b7a-4c1e-8f2d-0a1b2c3d4e5f",
        "req-00000001",
        "order:2024.01_abc",
    ])
    def test_accepts_tokens(self, request_id):
        assert validate_request_id(request_id) == []

    @pytest.mark.parametrize("request_id", [None, "", "abc", "with space id", "x" * 200, 12345678])
    def test_rejects_malformed(self, request_id):
        assert validate_request_id(request_id) != []


class TestRequestModel:
    def test_from_dict_ignores_unknown_keys(self, valid_request_data):
        valid_request_data["channel"] = "mobile-app"
        request = CreateOnboardingRequest.from_dict(valid_request_data)
        assert request.customer_id == "CUST-0001"
        assert "channel" not in request.to_dict()


class TestFingerprint:
    def test_stable_under_cosmetic_changes(self, sample_request):
        noisy = replace(
            sample_request,
            full_name="  ASHA verma ",
            email="asha.verma@example.com",
            mobile="+91-98765-43210",
            tax_id="ABCDE 1234F",
            postal_code="411 001",
        )
        assert compute_fingerprint(noisy) == compute_fingerprint(sample_request)

    def test_changes_with_content(self, sample_request):
        assert compute_fingerprint(replace(sample_request, city="Nashik")) != compute_fingerprint(sample_request)
        assert compute_fingerprint(replace(sample_request, customer_id="CUST-2")) != compute_fingerprint(sample_request)

    def test_address_hash_ignores_identity_fields(self, sample_request):
        other_person = replace(sample_request, full_name="Someone Else", tax_id="ZZZZZ9999Z")
        assert compute_address_hash(other_person) == compute_address_hash(sample_request)
        assert compute_address_hash(replace(sample_request, address_line1="13 MG Road")) != (
            compute_address_hash(sample_request)
        )


class TestRedaction:
    def test_mask_keeps_tail(self):
        assert mask("ABCDE1234F") == "******234F"
        assert mask("12") == "**"

    def test_normalize_digits_keeps_plus(self):
        assert normalize_digits(" +1 (415) 555-0100 ") == "+14155550100"

    def test_redact_masks_personal_fields_only(self, valid_request_data):
        redacted = redact(valid_request_data)
        assert redacted["customer_id"] == "CUST-0001"
        assert redacted["city"] == "Pune"
        assert redacted["tax_id"] != valid_request_data["tax_id"]
        assert redacted["date_of_birth"] == "****-**-**"
        assert redacted["address_line1"] == "***"
        assert redacted["full_name"] == "A*** V***"
        assert redacted["postal_code"] == "****01"
        assert valid_request_data["tax_id"] == "abcde1234f"
