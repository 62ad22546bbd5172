"""
Unit Tests for Webhook Signing and Gateway Identity
"""

import hashlib
import hmac

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.auth.security import (
    HMACVerificationError,
    MissingIdentityError,
    actor_from_headers,
    compute_hmac_signature,
    verify_hmac_signature,
)

SECRET = "webhook-secret"
BODY = b'{"event":"budget_request.created","data":{"id":1}}'


class TestHmac:

    def test_matches_reference_hmac(self) -> None:
        expected = hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest()
        assert compute_hmac_signature(BODY, SECRET) == expected

    def test_verify_accepts_prefixed_signature(self) -> None:
        signature = "sha256=" + compute_hmac_signature(BODY, SECRET)
        assert verify_hmac_signature(BODY, signature, SECRET) is True

    def test_missing_signature(self) -> None:
        with pytest.raises(HMACVerificationError) as exc_info:
            verify_hmac_signature(BODY, None, SECRET)
        assert exc_info.value.error_code == "SIG-001"

    @pytest.mark.parametrize("signature", ["abc", "z" * 64])
    def test_malformed_signature(self, signature: str) -> None:
        with pytest.raises(HMACVerificationError) as exc_info:
            verify_hmac_signature(BODY, signature, SECRET)
        assert exc_info.value.error_code == "SIG-004"

    def test_tampered_body(self) -> None:
        signature = compute_hmac_signature(BODY, SECRET)
        with pytest.raises(HMACVerificationError) as exc_info:
            verify_hmac_signature(BODY + b" ", signature, SECRET)
        assert exc_info.value.error_code == "SIG-003"


class TestActorFromHeaders:

    def test_full_identity(self) -> None:
        actor = actor_from_headers({
            "X-User-Id": "u-1",
            "X-User-Name": "Fiona",
            "X-User-Role": "Finance Admin",
            "X-User-Department": "Finance",
            "X-User-Email": "fiona@example.com",
        })
        assert actor.user_id == "u-1"
        assert actor.department == "finance"
        assert actor.is_finance_admin is True
        assert actor.email == "fiona@example.com"

    def test_lowercase_header_names(self) -> None:
        actor = actor_from_headers({
            "x-user-id": "u-2",
            "x-user-role": "HR Staff",
            "x-user-department": "hr",
        })
        assert actor.username == "u-2"
        assert actor.email is None
        assert actor.is_admin is False

    @pytest.mark.parametrize("missing", ["X-User-Id", "X-User-Role", "X-User-Department"])
    def test_missing_required_header(self, missing: str) -> None:
        headers = {
            "X-User-Id": "u-1",
            "X-User-Role": "Operations Staff",
            "X-User-Department": "operations",
        }
        headers[missing] = "  "
        with pytest.raises(MissingIdentityError) as exc_info:
            actor_from_headers(headers)
        assert exc_info.value.header == missing
