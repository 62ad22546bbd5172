"""
============================================================================
Budget Request Service - Security Module
============================================================================

Input Constraints: Raw body bytes, signature header, gateway identity headers
Side Effects: None (pure)

RESPONSIBILITIES:
- Sign outbound webhook bodies with HMAC-SHA256 (X-Webhook-Signature)
- Verify such signatures (used by subscribers and tests)
- Build the caller's ActorContext from the identity headers the API
  gateway sets after JWT verification

JWT verification itself happens upstream and is not repeated here.

============================================================================
"""

import hmac
import hashlib
from typing import Mapping, Optional

from services.budget_request_models import ActorContext


# ============================================================================
# CONSTANTS
# ============================================================================

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"

USER_ID_HEADER = "X-User-Id"
USER_NAME_HEADER = "X-User-Name"
USER_ROLE_HEADER = "X-User-Role"
USER_DEPARTMENT_HEADER = "X-User-Department"
USER_EMAIL_HEADER = "X-User-Email"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class HMACVerificationError(Exception):
    """
    Raised when webhook signature verification fails.

    Error Codes:
        SIG-001: Missing signature header
        SIG-003: Signature mismatch
        SIG-004: Invalid signature format
    """

    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{error_code}] {message}")


class MissingIdentityError(Exception):
    """Raised when the gateway identity headers are absent or incomplete."""

    def __init__(self, header: str):
        self.header = header
        super().__init__(f"Missing identity header: {header}")


# ============================================================================
# HMAC SIGNING
# ============================================================================

def compute_hmac_signature(payload: bytes, secret_key: str) -> str:
    """
    Hex HMAC-SHA256 of the exact payload bytes.

    The signature must be computed over the same bytes that are sent;
    re-serializing the payload would change whitespace and break it.
    """
    signature = hmac.new(
        key=secret_key.encode("utf-8"),
        msg=payload,
        digestmod=hashlib.sha256
    )
    return signature.hexdigest()


def verify_hmac_signature(
    payload: bytes,
    provided_signature: Optional[str],
    secret_key: str
) -> bool:
    """
    Verify an X-Webhook-Signature value against the payload bytes.

    Raises:
        HMACVerificationError: with SIG-001/003/004
    """
    if not provided_signature:
        raise HMACVerificationError(
            "SIG-001",
            f"Missing {SIGNATURE_HEADER} header."
        )

    clean_signature = provided_signature.strip()
    if clean_signature.startswith("sha256="):
        clean_signature = clean_signature[7:]

    if len(clean_signature) != 64:
        raise HMACVerificationError(
            "SIG-004",
            f"Invalid signature format. Expected 64 hex characters, "
            f"received {len(clean_signature)}."
        )

    try:
        int(clean_signature, 16)
    except ValueError:
        raise HMACVerificationError(
            "SIG-004",
            "Invalid signature format. Signature must be hexadecimal."
        )

    expected_signature = compute_hmac_signature(payload, secret_key)

    # Timing-safe comparison
    if not hmac.compare_digest(expected_signature.lower(), clean_signature.lower()):
        raise HMACVerificationError(
            "SIG-003",
            "Signature mismatch. Webhook payload may have been tampered with."
        )

    return True


# ============================================================================
# GATEWAY IDENTITY
# ============================================================================

def actor_from_headers(headers: Mapping[str, str]) -> ActorContext:
    """
    Build the ActorContext from gateway identity headers.

    Raises:
        MissingIdentityError: if user id, role or department is missing
    """
    def _get(name: str) -> Optional[str]:
        value = headers.get(name)
        if value is None:
            value = headers.get(name.lower())
        return value.strip() if value and value.strip() else None

    user_id = _get(USER_ID_HEADER)
    if user_id is None:
        raise MissingIdentityError(USER_ID_HEADER)
    role = _get(USER_ROLE_HEADER)
    if role is None:
        raise MissingIdentityError(USER_ROLE_HEADER)
    department = _get(USER_DEPARTMENT_HEADER)
    if department is None:
        raise MissingIdentityError(USER_DEPARTMENT_HEADER)

    return ActorContext(
        user_id=user_id,
        username=_get(USER_NAME_HEADER) or user_id,
        role=role,
        department=department.lower(),
        email=_get(USER_EMAIL_HEADER),
    )


__all__ = [
    "SIGNATURE_HEADER",
    "EVENT_HEADER",
    "HMACVerificationError",
    "MissingIdentityError",
    "compute_hmac_signature",
    "verify_hmac_signature",
    "actor_from_headers",
]
