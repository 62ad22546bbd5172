# ============================================================================
# Budget Request Service
# Authentication & Security Module
# ============================================================================

from app.auth.security import (
    HMACVerificationError,
    MissingIdentityError,
    actor_from_headers,
    compute_hmac_signature,
    verify_hmac_signature,
)

__all__ = [
    "HMACVerificationError",
    "MissingIdentityError",
    "actor_from_headers",
    "compute_hmac_signature",
    "verify_hmac_signature",
]
