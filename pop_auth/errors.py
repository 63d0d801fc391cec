"""
pop_auth/errors.py

Error taxonomy.

Two kinds of failure:

- Per-request rejections (a bad proof) are *values*: :class:`ProofError`
  codes carried inside a ``ProofRejected`` result. They never propagate as
  exceptions across the verification boundary.
- Caller or configuration mistakes (asking to sign a proof without a method,
  a missing HMAC secret) are *exceptions*. Configuration errors must abort
  startup instead of degrading into an unsigned mode.
"""

from enum import Enum


class ProofError(str, Enum):
    INVALID_FORMAT = "invalid-format"
    INVALID_JSON = "invalid-json"
    INVALID_TYPE = "invalid-type"
    UNSUPPORTED_ALGORITHM = "unsupported-algorithm"
    INVALID_JWK = "invalid-jwk"
    METHOD_MISMATCH = "method-mismatch"
    URL_MISMATCH = "url-mismatch"
    INVALID_URL = "invalid-url"
    INVALID_JTI = "invalid-jti"
    INVALID_IAT = "invalid-iat"
    FUTURE_IAT = "future-iat"
    EXPIRED = "expired"
    NONCE_MISMATCH = "nonce-mismatch"
    MISSING_ATH = "missing-ath"
    ATH_MISMATCH = "ath-mismatch"
    REPLAY_DETECTED = "replay-detected"
    INVALID_SIGNATURE = "invalid-signature"
    MISSING_DPOP_HEADER = "missing-dpop-header"


class PopAuthError(Exception):
    """Base class for exceptions raised by pop_auth."""


class SecretUnavailable(PopAuthError, RuntimeError):
    """The HMAC signing secret is missing or malformed."""


class InvalidMethod(PopAuthError, ValueError):
    """An HTTP method normalized to the empty string."""
