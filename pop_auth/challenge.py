# pop_auth/challenge.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Signed challenge binding for passkey ceremonies.
#
# When a registration / authentication ceremony starts, the server hands the
# browser an opaque, tamper-evident value (carried in a cookie):
#
#     <payload_b64url>.<signature_b64url>
#
#     payload   = canonical JSON {"userId", "type", "value": {"challenge", "origin"}}
#     signature = HMAC-SHA256(server secret, payload bytes)
#
# When the ceremony completes, verify_challenge() recovers {challenge, origin}
# only if the signature verifies AND the token was issued for the same user
# and ceremony type the caller expects.
#
# Every failure returns None; the caller restarts the ceremony.
#
# userId binding: the empty string is the explicit "no known user yet"
# sentinel (discoverable-credential sign-in). It is still compared exactly.
# -----------------------------------------------------------------------------

import hashlib
import hmac
import logging
import secrets
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .codec import b64url_decode, b64url_encode, canonical_json_bytes, json_object_from_bytes
from .keys import SigningKeyProvider
from .models import ChallengePayload, ChallengeType, ChallengeValue

_LOG = logging.getLogger("pop_auth.challenge")

CHALLENGE_COOKIE_NAME = "passkey_challenge"
CHALLENGE_COOKIE_MAX_AGE_SECONDS = 300

_CHALLENGE_BYTES = 32


def new_challenge() -> str:
    """32 random bytes, base64url; the WebAuthn challenge value."""
    return b64url_encode(secrets.token_bytes(_CHALLENGE_BYTES))


def _mac(key: bytes, payload_bytes: bytes) -> bytes:
    return hmac.new(key, msg=payload_bytes, digestmod=hashlib.sha256).digest()


def sign_challenge(payload: ChallengePayload, key_provider: SigningKeyProvider) -> str:
    payload_bytes = canonical_json_bytes(payload.to_wire())
    sig = _mac(key_provider.get(), payload_bytes)
    return b64url_encode(payload_bytes) + "." + b64url_encode(sig)


def verify_challenge(
    token: Optional[str],
    *,
    user_id: str,
    ceremony: ChallengeType,
    key_provider: SigningKeyProvider,
) -> Optional[ChallengeValue]:
    """
    Recover the challenge bound to (user_id, ceremony), or None.

    Stages: split on the LAST ".", decode payload, constant-time HMAC check
    over the decoded bytes, strict schema validation, user/type match.
    SecretUnavailable from the key provider is a configuration error and
    propagates.
    """
    if not token:
        return None

    sep = token.rfind(".")
    if sep <= 0 or sep == len(token) - 1:
        return None
    payload_b64, sig_b64 = token[:sep], token[sep + 1:]

    try:
        payload_bytes = b64url_decode(payload_b64)
        sig = b64url_decode(sig_b64)
    except ValueError:
        return None

    expected_sig = _mac(key_provider.get(), payload_bytes)
    if not hmac.compare_digest(sig, expected_sig):
        _LOG.debug("Challenge token signature mismatch")
        return None

    try:
        raw: Dict[str, Any] = json_object_from_bytes(payload_bytes)
        payload = ChallengePayload.model_validate(raw)
    except (ValueError, ValidationError):
        return None

    if payload.user_id != user_id or payload.type != ceremony:
        _LOG.debug("Challenge token issued for a different user or ceremony")
        return None

    return payload.value


def challenge_cookie_kwargs(origin: str, max_age: int = CHALLENGE_COOKIE_MAX_AGE_SECONDS) -> Dict[str, Any]:
    """
    Cookie attributes for carrying a challenge token (Starlette set_cookie).

    HTTP-only, SameSite=Lax, Secure when the origin is HTTPS, short-lived.
    """
    return {
        "max_age": max_age,
        "path": "/",
        "httponly": True,
        "samesite": "lax",
        "secure": origin.lower().startswith("https://"),
    }
