# pop_auth/proof.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Proof-of-possession layer (DPoP-style, RFC 9449 shaped).
#
# A client signs one proof per request:
#
#     b64url(header) . b64url(claims) . b64url(r || s)
#
#     header = {"alg": "ES256", "typ": "dpop+jwt", "jwk": {kty, crv, x, y}}
#     claims = {"htm", "htu", "iat", "jti", "nonce"?, "ath"?}
#
# The server verifies structure, claims, freshness, the signature, and finally
# single use through an injected ReplayGuard.
#
# Rules that matter:
#   - Verification never raises for bad input. Every failure is a
#     ProofRejected value carrying exactly one ProofError code.
#   - The signature is checked over the segments AS TRANSMITTED. Nothing is
#     re-serialized.
#   - The signature is verified before the replay guard is consulted, so an
#     unauthenticated proof can never consume a jti.
#   - A replay guard that times out or errors is a rejection (fail-closed).
# -----------------------------------------------------------------------------

import logging
import math
import uuid
from dataclasses import dataclass
from typing import Literal, Mapping, Optional, Tuple, Union

import anyio
from cryptography.hazmat.primitives.asymmetric import ec
from pydantic import ValidationError

from .clock import Clock, default_clock
from .codec import (
    b64url_decode,
    b64url_encode,
    canonical_json_bytes,
    constant_time_equal,
    decode_json_segment,
    normalize_htu,
    normalize_method,
    sha256_b64url,
)
from .errors import InvalidMethod, ProofError
from .keys import jwk_thumbprint, public_jwk, public_key_from_jwk, sign_es256, verify_es256
from .log_utils import get_auth_logger
from .models import PROOF_ALG, PROOF_TYPE, ProofClaims, ProofHeader, PublicJwk
from .storage import ReplayGuard

_LOG = logging.getLogger("pop_auth.proof")

DPOP_HEADER = "DPoP"

DEFAULT_MAX_AGE_SECONDS = 300
DEFAULT_CLOCK_SKEW_SECONDS = 60


# -----------------------------------------------------------------------------
# Policy + results
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ProofPolicy:
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS
    clock_skew_seconds: int = DEFAULT_CLOCK_SKEW_SECONDS
    # fixed "now" in seconds, for deterministic tests
    now: Optional[int] = None
    clock: Clock = default_clock
    expected_nonce: Optional[str] = None
    expected_access_token: Optional[str] = None
    replay_guard: Optional[ReplayGuard] = None
    # defaults to the freshness window (max age + skew)
    replay_ttl_seconds: Optional[float] = None
    replay_timeout_seconds: Optional[float] = None

    def current_time(self) -> int:
        return self.now if self.now is not None else int(self.clock())

    def replay_ttl(self) -> float:
        if self.replay_ttl_seconds is not None:
            return self.replay_ttl_seconds
        return self.max_age_seconds + self.clock_skew_seconds


@dataclass(frozen=True)
class ProofVerified:
    claims: ProofClaims
    jwk: PublicJwk
    parts: Tuple[str, str, str]
    valid: Literal[True] = True

    @property
    def thumbprint(self) -> str:
        """Key thumbprint; the authoritative handle for session correlation."""
        return jwk_thumbprint(self.jwk)


@dataclass(frozen=True)
class ProofRejected:
    error: ProofError
    valid: Literal[False] = False


ProofResult = Union[ProofVerified, ProofRejected]


# -----------------------------------------------------------------------------
# Signing (client side)
# -----------------------------------------------------------------------------
def create_proof(
    key_pair: ec.EllipticCurvePrivateKey,
    method: str,
    url: str,
    *,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
    clock: Clock = default_clock,
) -> str:
    """
    Build a proof binding ``method`` + ``url`` to ``key_pair``.

    Raises InvalidMethod for an empty method and ValueError for a URL that
    is not an absolute http(s) URL.
    """
    htm = normalize_method(method)
    if not htm:
        raise InvalidMethod("HTTP method is required to create a DPoP proof")
    htu = normalize_htu(url)

    claims = ProofClaims(
        htm=htm,
        htu=htu,
        iat=int(clock()),
        jti=str(uuid.uuid4()),
        nonce=nonce,
        ath=sha256_b64url(access_token) if access_token else None,
    )
    header = ProofHeader(jwk=public_jwk(key_pair.public_key()))

    signing_input = (
        b64url_encode(canonical_json_bytes(header.model_dump()))
        + "."
        + b64url_encode(canonical_json_bytes(claims.model_dump(exclude_none=True)))
    )
    sig = sign_es256(key_pair, signing_input.encode("ascii"))
    return signing_input + "." + b64url_encode(sig)


# -----------------------------------------------------------------------------
# Verification (server side)
# -----------------------------------------------------------------------------
def _finite(value: Union[int, float]) -> bool:
    try:
        return math.isfinite(float(value))
    except OverflowError:
        return False


def _reject(code: ProofError, jti: Optional[str] = None) -> ProofRejected:
    get_auth_logger(base_logger_name="pop_auth.proof", jti=jti).debug("Proof rejected: %s", code.value)
    return ProofRejected(error=code)


async def _check_replay(guard: ReplayGuard, policy: ProofPolicy, jti: str) -> bool:
    log = get_auth_logger(base_logger_name="pop_auth.proof", jti=jti)
    try:
        if policy.replay_timeout_seconds is None:
            return bool(await guard.check_and_mark(jti, policy.replay_ttl()))
        with anyio.fail_after(policy.replay_timeout_seconds):
            return bool(await guard.check_and_mark(jti, policy.replay_ttl()))
    except TimeoutError:
        log.warning("Replay guard timed out; rejecting proof")
        return False
    except Exception as e:
        log.warning("Replay guard unavailable (%s: %s); rejecting proof", type(e).__name__, e)
        return False


async def verify_proof(
    proof: str,
    method: str,
    url: str,
    policy: Optional[ProofPolicy] = None,
) -> ProofResult:
    """
    Validate ``proof`` for a request ``method`` ``url``.

    Checks run in a fixed order and the first failure wins:
      format, JSON, typ, alg, jwk shape, htm, url, htu, jti, iat,
      future iat, max age, nonce, ath, signature, replay.
    """
    policy = policy or ProofPolicy()

    parts = str(proof).split(".")
    if len(parts) != 3:
        return _reject(ProofError.INVALID_FORMAT)

    try:
        header = decode_json_segment(parts[0])
        payload = decode_json_segment(parts[1])
    except ValueError:
        return _reject(ProofError.INVALID_JSON)

    # Header
    typ = header.get("typ")
    if not isinstance(typ, str) or typ.lower() != PROOF_TYPE:
        return _reject(ProofError.INVALID_TYPE)
    if header.get("alg") != PROOF_ALG:
        return _reject(ProofError.UNSUPPORTED_ALGORITHM)
    try:
        jwk = PublicJwk.model_validate(header.get("jwk"))
    except ValidationError:
        return _reject(ProofError.INVALID_JWK)

    # Request binding
    expected_method = normalize_method(method)
    htm = payload.get("htm")
    if not expected_method or not isinstance(htm, str) or htm.upper() != expected_method:
        return _reject(ProofError.METHOD_MISMATCH)

    try:
        expected_htu = normalize_htu(url)
    except ValueError:
        return _reject(ProofError.INVALID_URL)
    htu = payload.get("htu")
    if not isinstance(htu, str):
        return _reject(ProofError.URL_MISMATCH)
    try:
        got_htu = normalize_htu(htu)
    except ValueError:
        return _reject(ProofError.URL_MISMATCH)
    if got_htu != expected_htu:
        return _reject(ProofError.URL_MISMATCH)

    # Identity + freshness
    jti = payload.get("jti")
    if not isinstance(jti, str) or not jti:
        return _reject(ProofError.INVALID_JTI)

    iat = payload.get("iat")
    if isinstance(iat, bool) or not isinstance(iat, (int, float)) or not _finite(iat):
        return _reject(ProofError.INVALID_IAT, jti)

    now = policy.current_time()
    if iat > now + policy.clock_skew_seconds:
        return _reject(ProofError.FUTURE_IAT, jti)
    if now - iat > policy.max_age_seconds:
        return _reject(ProofError.EXPIRED, jti)

    # Optional bindings
    nonce = payload.get("nonce")
    if nonce is not None and not isinstance(nonce, str):
        return _reject(ProofError.NONCE_MISMATCH, jti)
    if policy.expected_nonce is not None:
        if nonce is None or not constant_time_equal(nonce, policy.expected_nonce):
            return _reject(ProofError.NONCE_MISMATCH, jti)

    ath = payload.get("ath")
    if ath is not None and not isinstance(ath, str):
        return _reject(ProofError.MISSING_ATH, jti)
    if policy.expected_access_token:
        if ath is None:
            return _reject(ProofError.MISSING_ATH, jti)
        if not constant_time_equal(ath, sha256_b64url(policy.expected_access_token)):
            return _reject(ProofError.ATH_MISMATCH, jti)

    # Signature over the transmitted signing input
    try:
        public_key = public_key_from_jwk(jwk)
    except ValueError:
        return _reject(ProofError.INVALID_JWK, jti)
    try:
        signature = b64url_decode(parts[2])
    except ValueError:
        return _reject(ProofError.INVALID_SIGNATURE, jti)
    signing_input = f"{parts[0]}.{parts[1]}".encode("ascii")
    if not verify_es256(public_key, signature, signing_input):
        return _reject(ProofError.INVALID_SIGNATURE, jti)

    # Single use
    guard = policy.replay_guard
    if guard is not None and not await _check_replay(guard, policy, jti):
        return _reject(ProofError.REPLAY_DETECTED, jti)

    return ProofVerified(
        claims=ProofClaims(
            htm=htm.upper(),
            htu=got_htu,
            iat=iat,
            jti=jti,
            nonce=nonce,
            ath=ath,
        ),
        jwk=jwk,
        parts=(parts[0], parts[1], parts[2]),
    )


async def verify_proof_from_headers(
    headers: Mapping[str, str],
    method: str,
    url: str,
    policy: Optional[ProofPolicy] = None,
) -> ProofResult:
    """
    Look up the ``DPoP`` header (case-insensitive) and verify it.

    More than one DPoP header is a malformed request.
    """
    values = [v for k, v in headers.items() if k.lower() == DPOP_HEADER.lower()]
    if not values or not values[0]:
        return _reject(ProofError.MISSING_DPOP_HEADER)
    if len(values) > 1:
        return _reject(ProofError.INVALID_FORMAT)
    return await verify_proof(values[0], method, url, policy)
