# pop_auth/keys.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Key material for both protocols lives here.
#
#   - SigningKeyProvider: the server's HMAC secret for challenge tokens.
#     Derived once per process from HMAC_KEY (base64url of exactly 32 bytes).
#     This is an *infrastructure* secret; it is never a user identity key.
#
#   - EC P-256 helpers: proof key pairs are client-held. The server only ever
#     sees the public half, as a minimal JWK {kty, crv, x, y}.
#
# Signatures use the JOSE raw form r || s (2 x 32 bytes), not DER, because
# that is what crosses the wire in the proof's third segment.
# -----------------------------------------------------------------------------

import hashlib
import logging
import threading
from typing import Callable, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

from .codec import b64url_decode, b64url_encode, canonical_json_bytes
from .config import settings
from .errors import SecretUnavailable
from .models import PublicJwk

_LOG = logging.getLogger("pop_auth.keys")

SECRET_BYTE_LENGTH = 32
HMAC_ENV_KEY = "HMAC_KEY"

_COORD_LEN = 32  # P-256 field element size in bytes


# -----------------------------------------------------------------------------
# HMAC secret provider
# -----------------------------------------------------------------------------
class SigningKeyProvider:
    """
    Lazily derives and caches the challenge-signing secret.

    Concurrent first calls to get() observe exactly one derivation: the lock
    is taken only while the cache is empty and the cache is re-checked under
    it. Callers receive immutable bytes and never hold a mutable reference.
    """

    def __init__(self, secret_source: Optional[Callable[[], Optional[str]]] = None) -> None:
        self._secret_source = secret_source or (lambda: settings.HMAC_KEY)
        self._lock = threading.Lock()
        self._key: Optional[bytes] = None
        self._override: Optional[bytes] = None

    def get(self) -> bytes:
        key = self._key
        if key is not None:
            return key
        with self._lock:
            if self._key is None:
                self._key = self._derive()
                _LOG.debug("Derived challenge signing key")
            return self._key

    def _derive(self) -> bytes:
        if self._override is not None:
            return self._override

        value = self._secret_source()
        if not value:
            raise SecretUnavailable(f"{HMAC_ENV_KEY} is not set")
        try:
            raw = b64url_decode(value.strip())
        except ValueError:
            raise SecretUnavailable(f"{HMAC_ENV_KEY} must be a base64url value") from None
        if len(raw) != SECRET_BYTE_LENGTH:
            raise SecretUnavailable(f"{HMAC_ENV_KEY} must decode to {SECRET_BYTE_LENGTH} bytes")
        return raw

    def override(self, secret: Optional[bytes]) -> None:
        """Pin the secret (tests), or pass None to go back to the secret source."""
        if secret is not None and len(secret) != SECRET_BYTE_LENGTH:
            raise ValueError(f"secret must be {SECRET_BYTE_LENGTH} bytes")
        with self._lock:
            self._override = bytes(secret) if secret is not None else None
            self._key = None

    def reset_for_testing(self) -> None:
        with self._lock:
            self._key = None


# -----------------------------------------------------------------------------
# EC P-256 proof keys
# -----------------------------------------------------------------------------
def generate_key_pair() -> ec.EllipticCurvePrivateKey:
    """New ECDSA P-256 key; the private key object carries its public half."""
    return ec.generate_private_key(ec.SECP256R1())


def public_jwk(public_key: ec.EllipticCurvePublicKey) -> PublicJwk:
    """Export a public key in its four-field JWK form. Private fields never leave."""
    if not isinstance(public_key.curve, ec.SECP256R1):
        raise ValueError("only P-256 keys are supported")
    nums = public_key.public_numbers()
    return PublicJwk(
        kty="EC",
        crv="P-256",
        x=b64url_encode(nums.x.to_bytes(_COORD_LEN, "big")),
        y=b64url_encode(nums.y.to_bytes(_COORD_LEN, "big")),
    )


def public_key_from_jwk(jwk: PublicJwk) -> ec.EllipticCurvePublicKey:
    """
    Import a public JWK.

    Raises ValueError if a coordinate is not base64url, has the wrong length,
    or the point is not on the curve.
    """
    x = b64url_decode(jwk.x)
    y = b64url_decode(jwk.y)
    if len(x) != _COORD_LEN or len(y) != _COORD_LEN:
        raise ValueError("P-256 coordinates must be 32 bytes")
    nums = ec.EllipticCurvePublicNumbers(
        int.from_bytes(x, "big"),
        int.from_bytes(y, "big"),
        ec.SECP256R1(),
    )
    return nums.public_key()


def jwk_thumbprint(jwk: PublicJwk) -> str:
    """RFC 7638 thumbprint: b64url(SHA-256(canonical {crv, kty, x, y}))."""
    members = {"crv": jwk.crv, "kty": jwk.kty, "x": jwk.x, "y": jwk.y}
    return b64url_encode(hashlib.sha256(canonical_json_bytes(members)).digest())


def sign_es256(private_key: ec.EllipticCurvePrivateKey, data: bytes) -> bytes:
    der = private_key.sign(data, ec.ECDSA(hashes.SHA256()))
    r, s = decode_dss_signature(der)
    return r.to_bytes(_COORD_LEN, "big") + s.to_bytes(_COORD_LEN, "big")


def verify_es256(public_key: ec.EllipticCurvePublicKey, signature: bytes, data: bytes) -> bool:
    if len(signature) != 2 * _COORD_LEN:
        return False
    r = int.from_bytes(signature[:_COORD_LEN], "big")
    s = int.from_bytes(signature[_COORD_LEN:], "big")
    try:
        public_key.verify(encode_dss_signature(r, s), data, ec.ECDSA(hashes.SHA256()))
    except InvalidSignature:
        return False
    return True
