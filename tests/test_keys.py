"""
Unit tests for key material.

Coverage:
* SigningKeyProvider derivation, caching, overrides, single derivation under
  concurrent first use
* EC P-256 JWK export / import, thumbprint, raw r||s signatures
"""

from __future__ import annotations

import threading
import time

import pytest

from pop_auth.codec import b64url_encode
from pop_auth.errors import SecretUnavailable
from pop_auth.keys import (
    SigningKeyProvider,
    generate_key_pair,
    jwk_thumbprint,
    public_jwk,
    public_key_from_jwk,
    sign_es256,
    verify_es256,
)
from pop_auth.models import PublicJwk


# --------------------------------------------------------------------------- #
# SigningKeyProvider                                                          #
# --------------------------------------------------------------------------- #
def test_provider_derives_32_byte_secret(secret: bytes, key_provider: SigningKeyProvider) -> None:
    assert key_provider.get() == secret


@pytest.mark.parametrize(
    "value, message",
    [
        (None, "not set"),
        ("", "not set"),
        ("a+b/", "base64url"),
        (b64url_encode(b"\x00" * 16), "32 bytes"),
        (b64url_encode(b"\x00" * 33), "32 bytes"),
    ],
)
def test_provider_rejects_bad_secret(value, message: str) -> None:
    provider = SigningKeyProvider(lambda: value)
    with pytest.raises(SecretUnavailable, match=message):
        provider.get()


def test_provider_caches_until_reset(hmac_key: str) -> None:
    calls = []

    def source():
        calls.append(1)
        return hmac_key

    provider = SigningKeyProvider(source)
    provider.get()
    provider.get()
    assert len(calls) == 1

    provider.reset_for_testing()
    provider.get()
    assert len(calls) == 2


def test_provider_override(secret: bytes) -> None:
    provider = SigningKeyProvider(lambda: None)
    provider.override(b"\x07" * 32)
    assert provider.get() == b"\x07" * 32

    with pytest.raises(ValueError):
        provider.override(b"short")

    provider.override(None)
    with pytest.raises(SecretUnavailable):
        provider.get()


def test_provider_concurrent_first_use_derives_once(hmac_key: str) -> None:
    calls = []

    def slow_source():
        calls.append(1)
        time.sleep(0.05)
        return hmac_key

    provider = SigningKeyProvider(slow_source)
    barrier = threading.Barrier(16)
    results = []

    def worker():
        barrier.wait()
        results.append(provider.get())

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(calls) == 1
    assert len(results) == 16
    assert len(set(results)) == 1


# --------------------------------------------------------------------------- #
# EC P-256                                                                    #
# --------------------------------------------------------------------------- #
def test_public_jwk_has_only_public_members(key_pair) -> None:
    jwk = public_jwk(key_pair.public_key())
    assert set(jwk.model_dump()) == {"kty", "crv", "x", "y"}
    assert jwk.kty == "EC" and jwk.crv == "P-256"


def test_jwk_import_roundtrip(key_pair) -> None:
    pub = key_pair.public_key()
    imported = public_key_from_jwk(public_jwk(pub))
    assert imported.public_numbers() == pub.public_numbers()


def test_jwk_import_rejects_off_curve_point() -> None:
    jwk = PublicJwk(kty="EC", crv="P-256", x=b64url_encode(b"\x01" * 32), y=b64url_encode(b"\x01" * 32))
    with pytest.raises(ValueError):
        public_key_from_jwk(jwk)


def test_jwk_import_rejects_short_coordinates(key_pair) -> None:
    jwk = public_jwk(key_pair.public_key())
    short = PublicJwk(kty="EC", crv="P-256", x=jwk.x[:-2], y=jwk.y)
    with pytest.raises(ValueError):
        public_key_from_jwk(short)


def test_public_jwk_model_rejects_private_member(key_pair) -> None:
    data = public_jwk(key_pair.public_key()).model_dump()
    data["d"] = "secret"
    with pytest.raises(ValueError):
        PublicJwk.model_validate(data)


def test_thumbprint_is_stable_and_key_specific(key_pair) -> None:
    jwk = public_jwk(key_pair.public_key())
    tp = jwk_thumbprint(jwk)
    assert len(tp) == 43
    assert tp == jwk_thumbprint(PublicJwk.model_validate(jwk.model_dump()))
    assert tp != jwk_thumbprint(public_jwk(generate_key_pair().public_key()))


def test_es256_raw_signature(key_pair) -> None:
    sig = sign_es256(key_pair, b"payload")
    assert len(sig) == 64
    assert verify_es256(key_pair.public_key(), sig, b"payload")
    assert not verify_es256(key_pair.public_key(), sig, b"payload!")
    assert not verify_es256(key_pair.public_key(), sig[:-1], b"payload")
    assert not verify_es256(generate_key_pair().public_key(), sig, b"payload")
