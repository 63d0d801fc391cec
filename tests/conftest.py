"""Shared fixtures for pop_auth tests."""

from __future__ import annotations

import pytest

from pop_auth.codec import b64url_encode
from pop_auth.keys import SigningKeyProvider, generate_key_pair

NOW = 1_700_000_000


class FakeClock:
    """Settable clock; tests move time by assigning ``now``."""

    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def key_pair():
    return generate_key_pair()


@pytest.fixture
def secret() -> bytes:
    return bytes(range(32))


@pytest.fixture
def hmac_key(secret: bytes) -> str:
    return b64url_encode(secret)


@pytest.fixture
def key_provider(hmac_key: str) -> SigningKeyProvider:
    return SigningKeyProvider(lambda: hmac_key)
