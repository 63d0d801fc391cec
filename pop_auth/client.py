# pop_auth/client.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Client side of proof-of-possession.
#
# The client owns one EC P-256 key pair for its lifetime and signs a fresh
# proof for every outgoing request. The private key never leaves this process:
#
#   - KeyRepository:  where the key pair lives between runs
#                     (InMemoryKeyRepository for tests / ephemeral clients,
#                      FileKeyRepository for a PEM file with 0600 permissions)
#   - DpopAuth:       httpx.Auth flow adding the ``DPoP`` header
#
# If the server answers 401 with a ``DPoP-Nonce`` header, the request is
# signed once more with that nonce and retried. The nonce is remembered for
# later requests.
# -----------------------------------------------------------------------------

import logging
import os
from pathlib import Path
from typing import Generator, Optional, Protocol, Union

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from .clock import Clock, default_clock
from .keys import generate_key_pair
from .proof import DPOP_HEADER, create_proof

_LOG = logging.getLogger("pop_auth.client")

DPOP_NONCE_HEADER = "DPoP-Nonce"


# -----------------------------------------------------------------------------
# Key repositories
# -----------------------------------------------------------------------------
class KeyRepository(Protocol):
    def load(self) -> Optional[ec.EllipticCurvePrivateKey]: ...
    def save(self, key_pair: ec.EllipticCurvePrivateKey) -> None: ...


class InMemoryKeyRepository:
    def __init__(self) -> None:
        self._key: Optional[ec.EllipticCurvePrivateKey] = None

    def load(self) -> Optional[ec.EllipticCurvePrivateKey]:
        return self._key

    def save(self, key_pair: ec.EllipticCurvePrivateKey) -> None:
        self._key = key_pair


class FileKeyRepository:
    """Unencrypted PKCS#8 PEM on disk, owner read/write only."""

    def __init__(self, path: Union[str, os.PathLike]) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> Optional[ec.EllipticCurvePrivateKey]:
        if not self.path.exists():
            return None
        key = serialization.load_pem_private_key(self.path.read_bytes(), password=None)
        if not isinstance(key, ec.EllipticCurvePrivateKey) or not isinstance(key.curve, ec.SECP256R1):
            raise ValueError(f"{self.path} does not hold an EC P-256 private key")
        return key

    def save(self, key_pair: ec.EllipticCurvePrivateKey) -> None:
        pem = key_pair.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            os.write(fd, pem)
        finally:
            os.close(fd)
        _LOG.info("Saved proof key to %s", self.path)


def init_client(key_repository: Optional[KeyRepository] = None) -> ec.EllipticCurvePrivateKey:
    """Load the client's key pair, generating and saving one on first use."""
    repo = key_repository or InMemoryKeyRepository()
    key = repo.load()
    if key is None:
        key = generate_key_pair()
        repo.save(key)
        _LOG.info("Generated new proof key pair")
    return key


# -----------------------------------------------------------------------------
# httpx integration
# -----------------------------------------------------------------------------
class DpopAuth(httpx.Auth):
    """
    Attach a proof to every request.

    >>> auth = DpopAuth(init_client())
    >>> httpx.get("https://api.example.com/api/session", auth=auth)
    """

    def __init__(
        self,
        key_pair: ec.EllipticCurvePrivateKey,
        *,
        access_token: Optional[str] = None,
        nonce: Optional[str] = None,
        clock: Clock = default_clock,
    ) -> None:
        self.key_pair = key_pair
        self.access_token = access_token
        self.nonce = nonce
        self._clock = clock

    def _sign(self, request: httpx.Request) -> None:
        request.headers[DPOP_HEADER] = create_proof(
            self.key_pair,
            request.method,
            str(request.url),
            nonce=self.nonce,
            access_token=self.access_token,
            clock=self._clock,
        )
        if self.access_token:
            request.headers["Authorization"] = f"DPoP {self.access_token}"

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        self._sign(request)
        response = yield request

        server_nonce = response.headers.get(DPOP_NONCE_HEADER)
        if response.status_code == 401 and server_nonce and server_nonce != self.nonce:
            self.nonce = server_nonce
            self._sign(request)
            yield request
        elif server_nonce:
            self.nonce = server_nonce
