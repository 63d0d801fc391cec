# pop_auth/codec.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Byte-level helpers shared by the proof and challenge layers.
#
# Responsibilities:
#   - base64url transport encoding (no padding, strict alphabet on decode)
#   - canonical JSON serialization (sorted keys, no whitespace, UTF-8)
#   - strict JSON parsing (object root only, no NaN / Infinity literals)
#   - request binding normalization (HTTP method, htu URL form)
#   - constant-time comparison for anything derived from a secret
#
# Every decode helper raises ValueError (or a subclass: binascii.Error,
# UnicodeDecodeError, json.JSONDecodeError) on bad input so callers can
# convert exactly one exception family into a rejection code.
# -----------------------------------------------------------------------------

import base64
import hashlib
import hmac
import json
import re
from typing import Any, Dict, Union
from urllib.parse import urlsplit


_B64URL_RE = re.compile(r"[A-Za-z0-9_-]*")

_DEFAULT_PORTS = {"http": 80, "https": 443}


# -----------------------------------------------------------------------------
# Base64 helpers
# -----------------------------------------------------------------------------
def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 encoding WITHOUT padding."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    """
    Decode unpadded URL-safe Base64.

    Unlike a lenient decoder this rejects padding characters, whitespace and
    anything outside the base64url alphabet instead of silently skipping it.
    """
    if not isinstance(s, str) or not _B64URL_RE.fullmatch(s):
        raise ValueError("value is not base64url")
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))


def sha256_b64url(value: str) -> str:
    """base64url( SHA-256(utf8(value)) ), the ``ath`` claim form."""
    return b64url_encode(hashlib.sha256(value.encode("utf-8")).digest())


def constant_time_equal(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    if isinstance(a, str):
        a = a.encode("utf-8")
    if isinstance(b, str):
        b = b.encode("utf-8")
    return hmac.compare_digest(a, b)


# -----------------------------------------------------------------------------
# Canonical JSON
# -----------------------------------------------------------------------------
def canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    """
    Deterministic JSON bytes:
    - sorted keys
    - no whitespace
    - UTF-8
    """
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite JSON literal: {name}")


def json_object_from_bytes(data: bytes) -> Dict[str, Any]:
    """Parse UTF-8 JSON bytes whose root must be an object."""
    try:
        obj = json.loads(data.decode("utf-8"), parse_constant=_reject_constant)
    except RecursionError:
        raise ValueError("JSON nested too deeply") from None
    if not isinstance(obj, dict):
        raise ValueError("JSON root must be an object")
    return obj


def decode_json_segment(segment: str) -> Dict[str, Any]:
    """base64url segment -> JSON object."""
    return json_object_from_bytes(b64url_decode(segment))


# -----------------------------------------------------------------------------
# Request binding normalization
# -----------------------------------------------------------------------------
def normalize_method(method: str) -> str:
    return str(method).strip().upper()


def normalize_htu(url: str) -> str:
    """
    Reduce a URL to ``scheme://host[:port]/path[?query]``.

    Normalization:
      - scheme and host lowercased
      - default port dropped, explicit non-default port kept
      - userinfo and fragment dropped
      - empty path becomes "/"
      - an empty query ("?" alone) is dropped

    Raises ValueError for non-http(s) URLs or URLs without a host.
    """
    parts = urlsplit(str(url).strip())
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        raise ValueError("URL must start with http:// or https://")

    host = parts.hostname
    if not host:
        raise ValueError("URL must include a hostname")
    if ":" in host:
        host = f"[{host}]"

    # .port raises ValueError on an out-of-range or non-numeric port
    port = parts.port
    netloc = host if port is None or port == _DEFAULT_PORTS[scheme] else f"{host}:{port}"

    path = parts.path or "/"
    query = f"?{parts.query}" if parts.query else ""
    return f"{scheme}://{netloc}{path}{query}"
