"""
Unit tests for byte-level helpers.

Coverage:
* strict base64url decoding
* canonical JSON and strict JSON object parsing
* method / htu normalization
"""

from __future__ import annotations

import pytest

from pop_auth.codec import (
    b64url_decode,
    b64url_encode,
    canonical_json_bytes,
    constant_time_equal,
    decode_json_segment,
    json_object_from_bytes,
    normalize_htu,
    normalize_method,
    sha256_b64url,
)


# --------------------------------------------------------------------------- #
# base64url                                                                   #
# --------------------------------------------------------------------------- #
def test_b64url_encode_has_no_padding() -> None:
    assert b64url_encode(b"\xfb\xff") == "-_8"
    assert b64url_decode("-_8") == b"\xfb\xff"


@pytest.mark.parametrize("bad", ["-_8=", "+/8", "ab cd", "ab\n", "é"])
def test_b64url_decode_rejects_non_alphabet(bad: str) -> None:
    with pytest.raises(ValueError):
        b64url_decode(bad)


def test_sha256_b64url_of_empty_string() -> None:
    assert sha256_b64url("") == "47DEQpj8HBSa-_TImW-5JCeuQeRkm5NMpJWZG3hSuFU"


def test_constant_time_equal_mixed_types() -> None:
    assert constant_time_equal("abc", b"abc")
    assert not constant_time_equal("abc", "abd")


# --------------------------------------------------------------------------- #
# JSON                                                                        #
# --------------------------------------------------------------------------- #
def test_canonical_json_is_sorted_and_compact() -> None:
    assert canonical_json_bytes({"b": 1, "a": {"d": "x", "c": [1, 2]}}) == b'{"a":{"c":[1,2],"d":"x"},"b":1}'


@pytest.mark.parametrize("raw", [b"[1,2]", b'"s"', b"{", b'{"a":NaN}', b'{"a":Infinity}', b"\xff\xfe"])
def test_json_object_from_bytes_rejects(raw: bytes) -> None:
    with pytest.raises(ValueError):
        json_object_from_bytes(raw)


def test_decode_json_segment() -> None:
    seg = b64url_encode(b'{"typ":"dpop+jwt"}')
    assert decode_json_segment(seg) == {"typ": "dpop+jwt"}


# --------------------------------------------------------------------------- #
# Request binding normalization                                               #
# --------------------------------------------------------------------------- #
def test_normalize_method() -> None:
    assert normalize_method(" post ") == "POST"
    assert normalize_method("") == ""


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://example.com/some/path?x=1", "https://example.com/some/path?x=1"),
        ("HTTPS://Example.COM/a", "https://example.com/a"),
        ("https://example.com:443/a", "https://example.com/a"),
        ("http://example.com:80/a", "http://example.com/a"),
        ("https://example.com:8443/a", "https://example.com:8443/a"),
        ("https://example.com", "https://example.com/"),
        ("https://example.com/a?", "https://example.com/a"),
        ("https://example.com/a#frag", "https://example.com/a"),
        ("https://user:pw@example.com/a", "https://example.com/a"),
        ("http://[::1]:8000/a", "http://[::1]:8000/a"),
    ],
)
def test_normalize_htu(url: str, expected: str) -> None:
    assert normalize_htu(url) == expected


@pytest.mark.parametrize("url", ["ftp://example.com/a", "/relative/path", "https:///nohost", "not a url", "https://example.com:99999/"])
def test_normalize_htu_rejects(url: str) -> None:
    with pytest.raises(ValueError):
        normalize_htu(url)


def test_json_object_from_bytes_rejects_deep_nesting() -> None:
    with pytest.raises(ValueError):
        json_object_from_bytes(b'{"a":' + b"[" * 100_000 + b"]" * 100_000 + b"}")
