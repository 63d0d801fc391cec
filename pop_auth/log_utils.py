"""Structured logging helpers for proof and challenge verification.

Only a fixed whitelist of *non-sensitive* context fields is ever attached to
log records:

- ``jti``        - proof identifier (first 8 chars kept)
- ``jkt``        - proof key thumbprint (first 8 chars kept)
- ``ceremony``   - ``registration`` / ``authentication``
- ``request_id`` - opaque correlation id supplied by the HTTP layer

Proof strings, challenge tokens, access tokens and the HMAC secret are never
passed to a logger.

Usage
-----
>>> from pop_auth.log_utils import get_auth_logger
>>> log = get_auth_logger(jti="9b2f0c1e-7d6a-4a55-b1f2-2d2ad4b0c9e1")
>>> log.info("proof accepted")
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping

_TRUNCATED = ("jti", "jkt")
_TRUNC_LEN = 8


class _AuthLoggerAdapter(logging.LoggerAdapter):
    """Inject whitelisted auth context into log records."""

    extra_keys = ("jti", "jkt", "ceremony", "request_id")

    def __init__(self, logger: logging.Logger, extra: Mapping[str, Any] | None = None):
        extra_clean: MutableMapping[str, Any] = {}
        for k in self.extra_keys:
            if not extra or extra.get(k) is None:
                continue
            if k in _TRUNCATED:
                extra_clean[k] = str(extra[k])[:_TRUNC_LEN]
            else:
                extra_clean[k] = extra[k]
        super().__init__(logger, extra_clean)

    def process(self, msg: str, kwargs: MutableMapping[str, Any]):
        if "extra" not in kwargs or kwargs["extra"] is None:
            kwargs["extra"] = {}
        # merge but do not overwrite call-site provided extras
        for k, v in self.extra.items():
            kwargs["extra"].setdefault(k, v)
        return msg, kwargs


def get_auth_logger(
    *,
    base_logger_name: str = "pop_auth",
    jti: str | None = None,
    jkt: str | None = None,
    ceremony: str | None = None,
    request_id: str | None = None,
) -> logging.LoggerAdapter:
    """Return a LoggerAdapter pre-filled with auth context."""
    logger = logging.getLogger(base_logger_name)
    return _AuthLoggerAdapter(
        logger,
        {"jti": jti, "jkt": jkt, "ceremony": ceremony, "request_id": request_id},
    )


def configure_logging(level: str = "INFO") -> None:
    """Root logging setup for the service entry points."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
