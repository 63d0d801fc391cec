from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_DEFAULT_PORTS = {"http": 80, "https": 443}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ORIGIN: str = "http://localhost:8000"

    # relying party / display
    RP_ID: str = "localhost"
    RP_NAME: str = "pop-auth"

    # enforce origin↔rp_id relationship at config load time
    STRICT_RP_BINDING: bool = True

    # base64url of 32 random bytes; read lazily by SigningKeyProvider so a
    # missing value surfaces as SecretUnavailable on first use
    HMAC_KEY: str = ""

    # DPoP proof freshness policy
    DPOP_MAX_AGE_SECONDS: int = 300
    DPOP_CLOCK_SKEW_SECONDS: int = 60

    # replay markers outlive the freshness window
    DPOP_JTI_TTL_SECONDS: int = 600
    REPLAY_TIMEOUT_SECONDS: float = 2.0
    REPLAY_STORE_DIR: Optional[Path] = None
    REPLAY_CLEANUP_INTERVAL_SECONDS: float = 60.0

    # lifetime of a session bound to a proof key after a completed ceremony
    SESSION_TTL_SECONDS: int = 86400

    CHALLENGE_COOKIE_NAME: str = "passkey_challenge"
    CHALLENGE_COOKIE_MAX_AGE_SECONDS: int = 300

    AUDIT_ENABLED: bool = True
    AUDIT_DIR: Path = Path("audit")

    LOG_LEVEL: str = "INFO"

    @field_validator("ORIGIN")
    @classmethod
    def normalize_origin(cls, v: str) -> str:
        """
        Browser origin the passkey ceremonies run under: scheme://host[:port].

        Lowercases scheme and host, drops a default port and a trailing slash.
        A path, query or fragment is a configuration mistake, not something to
        silently discard.
        """
        parts = urlsplit((v or "").strip().rstrip("/"))
        scheme = parts.scheme.lower()
        if scheme not in _DEFAULT_PORTS:
            raise ValueError("ORIGIN must be an http:// or https:// URL")
        if not parts.hostname:
            raise ValueError("ORIGIN has no hostname")
        if parts.path or parts.query or parts.fragment:
            raise ValueError("ORIGIN must not carry a path, query or fragment")

        host = parts.hostname.lower()
        if parts.port and parts.port != _DEFAULT_PORTS[scheme]:
            host = f"{host}:{parts.port}"
        return f"{scheme}://{host}"

    @field_validator("RP_ID")
    @classmethod
    def normalize_rp_id(cls, v: str) -> str:
        """WebAuthn rpId: a bare, lowercase domain. A pasted URL is reduced to its host."""
        v = (v or "").strip()
        if "://" in v:
            v = urlsplit(v).hostname or ""
        v = v.rstrip("/").lower()
        if not v or any(c in v for c in "/:?#@"):
            raise ValueError("RP_ID must be a bare domain such as 'example.com'")
        return v

    @field_validator("RP_NAME")
    @classmethod
    def normalize_rp_name(cls, v: str) -> str:
        return (v or "").strip() or "pop-auth"

    @field_validator("HMAC_KEY")
    @classmethod
    def strip_hmac_key(cls, v: str) -> str:
        return (v or "").strip()

    @field_validator("DPOP_MAX_AGE_SECONDS", "DPOP_CLOCK_SKEW_SECONDS", "DPOP_JTI_TTL_SECONDS")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return (v or "INFO").strip().upper()


def check_rp_binding(s: Settings) -> None:
    """
    WebAuthn expectation: origin host must equal rp_id or be a subdomain of it.
    """
    if not s.STRICT_RP_BINDING:
        return
    origin_host = urlsplit(s.ORIGIN).hostname or ""
    ok = (origin_host == s.RP_ID) or origin_host.endswith("." + s.RP_ID)
    if not ok:
        raise ValueError(
            f"ORIGIN host '{origin_host}' does not match RP_ID '{s.RP_ID}'. "
            f"Set RP_ID to the ORIGIN hostname or a parent domain of it."
        )


settings = Settings()

# Fail fast at import time rather than issuing challenges for the wrong RP
check_rp_binding(settings)
