"""
pop_auth/audit.py

Append-only record of proof and ceremony outcomes, one JSON object per line.

Chaining rule:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Every stored line carries `prev_hash` and `hash` (64 hex chars each). Editing,
dropping or reordering a line makes `verify_log_chain` fail. The latest head is
mirrored to verification_audit.state, and writers serialize on an flock.

Proof strings and challenge tokens are never written; only their SHA3-256
digests and lengths.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

from .codec import canonical_json_bytes
from .config import settings

GENESIS_HASH = "0" * 64  # 32 bytes hex

LOG_NAME = "verification_audit.jsonl"
STATE_NAME = "verification_audit.state"
LOCK_NAME = "verification_audit.lock"


def _sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def _dir(directory: Optional[Path]) -> Path:
    return Path(directory) if directory is not None else Path(settings.AUDIT_DIR)


def log_path(directory: Optional[Path] = None) -> Path:
    return _dir(directory) / LOG_NAME


def _read_last_hash_unlocked(state_path: Path) -> str:
    """
    Read last hash from the state file. Caller must hold lock.
    Returns GENESIS_HASH if state missing/empty.
    """
    if not state_path.exists():
        return GENESIS_HASH
    s = state_path.read_text(encoding="utf-8").strip()
    if len(s) != 64:
        return GENESIS_HASH
    try:
        bytes.fromhex(s)
    except ValueError:
        return GENESIS_HASH
    return s.lower()


# -----------------------------------------------------------------------------
# Public helpers used by main.py
# -----------------------------------------------------------------------------
def build_common(
    *,
    event: str,
    jti: Optional[str] = None,
    jkt: Optional[str] = None,
    htm: Optional[str] = None,
    htu: Optional[str] = None,
    ceremony: Optional[str] = None,
    user_id: Optional[str] = None,
    proof: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build common audit fields. Keep this "boring" and stable.
    """
    out: Dict[str, Any] = {
        "ts": int(time.time()),
        "event": event,
    }

    if jti:
        out["jti"] = jti
    if jkt:
        out["jkt"] = jkt
    if htm:
        out["htm"] = htm
    if htu:
        out["htu"] = htu
    if ceremony:
        out["ceremony"] = ceremony
    if user_id is not None:
        out["user_id"] = user_id
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]

    if proof is not None:
        proof_bytes = proof.encode("utf-8")
        out["proof_len"] = len(proof_bytes)
        out["proof_sha3_256"] = _sha3_256_hex(proof_bytes)

    return out


def append_event(event: Dict[str, Any], directory: Optional[Path] = None) -> str:
    """
    Append one event to the audit log with hash chaining; returns its hash.
    """
    base = _dir(directory)
    base.mkdir(parents=True, exist_ok=True)
    state_path = base / STATE_NAME

    # Lock a dedicated file so it works even if log/state don't exist yet.
    with open(base / LOCK_NAME, "a+", encoding="utf-8") as lockf:
        fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
        try:
            prev_hash = _read_last_hash_unlocked(state_path)

            # Never allow callers to inject their own chain fields.
            e = dict(event)
            e.pop("prev_hash", None)
            e.pop("hash", None)

            next_hash = _sha3_256_hex(bytes.fromhex(prev_hash) + canonical_json_bytes(e))

            stored = dict(e)
            stored["prev_hash"] = prev_hash
            stored["hash"] = next_hash

            with open(base / LOG_NAME, "ab") as f:
                f.write(canonical_json_bytes(stored) + b"\n")
                f.flush()
                os.fsync(f.fileno())

            state_path.write_text(next_hash + "\n", encoding="utf-8")
        finally:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    return next_hash


# -----------------------------------------------------------------------------
# Verification utility (pop-auth verify-audit)
# -----------------------------------------------------------------------------
def verify_log_chain(path: Optional[Path] = None) -> bool:
    """
    Verify the hash chain of an audit log file.
    Returns True if valid (or absent), False otherwise.
    """
    path = path or log_path()
    if not path.exists():
        return True

    prev = GENESIS_HASH
    with open(path, "rb") as f:
        for raw_line in f:
            raw_line = raw_line.strip()
            if not raw_line:
                continue
            try:
                obj = json.loads(raw_line.decode("utf-8"))
            except ValueError:
                return False
            if not isinstance(obj, dict):
                return False

            if obj.get("prev_hash") != prev:
                return False

            # recompute from event excluding hash fields
            line_hash = obj.pop("hash", None)
            obj.pop("prev_hash", None)
            expect = _sha3_256_hex(bytes.fromhex(prev) + canonical_json_bytes(obj))
            if expect != line_hash:
                return False

            prev = line_hash

    return True


def chain_head(path: Optional[Path] = None) -> Optional[str]:
    """Hash of the last line in the log, or None for an empty / absent log."""
    path = path or log_path()
    if not path.exists():
        return None
    last: Optional[str] = None
    with open(path, "rb") as f:
        for raw_line in f:
            raw_line = raw_line.strip()
            if raw_line:
                last = json.loads(raw_line.decode("utf-8")).get("hash")
    return last
