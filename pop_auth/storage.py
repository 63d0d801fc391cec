# pop_auth/storage.py
#
# Storage collaborators consumed by the core through narrow contracts:
#
#   ReplayGuard   check_and_mark(jti, ttl) -> bool   (atomic, async)
#   SessionStore  create / get / delete               (keyed by JWK thumbprint)
#
# The implementations below are enough for a single node and for tests.
# A multi-node deployment swaps in a shared store (Redis SET NX EX, a unique
# constraint insert, ...) behind the same contract.

import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Protocol, Union, runtime_checkable

import anyio.to_thread

from .clock import Clock, default_clock

_LOG = logging.getLogger("pop_auth.storage")


# -----------------------------------------------------------------------------
# Replay guard
# -----------------------------------------------------------------------------
@runtime_checkable
class ReplayGuard(Protocol):
    """
    Single-use marker contract.

    Returns True the first time an id is seen (and marks it), False for every
    later call within ``ttl`` seconds. The check and the mark are one atomic
    step: two concurrent calls for the same id never both get True.
    """

    async def check_and_mark(self, jti: str, ttl: float) -> bool: ...


class InMemoryReplayGuard:
    """Process-local replay guard. Not shared across workers or nodes."""

    def __init__(self, *, clock: Clock = default_clock, prune_threshold: int = 10_000) -> None:
        self._clock = clock
        self._prune_threshold = prune_threshold
        self._lock = threading.Lock()
        self._seen: Dict[str, float] = {}  # jti -> expires_at

    def mark(self, jti: str, ttl: float) -> bool:
        now = self._clock()
        with self._lock:
            expires_at = self._seen.get(jti)
            if expires_at is not None and expires_at > now:
                return False
            if len(self._seen) >= self._prune_threshold:
                self._prune_unlocked(now)
            self._seen[jti] = now + ttl
            return True

    async def check_and_mark(self, jti: str, ttl: float) -> bool:
        return self.mark(jti, ttl)

    def _prune_unlocked(self, now: float) -> int:
        dead = [k for k, exp in self._seen.items() if exp <= now]
        for k in dead:
            del self._seen[k]
        return len(dead)

    def prune(self) -> int:
        with self._lock:
            return self._prune_unlocked(self._clock())

    def __len__(self) -> int:
        return len(self._seen)


class DiskReplayGuard:
    """
    Replay guard backed by marker files.

    Atomicity comes from exclusive creation (O_CREAT | O_EXCL): the filesystem
    lets exactly one creator win. Markers are never reused in place; expired
    ones are only removed by cleanup_expired(). ttl must therefore cover the
    proof freshness window (max age + clock skew) so that a removed marker can
    only belong to a proof that is already too old to verify.

    mark() runs cleanup_expired() itself once every ``cleanup_interval``
    seconds, so a long-running process does not accumulate markers. A marker
    that cannot be parsed (a writer died after creating it) is removed once
    its mtime is older than ``orphan_age``.
    """

    def __init__(
        self,
        base_dir: Union[str, os.PathLike],
        *,
        clock: Clock = default_clock,
        cleanup_interval: float = 60.0,
        orphan_age: float = 600.0,
    ) -> None:
        self.base_dir = Path(base_dir).expanduser()
        self._clock = clock
        self._cleanup_interval = cleanup_interval
        self._orphan_age = orphan_age
        self._cleanup_lock = threading.Lock()
        self._last_cleanup = clock()
        self._marker_dir.mkdir(parents=True, exist_ok=True)

    @property
    def _marker_dir(self) -> Path:
        return self.base_dir / "jti"

    def _marker_path(self, jti: str) -> Path:
        # jti is attacker-controlled; hash it before it touches the filesystem
        return self._marker_dir / f"{hashlib.sha256(jti.encode('utf-8')).hexdigest()}.json"

    def mark(self, jti: str, ttl: float) -> bool:
        self._maybe_cleanup()
        path = self._marker_path(jti)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump({"expires_at": self._clock() + ttl}, fh, separators=(",", ":"))
        return True

    async def check_and_mark(self, jti: str, ttl: float) -> bool:
        return await anyio.to_thread.run_sync(self.mark, jti, ttl)

    def _maybe_cleanup(self) -> None:
        if self._clock() - self._last_cleanup < self._cleanup_interval:
            return
        # one sweep at a time; concurrent marks skip it
        if not self._cleanup_lock.acquire(blocking=False):
            return
        try:
            self._last_cleanup = self._clock()
            self._cleanup_unlocked()
        finally:
            self._cleanup_lock.release()

    def cleanup_expired(self) -> int:
        with self._cleanup_lock:
            self._last_cleanup = self._clock()
            return self._cleanup_unlocked()

    def _is_orphan(self, path: Path, now: float) -> bool:
        try:
            return now - path.stat().st_mtime > self._orphan_age
        except FileNotFoundError:
            return False

    def _cleanup_unlocked(self) -> int:
        now = self._clock()
        removed = 0
        for p in self._marker_dir.glob("*.json"):
            try:
                with p.open(encoding="utf-8") as fh:
                    expires_at = float(json.load(fh)["expires_at"])
            except FileNotFoundError:
                continue
            except (OSError, ValueError, KeyError, TypeError):
                # possibly mid-write by a concurrent mark(); only drop it once stale
                if not self._is_orphan(p, now):
                    continue
            else:
                if expires_at > now:
                    continue
            p.unlink(missing_ok=True)
            removed += 1
        if removed:
            _LOG.info("Removed %d expired replay markers", removed)
        return removed


# -----------------------------------------------------------------------------
# Sessions bound to a proof key
# -----------------------------------------------------------------------------
@dataclass
class Session:
    jkt: str
    user_id: str
    created_at: int
    expires_at: int

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def public_view(self):
        return {
            "authenticated": True,
            "userId": self.user_id,
            "jkt": self.jkt,
            "expires_at": self.expires_at,
        }


class SessionStore(Protocol):
    def create(self, jkt: str, user_id: str, ttl_seconds: int) -> Session: ...
    def get(self, jkt: str) -> Optional[Session]: ...
    def delete(self, jkt: str) -> None: ...


class InMemorySessionStore:
    def __init__(self, *, clock: Clock = default_clock) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self.sessions: Dict[str, Session] = {}

    def create(self, jkt: str, user_id: str, ttl_seconds: int) -> Session:
        now = int(self._clock())
        sess = Session(jkt=jkt, user_id=user_id, created_at=now, expires_at=now + ttl_seconds)
        with self._lock:
            self.sessions[jkt] = sess
        return sess

    def get(self, jkt: str) -> Optional[Session]:
        with self._lock:
            sess = self.sessions.get(jkt)
            if sess and sess.is_expired(self._clock()):
                del self.sessions[jkt]
                return None
            return sess

    def delete(self, jkt: str) -> None:
        with self._lock:
            self.sessions.pop(jkt, None)
