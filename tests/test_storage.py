"""
Unit tests for replay guards and proof-key sessions.

Coverage:
* InMemoryReplayGuard single use, TTL expiry with fake clock, prune
* DiskReplayGuard exclusive create, file hygiene, cleanup_expired, periodic sweep, orphans
* single winner under concurrent marking
* InMemorySessionStore lifecycle
"""

from __future__ import annotations

import json
import os
import stat
import threading
from pathlib import Path

import pytest

from pop_auth.storage import DiskReplayGuard, InMemoryReplayGuard, InMemorySessionStore, ReplayGuard


def _race(mark, jti: str, n: int = 16) -> list:
    barrier = threading.Barrier(n)
    results = []

    def worker():
        barrier.wait()
        results.append(mark(jti, 60))

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


# --------------------------------------------------------------------------- #
# In-memory replay guard                                                      #
# --------------------------------------------------------------------------- #
@pytest.mark.anyio
async def test_memory_guard_single_use(clock) -> None:
    guard = InMemoryReplayGuard(clock=clock)
    assert isinstance(guard, ReplayGuard)
    assert await guard.check_and_mark("j1", 60) is True
    assert await guard.check_and_mark("j1", 60) is False
    assert await guard.check_and_mark("j2", 60) is True


def test_memory_guard_ttl_expiry(clock) -> None:
    guard = InMemoryReplayGuard(clock=clock)
    assert guard.mark("j1", 60) is True
    clock.now += 59
    assert guard.mark("j1", 60) is False
    clock.now += 1
    assert guard.mark("j1", 60) is True


def test_memory_guard_prune(clock) -> None:
    guard = InMemoryReplayGuard(clock=clock)
    guard.mark("old", 10)
    guard.mark("new", 100)
    clock.now += 50
    assert guard.prune() == 1
    assert len(guard) == 1


def test_memory_guard_prunes_at_threshold(clock) -> None:
    guard = InMemoryReplayGuard(clock=clock, prune_threshold=3)
    for i in range(3):
        guard.mark(f"j{i}", 10)
    clock.now += 20
    guard.mark("fresh", 10)
    assert len(guard) == 1


def test_memory_guard_concurrent_single_winner(clock) -> None:
    guard = InMemoryReplayGuard(clock=clock)
    results = _race(guard.mark, "same")
    assert results.count(True) == 1


# --------------------------------------------------------------------------- #
# Disk replay guard                                                           #
# --------------------------------------------------------------------------- #
@pytest.mark.anyio
async def test_disk_guard_single_use(tmp_path: Path, clock) -> None:
    guard = DiskReplayGuard(tmp_path, clock=clock)
    assert await guard.check_and_mark("j1", 60) is True
    assert await guard.check_and_mark("j1", 60) is False


def test_disk_guard_marker_file(tmp_path: Path, clock) -> None:
    guard = DiskReplayGuard(tmp_path, clock=clock)
    guard.mark("../../etc/passwd", 60)

    markers = list((tmp_path / "jti").iterdir())
    assert len(markers) == 1
    marker = markers[0]
    assert marker.parent == tmp_path / "jti"
    assert len(marker.stem) == 64
    assert json.loads(marker.read_text()) == {"expires_at": clock.now + 60}
    if os.name == "posix":
        assert stat.S_IMODE(marker.stat().st_mode) == 0o600


def test_disk_guard_cleanup_expired(tmp_path: Path, clock) -> None:
    guard = DiskReplayGuard(tmp_path, clock=clock)
    guard.mark("short", 10)
    guard.mark("long", 100)

    clock.now += 50
    # expired markers are not reused in place
    assert guard.mark("short", 10) is False
    assert guard.cleanup_expired() == 1
    assert guard.mark("short", 10) is True
    assert guard.mark("long", 10) is False


def test_disk_guard_cleanup_skips_unreadable_marker(tmp_path: Path, clock) -> None:
    guard = DiskReplayGuard(tmp_path, clock=clock)
    (tmp_path / "jti" / "partial.json").write_text("")
    assert guard.cleanup_expired() == 0
    assert (tmp_path / "jti" / "partial.json").exists()


def test_disk_guard_sweeps_while_marking(tmp_path: Path, clock) -> None:
    guard = DiskReplayGuard(tmp_path, clock=clock, cleanup_interval=60)
    guard.mark("old", 10)

    clock.now += 30
    guard.mark("mid", 10)
    # interval not reached yet
    assert len(list((tmp_path / "jti").iterdir())) == 2

    clock.now += 31
    guard.mark("new", 10)
    assert len(list((tmp_path / "jti").iterdir())) == 1
    assert guard.mark("old", 10) is True


def test_disk_guard_removes_stale_orphan(tmp_path: Path, clock) -> None:
    guard = DiskReplayGuard(tmp_path, clock=clock, orphan_age=600)
    orphan = tmp_path / "jti" / "orphan.json"
    orphan.write_text("")
    fresh = tmp_path / "jti" / "fresh.json"
    fresh.write_text("")
    os.utime(orphan, (clock.now - 601, clock.now - 601))
    os.utime(fresh, (clock.now - 10, clock.now - 10))

    assert guard.cleanup_expired() == 1
    assert not orphan.exists()
    assert fresh.exists()


def test_disk_guard_concurrent_single_winner(tmp_path: Path, clock) -> None:
    guard = DiskReplayGuard(tmp_path, clock=clock)
    results = _race(guard.mark, "same")
    assert results.count(True) == 1


# --------------------------------------------------------------------------- #
# Sessions                                                                    #
# --------------------------------------------------------------------------- #
def test_session_lifecycle(clock) -> None:
    store = InMemorySessionStore(clock=clock)
    sess = store.create("jkt-1", "u1", 100)
    assert sess.expires_at == int(clock.now) + 100
    assert store.get("jkt-1") == sess
    assert sess.public_view() == {
        "authenticated": True,
        "userId": "u1",
        "jkt": "jkt-1",
        "expires_at": sess.expires_at,
    }

    store.delete("jkt-1")
    assert store.get("jkt-1") is None
    store.delete("jkt-1")


def test_session_expiry(clock) -> None:
    store = InMemorySessionStore(clock=clock)
    store.create("jkt-1", "u1", 100)
    clock.now += 99
    assert store.get("jkt-1") is not None
    clock.now += 1
    assert store.get("jkt-1") is None
    assert "jkt-1" not in store.sessions


def test_session_rebinding_replaces_previous(clock) -> None:
    store = InMemorySessionStore(clock=clock)
    store.create("jkt-1", "u1", 100)
    store.create("jkt-1", "u2", 100)
    assert store.get("jkt-1").user_id == "u2"
