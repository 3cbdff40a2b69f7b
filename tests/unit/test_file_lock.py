"""Unit tests for the state lock sentinel."""

from __future__ import annotations

import os
import time
from pathlib import Path

import pytest

from dispatchloop.core.file_lock import FileLock


def _lock(tmp_path: Path, **kwargs: float) -> FileLock:
    options = {"retry_seconds": 0.005, "wait_seconds": 0.2, "stale_seconds": 30.0}
    options.update(kwargs)
    return FileLock(tmp_path / "dispatch-state.json", **options)


def test_hold_creates_sentinel_with_epoch_millis_and_removes_it(tmp_path: Path) -> None:
    lock = _lock(tmp_path)
    assert lock.lock_path == tmp_path / "dispatch-state.json.lock"

    before_ms = int(time.time() * 1000)
    with lock.hold():
        content = int(lock.lock_path.read_text(encoding="utf-8"))
        assert content >= before_ms

    assert not lock.lock_path.exists()


def test_release_tolerates_missing_sentinel(tmp_path: Path) -> None:
    lock = _lock(tmp_path)
    lock.release()
    assert not lock.lock_path.exists()


def test_stale_sentinel_from_crashed_holder_is_evicted(tmp_path: Path) -> None:
    lock = _lock(tmp_path, wait_seconds=5.0)
    lock.lock_path.write_text(str(int((time.time() - 120) * 1000)), encoding="utf-8")

    started = time.monotonic()
    with lock.hold():
        fresh = int(lock.lock_path.read_text(encoding="utf-8"))
    elapsed = time.monotonic() - started

    assert fresh > int((time.time() - 5) * 1000)
    assert elapsed < 0.5


def test_unreadable_sentinel_falls_back_to_mtime(tmp_path: Path) -> None:
    lock = _lock(tmp_path, wait_seconds=5.0)
    lock.lock_path.write_text("not-a-timestamp", encoding="utf-8")
    old = time.time() - 120
    os.utime(lock.lock_path, (old, old))

    started = time.monotonic()
    with lock.hold():
        pass

    assert time.monotonic() - started < 0.5


def test_fresh_sentinel_is_force_taken_after_wait_deadline(tmp_path: Path) -> None:
    lock = _lock(tmp_path, wait_seconds=0.05)
    lock.lock_path.write_text(str(int(time.time() * 1000)), encoding="utf-8")

    started = time.monotonic()
    lock.acquire()
    elapsed = time.monotonic() - started
    try:
        assert elapsed >= 0.05
        assert lock.lock_path.exists()
    finally:
        lock.release()


def test_stale_window_must_exceed_retry_interval(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="stale_seconds"):
        FileLock(tmp_path / "state.json", retry_seconds=1.0, stale_seconds=1.0)
