"""Advisory lock sentinel guarding read-modify-write cycles on a state file."""

from __future__ import annotations

import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from structlog import get_logger

from dispatchloop.constants import LOCK_RETRY_SECONDS, LOCK_STALE_SECONDS, LOCK_WAIT_SECONDS

logger = get_logger(__name__)


class StateLockError(RuntimeError):
    """Raised when the lock sentinel cannot be acquired."""


class FileLock:
    """Exclusive-create sentinel at ``<target>.lock``.

    The sentinel holds the acquisition time in epoch milliseconds. A sentinel
    older than ``stale_seconds`` belongs to a crashed holder and is removed.
    When ``wait_seconds`` elapses the sentinel is force-removed and created
    once more unconditionally.
    """

    def __init__(
        self,
        target_path: Path,
        *,
        retry_seconds: float = LOCK_RETRY_SECONDS,
        wait_seconds: float = LOCK_WAIT_SECONDS,
        stale_seconds: float = LOCK_STALE_SECONDS,
    ) -> None:
        if stale_seconds <= retry_seconds:
            raise ValueError("stale_seconds must be greater than retry_seconds")
        self._lock_path = target_path.with_suffix(f"{target_path.suffix}.lock")
        self._retry_seconds = retry_seconds
        self._wait_seconds = wait_seconds
        self._stale_seconds = stale_seconds

    @property
    def lock_path(self) -> Path:
        """Return the sentinel path."""
        return self._lock_path

    @contextmanager
    def hold(self) -> Iterator[None]:
        """Hold the lock for the duration of the context."""
        self.acquire()
        try:
            yield
        finally:
            self.release()

    def acquire(self) -> None:
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self._wait_seconds
        while time.monotonic() < deadline:
            if self._try_create():
                return
            if self._break_stale_lock_if_needed():
                continue
            time.sleep(self._retry_seconds)

        logger.warning("Lock wait timed out, forcing takeover", lock_path=str(self._lock_path))
        self._unlink_quietly()
        if not self._try_create():
            raise StateLockError(f"timed out waiting for state lock: {self._lock_path}")

    def release(self) -> None:
        self._unlink_quietly()

    def _try_create(self) -> bool:
        try:
            fd = os.open(self._lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(str(int(time.time() * 1000)))
        return True

    def _break_stale_lock_if_needed(self) -> bool:
        age_seconds = self._lock_age_seconds()
        if age_seconds is None or age_seconds <= self._stale_seconds:
            return False

        logger.warning(
            "Evicting stale state lock",
            lock_path=str(self._lock_path),
            age_seconds=round(age_seconds, 1),
        )
        self._unlink_quietly()
        return True

    def _lock_age_seconds(self) -> float | None:
        try:
            raw = self._lock_path.read_text(encoding="utf-8").strip()
            acquired_ms = int(raw)
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            # Half-written sentinel; fall back to the file timestamp.
            try:
                return time.time() - self._lock_path.stat().st_mtime
            except FileNotFoundError:
                return None
        return time.time() - acquired_ms / 1000

    def _unlink_quietly(self) -> None:
        try:
            self._lock_path.unlink()
        except FileNotFoundError:
            return
