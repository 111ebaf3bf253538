"""
Exclusive lock for the state file.

Implemented with ``fcntl.flock`` on a sibling ``installed.json.lock``
file. The kernel drops a flock when its holder exits, so a crashed
process never leaves a lock behind. The holder's pid is written into the
lock file so contention errors can say who is holding it and whether
that process is still alive.
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from rush.core.errors import StateStoreError
from rush.core.reliability.backoff import BackoffPolicy

logger = logging.getLogger(__name__)


def pid_alive(pid: int) -> bool:
    """Whether a process with ``pid`` exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


@dataclass
class LockHolder:
    pid: int
    acquired_at: float

    @property
    def alive(self) -> bool:
        return pid_alive(self.pid)


class StateLock:
    """Exclusive, non-reentrant process lock.

    Args:
        path: Lock file path (created if missing).
        timeout: Seconds to keep retrying while another process holds it.
    """

    def __init__(self, path: Path, timeout: float = 10.0):
        self.path = path
        self.timeout = timeout
        self._handle: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def holder(self) -> LockHolder | None:
        """Pid/timestamp recorded by the last process that took the lock."""
        try:
            raw = self.path.read_text(encoding="utf-8").split()
            return LockHolder(pid=int(raw[0]), acquired_at=float(raw[1]))
        except (OSError, ValueError, IndexError):
            return None

    def acquire(self) -> None:
        """Take the lock, polling with backoff until ``timeout``.

        Raises:
            StateStoreError: If the lock is still held when time runs out.
        """
        if self._handle is not None:
            raise StateStoreError(f"state lock {self.path} is already held by this process")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.path.open("a+", encoding="utf-8")
        deadline = time.monotonic() + self.timeout
        policy = BackoffPolicy(max_attempts=1_000_000, base_delay=0.05, max_delay=0.5, jitter=0.2)

        try:
            for attempt in policy.attempts():
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise StateStoreError(self._contention_message()) from None
                    if attempt == 1:
                        logger.info("Waiting for state lock %s", self.path)
        except BaseException:
            handle.close()
            raise

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()} {time.time():.3f}\n")
        handle.flush()
        self._handle = handle
        logger.debug("Acquired state lock %s", self.path)

    def release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            handle.seek(0)
            handle.truncate()
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()
        logger.debug("Released state lock %s", self.path)

    @contextmanager
    def hold(self) -> Iterator[StateLock]:
        self.acquire()
        try:
            yield self
        finally:
            self.release()

    def _contention_message(self) -> str:
        holder = self.holder()
        if holder is None:
            return f"state is locked by another rush process ({self.path})"
        status = "running" if holder.alive else "no longer running"
        since = time.strftime("%H:%M:%S", time.localtime(holder.acquired_at))
        return (
            f"state is locked by rush process {holder.pid} ({status}, held since {since}); "
            f"gave up after {self.timeout:.0f}s"
        )
