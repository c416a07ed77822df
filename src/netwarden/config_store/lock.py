"""Host-wide lock for mutating transactions.

Two layers: an ``asyncio.Lock`` serializes transactions inside this
process, and a ``filelock.FileLock`` on a well-known path keeps other
netwarden processes on the same host out. Both are held from Snapshotting
until the transaction reaches a terminal state.
"""
import asyncio
import logging
import time
from pathlib import Path
from typing import Optional

from filelock import FileLock, Timeout as FileLockTimeout

logger = logging.getLogger(__name__)


class BusyError(Exception):
    """Another transaction holds the host lock."""
    pass


class HostLock:
    """Exclusive per-host lock, usable as ``async with lock:``."""

    def __init__(self, path: Path, timeout: Optional[float] = None, poll_interval: float = 0.05):
        """
        Args:
            path: Lock file location, shared by every process on the host
            timeout: Default seconds to wait in ``async with``; None waits forever
            poll_interval: Seconds between attempts on the file lock
        """
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._lock = asyncio.Lock()
        self._file_lock = FileLock(str(self.path))

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    async def acquire(self, timeout: Optional[float] = None) -> None:
        """
        Take the lock.

        Args:
            timeout: Seconds to wait; 0 fails immediately, None waits forever

        Raises:
            BusyError: If the lock could not be taken in time
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        if timeout == 0:
            if self._lock.locked():
                raise BusyError("A transaction is already in progress on this host")
            await self._lock.acquire()
        else:
            try:
                await asyncio.wait_for(self._lock.acquire(), timeout)
            except asyncio.TimeoutError:
                raise BusyError(
                    f"Timed out after {timeout}s waiting for the transaction in progress"
                ) from None

        # Non-blocking attempts only, so a cancelled waiter never leaves the
        # file lock taken behind its back
        try:
            while not self._try_file_lock():
                if deadline is not None and time.monotonic() >= deadline:
                    raise BusyError(f"Another process holds {self.path}")
                await asyncio.sleep(self.poll_interval)
        except BaseException:
            self._lock.release()
            raise
        logger.debug(f"Acquired host lock {self.path}")

    def _try_file_lock(self) -> bool:
        try:
            self._file_lock.acquire(timeout=0)
        except FileLockTimeout:
            return False
        return True

    async def release(self) -> None:
        try:
            self._file_lock.release()
        finally:
            self._lock.release()
            logger.debug(f"Released host lock {self.path}")

    async def __aenter__(self) -> "HostLock":
        await self.acquire(self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()
