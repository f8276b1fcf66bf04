"""
Singleton lock for the manager.

Uses flock on .hive/manager.lock. The file records the holder's pid and a
heartbeat time that the holder refreshes every tick. A held lock whose
heartbeat is older than the staleness timeout is reclaimed by replacing the
lock file, trading strict exclusivity for liveness after a wedged holder.
"""

import atexit
import fcntl
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)


class LockTimeout(Exception):
    """Lock acquisition timed out."""
    pass


def read_lock_info(lock_file: Path) -> tuple[int | None, float | None]:
    """(pid, heartbeat epoch seconds) recorded in a lock file."""
    try:
        parts = lock_file.read_text().split()
    except OSError:
        return None, None
    pid = int(parts[0]) if parts and parts[0].isdigit() else None
    try:
        heartbeat = float(parts[1]) if len(parts) > 1 else None
    except ValueError:
        heartbeat = None
    return pid, heartbeat


def pid_alive(pid: int | None) -> bool:
    if not pid:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def is_lock_stale(lock_file: Path, stale_ms: int, now: float | None = None) -> bool:
    """True if the recorded holder is dead or its heartbeat is older than stale_ms."""
    pid, heartbeat = read_lock_info(lock_file)
    if not pid_alive(pid):
        return True
    if heartbeat is None:
        return False
    return ((now or time.time()) - heartbeat) * 1000 > stale_ms


class ManagerLock:
    """Exclusive manager lock with heartbeat."""

    def __init__(self, lock_file: Path, stale_ms: int = 120000):
        self.lock_file = lock_file
        self.stale_ms = stale_ms
        self._fd = None
        self._inode: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def _try_flock(self) -> bool:
        fd = open(self.lock_file, "a+")
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fd.close()
            return False
        self._fd = fd
        self._inode = os.fstat(fd.fileno()).st_ino
        return True

    def acquire(self, timeout: float = 0) -> None:
        """Acquire the lock, reclaiming it if stale.

        Raises:
            LockTimeout: If the lock is held by a live, fresh holder past `timeout`
        """
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        start = time.time()

        while True:
            if self._try_flock():
                break
            if is_lock_stale(self.lock_file, self.stale_ms):
                pid, _ = read_lock_info(self.lock_file)
                logger.warning(f"Reclaiming stale manager lock held by pid {pid}")
                self.lock_file.unlink(missing_ok=True)
                continue
            if time.time() - start >= timeout:
                pid, _ = read_lock_info(self.lock_file)
                raise LockTimeout(f"Manager lock is held by pid {pid} ({self.lock_file})")
            time.sleep(1)

        self.heartbeat()
        atexit.register(self.release)

    def heartbeat(self) -> bool:
        """Refresh the recorded time. False if the lock file was taken from us."""
        if self._fd is None:
            return False
        try:
            current_inode = os.stat(self.lock_file).st_ino
        except FileNotFoundError:
            return False
        if current_inode != self._inode:
            logger.warning("Manager lock file was replaced by another process")
            return False
        self._fd.seek(0)
        self._fd.truncate()
        self._fd.write(f"{os.getpid()} {time.time():.3f}\n")
        self._fd.flush()
        return True

    def release(self) -> None:
        if self._fd is None:
            return
        atexit.unregister(self.release)
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            self._fd.close()
            self._fd = None
            self._inode = None


@contextmanager
def manager_lock(lock_file: Path, stale_ms: int = 120000, timeout: float = 0) -> Iterator[ManagerLock]:
    """Acquire the manager lock, yield it, release on exit."""
    lock = ManagerLock(lock_file, stale_ms)
    lock.acquire(timeout)
    try:
        yield lock
    finally:
        lock.release()
