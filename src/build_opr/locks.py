"""Per-record-path locking.

A node's whole classify-apply-commit sequence runs while holding the lock for
its record path. Threads in one build share an in-process mutex per path;
concurrent builds in other processes are excluded with an advisory flock on a
lock file under <build root>/.locks/.
"""

import fcntl
import hashlib
import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from build_opr.revision import LockContentionError, RevisionStoreError

logger = logging.getLogger(__name__)

LOCK_DIR_NAME = '.locks'


class PathLocks:
    """Registry of per-path locks.

    Attributes:
        lock_dir: Directory for inter-process lock files
        attempts: Acquisition attempts before giving up
        interval: Seconds between attempts
    """

    def __init__(self, lock_dir: Path, attempts: int = 10, interval: float = 0.5):
        self.lock_dir = Path(lock_dir)
        self.attempts = attempts
        self.interval = interval
        self._mutexes: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}
        self._registry_lock = threading.Lock()

    def _checkout(self, key: str) -> threading.Lock:
        """Mutex for key, counting the caller as a user until _checkin."""
        with self._registry_lock:
            if key not in self._mutexes:
                self._mutexes[key] = threading.Lock()
                self._users[key] = 0
            self._users[key] += 1
            return self._mutexes[key]

    def _checkin(self, key: str) -> None:
        """Drop a user of key, forgetting the mutex once nobody holds or waits on it."""
        with self._registry_lock:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._mutexes[key]

    def lock_file_for(self, path: Path) -> Path:
        """Lock file path for a record path."""
        digest = hashlib.sha1(str(Path(path).absolute()).encode('utf-8')).hexdigest()[:20]
        return self.lock_dir / f'{digest}.lock'

    @contextmanager
    def hold(self, path: Path) -> Iterator[None]:
        """Hold the lock for a record path.

        Raises:
            LockContentionError: If the lock is still held after all attempts
        """
        key = str(Path(path).absolute())
        mutex = self._checkout(key)
        if not mutex.acquire(timeout=max(self.attempts * self.interval, 0.001)):
            self._checkin(key)
            raise LockContentionError(f"{path} is locked by another worker")

        fd = None
        try:
            try:
                self.lock_dir.mkdir(parents=True, exist_ok=True)
                fd = os.open(self.lock_file_for(path), os.O_CREAT | os.O_RDWR, 0o644)
            except OSError as e:
                raise RevisionStoreError(f"cannot open lock file for {path}: {e}") from e
            for attempt in range(1, self.attempts + 1):
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if attempt == self.attempts:
                        raise LockContentionError(
                            f"{path} is locked by another build (gave up after {attempt} attempts)"
                        ) from None
                    logger.debug(f"Waiting for lock on {path} ({attempt}/{self.attempts})")
                    time.sleep(self.interval)
            yield
        finally:
            if fd is not None:
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)
            mutex.release()
            self._checkin(key)
