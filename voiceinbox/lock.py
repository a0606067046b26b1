import fcntl
import logging
import os
from pathlib import Path

from .errors import LockHeldError

log = logging.getLogger(__name__)


class FileLock:
    """
    Exclusive, non-blocking advisory lock on a file (flock).
    One attempt only: a held lock raises LockHeldError instead of waiting.
    """

    def __init__(self, path):
        self.path = Path(path)
        self._fd = None

    def acquire(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_CREAT | os.O_RDWR, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise LockHeldError(f"lock already held: {self.path}")
        except OSError:
            os.close(fd)
            raise
        self._fd = fd
        log.debug("Acquired lock %s", self.path)

    def release(self):
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        log.debug("Released lock %s", self.path)

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
