"""Process-wide exclusive run lock."""

from __future__ import annotations

import fcntl
import os

from .executil import log


class LockBusy(RuntimeError):
    pass


class RunLock:
    """``flock`` on a pid file; released on close, or by the kernel on exit."""

    def __init__(self, path: str):
        self.path = path
        self._fd: int | None = None

    def acquire(self) -> "RunLock":
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = ""
            try:
                holder = os.read(fd, 32).decode("ascii", "replace").strip()
            except OSError:
                pass
            os.close(fd)
            raise LockBusy(f"Another backup is already running (lock: {self.path}"
                           + (f", pid {holder})" if holder else ")"))
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode("ascii"))
        self._fd = fd
        log("INFO", "lock.acquired", path=self.path)
        return self

    def release(self):
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        log("INFO", "lock.released", path=self.path)

    def __enter__(self):
        return self.acquire()

    def __exit__(self, *exc):
        self.release()
        return False
