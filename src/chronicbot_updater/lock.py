"""Advisory lock so only one orchestration run is active at a time."""

from __future__ import annotations

import fcntl
import os
from pathlib import Path
from types import TracebackType

from chronicbot_updater.errors import LockHeldError
from chronicbot_updater.logging import get_logger

log = get_logger("chronicbot_updater.lock")


class RunLock:
    """Non-blocking ``flock`` on a lock file.

    The kernel drops the lock when the process dies, so a crashed run never
    leaves the updater wedged.  The lock file itself is left in place.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Take the lock or raise ``LockHeldError`` if another run has it."""
        if self._fd is not None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            os.close(fd)
            raise LockHeldError(f"Another update run holds {self._path}") from exc
        except OSError:
            os.close(fd)
            raise
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        log.debug("run_lock_acquired", path=str(self._path))

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        log.debug("run_lock_released", path=str(self._path))

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
