"""Single-instance capture lock.

Only one Run may own the capture device at a time. The lock is an advisory
``flock`` on a well-known file; the kernel drops it when the holder exits for
any reason, so a crashed or killed Run never leaves a lock that blocks the next
scheduled attempt.
"""

from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from typing import IO

from .errors import LockContention

_log = logging.getLogger("timelapse.lock")


class RunLock:
    """Exclusive handle returned by :func:`acquire`."""

    def __init__(self, path: Path, handle: IO[str]) -> None:
        self.path = path
        self._handle: IO[str] | None = handle

    @property
    def held(self) -> bool:
        return self._handle is not None

    def release(self) -> None:
        handle = self._handle
        self._handle = None
        if handle is None:
            return
        try:
            handle.seek(0)
            handle.truncate()
        except OSError as exc:
            _log.debug("Unable to clear lock owner record %s: %s", self.path, exc)
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError as exc:
            _log.warning("Unlock of %s failed: %s", self.path, exc)
        finally:
            handle.close()
        _log.debug("Released %s", self.path)

    def __enter__(self) -> "RunLock":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


def _read_holder(handle: IO[str]) -> str | None:
    try:
        handle.seek(0)
        text = handle.read().strip()
    except OSError:
        return None
    return text or None


def acquire(lock_path: str | os.PathLike[str]) -> RunLock:
    """Take the lock without waiting; raise :class:`LockContention` if held."""

    path = Path(lock_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = path.open("a+", encoding="utf-8")
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as exc:
        holder = _read_holder(handle)
        handle.close()
        raise LockContention(str(path), holder) from exc

    try:
        handle.seek(0)
        handle.truncate()
        handle.write(f"pid={os.getpid()}\n")
        handle.flush()
    except OSError as exc:
        # Lock is still held; the owner record is informational only.
        _log.debug("Unable to record lock owner in %s: %s", path, exc)
    _log.debug("Acquired %s", path)
    return RunLock(path, handle)


__all__ = ["RunLock", "acquire"]
