"""File helpers shared by the storage layer."""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import IO, Any, Optional

import yaml

if os.name == "nt":  # pragma: no cover
    import msvcrt
else:
    import fcntl


class FileLock:
    """Exclusive lock on ``lock_path`` held across threads and processes.

    The same instance may be entered again by the thread that holds it.
    """

    def __init__(self, lock_path: Path) -> None:
        self.lock_path = lock_path
        self._thread_lock = threading.RLock()
        self._depth = 0
        self._handle: Optional[IO[Any]] = None

    def __enter__(self) -> "FileLock":
        self._thread_lock.acquire()
        if self._depth == 0:
            try:
                self._handle = self._acquire()
            except BaseException:
                self._thread_lock.release()
                raise
        self._depth += 1
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._depth -= 1
        try:
            if self._depth == 0 and self._handle is not None:
                self._release(self._handle)
                self._handle = None
        finally:
            self._thread_lock.release()

    def _acquire(self) -> IO[Any]:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.lock_path, "a+")
        if os.name == "nt":  # pragma: no cover
            msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, 1)
        else:
            fcntl.flock(handle, fcntl.LOCK_EX)
        return handle

    @staticmethod
    def _release(handle: IO[Any]) -> None:
        try:
            if os.name == "nt":  # pragma: no cover
                msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                fcntl.flock(handle, fcntl.LOCK_UN)
        finally:
            handle.close()


def atomic_write_yaml(path: Path, payload: Any) -> None:
    """Write ``payload`` as YAML through a temp file and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(f"{path.suffix}.tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(payload, handle, sort_keys=False, allow_unicode=True)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def read_yaml(path: Path) -> Any:
    """Load YAML from ``path``; a missing or empty file reads as ``None``."""
    if not path.exists():
        return None
    return yaml.safe_load(path.read_text(encoding="utf-8"))
