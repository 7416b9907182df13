"""Exclusive process lock guarding the JSON stores against a second writer."""

from __future__ import annotations

import os
from pathlib import Path
from typing import TextIO


class StoreLockHeld(RuntimeError):
    def __init__(self, lock_path: str, pid: int | None) -> None:
        self.lock_path = lock_path
        self.pid = pid
        holder = f" by pid {pid}" if pid else ""
        super().__init__(f"order store is locked{holder}: {lock_path}")


class StoreLock:
    """Advisory file lock, released on ``release`` or process exit.

    The executor service and the admin CLI both take it before opening the
    order store, so two processes never rewrite ``orders.json`` concurrently.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._fh: TextIO | None = None

    @property
    def held(self) -> bool:
        return self._fh is not None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self.path, "a+", encoding="utf-8")
        fh.seek(0)
        holder = _read_pid(fh)
        try:
            _lock_file(fh)
        except OSError as exc:
            fh.close()
            raise StoreLockHeld(str(self.path), holder) from exc
        fh.seek(0)
        fh.truncate()
        fh.write(f"{os.getpid()}\n")
        fh.flush()
        self._fh = fh

    def release(self) -> None:
        if self._fh is None:
            return
        fh, self._fh = self._fh, None
        try:
            _unlock_file(fh)
        finally:
            fh.close()

    def __enter__(self) -> "StoreLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        self.release()


def _read_pid(fh: TextIO) -> int | None:
    first = fh.read().strip().split()
    if not first or not first[0].isdigit():
        return None
    return int(first[0]) or None


def _lock_file(fh: TextIO) -> None:
    if os.name == "nt":
        import msvcrt

        fh.seek(0)
        msvcrt.locking(fh.fileno(), msvcrt.LK_NBLCK, 1)
        return

    import fcntl

    fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock_file(fh: TextIO) -> None:
    if os.name == "nt":
        import msvcrt

        fh.seek(0)
        msvcrt.locking(fh.fileno(), msvcrt.LK_UNLCK, 1)
        return

    import fcntl

    fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
