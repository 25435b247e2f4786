from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import psutil

from spec_orchestrator.errors import LockContentionError

logger = logging.getLogger(__name__)


def lock_path(base_dir: Path, spec_name: str) -> Path:
    return base_dir / f"{spec_name}.lock"


def read_holder(path: Path) -> int | None:
    try:
        content = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    try:
        return int(content)
    except ValueError:
        return None


class LockManager:
    """One live holder per lock path.

    The exclusive create is what provides mutual exclusion; removing a lock whose
    holder PID is gone is only cleanup before the attempt.
    """

    def _remove_if_stale(self, path: Path) -> None:
        holder = read_holder(path)
        if holder is None or psutil.pid_exists(holder):
            return
        logger.info("Removing stale lockfile %s (PID %s not running)", path, holder)
        path.unlink(missing_ok=True)

    def acquire(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            self._remove_if_stale(path)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as exc:
            raise LockContentionError(path, holder=read_holder(path)) from exc
        try:
            os.write(fd, f"{os.getpid()}\n".encode("utf-8"))
        finally:
            os.close(fd)
        logger.debug("Acquired lock %s", path)

    def release(self, path: Path) -> None:
        # Only the holder removes the lock, so a release after a failed acquire is a no-op.
        if read_holder(path) != os.getpid():
            return
        path.unlink(missing_ok=True)
        logger.debug("Released lock %s", path)

    @contextmanager
    def held(self, path: Path) -> Iterator[Path]:
        self.acquire(path)
        try:
            yield path
        finally:
            self.release(path)
