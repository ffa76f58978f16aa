# src/state/locks.py - v1
"""Per-phase writer locks.

One asyncio.Lock per phase id for the lifetime of the owning
StateManager, plus an fcntl advisory lock on ``<phase>/.lock`` so two
processes sharing a state root cannot interleave writes.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX platforms
    fcntl = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)


class PhaseLockTable:
    """Exclusive writer lock per phase id."""

    def __init__(self, use_file_locks: bool = True) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._use_file_locks = use_file_locks and fcntl is not None

    def lock_for(self, phase_id: str) -> asyncio.Lock:
        lock = self._locks.get(phase_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[phase_id] = lock
        return lock

    def is_locked(self, phase_id: str) -> bool:
        lock = self._locks.get(phase_id)
        return lock is not None and lock.locked()

    def discard(self, phase_id: str) -> None:
        """Forget an idle lock (after the phase was cleared)."""
        lock = self._locks.get(phase_id)
        if lock is not None and not lock.locked():
            del self._locks[phase_id]

    @asynccontextmanager
    async def acquire(self, phase_id: str, lock_file: Path | None = None) -> AsyncIterator[None]:
        """Hold the in-process lock, then the advisory file lock."""
        async with self.lock_for(phase_id):
            fd: int | None = None
            if self._use_file_locks and lock_file is not None:
                fd = await asyncio.to_thread(_acquire_file_lock, lock_file)
            try:
                yield
            finally:
                if fd is not None:
                    await asyncio.to_thread(_release_file_lock, fd)

    def __len__(self) -> int:
        return len(self._locks)


def _acquire_file_lock(lock_file: Path) -> int:
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)  # type: ignore[union-attr]
    except OSError:
        os.close(fd)
        raise
    return fd


def _release_file_lock(fd: int) -> None:
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)  # type: ignore[union-attr]
    finally:
        os.close(fd)
