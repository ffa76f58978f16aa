# src/state/manager.py - v1
"""Versioned, checksummed phase state with bounded history.

Each save writes an envelope::

    {"phase_id", "version_id", "saved_at", "checksum", "size", "payload"}

to ``<root>/<phase>/current-state.json`` (temp file + fsync + rename)
and appends the same envelope to the phase history, evicting the oldest
entries beyond ``max_history_items``.

Writers are serialized per phase; readers never take the writer lock.
Payloads must be JSON-serializable (use ``model_dump(mode="json")``).
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import tempfile
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from fleetdeploy.core.errors import CorruptedStateError, StateError, ValidationError
from fleetdeploy.core.models import HistoryEntry, SaveResult, StateSnapshot
from fleetdeploy.state import layout
from fleetdeploy.state.checksum import (
    canonical_json,
    compute_checksum,
    json_violations,
    payload_size,
    verify_checksum,
)
from fleetdeploy.state.locks import PhaseLockTable
from fleetdeploy.state.schemas import SchemaRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_HISTORY_ITEMS = 10

# (mtime_ns, size) of the file a cached snapshot was read from.
_FileSignature = tuple[int, int]


class StateManager:
    """Persist and retrieve phase state under a state root.

    Args:
        state_root: Directory holding one sub-directory per phase.
        max_history_items: History entries kept per phase (>= 1).
        schemas: Phase-pattern -> pydantic model. None = built-in schemas.
        cache_enabled: Keep an in-memory read cache (invalidated on save).
        use_file_locks: Also take an advisory file lock while writing.
    """

    def __init__(
        self,
        state_root: Path | str,
        max_history_items: int = DEFAULT_MAX_HISTORY_ITEMS,
        schemas: dict[str, type[BaseModel]] | None = None,
        cache_enabled: bool = True,
        use_file_locks: bool = True,
    ) -> None:
        if max_history_items < 1:
            raise ValueError("max_history_items must be >= 1")
        self._root = Path(state_root).expanduser()
        self._max_history = max_history_items
        self._schemas = SchemaRegistry(schemas)
        self._cache_enabled = cache_enabled
        self._cache: dict[str, tuple[_FileSignature, StateSnapshot]] = {}
        self._locks = PhaseLockTable(use_file_locks=use_file_locks)
        self._last_ns: dict[str, int] = {}
        self._save_count = 0

    @property
    def state_root(self) -> Path:
        return self._root

    @property
    def max_history_items(self) -> int:
        return self._max_history

    @property
    def schemas(self) -> SchemaRegistry:
        return self._schemas

    # --- Write path ---

    async def save_state(self, phase_id: str, payload: dict[str, Any]) -> SaveResult:
        """Validate, checksum and atomically persist a phase payload.

        Raises:
            ValidationError: Invalid phase id, schema mismatch, or a payload
                that is not plain JSON (sets, tuples, non-string keys, objects).
            StateError: The write failed.
        """
        self._check_phase_id(phase_id)
        self._schemas.validate(phase_id, payload)
        violations = json_violations(payload)
        if violations:
            raise ValidationError(f"Payload for phase '{phase_id}' is not plain JSON", violations)

        # Detached copy of exactly what will be stored and checksummed.
        stored_payload = json.loads(canonical_json(payload))
        checksum = compute_checksum(stored_payload)
        size = payload_size(stored_payload)

        async with self._locks.acquire(phase_id, layout.lock_path(self._root, phase_id)):
            timestamp_ns = self._next_timestamp(phase_id)
            saved_at = datetime.fromtimestamp(timestamp_ns / 1e9, tz=timezone.utc)
            version_id = uuid.uuid4().hex[:12]
            envelope = {
                "phase_id": phase_id,
                "version_id": version_id,
                "saved_at": saved_at.isoformat(),
                "checksum": checksum,
                "size": size,
                "payload": stored_payload,
            }
            text = json.dumps(envelope, indent=2, sort_keys=True)

            current = layout.current_state_path(self._root, phase_id)
            history = layout.history_path(self._root, phase_id, timestamp_ns, version_id)
            try:
                await asyncio.to_thread(_atomic_write, current, text)
                await asyncio.to_thread(_atomic_write, history, text)
                evicted = await asyncio.to_thread(
                    _evict_history, self._root, phase_id, self._max_history
                )
            except OSError as exc:
                raise StateError(f"Failed to save state for phase '{phase_id}': {exc}") from exc

            self._cache.pop(phase_id, None)
            self._save_count += 1

        if evicted:
            logger.debug("Evicted %d history entries for %s", evicted, phase_id)
        logger.debug("Saved %s version=%s size=%d", phase_id, version_id, size)
        return SaveResult(saved_at=saved_at, checksum=checksum, version_id=version_id, size=size)

    # --- Read path ---

    async def load_state(
        self,
        phase_id: str,
        from_cache: bool = True,
        validate: bool = True,
        validate_schema: bool = False,
    ) -> StateSnapshot | None:
        """Read the current snapshot of a phase.

        Returns:
            The snapshot, or None when the phase has no state.

        Raises:
            CorruptedStateError: Unreadable envelope, or checksum mismatch
                when ``validate`` is set.
            ValidationError: Schema violations when ``validate_schema`` is set.
        """
        self._check_phase_id(phase_id)
        path = layout.current_state_path(self._root, phase_id)
        signature = await asyncio.to_thread(_file_signature, path)
        if signature is None:
            return None

        snapshot: StateSnapshot | None = None
        if from_cache and self._cache_enabled:
            cached = self._cache.get(phase_id)
            if cached is not None and cached[0] == signature:
                snapshot = cached[1]

        if snapshot is None:
            snapshot = await self._read_snapshot(path, phase_id)
            if snapshot is None:
                return None

        if validate:
            ok, actual = verify_checksum(snapshot.payload, snapshot.checksum)
            if not ok:
                self._cache.pop(phase_id, None)
                raise CorruptedStateError(phase_id, expected=snapshot.checksum, actual=actual)

        if validate_schema:
            self._schemas.validate(phase_id, snapshot.payload)

        if self._cache_enabled and validate:
            self._cache[phase_id] = (signature, snapshot)
        # Callers get their own copy; the cached snapshot stays pristine.
        return snapshot.model_copy(deep=True)

    async def recover_state(self, phase_id: str) -> StateSnapshot | None:
        """Newest history snapshot whose checksum still verifies."""
        self._check_phase_id(phase_id)
        files = await asyncio.to_thread(layout.list_history_files, self._root, phase_id)
        for path in reversed(files):
            try:
                snapshot = await self._read_snapshot(path, phase_id)
            except CorruptedStateError as exc:
                logger.warning("Skipping unreadable history entry %s: %s", path.name, exc)
                continue
            if snapshot is None:
                continue
            ok, _ = verify_checksum(snapshot.payload, snapshot.checksum)
            if ok:
                logger.info("Recovered %s from history version %s", phase_id, snapshot.version_id)
                return snapshot
            logger.warning("History entry %s of %s fails checksum", path.name, phase_id)
        return None

    async def get_state_history(self, phase_id: str, limit: int | None = None) -> list[HistoryEntry]:
        """History metadata, newest first."""
        self._check_phase_id(phase_id)
        files = await asyncio.to_thread(layout.list_history_files, self._root, phase_id)
        entries: list[HistoryEntry] = []
        for path in reversed(files):
            if limit is not None and len(entries) >= limit:
                break
            try:
                snapshot = await self._read_snapshot(path, phase_id)
            except CorruptedStateError as exc:
                logger.warning("Skipping unreadable history entry %s: %s", path.name, exc)
                continue
            if snapshot is None:
                continue
            entries.append(
                HistoryEntry(
                    version_id=snapshot.version_id,
                    saved_at=snapshot.saved_at,
                    checksum=snapshot.checksum,
                    size=snapshot.size,
                )
            )
        return entries

    # --- Destructive ---

    async def clear_state(self, phase_id: str) -> bool:
        """Delete current state and history of one phase.

        Returns:
            True if anything was deleted.
        """
        self._check_phase_id(phase_id)
        directory = layout.phase_dir(self._root, phase_id)
        async with self._locks.acquire(phase_id):
            existed = await asyncio.to_thread(directory.is_dir)
            if existed:
                await asyncio.to_thread(shutil.rmtree, directory)
            self._cache.pop(phase_id, None)
            self._last_ns.pop(phase_id, None)
        self._locks.discard(phase_id)
        if existed:
            logger.info("Cleared state for phase %s", phase_id)
        return existed

    async def clear_all_state(self) -> list[str]:
        """Delete every phase under the state root. Returns cleared phase ids."""
        cleared: list[str] = []
        for phase_id in await asyncio.to_thread(layout.list_phase_ids, self._root):
            if await self.clear_state(phase_id):
                cleared.append(phase_id)
        return cleared

    # --- Introspection ---

    def list_phases(self) -> list[str]:
        return layout.list_phase_ids(self._root)

    def stats(self) -> dict[str, Any]:
        return {
            "state_root": str(self._root),
            "phases": len(self.list_phases()),
            "cached": len(self._cache),
            "saves": self._save_count,
            "max_history_items": self._max_history,
            "cache_enabled": self._cache_enabled,
        }

    # --- Internals ---

    def _check_phase_id(self, phase_id: str) -> None:
        if not layout.is_valid_phase_id(phase_id):
            raise ValidationError(
                "Invalid phase id", [f"phase_id: {phase_id!r} must match [A-Za-z0-9._-]+"]
            )

    def _next_timestamp(self, phase_id: str) -> int:
        """Strictly increasing per phase, so history order is total."""
        now = time.time_ns()
        last = self._last_ns.get(phase_id, 0)
        ts = now if now > last else last + 1
        self._last_ns[phase_id] = ts
        return ts

    async def _read_snapshot(self, path: Path, phase_id: str) -> StateSnapshot | None:
        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            raise CorruptedStateError(phase_id, reason=f"unreadable file {path.name}: {exc}") from exc
        try:
            envelope = json.loads(text)
            return StateSnapshot(
                phase_id=envelope["phase_id"],
                payload=envelope["payload"],
                checksum=envelope["checksum"],
                version_id=envelope["version_id"],
                saved_at=envelope["saved_at"],
                size=envelope["size"],
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise CorruptedStateError(phase_id, reason=f"malformed envelope in {path.name}: {exc}") from exc


def _file_signature(path: Path) -> _FileSignature | None:
    try:
        st = path.stat()
    except FileNotFoundError:
        return None
    return st.st_mtime_ns, st.st_size


def _atomic_write(path: Path, text: str) -> None:
    """Write to a temp file in the same directory, fsync, then rename over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def _evict_history(state_root: Path, phase_id: str, max_items: int) -> int:
    files = layout.list_history_files(state_root, phase_id)
    excess = len(files) - max_items
    for path in files[: max(excess, 0)]:
        path.unlink(missing_ok=True)
    return max(excess, 0)
