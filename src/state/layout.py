# src/state/layout.py - v1
"""On-disk layout of persisted phase state.

    {state_root}/
        {phase_id}/
            current-state.json
            .lock
            history/
                state-{timestamp}-{id}.json
"""

from __future__ import annotations

import re
from pathlib import Path

CURRENT_FILE = "current-state.json"
HISTORY_DIR = "history"
LOCK_FILE = ".lock"
HISTORY_PREFIX = "state-"

_PHASE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_HISTORY_RE = re.compile(r"^state-(\d+)-([0-9a-f]+)\.json$")


def is_valid_phase_id(phase_id: str) -> bool:
    return bool(_PHASE_ID_RE.match(phase_id)) and ".." not in phase_id


def phase_dir(state_root: Path, phase_id: str) -> Path:
    """Return the directory holding one phase's state."""
    return state_root / phase_id


def current_state_path(state_root: Path, phase_id: str) -> Path:
    return phase_dir(state_root, phase_id) / CURRENT_FILE


def history_dir(state_root: Path, phase_id: str) -> Path:
    return phase_dir(state_root, phase_id) / HISTORY_DIR


def lock_path(state_root: Path, phase_id: str) -> Path:
    return phase_dir(state_root, phase_id) / LOCK_FILE


def history_file_name(timestamp_ns: int, version_id: str) -> str:
    """Zero-padded so lexical order equals chronological order."""
    return f"{HISTORY_PREFIX}{timestamp_ns:020d}-{version_id}.json"


def history_path(state_root: Path, phase_id: str, timestamp_ns: int, version_id: str) -> Path:
    return history_dir(state_root, phase_id) / history_file_name(timestamp_ns, version_id)


def parse_history_name(name: str) -> tuple[int, str] | None:
    """Return (timestamp_ns, version_id) for a history file name."""
    match = _HISTORY_RE.match(name)
    if not match:
        return None
    return int(match.group(1)), match.group(2)


def list_history_files(state_root: Path, phase_id: str) -> list[Path]:
    """History files in chronological order (oldest first)."""
    hdir = history_dir(state_root, phase_id)
    if not hdir.is_dir():
        return []
    files = [p for p in hdir.iterdir() if parse_history_name(p.name) is not None]
    return sorted(files, key=lambda p: parse_history_name(p.name) or (0, ""))


def list_phase_ids(state_root: Path) -> list[str]:
    """Phase ids that currently have a directory under the state root."""
    if not state_root.is_dir():
        return []
    return sorted(
        entry.name
        for entry in state_root.iterdir()
        if entry.is_dir() and is_valid_phase_id(entry.name)
    )
