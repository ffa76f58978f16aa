# src/logging/context.py - v1
"""Contextual logging support: attach orchestration_id, domain_id, phase to log records.

Context variables are copied into every asyncio task, so each
per-domain worker carries its own domain/phase without locking.
"""

from __future__ import annotations

import contextvars
from dataclasses import dataclass
from typing import Any

_orchestration_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "orchestration_id", default=None
)
_domain_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "domain_id", default=None
)
_phase: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "phase", default=None
)


@dataclass
class LogContext:
    """Immutable snapshot of current logging context."""

    orchestration_id: str | None = None
    domain_id: str | None = None
    phase: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict for JSON log injection."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


def get_context() -> LogContext:
    """Snapshot current context variables."""
    return LogContext(
        orchestration_id=_orchestration_id.get(),
        domain_id=_domain_id.get(),
        phase=_phase.get(),
    )


def set_orchestration_context(orchestration_id: str) -> None:
    """Set run-level context (called once per portfolio run)."""
    _orchestration_id.set(orchestration_id)


def set_domain_context(domain_id: str | None, phase: str | None = None) -> None:
    """Set domain-level context (called per domain and phase transition)."""
    _domain_id.set(domain_id)
    _phase.set(phase)


def set_phase(phase: str | None) -> None:
    _phase.set(phase)


def clear_context() -> None:
    """Reset all context variables."""
    _orchestration_id.set(None)
    _domain_id.set(None)
    _phase.set(None)
