# src/audit/auditor.py - v1
"""Append-only, redacted audit log of one portfolio run.

One AuditEvent per meaningful transition (phase entry/exit, retry,
rollback). Workers append concurrently; sequence numbers are assigned
under a lock so the log has a total order.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fleetdeploy.audit.redactor import redact
from fleetdeploy.core.models import AuditEvent, AuditPhase, AuditReport, AuditStatus

logger = logging.getLogger(__name__)

PORTFOLIO_DOMAIN = "*"


class DeploymentAuditor:
    """Accumulates AuditEvents for a single orchestration."""

    def __init__(self, orchestration_id: str = "") -> None:
        self.orchestration_id = orchestration_id
        self._events: list[AuditEvent] = []
        self._lock = threading.Lock()
        self._start_time = datetime.now(timezone.utc)
        self._end_time: datetime | None = None

    def record(
        self,
        domain_id: str,
        phase: AuditPhase,
        status: AuditStatus,
        detail: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """Append one event. ``detail`` is redacted before storage."""
        safe_detail = redact(detail or {})
        with self._lock:
            event = AuditEvent(
                sequence=len(self._events) + 1,
                timestamp=datetime.now(timezone.utc),
                domain_id=domain_id,
                phase=phase,
                status=status,
                detail=safe_detail,
            )
            self._events.append(event)
        logger.debug("audit %s %s %s", domain_id, phase, status)
        return event

    @property
    def events(self) -> list[AuditEvent]:
        """Snapshot of all recorded events."""
        with self._lock:
            return list(self._events)

    @property
    def start_time(self) -> datetime:
        return self._start_time

    def search(
        self,
        domain_id: str | None = None,
        phase: str | None = None,
        status: str | None = None,
        since: datetime | None = None,
    ) -> list[AuditEvent]:
        """Filter events; every given criterion must match."""
        results = []
        for event in self.events:
            if domain_id is not None and event.domain_id != domain_id:
                continue
            if phase is not None and event.phase != phase:
                continue
            if status is not None and event.status != status:
                continue
            if since is not None and event.timestamp < since:
                continue
            results.append(event)
        return results

    def summary(self) -> dict[str, Any]:
        """Counts per phase and status, plus error and rollback totals."""
        events = self.events
        by_phase = Counter(e.phase for e in events)
        by_status = Counter(e.status for e in events)
        return {
            "orchestration_id": self.orchestration_id,
            "total_events": len(events),
            "domains": sorted({e.domain_id for e in events if e.domain_id != PORTFOLIO_DOMAIN}),
            "by_phase": dict(by_phase),
            "by_status": dict(by_status),
            "error_count": by_status.get("failed", 0),
            "retry_count": by_status.get("retry", 0),
            "rollback_count": sum(
                1 for e in events if e.phase == "ROLLBACK" and e.status == "started"
            ),
        }

    def finalize(self) -> AuditReport:
        """Close the log and produce the report attached to a PortfolioResult."""
        self._end_time = datetime.now(timezone.utc)
        duration_ms = int((self._end_time - self._start_time).total_seconds() * 1000)
        return AuditReport(
            orchestration_id=self.orchestration_id,
            start_time=self._start_time,
            end_time=self._end_time,
            duration_ms=duration_ms,
            events=self.events,
        )

    def save(self, path: Path) -> None:
        """Save all events to a JSON Lines file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            for event in self.events:
                f.write(json.dumps(event.model_dump(mode="json"), default=str) + "\n")
        logger.info("Audit log written to %s (%d events)", path, len(self._events))

    def __len__(self) -> int:
        return len(self._events)
