# src/deployment/rollback.py - v1
"""Rollback points and restore.

A rollback point is the domain's pre-deployment descriptor, captured
right before DEPLOY. Points are immutable and keyed by
(domain_id, attempt_id). Points of successful domains are kept.
"""

from __future__ import annotations

import logging
import threading

from fleetdeploy.core.errors import RollbackError, RollbackFailedError, StateError
from fleetdeploy.core.models import DomainTarget, RollbackPoint, utc_now
from fleetdeploy.deployment.base_deployer import BaseDeployer
from fleetdeploy.state.manager import StateManager

logger = logging.getLogger(__name__)

ROLLBACK_PHASE_PREFIX = "rollback-"


def rollback_phase_id(domain_id: str) -> str:
    return f"{ROLLBACK_PHASE_PREFIX}{domain_id}"


class RollbackManager:
    """Captures rollback points and restores domains through the deployer."""

    def __init__(
        self,
        deployer: BaseDeployer,
        state_manager: StateManager | None = None,
    ) -> None:
        self._deployer = deployer
        self._state = state_manager
        self._points: dict[tuple[str, str], RollbackPoint] = {}
        self._order: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    @property
    def deployer(self) -> BaseDeployer:
        return self._deployer

    async def create_rollback_point(self, target: DomainTarget, attempt_id: str) -> RollbackPoint:
        """Snapshot the domain's current descriptor.

        Raises:
            RollbackError: A point already exists for (domain, attempt).
        """
        key = (target.id, attempt_id)
        with self._lock:
            if key in self._points:
                raise RollbackError(
                    f"Rollback point already exists for {target.id} attempt {attempt_id}"
                )

        descriptor = await self._deployer.describe(target)
        point = RollbackPoint(
            domain_id=target.id,
            attempt_id=attempt_id,
            prior_descriptor=dict(descriptor),
            created_at=utc_now(),
        )

        with self._lock:
            if key in self._points:
                raise RollbackError(
                    f"Rollback point already exists for {target.id} attempt {attempt_id}"
                )
            self._points[key] = point
            self._order.append(key)

        if self._state is not None:
            try:
                await self._state.save_state(
                    rollback_phase_id(target.id),
                    {
                        "domain_id": point.domain_id,
                        "attempt_id": point.attempt_id,
                        "prior_descriptor": point.prior_descriptor,
                        "created_at": point.created_at.isoformat(),
                    },
                )
            except (StateError, OSError) as e:
                logger.warning("Could not persist rollback point for %s: %s", target.id, e)

        logger.debug("Rollback point captured for %s (%s)", target.id, attempt_id)
        return point

    def get_rollback_points(self, domain_id: str | None = None) -> list[RollbackPoint]:
        """Points in creation order, optionally for one domain."""
        with self._lock:
            points = [self._points[k] for k in self._order]
        if domain_id is None:
            return points
        return [p for p in points if p.domain_id == domain_id]

    def latest_point(self, domain_id: str) -> RollbackPoint | None:
        points = self.get_rollback_points(domain_id)
        return points[-1] if points else None

    async def rollback(self, domain_id: str) -> RollbackPoint:
        """Restore ``domain_id`` to its most recent rollback point.

        Raises:
            RollbackFailedError: No point exists, or the restore failed.
        """
        point = self.latest_point(domain_id)
        if point is None:
            raise RollbackFailedError(domain_id, "no rollback point recorded")

        logger.info("Rolling back %s to attempt %s snapshot", domain_id, point.attempt_id)
        try:
            restored = await self._deployer.restore(point)
        except Exception as e:
            raise RollbackFailedError(domain_id, f"restore raised {type(e).__name__}: {e}") from e
        if not restored:
            raise RollbackFailedError(domain_id, "restore reported failure")
        logger.info("Rollback of %s complete", domain_id)
        return point
