# src/deployment/noop_deployer.py - v1
"""Dry-run deployer: simulates success without touching any provider."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fleetdeploy.core.models import DeployRequest, DeployResult, DomainTarget, RollbackPoint
from fleetdeploy.deployment.base_deployer import BaseDeployer

logger = logging.getLogger(__name__)


class NoopDeployer(BaseDeployer):
    """Returns a simulated success for every call."""

    def __init__(self, simulated_delay_s: float = 0.0) -> None:
        self._delay = simulated_delay_s
        self.requests: list[DeployRequest] = []

    async def deploy(self, request: DeployRequest) -> DeployResult:
        self.requests.append(request)
        logger.info("DRY RUN: would deploy %s (%s)", request.domain, request.environment)
        if self._delay:
            await asyncio.sleep(self._delay)
        return DeployResult(
            status="success",
            url=f"https://{request.hostname}",
            worker_id=None,
            deployment_id=f"dry-run-{request.domain}",
            message="simulated",
        )

    async def restore(self, point: RollbackPoint) -> bool:
        logger.info("DRY RUN: would restore %s", point.domain_id)
        return True

    async def describe(self, target: DomainTarget) -> dict[str, Any]:
        return {"simulated": True}
