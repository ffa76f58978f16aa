# src/deployment/base_deployer.py - v1
"""Abstract Deployer: the boundary to the vendor API/CLI that performs deploys."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from fleetdeploy.core.models import DeployRequest, DeployResult, DomainTarget, RollbackPoint


class BaseDeployer(ABC):
    """Unified interface for deployment backends."""

    @abstractmethod
    async def deploy(self, request: DeployRequest) -> DeployResult:
        """Deploy the artifact for one domain. Raises on provider failure."""

    @abstractmethod
    async def restore(self, point: RollbackPoint) -> bool:
        """Restore a domain to its pre-deployment descriptor. True on success."""

    async def describe(self, target: DomainTarget) -> dict[str, Any]:
        """Current descriptor (version/tag, routing) captured before DEPLOY."""
        return {}

    async def health_check(self, target: DomainTarget, url: str | None) -> bool:
        """One VERIFY probe. Backends without a probe report healthy."""
        return True
