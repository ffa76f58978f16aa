# tests/conftest.py - v1
"""Shared test fixtures for all unit and integration tests.

Provides a scriptable StubDeployer, resolved targets, zero-delay retry
policies and temp state roots. No network.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from fleetdeploy.core.models import (
    DeploymentPlan,
    DeployRequest,
    DeployResult,
    DomainTarget,
    RollbackPoint,
)
from fleetdeploy.deployment.base_deployer import BaseDeployer
from fleetdeploy.deployment.retry import RetryPolicy
from fleetdeploy.domains.resolver import DomainResolver
from fleetdeploy.state.manager import StateManager


class StubDeployer(BaseDeployer):
    """Deployer with scripted outcomes and call tracking.

    Args:
        fail_deploy: Domains whose deploy() raises.
        reject_deploy: Domains whose deploy() returns status="failed".
        unhealthy: Domains whose health_check() always returns False.
        flaky: domain -> number of failing health checks before success.
        fail_restore: Domains whose restore() returns False.
        raise_restore: Domains whose restore() raises.
        delay_s: Sleep inside deploy() (to observe concurrency).
    """

    def __init__(
        self,
        fail_deploy: set[str] | None = None,
        reject_deploy: set[str] | None = None,
        unhealthy: set[str] | None = None,
        flaky: dict[str, int] | None = None,
        fail_restore: set[str] | None = None,
        raise_restore: set[str] | None = None,
        delay_s: float = 0.0,
    ) -> None:
        self.fail_deploy = fail_deploy or set()
        self.reject_deploy = reject_deploy or set()
        self.unhealthy = unhealthy or set()
        self.flaky = dict(flaky or {})
        self.fail_restore = fail_restore or set()
        self.raise_restore = raise_restore or set()
        self.delay_s = delay_s

        self.deploy_calls: list[DeployRequest] = []
        self.describe_calls: list[str] = []
        self.restore_calls: list[RollbackPoint] = []
        self.health_calls: dict[str, int] = {}
        self.active = 0
        self.max_active = 0

    @property
    def deployed(self) -> list[str]:
        return [r.domain for r in self.deploy_calls]

    async def deploy(self, request: DeployRequest) -> DeployResult:
        self.deploy_calls.append(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay_s)
        finally:
            self.active -= 1
        if request.domain in self.fail_deploy:
            raise RuntimeError(f"provider error for {request.domain}")
        if request.domain in self.reject_deploy:
            return DeployResult(status="failed", message="quota exceeded")
        return DeployResult(
            status="success",
            url=f"https://{request.hostname}",
            worker_id=f"worker-{request.domain}",
            deployment_id=f"dep-{request.domain}",
        )

    async def describe(self, target: DomainTarget) -> dict[str, Any]:
        self.describe_calls.append(target.id)
        return {"version": f"v1-{target.id}"}

    async def health_check(self, target: DomainTarget, url: str | None) -> bool:
        self.health_calls[target.id] = self.health_calls.get(target.id, 0) + 1
        if target.id in self.unhealthy:
            return False
        remaining = self.flaky.get(target.id, 0)
        if remaining > 0:
            self.flaky[target.id] = remaining - 1
            return False
        return True

    async def restore(self, point: RollbackPoint) -> bool:
        self.restore_calls.append(point)
        if point.domain_id in self.raise_restore:
            raise RuntimeError("restore endpoint unavailable")
        return point.domain_id not in self.fail_restore


# === FIXTURES ===


@pytest.fixture
def stub_deployer() -> StubDeployer:
    return StubDeployer()


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Three attempts, no waiting."""
    return RetryPolicy(max_attempts=3, base_delay_s=0.0, max_delay_s=0.0)


@pytest.fixture
def resolver() -> DomainResolver:
    return DomainResolver(environment="production", service_name="data-service")


@pytest.fixture
def make_targets(resolver: DomainResolver):
    """Factory: domain ids -> production DomainTargets."""

    def _make(*domains: str) -> list[DomainTarget]:
        return resolver.resolve_targets(list(domains))

    return _make


@pytest.fixture
def make_plan():
    """Factory: DeploymentPlan with test-friendly defaults."""

    def _make(domains: list[str], **overrides: Any) -> DeploymentPlan:
        values: dict[str, Any] = {
            "domains": domains,
            "environment": "production",
            "credentials": {"api_token": "tok_0123456789abcdef", "account_id": "acct1234567890"},
        }
        values.update(overrides)
        return DeploymentPlan(**values)

    return _make


@pytest.fixture
def state_root(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def state_manager(state_root: Path) -> StateManager:
    return StateManager(state_root, max_history_items=5)
