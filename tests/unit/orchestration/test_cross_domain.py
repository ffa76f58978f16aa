# tests/unit/orchestration/test_cross_domain.py - v1
"""Tests for orchestration/cross_domain.py - staged deploys and portfolio health."""

from __future__ import annotations

import pytest

from fleetdeploy.core.errors import DependencyCycleError
from fleetdeploy.deployment.coordinator import DeploymentCoordinator
from fleetdeploy.orchestration.cross_domain import CrossDomainCoordinator

from tests.conftest import StubDeployer

API = "api.example.com"
WEB = "web.example.com"
ADMIN = "admin.example.com"
DOCS = "docs.example.com"


def _cross(deployer, fast_policy, deps=None) -> CrossDomainCoordinator:
    return CrossDomainCoordinator(DeploymentCoordinator(deployer, verify_policy=fast_policy), deps)


class TestDependencies:
    def test_add_dependency_normalizes(self, stub_deployer, fast_policy):
        cross = _cross(stub_deployer, fast_policy)
        cross.add_dependency(" WEB.example.com ", "API.example.com")
        cross.add_dependency(WEB, [API, "cdn.example.com"])
        assert cross.dependencies == {WEB: [API, "cdn.example.com"]}

    def test_dependencies_is_copy(self, stub_deployer, fast_policy):
        cross = _cross(stub_deployer, fast_policy, {WEB: [API]})
        cross.dependencies[WEB].append(DOCS)
        assert cross.dependencies == {WEB: [API]}

    def test_build_stages(self, stub_deployer, fast_policy):
        cross = _cross(stub_deployer, fast_policy, {WEB: [API], ADMIN: [WEB]})
        assert cross.build_stages([ADMIN, WEB, API, DOCS]).stages == [[API, DOCS], [WEB], [ADMIN]]


class TestStagedDeploy:
    @pytest.mark.asyncio
    async def test_dependencies_deploy_first(self, fast_policy, make_targets, make_plan):
        deployer = StubDeployer()
        cross = _cross(deployer, fast_policy, {WEB: [API]})
        result = await cross.deploy(make_plan([WEB, API]), make_targets(WEB, API))
        assert result.succeeded == [WEB, API]
        assert deployer.deployed.index(API) < deployer.deployed.index(WEB)

    @pytest.mark.asyncio
    async def test_failed_dependency_skips_dependents(self, fast_policy, make_targets, make_plan):
        deployer = StubDeployer(fail_deploy={API})
        cross = _cross(deployer, fast_policy, {WEB: [API], ADMIN: [WEB]})
        result = await cross.deploy(make_plan([API, WEB, ADMIN, DOCS]), make_targets(API, WEB, ADMIN, DOCS))
        assert result.rolled_back == [API]
        assert result.skipped == [WEB, ADMIN]
        assert result.succeeded == [DOCS]
        assert WEB not in deployer.deployed
        assert "dependencies not deployed" in result.records[WEB].error
        skipped = [e for e in result.audit_log.for_domain(WEB) if e.status == "skipped"]
        assert skipped[0].detail == {"blocked_by": [API]}
        assert result.total == 4

    @pytest.mark.asyncio
    async def test_fail_fast_halts_later_stages(self, fast_policy, make_targets, make_plan):
        deployer = StubDeployer(fail_deploy={DOCS})
        cross = _cross(deployer, fast_policy, {WEB: [API]})
        result = await cross.deploy(make_plan([API, DOCS, WEB], fail_fast=True), make_targets(API, DOCS, WEB))
        assert result.rolled_back == [DOCS]
        assert result.cancelled == [WEB]
        assert WEB not in deployer.deployed

    @pytest.mark.asyncio
    async def test_cycle_raises_before_deploying(self, stub_deployer, fast_policy, make_targets, make_plan):
        cross = _cross(stub_deployer, fast_policy, {WEB: [API], API: [WEB]})
        with pytest.raises(DependencyCycleError):
            await cross.deploy(make_plan([WEB, API]), make_targets(WEB, API))
        assert stub_deployer.deploy_calls == []

    @pytest.mark.asyncio
    async def test_concurrency_bound_within_stage(self, fast_policy, make_targets, make_plan):
        deployer = StubDeployer(delay_s=0.02)
        leaves = [f"leaf{i}.example.com" for i in range(5)]
        deps = {leaf: [API] for leaf in leaves}
        cross = _cross(deployer, fast_policy, deps)
        result = await cross.deploy(
            make_plan([API, *leaves], parallel_deployments=2), make_targets(API, *leaves)
        )
        assert len(result.succeeded) == 6
        assert deployer.max_active == 2


class TestPortfolioHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, stub_deployer, fast_policy, make_targets, make_plan):
        cross = _cross(stub_deployer, fast_policy, {WEB: [API], ADMIN: [WEB]})
        result = await cross.deploy(make_plan([API, WEB, ADMIN, DOCS]), make_targets(API, WEB, ADMIN, DOCS))
        health = cross.portfolio_health(result)
        assert health.critical_path_status == "healthy"
        assert health.critical_path == [API, WEB, ADMIN]
        assert health.percent_succeeded == 100.0
        assert (health.total, health.succeeded) == (4, 4)

    @pytest.mark.asyncio
    async def test_blocked(self, fast_policy, make_targets, make_plan):
        cross = _cross(StubDeployer(fail_deploy={API}), fast_policy, {WEB: [API]})
        result = await cross.deploy(make_plan([API, WEB, DOCS]), make_targets(API, WEB, DOCS))
        health = cross.portfolio_health(result)
        assert health.critical_path == [API, WEB]
        assert health.critical_path_status == "blocked"
        assert health.percent_succeeded == pytest.approx(33.3)

    @pytest.mark.asyncio
    async def test_degraded(self, fast_policy, make_targets, make_plan):
        cross = _cross(StubDeployer(fail_deploy={DOCS}), fast_policy, {WEB: [API]})
        result = await cross.deploy(make_plan([API, WEB, DOCS]), make_targets(API, WEB, DOCS))
        health = cross.portfolio_health(result)
        assert health.critical_path_status == "degraded"
        assert health.succeeded == 2
