# tests/unit/deployment/test_rollback.py - v1
"""Tests for deployment/rollback.py - points, persistence, restore."""

from __future__ import annotations

import pytest

from fleetdeploy.core.errors import RollbackError, RollbackFailedError
from fleetdeploy.deployment.rollback import RollbackManager, rollback_phase_id

from tests.conftest import StubDeployer


class TestRollbackPoints:
    @pytest.mark.asyncio
    async def test_captures_descriptor(self, make_targets):
        deployer = StubDeployer()
        manager = RollbackManager(deployer)
        target = make_targets("a.example.com")[0]
        point = await manager.create_rollback_point(target, "attempt-1")
        assert point.prior_descriptor == {"version": "v1-a.example.com"}
        assert deployer.describe_calls == ["a.example.com"]

    @pytest.mark.asyncio
    async def test_duplicate_key_rejected(self, make_targets):
        manager = RollbackManager(StubDeployer())
        target = make_targets("a.example.com")[0]
        await manager.create_rollback_point(target, "attempt-1")
        with pytest.raises(RollbackError):
            await manager.create_rollback_point(target, "attempt-1")

    @pytest.mark.asyncio
    async def test_latest_point(self, make_targets):
        manager = RollbackManager(StubDeployer())
        a, b = make_targets("a.example.com", "b.example.com")
        await manager.create_rollback_point(a, "attempt-1")
        await manager.create_rollback_point(b, "attempt-2")
        await manager.create_rollback_point(a, "attempt-3")
        assert manager.latest_point("a.example.com").attempt_id == "attempt-3"
        assert len(manager.get_rollback_points()) == 3
        assert [p.attempt_id for p in manager.get_rollback_points("a.example.com")] == [
            "attempt-1",
            "attempt-3",
        ]
        assert manager.latest_point("c.example.com") is None

    @pytest.mark.asyncio
    async def test_persisted(self, make_targets, state_manager):
        manager = RollbackManager(StubDeployer(), state_manager)
        await manager.create_rollback_point(make_targets("a.example.com")[0], "attempt-1")
        snapshot = await state_manager.load_state(rollback_phase_id("a.example.com"))
        assert snapshot.payload["attempt_id"] == "attempt-1"
        assert snapshot.payload["prior_descriptor"] == {"version": "v1-a.example.com"}


class TestRollback:
    @pytest.mark.asyncio
    async def test_success(self, make_targets):
        deployer = StubDeployer()
        manager = RollbackManager(deployer)
        await manager.create_rollback_point(make_targets("a.example.com")[0], "attempt-1")
        point = await manager.rollback("a.example.com")
        assert point.attempt_id == "attempt-1"
        assert [p.domain_id for p in deployer.restore_calls] == ["a.example.com"]

    @pytest.mark.asyncio
    async def test_points_retained_after_rollback(self, make_targets):
        manager = RollbackManager(StubDeployer())
        await manager.create_rollback_point(make_targets("a.example.com")[0], "attempt-1")
        await manager.rollback("a.example.com")
        assert manager.latest_point("a.example.com") is not None

    @pytest.mark.asyncio
    async def test_no_point(self):
        with pytest.raises(RollbackFailedError, match="no rollback point"):
            await RollbackManager(StubDeployer()).rollback("a.example.com")

    @pytest.mark.asyncio
    async def test_restore_returns_false(self, make_targets):
        manager = RollbackManager(StubDeployer(fail_restore={"a.example.com"}))
        await manager.create_rollback_point(make_targets("a.example.com")[0], "attempt-1")
        with pytest.raises(RollbackFailedError, match="reported failure"):
            await manager.rollback("a.example.com")

    @pytest.mark.asyncio
    async def test_restore_raises(self, make_targets):
        manager = RollbackManager(StubDeployer(raise_restore={"a.example.com"}))
        await manager.create_rollback_point(make_targets("a.example.com")[0], "attempt-1")
        with pytest.raises(RollbackFailedError, match="RuntimeError"):
            await manager.rollback("a.example.com")
