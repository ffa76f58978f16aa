# tests/integration/logging/test_int_logging_subsystem.py - v1
"""Integration tests for the logging subsystem during real portfolio runs.

Covers: logging/logger.py, logging/handlers.py, logging/context.py
No network required.
"""
from __future__ import annotations

import json
import logging

import pytest

from fleetdeploy.deployment.coordinator import DeploymentCoordinator
from fleetdeploy.logging.context import clear_context
from fleetdeploy.logging.logger import setup_logging
from tests.conftest import StubDeployer


@pytest.fixture
def json_log(tmp_path):
    """Route fleetdeploy logs as JSON to a file; restore defaults afterwards."""
    path = tmp_path / "logs" / "deploy.log"
    clear_context()
    setup_logging(level="DEBUG", log_format="json", log_file=str(path))
    yield path
    root = logging.getLogger("fleetdeploy")
    for handler in root.handlers:
        handler.close()
    setup_logging(level="INFO")
    clear_context()


def _entries(path) -> list[dict]:
    for handler in logging.getLogger("fleetdeploy").handlers:
        handler.flush()
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


class TestLogsDuringRun:
    @pytest.mark.asyncio
    async def test_domain_context_on_records(self, json_log, fast_policy, make_targets, make_plan):
        coordinator = DeploymentCoordinator(StubDeployer(), verify_policy=fast_policy)
        result = await coordinator.run(make_plan(["a.com", "b.com"]), make_targets("a.com", "b.com"))
        entries = _entries(json_log)
        finished = [e for e in entries if e["message"].endswith("finished: SUCCEEDED")]
        assert {e["context"]["domain_id"] for e in finished} == {"a.com", "b.com"}
        assert all(e["context"]["orchestration_id"] == result.orchestration_id for e in finished)

    @pytest.mark.asyncio
    async def test_retry_warnings_logged(self, json_log, fast_policy, make_targets, make_plan):
        coordinator = DeploymentCoordinator(StubDeployer(flaky={"a.com": 1}), verify_policy=fast_policy)
        await coordinator.run(make_plan(["a.com"]), make_targets("a.com"))
        warnings = [e for e in _entries(json_log) if e["level"] == "WARNING"]
        assert any("a.com" in e["message"] for e in warnings)

    @pytest.mark.asyncio
    async def test_credentials_never_logged(self, json_log, fast_policy, make_targets, make_plan):
        coordinator = DeploymentCoordinator(StubDeployer(fail_deploy={"a.com"}), verify_policy=fast_policy)
        await coordinator.run(make_plan(["a.com"]), make_targets("a.com"))
        text = json_log.read_text(encoding="utf-8")
        assert "tok_0123456789abcdef" not in text
        assert "acct1234567890" not in text


class TestOperatorAlerts:
    @pytest.mark.asyncio
    async def test_rollback_failure_reaches_stderr_when_quiet(self, capsys, fast_policy, make_targets, make_plan):
        setup_logging(level="ERROR", log_format="json")
        try:
            coordinator = DeploymentCoordinator(
                StubDeployer(fail_deploy={"a.com"}, fail_restore={"a.com"}), verify_policy=fast_policy
            )
            result = await coordinator.run(make_plan(["a.com"]), make_targets("a.com"))
        finally:
            err = capsys.readouterr().err
            setup_logging(level="INFO")
        assert result.rollback_failed == ["a.com"]
        alerts = [json.loads(line) for line in err.splitlines() if line.startswith("{")]
        assert alerts[-1]["level"] == "CRITICAL"
        assert "ROLLBACK FAILED for a.com" in alerts[-1]["message"]
        assert alerts[-1]["data"]["domain_id"] == "a.com"
