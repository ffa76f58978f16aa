# tests/unit/config/test_settings.py - v1
"""Tests for config/settings.py - typed Settings and validation rules."""

from __future__ import annotations

from pathlib import Path

import pytest

from fleetdeploy.config.settings import ConfigurationError, Settings, load_settings
from fleetdeploy.deployment.retry import RetryPolicy


class TestSettingsDefaults:
    def test_deployment_defaults(self):
        s = Settings(_env_file=None)
        assert s.environment == "production"
        assert s.parallel_deployments == 3
        assert s.rollback_enabled is True
        assert s.fail_fast is False
        assert s.dry_run is False

    def test_state_defaults(self):
        s = Settings(_env_file=None)
        assert s.persistence_enabled is True
        assert s.state_root == Path(".fleetdeploy/state")
        assert s.max_history_items == 10

    def test_verify_defaults(self):
        s = Settings(_env_file=None)
        assert s.verify_max_attempts == 3
        assert s.verify_base_delay_s == 0.5
        assert s.verify_backoff_factor == 2.0

    def test_log_defaults(self):
        s = Settings(_env_file=None)
        assert s.log_format == "text"
        assert s.log_level == "INFO"


class TestSettingsValidation:
    def test_unknown_environment(self):
        with pytest.raises(ConfigurationError, match="ENVIRONMENT"):
            Settings(_env_file=None, environment="qa")

    def test_environment_normalized(self):
        assert Settings(_env_file=None, environment="Staging").environment == "staging"

    def test_restore_without_deploy(self):
        with pytest.raises(ConfigurationError, match="RESTORE_COMMAND"):
            Settings(_env_file=None, restore_command="wrangler rollback")

    def test_negative_delay(self):
        with pytest.raises(ConfigurationError, match="VERIFY"):
            Settings(_env_file=None, verify_base_delay_s=-1)

    def test_parallel_below_one(self):
        with pytest.raises(ValueError, match="parallel_deployments"):
            Settings(_env_file=None, parallel_deployments=0)

    def test_history_below_one(self):
        with pytest.raises(ValueError, match="max_history_items"):
            Settings(_env_file=None, max_history_items=0)

    def test_attempts_below_one(self):
        with pytest.raises(ValueError, match="verify_max_attempts"):
            Settings(_env_file=None, verify_max_attempts=0)


class TestSettingsHelpers:
    def test_credentials_only_non_empty(self):
        s = Settings(_env_file=None, api_token="tok", account_id="")
        assert s.credentials == {"api_token": "tok"}

    def test_retry_policy(self):
        s = Settings(_env_file=None, verify_max_attempts=5, verify_base_delay_s=0.1)
        policy = s.retry_policy()
        assert isinstance(policy, RetryPolicy)
        assert policy.max_attempts == 5
        assert policy.base_delay_s == 0.1

    def test_deployment_plan_overrides(self):
        s = Settings(_env_file=None, parallel_deployments=4, api_token="tok")
        plan = s.deployment_plan(["A.example.com"], dry_run=True, environment=None)
        assert plan.domains == ["a.example.com"]
        assert plan.parallel_deployments == 4
        assert plan.dry_run is True
        assert plan.environment == "production"
        assert plan.credentials == {"api_token": "tok"}

    def test_env_prefix(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("FLEETDEPLOY_PARALLEL_DEPLOYMENTS", "7")
        monkeypatch.setenv("FLEETDEPLOY_ENVIRONMENT", "development")
        s = load_settings()
        assert s.parallel_deployments == 7
        assert s.environment == "development"

    def test_load_settings_overrides(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        assert load_settings(fail_fast=True).fail_fast is True
