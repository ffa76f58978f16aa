# src/config/settings.py - v1
"""Typed configuration loaded from .env via pydantic-settings.

Single source of truth for deployment defaults, state persistence,
VERIFY retry budget, deployer commands, credentials and logging.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fleetdeploy.core.errors import ConfigurationError
from fleetdeploy.core.models import DeploymentPlan
from fleetdeploy.deployment.retry import RetryPolicy

KNOWN_ENVIRONMENTS: tuple[str, ...] = ("production", "staging", "development")


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="FLEETDEPLOY_",
        extra="ignore",
    )

    # === DEPLOYMENT DEFAULTS ===
    environment: str = "production"
    parallel_deployments: int = 3
    dry_run: bool = False
    rollback_enabled: bool = True
    fail_fast: bool = False
    service_name: str = "data-service"
    domains_config_path: Path | None = None

    # === STATE PERSISTENCE ===
    persistence_enabled: bool = True
    state_root: Path = Path(".fleetdeploy/state")
    max_history_items: int = 10
    state_cache_enabled: bool = True

    # === VERIFY retry budget ===
    verify_max_attempts: int = 3
    verify_base_delay_s: float = 0.5
    verify_backoff_factor: float = 2.0
    verify_max_delay_s: float = 10.0

    # === Timeouts ===
    deploy_timeout_s: float | None = 600.0
    health_check_timeout_s: float = 10.0
    health_check_path: str = "/health"

    # === Deployer commands (CommandDeployer) ===
    deploy_command: str = ""
    describe_command: str = ""
    restore_command: str = ""

    # === Credentials ===
    api_token: str = ""
    account_id: str = ""
    zone_id: str = ""

    # === Audit ===
    audit_dir: Path | None = None

    # === Logging ===
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "text"
    log_file: str | None = None
    log_rotation: str = "10MB"
    log_retention: int = 30

    # --- Validators ---

    @field_validator("parallel_deployments")
    @classmethod
    def validate_parallel(cls, v: int) -> int:
        if v < 1:
            raise ValueError("parallel_deployments must be >= 1")
        return v

    @field_validator("max_history_items")
    @classmethod
    def validate_history(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_history_items must be >= 1")
        return v

    @field_validator("verify_max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("verify_max_attempts must be >= 1")
        return v

    @field_validator("environment")
    @classmethod
    def normalize_environment(cls, v: str) -> str:
        return v.strip().lower()

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Cross-field consistency rules."""
        errors: list[str] = []

        if self.environment not in KNOWN_ENVIRONMENTS:
            errors.append(
                f"ENVIRONMENT must be one of {', '.join(KNOWN_ENVIRONMENTS)}, "
                f"got '{self.environment}'"
            )

        if self.restore_command and not self.deploy_command:
            errors.append("RESTORE_COMMAND requires DEPLOY_COMMAND")

        if self.verify_base_delay_s < 0 or self.verify_max_delay_s < 0:
            errors.append("VERIFY delays must be >= 0")

        if errors:
            raise ConfigurationError("; ".join(errors))

        return self

    # --- Helpers ---

    @property
    def credentials(self) -> dict[str, str]:
        """Non-empty credential values keyed by name."""
        raw = {
            "api_token": self.api_token,
            "account_id": self.account_id,
            "zone_id": self.zone_id,
        }
        return {k: v for k, v in raw.items() if v}

    def retry_policy(self) -> RetryPolicy:
        """Build the VERIFY RetryPolicy from settings."""
        return RetryPolicy(
            max_attempts=self.verify_max_attempts,
            base_delay_s=self.verify_base_delay_s,
            backoff_factor=self.verify_backoff_factor,
            max_delay_s=self.verify_max_delay_s,
        )

    def deployment_plan(self, domains: list[str], **overrides: Any) -> DeploymentPlan:
        """Build a DeploymentPlan from settings defaults plus overrides."""
        values: dict[str, Any] = {
            "domains": domains,
            "environment": self.environment,
            "parallel_deployments": self.parallel_deployments,
            "dry_run": self.dry_run,
            "rollback_enabled": self.rollback_enabled,
            "fail_fast": self.fail_fast,
            "credentials": self.credentials,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return DeploymentPlan(**values)


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
