# src/core/models.py - v1
"""Shared Pydantic domain models used across modules.

No module redefines these types; all imports come from core.models.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# === DEPLOYMENT STATE MACHINE ===

DeploymentState = Literal[
    "PENDING",
    "VALIDATING",
    "DEPLOYING",
    "VERIFYING",
    "ROLLING_BACK",
    "SUCCEEDED",
    "FAILED",
    "ROLLED_BACK",
    "ROLLBACK_FAILED",
    "SKIPPED",
    "CANCELLED",
]

TERMINAL_STATES: frozenset[str] = frozenset(
    {"SUCCEEDED", "FAILED", "ROLLED_BACK", "ROLLBACK_FAILED", "SKIPPED", "CANCELLED"}
)

# Failure states that count against a fail-fast plan.
FAILURE_STATES: frozenset[str] = frozenset({"FAILED", "ROLLED_BACK", "ROLLBACK_FAILED"})

AuditPhase = Literal["PORTFOLIO", "VALIDATE", "DEPLOY", "VERIFY", "ROLLBACK"]
AuditStatus = Literal["started", "completed", "failed", "retry", "skipped", "cancelled"]


def normalize_domain_id(domain: str) -> str:
    """Canonical form of a domain id: stripped, lower-case."""
    return domain.strip().lower()


def dedupe_domains(domains: list[str]) -> list[str]:
    """Normalize and de-duplicate, keeping first occurrence order."""
    seen: set[str] = set()
    result: list[str] = []
    for raw in domains:
        domain = normalize_domain_id(str(raw))
        if domain and domain not in seen:
            seen.add(domain)
            result.append(domain)
    return result


# === PLAN + TARGETS ===


class DeploymentPlan(BaseModel):
    """What to deploy, where, and how aggressively."""

    domains: list[str] = Field(default_factory=list)
    environment: str = "production"
    parallel_deployments: int = Field(default=3, ge=1)
    dry_run: bool = False
    rollback_enabled: bool = True
    fail_fast: bool = False
    credentials: dict[str, str] = Field(default_factory=dict, repr=False)
    artifact: str | None = None

    @field_validator("domains")
    @classmethod
    def collapse_duplicates(cls, v: list[str]) -> list[str]:
        return dedupe_domains(v)

    @field_validator("environment")
    @classmethod
    def normalize_environment(cls, v: str) -> str:
        return v.strip().lower()


class RoutingPolicy(BaseModel):
    """Static per-environment routing policy."""

    model_config = ConfigDict(frozen=True)

    rate_limit: int
    strategies: tuple[str, ...]


class DomainConfig(BaseModel):
    """Derived naming for a domain (worker name, per-environment hostnames)."""

    model_config = ConfigDict(frozen=True)

    name: str
    clean_name: str
    worker_name: str
    environments: dict[str, str]


class DomainTarget(BaseModel):
    """A domain resolved for one environment. Immutable after initialize()."""

    model_config = ConfigDict(frozen=True)

    id: str
    environment: str
    hostname: str
    routing: RoutingPolicy
    config: DomainConfig


# === PER-DOMAIN RECORD ===


class DeploymentRecord(BaseModel):
    """One deployment attempt of one domain."""

    domain_id: str
    attempt_id: str
    state: DeploymentState = "PENDING"
    started_at: datetime | None = None
    ended_at: datetime | None = None
    url: str | None = None
    worker_id: str | None = None
    deployment_id: str | None = None
    error: str | None = None
    verify_attempts: int = 0
    phases: list[str] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return int((self.ended_at - self.started_at).total_seconds() * 1000)


# === STATE PERSISTENCE ===


class SaveResult(BaseModel):
    """Returned by StateManager.save_state()."""

    saved_at: datetime
    checksum: str
    version_id: str
    size: int


class HistoryEntry(BaseModel):
    """Metadata of one history snapshot."""

    version_id: str
    saved_at: datetime
    checksum: str
    size: int


class StateSnapshot(BaseModel):
    """A persisted phase payload with its integrity metadata."""

    phase_id: str
    payload: dict[str, Any]
    checksum: str
    version_id: str
    saved_at: datetime
    size: int


# === ROLLBACK ===


class RollbackPoint(BaseModel):
    """Pre-deployment descriptor captured right before DEPLOY. Never mutated."""

    model_config = ConfigDict(frozen=True)

    domain_id: str
    attempt_id: str
    prior_descriptor: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


# === AUDIT ===


class AuditEvent(BaseModel):
    """Single append-only audit entry. Detail is redacted before storage."""

    model_config = ConfigDict(frozen=True)

    sequence: int
    timestamp: datetime
    domain_id: str
    phase: AuditPhase
    status: AuditStatus
    detail: dict[str, Any] = Field(default_factory=dict)


class AuditReport(BaseModel):
    """Finalized audit log attached to a PortfolioResult."""

    orchestration_id: str
    start_time: datetime
    end_time: datetime
    duration_ms: int
    events: list[AuditEvent] = Field(default_factory=list)

    def for_domain(self, domain_id: str) -> list[AuditEvent]:
        return [e for e in self.events if e.domain_id == domain_id]


# === RESULT ===


class PortfolioResult(BaseModel):
    """Aggregated outcome of one portfolio run."""

    orchestration_id: str
    succeeded: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    rolled_back: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    cancelled: list[str] = Field(default_factory=list)
    records: dict[str, DeploymentRecord] = Field(default_factory=dict)
    alerts: list[str] = Field(default_factory=list)
    started_at: datetime
    ended_at: datetime
    duration_ms: int
    audit_log: AuditReport

    @property
    def total(self) -> int:
        return (
            len(self.succeeded)
            + len(self.failed)
            + len(self.rolled_back)
            + len(self.skipped)
            + len(self.cancelled)
        )

    @property
    def rollback_failed(self) -> list[str]:
        return [d for d, r in self.records.items() if r.state == "ROLLBACK_FAILED"]

    @property
    def all_succeeded(self) -> bool:
        return self.total > 0 and len(self.succeeded) == self.total

    @property
    def success_rate(self) -> float:
        """Percent of domains that succeeded."""
        if self.total == 0:
            return 0.0
        return round(len(self.succeeded) / self.total * 100, 1)


class PortfolioHealth(BaseModel):
    """Portfolio-level health derived from a PortfolioResult."""

    total: int
    succeeded: int
    percent_succeeded: float
    critical_path: list[str] = Field(default_factory=list)
    critical_path_status: Literal["healthy", "degraded", "blocked"] = "healthy"


# === DEPLOYER BOUNDARY ===


class DeployRequest(BaseModel):
    """Input to Deployer.deploy()."""

    domain: str
    environment: str
    hostname: str
    credentials: dict[str, str] = Field(default_factory=dict, repr=False)
    artifact: str | None = None


class DeployResult(BaseModel):
    """Output of Deployer.deploy()."""

    status: Literal["success", "failed"] = "success"
    url: str | None = None
    worker_id: str | None = None
    deployment_id: str | None = None
    message: str | None = None
