# src/orchestration/orchestrator.py - v1
"""Top-level entry point: resolve targets, deploy the portfolio, persist snapshots.

Lifecycle:
    created -> initialized -> running -> completed | failed
A finished orchestrator may run again. Every collaborator is injected;
nothing is read from module-level singletons.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any, Literal

from fleetdeploy.audit.auditor import DeploymentAuditor
from fleetdeploy.config.settings import Settings
from fleetdeploy.core.errors import (
    ConfigurationError,
    DomainNotFoundError,
    FleetDeployError,
    InvalidStateError,
    NoDomainsAvailableError,
)
from fleetdeploy.core.models import (
    DeploymentPlan,
    DomainTarget,
    PortfolioHealth,
    PortfolioResult,
    normalize_domain_id,
)
from fleetdeploy.deployment.base_deployer import BaseDeployer
from fleetdeploy.deployment.coordinator import DeploymentCoordinator, new_orchestration_id
from fleetdeploy.deployment.rollback import RollbackManager
from fleetdeploy.domains.resolver import (
    ENVIRONMENT_ROUTING,
    DiscoveryFn,
    DomainResolver,
    DomainSource,
    select_domain,
)
from fleetdeploy.logging.context import set_orchestration_context
from fleetdeploy.orchestration.cross_domain import CrossDomainCoordinator
from fleetdeploy.state.manager import StateManager

logger = logging.getLogger(__name__)

OrchestratorStatus = Literal["created", "initialized", "running", "completed", "failed"]

PORTFOLIO_PHASE = "portfolio"
DEFAULT_REQUIRED_CREDENTIALS: tuple[str, ...] = ("api_token", "account_id")


class MultiDomainOrchestrator:
    """Deploy one artifact to a portfolio of domains.

    Args:
        plan: What to deploy and how.
        deployer: Real deployer; may be None only for dry runs.
        settings: Source of retry budget, timeouts, state root and audit dir.
        resolver: Domain resolver; built from the plan's environment if omitted.
        state_manager: Checkpoint store; built from settings when persistence
            is enabled and none is given.
        rollback_manager: Shared rollback bookkeeping.
        domain_config: Domain configuration (any shape DomainResolver accepts).
        discovery: Async callable returning extra domains at initialize().
        dependencies: domain -> domains it depends on; enables staged deploys.
        persistence_enabled: Portfolio snapshots on/off. Defaults to settings,
            or to whether a state manager was given.
        required_credentials: Credential names that must be present.
    """

    def __init__(
        self,
        plan: DeploymentPlan,
        deployer: BaseDeployer | None = None,
        settings: Settings | None = None,
        resolver: DomainResolver | None = None,
        state_manager: StateManager | None = None,
        rollback_manager: RollbackManager | None = None,
        domain_config: DomainSource = None,
        discovery: DiscoveryFn | None = None,
        dependencies: dict[str, list[str]] | None = None,
        persistence_enabled: bool | None = None,
        required_credentials: Sequence[str] = DEFAULT_REQUIRED_CREDENTIALS,
    ) -> None:
        self._plan = plan
        self._deployer = deployer
        self._settings = settings
        self._resolver = resolver
        self._rollback = rollback_manager
        self._domain_config = domain_config
        self._discovery = discovery
        self._dependencies = dependencies or {}
        self._required_credentials = tuple(required_credentials)

        if persistence_enabled is None:
            persistence_enabled = (
                settings.persistence_enabled if settings is not None else state_manager is not None
            )
        self._persistence_enabled = persistence_enabled
        if state_manager is None and persistence_enabled and settings is not None:
            state_manager = StateManager(
                settings.state_root,
                max_history_items=settings.max_history_items,
                cache_enabled=settings.state_cache_enabled,
            )
        self._state = state_manager

        self._status: OrchestratorStatus = "created"
        self._orchestration_id = new_orchestration_id()
        self._targets: list[DomainTarget] = []
        self._coordinator: DeploymentCoordinator | None = None
        self._cross: CrossDomainCoordinator | None = None
        self._last_result: PortfolioResult | None = None

    # --- Properties ---

    @property
    def status(self) -> OrchestratorStatus:
        return self._status

    @property
    def orchestration_id(self) -> str:
        return self._orchestration_id

    @property
    def targets(self) -> list[DomainTarget]:
        return list(self._targets)

    @property
    def plan(self) -> DeploymentPlan:
        return self._plan

    @property
    def state_manager(self) -> StateManager | None:
        return self._state

    @property
    def coordinator(self) -> DeploymentCoordinator | None:
        return self._coordinator

    @property
    def last_result(self) -> PortfolioResult | None:
        return self._last_result

    # --- Lifecycle ---

    async def initialize(self) -> list[DomainTarget]:
        """Validate prerequisites and resolve the target set.

        Raises:
            ConfigurationError: Missing credentials or deployer, unknown environment,
                dependency cycle among the resolved domains.
            NoDomainsAvailableError: The resolved domain set is empty.
            InvalidStateError: Called while a deployment is running.
        """
        if self._status == "running":
            raise InvalidStateError("Cannot initialize while a deployment is running")

        plan = self._plan
        self._check_credentials()
        if self._deployer is None and not plan.dry_run:
            raise ConfigurationError("A deployer is required unless dry_run is set")
        if plan.environment not in ENVIRONMENT_ROUTING:
            raise ConfigurationError(
                f"Unknown environment '{plan.environment}' "
                f"(expected one of {', '.join(ENVIRONMENT_ROUTING)})"
            )

        resolver = self._resolver or DomainResolver(
            environment=plan.environment,
            service_name=self._settings.service_name if self._settings else "data-service",
        )
        if resolver.environment != plan.environment:
            raise ConfigurationError(
                f"Resolver environment '{resolver.environment}' does not match plan "
                f"environment '{plan.environment}'"
            )
        self._resolver = resolver

        configured = list(plan.domains) + resolver.load_configuration(self._domain_config)
        domains = await resolver.detect_domains(configured, self._discovery)
        if not domains:
            raise NoDomainsAvailableError(
                f"No domains configured or discovered for {plan.environment}"
            )
        self._targets = resolver.resolve_targets(domains)

        self._coordinator = DeploymentCoordinator(
            self._deployer,
            rollback_manager=self._rollback,
            state_manager=self._state if self._persistence_enabled else None,
            verify_policy=self._settings.retry_policy() if self._settings else None,
            deploy_timeout_s=self._settings.deploy_timeout_s if self._settings else None,
        )
        self._cross = CrossDomainCoordinator(self._coordinator, self._dependencies)
        if self._dependencies:
            # raises DependencyCycleError for a cyclic graph
            self._cross.build_stages([t.id for t in self._targets])

        check = self._coordinator.validate_configuration(plan)
        for warning in check["warnings"]:
            logger.warning("%s", warning)
        if not check["valid"]:
            raise ConfigurationError("; ".join(check["issues"]))

        self._status = "initialized"
        logger.info(
            "Orchestrator initialized: %d domain(s) in %s%s",
            len(self._targets),
            plan.environment,
            " (dry run)" if plan.dry_run else "",
        )
        return self.targets

    async def deploy(self, domain: str | None = None) -> PortfolioResult:
        """Deploy one domain (the first one when ``domain`` is None)."""
        self._require_ready()
        selected = select_domain([t.id for t in self._targets], domain_id=domain)
        return await self.deploy_portfolio(selected)

    async def deploy_portfolio(self, domains: Iterable[str] | None = None) -> PortfolioResult:
        """Deploy every resolved target, or the given subset.

        Per-domain failures are reported on the result, never raised.
        """
        self._require_ready()
        targets = self._select_targets(domains)
        plan = self._plan.model_copy(update={"domains": [t.id for t in targets]})
        persist = self._persistence_enabled and self._state is not None and not plan.dry_run

        self._orchestration_id = new_orchestration_id()
        set_orchestration_context(self._orchestration_id)
        auditor = DeploymentAuditor(self._orchestration_id)
        self._status = "running"
        logger.info("Deploying portfolio %s: %d domain(s)", self._orchestration_id, len(targets))

        try:
            if persist:
                await self._snapshot(plan, "running")
            if self._coordinator is None or self._cross is None:
                raise InvalidStateError("Orchestrator has no coordinator; call initialize() first")
            if self._dependencies:
                result = await self._cross.deploy(plan, targets, auditor)
            else:
                result = await self._coordinator.run(plan, targets, auditor)
        except BaseException:
            self._status = "failed"
            raise

        self._last_result = result
        self._status = "completed" if result.all_succeeded else "failed"
        if persist:
            await self._snapshot(plan, self._status, summary=self._summary(result))
        self._save_audit_log(auditor)
        return result

    def cancel(self) -> None:
        """Cooperatively cancel the running portfolio."""
        if self._coordinator is not None:
            self._coordinator.cancel()

    async def reset_state(self, phase_id: str | None = None, confirm: bool = False) -> list[str]:
        """Delete persisted state. Requires ``confirm=True``.

        Returns:
            Phase ids that were removed.
        """
        if not confirm:
            raise InvalidStateError("reset_state is destructive; pass confirm=True")
        if self._status == "running":
            raise InvalidStateError("Cannot reset state while a deployment is running")
        if self._state is None:
            return []
        if phase_id is not None:
            removed = await self._state.clear_state(phase_id)
            return [phase_id] if removed else []
        return await self._state.clear_all_state()

    # --- Reporting ---

    def portfolio_health(self, result: PortfolioResult | None = None) -> PortfolioHealth:
        result = result or self._last_result
        if result is None or self._cross is None:
            raise InvalidStateError("No portfolio result available")
        return self._cross.portfolio_health(result)

    def get_portfolio_stats(self) -> dict[str, Any]:
        return {
            "orchestration_id": self._orchestration_id,
            "status": self._status,
            "environment": self._plan.environment,
            "total_domains": len(self._targets),
            "domains": [t.id for t in self._targets],
            "dependencies": self._cross.dependencies if self._cross else dict(self._dependencies),
            "coordinator": self._coordinator.stats() if self._coordinator else None,
            "state": self._state.stats() if self._state else None,
            "last_result": self._summary(self._last_result) if self._last_result else None,
        }

    # --- Internals ---

    def _require_ready(self) -> None:
        if self._status == "created":
            raise InvalidStateError("Call initialize() before deploying")
        if self._status == "running":
            raise InvalidStateError("A deployment is already running")

    def _check_credentials(self) -> None:
        missing = [
            name for name in self._required_credentials if not self._plan.credentials.get(name)
        ]
        if not missing:
            return
        message = f"Missing credentials: {', '.join(missing)}"
        if self._plan.dry_run:
            logger.warning("%s (continuing: dry run)", message)
            return
        raise ConfigurationError(message)

    def _select_targets(self, domains: Iterable[str] | None) -> list[DomainTarget]:
        if domains is None:
            targets = list(self._targets)
        else:
            by_id = {t.id: t for t in self._targets}
            targets = []
            for raw in domains:
                domain = normalize_domain_id(raw)
                if domain not in by_id:
                    raise DomainNotFoundError(domain, list(by_id))
                if by_id[domain] not in targets:
                    targets.append(by_id[domain])
        if not targets:
            raise NoDomainsAvailableError("Nothing to deploy")
        return targets

    async def _snapshot(
        self,
        plan: DeploymentPlan,
        status: str,
        summary: dict[str, Any] | None = None,
    ) -> None:
        if self._state is None:
            raise InvalidStateError("Portfolio snapshot requested without a state manager")
        payload = {
            "orchestration_id": self._orchestration_id,
            "status": status,
            "environment": plan.environment,
            "domains": list(plan.domains),
            "dry_run": plan.dry_run,
            "summary": summary,
        }
        try:
            await self._state.save_state(PORTFOLIO_PHASE, payload)
        except (FleetDeployError, OSError) as e:
            logger.warning("Portfolio snapshot (%s) failed: %s", status, e)

    @staticmethod
    def _summary(result: PortfolioResult) -> dict[str, Any]:
        return {
            "succeeded": list(result.succeeded),
            "failed": list(result.failed),
            "rolled_back": list(result.rolled_back),
            "skipped": list(result.skipped),
            "cancelled": list(result.cancelled),
            "rollback_failed": result.rollback_failed,
            "success_rate": result.success_rate,
            "duration_ms": result.duration_ms,
        }

    def _save_audit_log(self, auditor: DeploymentAuditor) -> None:
        audit_dir: Path | None = self._settings.audit_dir if self._settings else None
        if audit_dir is None:
            return
        try:
            auditor.save(audit_dir / f"{self._orchestration_id}.jsonl")
        except OSError as e:
            logger.warning("Could not write audit log: %s", e)
