# src/orchestration/cross_domain.py - v1
"""Dependency-aware portfolio deployment.

Domains are grouped into stages (see dag_builder). Each stage is handed
to the DeploymentCoordinator under the plan's concurrency bound. A domain
whose dependency did not succeed is SKIPPED without being attempted.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

import networkx as nx

from fleetdeploy.audit.auditor import PORTFOLIO_DOMAIN, DeploymentAuditor
from fleetdeploy.core.models import (
    FAILURE_STATES,
    DeploymentPlan,
    DeploymentRecord,
    DomainTarget,
    PortfolioHealth,
    PortfolioResult,
    normalize_domain_id,
    utc_now,
)
from fleetdeploy.deployment.coordinator import (
    DeploymentCoordinator,
    build_portfolio_result,
    new_attempt_id,
    new_orchestration_id,
)
from fleetdeploy.logging.context import set_orchestration_context
from fleetdeploy.orchestration.dag_builder import ExecutionPlan, build_stages, prune_dependencies

logger = logging.getLogger(__name__)


class CrossDomainCoordinator:
    """Deploy a portfolio stage by stage following declared dependencies.

    Args:
        coordinator: Runs each stage.
        dependencies: domain -> domains it depends on.
    """

    def __init__(
        self,
        coordinator: DeploymentCoordinator,
        dependencies: dict[str, list[str]] | None = None,
    ) -> None:
        self._coordinator = coordinator
        self._deps: dict[str, list[str]] = {}
        for domain, requires in (dependencies or {}).items():
            self.add_dependency(domain, requires)

    @property
    def dependencies(self) -> dict[str, list[str]]:
        return {d: list(r) for d, r in self._deps.items()}

    def add_dependency(self, domain: str, depends_on: str | Iterable[str]) -> None:
        """Declare that ``domain`` deploys only after ``depends_on`` succeeded."""
        key = normalize_domain_id(domain)
        requires = [depends_on] if isinstance(depends_on, str) else list(depends_on)
        bucket = self._deps.setdefault(key, [])
        for dep in requires:
            dep_id = normalize_domain_id(dep)
            if dep_id not in bucket:
                bucket.append(dep_id)

    def build_stages(self, domains: list[str]) -> ExecutionPlan:
        return build_stages(domains, self._deps)

    async def deploy(
        self,
        plan: DeploymentPlan,
        targets: list[DomainTarget],
        auditor: DeploymentAuditor | None = None,
    ) -> PortfolioResult:
        """Run every stage. Returns one PortfolioResult for the whole portfolio."""
        self._coordinator.reset_cancel()
        if auditor is None:
            auditor = DeploymentAuditor(new_orchestration_id())
        set_orchestration_context(auditor.orchestration_id)

        domains = [t.id for t in targets]
        by_id = {t.id: t for t in targets}
        stages = self.build_stages(domains)
        deps = prune_dependencies(domains, self._deps)

        started_at = utc_now()
        auditor.record(
            PORTFOLIO_DOMAIN,
            "PORTFOLIO",
            "started",
            {"domains": domains, "stages": stages.stages, "dry_run": plan.dry_run},
        )

        records: dict[str, DeploymentRecord] = {}
        halted = False
        for idx, stage in enumerate(stages.stages):
            runnable: list[DomainTarget] = []
            for domain in stage:
                if halted or self._coordinator.cancelled:
                    reason = "fail-fast after an earlier failure" if halted else "cancel requested"
                    records[domain] = self._unattempted(domain, "CANCELLED", reason)
                    auditor.record(domain, "DEPLOY", "cancelled", {"reason": reason})
                    continue
                blocked = [dep for dep in deps[domain] if records[dep].state != "SUCCEEDED"]
                if blocked:
                    reason = f"dependencies not deployed: {', '.join(blocked)}"
                    records[domain] = self._unattempted(domain, "SKIPPED", reason)
                    auditor.record(domain, "DEPLOY", "skipped", {"blocked_by": blocked})
                    logger.warning("Skipping %s: %s", domain, reason)
                    continue
                runnable.append(by_id[domain])

            if runnable:
                logger.info("Stage %d/%d: %s", idx + 1, len(stages.stages), [t.id for t in runnable])
                records.update(await self._coordinator.execute(plan, runnable, auditor))

            if plan.fail_fast and any(records[d].state in FAILURE_STATES for d in stage):
                halted = True

        status = "completed" if all(r.state == "SUCCEEDED" for r in records.values()) else "failed"
        auditor.record(PORTFOLIO_DOMAIN, "PORTFOLIO", status, {"total": len(domains)})
        return build_portfolio_result(auditor.orchestration_id, domains, records, auditor, started_at)

    def portfolio_health(self, result: PortfolioResult) -> PortfolioHealth:
        """Percent succeeded plus the status of the longest dependency chain."""
        domains = list(result.records)
        graph = nx.DiGraph()
        graph.add_nodes_from(domains)
        for domain, requires in prune_dependencies(domains, self._deps).items():
            for dep in requires:
                graph.add_edge(dep, domain)

        critical_path = nx.dag_longest_path(graph) if graph.number_of_nodes() else []
        states = {d: r.state for d, r in result.records.items()}
        if result.all_succeeded:
            status = "healthy"
        elif any(states.get(d) != "SUCCEEDED" for d in critical_path):
            status = "blocked"
        else:
            status = "degraded"

        return PortfolioHealth(
            total=result.total,
            succeeded=len(result.succeeded),
            percent_succeeded=result.success_rate,
            critical_path=critical_path,
            critical_path_status=status,
        )

    @staticmethod
    def _unattempted(domain: str, state: str, reason: str) -> DeploymentRecord:
        now = utc_now()
        return DeploymentRecord(
            domain_id=domain,
            attempt_id=new_attempt_id(domain),
            state=state,  # type: ignore[arg-type]
            started_at=now,
            ended_at=now,
            error=reason,
        )
