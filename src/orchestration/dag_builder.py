# src/orchestration/dag_builder.py - v1
"""Stage domains by their cross-domain dependencies.

Produces a leveled topological order: every domain in stage N depends
only on domains in stages < N, so a stage can deploy concurrently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from fleetdeploy.core.errors import DependencyCycleError

logger = logging.getLogger(__name__)


@dataclass
class ExecutionPlan:
    """Ordered deployment stages.

    Stages run sequentially. Domains inside one stage have no mutual
    dependencies.
    """

    stages: list[list[str]] = field(default_factory=list)
    total_domains: int = 0

    @property
    def flat_order(self) -> list[str]:
        return [domain for stage in self.stages for domain in stage]

    def stage_of(self, domain: str) -> int | None:
        for idx, stage in enumerate(self.stages):
            if domain in stage:
                return idx
        return None


def prune_dependencies(
    domains: list[str], dependencies: dict[str, list[str]]
) -> dict[str, list[str]]:
    """Restrict the dependency map to ``domains``.

    Edges to domains outside the portfolio are dropped with a debug log.
    """
    members = set(domains)
    pruned: dict[str, list[str]] = {d: [] for d in domains}
    for domain, deps in dependencies.items():
        if domain not in members:
            continue
        for dep in deps:
            if dep == domain:
                raise DependencyCycleError(f"Domain '{domain}' depends on itself")
            if dep not in members:
                logger.debug("Ignoring dependency %s -> %s (not in portfolio)", domain, dep)
                continue
            if dep not in pruned[domain]:
                pruned[domain].append(dep)
    return pruned


def build_stages(domains: list[str], dependencies: dict[str, list[str]]) -> ExecutionPlan:
    """Kahn's algorithm with level detection.

    Stage order follows the order of ``domains`` so runs are deterministic.

    Raises:
        DependencyCycleError: The graph restricted to ``domains`` has a cycle.
    """
    if not domains:
        return ExecutionPlan()

    deps = prune_dependencies(domains, dependencies)
    position = {d: i for i, d in enumerate(domains)}

    in_degree: dict[str, int] = {d: len(deps[d]) for d in domains}
    dependents: dict[str, list[str]] = {d: [] for d in domains}
    for domain, requires in deps.items():
        for dep in requires:
            dependents[dep].append(domain)

    stages: list[list[str]] = []
    ready = [d for d in domains if in_degree[d] == 0]
    processed = 0

    while ready:
        stages.append(ready)
        next_ready: list[str] = []
        for domain in ready:
            processed += 1
            for dependent in dependents[domain]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    next_ready.append(dependent)
        ready = sorted(next_ready, key=position.__getitem__)

    if processed != len(domains):
        remaining = [d for d in domains if in_degree[d] > 0]
        raise DependencyCycleError(f"Dependency cycle detected involving domains: {remaining}")

    plan = ExecutionPlan(stages=stages, total_domains=processed)
    logger.info("Dependency stages: %d domain(s) in %d stage(s)", plan.total_domains, len(plan.stages))
    return plan
