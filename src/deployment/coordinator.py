# src/deployment/coordinator.py - v1
"""Bounded-concurrency per-domain deployment.

Each domain walks VALIDATE -> DEPLOY -> VERIFY independently. At most
``plan.parallel_deployments`` domains are in flight: that many worker
tasks pull targets from a FIFO queue. A failing domain is rolled back
(when enabled) and never affects its siblings.

Terminal state per domain:
  SUCCEEDED        all three phases passed
  FAILED           validation failed, or DEPLOY/VERIFY failed without rollback
  ROLLED_BACK      DEPLOY/VERIFY failed, restore succeeded
  ROLLBACK_FAILED  DEPLOY/VERIFY failed, restore failed (operator alert)
  CANCELLED        fail-fast or cancel() stopped it before completion
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from fleetdeploy.audit.auditor import PORTFOLIO_DOMAIN, DeploymentAuditor
from fleetdeploy.core.errors import (
    ConfigurationError,
    CorruptedStateError,
    DeploymentError,
    FleetDeployError,
    RollbackFailedError,
)
from fleetdeploy.core.models import (
    FAILURE_STATES,
    DeploymentPlan,
    DeploymentRecord,
    DeploymentState,
    DeployRequest,
    DomainTarget,
    PortfolioResult,
    StateSnapshot,
    utc_now,
)
from fleetdeploy.deployment.base_deployer import BaseDeployer
from fleetdeploy.deployment.noop_deployer import NoopDeployer
from fleetdeploy.deployment.retry import RetryCancelled, RetryExhausted, RetryPolicy, retry_probe
from fleetdeploy.deployment.rollback import RollbackManager
from fleetdeploy.domains.resolver import DomainResolver
from fleetdeploy.logging.context import set_domain_context, set_orchestration_context, set_phase
from fleetdeploy.logging.logger import surface_alert
from fleetdeploy.state.manager import StateManager

logger = logging.getLogger(__name__)

RECOMMENDED_MAX_PARALLEL = 10
RATE_LIMIT_WARN_PARALLEL = 5

# (target, plan) -> list of violation messages; empty means valid.
DomainValidator = Callable[[DomainTarget, DeploymentPlan], Iterable[str]]


def _stamp() -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def new_orchestration_id() -> str:
    return f"orchestration-{_stamp()}"


def new_attempt_id(domain_id: str) -> str:
    return f"deploy-{domain_id}-{_stamp()}"


def domain_phase_id(domain_id: str) -> str:
    return f"domain-{domain_id}"


def rollback_alert(domain_id: str, error: str | None) -> str:
    return f"ROLLBACK FAILED for {domain_id}: {error or 'unknown error'}. Manual intervention required."


_BUCKETS: dict[str, str] = {
    "SUCCEEDED": "succeeded",
    "FAILED": "failed",
    "ROLLBACK_FAILED": "failed",
    "ROLLED_BACK": "rolled_back",
    "SKIPPED": "skipped",
    "CANCELLED": "cancelled",
}


def build_portfolio_result(
    orchestration_id: str,
    domains: list[str],
    records: dict[str, DeploymentRecord],
    auditor: DeploymentAuditor,
    started_at: datetime,
) -> PortfolioResult:
    """Bucket records by terminal state and attach the finalized audit log.

    Every requested domain lands in exactly one bucket. A domain without a
    terminal record counts as failed.
    """
    buckets: dict[str, list[str]] = {name: [] for name in set(_BUCKETS.values())}
    alerts: list[str] = []
    for domain in domains:
        record = records.get(domain)
        state = record.state if record is not None else "FAILED"
        buckets[_BUCKETS.get(state, "failed")].append(domain)
        if state == "ROLLBACK_FAILED" and record is not None:
            alerts.append(rollback_alert(domain, record.error))

    ended_at = utc_now()
    return PortfolioResult(
        orchestration_id=orchestration_id,
        succeeded=buckets["succeeded"],
        failed=buckets["failed"],
        rolled_back=buckets["rolled_back"],
        skipped=buckets["skipped"],
        cancelled=buckets["cancelled"],
        records={d: records[d] for d in domains if d in records},
        alerts=alerts,
        started_at=started_at,
        ended_at=ended_at,
        duration_ms=int((ended_at - started_at).total_seconds() * 1000),
        audit_log=auditor.finalize(),
    )


@dataclass
class _Run:
    """Per-execute() collaborators and shared flags."""

    plan: DeploymentPlan
    deployer: BaseDeployer
    auditor: DeploymentAuditor
    records: dict[str, DeploymentRecord]
    rollback: RollbackManager | None = None
    state: StateManager | None = None
    halted: asyncio.Event = field(default_factory=asyncio.Event)


class DeploymentCoordinator:
    """Run the per-domain state machine for a set of targets.

    Args:
        deployer: Real deployer. Ignored (replaced by NoopDeployer) in dry-run.
        auditor: Shared auditor; a fresh one per run() when omitted.
        rollback_manager: Defaults to a RollbackManager over ``deployer``.
        state_manager: Checkpoint store for ``domain-<id>`` phases.
        verify_policy: VERIFY retry budget.
        deploy_timeout_s: Upper bound on one Deployer.deploy() call.
        validators: Extra VALIDATE checks, run after the built-in ones.
    """

    def __init__(
        self,
        deployer: BaseDeployer | None,
        auditor: DeploymentAuditor | None = None,
        rollback_manager: RollbackManager | None = None,
        state_manager: StateManager | None = None,
        verify_policy: RetryPolicy | None = None,
        deploy_timeout_s: float | None = None,
        validators: Iterable[DomainValidator] = (),
    ) -> None:
        self._deployer = deployer
        self._auditor = auditor
        self._rollback = rollback_manager
        self._state = state_manager
        self._verify_policy = verify_policy or RetryPolicy()
        self._deploy_timeout = deploy_timeout_s
        self._validators = list(validators)
        self._cancel_event = asyncio.Event()
        self._last_plan: DeploymentPlan | None = None
        self._active = 0
        self._max_active = 0
        self._runs = 0
        self._processed = 0

    @property
    def verify_policy(self) -> RetryPolicy:
        return self._verify_policy

    @property
    def max_concurrency_observed(self) -> int:
        return self._max_active

    # --- Entry points ---

    async def run(
        self,
        plan: DeploymentPlan,
        targets: list[DomainTarget],
        auditor: DeploymentAuditor | None = None,
    ) -> PortfolioResult:
        """Deploy every target and aggregate a PortfolioResult."""
        self.reset_cancel()
        if auditor is None:
            auditor = self._auditor if self._auditor is not None else DeploymentAuditor()
        if not auditor.orchestration_id:
            auditor.orchestration_id = new_orchestration_id()
        set_orchestration_context(auditor.orchestration_id)

        started_at = utc_now()
        domains = [t.id for t in targets]
        auditor.record(
            PORTFOLIO_DOMAIN,
            "PORTFOLIO",
            "started",
            {"domains": domains, "environment": plan.environment, "dry_run": plan.dry_run},
        )
        records = await self.execute(plan, targets, auditor)
        result_status = "completed" if all(r.state == "SUCCEEDED" for r in records.values()) else "failed"
        auditor.record(PORTFOLIO_DOMAIN, "PORTFOLIO", result_status, {"total": len(domains)})
        result = build_portfolio_result(auditor.orchestration_id, domains, records, auditor, started_at)

        logger.info(
            "Portfolio complete: %d succeeded, %d failed, %d rolled back, %d cancelled (%dms)",
            len(result.succeeded),
            len(result.failed),
            len(result.rolled_back),
            len(result.cancelled),
            result.duration_ms,
        )
        return result

    async def execute(
        self,
        plan: DeploymentPlan,
        targets: list[DomainTarget],
        auditor: DeploymentAuditor,
    ) -> dict[str, DeploymentRecord]:
        """Run the worker pool over ``targets``. Returns one record per target."""
        deployer = self._select_deployer(plan)
        run = _Run(
            plan=plan,
            deployer=deployer,
            auditor=auditor,
            records={t.id: DeploymentRecord(domain_id=t.id, attempt_id=new_attempt_id(t.id)) for t in targets},
        )
        if not plan.dry_run:
            run.state = self._state
            if plan.rollback_enabled:
                run.rollback = self._rollback or RollbackManager(deployer, self._state)
        self._last_plan = plan
        self._runs += 1

        queue: asyncio.Queue[DomainTarget] = asyncio.Queue()
        for target in targets:
            queue.put_nowait(target)

        worker_count = min(plan.parallel_deployments, len(targets))
        logger.info(
            "Deploying %d domain(s) with %d worker(s)%s",
            len(targets),
            worker_count,
            " (dry run)" if plan.dry_run else "",
        )
        workers = [asyncio.create_task(self._worker(run, queue)) for _ in range(worker_count)]
        try:
            await asyncio.gather(*workers)
        except asyncio.CancelledError:
            for worker in workers:
                worker.cancel()
            raise
        return run.records

    def cancel(self) -> None:
        """Request cooperative cancellation of the current run."""
        logger.warning("Cancellation requested")
        self._cancel_event.set()

    def reset_cancel(self) -> None:
        self._cancel_event.clear()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # --- Introspection ---

    def stats(self) -> dict[str, Any]:
        plan = self._last_plan
        return {
            "deployer": type(self._deployer).__name__ if self._deployer else None,
            "parallel_deployments": plan.parallel_deployments if plan else None,
            "dry_run": plan.dry_run if plan else None,
            "verify_policy": self._verify_policy.as_dict(),
            "deploy_timeout_s": self._deploy_timeout,
            "validators": len(self._validators),
            "runs": self._runs,
            "domains_processed": self._processed,
            "max_concurrency_observed": self._max_active,
        }

    def validate_configuration(self, plan: DeploymentPlan) -> dict[str, Any]:
        """Sanity-check a plan against this coordinator."""
        issues: list[str] = []
        warnings: list[str] = []
        if self._deployer is None and not plan.dry_run:
            issues.append("no deployer configured for a non-dry-run plan")
        if plan.parallel_deployments > RECOMMENDED_MAX_PARALLEL:
            warnings.append(
                f"parallel_deployments exceeds recommended maximum of {RECOMMENDED_MAX_PARALLEL}"
            )
        elif plan.parallel_deployments > RATE_LIMIT_WARN_PARALLEL:
            warnings.append("High parallelism may cause rate limiting")
        if self._deploy_timeout is not None and self._deploy_timeout <= 0:
            issues.append("deploy_timeout_s must be positive")
        return {"valid": not issues, "issues": issues, "warnings": warnings}

    # --- Worker pool ---

    def _select_deployer(self, plan: DeploymentPlan) -> BaseDeployer:
        if plan.dry_run:
            return NoopDeployer()
        if self._deployer is None:
            raise ConfigurationError("A deployer is required unless dry_run is set")
        return self._deployer

    async def _worker(self, run: _Run, queue: asyncio.Queue[DomainTarget]) -> None:
        while True:
            try:
                target = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            record = run.records[target.id]
            try:
                if self._cancel_event.is_set():
                    await self._cancel_queued(run, record, "cancel requested")
                elif run.halted.is_set():
                    await self._cancel_queued(run, record, "fail-fast after an earlier failure")
                else:
                    await self._deploy_domain(run, target, record)
                    if run.plan.fail_fast and record.state in FAILURE_STATES:
                        logger.error("Fail-fast: cancelling queued domains after %s", target.id)
                        run.halted.set()
            finally:
                self._processed += 1
                queue.task_done()

    async def _cancel_queued(self, run: _Run, record: DeploymentRecord, reason: str) -> None:
        run.auditor.record(record.domain_id, "DEPLOY", "cancelled", {"reason": reason})
        record.error = reason
        await self._finish(run, record, "CANCELLED")

    # --- Per-domain state machine ---

    async def _deploy_domain(self, run: _Run, target: DomainTarget, record: DeploymentRecord) -> None:
        set_domain_context(target.id)
        self._active += 1
        self._max_active = max(self._max_active, self._active)
        try:
            record.started_at = utc_now()
            await self._load_checkpoint(run, target.id)

            # VALIDATE
            await self._enter(run, record, "VALIDATING", "VALIDATE")
            run.auditor.record(target.id, "VALIDATE", "started")
            violations = self._validate(target, run.plan)
            if violations:
                record.error = "; ".join(violations)
                run.auditor.record(target.id, "VALIDATE", "failed", {"violations": violations})
                await self._finish(run, record, "FAILED")
                return
            run.auditor.record(target.id, "VALIDATE", "completed")

            if await self._stop_at_boundary(run, record, "DEPLOY"):
                return

            # DEPLOY
            await self._enter(run, record, "DEPLOYING", "DEPLOY")
            run.auditor.record(
                target.id,
                "DEPLOY",
                "started",
                {"environment": target.environment, "hostname": target.hostname, "artifact": run.plan.artifact},
            )
            if run.rollback is not None:
                try:
                    await run.rollback.create_rollback_point(target, record.attempt_id)
                except Exception as e:
                    record.error = f"could not capture rollback point: {e}"
                    run.auditor.record(target.id, "DEPLOY", "failed", {"error": record.error})
                    await self._finish(run, record, "FAILED")
                    return

            try:
                await self._deploy_phase(run, target, record)
                if await self._stop_at_boundary(run, record, "VERIFY"):
                    return
                await self._verify_phase(run, target, record)
            except RetryCancelled as e:
                record.verify_attempts = e.attempts
                record.error = "cancel requested during VERIFY"
                run.auditor.record(target.id, "VERIFY", "cancelled", {"attempts": e.attempts})
                await self._finish(run, record, "CANCELLED")
                return
            except DeploymentError as e:
                await self._handle_failure(run, target, record, e)
                return

            await self._finish(run, record, "SUCCEEDED")
        finally:
            self._active -= 1
            set_domain_context(None)

    def _validate(self, target: DomainTarget, plan: DeploymentPlan) -> list[str]:
        violations: list[str] = []
        if not DomainResolver.is_valid_domain_format(target.id):
            violations.append(f"invalid domain format: {target.id}")
        if target.routing is None or not target.routing.strategies:
            violations.append("no routing policy for target")
        if target.environment != plan.environment:
            violations.append(
                f"target environment {target.environment} does not match plan environment {plan.environment}"
            )
        for validator in self._validators:
            try:
                violations.extend(validator(target, plan) or ())
            except Exception as e:
                violations.append(f"validator {getattr(validator, '__name__', validator)} raised: {e}")
        return violations

    async def _deploy_phase(self, run: _Run, target: DomainTarget, record: DeploymentRecord) -> None:
        request = DeployRequest(
            domain=target.id,
            environment=target.environment,
            hostname=target.hostname,
            credentials=run.plan.credentials,
            artifact=run.plan.artifact,
        )
        try:
            if self._deploy_timeout:
                result = await asyncio.wait_for(run.deployer.deploy(request), timeout=self._deploy_timeout)
            else:
                result = await run.deployer.deploy(request)
        except asyncio.TimeoutError as e:
            raise DeploymentError(target.id, "DEPLOY", f"timed out after {self._deploy_timeout}s") from e
        except DeploymentError:
            raise
        except Exception as e:
            raise DeploymentError(target.id, "DEPLOY", f"{type(e).__name__}: {e}") from e

        if result.status != "success":
            raise DeploymentError(target.id, "DEPLOY", result.message or "deployer reported failure")

        record.url = result.url
        record.worker_id = result.worker_id
        record.deployment_id = result.deployment_id
        run.auditor.record(
            target.id,
            "DEPLOY",
            "completed",
            {"url": result.url, "deployment_id": result.deployment_id},
        )

    async def _verify_phase(self, run: _Run, target: DomainTarget, record: DeploymentRecord) -> None:
        await self._enter(run, record, "VERIFYING", "VERIFY")
        run.auditor.record(target.id, "VERIFY", "started", {"url": record.url})

        def on_retry(attempt: int, delay: float, reason: str) -> None:
            record.verify_attempts = attempt
            run.auditor.record(
                target.id,
                "VERIFY",
                "retry",
                {"attempt": attempt, "next_delay_s": round(delay, 3), "reason": reason},
            )

        try:
            attempts = await retry_probe(
                lambda: run.deployer.health_check(target, record.url),
                self._verify_policy,
                label=f"Health check for {target.id}",
                cancel_event=self._cancel_event,
                on_retry=on_retry,
            )
        except RetryExhausted as e:
            record.verify_attempts = e.attempts
            raise DeploymentError(
                target.id, "VERIFY", f"health check failed after {e.attempts} attempt(s)"
            ) from e

        record.verify_attempts = attempts
        run.auditor.record(target.id, "VERIFY", "completed", {"attempts": attempts})

    async def _handle_failure(
        self,
        run: _Run,
        target: DomainTarget,
        record: DeploymentRecord,
        error: DeploymentError,
    ) -> None:
        record.error = str(error)
        run.auditor.record(target.id, error.phase, "failed", {"error": str(error)})  # type: ignore[arg-type]
        logger.error("%s", error)

        if run.rollback is None:
            await self._finish(run, record, "FAILED")
            return

        await self._enter(run, record, "ROLLING_BACK", "ROLLBACK")
        run.auditor.record(target.id, "ROLLBACK", "started", {"reason": str(error)})
        try:
            point = await run.rollback.rollback(target.id)
        except RollbackFailedError as rb:
            record.error = f"{error}; {rb}"
            run.auditor.record(target.id, "ROLLBACK", "failed", {"error": str(rb)})
            surface_alert(rollback_alert(target.id, str(rb)), domain_id=target.id, attempt_id=record.attempt_id)
            await self._finish(run, record, "ROLLBACK_FAILED")
            return

        run.auditor.record(target.id, "ROLLBACK", "completed", {"restored_attempt": point.attempt_id})
        await self._finish(run, record, "ROLLED_BACK")

    async def _stop_at_boundary(self, run: _Run, record: DeploymentRecord, next_phase: str) -> bool:
        if not self._cancel_event.is_set():
            return False
        record.error = f"cancel requested before {next_phase}"
        run.auditor.record(record.domain_id, "DEPLOY", "cancelled", {"before": next_phase})
        await self._finish(run, record, "CANCELLED")
        return True

    # --- Transitions + checkpoints ---

    async def _enter(self, run: _Run, record: DeploymentRecord, state: DeploymentState, phase: str) -> None:
        record.state = state
        record.phases.append(state)
        set_phase(phase)
        logger.debug("%s -> %s", record.domain_id, state)
        await self._checkpoint(run, record)

    async def _finish(self, run: _Run, record: DeploymentRecord, state: DeploymentState) -> None:
        record.state = state
        record.ended_at = utc_now()
        if record.started_at is None:
            record.started_at = record.ended_at
        set_phase(None)
        level = logging.INFO if state == "SUCCEEDED" else logging.WARNING
        logger.log(level, "%s finished: %s", record.domain_id, state)
        await self._checkpoint(run, record)

    async def _checkpoint(self, run: _Run, record: DeploymentRecord) -> None:
        if run.state is None:
            return
        try:
            await run.state.save_state(domain_phase_id(record.domain_id), record.model_dump(mode="json"))
        except (FleetDeployError, OSError) as e:
            logger.warning("Checkpoint for %s failed: %s", record.domain_id, e)

    async def _load_checkpoint(self, run: _Run, domain_id: str) -> StateSnapshot | None:
        if run.state is None:
            return None
        phase_id = domain_phase_id(domain_id)
        try:
            try:
                snapshot = await run.state.load_state(phase_id)
            except CorruptedStateError as e:
                logger.warning("%s; recovering from history", e)
                snapshot = await run.state.recover_state(phase_id)
        except (FleetDeployError, OSError) as e:
            logger.warning("Could not load checkpoint for %s: %s", domain_id, e)
            return None
        if snapshot is not None:
            logger.info(
                "Previous checkpoint for %s: %s (attempt %s)",
                domain_id,
                snapshot.payload.get("state"),
                snapshot.payload.get("attempt_id"),
            )
        return snapshot
