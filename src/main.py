# src/main.py - v1
"""CLI entry point: deploy, history, clear-state commands.

Usage:
    fleetdeploy deploy [--domain D | --all-domains] [options]
    fleetdeploy history <phase> [--limit N]
    fleetdeploy clear-state [--phase P] --yes

Exit codes (deploy):
    strict       0 iff every targeted domain succeeded
    best-effort  0 iff at least one domain succeeded and no rollback failed
    130 on interrupt, 1 on any fatal error.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from fleetdeploy.config.settings import Settings, load_settings
from fleetdeploy.core.models import DeploymentPlan, PortfolioResult
from fleetdeploy.deployment.base_deployer import BaseDeployer
from fleetdeploy.deployment.command_deployer import CommandDeployer
from fleetdeploy.logging.logger import setup_logging
from fleetdeploy.orchestration.orchestrator import MultiDomainOrchestrator
from fleetdeploy.state.manager import StateManager
from fleetdeploy.version import __version__

logger = logging.getLogger(__name__)

EXIT_POLICIES = ("strict", "best-effort")


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        settings = load_settings()
    except Exception as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 1

    setup_logging(
        level="DEBUG" if args.verbose else settings.log_level,
        log_format=args.log_format or settings.log_format,
        log_file=settings.log_file,
        rotation=settings.log_rotation,
        retention=settings.log_retention,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    try:
        return asyncio.run(args.func(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return 1


def exit_code_for(result: PortfolioResult, policy: str = "strict") -> int:
    """Map a PortfolioResult to a process exit code."""
    if policy == "best-effort":
        return 0 if result.succeeded and not result.rollback_failed else 1
    return 0 if result.all_succeeded else 1


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="fleetdeploy",
        description=f"fleetdeploy v{__version__} - multi-domain deployment orchestrator",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-format", choices=("text", "json"), default=None,
        help="Log output format (default: from settings)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- deploy ---
    p_deploy = subparsers.add_parser("deploy", help="Deploy to one or more domains")
    target = p_deploy.add_mutually_exclusive_group()
    target.add_argument("--domain", default=None, help="Deploy this configured domain only")
    target.add_argument(
        "--all-domains", action="store_true",
        help="Deploy every configured domain",
    )
    p_deploy.add_argument(
        "-e", "--environment", default=None,
        help="production, staging or development (default: from settings)",
    )
    p_deploy.add_argument("--dry-run", action="store_true", help="Simulate without deploying")
    p_deploy.add_argument(
        "--parallel", type=int, default=None,
        help="Maximum concurrent domain deployments",
    )
    p_deploy.add_argument(
        "--fail-fast", action="store_true",
        help="Cancel queued domains after the first failure",
    )
    p_deploy.add_argument(
        "--no-rollback", action="store_true",
        help="Do not roll back failed domains",
    )
    p_deploy.add_argument(
        "--exit-policy", choices=EXIT_POLICIES, default="strict",
        help="How per-domain outcomes map to the exit code (default: strict)",
    )
    p_deploy.add_argument(
        "--config", type=Path, default=None,
        help="Domain configuration JSON (default: from settings)",
    )
    p_deploy.add_argument("--artifact", default=None, help="Artifact to deploy")
    p_deploy.set_defaults(func=_cmd_deploy)

    # --- history ---
    p_history = subparsers.add_parser("history", help="Show saved state history for a phase")
    p_history.add_argument("phase", help="Phase id (e.g. portfolio, domain-example.com)")
    p_history.add_argument("--limit", type=int, default=None, help="Show at most N entries")
    p_history.set_defaults(func=_cmd_history)

    # --- clear-state ---
    p_clear = subparsers.add_parser("clear-state", help="Delete persisted state")
    p_clear.add_argument("--phase", default=None, help="Only this phase (default: all)")
    p_clear.add_argument("--yes", action="store_true", help="Confirm the deletion")
    p_clear.set_defaults(func=_cmd_clear_state)

    return parser


async def _cmd_deploy(args: argparse.Namespace, settings: Settings) -> int:
    """Resolve targets and deploy them."""
    config_path: Path | None = args.config or settings.domains_config_path
    # --domain selects among configured domains; it never adds one
    plan = settings.deployment_plan(
        [],
        environment=args.environment,
        parallel_deployments=args.parallel,
        dry_run=True if args.dry_run else None,
        fail_fast=True if args.fail_fast else None,
        rollback_enabled=False if args.no_rollback else None,
        artifact=args.artifact,
    )

    orchestrator = MultiDomainOrchestrator(
        plan,
        deployer=_build_deployer(settings, plan),
        settings=settings,
        domain_config=config_path,
        dependencies=_load_dependencies(config_path),
    )
    await orchestrator.initialize()

    if args.all_domains:
        result = await orchestrator.deploy_portfolio()
    else:
        result = await orchestrator.deploy(args.domain)

    _print_result_summary(result)
    return exit_code_for(result, args.exit_policy)


async def _cmd_history(args: argparse.Namespace, settings: Settings) -> int:
    """List history snapshots of one phase, newest first."""
    manager = StateManager(settings.state_root, max_history_items=settings.max_history_items)
    entries = await manager.get_state_history(args.phase, limit=args.limit)
    if not entries:
        print(f"No history for phase '{args.phase}'")
        return 0

    print(f"\nHistory for {args.phase} ({len(entries)} entries):")
    for entry in entries:
        print(
            f"  {entry.saved_at.isoformat()}  {entry.version_id}  "
            f"{entry.checksum[:12]}  {entry.size}B"
        )
    return 0


async def _cmd_clear_state(args: argparse.Namespace, settings: Settings) -> int:
    """Delete persisted state through the orchestrator's confirmation gate."""
    orchestrator = MultiDomainOrchestrator(
        DeploymentPlan(environment=settings.environment),
        settings=settings,
        persistence_enabled=True,
    )
    if not args.yes:
        logger.error("clear-state is destructive; re-run with --yes")
        return 1
    removed = await orchestrator.reset_state(args.phase, confirm=True)
    print(f"Removed {len(removed)} phase(s): {', '.join(removed) or 'none'}")
    return 0


def _build_deployer(settings: Settings, plan: DeploymentPlan) -> BaseDeployer | None:
    if not settings.deploy_command:
        if not plan.dry_run:
            logger.error("FLEETDEPLOY_DEPLOY_COMMAND is not set")
        return None
    return CommandDeployer(
        settings.deploy_command,
        restore_command=settings.restore_command,
        describe_command=settings.describe_command,
        health_check_path=settings.health_check_path,
        health_check_timeout_s=settings.health_check_timeout_s,
    )


def _load_dependencies(config_path: Path | None) -> dict[str, list[str]] | None:
    """Read the optional ``dependencies`` block of the domain config file."""
    if config_path is None or not config_path.exists():
        return None
    try:
        data: Any = json.loads(config_path.read_text(encoding="utf-8") or "{}")
    except json.JSONDecodeError:
        # the resolver reports malformed JSON with a proper error
        return None
    if not isinstance(data, dict) or not isinstance(data.get("dependencies"), dict):
        return None
    return {str(k): [str(d) for d in v] for k, v in data["dependencies"].items()}


def _print_result_summary(result: PortfolioResult) -> None:
    """Print a human-readable summary of a PortfolioResult."""
    print(f"\nPortfolio {result.orchestration_id}:")
    print(f"  Succeeded:    {len(result.succeeded)}  {', '.join(result.succeeded)}")
    print(f"  Failed:       {len(result.failed)}  {', '.join(result.failed)}")
    print(f"  Rolled back:  {len(result.rolled_back)}  {', '.join(result.rolled_back)}")
    if result.skipped:
        print(f"  Skipped:      {len(result.skipped)}  {', '.join(result.skipped)}")
    if result.cancelled:
        print(f"  Cancelled:    {len(result.cancelled)}  {', '.join(result.cancelled)}")
    print(f"  Success rate: {result.success_rate}%")
    print(f"  Duration:     {result.duration_ms}ms")
    for domain, record in result.records.items():
        if record.url and record.state == "SUCCEEDED":
            print(f"  {domain}: {record.url}")
    for alert in result.alerts:
        print(f"  ALERT: {alert}")


if __name__ == "__main__":
    sys.exit(main())
