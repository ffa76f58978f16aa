# src/deployment/command_deployer.py - v1
"""Deployer that shells out to a vendor CLI and probes health over HTTP.

Command templates are ``str.format`` strings. Available fields:
  deploy:   {domain} {environment} {hostname} {artifact}
  describe: the deploy fields plus {worker_name}
  restore:  {domain} {attempt_id} {previous_version} plus every
            scalar key of the rollback point's prior descriptor

Credentials are exported to the child process as upper-case environment
variables (``api_token`` -> ``API_TOKEN``). They never appear in argv.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shlex
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx

from fleetdeploy.core.models import DeployRequest, DeployResult, DomainTarget, RollbackPoint
from fleetdeploy.deployment.base_deployer import BaseDeployer

logger = logging.getLogger(__name__)

_URL_RE = re.compile(r"https?://[^\s'\"<>]+")
_DEPLOYMENT_ID_RE = re.compile(r"(?:Deployment|Version) ID:\s*([\w-]+)", re.IGNORECASE)
_WORKER_RE = re.compile(r"Worker(?: name)?:\s*([\w.-]+)", re.IGNORECASE)


class CommandError(RuntimeError):
    """A deployer command exited non-zero."""

    def __init__(self, argv: list[str], returncode: int, stderr: str) -> None:
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(f"'{argv[0]}' exited with {returncode}: {self.stderr[-500:]}")


class CommandDeployer(BaseDeployer):
    """Run configured commands through asyncio subprocesses.

    Args:
        deploy_command: Template for the deploy command (required).
        restore_command: Template for restore; empty = restore unsupported.
        describe_command: Template printing a JSON descriptor; empty = {}.
        cwd: Working directory for all commands.
        health_check_path: Path appended to the deployment URL for VERIFY.
        health_check_timeout_s: Per-probe HTTP timeout.
        client_factory: Builds the httpx.AsyncClient (tests inject a transport).
    """

    def __init__(
        self,
        deploy_command: str,
        restore_command: str = "",
        describe_command: str = "",
        cwd: Path | None = None,
        health_check_path: str = "/health",
        health_check_timeout_s: float = 10.0,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        if not deploy_command.strip():
            raise ValueError("deploy_command must not be empty")
        self._deploy_cmd = deploy_command
        self._restore_cmd = restore_command
        self._describe_cmd = describe_command
        self._cwd = cwd
        self._health_path = health_check_path
        self._timeout = health_check_timeout_s
        self._client_factory = client_factory or self._default_client

    async def deploy(self, request: DeployRequest) -> DeployResult:
        fields = {
            "domain": request.domain,
            "environment": request.environment,
            "hostname": request.hostname,
            "artifact": request.artifact or "",
        }
        argv = self._render(self._deploy_cmd, fields)
        stdout = await self._run(argv, request.credentials)

        url_match = _URL_RE.search(stdout)
        id_match = _DEPLOYMENT_ID_RE.search(stdout)
        worker_match = _WORKER_RE.search(stdout)
        return DeployResult(
            status="success",
            url=url_match.group(0) if url_match else f"https://{request.hostname}",
            deployment_id=id_match.group(1) if id_match else None,
            worker_id=worker_match.group(1) if worker_match else None,
        )

    async def describe(self, target: DomainTarget) -> dict[str, Any]:
        if not self._describe_cmd:
            return {"hostname": target.hostname, "routing": target.routing.model_dump(mode="json")}
        fields = {
            "domain": target.id,
            "environment": target.environment,
            "hostname": target.hostname,
            "artifact": "",
            "worker_name": target.config.worker_name,
        }
        stdout = await self._run(self._render(self._describe_cmd, fields), {})
        try:
            descriptor = json.loads(stdout or "{}")
        except json.JSONDecodeError:
            descriptor = {"raw": stdout.strip()}
        if not isinstance(descriptor, dict):
            descriptor = {"value": descriptor}
        return descriptor

    async def restore(self, point: RollbackPoint) -> bool:
        if not self._restore_cmd:
            logger.error("No restore command configured; cannot restore %s", point.domain_id)
            return False
        fields: dict[str, Any] = {
            str(k): v for k, v in point.prior_descriptor.items() if isinstance(v, (str, int, float))
        }
        fields.update(
            domain=point.domain_id,
            attempt_id=point.attempt_id,
            previous_version=point.prior_descriptor.get("version", ""),
        )
        try:
            await self._run(self._render(self._restore_cmd, fields), {})
        except CommandError as exc:
            logger.error("Restore of %s failed: %s", point.domain_id, exc)
            return False
        return True

    async def health_check(self, target: DomainTarget, url: str | None) -> bool:
        base = (url or f"https://{target.hostname}").rstrip("/")
        probe = f"{base}{self._health_path}"
        async with self._client_factory() as client:
            try:
                response = await client.get(probe)
            except httpx.HTTPError as exc:
                logger.warning("Health probe %s failed: %s", probe, exc)
                return False
        if response.is_success:
            return True
        logger.warning("Health probe %s returned %d", probe, response.status_code)
        return False

    # --- Internals ---

    def _default_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=httpx.Timeout(self._timeout), follow_redirects=True)

    @staticmethod
    def _render(template: str, fields: dict[str, Any]) -> list[str]:
        try:
            rendered = template.format(**fields)
        except KeyError as exc:
            raise ValueError(f"Unknown placeholder {exc} in command template") from exc
        return shlex.split(rendered)

    async def _run(self, argv: list[str], credentials: dict[str, str]) -> str:
        env = dict(os.environ)
        env.update({k.upper(): v for k, v in credentials.items()})
        logger.debug("Running %s", argv[0])
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            cwd=str(self._cwd) if self._cwd else None,
        )
        try:
            out, err = await proc.communicate()
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise
        stdout = out.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            raise CommandError(argv, proc.returncode or -1, err.decode("utf-8", errors="replace"))
        return stdout
