# src/domains/resolver.py - v1
"""Domain resolution: load the domain list, select targets, derive routing.

Accepted configuration shapes (JSON or already-parsed):
  - ["a.com", "b.com"]
  - {"domains": ["a.com", "b.com"]}
  - {"domains": [...], "staging": {"domains": [...], "routing": {...}}}
  - {"domains": {"production": [...], "staging": [...]}}

select_domain() is pure and free of I/O; prompting for a choice is a
caller concern.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable, Iterable, Mapping
from pathlib import Path
from typing import Any

from fleetdeploy.core.errors import (
    ConfigurationError,
    DomainNotFoundError,
    NoDomainsAvailableError,
)
from fleetdeploy.core.models import DomainConfig, DomainTarget, RoutingPolicy, dedupe_domains

logger = logging.getLogger(__name__)

DomainSource = Mapping[str, Any] | list[str] | str | Path | None
DiscoveryFn = Callable[[], Awaitable[Iterable[str]]]

# Static routing per environment. Production never drops below 1000 req/s.
ENVIRONMENT_ROUTING: dict[str, RoutingPolicy] = {
    "production": RoutingPolicy(rate_limit=1000, strategies=("load-balance",)),
    "staging": RoutingPolicy(rate_limit=500, strategies=("round-robin",)),
    "development": RoutingPolicy(rate_limit=100, strategies=("direct",)),
}
PRODUCTION_MIN_RATE_LIMIT = 1000

_DOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9-]*(\.[a-z0-9-]+)*\.[a-z]{2,}$", re.IGNORECASE)


def select_domain(
    domains: list[str],
    domain_id: str | None = None,
    all_domains: bool = False,
) -> list[str]:
    """Pick target domains from an already-resolved list.

    Priority: explicit id > all flag > first domain.

    Raises:
        NoDomainsAvailableError: If ``domains`` is empty.
        DomainNotFoundError: If ``domain_id`` is not in ``domains``.
    """
    if not domains:
        raise NoDomainsAvailableError("No domains available for selection")
    if domain_id:
        wanted = domain_id.strip().lower()
        if wanted not in domains:
            raise DomainNotFoundError(wanted, domains)
        return [wanted]
    if all_domains:
        return list(domains)
    return [domains[0]]


class DomainResolver:
    """Loads, normalizes and resolves domains for one environment."""

    def __init__(
        self,
        environment: str = "production",
        service_name: str = "data-service",
        cache_enabled: bool = True,
    ) -> None:
        self.environment = environment.strip().lower()
        self.service_name = service_name
        self.cache_enabled = cache_enabled
        self._config_cache: dict[str, DomainConfig] = {}
        self._routing_overrides: dict[str, dict[str, Any]] = {}

    # --- Loading ---

    def load_configuration(self, source: DomainSource) -> list[str]:
        """Normalize any supported configuration shape into a domain list.

        An absent or empty configuration yields an empty list.

        Raises:
            ConfigurationError: On unreadable JSON or an unrecognised shape.
        """
        data = self._read_source(source)
        if not data:
            return []

        if isinstance(data, list):
            return self._normalize(data)

        if not isinstance(data, Mapping):
            raise ConfigurationError(
                f"Unsupported domain configuration type: {type(data).__name__}"
            )

        domains_field = data.get("domains")

        # {domains: {<env>: [...]}}
        if isinstance(domains_field, Mapping):
            return self._normalize(domains_field.get(self.environment) or [])

        base = self._normalize(domains_field or [])

        # {domains: [...], <env>: {...}}
        override = data.get(self.environment)
        if isinstance(override, Mapping):
            if "domains" in override:
                base = self._normalize(override.get("domains") or [])
            routing = override.get("routing")
            if isinstance(routing, Mapping):
                self._routing_overrides[self.environment] = dict(routing)
        elif override is not None:
            raise ConfigurationError(
                f"Override block for '{self.environment}' must be an object"
            )

        logger.debug("Loaded %d domains for %s", len(base), self.environment)
        return base

    async def detect_domains(
        self,
        configured: list[str] | None = None,
        discovery: DiscoveryFn | None = None,
    ) -> list[str]:
        """Merge configured domains with an optional discovery source."""
        merged = list(configured or [])
        if discovery is not None:
            discovered = list(await discovery())
            logger.info("Discovered %d domains at runtime", len(discovered))
            merged.extend(discovered)
        return self._normalize(merged)

    def select_domain(
        self,
        domains: list[str],
        domain_id: str | None = None,
        all_domains: bool = False,
    ) -> list[str]:
        return select_domain(domains, domain_id=domain_id, all_domains=all_domains)

    # --- Routing + targets ---

    def get_environment_routing(self, domain: str, env: str | None = None) -> RoutingPolicy:
        """Static routing policy for ``env``, with configured overrides applied.

        Raises:
            ConfigurationError: For an unknown environment.
        """
        env = (env or self.environment).strip().lower()
        base = ENVIRONMENT_ROUTING.get(env)
        if base is None:
            raise ConfigurationError(f"Unknown environment '{env}' for {domain}")

        override = self._routing_overrides.get(env)
        if not override:
            return base

        rate_limit = int(override.get("rate_limit", override.get("rateLimit", base.rate_limit)))
        if env == "production":
            rate_limit = max(rate_limit, PRODUCTION_MIN_RATE_LIMIT)
        strategies = tuple(override.get("strategies") or base.strategies)
        return RoutingPolicy(rate_limit=rate_limit, strategies=strategies)

    def generate_domain_config(self, domain: str) -> DomainConfig:
        """Derive worker name and per-environment hostnames for a domain."""
        if self.cache_enabled and domain in self._config_cache:
            return self._config_cache[domain]

        clean = re.sub(r"[^a-zA-Z0-9-]", "", domain.replace(".", "-"))
        config = DomainConfig(
            name=domain,
            clean_name=clean,
            worker_name=f"{clean}-{self.service_name}",
            environments={
                "production": domain,
                "staging": f"staging.{domain}",
                "development": f"dev.{domain}",
            },
        )
        if self.cache_enabled:
            self._config_cache[domain] = config
        return config

    def resolve_targets(self, domains: list[str]) -> list[DomainTarget]:
        """Build immutable DomainTargets for the resolver's environment."""
        targets: list[DomainTarget] = []
        for domain in self._normalize(domains):
            config = self.generate_domain_config(domain)
            targets.append(
                DomainTarget(
                    id=domain,
                    environment=self.environment,
                    hostname=config.environments.get(self.environment, domain),
                    routing=self.get_environment_routing(domain),
                    config=config,
                )
            )
        return targets

    @staticmethod
    def is_valid_domain_format(domain: str) -> bool:
        return bool(_DOMAIN_RE.match(domain))

    def clear_cache(self) -> None:
        self._config_cache.clear()

    def cache_stats(self) -> dict[str, Any]:
        return {"size": len(self._config_cache), "enabled": self.cache_enabled}

    # --- Internals ---

    @staticmethod
    def _normalize(domains: Any) -> list[str]:
        if isinstance(domains, str):
            domains = [domains]
        if not isinstance(domains, list):
            raise ConfigurationError(
                f"Domain list must be an array, got {type(domains).__name__}"
            )
        return dedupe_domains([str(d) for d in domains])

    @staticmethod
    def _read_source(source: DomainSource) -> Any:
        if source is None:
            return None
        if isinstance(source, Path):
            if not source.exists():
                logger.warning("Domain config %s not found; using empty list", source)
                return None
            text = source.read_text(encoding="utf-8")
            return DomainResolver._parse_json(text, str(source))
        if isinstance(source, str):
            return DomainResolver._parse_json(source, "<string>")
        return source

    @staticmethod
    def _parse_json(text: str, origin: str) -> Any:
        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid domain configuration in {origin}: {exc}") from exc
