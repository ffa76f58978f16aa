# src/core/errors.py - v1
"""Exception taxonomy shared by every fleetdeploy module.

Fatal at initialize(): ConfigurationError, NoDomainsAvailableError.
Per-domain (captured on the DeploymentRecord): ValidationError,
DeploymentError, RollbackFailedError.
Recoverable: CorruptedStateError (fall back to history).
"""

from __future__ import annotations


class FleetDeployError(Exception):
    """Base class for all fleetdeploy errors."""


class ConfigurationError(FleetDeployError):
    """Bad or missing credentials, settings or domain configuration."""


class DependencyCycleError(ConfigurationError):
    """Cross-domain dependency graph contains a cycle or unknown node."""


class NoDomainsAvailableError(FleetDeployError):
    """The resolved domain list is empty."""


class DomainNotFoundError(FleetDeployError):
    """An explicitly requested domain is not part of the resolved list."""

    def __init__(self, domain_id: str, available: list[str] | None = None) -> None:
        self.domain_id = domain_id
        self.available = list(available or [])
        super().__init__(
            f"Domain '{domain_id}' not found (available: {', '.join(self.available) or 'none'})"
        )


class InvalidStateError(FleetDeployError):
    """An operation was called in the wrong lifecycle state."""


class ValidationError(FleetDeployError):
    """Payload or domain failed validation. Lists every violation."""

    def __init__(self, message: str, violations: list[str] | None = None) -> None:
        self.violations = list(violations or [])
        detail = f": {'; '.join(self.violations)}" if self.violations else ""
        super().__init__(f"{message}{detail}")


class StateError(FleetDeployError):
    """Persisted state could not be read or written."""


class CorruptedStateError(StateError):
    """Stored checksum does not match the recomputed one."""

    def __init__(
        self,
        phase_id: str,
        expected: str | None = None,
        actual: str | None = None,
        reason: str | None = None,
    ) -> None:
        self.phase_id = phase_id
        self.expected = expected
        self.actual = actual
        msg = f"Corrupted state for phase '{phase_id}'"
        if reason:
            msg += f": {reason}"
        elif expected is not None:
            msg += f": checksum {actual} != stored {expected}"
        super().__init__(msg)


class DeploymentError(FleetDeployError):
    """Provider failure during DEPLOY, or VERIFY retry budget exhausted."""

    def __init__(self, domain_id: str, phase: str, message: str) -> None:
        self.domain_id = domain_id
        self.phase = phase
        super().__init__(f"{domain_id} [{phase}]: {message}")


class RollbackError(FleetDeployError):
    """Rollback point bookkeeping error."""


class RollbackFailedError(RollbackError):
    """Restore of a rollback point failed. Terminal, always surfaced."""

    def __init__(self, domain_id: str, message: str) -> None:
        self.domain_id = domain_id
        super().__init__(f"Rollback failed for {domain_id}: {message}")
