# src/state/schemas.py - v1
"""Per-phase payload schemas.

Phase ids are matched against glob patterns (first match wins), so one
schema covers every ``domain-<id>`` checkpoint.
"""

from __future__ import annotations

import fnmatch
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from fleetdeploy.core.errors import ValidationError
from fleetdeploy.core.models import DeploymentState


class PortfolioCheckpoint(BaseModel):
    """Pre/post snapshot of a portfolio run."""

    model_config = ConfigDict(extra="allow")

    orchestration_id: str
    status: str
    environment: str
    domains: list[str]
    dry_run: bool = False
    summary: dict[str, Any] | None = None


class DomainCheckpoint(BaseModel):
    """Checkpoint of one domain's DeploymentRecord."""

    model_config = ConfigDict(extra="allow")

    domain_id: str
    attempt_id: str
    state: DeploymentState
    started_at: datetime | None = None
    ended_at: datetime | None = None


class RollbackCheckpoint(BaseModel):
    """Persisted copy of a RollbackPoint."""

    model_config = ConfigDict(extra="allow")

    domain_id: str
    attempt_id: str
    prior_descriptor: dict[str, Any]


DEFAULT_SCHEMAS: dict[str, type[BaseModel]] = {
    "portfolio": PortfolioCheckpoint,
    "domain-*": DomainCheckpoint,
    "rollback-*": RollbackCheckpoint,
}


class SchemaRegistry:
    """Maps phase-id patterns to pydantic schemas."""

    def __init__(self, schemas: dict[str, type[BaseModel]] | None = None) -> None:
        self._schemas: dict[str, type[BaseModel]] = dict(
            DEFAULT_SCHEMAS if schemas is None else schemas
        )

    def register(self, pattern: str, schema: type[BaseModel]) -> None:
        self._schemas[pattern] = schema

    def schema_for(self, phase_id: str) -> type[BaseModel] | None:
        if phase_id in self._schemas:
            return self._schemas[phase_id]
        for pattern, schema in self._schemas.items():
            if fnmatch.fnmatchcase(phase_id, pattern):
                return schema
        return None

    def violations(self, phase_id: str, payload: Any) -> list[str]:
        """Every schema violation of ``payload``; empty when valid or unschematized."""
        if not isinstance(payload, dict):
            return [f"payload must be an object, got {type(payload).__name__}"]
        schema = self.schema_for(phase_id)
        if schema is None:
            return []
        try:
            schema.model_validate(payload)
        except PydanticValidationError as exc:
            return [
                f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
                for err in exc.errors()
            ]
        return []

    def validate(self, phase_id: str, payload: Any) -> None:
        """Raise ValidationError listing every violation."""
        problems = self.violations(phase_id, payload)
        if problems:
            raise ValidationError(
                f"Payload for phase '{phase_id}' does not match its schema", problems
            )
