"""
Error taxonomy for the CI/CD control tower.

Every error carries a stable ``error_code`` plus a ``details`` dict so that
callers (API glue, CLI, logs) can react to the category instead of parsing
messages.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class ControlTowerError(Exception):
    """Base class for all control tower errors."""

    error_code = "CONTROL_TOWER_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(ControlTowerError):
    """Malformed or duplicate input. Never retried automatically."""

    error_code = "VALIDATION_FAILED"


class InvalidStatusTransition(ValidationError):
    """Raised when a build workflow is moved out of a terminal state."""

    error_code = "INVALID_STATUS_TRANSITION"

    def __init__(self, workflow_id: int, current: str, requested: str):
        super().__init__(
            f"workflow {workflow_id} cannot move from {current} to {requested}",
            details={
                "workflow_id": workflow_id,
                "current": current,
                "requested": requested,
            },
        )


class NotFoundError(ControlTowerError):
    """A referenced pipeline, workflow, chart or registration does not exist."""

    error_code = "NOT_FOUND"

    def __init__(self, kind: str, identifier: Any, message: Optional[str] = None):
        self.kind = kind
        self.identifier = identifier
        super().__init__(
            message or f"{kind} {identifier} not found",
            details={"kind": kind, "id": identifier},
        )


class AuthorizationError(ControlTowerError):
    """Access token or RBAC predicate failure."""

    error_code = "UNAUTHORIZED"


class PersistenceError(ControlTowerError):
    """Storage-layer failure: constraint violation or connectivity."""

    error_code = "PERSISTENCE_FAILED"


@dataclass(frozen=True)
class TriggerFailure:
    """One downstream trigger that failed during fan-out."""

    artifact_id: int
    error: str
    pipeline_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "pipeline_id": self.pipeline_id,
            "error": self.error,
        }


class PartialFanOutFailure(ControlTowerError):
    """Some downstream triggers failed while others may have succeeded.

    This is a non-fatal, aggregated condition: the artifacts that caused the
    fan-out stay committed.
    """

    error_code = "PARTIAL_FAN_OUT"

    def __init__(self, failures: List[TriggerFailure], succeeded: int):
        self.failures = list(failures)
        self.succeeded = succeeded
        super().__init__(
            f"{len(self.failures)} downstream trigger(s) failed, {succeeded} succeeded",
            details={
                "failures": [f.to_dict() for f in self.failures],
                "succeeded": succeeded,
            },
        )

    @property
    def failure_count(self) -> int:
        return len(self.failures)
