"""Schema definitions for deployment events reported by fleet agents."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from time_utils import ensure_utc


class EventValidationError(ValueError):
    """Raised when a deployment event is missing required fields."""

    def __init__(self, message: str, *, event_id: str | None = None) -> None:
        """Initialize the error with the rejected event id, when known."""
        super().__init__(message)
        self.event_id = event_id


class DeploymentPhase(str, Enum):
    """Rollout phase reported by the agent."""

    PENDING = "pending"
    PROGRESSING = "progressing"
    COMPLETED = "completed"
    FAILED = "failed"


class DeploymentOutcome(str, Enum):
    """Terminal outcome reported by the agent."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class EventSource(BaseModel):
    """Agent and cluster that emitted the event."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    cluster_id: str
    agent_version: str | None = None


class WorkloadRef(BaseModel):
    """Kubernetes workload the event refers to."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    kind: str = "Deployment"
    name: str
    namespace: str


class Revision(BaseModel):
    """Version transition carried by the event."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    current: str
    previous: str | None = None


class EventError(BaseModel):
    """Failure details attached to a failed rollout."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    message: str | None = None
    reason: str | None = None


class DeploymentEvent(BaseModel):
    """Normalized deployment event consumed by the timeline engine."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    event_id: str
    occurred_at: datetime
    environment: str
    source: EventSource
    workload: WorkloadRef
    labels: dict[str, str] = Field(default_factory=dict)
    revision: Revision | None = None
    phase: DeploymentPhase | None = None
    outcome: DeploymentOutcome | None = None
    error: EventError | None = None

    @field_validator("occurred_at")
    @classmethod
    def _normalize_occurred_at(cls, value: datetime) -> datetime:
        """Store event timestamps as aware UTC values."""
        return ensure_utc(value)

    @field_validator("phase", "outcome", mode="before")
    @classmethod
    def _lowercase_enum(cls, value: Any) -> Any:
        """Accept agent enum names in any case."""
        if isinstance(value, str):
            normalized = value.strip().lower()
            return normalized or None
        return value

    @property
    def error_message(self) -> str | None:
        """Return the reported error message, if any."""
        return self.error.message if self.error is not None else None


def validate_event(event: DeploymentEvent) -> None:
    """Reject events whose required identifiers are blank."""
    required = (
        ("event_id", event.event_id),
        ("source.cluster_id", event.source.cluster_id),
        ("environment", event.environment),
        ("workload.name", event.workload.name),
        ("workload.namespace", event.workload.namespace),
    )
    for name, value in required:
        if not value or not value.strip():
            raise EventValidationError(f"{name} is required", event_id=event.event_id or None)
    if event.revision is not None and not event.revision.current.strip():
        raise EventValidationError(
            "revision.current is required when revision is set",
            event_id=event.event_id,
        )


def parse_event(payload: dict[str, Any]) -> DeploymentEvent:
    """Build and validate an event from a decoded JSON payload."""
    try:
        event = DeploymentEvent.model_validate(payload)
    except ValidationError as exc:
        raise EventValidationError(
            f"malformed deployment event: {exc.error_count()} error(s)",
            event_id=payload.get("event_id") if isinstance(payload, dict) else None,
        ) from exc
    validate_event(event)
    return event
