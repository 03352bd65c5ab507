"""Deployment event intake: schema, identity resolution and processing."""

from events.schema import (
    DeploymentEvent,
    DeploymentOutcome,
    DeploymentPhase,
    EventValidationError,
    parse_event,
    validate_event,
)

__all__ = [
    "DeploymentEvent",
    "DeploymentOutcome",
    "DeploymentPhase",
    "EventValidationError",
    "parse_event",
    "validate_event",
]
