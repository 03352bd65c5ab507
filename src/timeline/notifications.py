"""Deployment notification intents derived from timeline transitions.

Delivery (Slack, webhooks, ...) belongs to the notification subsystem. This
module only decides whether a transition deserves a notification, hands a
self-contained payload to a publisher, and records the phase it notified for
on the timeline row so the same phase is not announced twice.

Publication happens before the guard is persisted. A crash between the two
steps can repeat a notification on redelivery; duplicates are preferred over
lost notifications.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from config import NotificationConfig, settings
from events.schema import DeploymentEvent, DeploymentOutcome, DeploymentPhase
from models import VersionHistory, WorkloadInstance

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    """Kinds of deployment notifications."""

    DEPLOYMENT_STARTED = "DEPLOYMENT_STARTED"
    DEPLOYMENT_SUCCEEDED = "DEPLOYMENT_SUCCEEDED"
    DEPLOYMENT_FAILED = "DEPLOYMENT_FAILED"

    @property
    def guard_phase(self) -> str:
        """Return the phase recorded on the row once this type is published."""
        return _GUARD_PHASES[self]


_GUARD_PHASES = {
    NotificationType.DEPLOYMENT_STARTED: DeploymentPhase.PROGRESSING.value,
    NotificationType.DEPLOYMENT_SUCCEEDED: DeploymentPhase.COMPLETED.value,
    NotificationType.DEPLOYMENT_FAILED: DeploymentPhase.FAILED.value,
}


@dataclass(frozen=True)
class DeploymentNotification:
    """Self-contained payload handed to the notification subsystem."""

    type: NotificationType
    workload_id: int
    workload_name: str
    workload_kind: str
    team: str | None
    environment: str
    cluster: str
    namespace: str
    current_version: str
    previous_version: str | None
    occurred_at: datetime
    deployment_duration_seconds: int | None = None
    error_message: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Return a JSON-serializable representation."""
        payload = asdict(self)
        payload["type"] = self.type.value
        payload["occurred_at"] = self.occurred_at.isoformat()
        return payload


class NotificationPublisher(Protocol):
    """Fire-and-forget sink for deployment notifications."""

    def publish(self, notification: DeploymentNotification) -> None:
        """Dispatch a notification without waiting for delivery."""
        ...


class CeleryNotificationPublisher:
    """Publishes notifications as Celery tasks for the delivery workers."""

    def __init__(
        self,
        celery_app: Any | None = None,
        *,
        config: NotificationConfig | None = None,
    ) -> None:
        """Initialize with the Celery app and task routing settings."""
        self._celery_app = celery_app
        self._config = config or settings.notifications

    def publish(self, notification: DeploymentNotification) -> None:
        """Send the notification task and return immediately."""
        app = self._celery_app
        if app is None:
            from releases.celery_app import celery_app as app
        app.send_task(
            self._config.task_name,
            kwargs={"notification": notification.to_payload()},
            queue=self._config.queue,
        )


def determine_notification_type(
    phase: DeploymentPhase | None,
    outcome: DeploymentOutcome | None,
) -> NotificationType | None:
    """Map an event's phase and outcome to a notification type."""
    if phase is DeploymentPhase.FAILED or outcome is DeploymentOutcome.FAILED:
        return NotificationType.DEPLOYMENT_FAILED
    if phase is DeploymentPhase.COMPLETED and outcome is DeploymentOutcome.SUCCEEDED:
        return NotificationType.DEPLOYMENT_SUCCEEDED
    if phase is DeploymentPhase.PROGRESSING:
        return NotificationType.DEPLOYMENT_STARTED
    return None


def build_notification(
    notification_type: NotificationType,
    entry: VersionHistory,
    instance: WorkloadInstance,
    event: DeploymentEvent,
) -> DeploymentNotification:
    """Assemble the notification payload from the row and its placement."""
    workload = instance.workload
    return DeploymentNotification(
        type=notification_type,
        workload_id=workload.id,
        workload_name=workload.name or "",
        workload_kind=workload.kind or "",
        team=workload.team,
        environment=instance.environment,
        cluster=instance.cluster.name,
        namespace=instance.namespace,
        current_version=entry.current_version,
        previous_version=entry.previous_version,
        occurred_at=event.occurred_at,
        deployment_duration_seconds=entry.deployment_duration_seconds,
        error_message=event.error_message,
    )


class NotificationTrigger:
    """Publishes at most one notification per phase for a timeline row."""

    def __init__(
        self,
        publisher: NotificationPublisher | None = None,
        *,
        enabled: bool | None = None,
    ) -> None:
        """Initialize with a publisher; a missing publisher disables notifications."""
        self._publisher = publisher
        self._enabled = settings.notifications.enabled if enabled is None else enabled

    def fire(
        self,
        entry: VersionHistory,
        instance: WorkloadInstance,
        event: DeploymentEvent,
    ) -> NotificationType | None:
        """Publish a notification for the transition unless already sent.

        Returns the published type, or None when nothing was published.
        """
        if not self._enabled or self._publisher is None:
            return None

        notification_type = determine_notification_type(event.phase, event.outcome)
        if notification_type is None:
            return None

        guard_phase = notification_type.guard_phase
        if entry.last_notified_phase == guard_phase:
            logger.debug(
                "Notification %s already sent for version history %s",
                notification_type.value,
                entry.id,
            )
            return None

        notification = build_notification(notification_type, entry, instance, event)
        try:
            self._publisher.publish(notification)
        except Exception:
            logger.exception(
                "Failed to publish %s notification for version history %s",
                notification_type.value,
                entry.id,
            )
            return None

        entry.last_notified_phase = guard_phase
        logger.info(
            "Published %s notification for %s %s",
            notification_type.value,
            notification.workload_name,
            notification.current_version,
        )
        return notification_type
