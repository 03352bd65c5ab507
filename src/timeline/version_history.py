"""Idempotent upsert of version history rows for workload instances.

Each workload instance accumulates one row per distinct
``(current_version, previous_version)`` transition. Later events for the same
version update that row in place (phase, status, phase timestamps) instead of
creating new rows, so at-least-once delivery from agents collapses into a
clean timeline.

Concurrent duplicate deliveries may both decide to insert. The unique index
``uq_version_history_transition`` arbitrates: the loser's savepoint is rolled
back, the winning row is re-read and the update path is applied to it. The
retry is a bounded loop and never leaves the caller's transaction aborted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from events.schema import DeploymentEvent, DeploymentOutcome, DeploymentPhase
from models import VersionHistory, WorkloadInstance
from time_utils import ensure_utc, seconds_between

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
_DEFAULT_MAX_INSERT_ATTEMPTS = 3


class TimelineConflictError(RuntimeError):
    """Raised when an insert keeps colliding after every bounded retry."""


class UpsertAction(str, Enum):
    """What an upsert did to the timeline."""

    CREATED = "created"
    UPDATED = "updated"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class VersionTransition:
    """Normalized timeline input extracted from a deployment event."""

    workload_instance_id: int
    current_version: str
    previous_version: str | None
    occurred_at: datetime
    phase: DeploymentPhase | None = None
    outcome: DeploymentOutcome | None = None
    error_message: str | None = None

    @classmethod
    def from_event(cls, workload_instance_id: int, event: DeploymentEvent) -> "VersionTransition":
        """Build a transition from an event that carries a revision."""
        if event.revision is None:
            raise ValueError("event has no revision")
        current = event.revision.current.strip()
        return cls(
            workload_instance_id=workload_instance_id,
            current_version=current,
            previous_version=normalize_previous_version(event.revision.previous, current),
            occurred_at=event.occurred_at,
            phase=event.phase,
            outcome=event.outcome,
            error_message=event.error_message,
        )


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of an upsert along with the affected row."""

    action: UpsertAction
    entry: VersionHistory

    @property
    def changed(self) -> bool:
        """Return True when the row was created or modified."""
        return self.action is not UpsertAction.DUPLICATE


def normalize_previous_version(previous: str | None, current: str) -> str | None:
    """Return None for blank previous versions or ones equal to current."""
    if previous is None:
        return None
    normalized = previous.strip()
    if not normalized or normalized == current:
        return None
    return normalized


def outcome_to_status(outcome: DeploymentOutcome | None) -> str | None:
    """Map an agent outcome to the stored deployment status."""
    if outcome is DeploymentOutcome.SUCCEEDED:
        return STATUS_SUCCESS
    if outcome is DeploymentOutcome.FAILED:
        return STATUS_FAILED
    return None


def apply_phase_timestamps(
    entry: VersionHistory,
    phase: DeploymentPhase | None,
    detected_at: datetime,
) -> None:
    """Derive phase timestamps and duration for the phase just observed."""
    if phase is DeploymentPhase.PROGRESSING:
        if entry.deployment_started_at is None:
            entry.deployment_started_at = detected_at
    elif phase is DeploymentPhase.COMPLETED:
        entry.deployment_completed_at = detected_at
        if entry.deployment_duration_seconds is None:
            entry.deployment_duration_seconds = _duration(entry.deployment_started_at, detected_at)
    elif phase is DeploymentPhase.FAILED:
        entry.deployment_failed_at = detected_at
        if entry.deployment_duration_seconds is None:
            entry.deployment_duration_seconds = _duration(entry.deployment_started_at, detected_at)


def _duration(started_at: datetime | None, ended_at: datetime) -> int | None:
    if started_at is None:
        return None
    return seconds_between(started_at, ended_at)


class VersionHistoryEngine:
    """Applies deployment transitions to the version history timeline."""

    def __init__(self, *, max_insert_attempts: int = _DEFAULT_MAX_INSERT_ATTEMPTS) -> None:
        """Initialize with the bound on insert retries after a unique-index race."""
        if max_insert_attempts < 1:
            raise ValueError("max_insert_attempts must be at least 1")
        self._max_insert_attempts = max_insert_attempts

    def find_latest(self, session: Session, workload_instance_id: int) -> VersionHistory | None:
        """Return the most recently detected row for an instance."""
        return (
            session.query(VersionHistory)
            .filter(VersionHistory.workload_instance_id == workload_instance_id)
            .order_by(VersionHistory.detected_at.desc(), VersionHistory.id.desc())
            .first()
        )

    def find_transition(
        self,
        session: Session,
        workload_instance_id: int,
        current_version: str,
        previous_version: str | None,
    ) -> VersionHistory | None:
        """Return the row for an exact (current, previous) transition."""
        query = session.query(VersionHistory).filter(
            VersionHistory.workload_instance_id == workload_instance_id,
            VersionHistory.current_version == current_version,
        )
        if previous_version is None:
            query = query.filter(VersionHistory.previous_version.is_(None))
        else:
            query = query.filter(VersionHistory.previous_version == previous_version)
        return query.first()

    def upsert(
        self,
        session: Session,
        instance: WorkloadInstance,
        transition: VersionTransition,
        *,
        now: datetime,
    ) -> UpsertResult:
        """Record a transition, creating a row only for a newly seen version."""
        current = transition.current_version.strip()
        supplied_previous = normalize_previous_version(transition.previous_version, current)

        for attempt in range(1, self._max_insert_attempts + 1):
            latest = self.find_latest(session, instance.id)
            if latest is not None and latest.current_version == current:
                return self._apply_update(latest, transition)

            previous = supplied_previous
            if previous is None and latest is not None:
                previous = normalize_previous_version(latest.current_version, current)

            existing = self.find_transition(session, instance.id, current, previous)
            if existing is not None:
                return self._apply_update(existing, transition)

            entry = self._build_entry(instance, current, previous, transition)
            try:
                with session.begin_nested():
                    session.add(entry)
                    session.flush()
            except IntegrityError:
                logger.info(
                    "Concurrent insert for instance %s version %s; re-reading (attempt %s/%s)",
                    instance.id,
                    current,
                    attempt,
                    self._max_insert_attempts,
                )
                continue

            instance.last_updated_at = now
            logger.info(
                "Detected version %s (previous %s) for instance %s",
                current,
                previous,
                instance.id,
            )
            return UpsertResult(UpsertAction.CREATED, entry)

        raise TimelineConflictError(
            f"version {current} for instance {instance.id} still conflicting after "
            f"{self._max_insert_attempts} attempts"
        )

    def _build_entry(
        self,
        instance: WorkloadInstance,
        current: str,
        previous: str | None,
        transition: VersionTransition,
    ) -> VersionHistory:
        detected_at = ensure_utc(transition.occurred_at)
        entry = VersionHistory(
            workload_instance_id=instance.id,
            current_version=current,
            previous_version=previous,
            deployment_phase=transition.phase.value if transition.phase is not None else None,
            deployment_status=outcome_to_status(transition.outcome),
            detected_at=detected_at,
        )
        apply_phase_timestamps(entry, transition.phase, detected_at)
        return entry

    def _apply_update(self, entry: VersionHistory, transition: VersionTransition) -> UpsertResult:
        """Apply a same-version phase or status change in place."""
        phase_value = transition.phase.value if transition.phase is not None else None
        status_value = outcome_to_status(transition.outcome)
        phase_changed = phase_value is not None and phase_value != entry.deployment_phase
        status_changed = status_value is not None and status_value != entry.deployment_status

        if not phase_changed and not status_changed:
            logger.debug(
                "Duplicate event for version history %s (%s); skipping",
                entry.id,
                entry.current_version,
            )
            return UpsertResult(UpsertAction.DUPLICATE, entry)

        detected_at = ensure_utc(transition.occurred_at)
        if phase_value is not None:
            entry.deployment_phase = phase_value
            apply_phase_timestamps(entry, transition.phase, detected_at)

        if status_value is not None:
            entry.deployment_status = status_value
        elif transition.phase is DeploymentPhase.PROGRESSING and entry.deployment_status is not None:
            # A redeploy supersedes the previous terminal status.
            entry.deployment_status = None

        entry.detected_at = detected_at
        return UpsertResult(UpsertAction.UPDATED, entry)
