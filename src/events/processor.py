"""Processing of deployment events into the version history timeline."""

from __future__ import annotations

import logging
from contextlib import closing
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.orm import Session

from events.identity import IdentityResolver
from events.schema import DeploymentEvent, validate_event
from logging_config import log_context
from releases.linker import ReleaseLinker
from timeline.notifications import NotificationTrigger
from timeline.version_history import (
    UpsertAction,
    UpsertResult,
    VersionHistoryEngine,
    VersionTransition,
)

logger = logging.getLogger(__name__)


class DeploymentEventProcessor:
    """Runs one event through identity resolution and the timeline upsert.

    Each event is handled in a single short transaction owned by this class.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        identity_resolver: IdentityResolver | None = None,
        engine: VersionHistoryEngine | None = None,
        notification_trigger: NotificationTrigger | None = None,
        release_linker: ReleaseLinker | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize with persistence and the timeline collaborators."""
        self._session_factory = session_factory
        self._identity = identity_resolver or IdentityResolver()
        self._engine = engine or VersionHistoryEngine()
        self._notifications = notification_trigger or NotificationTrigger()
        self._linker = release_linker
        self._now_provider = now_provider or (lambda: datetime.now(timezone.utc))

    def process_event(self, event: DeploymentEvent) -> UpsertResult | None:
        """Apply an event to the timeline.

        Returns the upsert result, or None for events without a revision.

        Raises:
            EventValidationError: If required event fields are blank.
        """
        validate_event(event)
        now = self._now_provider()

        def handler(session: Session) -> UpsertResult | None:
            instance = self._identity.resolve_instance(session, event, now=now)
            if event.revision is None:
                logger.debug("Event %s carries no revision; timeline unchanged", event.event_id)
                return None

            transition = VersionTransition.from_event(instance.id, event)
            result = self._engine.upsert(session, instance, transition, now=now)
            if result.action is UpsertAction.DUPLICATE:
                return result

            session.flush()
            self._notifications.fire(result.entry, instance, event)
            if result.action is UpsertAction.CREATED and self._linker is not None:
                self._linker.queue_release_fetch(result.entry.id, session=session)
            return result

        with log_context({"event_id": event.event_id, "cluster": event.source.cluster_id}):
            return self._execute(handler)

    def _execute(self, handler):
        """Execute event work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


def build_default_processor(
    session_factory: Callable[[], Session] | None = None,
) -> DeploymentEventProcessor:
    """Wire the processor with production sessions, publisher and linker.

    One provider registry attributes new repositories and serves the linker.
    """
    from gitprovider.registry import build_default_registry
    from releases.repositories import RepositoryService
    from services.database import get_sync_session
    from timeline.notifications import CeleryNotificationPublisher

    session_factory = session_factory or get_sync_session
    registry = build_default_registry()
    return DeploymentEventProcessor(
        session_factory=session_factory,
        identity_resolver=IdentityResolver(repository_service=RepositoryService(registry)),
        notification_trigger=NotificationTrigger(CeleryNotificationPublisher()),
        release_linker=ReleaseLinker(session_factory, registry=registry),
    )
