"""Upsert-by-name resolution of clusters, workloads and workload instances."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import IngestConfig, settings
from events.schema import DeploymentEvent
from models import Cluster, Workload, WorkloadInstance
from releases.repositories import RepositoryService

logger = logging.getLogger(__name__)


def _get_or_create(session: Session, model: type, lookup: dict[str, Any], defaults: dict[str, Any]):
    """Return the row matching lookup, inserting it under a savepoint if absent."""
    existing = session.query(model).filter_by(**lookup).first()
    if existing is not None:
        return existing, False
    instance = model(**lookup, **defaults)
    try:
        with session.begin_nested():
            session.add(instance)
            session.flush()
    except IntegrityError:
        return session.query(model).filter_by(**lookup).one(), False
    return instance, True


def _label(labels: dict[str, str], key: str) -> str | None:
    value = labels.get(key)
    if value is None or not value.strip():
        return None
    return value.strip()


class IdentityResolver:
    """Resolves the canonical records an event refers to.

    The caller owns the transaction; records are flushed, never committed.
    """

    def __init__(
        self,
        *,
        config: IngestConfig | None = None,
        repository_service: RepositoryService | None = None,
    ) -> None:
        """Initialize with label conventions and repository lookup."""
        self._config = config or settings.ingest
        self._repositories = repository_service or RepositoryService()

    def resolve_instance(
        self,
        session: Session,
        event: DeploymentEvent,
        *,
        now: datetime,
    ) -> WorkloadInstance:
        """Return the workload instance for the event, creating records as needed."""
        cluster = self.resolve_cluster(session, event.source.cluster_id.strip())
        workload = self.resolve_workload(session, event)

        instance, created = _get_or_create(
            session,
            WorkloadInstance,
            {
                "workload_id": workload.id,
                "cluster_id": cluster.id,
                "namespace": event.workload.namespace.strip(),
            },
            {
                "environment": event.environment.strip(),
                "first_seen_at": now,
                "last_updated_at": now,
            },
        )
        if created:
            logger.info(
                "Registered workload instance %s/%s in %s (%s)",
                workload.kind,
                workload.name,
                cluster.name,
                instance.namespace,
            )

        environment = event.environment.strip()
        if instance.environment != environment:
            instance.environment = environment
        if event.revision is not None:
            instance.current_version = event.revision.current.strip()
        instance.labels = dict(event.labels)
        session.flush()
        return instance

    def resolve_cluster(self, session: Session, name: str) -> Cluster:
        """Return the cluster with the given name, creating it if needed."""
        cluster, created = _get_or_create(session, Cluster, {"name": name}, {})
        if created:
            logger.info("Registered cluster %s", name)
        return cluster

    def resolve_workload(self, session: Session, event: DeploymentEvent) -> Workload:
        """Return the workload for the event, refreshing label-derived fields."""
        labels = event.labels
        team = _label(labels, self._config.team_label)
        part_of = _label(labels, self._config.part_of_label)
        repository_url = _label(labels, self._config.repository_label)

        workload, _ = _get_or_create(
            session,
            Workload,
            {"kind": event.workload.kind.strip(), "name": event.workload.name.strip()},
            {"team": team, "part_of": part_of},
        )
        if workload.team != team:
            workload.team = team
        if workload.part_of != part_of:
            workload.part_of = part_of
        if repository_url is not None:
            repository = self._repositories.find_or_create(session, repository_url)
            if workload.repository_id != repository.id:
                workload.repository_id = repository.id
                workload.repository = repository
        return workload
