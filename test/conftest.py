"""Pytest configuration for the deploytrail test suite."""

import os
import sys
from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker


def _ensure_test_env() -> None:
    """Seed required environment variables for tests."""
    os.environ.setdefault("DATABASE_URL", "sqlite://")
    os.environ.setdefault("GITHUB_ENABLED", "false")
    os.environ.setdefault("NOTIFICATIONS_ENABLED", "true")
    os.environ.setdefault("RELEASE_FETCH_ENABLED", "true")
    os.environ.setdefault("CELERY_BROKER_URL", "memory://")
    os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")


_ensure_test_env()

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))


def _enable_sqlite_savepoints(engine, *, begin_statement: str = "BEGIN") -> None:
    """Let SQLAlchemy own SQLite transactions so SAVEPOINT works."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql(begin_statement)


@pytest.fixture()
def sqlite_session_factory() -> Generator[sessionmaker, None, None]:
    """Provide a sqlite session factory and ensure engine cleanup."""
    from models import Base

    engine = create_engine("sqlite:///:memory:")
    _enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture()
def file_session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    """Provide a file-backed sqlite session factory usable from many threads.

    Write transactions start with BEGIN IMMEDIATE so concurrent writers queue
    on the database lock instead of failing on upgrade.
    """
    from models import Base

    engine = create_engine(
        f"sqlite:///{tmp_path / 'deploytrail.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    _enable_sqlite_savepoints(engine, begin_statement="BEGIN IMMEDIATE")
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture()
def make_event():
    """Return a builder for deployment events with sensible defaults."""
    from datetime import datetime, timezone

    from events.schema import DeploymentEvent

    def _make(
        current: str | None = "v1.0.0",
        previous: str | None = None,
        *,
        phase: str | None = None,
        outcome: str | None = None,
        occurred_at: datetime | None = None,
        event_id: str = "evt-1",
        cluster: str = "prod-eu-1",
        namespace: str = "payments",
        name: str = "checkout",
        kind: str = "Deployment",
        environment: str = "production",
        labels: dict[str, str] | None = None,
        error_message: str | None = None,
    ) -> DeploymentEvent:
        payload = {
            "event_id": event_id,
            "occurred_at": occurred_at or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc),
            "environment": environment,
            "source": {"cluster_id": cluster, "agent_version": "1.4.0"},
            "workload": {"kind": kind, "name": name, "namespace": namespace},
            "labels": labels if labels is not None else {"team": "payments"},
            "phase": phase,
            "outcome": outcome,
        }
        if current is not None:
            payload["revision"] = {"current": current, "previous": previous}
        if error_message is not None:
            payload["error"] = {"message": error_message}
        return DeploymentEvent.model_validate(payload)

    return _make


@pytest.fixture()
def make_instance():
    """Return a helper that persists a cluster, workload and instance."""
    from datetime import datetime, timezone

    from models import Cluster, Repository, Workload, WorkloadInstance

    def _make(
        session,
        *,
        name: str = "checkout",
        cluster: str = "prod-eu-1",
        namespace: str = "payments",
        environment: str = "production",
        team: str | None = "payments",
        repository_url: str | None = None,
    ) -> WorkloadInstance:
        cluster_row = session.query(Cluster).filter_by(name=cluster).first()
        if cluster_row is None:
            cluster_row = Cluster(name=cluster)
            session.add(cluster_row)
        repository = None
        if repository_url is not None:
            repository = session.query(Repository).filter_by(url=repository_url).first()
            if repository is None:
                repository = Repository(url=repository_url, provider="github")
                session.add(repository)
        workload = session.query(Workload).filter_by(kind="Deployment", name=name).first()
        if workload is None:
            workload = Workload(kind="Deployment", name=name, team=team, repository=repository)
            session.add(workload)
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        instance = WorkloadInstance(
            workload=workload,
            cluster=cluster_row,
            namespace=namespace,
            environment=environment,
            first_seen_at=now,
            last_updated_at=now,
        )
        session.add(instance)
        session.flush()
        return instance

    return _make
