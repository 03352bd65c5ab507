"""Data models for the deploytrail control plane."""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.orm.attributes import set_committed_value

# SQLAlchemy base
Base = declarative_base()

# Timeline enums
DeploymentPhaseEnum = Enum(
    "pending",
    "progressing",
    "completed",
    "failed",
    name="deployment_phase",
    native_enum=False,
)
DeploymentStatusEnum = Enum(
    "success",
    "failed",
    name="deployment_status",
    native_enum=False,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Identity records
class Cluster(Base):
    """Kubernetes cluster reported by a fleet agent."""

    __tablename__ = "clusters"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Repository(Base):
    """Source repository a workload is built from."""

    __tablename__ = "repositories"

    id = Column(Integer, primary_key=True)
    url = Column(String(1000), nullable=False, unique=True)
    provider = Column(String(100), nullable=False)
    owner = Column(String(255), nullable=True)
    name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Workload(Base):
    """Logical workload (Deployment, StatefulSet, ...) independent of placement."""

    __tablename__ = "workloads"
    __table_args__ = (UniqueConstraint("kind", "name", name="uq_workloads_kind_name"),)

    id = Column(Integer, primary_key=True)
    kind = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    team = Column(String(255), nullable=True)
    part_of = Column(String(255), nullable=True)
    repository_id = Column(Integer, ForeignKey("repositories.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    repository = relationship("Repository", lazy="joined")

    @property
    def repository_url(self) -> str | None:
        """Return the linked repository URL, if any."""
        return self.repository.url if self.repository is not None else None


class WorkloadInstance(Base):
    """A workload placed in one cluster and namespace."""

    __tablename__ = "workload_instances"
    __table_args__ = (
        UniqueConstraint(
            "workload_id",
            "cluster_id",
            "namespace",
            name="uq_workload_instances_placement",
        ),
    )

    id = Column(Integer, primary_key=True)
    workload_id = Column(Integer, ForeignKey("workloads.id"), nullable=False)
    cluster_id = Column(Integer, ForeignKey("clusters.id"), nullable=False)
    namespace = Column(String(255), nullable=False)
    environment = Column(String(255), nullable=False)
    current_version = Column(String(255), nullable=True)
    labels = Column(JSON, nullable=True)
    first_seen_at = Column(DateTime(timezone=True), nullable=False)
    last_updated_at = Column(DateTime(timezone=True), nullable=False)

    workload = relationship("Workload", lazy="joined")
    cluster = relationship("Cluster", lazy="joined")


# Release metadata
class Release(Base):
    """Upstream release metadata keyed by repository and tag."""

    __tablename__ = "releases"
    __table_args__ = (
        UniqueConstraint("repository_id", "tag_name", name="uq_releases_repository_tag"),
    )

    id = Column(Integer, primary_key=True)
    repository_id = Column(Integer, ForeignKey("repositories.id"), nullable=False)
    tag_name = Column(String(255), nullable=False)
    name = Column(String(500), nullable=True)
    body = Column(Text, nullable=True)
    html_url = Column(String(1000), nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    is_draft = Column(Boolean, nullable=False, default=False)
    is_prerelease = Column(Boolean, nullable=False, default=False)
    authors = Column(JSON, nullable=True)
    provider = Column(String(100), nullable=False)
    fetched_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    repository = relationship("Repository", lazy="joined")


class ReleaseFetchAttempt(Base):
    """Negative cache of failed release lookups per repository and version."""

    __tablename__ = "release_fetch_attempts"
    __table_args__ = (
        UniqueConstraint("repository_id", "version", name="uq_release_fetch_attempts_version"),
    )

    id = Column(Integer, primary_key=True)
    repository_id = Column(Integer, ForeignKey("repositories.id"), nullable=False)
    version = Column(String(255), nullable=False)
    attempted_at = Column(DateTime(timezone=True), nullable=False)


# Timeline
class VersionHistory(Base):
    """One detected version transition for a workload instance."""

    __tablename__ = "version_history"

    id = Column(Integer, primary_key=True)
    workload_instance_id = Column(Integer, ForeignKey("workload_instances.id"), nullable=False)
    previous_version = Column(String(255), nullable=True)
    current_version = Column(String(255), nullable=False)
    deployment_phase = Column(DeploymentPhaseEnum, nullable=True)
    deployment_status = Column(DeploymentStatusEnum, nullable=True)
    deployment_started_at = Column(DateTime(timezone=True), nullable=True)
    deployment_completed_at = Column(DateTime(timezone=True), nullable=True)
    deployment_failed_at = Column(DateTime(timezone=True), nullable=True)
    deployment_duration_seconds = Column(Integer, nullable=True)
    detected_at = Column(DateTime(timezone=True), nullable=False)
    release_id = Column(Integer, ForeignKey("releases.id"), nullable=True)
    last_notified_phase = Column(DeploymentPhaseEnum, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    workload_instance = relationship("WorkloadInstance", lazy="joined")
    release = relationship("Release")


# A null previous version must collide with another null, so the key is
# indexed through coalesce rather than a plain unique constraint.
Index(
    "uq_version_history_transition",
    VersionHistory.workload_instance_id,
    VersionHistory.current_version,
    func.coalesce(VersionHistory.previous_version, ""),
    unique=True,
)
Index(
    "ix_version_history_instance_detected",
    VersionHistory.workload_instance_id,
    VersionHistory.detected_at,
)
Index("ix_version_history_detected_at", VersionHistory.detected_at)


def _ensure_aware_timestamp(value: datetime | None) -> datetime | None:
    """Normalize timestamps to UTC when timezone info is missing."""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


_AWARE_COLUMNS = {
    VersionHistory: (
        "deployment_started_at",
        "deployment_completed_at",
        "deployment_failed_at",
        "detected_at",
        "created_at",
        "updated_at",
    ),
    WorkloadInstance: ("first_seen_at", "last_updated_at"),
    ReleaseFetchAttempt: ("attempted_at",),
    Release: ("published_at", "fetched_at", "created_at"),
}


def _normalize_loaded_timestamps(target: object, *_args: object) -> None:
    """Ensure loaded timestamps retain timezone awareness on every backend."""
    state = target.__dict__
    for name in _AWARE_COLUMNS[type(target)]:
        if name in state:
            set_committed_value(target, name, _ensure_aware_timestamp(state[name]))


for _model in _AWARE_COLUMNS:
    event.listen(_model, "load", _normalize_loaded_timestamps)
    event.listen(_model, "refresh", _normalize_loaded_timestamps)
