"""Deployment timeline schema.

Revision ID: 0001_deployment_timeline
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0001_deployment_timeline"
down_revision = None
branch_labels = None
depends_on = None

_PHASES = ("pending", "progressing", "completed", "failed")


def upgrade() -> None:
    """Create identity, release and version history tables."""
    op.create_table(
        "clusters",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "repositories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("url", sa.String(length=1000), nullable=False, unique=True),
        sa.Column("provider", sa.String(length=100), nullable=False),
        sa.Column("owner", sa.String(length=255), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "workloads",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("kind", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("team", sa.String(length=255), nullable=True),
        sa.Column("part_of", sa.String(length=255), nullable=True),
        sa.Column("repository_id", sa.Integer(), sa.ForeignKey("repositories.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("kind", "name", name="uq_workloads_kind_name"),
    )
    op.create_table(
        "workload_instances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("workload_id", sa.Integer(), sa.ForeignKey("workloads.id"), nullable=False),
        sa.Column("cluster_id", sa.Integer(), sa.ForeignKey("clusters.id"), nullable=False),
        sa.Column("namespace", sa.String(length=255), nullable=False),
        sa.Column("environment", sa.String(length=255), nullable=False),
        sa.Column("current_version", sa.String(length=255), nullable=True),
        sa.Column("labels", sa.JSON(), nullable=True),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "workload_id",
            "cluster_id",
            "namespace",
            name="uq_workload_instances_placement",
        ),
    )
    op.create_table(
        "releases",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("repository_id", sa.Integer(), sa.ForeignKey("repositories.id"), nullable=False),
        sa.Column("tag_name", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=500), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("html_url", sa.String(length=1000), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_draft", sa.Boolean(), nullable=False),
        sa.Column("is_prerelease", sa.Boolean(), nullable=False),
        sa.Column("authors", sa.JSON(), nullable=True),
        sa.Column("provider", sa.String(length=100), nullable=False),
        sa.Column("fetched_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("repository_id", "tag_name", name="uq_releases_repository_tag"),
    )
    op.create_table(
        "release_fetch_attempts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("repository_id", sa.Integer(), sa.ForeignKey("repositories.id"), nullable=False),
        sa.Column("version", sa.String(length=255), nullable=False),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("repository_id", "version", name="uq_release_fetch_attempts_version"),
    )
    op.create_table(
        "version_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "workload_instance_id",
            sa.Integer(),
            sa.ForeignKey("workload_instances.id"),
            nullable=False,
        ),
        sa.Column("previous_version", sa.String(length=255), nullable=True),
        sa.Column("current_version", sa.String(length=255), nullable=False),
        sa.Column(
            "deployment_phase",
            sa.Enum(*_PHASES, name="deployment_phase", native_enum=False),
            nullable=True,
        ),
        sa.Column(
            "deployment_status",
            sa.Enum("success", "failed", name="deployment_status", native_enum=False),
            nullable=True,
        ),
        sa.Column("deployment_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deployment_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deployment_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deployment_duration_seconds", sa.Integer(), nullable=True),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("release_id", sa.Integer(), sa.ForeignKey("releases.id"), nullable=True),
        sa.Column(
            "last_notified_phase",
            sa.Enum(*_PHASES, name="deployment_phase", native_enum=False),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "uq_version_history_transition",
        "version_history",
        [
            "workload_instance_id",
            "current_version",
            sa.text("coalesce(previous_version, '')"),
        ],
        unique=True,
    )
    op.create_index(
        "ix_version_history_instance_detected",
        "version_history",
        ["workload_instance_id", "detected_at"],
    )
    op.create_index("ix_version_history_detected_at", "version_history", ["detected_at"])


def downgrade() -> None:
    """Drop deployment timeline tables."""
    op.drop_index("ix_version_history_detected_at", table_name="version_history")
    op.drop_index("ix_version_history_instance_detected", table_name="version_history")
    op.drop_index("uq_version_history_transition", table_name="version_history")
    op.drop_table("version_history")
    op.drop_table("release_fetch_attempts")
    op.drop_table("releases")
    op.drop_table("workload_instances")
    op.drop_table("workloads")
    op.drop_table("repositories")
    op.drop_table("clusters")
