"""Database-backed metrics reports for workloads and teams."""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy import or_
from sqlalchemy.orm import Session

from metrics.calculator import (
    DateRange,
    DoraMetrics,
    average_lead_time,
    compute_metrics,
    is_failed,
)
from metrics.rollups import (
    UNASSIGNED_TEAM,
    GroupScorecard,
    InstanceBreakdown,
    TrendPoint,
    WorkloadSummary,
    calculate_trends,
    entry_team,
    entry_workload,
    group_entries,
    instance_breakdown,
    rank_groups,
    summarize_workload,
    team_of,
)
from models import VersionHistory, Workload, WorkloadInstance
from time_utils import ensure_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricsFilters:
    """Date range (inclusive) and optional placement filters for a report."""

    start: datetime
    end: datetime
    environment: str | None = None
    cluster_id: int | None = None
    granularity: str = "day"

    @property
    def date_range(self) -> DateRange:
        return DateRange(ensure_utc(self.start), ensure_utc(self.end))


@dataclass(frozen=True)
class WorkloadMetricsReport:
    workload_id: int
    workload_name: str
    workload_kind: str
    team: str | None
    metrics: DoraMetrics
    date_range: DateRange
    trends: list[TrendPoint] = field(default_factory=list)
    instances: list[InstanceBreakdown] = field(default_factory=list)


@dataclass(frozen=True)
class TeamComparison:
    rank: int
    total_teams: int
    percentile: float
    above_average: bool


@dataclass(frozen=True)
class TeamScorecard:
    team: str
    metrics: DoraMetrics
    workloads: list[WorkloadSummary]
    comparison: TeamComparison
    date_range: DateRange


@dataclass(frozen=True)
class ScorecardsOverview:
    """All-team leaderboard with fleet-wide aggregates."""

    teams: list[GroupScorecard]
    date_range: DateRange
    total_deployments: int
    overall_failure_rate: float
    overall_average_lead_time_seconds: float


class MetricsQueryService:
    """Loads timeline slices from the database and computes reports."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        """Initialize with a SQLAlchemy session factory."""
        self._session_factory = session_factory

    def get_workload_metrics(self, workload_id: int, filters: MetricsFilters) -> WorkloadMetricsReport | None:
        """Return DORA metrics, trends and instance breakdown for a workload."""

        def handler(session: Session) -> WorkloadMetricsReport | None:
            workload = session.get(Workload, workload_id)
            if workload is None:
                return None
            entries = _load_entries(
                session,
                filters,
                VersionHistory.workload_instance.has(WorkloadInstance.workload_id == workload_id),
            )
            return WorkloadMetricsReport(
                workload_id=workload.id,
                workload_name=workload.name or "",
                workload_kind=workload.kind or "",
                team=workload.team,
                metrics=compute_metrics(entries, filters.date_range),
                date_range=filters.date_range,
                trends=calculate_trends(entries, filters.granularity),
                instances=instance_breakdown(entries),
            )

        return self._execute(handler)

    def get_workload_rankings(self, filters: MetricsFilters) -> list[GroupScorecard]:
        """Rank workloads with deployments in the window, best first."""

        def handler(session: Session) -> list[GroupScorecard]:
            entries = _load_entries(session, filters)
            groups = group_entries(entries, entry_workload)
            return rank_groups(groups, filters.date_range, workload_counts={key: 1 for key in groups})

        return self._execute(handler)

    def get_all_team_scorecards(self, filters: MetricsFilters) -> ScorecardsOverview:
        """Rank every team that owns a workload, best first."""

        def handler(session: Session) -> ScorecardsOverview:
            return _team_overview(session, filters)

        return self._execute(handler)

    def get_team_scorecard(self, team: str, filters: MetricsFilters) -> TeamScorecard | None:
        """Return one team's metrics, workload breakdown and standing."""

        def handler(session: Session) -> TeamScorecard | None:
            workloads = _team_workloads(session, team)
            if not workloads:
                return None

            overview = _team_overview(session, filters)
            team_key = team_of(team)
            card = next((item for item in overview.teams if item.key == team_key), None)
            if card is None:
                comparison = TeamComparison(0, len(overview.teams), 0.0, False)
            else:
                comparison = TeamComparison(card.rank, len(overview.teams), card.percentile, card.above_average)

            workload_ids = [workload.id for workload in workloads]
            entries = _load_entries(
                session,
                filters,
                VersionHistory.workload_instance.has(WorkloadInstance.workload_id.in_(workload_ids)),
            )
            by_workload = group_entries(entries, entry_workload)
            summaries = [
                summarize_workload(
                    workload.id,
                    workload.name or "",
                    workload.kind or "",
                    by_workload.get(str(workload.id), []),
                )
                for workload in workloads
            ]
            summaries.sort(key=lambda summary: summary.deployment_count, reverse=True)
            return TeamScorecard(
                team=team_key,
                metrics=compute_metrics(entries, filters.date_range),
                workloads=summaries,
                comparison=comparison,
                date_range=filters.date_range,
            )

        return self._execute(handler)

    def _execute(self, handler):
        """Execute read-only report work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


def _load_entries(session: Session, filters: MetricsFilters, *criteria) -> list[VersionHistory]:
    """Load rows detected inside the window, applying placement filters."""
    date_range = filters.date_range
    query = session.query(VersionHistory).filter(
        VersionHistory.detected_at >= date_range.start,
        VersionHistory.detected_at <= date_range.end,
        *criteria,
    )
    if filters.environment is not None:
        query = query.filter(VersionHistory.workload_instance.has(WorkloadInstance.environment == filters.environment))
    if filters.cluster_id is not None:
        query = query.filter(VersionHistory.workload_instance.has(WorkloadInstance.cluster_id == filters.cluster_id))
    entries = query.order_by(VersionHistory.detected_at.asc(), VersionHistory.id.asc()).all()
    logger.debug("Loaded %s version history rows for metrics", len(entries))
    return entries


def _team_workloads(session: Session, team: str) -> list[Workload]:
    query = session.query(Workload)
    if team == UNASSIGNED_TEAM:
        query = query.filter(or_(Workload.team.is_(None), Workload.team == ""))
    else:
        query = query.filter(Workload.team == team)
    return query.order_by(Workload.id.asc()).all()


def _team_overview(session: Session, filters: MetricsFilters) -> ScorecardsOverview:
    workloads = session.query(Workload).all()
    workload_counts: dict[str, int] = {}
    for workload in workloads:
        key = team_of(workload.team)
        workload_counts[key] = workload_counts.get(key, 0) + 1

    entries = _load_entries(session, filters)
    groups: dict[str, list[VersionHistory]] = {key: [] for key in workload_counts}
    for key, rows in group_entries(entries, entry_team).items():
        groups.setdefault(key, []).extend(rows)

    total = len(entries)
    failures = sum(1 for entry in entries if is_failed(entry))
    return ScorecardsOverview(
        teams=rank_groups(groups, filters.date_range, workload_counts=workload_counts),
        date_range=filters.date_range,
        total_deployments=total,
        overall_failure_rate=(failures / total) * 100 if total else 0.0,
        overall_average_lead_time_seconds=average_lead_time(entries),
    )
