"""Team and workload rollups, rankings, trends and breakdowns.

These functions group timeline rows and feed each group through
``compute_metrics``. Rows are expected to have their workload instance (and
its workload and cluster) loaded.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Mapping, Sequence

from metrics.calculator import (
    PHASE_COMPLETED,
    DateRange,
    DoraMetrics,
    PerformanceGrade,
    average_lead_time,
    compute_metrics,
    grade_change_failure_rate,
    grade_lead_time,
    is_failed,
    is_rollback,
)
from models import VersionHistory
from time_utils import ensure_utc

UNASSIGNED_TEAM = "unassigned"
GRANULARITIES = ("hour", "day", "week", "month")


@dataclass(frozen=True)
class GroupScorecard:
    """Metrics and standing of one team or workload among its peers."""

    key: str
    metrics: DoraMetrics
    workload_count: int = 0
    rank: int = 0
    percentile: float = 0.0
    above_average: bool = False

    @property
    def overall_grade(self) -> PerformanceGrade:
        return self.metrics.grades.overall

    @property
    def total_deployments(self) -> int:
        return self.metrics.deployment_frequency.total_deployments


@dataclass(frozen=True)
class WorkloadSummary:
    workload_id: int
    workload_name: str
    workload_kind: str
    deployment_count: int
    failure_count: int
    failure_rate: float
    average_lead_time_seconds: float
    performance_grade: PerformanceGrade


@dataclass(frozen=True)
class TrendPoint:
    period: str
    period_start: datetime
    period_end: datetime
    deployment_count: int
    success_count: int
    failure_count: int
    rollback_count: int
    average_lead_time_seconds: float


@dataclass(frozen=True)
class InstanceBreakdown:
    instance_id: int
    cluster_id: int
    cluster_name: str
    namespace: str
    environment: str
    deployment_count: int
    failure_count: int
    failure_rate: float
    average_lead_time_seconds: float


def team_of(team: str | None) -> str:
    """Return the rollup key for a workload team label."""
    if team is None or not team.strip():
        return UNASSIGNED_TEAM
    return team


def entry_team(entry: VersionHistory) -> str:
    return team_of(entry.workload_instance.workload.team)


def entry_workload(entry: VersionHistory) -> str:
    return str(entry.workload_instance.workload_id)


def group_entries(
    entries: Sequence[VersionHistory],
    key: Callable[[VersionHistory], str],
) -> dict[str, list[VersionHistory]]:
    """Group rows by a key function, preserving input order within groups."""
    groups: dict[str, list[VersionHistory]] = defaultdict(list)
    for entry in entries:
        groups[key(entry)].append(entry)
    return dict(groups)


def rank_groups(
    groups: Mapping[str, Sequence[VersionHistory]],
    date_range: DateRange,
    *,
    workload_counts: Mapping[str, int] | None = None,
) -> list[GroupScorecard]:
    """Score every group and order them best first.

    Groups are ranked by overall grade, then by deployment count descending.
    Percentile is ``(total - rank) / (total - 1) * 100`` (100 for a single
    group). A group is above average when its grade ordinal does not exceed
    the mean ordinal of all groups.
    """
    counts = workload_counts or {}
    scored = [
        GroupScorecard(key=key, metrics=compute_metrics(list(rows), date_range), workload_count=counts.get(key, 0))
        for key, rows in groups.items()
    ]
    scored.sort(key=lambda card: (card.overall_grade.ordinal, -card.total_deployments))
    if not scored:
        return []

    total = len(scored)
    mean_ordinal = sum(card.overall_grade.ordinal for card in scored) / total
    ranked = []
    for index, card in enumerate(scored):
        rank = index + 1
        percentile = ((total - rank) / (total - 1)) * 100 if total > 1 else 100.0
        ranked.append(
            replace(
                card,
                rank=rank,
                percentile=percentile,
                above_average=card.overall_grade.ordinal <= mean_ordinal,
            )
        )
    return ranked


def summarize_workload(
    workload_id: int,
    workload_name: str,
    workload_kind: str,
    entries: Sequence[VersionHistory],
) -> WorkloadSummary:
    """Summarize one workload; its grade is the worse of failure-rate and lead-time grades."""
    if not entries:
        return WorkloadSummary(workload_id, workload_name, workload_kind, 0, 0, 0.0, 0.0, PerformanceGrade.LOW)

    failures = sum(1 for entry in entries if is_failed(entry))
    failure_rate = (failures / len(entries)) * 100
    lead_time = average_lead_time(entries)
    grade = max(
        grade_change_failure_rate(failure_rate),
        grade_lead_time(lead_time),
        key=lambda item: item.ordinal,
    )
    return WorkloadSummary(
        workload_id=workload_id,
        workload_name=workload_name,
        workload_kind=workload_kind,
        deployment_count=len(entries),
        failure_count=failures,
        failure_rate=failure_rate,
        average_lead_time_seconds=lead_time,
        performance_grade=grade,
    )


def _period_bounds(detected_at: datetime, granularity: str) -> tuple[datetime, datetime]:
    moment = ensure_utc(detected_at)
    if granularity == "hour":
        start = moment.replace(minute=0, second=0, microsecond=0)
        return start, start + timedelta(hours=1)
    day = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity == "week":
        start = day - timedelta(days=day.weekday())
        return start, start + timedelta(days=7)
    if granularity == "month":
        start = day.replace(day=1)
        if start.month == 12:
            return start, start.replace(year=start.year + 1, month=1)
        return start, start.replace(month=start.month + 1)
    return day, day + timedelta(days=1)


def calculate_trends(entries: Sequence[VersionHistory], granularity: str = "day") -> list[TrendPoint]:
    """Bucket rows by detection period, newest period first.

    Unknown granularities fall back to days.
    """
    buckets: dict[tuple[datetime, datetime], list[VersionHistory]] = defaultdict(list)
    for entry in entries:
        buckets[_period_bounds(entry.detected_at, granularity)].append(entry)

    points = [
        TrendPoint(
            period=start.isoformat(),
            period_start=start,
            period_end=end,
            deployment_count=len(rows),
            success_count=sum(1 for row in rows if row.deployment_phase == PHASE_COMPLETED),
            failure_count=sum(1 for row in rows if is_failed(row)),
            rollback_count=sum(1 for row in rows if is_rollback(row)),
            average_lead_time_seconds=average_lead_time(rows),
        )
        for (start, end), rows in buckets.items()
    ]
    points.sort(key=lambda point: point.period_start, reverse=True)
    return points


def instance_breakdown(entries: Sequence[VersionHistory]) -> list[InstanceBreakdown]:
    """Per-instance counts for a workload, busiest instance first."""
    breakdown = []
    for rows in group_entries(entries, lambda entry: str(entry.workload_instance_id)).values():
        instance = rows[0].workload_instance
        failures = sum(1 for row in rows if is_failed(row))
        breakdown.append(
            InstanceBreakdown(
                instance_id=instance.id,
                cluster_id=instance.cluster_id,
                cluster_name=instance.cluster.name,
                namespace=instance.namespace,
                environment=instance.environment,
                deployment_count=len(rows),
                failure_count=failures,
                failure_rate=(failures / len(rows)) * 100,
                average_lead_time_seconds=average_lead_time(rows),
            )
        )
    breakdown.sort(key=lambda item: item.deployment_count, reverse=True)
    return breakdown
