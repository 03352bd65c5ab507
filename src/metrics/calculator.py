"""DORA metric calculations over version history rows.

Everything here is a pure function of its inputs: rows are read, never
modified, and no I/O happens, so any number of callers may compute over the
same snapshot concurrently.

Percentiles use nearest-rank selection on the ascending durations: the value
at ``floor(n * p)`` clamped to ``n - 1``. The median is the same rule with
``p = 0.5`` (for even sizes this is the upper middle value).

Rollback detection compares version strings lexicographically, so
``"2.0.0"`` after ``"10.0.0"`` is not a rollback. Rollback counts downstream
depend on this ordering; it is intentionally not semver-aware.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from itertools import groupby
from typing import Iterable, Protocol, Sequence

from time_utils import ensure_utc, seconds_between, whole_days_between

PHASE_COMPLETED = "completed"
PHASE_FAILED = "failed"


class TimelineEntry(Protocol):
    """Attributes of a version history row the calculations read."""

    id: int | None
    workload_instance_id: int
    previous_version: str | None
    current_version: str
    deployment_phase: str | None
    deployment_started_at: datetime | None
    deployment_completed_at: datetime | None
    deployment_duration_seconds: int | None
    detected_at: datetime


class PerformanceGrade(str, Enum):
    """DORA performance bands, best first."""

    ELITE = "ELITE"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def ordinal(self) -> int:
        """Return the rank of the grade (ELITE=0 .. LOW=3)."""
        return _GRADE_ORDER.index(self)


_GRADE_ORDER = [
    PerformanceGrade.ELITE,
    PerformanceGrade.HIGH,
    PerformanceGrade.MEDIUM,
    PerformanceGrade.LOW,
]


@dataclass(frozen=True)
class DateRange:
    """Inclusive reporting window."""

    start: datetime
    end: datetime

    def days(self) -> int:
        """Return whole days covered, never less than one."""
        return max(1, whole_days_between(self.start, self.end))


@dataclass(frozen=True)
class DeploymentFrequencyMetrics:
    total_deployments: int
    deployments_per_day: float
    days_covered: int


@dataclass(frozen=True)
class LeadTimeMetrics:
    average_seconds: float
    median_seconds: int
    p95_seconds: int
    p99_seconds: int
    min_seconds: int
    max_seconds: int
    sample_size: int


@dataclass(frozen=True)
class ChangeFailureRateMetrics:
    total_deployments: int
    failed_deployments: int
    failure_rate: float


@dataclass(frozen=True)
class MttrMetrics:
    average_seconds: float
    median_seconds: int
    p95_seconds: int
    total_failures: int
    total_recoveries: int


@dataclass(frozen=True)
class PerformanceGrades:
    overall: PerformanceGrade
    deployment_frequency: PerformanceGrade
    lead_time: PerformanceGrade
    change_failure_rate: PerformanceGrade
    mttr: PerformanceGrade


@dataclass(frozen=True)
class DoraMetrics:
    """The four DORA metrics with their grades for one slice of the timeline."""

    deployment_frequency: DeploymentFrequencyMetrics
    lead_time: LeadTimeMetrics
    change_failure_rate: ChangeFailureRateMetrics
    mttr: MttrMetrics
    grades: PerformanceGrades


EMPTY_LEAD_TIME = LeadTimeMetrics(0.0, 0, 0, 0, 0, 0, 0)
EMPTY_MTTR = MttrMetrics(0.0, 0, 0, 0, 0)


def deployment_duration(entry: TimelineEntry) -> int | None:
    """Return the stored duration, else completed minus started, else None."""
    if entry.deployment_duration_seconds is not None:
        return entry.deployment_duration_seconds
    if entry.deployment_started_at is None or entry.deployment_completed_at is None:
        return None
    return seconds_between(entry.deployment_started_at, entry.deployment_completed_at)


def is_failed(entry: TimelineEntry) -> bool:
    """Return True for rows whose phase is failed."""
    return entry.deployment_phase == PHASE_FAILED


def is_rollback(entry: TimelineEntry) -> bool:
    """Return True when the current version sorts before the previous one."""
    if entry.previous_version is None:
        return False
    return entry.current_version < entry.previous_version


def nearest_rank(sorted_values: Sequence[int], percentile: float) -> int:
    """Return the nearest-rank percentile of ascending values (0 when empty)."""
    if not sorted_values:
        return 0
    index = min(math.floor(len(sorted_values) * percentile), len(sorted_values) - 1)
    return sorted_values[index]


def _mean(values: Sequence[int]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def durations_of(entries: Iterable[TimelineEntry]) -> list[int]:
    """Return known durations of the entries, in input order."""
    return [duration for duration in map(deployment_duration, entries) if duration is not None]


def average_lead_time(entries: Iterable[TimelineEntry]) -> float:
    """Return the mean known duration, or 0.0 when none is known."""
    return _mean(durations_of(entries))


def calculate_lead_time(entries: Sequence[TimelineEntry]) -> LeadTimeMetrics:
    """Summarize deployment durations."""
    durations = sorted(durations_of(entries))
    if not durations:
        return EMPTY_LEAD_TIME
    return LeadTimeMetrics(
        average_seconds=_mean(durations),
        median_seconds=nearest_rank(durations, 0.5),
        p95_seconds=nearest_rank(durations, 0.95),
        p99_seconds=nearest_rank(durations, 0.99),
        min_seconds=durations[0],
        max_seconds=durations[-1],
        sample_size=len(durations),
    )


def _chronological_key(entry: TimelineEntry) -> tuple[datetime, int]:
    return ensure_utc(entry.detected_at), entry.id or 0


def recovery_durations(entries: Sequence[TimelineEntry]) -> tuple[int, list[int]]:
    """Pair failures with the next completion per workload instance.

    Each instance has a single pending-failure slot. A failed row opens it
    only when empty, so consecutive failures count once; a completed row
    closes an open slot as one recovery.

    Returns the number of failures opened and the recovery durations.
    """
    failures = 0
    recoveries: list[int] = []
    by_instance = sorted(entries, key=lambda entry: entry.workload_instance_id)
    for _, group in groupby(by_instance, key=lambda entry: entry.workload_instance_id):
        pending: TimelineEntry | None = None
        for entry in sorted(group, key=_chronological_key):
            if entry.deployment_phase == PHASE_FAILED:
                if pending is None:
                    pending = entry
                    failures += 1
            elif entry.deployment_phase == PHASE_COMPLETED and pending is not None:
                recovered_at = entry.deployment_completed_at or entry.detected_at
                recoveries.append(seconds_between(pending.detected_at, recovered_at))
                pending = None
    return failures, recoveries


def calculate_mttr(entries: Sequence[TimelineEntry]) -> MttrMetrics:
    """Summarize time to recovery from failed deployments."""
    failures, recoveries = recovery_durations(entries)
    ordered = sorted(recoveries)
    return MttrMetrics(
        average_seconds=_mean(ordered),
        median_seconds=nearest_rank(ordered, 0.5),
        p95_seconds=nearest_rank(ordered, 0.95),
        total_failures=failures,
        total_recoveries=len(ordered),
    )


def calculate_change_failure_rate(entries: Sequence[TimelineEntry]) -> ChangeFailureRateMetrics:
    """Return the share of failed deployments as a percentage."""
    total = len(entries)
    failed = sum(1 for entry in entries if is_failed(entry))
    rate = (failed / total) * 100 if total else 0.0
    return ChangeFailureRateMetrics(total_deployments=total, failed_deployments=failed, failure_rate=rate)


def calculate_deployment_frequency(
    entries: Sequence[TimelineEntry],
    date_range: DateRange,
) -> DeploymentFrequencyMetrics:
    """Return deployments per day across the range."""
    days = date_range.days()
    total = len(entries)
    return DeploymentFrequencyMetrics(
        total_deployments=total,
        deployments_per_day=total / days,
        days_covered=days,
    )


def grade_deployment_frequency(deployments_per_day: float) -> PerformanceGrade:
    if deployments_per_day >= 1.0:
        return PerformanceGrade.ELITE
    if deployments_per_day >= 0.14:
        return PerformanceGrade.HIGH
    if deployments_per_day >= 0.03:
        return PerformanceGrade.MEDIUM
    return PerformanceGrade.LOW


def grade_lead_time(average_seconds: float) -> PerformanceGrade:
    if average_seconds < 3600:
        return PerformanceGrade.ELITE
    if average_seconds < 604800:
        return PerformanceGrade.HIGH
    if average_seconds < 2592000:
        return PerformanceGrade.MEDIUM
    return PerformanceGrade.LOW


def grade_change_failure_rate(failure_rate: float) -> PerformanceGrade:
    if failure_rate <= 15:
        return PerformanceGrade.ELITE
    if failure_rate <= 30:
        return PerformanceGrade.HIGH
    if failure_rate <= 45:
        return PerformanceGrade.MEDIUM
    return PerformanceGrade.LOW


def grade_mttr(average_seconds: float) -> PerformanceGrade:
    if average_seconds < 3600:
        return PerformanceGrade.ELITE
    if average_seconds < 86400:
        return PerformanceGrade.HIGH
    if average_seconds < 604800:
        return PerformanceGrade.MEDIUM
    return PerformanceGrade.LOW


def grade_from_ordinal(average_ordinal: float) -> PerformanceGrade:
    """Bucket a mean grade ordinal back into a grade."""
    if average_ordinal < 0.5:
        return PerformanceGrade.ELITE
    if average_ordinal < 1.5:
        return PerformanceGrade.HIGH
    if average_ordinal < 2.5:
        return PerformanceGrade.MEDIUM
    return PerformanceGrade.LOW


def overall_grade(*grades: PerformanceGrade) -> PerformanceGrade:
    """Combine individual grades by their mean ordinal."""
    if not grades:
        return PerformanceGrade.LOW
    return grade_from_ordinal(sum(grade.ordinal for grade in grades) / len(grades))


def compute_metrics(entries: Sequence[TimelineEntry], date_range: DateRange) -> DoraMetrics:
    """Compute all four DORA metrics and their grades."""
    frequency = calculate_deployment_frequency(entries, date_range)
    lead_time = calculate_lead_time(entries)
    failure_rate = calculate_change_failure_rate(entries)
    mttr = calculate_mttr(entries)

    frequency_grade = grade_deployment_frequency(frequency.deployments_per_day)
    lead_time_grade = grade_lead_time(lead_time.average_seconds)
    failure_rate_grade = grade_change_failure_rate(failure_rate.failure_rate)
    mttr_grade = grade_mttr(mttr.average_seconds)
    grades = PerformanceGrades(
        overall=overall_grade(frequency_grade, lead_time_grade, failure_rate_grade, mttr_grade),
        deployment_frequency=frequency_grade,
        lead_time=lead_time_grade,
        change_failure_rate=failure_rate_grade,
        mttr=mttr_grade,
    )
    return DoraMetrics(
        deployment_frequency=frequency,
        lead_time=lead_time,
        change_failure_rate=failure_rate,
        mttr=mttr,
        grades=grades,
    )
