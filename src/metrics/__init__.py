"""DORA metrics over the version history timeline."""

from metrics.calculator import DateRange, DoraMetrics, PerformanceGrade, compute_metrics

__all__ = ["DateRange", "DoraMetrics", "PerformanceGrade", "compute_metrics"]
