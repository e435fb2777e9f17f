"""
Observability for the change consumer: metrics, error reporting, progress.
"""

from .error_reporting import ErrorReporter, LoggingErrorReporter
from .metrics import MetricsSink, PrometheusMetricsSink, get_gauge, metric_name
from .progress import Progress, ProgressReporter, compute_progress

__all__ = [
    "ErrorReporter",
    "LoggingErrorReporter",
    "MetricsSink",
    "PrometheusMetricsSink",
    "get_gauge",
    "metric_name",
    "Progress",
    "ProgressReporter",
    "compute_progress",
]
