"""
Prometheus-backed metrics sink.

Callers name gauges with dotted names (``sequence.total``); each maps to a
Prometheus gauge under the ``registry_watch_`` namespace.

Gauges are shared per registry for the whole process: a collector can be
registered only once, so every sink on the same registry sets the same
Gauge object.
"""

import re
import threading
from typing import Dict, Protocol, Tuple

from prometheus_client import CollectorRegistry, Gauge, REGISTRY

_INVALID_CHARS = re.compile(r"[^a-zA-Z0-9_]")

# (registry, full metric name) -> gauge
_gauges: Dict[Tuple[CollectorRegistry, str], Gauge] = {}
_gauges_lock = threading.Lock()


class MetricsSink(Protocol):
    def gauge(self, name: str, value: float) -> None:
        ...


def metric_name(name: str, namespace: str = "registry_watch") -> str:
    """``sequence.total`` -> ``registry_watch_sequence_total``"""
    return f"{namespace}_{_INVALID_CHARS.sub('_', name)}"


def get_gauge(name: str, registry: CollectorRegistry = REGISTRY) -> Gauge:
    """Return the gauge called ``name`` on ``registry``, creating it once."""
    key = (registry, name)
    with _gauges_lock:
        gauge = _gauges.get(key)
        if gauge is None:
            gauge = Gauge(name, f"Change consumer gauge {name}", registry=registry)
            _gauges[key] = gauge
        return gauge


class PrometheusMetricsSink:
    """Sets process-wide gauges; any number of sinks may share a registry."""

    def __init__(self, registry: CollectorRegistry = REGISTRY, namespace: str = "registry_watch"):
        self.registry = registry
        self.namespace = namespace

    def gauge(self, name: str, value: float) -> None:
        get_gauge(metric_name(name, self.namespace), self.registry).set(value)
