"""Application metrics for observability.

Provides Prometheus-compatible metrics for:
- HTTP request counts and latencies
- Provider call counts and latencies, per provider and model
- Task, agent and virtual session state transitions
- Change events dropped by slow subscribers
"""

from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

# Provider calls take seconds to minutes; HTTP handlers take milliseconds.
DEFAULT_BUCKETS = [0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
PROVIDER_BUCKETS = [0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]


@dataclass
class Histogram:
    """Cumulative-bucket histogram for latency tracking."""

    buckets: list[float] = field(default_factory=lambda: list(DEFAULT_BUCKETS))
    counts: dict[float, int] = field(default_factory=lambda: defaultdict(int))
    sum: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket:
                self.counts[bucket] += 1

    def to_prometheus(self, name: str, labels: str = "") -> str:
        lines = []
        label_str = f"{{{labels}}}" if labels else ""
        extra = f", {labels}" if labels else ""

        for bucket in self.buckets:
            lines.append(f'{name}_bucket{{le="{bucket}"{extra}}} {self.counts[bucket]}')
        lines.append(f'{name}_bucket{{le="+Inf"{extra}}} {self.count}')
        lines.append(f"{name}_sum{label_str} {self.sum}")
        lines.append(f"{name}_count{label_str} {self.count}")
        return "\n".join(lines)


class MetricsRegistry:
    """Thread-safe metrics registry shared by the HTTP layer and the core."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)
        self._buckets: dict[str, list[float]] = {}

    def declare_buckets(self, name: str, buckets: list[float]) -> None:
        """Use custom buckets for a histogram family."""
        with self._lock:
            self._buckets[name] = list(buckets)

    def inc_counter(self, name: str, labels: dict[str, str] | None = None, value: int = 1) -> None:
        label_key = self._labels_to_key(labels)
        with self._lock:
            self._counters[name][label_key] += value

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        label_key = self._labels_to_key(labels)
        with self._lock:
            self._gauges[name][label_key] = value

    def observe_histogram(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        label_key = self._labels_to_key(labels)
        with self._lock:
            if label_key not in self._histograms[name]:
                buckets = self._buckets.get(name, DEFAULT_BUCKETS)
                self._histograms[name][label_key] = Histogram(buckets=list(buckets))
            self._histograms[name][label_key].observe(value)

    def counter_value(self, name: str, labels: dict[str, str] | None = None) -> int:
        with self._lock:
            return self._counters.get(name, {}).get(self._labels_to_key(labels), 0)

    def reset(self) -> None:
        """Drop all recorded values (bucket declarations are kept)."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()

    def _labels_to_key(self, labels: dict[str, str] | None) -> str:
        if not labels:
            return ""
        return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))

    def to_prometheus(self) -> str:
        """Generate Prometheus text format output."""
        lines = []

        with self._lock:
            for name, label_values in self._counters.items():
                lines.append(f"# TYPE {name} counter")
                for label_key, value in label_values.items():
                    label_str = f"{{{label_key}}}" if label_key else ""
                    lines.append(f"{name}{label_str} {value}")
                lines.append("")

            for name, label_values in self._gauges.items():
                lines.append(f"# TYPE {name} gauge")
                for label_key, value in label_values.items():
                    label_str = f"{{{label_key}}}" if label_key else ""
                    lines.append(f"{name}{label_str} {value}")
                lines.append("")

            for name, label_histograms in self._histograms.items():
                lines.append(f"# TYPE {name} histogram")
                for label_key, histogram in label_histograms.items():
                    lines.append(histogram.to_prometheus(name, label_key))
                lines.append("")

        return "\n".join(lines)

    def get_stats(self) -> dict[str, Any]:
        """Get metrics as a dictionary (for JSON endpoints)."""
        with self._lock:
            return {
                "counters": {k: dict(v) for k, v in self._counters.items()},
                "gauges": {k: dict(v) for k, v in self._gauges.items()},
                "histograms": {
                    k: {lk: {"count": h.count, "sum": h.sum} for lk, h in v.items()}
                    for k, v in self._histograms.items()
                },
            }


# Global metrics registry
metrics = MetricsRegistry()
metrics.declare_buckets("agentdesk_provider_call_duration_seconds", PROVIDER_BUCKETS)
metrics.declare_buckets("agentdesk_task_duration_seconds", PROVIDER_BUCKETS)


def record_request(method: str, path: str, status_code: int, duration: float) -> None:
    """Record an HTTP request."""
    labels = {"method": method, "path": path, "status": str(status_code)}
    metrics.inc_counter("agentdesk_http_requests_total", labels)
    metrics.observe_histogram("agentdesk_http_request_duration_seconds", duration, labels)


def record_provider_call(provider: str, model_id: str, status: str, duration: float) -> None:
    """Record one upstream provider call (status: success, error, timeout)."""
    metrics.inc_counter(
        "agentdesk_provider_calls_total",
        {"provider": provider, "model": model_id, "status": status},
    )
    metrics.observe_histogram(
        "agentdesk_provider_call_duration_seconds",
        duration,
        {"provider": provider},
    )


def record_key_exhausted(provider: str, model_id: str) -> None:
    metrics.inc_counter("agentdesk_keys_exhausted_total", {"provider": provider, "model": model_id})


def record_task_transition(agent_type: str, state: str, duration: float | None = None) -> None:
    """Record a task reaching ``state``; terminal states also carry a duration."""
    metrics.inc_counter("agentdesk_task_transitions_total", {"agent": agent_type, "state": state})
    if duration is not None:
        metrics.observe_histogram("agentdesk_task_duration_seconds", duration, {"agent": agent_type})


def record_agent_state(agent_type: str, state: str) -> None:
    metrics.inc_counter("agentdesk_agent_transitions_total", {"agent": agent_type, "state": state})


def record_session_transition(size_class: str, state: str) -> None:
    metrics.inc_counter("agentdesk_session_transitions_total", {"size": size_class, "state": state})


def record_event_dropped(subscriber: str) -> None:
    metrics.inc_counter("agentdesk_events_dropped_total", {"subscriber": subscriber})
