"""Prometheus text exposition for backend counters and latencies."""

from __future__ import annotations

from typing import Dict, Iterable


def _label_suffix(labels: tuple[tuple[str, str], ...]) -> str:
    if not labels:
        return ""
    rendered = ",".join(f'{key}="{value}"' for key, value in labels)
    return "{" + rendered + "}"


class Counter:
    """Monotonic counter, optionally split by a fixed set of label names."""

    def __init__(self, name: str, description: str = "", labelnames: Iterable[str] = ()) -> None:
        self.name = name
        self.description = description
        self.labelnames = tuple(labelnames)
        self._values: Dict[tuple[tuple[str, str], ...], float] = {}

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        if set(labels) != set(self.labelnames):
            raise ValueError(f"{self.name} expects labels {self.labelnames}, got {tuple(labels)}")
        key = tuple((name, str(labels[name])) for name in self.labelnames)
        self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, **labels: str) -> float:
        key = tuple((name, str(labels[name])) for name in self.labelnames)
        return self._values.get(key, 0.0)

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} counter"]
        if not self._values and not self.labelnames:
            lines.append(f"{self.name} 0.0")
        for key, value in self._values.items():
            lines.append(f"{self.name}{_label_suffix(key)} {value}")
        return "\n".join(lines) + "\n"


class Histogram:
    def __init__(self, name: str, buckets: list[float], description: str = "") -> None:
        self.name = name
        self.description = description
        self._buckets = sorted(buckets)
        self._counts = {b: 0 for b in self._buckets}
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        self._count += 1
        self._sum += value
        for bucket in self._buckets:
            if value <= bucket:
                self._counts[bucket] += 1

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} histogram"]
        for bucket in self._buckets:
            lines.append(f'{self.name}_bucket{{le="{bucket}"}} {self._counts[bucket]}')
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {self._count}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, object] = {}

    def register(self, metric):
        self._metrics[metric.name] = metric
        return metric

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values()) + "\n"


GLOBAL_REGISTRY = MetricsRegistry()

REQUEST_COUNTER = GLOBAL_REGISTRY.register(
    Counter("npmcreds_requests_total", "Total backend API requests", labelnames=("operation",))
)
CREDENTIALS_ISSUED = GLOBAL_REGISTRY.register(
    Counter("npmcreds_credentials_issued_total", "Tokens minted against the registry", labelnames=("role",))
)
CREDENTIALS_REVOKED = GLOBAL_REGISTRY.register(
    Counter("npmcreds_credentials_revoked_total", "Revocations by outcome", labelnames=("outcome",))
)
UPSTREAM_FAILURES = GLOBAL_REGISTRY.register(
    Counter("npmcreds_upstream_failures_total", "Failed registry calls", labelnames=("operation",))
)
REQUEST_LATENCY = GLOBAL_REGISTRY.register(
    Histogram(
        "npmcreds_request_latency_seconds",
        buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Backend request latency",
    )
)
