"""In-process metrics rendered in the Prometheus text exposition format."""

from __future__ import annotations

from bisect import bisect_left
from typing import Iterable


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description

    def _samples(self) -> Iterable[str]:
        raise NotImplementedError

    def render(self) -> str:
        header = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]
        return "\n".join([*header, *self._samples()]) + "\n"


class Counter(_Metric):
    kind = "counter"

    def __init__(self, name: str, description: str = "") -> None:
        super().__init__(name, description)
        self._value = 0.0

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        self._value += amount

    @property
    def value(self) -> float:
        return self._value

    def _samples(self) -> Iterable[str]:
        yield f"{self.name} {self._value}"


class Histogram(_Metric):
    kind = "histogram"

    def __init__(self, name: str, buckets: list[float], description: str = "") -> None:
        super().__init__(name, description)
        self._bounds = sorted(buckets)
        # one slot per bound plus the +Inf overflow
        self._hits = [0] * (len(self._bounds) + 1)
        self._sum = 0.0

    @property
    def count(self) -> int:
        return sum(self._hits)

    def observe(self, value: float) -> None:
        self._hits[bisect_left(self._bounds, value)] += 1
        self._sum += value

    def _samples(self) -> Iterable[str]:
        cumulative = 0
        for bound, hits in zip(self._bounds, self._hits):
            cumulative += hits
            yield f'{self.name}_bucket{{le="{bound}"}} {cumulative}'
        yield f'{self.name}_bucket{{le="+Inf"}} {self.count}'
        yield f"{self.name}_sum {self._sum}"
        yield f"{self.name}_count {self.count}"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: dict[str, _Metric] = {}

    def register(self, metric):
        """Add ``metric``; a metric already registered under the same name wins."""

        return self._metrics.setdefault(metric.name, metric)

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values()) + "\n"


GLOBAL_REGISTRY = MetricsRegistry()

TOKENS_ISSUED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("grafana_broker_tokens_issued_total", "Derived tokens minted upstream")
)
TOKENS_RENEWED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("grafana_broker_tokens_renewed_total", "Derived token leases renewed")
)
TOKENS_REVOKED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("grafana_broker_tokens_revoked_total", "Derived tokens deleted upstream")
)
ROOT_ROTATIONS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("grafana_broker_root_rotations_total", "Root credential rotations committed")
)
UPSTREAM_ERRORS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("grafana_broker_upstream_errors_total", "Grafana Cloud API and transport errors")
)
UPSTREAM_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "grafana_broker_upstream_latency_seconds",
        buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0],
        description="Latency of Grafana Cloud API calls",
    )
)
