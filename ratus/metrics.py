"""Service metrics exposed in the Prometheus text exposition format."""

from __future__ import annotations

import bisect
import math
import threading
from typing import Iterable, Iterator, Sequence

_SOURCE_BUCKETS = (0.01, 0.1, 0.5, 1.0, 2.0, 5.0)


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if float(value).is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value))


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _escape_help(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n")


def _format_labels(pairs: Iterable[tuple[str, str]]) -> str:
    items = [f'{name}="{_escape_label(value)}"' for name, value in pairs]
    return "{" + ",".join(items) + "}" if items else ""


class _CounterChild:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0.0

    def inc(self, amount: float = 1.0) -> None:
        """Increase the counter by a non-negative amount."""
        if amount < 0:
            raise ValueError("counter cannot be decreased")
        with self._lock:
            self._value += amount

    @property
    def value(self) -> float:
        return self._value


class _GaugeChild:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0.0

    def set(self, value: float) -> None:
        """Set the gauge to a value."""
        with self._lock:
            self._value = float(value)

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    def dec(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value -= amount

    @property
    def value(self) -> float:
        return self._value


class _HistogramChild:
    def __init__(self, bounds: Sequence[float]) -> None:
        self._lock = threading.Lock()
        self._bounds = bounds
        self._counts = [0] * (len(bounds) + 1)
        self._sum = 0.0

    def observe(self, value: float) -> None:
        """Record one observation."""
        index = bisect.bisect_left(self._bounds, value)
        with self._lock:
            self._counts[index] += 1
            self._sum += value

    def snapshot(self) -> tuple[list[int], float, int]:
        """Return cumulative bucket counts, the sum and the total count."""
        with self._lock:
            counts = list(self._counts)
            total = self._sum
        cumulative = []
        running = 0
        for count in counts:
            running += count
            cumulative.append(running)
        return cumulative, total, running


class _Metric:
    kind = ""

    def __init__(
        self,
        name: str,
        description: str,
        labelnames: Sequence[str] = (),
        *,
        registry: Registry | None = None,
    ) -> None:
        self.name = name
        self.description = description
        self.labelnames = tuple(labelnames)
        self._lock = threading.Lock()
        self._children: dict[tuple[str, ...], object] = {}
        if not self.labelnames:
            self._children[()] = self._new_child()
        if registry is not None:
            registry.register(self)

    def _new_child(self) -> object:
        raise NotImplementedError

    def _child(self, values: Sequence[object]) -> object:
        if len(values) != len(self.labelnames):
            raise ValueError(
                f"{self.name}: expected {len(self.labelnames)} label values, got {len(values)}"
            )
        key = tuple(str(value) for value in values)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._children[key] = self._new_child()
        return child

    def _sorted_children(self) -> list[tuple[tuple[str, ...], object]]:
        with self._lock:
            return sorted(self._children.items())

    def _samples(self) -> Iterator[str]:
        for key, child in self._sorted_children():
            labels = _format_labels(zip(self.labelnames, key))
            yield f"{self.name}{labels} {_format_value(child.value)}"  # type: ignore[attr-defined]

    def _render(self) -> list[str]:
        samples = list(self._samples())
        if not samples:
            return []
        return [
            f"# HELP {self.name} {_escape_help(self.description)}",
            f"# TYPE {self.name} {self.kind}",
            *samples,
        ]


class Counter(_Metric):
    """A monotonically increasing value, optionally split by labels."""

    kind = "counter"

    def _new_child(self) -> _CounterChild:
        return _CounterChild()

    def labels(self, *args: object) -> _CounterChild:
        """Return the series for the given label values."""
        return self._child(args)  # type: ignore[return-value]


class Gauge(_Metric):
    """A value that can go up and down, optionally split by labels."""

    kind = "gauge"

    def _new_child(self) -> _GaugeChild:
        return _GaugeChild()

    def labels(self, *args: object) -> _GaugeChild:
        """Return the series for the given label values."""
        return self._child(args)  # type: ignore[return-value]


class Histogram(_Metric):
    """Observations counted in cumulative buckets, optionally split by labels."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        description: str,
        labelnames: Sequence[str] = (),
        *,
        buckets: Sequence[float] = _SOURCE_BUCKETS,
        registry: Registry | None = None,
    ) -> None:
        bounds = sorted(float(b) for b in buckets if not math.isinf(b))
        if not bounds:
            raise ValueError("histogram needs at least one finite bucket")
        self.buckets = tuple(bounds)
        super().__init__(name, description, labelnames, registry=registry)

    def _new_child(self) -> _HistogramChild:
        return _HistogramChild(self.buckets)

    def labels(self, *args: object) -> _HistogramChild:
        """Return the series for the given label values."""
        return self._child(args)  # type: ignore[return-value]

    def observe(self, value: float) -> None:
        """Record an observation on a histogram without labels."""
        if self.labelnames:
            raise ValueError(f"{self.name}: labelled histogram needs labels() first")
        self._child(()).observe(value)  # type: ignore[attr-defined]

    def _samples(self) -> Iterator[str]:
        bounds = [*(_format_value(b) for b in self.buckets), "+Inf"]
        for key, child in self._sorted_children():
            pairs = list(zip(self.labelnames, key))
            counts, total, count = child.snapshot()  # type: ignore[attr-defined]
            for bound, cumulative in zip(bounds, counts):
                labels = _format_labels([*pairs, ("le", bound)])
                yield f"{self.name}_bucket{labels} {cumulative}"
            labels = _format_labels(pairs)
            yield f"{self.name}_sum{labels} {_format_value(total)}"
            yield f"{self.name}_count{labels} {count}"


class Registry:
    """A collection of metrics rendered together."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._metrics: dict[str, _Metric] = {}

    def register(self, metric: _Metric) -> _Metric:
        """Add a metric; names must be unique within the registry."""
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"metric {metric.name!r} is already registered")
            self._metrics[metric.name] = metric
        return metric

    def render(self) -> str:
        """Return all metrics in the Prometheus text exposition format."""
        with self._lock:
            metrics = sorted(self._metrics.values(), key=lambda m: m.name)
        lines = [line for metric in metrics for line in metric._render()]
        return "\n".join(lines) + "\n" if lines else ""


REGISTRY = Registry()
"""The registry holding the service metrics."""

REQUEST_HISTOGRAM = Histogram(
    "ratus_request_duration_seconds",
    "Request response time in seconds",
    ("topic", "method", "endpoint", "status_code"),
    registry=REGISTRY,
)

CHORE_HISTOGRAM = Histogram(
    "ratus_chore_duration_seconds",
    "Periodic background jobs execution time in seconds",
    registry=REGISTRY,
)

DELAY_GAUGE = Gauge(
    "ratus_task_schedule_delay_seconds",
    "Task schedule delay in seconds",
    ("topic", "producer", "consumer"),
    registry=REGISTRY,
)

EXECUTION_GAUGE = Gauge(
    "ratus_task_execution_duration_seconds",
    "Task execution time in seconds",
    ("topic", "producer", "consumer"),
    registry=REGISTRY,
)

PRODUCED_COUNTER = Counter(
    "ratus_task_produced_count_total",
    "Total number of tasks produced",
    ("topic", "producer"),
    registry=REGISTRY,
)

CONSUMED_COUNTER = Counter(
    "ratus_task_consumed_count_total",
    "Total number of tasks consumed",
    ("topic", "producer", "consumer"),
    registry=REGISTRY,
)

COMMITTED_COUNTER = Counter(
    "ratus_task_committed_count_total",
    "Total number of tasks committed",
    ("topic", "producer", "consumer"),
    registry=REGISTRY,
)


def observe_request(
    topic: str, method: str, endpoint: str, status_code: int, seconds: float
) -> None:
    """Record the response time of one handled request."""
    REQUEST_HISTOGRAM.labels(topic, method, endpoint, str(status_code)).observe(seconds)