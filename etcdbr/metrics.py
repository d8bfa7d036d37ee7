"""In-process metrics for snapshots, validation, restoration and defragmentation."""

from __future__ import annotations

import math
import threading
from collections.abc import Iterator, Mapping, Sequence

from etcdbr.snapshots import SNAPSHOT_KIND_CHUNK, SNAPSHOT_KIND_DELTA, SNAPSHOT_KIND_FULL

LABEL_SUCCEEDED = "succeeded"
VALUE_SUCCEEDED_TRUE = "true"
VALUE_SUCCEEDED_FALSE = "false"
LABEL_KIND = "kind"

NAMESPACE_ETCDBR = "etcdbr"
SUBSYSTEM_SNAPSHOT = "snapshot"

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

LABELS: dict[str, list[str]] = {
    LABEL_KIND: [SNAPSHOT_KIND_FULL, SNAPSHOT_KIND_DELTA, SNAPSHOT_KIND_CHUNK],
    LABEL_SUCCEEDED: [VALUE_SUCCEEDED_FALSE, VALUE_SUCCEEDED_TRUE],
}


class Counter:
    """A value that only goes up."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.value = 0.0

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self.value += amount


class Gauge:
    """A value that can be set and moved either way."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.value = 0.0

    def set(self, value: float) -> None:
        with self._lock:
            self.value = float(value)

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self.value += amount


class Histogram:
    """A distribution of observed values over cumulative buckets."""

    def __init__(self, buckets: Sequence[float] = DEFAULT_BUCKETS) -> None:
        self._lock = threading.Lock()
        self.upper_bounds = tuple(sorted(buckets)) + (math.inf,)
        self._bucket_counts = [0] * len(self.upper_bounds)
        self.count = 0
        self.sum = 0.0

    def observe(self, value: float) -> None:
        with self._lock:
            self.count += 1
            self.sum += value
            for position, bound in enumerate(self.upper_bounds):
                if value <= bound:
                    self._bucket_counts[position] += 1
                    break

    @property
    def buckets(self) -> dict[float, int]:
        """Cumulative observation count for each upper bound."""
        with self._lock:
            result = {}
            total = 0
            for bound, count in zip(self.upper_bounds, self._bucket_counts):
                total += count
                result[bound] = total
            return result


class MetricVec:
    """A family of metrics of one type, partitioned by label values."""

    def __init__(
        self,
        metric_type: type,
        name: str,
        help: str,
        label_names: Sequence[str],
        namespace: str = "",
        subsystem: str = "",
    ) -> None:
        self.metric_type = metric_type
        self.name = "_".join(part for part in (namespace, subsystem, name) if part)
        self.help = help
        self.label_names = tuple(label_names)
        self._children: dict[tuple[str, ...], object] = {}
        self._lock = threading.Lock()

    def with_labels(self, labels: Mapping[str, str]):
        """Return the metric for ``labels``, creating it at its zero value if needed."""
        if set(labels) != set(self.label_names):
            raise ValueError(
                f"inconsistent label names for {self.name}: "
                f"got {sorted(labels)}, want {sorted(self.label_names)}"
            )
        key = tuple(labels[name] for name in self.label_names)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self.metric_type()
                self._children[key] = child
            return child

    def samples(self) -> Iterator[tuple[dict[str, str], object]]:
        """Yield each label set with its metric."""
        with self._lock:
            items = list(self._children.items())
        for key, child in items:
            yield dict(zip(self.label_names, key)), child


class Registry:
    """A set of metric families, unique by name."""

    def __init__(self) -> None:
        self._metrics: dict[str, object] = {}
        self._lock = threading.Lock()

    def register(self, metric) -> None:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"duplicate metrics collector registration attempted: {metric.name}")
            self._metrics[metric.name] = metric

    def collect(self) -> list[tuple[str, dict[str, str], object]]:
        """Return (name, labels, metric) for every sample of every registered family."""
        with self._lock:
            families = list(self._metrics.values())
        return [
            (family.name, labels, child)
            for family in families
            for labels, child in family.samples()
        ]


GC_SNAPSHOT_COUNTER = MetricVec(
    Counter, "gc_total", "Total number of garbage collected snapshots.",
    [LABEL_KIND, LABEL_SUCCEEDED], NAMESPACE_ETCDBR, SUBSYSTEM_SNAPSHOT,
)
LATEST_SNAPSHOT_REVISION = MetricVec(
    Gauge, "latest_revision", "Revision number of latest snapshot taken.",
    [LABEL_KIND], NAMESPACE_ETCDBR, SUBSYSTEM_SNAPSHOT,
)
LATEST_SNAPSHOT_TIMESTAMP = MetricVec(
    Gauge, "latest_timestamp", "Timestamp of latest snapshot taken.",
    [LABEL_KIND], NAMESPACE_ETCDBR, SUBSYSTEM_SNAPSHOT,
)
SNAPSHOT_DURATION_SECONDS = MetricVec(
    Histogram, "duration_seconds", "Total latency distribution of saving snapshot to object store.",
    [LABEL_KIND, LABEL_SUCCEEDED], NAMESPACE_ETCDBR, SUBSYSTEM_SNAPSHOT,
)
VALIDATION_DURATION_SECONDS = MetricVec(
    Histogram, "validation_duration_seconds", "Total latency distribution of validating data directory.",
    [LABEL_SUCCEEDED], NAMESPACE_ETCDBR,
)
RESTORATION_DURATION_SECONDS = MetricVec(
    Histogram, "restoration_duration_seconds", "Total latency distribution of restoring from snapshot.",
    [LABEL_SUCCEEDED], NAMESPACE_ETCDBR,
)
DEFRAGMENTATION_DURATION_SECONDS = MetricVec(
    Histogram, "defragmentation_duration_seconds", "Total latency distribution of defragmentation of etcd.",
    [LABEL_SUCCEEDED], NAMESPACE_ETCDBR,
)


def wrap_in_slice(s: Sequence[str]) -> list[list[str]]:
    """Wrap each string in its own list: [p, q] -> [[p], [q]]."""
    return [[value] for value in s]


def cartesian_product(a: Sequence[Sequence[str]], b: Sequence[Sequence[str]]) -> list[list[str]]:
    """Join every list of ``a`` with every list of ``b``, in order."""
    return [[*left, *right] for left in a for right in b]


def get_combinations(values_list: Sequence[Sequence[str]]) -> list[list[str]]:
    """Return every combination taking one value from each list."""
    if not values_list:
        return []
    if len(values_list) == 1:
        return wrap_in_slice(values_list[0])
    return cartesian_product(wrap_in_slice(values_list[0]), get_combinations(values_list[1:]))


def generate_label_combinations(label_values: Mapping[str, Sequence[str]]) -> list[dict[str, str]]:
    """Return every label set that takes one value for each label."""
    labels = list(label_values)
    combinations = get_combinations([label_values[label] for label in labels])
    return [dict(zip(labels, combination)) for combination in combinations]


def initialize_metrics(registry: Registry) -> None:
    """Create every known label set at its zero value and register all metrics."""
    families = [
        (GC_SNAPSHOT_COUNTER, (LABEL_KIND, LABEL_SUCCEEDED)),
        (LATEST_SNAPSHOT_REVISION, (LABEL_KIND,)),
        (LATEST_SNAPSHOT_TIMESTAMP, (LABEL_KIND,)),
        (SNAPSHOT_DURATION_SECONDS, (LABEL_KIND, LABEL_SUCCEEDED)),
        (VALIDATION_DURATION_SECONDS, (LABEL_SUCCEEDED,)),
        (RESTORATION_DURATION_SECONDS, (LABEL_SUCCEEDED,)),
        (DEFRAGMENTATION_DURATION_SECONDS, (LABEL_SUCCEEDED,)),
    ]
    for family, label_names in families:
        for combination in generate_label_combinations({name: LABELS[name] for name in label_names}):
            family.with_labels(combination)
    for family, _ in families:
        registry.register(family)


DEFAULT_REGISTRY = Registry()
initialize_metrics(DEFAULT_REGISTRY)