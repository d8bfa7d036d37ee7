import pytest

from etcdbr.metrics import (
    DEFAULT_REGISTRY,
    GC_SNAPSHOT_COUNTER,
    LABEL_KIND,
    LABEL_SUCCEEDED,
    VALIDATION_DURATION_SECONDS,
    Counter,
    Gauge,
    Histogram,
    MetricVec,
    Registry,
    cartesian_product,
    generate_label_combinations,
    get_combinations,
    initialize_metrics,
    wrap_in_slice,
)


def test_wrap_in_slice():
    assert wrap_in_slice(["a", "b", "c"]) == [["a"], ["b"], ["c"]]


def test_cartesian_product():
    input1 = [["p", "q"], ["r", "s"]]
    input2 = [["1", "2"], ["3", "4"]]
    assert cartesian_product(input1, input2) == [
        ["p", "q", "1", "2"],
        ["p", "q", "3", "4"],
        ["r", "s", "1", "2"],
        ["r", "s", "3", "4"],
    ]


def test_cartesian_product_leaves_inputs_untouched():
    input1 = [["p"], ["r"]]
    input2 = [["1"], ["3"]]
    cartesian_product(input1, input2)
    assert input1 == [["p"], ["r"]]


def test_generate_label_combinations_one_label():
    assert generate_label_combinations({"a": ["1", "2", "3"]}) == [
        {"a": "1"},
        {"a": "2"},
        {"a": "3"},
    ]


def test_generate_label_combinations_two_labels():
    assert generate_label_combinations({"a": ["1", "2", "3"], "b": ["4", "5"]}) == [
        {"a": "1", "b": "4"},
        {"a": "1", "b": "5"},
        {"a": "2", "b": "4"},
        {"a": "2", "b": "5"},
        {"a": "3", "b": "4"},
        {"a": "3", "b": "5"},
    ]


def test_get_combinations_empty():
    assert get_combinations([]) == []
    assert generate_label_combinations({}) == []


def test_counter_increments_and_rejects_negative():
    counter = Counter()
    counter.inc()
    counter.inc(2)
    assert counter.value == 3
    with pytest.raises(ValueError):
        counter.inc(-1)
    assert counter.value == 3


def test_gauge_set_and_inc():
    gauge = Gauge()
    gauge.set(10)
    gauge.inc(-4)
    assert gauge.value == 6


def test_histogram_buckets_are_cumulative():
    histogram = Histogram(buckets=[1, 5])
    for value in (0.5, 3, 3, 7):
        histogram.observe(value)
    assert histogram.count == 4
    assert histogram.sum == 13.5
    assert histogram.buckets == {1: 1, 5: 3, float("inf"): 4}


def test_metric_vec_name_and_children():
    vec = MetricVec(Counter, "total", "help", ["x"], namespace="ns", subsystem="sub")
    assert vec.name == "ns_sub_total"
    first = vec.with_labels({"x": "1"})
    first.inc()
    assert vec.with_labels({"x": "1"}) is first
    assert [(labels, child.value) for labels, child in vec.samples()] == [({"x": "1"}, 1)]


def test_metric_vec_rejects_wrong_labels():
    vec = MetricVec(Gauge, "g", "help", ["x"])
    with pytest.raises(ValueError):
        vec.with_labels({"y": "1"})


def test_registry_rejects_duplicates():
    registry = Registry()
    vec = MetricVec(Counter, "c", "help", [])
    registry.register(vec)
    with pytest.raises(ValueError, match="duplicate"):
        registry.register(MetricVec(Counter, "c", "other", []))


def test_initialize_metrics_zero_values():
    registry = Registry()
    initialize_metrics(registry)
    samples = registry.collect()
    gc = [labels for name, labels, _ in samples if name == "etcdbr_snapshot_gc_total"]
    assert len(gc) == 6
    assert all(set(labels) == {LABEL_KIND, LABEL_SUCCEEDED} for labels in gc)
    validation = [labels for name, labels, _ in samples if name == "etcdbr_validation_duration_seconds"]
    assert sorted(labels[LABEL_SUCCEEDED] for labels in validation) == ["false", "true"]