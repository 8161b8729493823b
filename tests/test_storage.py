from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from tracetap.core.models import LogRecord, MetricPoint, Span
from tracetap.core.storage import DAY_MS, HOUR_MS, StorageError, TelemetryStore

# Mid-hour, so bucket boundaries are not hit by accident
NOW = 1_700_000_000_000 - (1_700_000_000_000 % HOUR_MS) + 30 * 60 * 1000


def make_span(span_id, timestamp=NOW, **kwargs):
    kwargs.setdefault("model", "gpt-4o")
    kwargs.setdefault("provider", "openai")
    kwargs.setdefault("status", 200)
    return Span(id=span_id, timestamp=timestamp, **kwargs)


def tree_ids(nodes):
    return [(node["id"], tree_ids(node["children"])) for node in nodes]


# -----------------------------------------------------------------------------
# Inserts and retention
# -----------------------------------------------------------------------------

def test_span_round_trip(store):
    span = make_span(
        "s1",
        request_headers={"authorization": "[REDACTED]"},
        request_body={"messages": [{"role": "user", "content": "hi"}]},
        tags=["prod", "chat"],
        attributes={"streaming": False},
        prompt_tokens=3,
        completion_tokens=4,
        total_tokens=7,
    )
    store.insert_span(span)

    stored = store.get_span("s1")
    assert stored.trace_id == "s1"
    assert stored.request_body == {"messages": [{"role": "user", "content": "hi"}]}
    assert stored.tags == ["prod", "chat"]
    assert stored.attributes == {"streaming": False}
    assert stored.total_tokens == 7
    assert store.get_span("missing") is None


def test_retention_keeps_newest(tmp_path):
    store = TelemetryStore(str(tmp_path / "small.db"), max_traces=2, max_logs=1, max_metrics=1)
    try:
        for i, ts in enumerate((1000, 2000, 3000)):
            store.insert_span(make_span(f"s{i}", timestamp=ts))
            store.insert_log(LogRecord(id=f"l{i}", timestamp=ts))
            store.insert_metric(MetricPoint(id=f"m{i}", timestamp=ts, name="n"))

        assert [s.id for s in store.get_traces()] == ["s2", "s1"]
        assert store.counts() == {"traces": 2, "logs": 1, "metrics": 1}
        assert store.get_log("l2") is not None
        assert store.get_metric("m0") is None
    finally:
        store.close()


def test_retention_ties_evict_oldest_insert(tmp_path):
    store = TelemetryStore(str(tmp_path / "ties.db"), max_traces=2)
    try:
        for span_id in ("a", "b", "c"):
            store.insert_span(make_span(span_id, timestamp=1000))

        assert sorted(s.id for s in store.get_traces()) == ["b", "c"]
    finally:
        store.close()


def test_concurrent_inserts_respect_retention(tmp_path):
    store = TelemetryStore(str(tmp_path / "busy.db"), max_traces=5)
    spans = [make_span(f"s{i:02d}", timestamp=1000 + i) for i in range(40)]
    try:
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(store.insert_span, reversed(spans)))

        assert store.count_traces() == 5
        newest = sorted(spans, key=lambda s: s.timestamp)[-5:]
        assert sorted(s.id for s in store.get_traces()) == sorted(s.id for s in newest)
    finally:
        store.close()


def test_failed_insert_leaves_prior_rows(store):
    store.insert_span(make_span("dup", span_name="first"))

    with pytest.raises(StorageError):
        store.insert_span(make_span("dup", span_name="second"))

    assert store.count_traces() == 1
    assert store.get_span("dup").span_name == "first"


def test_insert_hook_failure_does_not_fail_insert(store):
    seen = []

    def hook(kind, summary):
        seen.append((kind, summary["id"]))
        raise RuntimeError("listener gone")

    store.set_insert_hook(hook)
    store.insert_span(make_span("s1"))
    store.insert_log(LogRecord(id="l1"))

    assert seen == [("span", "s1"), ("log", "l1")]
    assert store.counts()["traces"] == 1


# -----------------------------------------------------------------------------
# Queries
# -----------------------------------------------------------------------------

def test_trace_filters(store):
    store.insert_span(make_span("ok", timestamp=NOW - 10, estimated_cost=0.5, span_name="chat hello"))
    store.insert_span(make_span("err", timestamp=NOW, status=429, model="claude-3-haiku", provider="anthropic"))
    store.insert_span(make_span("cheap", timestamp=NOW - 20, estimated_cost=0.001, span_type="tool"))

    assert [s.id for s in store.get_traces(filters={"status": "error"})] == ["err"]
    assert store.count_traces({"status": "success"}) == 2
    assert [s.id for s in store.get_traces(filters={"q": "hello"})] == ["ok"]
    assert [s.id for s in store.get_traces(filters={"cost_min": 0.1})] == ["ok"]
    assert [s.id for s in store.get_traces(filters={"span_type": "tool"})] == ["cheap"]
    assert [s.id for s in store.get_traces(filters={"date_from": NOW - 15})] == ["err", "ok"]
    assert [s.id for s in store.get_traces(limit=1, offset=1)] == ["ok"]
    assert store.get_distinct_models() == ["claude-3-haiku", "gpt-4o"]
    assert store.get_distinct_providers() == ["anthropic", "openai"]


def test_log_filters(store):
    store.insert_log(LogRecord(id="a", timestamp=1, severity_number=9, service_name="cli", body="started"))
    store.insert_log(LogRecord(id="b", timestamp=2, severity_number=17, service_name="cli", event_name="api_error"))
    store.insert_log(LogRecord(id="c", timestamp=3, severity_number=13, service_name="other"))

    assert [r.id for r in store.get_logs(filters={"severity_min": 13})] == ["c", "b"]
    assert store.count_logs({"service_name": "cli"}) == 2
    assert [r.id for r in store.get_logs(filters={"q": "start"})] == ["a"]
    assert store.get_distinct_event_names() == ["api_error"]
    assert store.get_distinct_log_services() == ["cli", "other"]


def test_metric_summary(store):
    store.insert_metric(MetricPoint(id="1", timestamp=10, name="tokens", metric_type="sum", value_int=5))
    store.insert_metric(MetricPoint(id="2", timestamp=20, name="tokens", metric_type="sum", value_int=7))
    store.insert_metric(MetricPoint(id="3", timestamp=15, name="cpu", value_double=0.5))

    summary = {row["name"]: row for row in store.get_metric_summary()}

    assert summary["tokens"]["data_points"] == 2
    assert summary["tokens"]["total"] == 12
    assert summary["tokens"]["max_value"] == 7
    assert summary["tokens"]["last_timestamp"] == 20
    assert summary["cpu"]["metric_type"] == "gauge"
    assert [row["name"] for row in store.get_metric_summary("cpu")] == ["cpu"]


# -----------------------------------------------------------------------------
# Span trees
# -----------------------------------------------------------------------------

def test_span_tree_nests_children(store):
    store.insert_span(make_span("A", trace_id="T", timestamp=NOW, duration_ms=100, total_tokens=10))
    store.insert_span(make_span("B", trace_id="T", parent_id="A", timestamp=NOW + 10, duration_ms=50, total_tokens=5))
    store.insert_span(make_span("C", trace_id="T", parent_id="B", timestamp=NOW + 20, duration_ms=200))

    tree = store.get_span_tree("C")

    assert tree_ids(tree["spans"]) == [("A", [("B", [("C", [])])])]
    assert tree["trace"]["span_count"] == 3
    assert tree["trace"]["start_time"] == NOW
    assert tree["trace"]["duration_ms"] == 220
    assert tree["trace"]["total_tokens"] == 15


def test_span_tree_root_with_two_children(store):
    store.insert_span(make_span("A", trace_id="T", timestamp=NOW))
    store.insert_span(make_span("B", trace_id="T", parent_id="A", timestamp=NOW + 1))
    store.insert_span(make_span("C", trace_id="T", parent_id="A", timestamp=NOW + 2))

    tree = store.get_span_tree("A")

    assert tree["trace"]["span_count"] == 3
    assert tree_ids(tree["spans"]) == [("A", [("B", []), ("C", [])])]


def test_span_tree_dangling_parent_becomes_root(store):
    store.insert_span(make_span("A", trace_id="T", timestamp=1))
    store.insert_span(make_span("orphan", trace_id="T", parent_id="never-seen", timestamp=2))

    tree = store.get_span_tree("A")

    assert tree_ids(tree["spans"]) == [("A", []), ("orphan", [])]


def test_span_tree_cycle_lists_every_span_once(store):
    store.insert_span(make_span("root", trace_id="T", timestamp=1))
    store.insert_span(make_span("X", trace_id="T", parent_id="Y", timestamp=2))
    store.insert_span(make_span("Y", trace_id="T", parent_id="X", timestamp=3))
    store.insert_span(make_span("self", trace_id="T", parent_id="self", timestamp=4))

    tree = store.get_span_tree("root")

    assert tree_ids(tree["spans"]) == [("root", []), ("self", []), ("X", [("Y", [])])]


def test_span_tree_unknown_span(store):
    assert store.get_span_tree("nope") is None


# -----------------------------------------------------------------------------
# Aggregates
# -----------------------------------------------------------------------------

def test_token_trends_are_zero_filled(store):
    store.insert_span(make_span("now", timestamp=NOW, prompt_tokens=10, completion_tokens=5, total_tokens=15))
    store.insert_span(make_span("hour-ago", timestamp=NOW - HOUR_MS, total_tokens=4, estimated_cost=0.25))
    store.insert_span(make_span("too-old", timestamp=NOW - 2 * DAY_MS, total_tokens=1000))

    trends = store.get_token_trends("hour", days=1, now=NOW)

    assert len(trends) == 25
    assert [t["bucket"] for t in trends] == sorted(t["bucket"] for t in trends)
    assert trends[-1]["total_tokens"] == 15
    assert trends[-1]["prompt_tokens"] == 10
    assert trends[-2]["total_tokens"] == 4
    assert trends[-2]["total_cost"] == 0.25
    assert sum(t["total_tokens"] for t in trends) == 19
    assert sum(t["request_count"] for t in trends) == 2
    assert trends[0]["total_tokens"] == 0


def test_daily_trends_and_empty_windows(store):
    store.insert_span(make_span("a", timestamp=NOW, total_tokens=3, status=500))

    daily = store.get_daily_stats(days=7, now=NOW)

    assert len(daily) == 8
    assert daily[-1]["requests"] == 1
    assert daily[-1]["errors"] == 1
    assert store.get_token_trends("day", days=0, now=NOW) == []
    assert store.get_daily_stats(days=0, now=NOW) == []
    assert store.get_cost_by_model(days=0, now=NOW) == []


def test_cost_breakdowns(store):
    store.insert_span(make_span("a", estimated_cost=0.1, total_tokens=10))
    store.insert_span(make_span("b", estimated_cost=0.2, total_tokens=10))
    store.insert_span(make_span("c", estimated_cost=1.0, model="claude-3-opus", provider="anthropic"))
    store.insert_span(make_span("d", model=None, provider=None))

    by_model = store.get_cost_by_model(days=1, now=NOW)
    by_provider = store.get_cost_by_provider(days=1, now=NOW)

    assert [row["model"] for row in by_model] == ["claude-3-opus", "gpt-4o", "unknown"]
    assert by_model[1]["request_count"] == 2
    assert by_model[1]["total_cost"] == pytest.approx(0.3)
    assert by_provider[0]["provider"] == "anthropic"


def test_stats(store):
    store.insert_span(make_span("a", duration_ms=100, total_tokens=10, estimated_cost=0.5))
    store.insert_span(make_span("b", duration_ms=300, status=502))

    stats = store.get_stats()

    assert stats["total_requests"] == 2
    assert stats["total_tokens"] == 10
    assert stats["avg_duration"] == 200
    assert stats["error_count"] == 1
    assert stats["models"][0]["model"] == "gpt-4o"


def test_stats_on_empty_store(store):
    stats = store.get_stats()

    assert stats["total_requests"] == 0
    assert stats["avg_duration"] == 0
    assert stats["models"] == []
