from __future__ import annotations

import json

import pytest

from tracetap.core.models import SpanKind
from tracetap.otlp import process_otlp_logs, process_otlp_metrics, process_otlp_traces
from tracetap.otlp.common import IngestResult, any_value, nano_to_ms, normalize_id
from tracetap.otlp.logs import extract_body, severity_text
from tracetap.otlp.traces import classify_span, extract_tokens

START_NS = 1_700_000_000_000_000_000
END_NS = START_NS + 1_500_000_000


def kv(key, value):
    if isinstance(value, bool):
        return {"key": key, "value": {"boolValue": value}}
    if isinstance(value, int):
        return {"key": key, "value": {"intValue": str(value)}}
    if isinstance(value, float):
        return {"key": key, "value": {"doubleValue": value}}
    return {"key": key, "value": {"stringValue": value}}


def resource(**attrs):
    return {"attributes": [kv(k.replace("_", "."), v) for k, v in attrs.items()]}


def llm_span(span_id="00f067aa0ba902b7", **overrides):
    span = {
        "traceId": "4BF92F3577B34DA6A3CE929D0E0E4736",
        "spanId": span_id,
        "name": "openai.chat",
        "kind": 3,
        "startTimeUnixNano": str(START_NS),
        "endTimeUnixNano": str(END_NS),
        "attributes": [
            kv("gen_ai.system", "openai"),
            kv("gen_ai.request.model", "gpt-4o"),
            kv("gen_ai.usage.prompt_tokens", 100),
            kv("gen_ai.usage.completion_tokens", 50),
        ],
    }
    span.update(overrides)
    return span


def traces_payload(*spans, service="my-app"):
    return {
        "resourceSpans": [{
            "resource": resource(service_name=service),
            "scopeSpans": [{"scope": {"name": "opentelemetry.instrumentation.openai"}, "spans": list(spans)}],
        }]
    }


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def test_any_value_unwraps_nested_values():
    value = {
        "kvlistValue": {"values": [
            kv("n", 3),
            {"key": "tags", "value": {"arrayValue": {"values": [{"stringValue": "a"}, {"boolValue": True}]}}},
        ]}
    }

    assert any_value(value) == {"n": 3, "tags": ["a", True]}
    assert any_value("not a value") is None


def test_nano_to_ms_and_ids():
    assert nano_to_ms(str(START_NS)) == 1_700_000_000_000
    assert nano_to_ms(None) > 0
    assert normalize_id("4BF9-2F35") == "4bf92f35"
    assert normalize_id("") is None


def test_errors_are_capped_in_partial_success():
    result = IngestResult()
    for i in range(7):
        result.reject(f"bad {i}")

    body = result.partial_success("rejectedSpans")

    assert body["partialSuccess"]["rejectedSpans"] == 7
    assert body["partialSuccess"]["errorMessage"] == "; ".join(f"bad {i}" for i in range(5))
    assert IngestResult(accepted=3).partial_success("rejectedSpans") == {}


# -----------------------------------------------------------------------------
# Traces
# -----------------------------------------------------------------------------

@pytest.mark.parametrize("attrs, name, expected", [
    ({"traceloop.span.kind": "workflow", "gen_ai.system": "openai"}, "x", SpanKind.TRACE),
    ({"traceloop.span.kind": "tool"}, "x", SpanKind.TOOL),
    ({"gen_ai.system": "anthropic"}, "agent.run", SpanKind.LLM),
    ({"llm.request.type": "chat"}, "x", SpanKind.LLM),
    ({"db.system": "Chroma"}, "query", SpanKind.RETRIEVAL),
    ({}, "OpenAIEmbeddings", SpanKind.EMBEDDING),
    ({}, "vector_search", SpanKind.RETRIEVAL),
    ({}, "AgentExecutor", SpanKind.AGENT),
    ({}, "call_function", SpanKind.TOOL),
    ({}, "RunnableChain", SpanKind.CHAIN),
    ({}, "http.request", SpanKind.CUSTOM),
])
def test_classify_span(attrs, name, expected):
    assert classify_span(attrs, name) == expected


def test_extract_tokens_key_fallbacks():
    assert extract_tokens({"gen_ai.usage.input_tokens": 7, "gen_ai.usage.output_tokens": 3}) == (7, 3, 10)
    assert extract_tokens({"llm.token_count.prompt": 2, "llm.usage.total_tokens": 9}) == (2, 0, 9)
    assert extract_tokens({}) == (0, 0, 0)


def test_llm_span_is_normalized(store, pricing):
    result = process_otlp_traces(traces_payload(llm_span()), store, pricing)

    assert result.accepted == 1
    span = store.get_span("00f067aa0ba902b7")
    assert span.trace_id == "4bf92f3577b34da6a3ce929d0e0e4736"
    assert span.parent_id is None
    assert span.span_type == "llm"
    assert span.provider == "openai"
    assert span.model == "gpt-4o"
    assert (span.prompt_tokens, span.completion_tokens, span.total_tokens) == (100, 50, 150)
    assert span.estimated_cost == pricing.calculate_cost("gpt-4o", 100, 50)
    assert span.timestamp == 1_700_000_000_000
    assert span.duration_ms == 1500
    assert span.status == 200
    assert span.service_name == "my-app"
    assert span.attributes["otel_span_kind"] == 3


def test_error_status_and_events(store, pricing):
    span = llm_span(
        status={"code": 2, "message": "rate limited"},
        events=[
            {"name": "gen_ai.content.prompt", "attributes": [kv("gen_ai.prompt", "hello")]},
            {"name": "gen_ai.content.completion", "attributes": [kv("gen_ai.completion", "hi")]},
        ],
    )
    process_otlp_traces(traces_payload(span), store, pricing)

    stored = store.get_span("00f067aa0ba902b7")
    assert stored.status == 500
    assert stored.error == "rate limited"
    assert stored.input == {"gen_ai.prompt": "hello"}
    assert stored.output == {"gen_ai.completion": "hi"}


def test_prompt_attribute_json_or_wrapped(store, pricing):
    span = llm_span(attributes=[
        kv("gen_ai.prompt", json.dumps([{"role": "user", "content": "q"}])),
        kv("gen_ai.completion", "plain text"),
    ])
    process_otlp_traces(traces_payload(span), store, pricing)

    stored = store.get_span("00f067aa0ba902b7")
    assert stored.input == [{"role": "user", "content": "q"}]
    assert stored.output == {"completion": "plain text"}
    assert stored.span_type == "custom"
    assert stored.estimated_cost == 0


def test_service_name_falls_back_to_scope(store, pricing):
    payload = {"resourceSpans": [{"scopeSpans": [{"scope": {"name": "langchain"}, "spans": [llm_span()]}]}]}
    process_otlp_traces(payload, store, pricing)

    assert store.get_span("00f067aa0ba902b7").service_name == "langchain"


def test_bad_spans_are_rejected_and_good_ones_kept(store, pricing):
    payload = traces_payload(
        llm_span("0000000000000001"),
        {"name": "no id here"},
        llm_span("0000000000000002"),
        "not a span",
        llm_span("0000000000000003", startTimeUnixNano="soon"),
    )

    result = process_otlp_traces(payload, store, pricing)

    assert (result.accepted, result.rejected) == (2, 3)
    assert "span 'no id here' has no spanId" in result.errors
    assert store.count_traces() == 2
    assert result.partial_success("rejectedSpans")["partialSuccess"]["rejectedSpans"] == 3


@pytest.mark.parametrize("body", [{}, {"resourceSpans": []}, [], None])
def test_empty_trace_payloads(store, pricing, body):
    result = process_otlp_traces(body, store, pricing)

    assert result.to_dict() == {"accepted": 0, "rejected": 0, "errors": []}
    assert result.partial_success("rejectedSpans") == {}


@pytest.mark.parametrize("body, error", [
    ({"resourceSpans": 5}, "resourceSpans is not a list"),
    ({"resourceSpans": [{"scopeSpans": "spans"}]}, "scopeSpans is not a list"),
    ({"resourceSpans": [{"scopeSpans": [{"spans": {}}]}]}, "spans is not a list"),
])
def test_wrongly_shaped_trace_payloads_are_rejected(store, pricing, body, error):
    result = process_otlp_traces(body, store, pricing)

    assert (result.accepted, result.rejected) == (0, 1)
    assert result.errors == [error]
    assert store.count_traces() == 0


def test_odd_resource_and_scope_fall_back(store, pricing):
    payload = {
        "resourceSpans": [
            {"resource": {"attributes": [{"key": "n", "value": {"intValue": "many"}}]}, "scopeSpans": []},
            {"resource": "odd", "scopeSpans": [{"scope": 3, "spans": [llm_span(name=["chat"])]}]},
        ]
    }

    result = process_otlp_traces(payload, store, pricing)

    assert (result.accepted, result.rejected) == (1, 1)
    assert result.errors[0].startswith("resource attributes")
    span = store.get_span("00f067aa0ba902b7")
    assert span.span_name == '["chat"]'
    assert span.provider == "openai"


def test_duplicate_span_is_rejected_and_batch_continues(store, pricing):
    payload = traces_payload(
        llm_span("000000000000000b"),
        llm_span("000000000000000b"),
        llm_span("000000000000000c"),
    )

    result = process_otlp_traces(payload, store, pricing)

    assert (result.accepted, result.rejected) == (2, 1)
    assert result.errors == ["span 000000000000000b is already stored"]
    assert store.get_span("000000000000000c") is not None

    retried = process_otlp_traces(payload, store, pricing)

    assert (retried.accepted, retried.rejected) == (0, 3)
    assert store.count_traces() == 2


# -----------------------------------------------------------------------------
# Logs
# -----------------------------------------------------------------------------

def logs_payload(*records, service="claude-code"):
    res = resource(service_name=service) if service else {}
    return {
        "resourceLogs": [{
            "resource": res,
            "scopeLogs": [{"scope": {"name": "com.anthropic.claude_code"}, "logRecords": list(records)}],
        }]
    }


def test_severity_bands():
    assert severity_text(9) == "INFO"
    assert severity_text(13) == "WARN"
    assert severity_text(17) == "ERROR"
    assert severity_text(24) == "FATAL"
    assert severity_text(30) == "UNSPECIFIED"
    assert severity_text(17, "Error") == "Error"
    assert severity_text(None) is None


def test_extract_body_renders_any_value():
    assert extract_body({"stringValue": "hello"}) == "hello"
    assert extract_body({"boolValue": True}) == "true"
    assert extract_body({"intValue": "12"}) == "12"
    assert json.loads(extract_body({"kvlistValue": {"values": [kv("a", 1)]}})) == {"a": 1}
    assert extract_body(None) is None


def test_log_records_are_stored(store):
    record = {
        "timeUnixNano": str(START_NS),
        "severityNumber": 17,
        "body": {"stringValue": "api request failed"},
        "traceId": "ABC",
        "spanId": "DEF",
        "attributes": [kv("event.name", "claude_code.api_error"), kv("status_code", 529)],
    }

    result = process_otlp_logs(logs_payload(record), store)

    assert result.accepted == 1
    stored = store.get_logs()[0]
    assert stored.timestamp == 1_700_000_000_000
    assert stored.severity_number == 17
    assert stored.severity_text == "ERROR"
    assert stored.body == "api request failed"
    assert stored.event_name == "claude_code.api_error"
    assert (stored.trace_id, stored.span_id) == ("abc", "def")
    assert stored.service_name == "claude-code"
    assert stored.scope_name == "com.anthropic.claude_code"
    assert stored.attributes["status_code"] == 529


def test_log_service_defaults_to_unknown(store):
    process_otlp_logs(logs_payload({"body": {"stringValue": "x"}}, service=None), store)

    assert store.get_logs()[0].service_name == "unknown"


def test_malformed_log_records_are_rejected(store):
    result = process_otlp_logs(
        logs_payload({"body": {"stringValue": "ok"}}, "oops", {"timeUnixNano": "later"}),
        store,
    )

    assert (result.accepted, result.rejected) == (1, 2)
    assert "rejectedLogRecords" in result.partial_success("rejectedLogRecords")["partialSuccess"]


@pytest.mark.parametrize("body", [
    {"resourceLogs": [{"scopeLogs": 7}]},
    {"resourceLogs": "logs"},
    {"resourceLogs": [{"scopeLogs": [{"logRecords": {"body": {"stringValue": "x"}}}]}]},
])
def test_wrongly_shaped_log_payloads_are_rejected(store, body):
    result = process_otlp_logs(body, store)

    assert (result.accepted, result.rejected) == (0, 1)
    assert store.count_logs() == 0


def test_non_string_log_fields_are_rendered(store):
    record = {"body": {"stringValue": 42}, "severityText": {"level": "info"}}
    payload = logs_payload(record)
    payload["resourceLogs"][0]["scopeLogs"][0]["scope"] = {"name": ["cli"]}

    result = process_otlp_logs(payload, store)

    assert result.accepted == 1
    stored = store.get_logs()[0]
    assert stored.body == "42"
    assert stored.severity_text == '{"level": "info"}'
    assert stored.scope_name == '["cli"]'


# -----------------------------------------------------------------------------
# Metrics
# -----------------------------------------------------------------------------

def metrics_payload(*metrics):
    return {
        "resourceMetrics": [{
            "resource": resource(service_name="codex"),
            "scopeMetrics": [{"scope": {"name": "meter"}, "metrics": list(metrics)}],
        }]
    }


def test_int_sum_keeps_integer_value(store):
    metric = {
        "name": "tokens.used",
        "unit": "{token}",
        "sum": {"dataPoints": [{"asInt": "42", "timeUnixNano": str(START_NS), "attributes": [kv("type", "input")]}]},
    }

    result = process_otlp_metrics(metrics_payload(metric), store)

    assert result.accepted == 1
    point = store.get_metrics()[0]
    assert point.metric_type == "sum"
    assert point.value_int == 42
    assert point.value_double is None
    assert point.attributes == {"type": "input"}
    assert point.service_name == "codex"


def test_gauge_double(store):
    metric = {"name": "cpu", "gauge": {"dataPoints": [{"asDouble": 0.25}, {"asDouble": 0.5}]}}

    result = process_otlp_metrics(metrics_payload(metric), store)

    assert result.accepted == 2
    assert sorted(p.value_double for p in store.get_metrics()) == [0.25, 0.5]


def test_histogram_point(store):
    metric = {
        "name": "latency",
        "histogram": {"dataPoints": [{
            "count": "3",
            "sum": 12.5,
            "min": 1.0,
            "max": 8.0,
            "bucketCounts": ["1", "2"],
            "explicitBounds": [5.0],
        }]},
    }

    process_otlp_metrics(metrics_payload(metric), store)

    point = store.get_metrics()[0]
    assert point.metric_type == "histogram"
    assert point.value_int == 3
    assert point.value_double == 12.5
    assert point.histogram_data["bucketCounts"] == [1, 2]
    assert point.histogram_data["explicitBounds"] == [5.0]


def test_unsupported_kinds_are_skipped_and_bad_metrics_rejected(store):
    result = process_otlp_metrics(
        metrics_payload(
            {"name": "quantiles", "summary": {"dataPoints": [{"count": "1"}]}},
            {"sum": {"dataPoints": [{"asInt": "1"}]}},
            {"name": "broken", "gauge": {"dataPoints": ["nope"]}},
            {"name": "ok", "gauge": {"dataPoints": [{"asInt": "1"}]}},
        ),
        store,
    )

    assert (result.accepted, result.rejected) == (1, 2)
    assert result.errors[0] == "metric has no name"
    assert store.get_distinct_metric_names() == ["ok"]


@pytest.mark.parametrize("body", [
    {"resourceMetrics": {"scopeMetrics": []}},
    {"resourceMetrics": [{"scopeMetrics": [{"metrics": 3}]}]},
    {"resourceMetrics": [{"scopeMetrics": [{"metrics": [{"name": "n", "gauge": {"dataPoints": 1}}]}]}]},
    {"resourceMetrics": [{"scopeMetrics": [{"metrics": [{"name": {"x": 1}, "gauge": {"dataPoints": []}}]}]}]},
])
def test_wrongly_shaped_metric_payloads_are_rejected(store, body):
    result = process_otlp_metrics(body, store)

    assert (result.accepted, result.rejected) == (0, 1)
    assert store.count_metrics() == 0
