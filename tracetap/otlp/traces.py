"""
OTLP trace ingestion.

Turns OTLP/HTTP JSON `resourceSpans` into stored spans. Understands the
gen_ai.* semantic conventions (OpenLLMetry), traceloop.* attributes and the
older llm.* keys.
"""

from __future__ import annotations
import logging
from typing import Optional, Dict, Any, Tuple

from tracetap.core.models import Span, SpanKind
from tracetap.core.pricing import PricingTable
from tracetap.core.storage import DuplicateRecordError, TelemetryStore
from tracetap.otlp.common import (
    RECORD_ERRORS,
    IngestResult,
    extract_attributes,
    json_or_wrapped,
    list_of,
    nano_to_ms,
    normalize_id,
    object_of,
    resource_attributes,
    text_of,
)

logger = logging.getLogger("tracetap.otlp")

TRACELOOP_KINDS = {
    "workflow": SpanKind.TRACE,
    "task": SpanKind.CHAIN,
    "agent": SpanKind.AGENT,
    "tool": SpanKind.TOOL,
}

VECTOR_STORES = ("pinecone", "chroma", "weaviate", "qdrant", "milvus", "pgvector")

# Checked in order against the span name
NAME_HINTS = (
    (("embed",), SpanKind.EMBEDDING),
    (("retriev", "search"), SpanKind.RETRIEVAL),
    (("agent",), SpanKind.AGENT),
    (("tool", "function"), SpanKind.TOOL),
    (("chain",), SpanKind.CHAIN),
)

MODEL_KEYS = ("gen_ai.request.model", "gen_ai.response.model", "llm.model", "model")

PROMPT_TOKEN_KEYS = (
    "gen_ai.usage.prompt_tokens",
    "gen_ai.usage.input_tokens",
    "llm.usage.prompt_tokens",
    "llm.token_count.prompt",
)
COMPLETION_TOKEN_KEYS = (
    "gen_ai.usage.completion_tokens",
    "gen_ai.usage.output_tokens",
    "llm.usage.completion_tokens",
    "llm.token_count.completion",
)
TOTAL_TOKEN_KEYS = (
    "gen_ai.usage.total_tokens",
    "llm.usage.total_tokens",
    "llm.token_count.total",
)

PROVIDER_KEYS = ("gen_ai.system", "gen_ai.provider.name", "llm.vendor")

OTEL_STATUS_ERROR = 2


def _first(attrs: Dict[str, Any], keys: Tuple[str, ...]) -> Any:
    for key in keys:
        if attrs.get(key):
            return attrs[key]
    return None


def classify_span(attrs: Dict[str, Any], name: str = "") -> SpanKind:
    """Pick the span kind from framework attributes, falling back to the name."""
    kind = TRACELOOP_KINDS.get(str(attrs.get("traceloop.span.kind") or ""))
    if kind:
        return kind
    if attrs.get("gen_ai.system") or attrs.get("llm.request.type"):
        return SpanKind.LLM

    db_system = str(attrs.get("db.system") or "").lower()
    if db_system and any(store in db_system for store in VECTOR_STORES):
        return SpanKind.RETRIEVAL

    name = (name or "").lower()
    for needles, hinted in NAME_HINTS:
        if any(needle in name for needle in needles):
            return hinted
    return SpanKind.CUSTOM


def extract_model(attrs: Dict[str, Any]) -> Optional[str]:
    model = _first(attrs, MODEL_KEYS)
    return str(model) if model else None


def extract_tokens(attrs: Dict[str, Any]) -> Tuple[int, int, int]:
    """(prompt, completion, total); total falls back to prompt + completion."""
    prompt = int(_first(attrs, PROMPT_TOKEN_KEYS) or 0)
    completion = int(_first(attrs, COMPLETION_TOKEN_KEYS) or 0)
    total = int(_first(attrs, TOTAL_TOKEN_KEYS) or 0) or prompt + completion
    return prompt, completion, total


def extract_io(attrs: Dict[str, Any], events: Any) -> Tuple[Any, Any]:
    """Prompt/completion payloads from gen_ai.* attributes or span events."""
    input_data = json_or_wrapped(attrs["gen_ai.prompt"], "prompt") if attrs.get("gen_ai.prompt") else None
    output_data = json_or_wrapped(attrs["gen_ai.completion"], "completion") if attrs.get("gen_ai.completion") else None

    for event in events if isinstance(events, list) else []:
        if not isinstance(event, dict):
            continue
        event_name = event.get("name") or ""
        if "prompt" in event_name:
            input_data = extract_attributes(event.get("attributes"))
        if "completion" in event_name:
            output_data = extract_attributes(event.get("attributes"))

    return input_data, output_data


def transform_span(
    span: Dict[str, Any],
    resource_attrs: Dict[str, Any],
    scope: Dict[str, Any],
    pricing: PricingTable,
) -> Span:
    """Map one OTLP span to a stored Span. Raises on a malformed record."""
    if not isinstance(span, dict):
        raise TypeError(f"span must be an object, got {type(span).__name__}")
    span_id = normalize_id(span.get("spanId"))
    if not span_id:
        raise ValueError(f"span '{span.get('name') or '?'}' has no spanId")

    attrs = extract_attributes(span.get("attributes"))
    name = text_of(span.get("name")) or ""
    start_ms = nano_to_ms(span.get("startTimeUnixNano"))
    end_ms = nano_to_ms(span.get("endTimeUnixNano"))

    kind = classify_span(attrs, name)
    model = extract_model(attrs)
    prompt_tokens, completion_tokens, total_tokens = extract_tokens(attrs)
    input_data, output_data = extract_io(attrs, span.get("events"))

    cost = 0.0
    if model and (prompt_tokens or completion_tokens):
        cost = pricing.calculate_cost(model, prompt_tokens, completion_tokens)

    otel_status = object_of(span.get("status"))
    status = 500 if otel_status.get("code") == OTEL_STATUS_ERROR else 200

    return Span(
        id=span_id,
        trace_id=normalize_id(span.get("traceId")),
        parent_id=normalize_id(span.get("parentSpanId")),
        timestamp=start_ms,
        duration_ms=max(end_ms - start_ms, 0),
        span_type=kind,
        span_name=name or text_of(attrs.get("traceloop.entity.name")) or kind.value,
        provider=text_of(_first(attrs, PROVIDER_KEYS) or resource_attrs.get("service.name")),
        model=model,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=total_tokens,
        estimated_cost=cost,
        status=status,
        error=text_of(otel_status.get("message") or attrs.get("error.message")),
        response_status=status,
        input=input_data,
        output=output_data,
        attributes={**attrs, **resource_attrs, "otel_span_kind": span.get("kind")},
        service_name=text_of(resource_attrs.get("service.name") or scope.get("name")) or "otel",
    )


def process_otlp_traces(body: Any, store: TelemetryStore, pricing: PricingTable) -> IngestResult:
    """
    Normalize and store every span in an OTLP traces payload.

    A malformed span, or one whose id is already stored, is counted as
    rejected and skipped. Other storage failures propagate.
    """
    result = IngestResult()
    if not isinstance(body, dict) or not body.get("resourceSpans"):
        return result

    for resource_span in list_of(body["resourceSpans"], "resourceSpans", result):
        if not isinstance(resource_span, dict):
            result.reject("resourceSpans entry is not an object")
            continue
        try:
            resource_attrs = resource_attributes(resource_span)
        except RECORD_ERRORS as e:
            result.reject(f"resource attributes: {e}")
            continue

        for scope_span in list_of(resource_span.get("scopeSpans"), "scopeSpans", result):
            if not isinstance(scope_span, dict):
                result.reject("scopeSpans entry is not an object")
                continue
            scope = object_of(scope_span.get("scope"))
            for span in list_of(scope_span.get("spans"), "spans", result):
                try:
                    record = transform_span(span, resource_attrs, scope, pricing)
                except RECORD_ERRORS as e:
                    result.reject(str(e))
                    continue
                try:
                    store.insert_span(record)
                except DuplicateRecordError:
                    result.reject(f"span {record.id} is already stored")
                    continue
                result.accepted += 1

    if result.rejected:
        logger.warning(f"OTLP traces: accepted {result.accepted}, rejected {result.rejected}")
    else:
        logger.info(f"OTLP traces: accepted {result.accepted}")
    return result
