"""
Tracetap Traces API

REST API for spans and traces:
- Ingest spans from the SDK
- Query traces and span trees
- Summary stats and provider listing
"""

import logging
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from tracetap.api.deps import get_registry, get_store
from tracetap.core.models import Span, SpanKind, new_id, now_ms
from tracetap.core.storage import TelemetryStore
from tracetap.providers.registry import ProviderRegistry

logger = logging.getLogger("tracetap.api")
router = APIRouter(prefix="/api", tags=["Traces"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class SpanIngestRequest(BaseModel):
    """A span reported by the SDK."""
    id: Optional[str] = Field(None, description="Span ID (generated when omitted)")
    trace_id: Optional[str] = Field(None, description="Trace ID (defaults to the span ID)")
    parent_id: Optional[str] = Field(None, description="Parent span ID for nesting")
    span_type: str = Field(SpanKind.CUSTOM.value, description="trace, llm, agent, chain, tool, retrieval, embedding, custom")
    span_name: Optional[str] = Field(None, description="Display name")

    start_time: Optional[int] = Field(None, description="Start time, epoch ms")
    end_time: Optional[int] = Field(None, description="End time, epoch ms")
    duration_ms: Optional[int] = Field(None, description="Duration in milliseconds")

    status: int = Field(200, description="HTTP-style status code")
    error: Optional[str] = None

    model: Optional[str] = None
    provider: Optional[str] = None
    service_name: str = Field("app", description="Reporting service")

    attributes: Dict[str, Any] = Field(default_factory=dict)
    input: Optional[Any] = None
    output: Optional[Any] = None
    tags: List[str] = Field(default_factory=list)


class SpanIngestResponse(BaseModel):
    id: str
    trace_id: str


def span_detail(span: Span) -> Dict[str, Any]:
    """Trace detail view: summary, request and response side by side."""
    return {
        "trace": {
            "id": span.id,
            "trace_id": span.trace_id,
            "parent_id": span.parent_id,
            "timestamp": span.timestamp,
            "duration_ms": span.duration_ms,
            "span_type": span.span_type,
            "span_name": span.span_name,
            "provider": span.provider,
            "model": span.model,
            "prompt_tokens": span.prompt_tokens,
            "completion_tokens": span.completion_tokens,
            "total_tokens": span.total_tokens,
            "status": span.status,
            "error": span.error,
            "estimated_cost": span.estimated_cost,
            "tags": span.tags,
            "service_name": span.service_name,
        },
        "request": {
            "method": span.request_method,
            "path": span.request_path,
            "headers": span.request_headers,
            "body": span.request_body,
        },
        "response": {
            "status": span.response_status,
            "headers": span.response_headers,
            "body": span.response_body,
        },
        "input": span.input,
        "output": span.output,
        "attributes": span.attributes,
    }


# =============================================================================
# SPAN INGEST
# =============================================================================

@router.post("/spans", response_model=SpanIngestResponse, status_code=201)
async def ingest_span(
    payload: SpanIngestRequest,
    store: TelemetryStore = Depends(get_store),
):
    """Record a span reported by the SDK."""
    span_id = payload.id or new_id()
    start = payload.start_time or now_ms()
    duration = payload.duration_ms
    if duration is None and payload.end_time:
        duration = payload.end_time - start

    span = Span(
        id=span_id,
        trace_id=payload.trace_id or span_id,
        parent_id=payload.parent_id,
        timestamp=start,
        duration_ms=duration,
        span_type=payload.span_type or SpanKind.CUSTOM.value,
        span_name=payload.span_name or payload.span_type or "span",
        provider=payload.provider,
        model=payload.model,
        status=payload.status,
        error=payload.error,
        response_status=payload.status,
        tags=payload.tags,
        attributes=payload.attributes,
        input=payload.input,
        output=payload.output,
        service_name=payload.service_name,
    )
    store.insert_span(span)
    return SpanIngestResponse(id=span.id, trace_id=span.trace_id)


# =============================================================================
# TRACE QUERIES
# =============================================================================

@router.get("/traces")
async def list_traces(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    model: Optional[str] = Query(None),
    provider: Optional[str] = Query(None),
    span_type: Optional[str] = Query(None),
    service_name: Optional[str] = Query(None),
    trace_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None, description="success or error"),
    q: Optional[str] = Query(None, description="Substring search over bodies and attributes"),
    date_from: Optional[int] = Query(None, description="Epoch ms"),
    date_to: Optional[int] = Query(None, description="Epoch ms"),
    cost_min: Optional[float] = Query(None),
    cost_max: Optional[float] = Query(None),
    store: TelemetryStore = Depends(get_store),
):
    """List spans, newest first."""
    filters = {
        "model": model,
        "provider": provider,
        "span_type": span_type,
        "service_name": service_name,
        "trace_id": trace_id,
        "status": status,
        "q": q,
        "date_from": date_from,
        "date_to": date_to,
        "cost_min": cost_min,
        "cost_max": cost_max,
    }
    filters = {k: v for k, v in filters.items() if v is not None}

    traces = store.get_traces(limit=limit, offset=offset, filters=filters)
    return {
        "traces": [t.to_dict() for t in traces],
        "total": store.count_traces(filters),
        "limit": limit,
        "offset": offset,
    }


@router.get("/traces/{span_id}")
async def get_trace(span_id: str, store: TelemetryStore = Depends(get_store)):
    span = store.get_span(span_id)
    if not span:
        raise HTTPException(404, "Trace not found")
    return span_detail(span)


@router.get("/traces/{span_id}/tree")
async def get_trace_tree(span_id: str, store: TelemetryStore = Depends(get_store)):
    """The whole trace containing `span_id`, as a span tree."""
    tree = store.get_span_tree(span_id)
    if tree is None:
        raise HTTPException(404, "Span not found")
    return tree


@router.get("/models")
async def list_models(store: TelemetryStore = Depends(get_store)):
    return store.get_distinct_models()


@router.get("/stats")
async def get_stats(store: TelemetryStore = Depends(get_store)):
    return store.get_stats()


@router.get("/providers")
async def list_providers(registry: ProviderRegistry = Depends(get_registry)):
    return {
        "providers": registry.list(),
        "usage": {
            "default": "Use /v1/* for OpenAI (default provider)",
            "custom": "Use /{provider}/v1/* for other providers (e.g. /ollama/v1/chat/completions)",
            "header": "Or set the x-tracetap-provider header to override",
        },
    }
