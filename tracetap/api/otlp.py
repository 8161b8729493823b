"""
Tracetap OTLP API

OTLP/HTTP JSON receivers:
- POST /v1/traces
- POST /v1/logs
- POST /v1/metrics

Point an OpenTelemetry exporter at http://localhost:8080 with
OTEL_EXPORTER_OTLP_PROTOCOL=http/json. Protobuf payloads get 415.
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request

from tracetap.api.deps import get_pricing, get_store
from tracetap.core.pricing import PricingTable
from tracetap.core.storage import TelemetryStore
from tracetap.otlp import process_otlp_logs, process_otlp_metrics, process_otlp_traces

logger = logging.getLogger("tracetap.otlp")
router = APIRouter(prefix="/v1", tags=["OTLP"])


async def read_otlp_json(request: Request) -> Any:
    """Parsed JSON body of an OTLP export request."""
    content_type = request.headers.get("content-type", "")
    if "application/json" not in content_type:
        raise HTTPException(
            415,
            "Only application/json is supported. Use the OTLP/HTTP JSON format.",
        )
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except ValueError as e:
        raise HTTPException(400, f"Invalid JSON: {e}")


@router.post("/traces")
async def ingest_traces(
    request: Request,
    store: TelemetryStore = Depends(get_store),
    pricing: PricingTable = Depends(get_pricing),
):
    body = await read_otlp_json(request)
    result = process_otlp_traces(body, store, pricing)
    return result.partial_success("rejectedSpans")


@router.post("/logs")
async def ingest_logs(request: Request, store: TelemetryStore = Depends(get_store)):
    body = await read_otlp_json(request)
    result = process_otlp_logs(body, store)
    return result.partial_success("rejectedLogRecords")


@router.post("/metrics")
async def ingest_metrics(request: Request, store: TelemetryStore = Depends(get_store)):
    body = await read_otlp_json(request)
    result = process_otlp_metrics(body, store)
    return result.partial_success("rejectedDataPoints")
