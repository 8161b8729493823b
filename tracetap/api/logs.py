"""
Tracetap Logs API
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from tracetap.api.deps import get_store
from tracetap.core.storage import TelemetryStore

logger = logging.getLogger("tracetap.api")
router = APIRouter(prefix="/api/logs", tags=["Logs"])


@router.get("")
async def list_logs(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service_name: Optional[str] = Query(None),
    event_name: Optional[str] = Query(None),
    trace_id: Optional[str] = Query(None),
    span_id: Optional[str] = Query(None),
    severity_min: Optional[int] = Query(None, ge=1, le=24),
    q: Optional[str] = Query(None),
    date_from: Optional[int] = Query(None, description="Epoch ms"),
    date_to: Optional[int] = Query(None, description="Epoch ms"),
    store: TelemetryStore = Depends(get_store),
):
    """List log records, newest first."""
    filters = {
        "service_name": service_name,
        "event_name": event_name,
        "trace_id": trace_id,
        "span_id": span_id,
        "severity_min": severity_min,
        "q": q,
        "date_from": date_from,
        "date_to": date_to,
    }
    filters = {k: v for k, v in filters.items() if v is not None}

    logs = store.get_logs(limit=limit, offset=offset, filters=filters)
    return {
        "logs": [record.to_dict() for record in logs],
        "total": store.count_logs(filters),
    }


@router.get("/filters")
async def log_filters(store: TelemetryStore = Depends(get_store)):
    """Values for the log filter dropdowns."""
    return {
        "services": store.get_distinct_log_services(),
        "event_names": store.get_distinct_event_names(),
    }


@router.get("/{log_id}")
async def get_log(log_id: str, store: TelemetryStore = Depends(get_store)):
    record = store.get_log(log_id)
    if not record:
        raise HTTPException(404, "Log not found")
    return record.to_dict()
