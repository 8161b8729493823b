"""
Tracetap Metrics API
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from tracetap.api.deps import get_store
from tracetap.core.models import MetricType
from tracetap.core.storage import TelemetryStore

logger = logging.getLogger("tracetap.api")
router = APIRouter(prefix="/api/metrics", tags=["Metrics"])


@router.get("")
async def list_metrics(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    name: Optional[str] = Query(None),
    metric_type: Optional[MetricType] = Query(None),
    service_name: Optional[str] = Query(None),
    q: Optional[str] = Query(None),
    date_from: Optional[int] = Query(None, description="Epoch ms"),
    date_to: Optional[int] = Query(None, description="Epoch ms"),
    store: TelemetryStore = Depends(get_store),
):
    """List metric data points, newest first."""
    filters = {
        "name": name,
        "metric_type": metric_type.value if metric_type else None,
        "service_name": service_name,
        "q": q,
        "date_from": date_from,
        "date_to": date_to,
    }
    filters = {k: v for k, v in filters.items() if v is not None}

    metrics = store.get_metrics(limit=limit, offset=offset, filters=filters)
    return {
        "metrics": [point.to_dict() for point in metrics],
        "total": store.count_metrics(filters),
    }


@router.get("/filters")
async def metric_filters(store: TelemetryStore = Depends(get_store)):
    return {
        "names": store.get_distinct_metric_names(),
        "services": store.get_distinct_metric_services(),
        "types": [t.value for t in MetricType],
    }


@router.get("/summary")
async def metric_summary(
    name: Optional[str] = Query(None),
    store: TelemetryStore = Depends(get_store),
):
    """Per-metric aggregates (count, total, min, max, last seen)."""
    return {"summary": store.get_metric_summary(name)}


@router.get("/{metric_id}")
async def get_metric(metric_id: str, store: TelemetryStore = Depends(get_store)):
    point = store.get_metric(metric_id)
    if not point:
        raise HTTPException(404, "Metric not found")
    return point.to_dict()
