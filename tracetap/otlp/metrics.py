"""
OTLP metric ingestion.

Sum, gauge and histogram data points are stored one row per point. Other
metric kinds (summary, exponential histogram) are accepted and ignored.
"""

from __future__ import annotations
import logging
from typing import Optional, Dict, List, Any, Tuple

from tracetap.core.models import MetricPoint, MetricType
from tracetap.core.storage import DuplicateRecordError, TelemetryStore
from tracetap.otlp.common import (
    RECORD_ERRORS,
    IngestResult,
    extract_attributes,
    list_of,
    nano_to_ms,
    object_of,
    resource_attributes,
    text_of,
)

logger = logging.getLogger("tracetap.otlp")


def extract_value(point: Dict[str, Any]) -> Tuple[Optional[int], Optional[float]]:
    """(value_int, value_double) of a number data point."""
    if point.get("asInt") is not None:
        return int(point["asInt"]), None
    if point.get("asDouble") is not None:
        return None, float(point["asDouble"])
    value = point.get("value")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None, None
    if isinstance(value, int):
        return value, None
    return None, value


def histogram_data(point: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "count": int(point.get("count") or 0),
        "sum": float(point.get("sum") or 0),
        "min": point.get("min"),
        "max": point.get("max"),
        "bucketCounts": [int(c) for c in point.get("bucketCounts") or []],
        "explicitBounds": list(point.get("explicitBounds") or []),
    }


def transform_metric(
    metric: Dict[str, Any],
    resource_attrs: Dict[str, Any],
    scope: Dict[str, Any],
) -> List[MetricPoint]:
    """All data points of one metric. Raises on a malformed metric."""
    if not isinstance(metric, dict):
        raise TypeError(f"metric must be an object, got {type(metric).__name__}")
    if not metric.get("name"):
        raise ValueError("metric has no name")
    if not isinstance(metric["name"], str):
        raise TypeError("metric name must be a string")

    for metric_type in MetricType:
        if isinstance(metric.get(metric_type.value), dict):
            break
    else:
        return []

    data_points = metric[metric_type.value].get("dataPoints") or []
    if not isinstance(data_points, list):
        raise TypeError(f"metric '{metric['name']}' dataPoints is not a list")

    points = []
    for point in data_points:
        if metric_type == MetricType.HISTOGRAM:
            histogram = histogram_data(point)
            value_int, value_double = histogram["count"], histogram["sum"]
        else:
            histogram = None
            value_int, value_double = extract_value(point)

        points.append(MetricPoint(
            timestamp=nano_to_ms(point.get("timeUnixNano")),
            name=metric["name"],
            description=text_of(metric.get("description")),
            unit=text_of(metric.get("unit")),
            metric_type=metric_type,
            value_int=value_int,
            value_double=value_double,
            histogram_data=histogram,
            service_name=text_of(resource_attrs.get("service.name")) or "unknown",
            scope_name=text_of(scope.get("name")),
            attributes=extract_attributes(point.get("attributes")),
            resource_attributes=resource_attrs,
        ))
    return points


def process_otlp_metrics(body: Any, store: TelemetryStore) -> IngestResult:
    """
    Normalize and store every data point in an OTLP metrics payload.

    Rejection is per metric: a metric with one bad data point stores none of
    its points. A point whose id is already stored is rejected on its own.
    """
    result = IngestResult()
    if not isinstance(body, dict) or not body.get("resourceMetrics"):
        return result

    for resource_metric in list_of(body["resourceMetrics"], "resourceMetrics", result):
        if not isinstance(resource_metric, dict):
            result.reject("resourceMetrics entry is not an object")
            continue
        try:
            resource_attrs = resource_attributes(resource_metric)
        except RECORD_ERRORS as e:
            result.reject(f"resource attributes: {e}")
            continue

        for scope_metric in list_of(resource_metric.get("scopeMetrics"), "scopeMetrics", result):
            if not isinstance(scope_metric, dict):
                result.reject("scopeMetrics entry is not an object")
                continue
            scope = object_of(scope_metric.get("scope"))
            for metric in list_of(scope_metric.get("metrics"), "metrics", result):
                try:
                    points = transform_metric(metric, resource_attrs, scope)
                except RECORD_ERRORS as e:
                    result.reject(str(e))
                    continue
                for point in points:
                    try:
                        store.insert_metric(point)
                    except DuplicateRecordError:
                        result.reject(f"data point {point.id} is already stored")
                        continue
                    result.accepted += 1

    if result.rejected:
        logger.warning(f"OTLP metrics: accepted {result.accepted} data points, rejected {result.rejected}")
    else:
        logger.info(f"OTLP metrics: accepted {result.accepted} data points")
    return result
