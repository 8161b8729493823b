"""
OTLP log ingestion.

AI CLI tools (Claude Code, Codex, Gemini CLI) export their events as OTLP
logs; the event name is carried in the record attributes.
"""

from __future__ import annotations
import json
import logging
from typing import Optional, Dict, Any

from tracetap.core.models import LogRecord
from tracetap.core.storage import DuplicateRecordError, TelemetryStore
from tracetap.otlp.common import (
    RECORD_ERRORS,
    IngestResult,
    any_value,
    extract_attributes,
    list_of,
    nano_to_ms,
    normalize_id,
    object_of,
    resource_attributes,
    text_of,
)

logger = logging.getLogger("tracetap.otlp")

EVENT_NAME_KEYS = ("event.name", "log.event.name", "name", "event_name")

SEVERITY_BANDS = (
    (4, "TRACE"),
    (8, "DEBUG"),
    (12, "INFO"),
    (16, "WARN"),
    (20, "ERROR"),
    (24, "FATAL"),
)


def extract_body(body: Any) -> Optional[str]:
    """Render an AnyValue log body as text."""
    if not body:
        return None
    if not isinstance(body, dict):
        return str(body)
    if "stringValue" in body:
        return text_of(body["stringValue"])
    if "bytesValue" in body:
        return f"[binary: {len(body['bytesValue'] or '')} bytes]"
    if "arrayValue" in body or "kvlistValue" in body:
        return json.dumps(any_value(body))
    for key in ("intValue", "doubleValue", "boolValue"):
        if key in body:
            value = any_value(body)
            return str(value).lower() if isinstance(value, bool) else str(value)
    return json.dumps(body)


def severity_text(number: Any, provided: Optional[str] = None) -> Optional[str]:
    """The record's own severity text, else the OTel name for its number."""
    if provided:
        return text_of(provided)
    if not number:
        return None
    number = int(number)
    for upper, text in SEVERITY_BANDS:
        if 1 <= number <= upper:
            return text
    return "UNSPECIFIED"


def extract_event_name(attrs: Dict[str, Any]) -> Optional[str]:
    for key in EVENT_NAME_KEYS:
        if attrs.get(key):
            return str(attrs[key])
    return None


def transform_log(record: Dict[str, Any], resource_attrs: Dict[str, Any], scope: Dict[str, Any]) -> LogRecord:
    if not isinstance(record, dict):
        raise TypeError(f"log record must be an object, got {type(record).__name__}")
    attrs = extract_attributes(record.get("attributes"))
    return LogRecord(
        timestamp=nano_to_ms(record.get("timeUnixNano")),
        observed_timestamp=nano_to_ms(record.get("observedTimeUnixNano")),
        severity_number=int(record["severityNumber"]) if record.get("severityNumber") else None,
        severity_text=severity_text(record.get("severityNumber"), record.get("severityText")),
        body=extract_body(record.get("body")),
        trace_id=normalize_id(record.get("traceId")),
        span_id=normalize_id(record.get("spanId")),
        event_name=extract_event_name(attrs),
        service_name=text_of(resource_attrs.get("service.name")) or "unknown",
        scope_name=text_of(scope.get("name")),
        attributes=attrs,
        resource_attributes=resource_attrs,
    )


def process_otlp_logs(body: Any, store: TelemetryStore) -> IngestResult:
    """Normalize and store every record in an OTLP logs payload."""
    result = IngestResult()
    if not isinstance(body, dict) or not body.get("resourceLogs"):
        return result

    for resource_log in list_of(body["resourceLogs"], "resourceLogs", result):
        if not isinstance(resource_log, dict):
            result.reject("resourceLogs entry is not an object")
            continue
        try:
            resource_attrs = resource_attributes(resource_log)
        except RECORD_ERRORS as e:
            result.reject(f"resource attributes: {e}")
            continue

        for scope_log in list_of(resource_log.get("scopeLogs"), "scopeLogs", result):
            if not isinstance(scope_log, dict):
                result.reject("scopeLogs entry is not an object")
                continue
            scope = object_of(scope_log.get("scope"))
            for record in list_of(scope_log.get("logRecords"), "logRecords", result):
                try:
                    log_record = transform_log(record, resource_attrs, scope)
                except RECORD_ERRORS as e:
                    result.reject(str(e))
                    continue
                try:
                    store.insert_log(log_record)
                except DuplicateRecordError:
                    result.reject(f"log record {log_record.id} is already stored")
                    continue
                result.accepted += 1

    if result.rejected:
        logger.warning(f"OTLP logs: accepted {result.accepted}, rejected {result.rejected}")
    else:
        logger.info(f"OTLP logs: accepted {result.accepted}")
    return result
