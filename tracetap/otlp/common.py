"""
Shared OTLP/HTTP JSON helpers.

OTLP JSON encodes attributes as typed KeyValue lists, 64-bit integers as
strings and timestamps as nanoseconds since the epoch.
"""

from __future__ import annotations
import json
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Any

from tracetap.core.models import now_ms

MAX_ERRORS = 5

# Failures a single malformed OTLP record can raise while being normalized
RECORD_ERRORS = (ValueError, TypeError, AttributeError, KeyError, IndexError)


def any_value(value: Any) -> Any:
    """Unwrap one OTLP AnyValue into a plain Python value."""
    if not isinstance(value, dict):
        return None
    if "stringValue" in value:
        return value["stringValue"]
    if "intValue" in value:
        return int(value["intValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "boolValue" in value:
        return bool(value["boolValue"])
    if "arrayValue" in value:
        return [any_value(v) for v in (value["arrayValue"] or {}).get("values") or []]
    if "kvlistValue" in value:
        return extract_attributes((value["kvlistValue"] or {}).get("values"))
    if "bytesValue" in value:
        return value["bytesValue"]
    return None


def extract_attributes(attributes: Any) -> Dict[str, Any]:
    """Flatten a KeyValue list into a dict. Entries without a value are skipped."""
    if not isinstance(attributes, list):
        return {}
    result = {}
    for attr in attributes:
        if not isinstance(attr, dict) or "key" not in attr or not attr.get("value"):
            continue
        result[attr["key"]] = any_value(attr["value"])
    return result


def nano_to_ms(nanos: Any) -> int:
    """Nanosecond epoch (int or numeric string) to milliseconds; missing means now."""
    if nanos in (None, "", 0, "0"):
        return now_ms()
    return int(nanos) // 1_000_000


def normalize_id(raw: Optional[str]) -> Optional[str]:
    """Strip dashes and lower-case a hex trace/span id."""
    if not raw:
        return None
    return str(raw).replace("-", "").lower()


def json_or_wrapped(value: Any, key: str) -> Any:
    """Decode a JSON-encoded attribute, or wrap the raw string under `key`."""
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return {key: value}


def text_of(value: Any) -> Optional[str]:
    """Free-text field as a string; empty values become None."""
    if value is None or value == "":
        return None
    return value if isinstance(value, str) else json.dumps(value, default=str)


def object_of(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def list_of(value: Any, name: str, result: "IngestResult") -> List[Any]:
    """`value` when it is a list; a missing list is empty, anything else is rejected."""
    if value is None:
        return []
    if not isinstance(value, list):
        result.reject(f"{name} is not a list")
        return []
    return value


def resource_attributes(entry: Dict[str, Any]) -> Dict[str, Any]:
    return extract_attributes(object_of(entry.get("resource")).get("attributes"))


@dataclass
class IngestResult:
    """Acceptance summary of one OTLP batch."""
    accepted: int = 0
    rejected: int = 0
    errors: List[str] = field(default_factory=list)

    def reject(self, message: str) -> None:
        self.rejected += 1
        if len(self.errors) < MAX_ERRORS:
            self.errors.append(message)

    def partial_success(self, rejected_key: str) -> Dict[str, Any]:
        """
        OTLP response body: `{}` when everything was accepted, otherwise a
        `partialSuccess` object carrying the rejected count under `rejected_key`.
        """
        if self.rejected == 0:
            return {}
        return {
            "partialSuccess": {
                rejected_key: self.rejected,
                "errorMessage": "; ".join(self.errors[:MAX_ERRORS]),
            }
        }

    def to_dict(self) -> Dict[str, Any]:
        return {"accepted": self.accepted, "rejected": self.rejected, "errors": list(self.errors)}
