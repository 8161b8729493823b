"""
Data Models

Records stored by the collector and the value objects passed between the
routing layer, the provider adapters and the store.
"""

from __future__ import annotations
import time
import uuid
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, List, Any
from enum import Enum


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


def as_count(value: Any) -> int:
    """Token count reported by an upstream; anything non-numeric counts as 0."""
    if isinstance(value, bool):
        return 0
    try:
        return int(value or 0)
    except (TypeError, ValueError, OverflowError):
        return 0


# =============================================================================
# ENUMS
# =============================================================================

class SpanKind(str, Enum):
    """Type of span - helps with visualization and filtering."""
    TRACE = "trace"                # Root of a workflow
    LLM = "llm"                    # LLM API call
    AGENT = "agent"                # Agent execution
    CHAIN = "chain"                # Chain/task step
    TOOL = "tool"                  # Tool/function call
    RETRIEVAL = "retrieval"        # Vector store or search
    EMBEDDING = "embedding"        # Embedding generation
    CUSTOM = "custom"              # Anything else


class MetricType(str, Enum):
    """OTLP metric kinds we keep."""
    SUM = "sum"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


# =============================================================================
# ADAPTER VALUE OBJECTS
# =============================================================================

@dataclass(frozen=True)
class Usage:
    """Token usage reported by an upstream call."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    extra: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def of(
        cls,
        prompt_tokens: Any = 0,
        completion_tokens: Any = 0,
        total_tokens: Any = 0,
        **extra: int,
    ) -> "Usage":
        """Build a usage record, filling the total when the upstream omits it."""
        prompt = as_count(prompt_tokens)
        completion = as_count(completion_tokens)
        total = as_count(total_tokens) or prompt + completion
        return cls(prompt, completion, total, {k: as_count(v) for k, v in extra.items()})

    @classmethod
    def from_openai(cls, usage: Any) -> Optional["Usage"]:
        """Read an OpenAI-style usage object (chat or responses API)."""
        if not isinstance(usage, dict):
            return None
        if "input_tokens" in usage:
            return cls.of(usage.get("input_tokens"), usage.get("output_tokens"), usage.get("total_tokens"))
        return cls.of(usage.get("prompt_tokens"), usage.get("completion_tokens"), usage.get("total_tokens"))

    def to_dict(self) -> Dict[str, int]:
        data = {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }
        data.update(self.extra)
        return data


@dataclass(frozen=True)
class TargetDescriptor:
    """Where an upstream call goes."""
    hostname: str
    port: int
    path: str
    protocol: str = "https"

    @property
    def url(self) -> str:
        default_port = 443 if self.protocol == "https" else 80
        netloc = self.hostname if self.port == default_port else f"{self.hostname}:{self.port}"
        return f"{self.protocol}://{netloc}{self.path}"


@dataclass
class ParsedRequest:
    """Inbound request as handed over by the routing layer."""
    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    query: str = ""
    # Original bytes, forwarded when the body is not JSON
    raw_body: bytes = b""

    def __post_init__(self):
        self.headers = {k.lower(): v for k, v in (self.headers or {}).items()}

    @property
    def model(self) -> Optional[str]:
        if isinstance(self.body, dict):
            return self.body.get("model")
        return None

    @property
    def wants_stream(self) -> bool:
        return isinstance(self.body, dict) and self.body.get("stream") is True

    def with_path(self, path: str) -> "ParsedRequest":
        return ParsedRequest(self.method, path, dict(self.headers), self.body, self.query, self.raw_body)


@dataclass
class NormalizedResponse:
    """Upstream response mapped to the canonical chat-completion shape."""
    data: Any
    usage: Optional[Usage]
    model: Optional[str]
    content: str = ""


@dataclass(frozen=True)
class StreamChunk:
    """What one slice of a streamed response contributed."""
    content: str = ""
    usage: Optional[Usage] = None
    done: bool = False


# =============================================================================
# STORED RECORDS
# =============================================================================

@dataclass
class Span:
    """
    A single traced operation.

    Produced by the proxy on call completion, by OTLP trace ingestion or by
    the SDK span endpoint. Immutable once stored.
    """
    id: str = field(default_factory=new_id)
    trace_id: Optional[str] = None
    parent_id: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)
    duration_ms: Optional[int] = None

    span_type: str = SpanKind.LLM.value
    span_name: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0

    status: Optional[int] = None
    error: Optional[str] = None

    request_method: Optional[str] = None
    request_path: Optional[str] = None
    request_headers: Dict[str, Any] = field(default_factory=dict)
    request_body: Any = field(default_factory=dict)
    response_status: Optional[int] = None
    response_headers: Dict[str, Any] = field(default_factory=dict)
    response_body: Any = field(default_factory=dict)

    tags: List[str] = field(default_factory=list)
    attributes: Dict[str, Any] = field(default_factory=dict)
    input: Any = None
    output: Any = None
    service_name: Optional[str] = None

    def __post_init__(self):
        if not self.trace_id:
            self.trace_id = self.id
        if isinstance(self.span_type, SpanKind):
            self.span_type = self.span_type.value

    def apply_usage(self, usage: Optional[Usage]) -> None:
        if usage is None:
            return
        self.prompt_tokens = usage.prompt_tokens
        self.completion_tokens = usage.completion_tokens
        self.total_tokens = usage.total_tokens or usage.prompt_tokens + usage.completion_tokens

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LogRecord:
    """An OTLP log record."""
    id: str = field(default_factory=new_id)
    timestamp: int = field(default_factory=now_ms)
    observed_timestamp: Optional[int] = None
    severity_number: Optional[int] = None
    severity_text: Optional[str] = None
    body: Optional[str] = None
    trace_id: Optional[str] = None
    span_id: Optional[str] = None
    event_name: Optional[str] = None
    service_name: Optional[str] = None
    scope_name: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    resource_attributes: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MetricPoint:
    """One OTLP metric data point."""
    id: str = field(default_factory=new_id)
    timestamp: int = field(default_factory=now_ms)
    name: str = ""
    description: Optional[str] = None
    unit: Optional[str] = None
    metric_type: str = MetricType.GAUGE.value
    value_int: Optional[int] = None
    value_double: Optional[float] = None
    histogram_data: Optional[Dict[str, Any]] = None
    service_name: Optional[str] = None
    scope_name: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    resource_attributes: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.metric_type, MetricType):
            self.metric_type = self.metric_type.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
