"""
OTLP/HTTP JSON ingestion for traces, logs and metrics.
"""

from tracetap.otlp.common import IngestResult, MAX_ERRORS
from tracetap.otlp.traces import process_otlp_traces
from tracetap.otlp.logs import process_otlp_logs
from tracetap.otlp.metrics import process_otlp_metrics

__all__ = [
    "IngestResult",
    "MAX_ERRORS",
    "process_otlp_traces",
    "process_otlp_logs",
    "process_otlp_metrics",
]
