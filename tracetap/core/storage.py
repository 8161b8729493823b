"""
Telemetry Storage

Embedded SQLite store for spans, logs and metric points.

Each record kind has its own retention ceiling (row count). Inserts and the
"keep newest N" eviction run in one transaction under one lock, so the count
that decides eviction is always a consistent snapshot. A failed insert rolls
back and leaves previously committed rows untouched.

Structured fields (headers, bodies, attributes, tags) are stored as JSON text.
"""

from __future__ import annotations
import os
import json
import sqlite3
import logging
import threading
from datetime import datetime, timezone
from typing import Optional, Dict, List, Any, Callable, Tuple

from tracetap.core.models import Span, LogRecord, MetricPoint, now_ms

logger = logging.getLogger("tracetap.storage")

HOUR_MS = 3_600_000
DAY_MS = 86_400_000
BUCKETS = {"hour": HOUR_MS, "day": DAY_MS}


# =============================================================================
# SCHEMA
# =============================================================================

SCHEMA = """
CREATE TABLE IF NOT EXISTS traces (
    id TEXT PRIMARY KEY,
    timestamp INTEGER NOT NULL,
    duration_ms INTEGER,
    provider TEXT,
    model TEXT,
    prompt_tokens INTEGER DEFAULT 0,
    completion_tokens INTEGER DEFAULT 0,
    total_tokens INTEGER DEFAULT 0,
    estimated_cost REAL DEFAULT 0,
    status INTEGER,
    error TEXT,
    request_method TEXT,
    request_path TEXT,
    request_headers TEXT,
    request_body TEXT,
    response_status INTEGER,
    response_headers TEXT,
    response_body TEXT,
    tags TEXT,
    trace_id TEXT NOT NULL,
    parent_id TEXT,
    span_type TEXT DEFAULT 'llm',
    span_name TEXT,
    input TEXT,
    output TEXT,
    attributes TEXT,
    service_name TEXT
);
CREATE INDEX IF NOT EXISTS idx_traces_timestamp ON traces(timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_traces_model ON traces(model);
CREATE INDEX IF NOT EXISTS idx_traces_trace_id ON traces(trace_id);
CREATE INDEX IF NOT EXISTS idx_traces_parent_id ON traces(parent_id);
CREATE INDEX IF NOT EXISTS idx_traces_status ON traces(status);

CREATE TABLE IF NOT EXISTS logs (
    id TEXT PRIMARY KEY,
    timestamp INTEGER NOT NULL,
    observed_timestamp INTEGER,
    severity_number INTEGER,
    severity_text TEXT,
    body TEXT,
    trace_id TEXT,
    span_id TEXT,
    event_name TEXT,
    service_name TEXT,
    scope_name TEXT,
    attributes TEXT,
    resource_attributes TEXT
);
CREATE INDEX IF NOT EXISTS idx_logs_timestamp ON logs(timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_logs_service ON logs(service_name);
CREATE INDEX IF NOT EXISTS idx_logs_event ON logs(event_name);
CREATE INDEX IF NOT EXISTS idx_logs_trace_id ON logs(trace_id);

CREATE TABLE IF NOT EXISTS metrics (
    id TEXT PRIMARY KEY,
    timestamp INTEGER NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    unit TEXT,
    metric_type TEXT NOT NULL,
    value_int INTEGER,
    value_double REAL,
    histogram_data TEXT,
    service_name TEXT,
    scope_name TEXT,
    attributes TEXT,
    resource_attributes TEXT
);
CREATE INDEX IF NOT EXISTS idx_metrics_timestamp ON metrics(timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_metrics_name ON metrics(name);
CREATE INDEX IF NOT EXISTS idx_metrics_service ON metrics(service_name);
"""

SPAN_JSON_FIELDS = (
    "request_headers", "request_body", "response_headers", "response_body",
    "tags", "input", "output", "attributes",
)
LOG_JSON_FIELDS = ("attributes", "resource_attributes")
METRIC_JSON_FIELDS = ("histogram_data", "attributes", "resource_attributes")


# =============================================================================
# EXCEPTIONS
# =============================================================================

class StorageError(Exception):
    """An insert or schema operation failed."""
    status_code = 500

    def to_response(self) -> dict:
        return {
            "error": {
                "message": str(self),
                "type": self.__class__.__name__,
            }
        }


class DuplicateRecordError(StorageError):
    """The record violates a constraint of its table (usually a repeated id)."""
    status_code = 409


# =============================================================================
# HELPERS
# =============================================================================

def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _loads(value: Optional[str]) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return value


def _row_to_kwargs(row: sqlite3.Row, json_fields: Tuple[str, ...]) -> Dict[str, Any]:
    data = dict(row)
    for name in json_fields:
        if name in data:
            data[name] = _loads(data[name])
    return data


def _bucket_label(bucket_start: int, interval: str) -> str:
    dt = datetime.fromtimestamp(bucket_start / 1000, tz=timezone.utc)
    if interval == "hour":
        return dt.strftime("%Y-%m-%d %H:00")
    return dt.strftime("%Y-%m-%d")


class _Where:
    """Accumulates WHERE clauses and named parameters."""

    def __init__(self):
        self.clauses: List[str] = []
        self.params: Dict[str, Any] = {}

    def add(self, clause: str, **params: Any) -> None:
        self.clauses.append(clause)
        self.params.update(params)

    def sql(self) -> str:
        return f"WHERE {' AND '.join(self.clauses)}" if self.clauses else ""


# =============================================================================
# STORE
# =============================================================================

class TelemetryStore:
    """
    Bounded SQLite storage for spans, logs and metrics.

    One connection is shared between threads and guarded by a lock.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        max_traces: int = 10_000,
        max_logs: int = 10_000,
        max_metrics: int = 10_000,
    ):
        self.db_path = db_path
        self.max_traces = max_traces
        self.max_logs = max_logs
        self.max_metrics = max_metrics
        self._lock = threading.Lock()
        self._insert_hook: Optional[Callable[[str, Dict[str, Any]], None]] = None

        if db_path != ":memory:":
            directory = os.path.dirname(os.path.abspath(db_path))
            os.makedirs(directory, exist_ok=True)

        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        try:
            with self._lock:
                if self.db_path != ":memory:":
                    self._conn.execute("PRAGMA journal_mode=WAL")
                self._conn.executescript(SCHEMA)
                self._conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to initialize database at {self.db_path}: {e}") from e
        logger.debug(f"Storage ready at {self.db_path}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def set_insert_hook(self, hook: Optional[Callable[[str, Dict[str, Any]], None]]) -> None:
        """Set a hook called after each committed insert (e.g. a live broadcast)."""
        self._insert_hook = hook

    # -------------------------------------------------------------------------
    # Inserts
    # -------------------------------------------------------------------------

    def _insert(self, table: str, row: Dict[str, Any], ceiling: int) -> None:
        columns = ", ".join(row)
        placeholders = ", ".join(f":{name}" for name in row)
        with self._lock:
            try:
                # The connection context manager commits, or rolls back on error
                with self._conn:
                    self._conn.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", row)
                    count = self._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                    if count > ceiling:
                        self._conn.execute(
                            f"""
                            DELETE FROM {table} WHERE id NOT IN (
                                SELECT id FROM {table}
                                ORDER BY timestamp DESC, rowid DESC
                                LIMIT :ceiling
                            )
                            """,
                            {"ceiling": ceiling},
                        )
                        logger.debug(f"Evicted {count - ceiling} row(s) from {table}")
            except sqlite3.IntegrityError as e:
                logger.warning(f"Rejected row for {table}: {e}")
                raise DuplicateRecordError(f"Failed to insert into {table}: {e}") from e
            except sqlite3.Error as e:
                logger.error(f"Failed to insert into {table}: {e}")
                raise StorageError(f"Failed to insert into {table}: {e}") from e

    def _notify(self, kind: str, summary: Dict[str, Any]) -> None:
        if not self._insert_hook:
            return
        try:
            self._insert_hook(kind, summary)
        except Exception as e:
            logger.error(f"Insert hook failed for {kind}: {e}")

    def insert_span(self, span: Span) -> None:
        row = {
            "id": span.id,
            "timestamp": span.timestamp,
            "duration_ms": span.duration_ms,
            "provider": span.provider,
            "model": span.model,
            "prompt_tokens": span.prompt_tokens or 0,
            "completion_tokens": span.completion_tokens or 0,
            "total_tokens": span.total_tokens or 0,
            "estimated_cost": span.estimated_cost or 0,
            "status": span.status,
            "error": span.error,
            "request_method": span.request_method,
            "request_path": span.request_path,
            "request_headers": _dumps(span.request_headers or {}),
            "request_body": _dumps(span.request_body if span.request_body is not None else {}),
            "response_status": span.response_status,
            "response_headers": _dumps(span.response_headers or {}),
            "response_body": _dumps(span.response_body if span.response_body is not None else {}),
            "tags": _dumps(span.tags or []),
            "trace_id": span.trace_id or span.id,
            "parent_id": span.parent_id or None,
            "span_type": span.span_type or "llm",
            "span_name": span.span_name,
            "input": _dumps(span.input),
            "output": _dumps(span.output),
            "attributes": _dumps(span.attributes or {}),
            "service_name": span.service_name,
        }
        self._insert("traces", row, self.max_traces)
        self._notify("span", {
            "id": span.id,
            "trace_id": row["trace_id"],
            "parent_id": row["parent_id"],
            "timestamp": span.timestamp,
            "duration_ms": span.duration_ms,
            "span_type": row["span_type"],
            "span_name": span.span_name,
            "provider": span.provider,
            "model": span.model,
            "total_tokens": row["total_tokens"],
            "estimated_cost": row["estimated_cost"],
            "status": span.status,
            "service_name": span.service_name,
        })

    def insert_log(self, record: LogRecord) -> None:
        row = {
            "id": record.id,
            "timestamp": record.timestamp,
            "observed_timestamp": record.observed_timestamp,
            "severity_number": record.severity_number,
            "severity_text": record.severity_text,
            "body": record.body,
            "trace_id": record.trace_id,
            "span_id": record.span_id,
            "event_name": record.event_name,
            "service_name": record.service_name,
            "scope_name": record.scope_name,
            "attributes": _dumps(record.attributes or {}),
            "resource_attributes": _dumps(record.resource_attributes or {}),
        }
        self._insert("logs", row, self.max_logs)
        self._notify("log", {
            "id": record.id,
            "timestamp": record.timestamp,
            "severity_text": record.severity_text,
            "event_name": record.event_name,
            "service_name": record.service_name,
        })

    def insert_metric(self, point: MetricPoint) -> None:
        row = {
            "id": point.id,
            "timestamp": point.timestamp,
            "name": point.name,
            "description": point.description,
            "unit": point.unit,
            "metric_type": point.metric_type,
            "value_int": point.value_int,
            "value_double": point.value_double,
            "histogram_data": _dumps(point.histogram_data) if point.histogram_data is not None else None,
            "service_name": point.service_name,
            "scope_name": point.scope_name,
            "attributes": _dumps(point.attributes or {}),
            "resource_attributes": _dumps(point.resource_attributes or {}),
        }
        self._insert("metrics", row, self.max_metrics)
        self._notify("metric", {
            "id": point.id,
            "timestamp": point.timestamp,
            "name": point.name,
            "metric_type": point.metric_type,
            "service_name": point.service_name,
        })

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _fetchall(self, sql: str, params: Any = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _fetchone(self, sql: str, params: Any = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    @staticmethod
    def _span(row: sqlite3.Row) -> Span:
        return Span(**_row_to_kwargs(row, SPAN_JSON_FIELDS))

    @staticmethod
    def _log(row: sqlite3.Row) -> LogRecord:
        return LogRecord(**_row_to_kwargs(row, LOG_JSON_FIELDS))

    @staticmethod
    def _metric(row: sqlite3.Row) -> MetricPoint:
        return MetricPoint(**_row_to_kwargs(row, METRIC_JSON_FIELDS))

    # --- spans ---------------------------------------------------------------

    @staticmethod
    def _trace_where(filters: Optional[Dict[str, Any]]) -> _Where:
        filters = filters or {}
        where = _Where()
        for name in ("model", "provider", "span_type", "service_name", "trace_id"):
            if filters.get(name):
                where.add(f"{name} = :{name}", **{name: filters[name]})
        status = filters.get("status")
        if status == "error":
            where.add("status >= 400")
        elif status == "success":
            where.add("status < 400")
        if filters.get("q"):
            where.add(
                "(request_body LIKE :q OR response_body LIKE :q OR input LIKE :q "
                "OR output LIKE :q OR attributes LIKE :q OR span_name LIKE :q)",
                q=f"%{filters['q']}%",
            )
        if filters.get("date_from") is not None:
            where.add("timestamp >= :date_from", date_from=filters["date_from"])
        if filters.get("date_to") is not None:
            where.add("timestamp <= :date_to", date_to=filters["date_to"])
        if filters.get("cost_min") is not None:
            where.add("estimated_cost >= :cost_min", cost_min=filters["cost_min"])
        if filters.get("cost_max") is not None:
            where.add("estimated_cost <= :cost_max", cost_max=filters["cost_max"])
        return where

    def get_traces(self, limit: int = 50, offset: int = 0, filters: Optional[Dict[str, Any]] = None) -> List[Span]:
        """List spans, newest first."""
        where = self._trace_where(filters)
        rows = self._fetchall(
            f"SELECT * FROM traces {where.sql()} ORDER BY timestamp DESC, rowid DESC LIMIT :limit OFFSET :offset",
            {**where.params, "limit": limit, "offset": offset},
        )
        return [self._span(r) for r in rows]

    def count_traces(self, filters: Optional[Dict[str, Any]] = None) -> int:
        where = self._trace_where(filters)
        return self._fetchone(f"SELECT COUNT(*) FROM traces {where.sql()}", where.params)[0]

    def get_span(self, span_id: str) -> Optional[Span]:
        row = self._fetchone("SELECT * FROM traces WHERE id = ?", (span_id,))
        return self._span(row) if row else None

    def get_spans_by_trace_id(self, trace_id: str) -> List[Span]:
        rows = self._fetchall(
            "SELECT * FROM traces WHERE trace_id = ? ORDER BY timestamp ASC, rowid ASC",
            (trace_id,),
        )
        return [self._span(r) for r in rows]

    def get_span_tree(self, span_id: str) -> Optional[Dict[str, Any]]:
        """
        Rebuild the tree of the trace that `span_id` belongs to.

        Spans whose parent is not part of the trace become extra roots. Any
        span only reachable through a parent cycle is detached and promoted to
        a root, so every span appears exactly once.
        """
        span = self.get_span(span_id)
        if span is None:
            return None

        spans = self.get_spans_by_trace_id(span.trace_id)
        nodes: Dict[str, Dict[str, Any]] = {s.id: {**s.to_dict(), "children": []} for s in spans}
        roots: List[Dict[str, Any]] = []

        for s in spans:
            node = nodes[s.id]
            parent = nodes.get(s.parent_id) if s.parent_id and s.parent_id != s.id else None
            if parent is None:
                roots.append(node)
            else:
                parent["children"].append(node)

        reachable = set()

        def mark(start: Dict[str, Any]) -> None:
            stack = [start]
            while stack:
                node = stack.pop()
                if node["id"] in reachable:
                    continue
                reachable.add(node["id"])
                stack.extend(node["children"])

        for root in roots:
            mark(root)
        for s in spans:
            if s.id in reachable:
                continue
            parent = nodes[s.parent_id]
            parent["children"] = [c for c in parent["children"] if c["id"] != s.id]
            roots.append(nodes[s.id])
            mark(nodes[s.id])

        start_time = min(s.timestamp for s in spans)
        end_time = max(s.timestamp + (s.duration_ms or 0) for s in spans)
        return {
            "trace": {
                "trace_id": span.trace_id,
                "start_time": start_time,
                "end_time": end_time,
                "duration_ms": end_time - start_time,
                "total_cost": sum(s.estimated_cost or 0 for s in spans),
                "total_tokens": sum(s.total_tokens or 0 for s in spans),
                "span_count": len(spans),
            },
            "spans": roots,
        }

    # --- logs ----------------------------------------------------------------

    @staticmethod
    def _log_where(filters: Optional[Dict[str, Any]]) -> _Where:
        filters = filters or {}
        where = _Where()
        for name in ("service_name", "event_name", "trace_id", "span_id"):
            if filters.get(name):
                where.add(f"{name} = :{name}", **{name: filters[name]})
        if filters.get("severity_min") is not None:
            where.add("severity_number >= :severity_min", severity_min=filters["severity_min"])
        if filters.get("q"):
            where.add("(body LIKE :q OR attributes LIKE :q)", q=f"%{filters['q']}%")
        if filters.get("date_from") is not None:
            where.add("timestamp >= :date_from", date_from=filters["date_from"])
        if filters.get("date_to") is not None:
            where.add("timestamp <= :date_to", date_to=filters["date_to"])
        return where

    def get_logs(self, limit: int = 50, offset: int = 0, filters: Optional[Dict[str, Any]] = None) -> List[LogRecord]:
        where = self._log_where(filters)
        rows = self._fetchall(
            f"SELECT * FROM logs {where.sql()} ORDER BY timestamp DESC, rowid DESC LIMIT :limit OFFSET :offset",
            {**where.params, "limit": limit, "offset": offset},
        )
        return [self._log(r) for r in rows]

    def count_logs(self, filters: Optional[Dict[str, Any]] = None) -> int:
        where = self._log_where(filters)
        return self._fetchone(f"SELECT COUNT(*) FROM logs {where.sql()}", where.params)[0]

    def get_log(self, log_id: str) -> Optional[LogRecord]:
        row = self._fetchone("SELECT * FROM logs WHERE id = ?", (log_id,))
        return self._log(row) if row else None

    # --- metrics -------------------------------------------------------------

    @staticmethod
    def _metric_where(filters: Optional[Dict[str, Any]]) -> _Where:
        filters = filters or {}
        where = _Where()
        for name in ("name", "metric_type", "service_name"):
            if filters.get(name):
                where.add(f"{name} = :{name}", **{name: filters[name]})
        if filters.get("q"):
            where.add("(name LIKE :q OR attributes LIKE :q)", q=f"%{filters['q']}%")
        if filters.get("date_from") is not None:
            where.add("timestamp >= :date_from", date_from=filters["date_from"])
        if filters.get("date_to") is not None:
            where.add("timestamp <= :date_to", date_to=filters["date_to"])
        return where

    def get_metrics(self, limit: int = 50, offset: int = 0, filters: Optional[Dict[str, Any]] = None) -> List[MetricPoint]:
        where = self._metric_where(filters)
        rows = self._fetchall(
            f"SELECT * FROM metrics {where.sql()} ORDER BY timestamp DESC, rowid DESC LIMIT :limit OFFSET :offset",
            {**where.params, "limit": limit, "offset": offset},
        )
        return [self._metric(r) for r in rows]

    def count_metrics(self, filters: Optional[Dict[str, Any]] = None) -> int:
        where = self._metric_where(filters)
        return self._fetchone(f"SELECT COUNT(*) FROM metrics {where.sql()}", where.params)[0]

    def get_metric(self, metric_id: str) -> Optional[MetricPoint]:
        row = self._fetchone("SELECT * FROM metrics WHERE id = ?", (metric_id,))
        return self._metric(row) if row else None

    def get_metric_summary(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        """Per metric name: point count, value totals and last timestamp."""
        where = _Where()
        if name:
            where.add("name = :name", name=name)
        rows = self._fetchall(
            f"""
            SELECT
                name,
                metric_type,
                MAX(unit) AS unit,
                COUNT(*) AS data_points,
                COALESCE(SUM(COALESCE(value_double, value_int)), 0) AS total,
                MIN(COALESCE(value_double, value_int)) AS min_value,
                MAX(COALESCE(value_double, value_int)) AS max_value,
                MAX(timestamp) AS last_timestamp
            FROM metrics
            {where.sql()}
            GROUP BY name, metric_type
            ORDER BY name
            """,
            where.params,
        )
        return [dict(r) for r in rows]

    # --- distinct listings ---------------------------------------------------

    def _distinct(self, table: str, column: str) -> List[str]:
        rows = self._fetchall(
            f"SELECT DISTINCT {column} FROM {table} WHERE {column} IS NOT NULL ORDER BY {column}"
        )
        return [r[0] for r in rows]

    def get_distinct_models(self) -> List[str]:
        return self._distinct("traces", "model")

    def get_distinct_providers(self) -> List[str]:
        return self._distinct("traces", "provider")

    def get_distinct_span_services(self) -> List[str]:
        return self._distinct("traces", "service_name")

    def get_distinct_log_services(self) -> List[str]:
        return self._distinct("logs", "service_name")

    def get_distinct_event_names(self) -> List[str]:
        return self._distinct("logs", "event_name")

    def get_distinct_metric_names(self) -> List[str]:
        return self._distinct("metrics", "name")

    def get_distinct_metric_services(self) -> List[str]:
        return self._distinct("metrics", "service_name")

    # -------------------------------------------------------------------------
    # Aggregates
    # -------------------------------------------------------------------------

    def _bucketed(self, bucket_ms: int, days: int, now: Optional[int]) -> Tuple[int, int, Dict[int, sqlite3.Row]]:
        now = now if now is not None else now_ms()
        start = now - days * DAY_MS
        rows = self._fetchall(
            """
            SELECT
                timestamp / :bucket AS bucket,
                COALESCE(SUM(prompt_tokens), 0) AS prompt_tokens,
                COALESCE(SUM(completion_tokens), 0) AS completion_tokens,
                COALESCE(SUM(total_tokens), 0) AS total_tokens,
                COALESCE(SUM(estimated_cost), 0) AS total_cost,
                COUNT(*) AS request_count,
                SUM(CASE WHEN status >= 400 THEN 1 ELSE 0 END) AS error_count
            FROM traces
            WHERE timestamp >= :start AND timestamp <= :now
            GROUP BY bucket
            """,
            {"bucket": bucket_ms, "start": start, "now": now},
        )
        return start // bucket_ms, now // bucket_ms, {r["bucket"]: r for r in rows}

    def get_token_trends(self, interval: str = "hour", days: int = 1, now: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Token and cost totals per hour or day.

        Buckets with no spans are returned as zero rows, so the series has no
        gaps between the requested start and now.
        """
        if days <= 0:
            return []
        interval = interval if interval in BUCKETS else "hour"
        bucket_ms = BUCKETS[interval]
        first, last, by_bucket = self._bucketed(bucket_ms, days, now)

        series = []
        for bucket in range(first, last + 1):
            row = by_bucket.get(bucket)
            start = bucket * bucket_ms
            series.append({
                "bucket": start,
                "label": _bucket_label(start, interval),
                "prompt_tokens": row["prompt_tokens"] if row else 0,
                "completion_tokens": row["completion_tokens"] if row else 0,
                "total_tokens": row["total_tokens"] if row else 0,
                "total_cost": row["total_cost"] if row else 0.0,
                "request_count": row["request_count"] if row else 0,
            })
        return series

    def get_daily_stats(self, days: int = 30, now: Optional[int] = None) -> List[Dict[str, Any]]:
        """Per-day request, token, cost and error counts, zero-filled."""
        if days <= 0:
            return []
        first, last, by_bucket = self._bucketed(DAY_MS, days, now)

        series = []
        for bucket in range(first, last + 1):
            row = by_bucket.get(bucket)
            start = bucket * DAY_MS
            series.append({
                "bucket": start,
                "date": _bucket_label(start, "day"),
                "requests": row["request_count"] if row else 0,
                "tokens": row["total_tokens"] if row else 0,
                "cost": row["total_cost"] if row else 0.0,
                "errors": row["error_count"] if row else 0,
            })
        return series

    def _cost_by(self, column: str, days: int, now: Optional[int]) -> List[Dict[str, Any]]:
        if days <= 0:
            return []
        now = now if now is not None else now_ms()
        rows = self._fetchall(
            f"""
            SELECT
                COALESCE({column}, 'unknown') AS {column},
                COALESCE(SUM(estimated_cost), 0) AS total_cost,
                COALESCE(SUM(total_tokens), 0) AS total_tokens,
                COALESCE(SUM(prompt_tokens), 0) AS prompt_tokens,
                COALESCE(SUM(completion_tokens), 0) AS completion_tokens,
                COUNT(*) AS request_count
            FROM traces
            WHERE timestamp >= :start AND timestamp <= :now
            GROUP BY COALESCE({column}, 'unknown')
            ORDER BY total_cost DESC, request_count DESC
            """,
            {"start": now - days * DAY_MS, "now": now},
        )
        return [dict(r) for r in rows]

    def get_cost_by_provider(self, days: int = 30, now: Optional[int] = None) -> List[Dict[str, Any]]:
        return self._cost_by("provider", days, now)

    def get_cost_by_model(self, days: int = 30, now: Optional[int] = None) -> List[Dict[str, Any]]:
        return self._cost_by("model", days, now)

    def get_stats(self) -> Dict[str, Any]:
        """Overall totals plus a per-model breakdown."""
        row = self._fetchone(
            """
            SELECT
                COUNT(*) AS total_requests,
                COALESCE(SUM(total_tokens), 0) AS total_tokens,
                COALESCE(SUM(estimated_cost), 0) AS total_cost,
                COALESCE(SUM(duration_ms), 0) AS total_duration,
                COALESCE(SUM(CASE WHEN status >= 400 THEN 1 ELSE 0 END), 0) AS error_count
            FROM traces
            """
        )
        models = self._fetchall(
            """
            SELECT
                model,
                COUNT(*) AS count,
                COALESCE(SUM(total_tokens), 0) AS tokens,
                COALESCE(SUM(estimated_cost), 0) AS cost
            FROM traces
            GROUP BY model
            ORDER BY count DESC
            """
        )
        stats = dict(row)
        stats["avg_duration"] = stats["total_duration"] / stats["total_requests"] if stats["total_requests"] else 0
        stats["models"] = [dict(m) for m in models]
        return stats

    def counts(self) -> Dict[str, int]:
        return {
            "traces": self.count_traces(),
            "logs": self.count_logs(),
            "metrics": self.count_metrics(),
        }
