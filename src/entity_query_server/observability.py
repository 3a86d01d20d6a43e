"""Query metrics and tracing.

InMemoryMetricsCollector is a development-grade backend: it keeps bounded
sample lists and computes percentiles by sorting. Production deployments are
expected to plug another QueryMetricsCollector in behind the same hooks.
Spans go through the OpenTelemetry API, so any configured SDK and exporter
receives them.
"""

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import (
    NonRecordingSpan,
    Span,
    SpanContext,
    Status,
    StatusCode,
    TraceFlags,
    Tracer,
)
from pydantic import Field

from entity_query_server.models.metadata import CamelModel
from entity_query_server.models.query import QueryRequest
from entity_query_server.models.results import JoinPlan, ValidationResult

logger = logging.getLogger(__name__)

MAX_SAMPLES = 10000
RETAINED_SAMPLES = 5000

DEFAULT_SLOW_QUERY_THRESHOLD_MS = 1000.0


# === Metric records ===


class QueryExecutionMetric(CamelModel):
    """Sample recorded for a completed query."""

    entity: str
    join_count: int
    join_depth: int
    field_count: int
    execution_time_ms: float
    row_count: int
    used_replica: bool = False
    included_count: bool = False
    tenant_id: str
    subject_type: str | None = None


class QueryValidationMetric(CamelModel):
    """Sample recorded for a validation outcome; error codes only."""

    entity: str
    valid: bool
    error_codes: list[str] = Field(default_factory=list)
    validation_time_ms: float


class QueryErrorMetric(CamelModel):
    """Sample recorded for a failed execution."""

    entity: str
    error_type: str
    error_message: str
    execution_time_ms: float


class QueryMetricsSnapshot(CamelModel):
    """Point-in-time aggregate of collected samples."""

    total_queries: int
    total_errors: int
    total_validation_failures: int
    avg_execution_time_ms: float
    p95_execution_time_ms: float
    p99_execution_time_ms: float
    queries_by_entity: dict[str, int]
    errors_by_type: dict[str, int]
    avg_join_count: float
    avg_field_count: float
    total_rows_returned: int
    period_start: datetime
    period_end: datetime


# === Metrics collectors ===


class QueryMetricsCollector(ABC):
    """Destination for query metrics."""

    @abstractmethod
    def record_query_execution(self, metric: QueryExecutionMetric) -> None: ...

    @abstractmethod
    def record_query_validation(self, metric: QueryValidationMetric) -> None: ...

    @abstractmethod
    def record_query_error(self, metric: QueryErrorMetric) -> None: ...

    @abstractmethod
    def get_metrics(self) -> QueryMetricsSnapshot: ...

    @abstractmethod
    def reset(self) -> None: ...


def _append_bounded(samples: list[Any], sample: Any) -> list[Any]:
    samples.append(sample)
    if len(samples) > MAX_SAMPLES:
        return samples[-RETAINED_SAMPLES:]
    return samples


def _percentile(sorted_values: list[float], fraction: float) -> float:
    """Nearest-rank percentile over already sorted values (0 when empty)."""
    if not sorted_values:
        return 0.0
    index = min(int(len(sorted_values) * fraction), len(sorted_values) - 1)
    return sorted_values[index]


class InMemoryMetricsCollector(QueryMetricsCollector):
    """Keeps the newest samples in memory.

    Each stream holds at most MAX_SAMPLES entries; on overflow it is trimmed
    to the newest RETAINED_SAMPLES.
    """

    def __init__(self) -> None:
        self._executions: list[QueryExecutionMetric] = []
        self._validations: list[QueryValidationMetric] = []
        self._errors: list[QueryErrorMetric] = []
        self._period_start = datetime.now(timezone.utc)

    def record_query_execution(self, metric: QueryExecutionMetric) -> None:
        self._executions = _append_bounded(self._executions, metric)

    def record_query_validation(self, metric: QueryValidationMetric) -> None:
        self._validations = _append_bounded(self._validations, metric)

    def record_query_error(self, metric: QueryErrorMetric) -> None:
        self._errors = _append_bounded(self._errors, metric)

    def get_metrics(self) -> QueryMetricsSnapshot:
        times = sorted(e.execution_time_ms for e in self._executions)
        count = len(self._executions)

        queries_by_entity: dict[str, int] = {}
        for execution in self._executions:
            queries_by_entity[execution.entity] = queries_by_entity.get(execution.entity, 0) + 1

        errors_by_type: dict[str, int] = {}
        for error in self._errors:
            errors_by_type[error.error_type] = errors_by_type.get(error.error_type, 0) + 1

        return QueryMetricsSnapshot(
            total_queries=count,
            total_errors=len(self._errors),
            total_validation_failures=sum(1 for v in self._validations if not v.valid),
            avg_execution_time_ms=sum(times) / count if count else 0.0,
            p95_execution_time_ms=_percentile(times, 0.95),
            p99_execution_time_ms=_percentile(times, 0.99),
            queries_by_entity=queries_by_entity,
            errors_by_type=errors_by_type,
            avg_join_count=sum(e.join_count for e in self._executions) / count if count else 0.0,
            avg_field_count=(
                sum(e.field_count for e in self._executions) / count if count else 0.0
            ),
            total_rows_returned=sum(e.row_count for e in self._executions),
            period_start=self._period_start,
            period_end=datetime.now(timezone.utc),
        )

    def reset(self) -> None:
        self._executions = []
        self._validations = []
        self._errors = []
        self._period_start = datetime.now(timezone.utc)


# === Tracing ===


def _parse_hex(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return int(value, 16)
    except ValueError:
        return None


def remote_parent_context(
    trace_id: str | None, parent_span_id: str | None = None
) -> Context | None:
    """Build a context whose current span is a remote parent.

    Args:
        trace_id: Incoming trace id as 32 hex characters.
        parent_span_id: Incoming span id as 16 hex characters. When absent or
            not hex, the low 64 bits of the trace id are used.

    Returns:
        Context to start child spans in, or None when trace_id is not a valid id.
    """
    trace_value = _parse_hex(trace_id)
    if trace_value is None:
        if trace_id:
            logger.debug(f"Ignoring malformed trace id '{trace_id}'")
        return None

    span_value = _parse_hex(parent_span_id)
    parent = SpanContext(
        trace_id=trace_value,
        span_id=span_value if span_value is not None else trace_value & 0xFFFFFFFFFFFFFFFF,
        is_remote=True,
        trace_flags=TraceFlags(TraceFlags.SAMPLED),
    )
    if not parent.is_valid:
        logger.debug(f"Ignoring invalid trace id '{trace_id}'")
        return None
    return trace.set_span_in_context(NonRecordingSpan(parent))


# === Hooks ===


class QueryObservabilityHooks:
    """Lifecycle hooks wrapping planning and execution.

    on_query_start opens an OpenTelemetry span and returns it with a
    perf_counter start time; callers pass both back to on_query_complete or
    on_query_error, which end the span. Without an explicit tracer the global
    provider's tracer is used, a no-op until an SDK is configured.
    """

    def __init__(
        self,
        metrics: QueryMetricsCollector | None = None,
        tracer: Tracer | None = None,
        log_slow_queries: bool = True,
        slow_query_threshold_ms: float = DEFAULT_SLOW_QUERY_THRESHOLD_MS,
    ) -> None:
        self.metrics = metrics or InMemoryMetricsCollector()
        self.tracer = tracer or trace.get_tracer(__name__)
        self.log_slow_queries = log_slow_queries
        self.slow_query_threshold_ms = slow_query_threshold_ms

    def on_query_start(
        self,
        query: QueryRequest,
        tenant_id: str,
        trace_id: str | None = None,
        request_id: str | None = None,
    ) -> tuple[Span, float]:
        span = self.tracer.start_span(
            "query.execute",
            context=remote_parent_context(trace_id, request_id),
            attributes={
                "query.entity": query.from_,
                "query.tenant_id": tenant_id,
                "query.join_count": len(query.joins),
                "query.field_count": len(query.select),
                "query.limit": query.limit,
                "query.offset": query.offset or 0,
                "query.include_count": query.include_count,
                "query.use_replica": query.options.use_replica,
                "db.system": "postgresql",
                "db.operation": "SELECT",
            },
        )
        span.add_event("query.plan.start")
        return span, time.perf_counter()

    def on_join_plan_complete(self, span: Span, plan: JoinPlan) -> None:
        span.set_attribute("query.join_depth", plan.max_depth)
        span.add_event(
            "query.plan.complete",
            {
                "base_entity": plan.base_entity,
                "join_count": len(plan.joins),
                "max_depth": plan.max_depth,
            },
        )

    def on_query_complete(
        self,
        span: Span,
        start_time: float,
        query: QueryRequest,
        plan: JoinPlan,
        row_count: int,
        tenant_id: str,
        used_replica: bool = False,
        subject_type: str | None = None,
        total_count: int | None = None,
    ) -> float:
        """Record a completed query and end its span.

        Returns:
            Execution time in milliseconds.
        """
        execution_time_ms = (time.perf_counter() - start_time) * 1000

        self.metrics.record_query_execution(
            QueryExecutionMetric(
                entity=query.from_,
                join_count=len(plan.joins),
                join_depth=plan.max_depth,
                field_count=len(query.select),
                execution_time_ms=execution_time_ms,
                row_count=row_count,
                used_replica=used_replica,
                included_count=query.include_count,
                tenant_id=tenant_id,
                subject_type=subject_type,
            )
        )

        event: dict[str, int] = {"row_count": row_count}
        if total_count is not None:
            event["total_count"] = total_count
        span.set_attribute("query.row_count", row_count)
        span.set_attribute("query.execution_time_ms", execution_time_ms)
        span.add_event("query.complete", event)
        span.set_status(Status(StatusCode.OK))
        span.end()

        if self.log_slow_queries and execution_time_ms > self.slow_query_threshold_ms:
            logger.warning(
                f"Slow query on '{query.from_}': {execution_time_ms:.0f}ms "
                f"(threshold {self.slow_query_threshold_ms:.0f}ms), "
                f"{row_count} rows, {len(plan.joins)} joins, depth {plan.max_depth}"
            )
        return execution_time_ms

    def on_validation_failure(
        self,
        query: QueryRequest,
        validation: ValidationResult,
        validation_time_ms: float,
        span: Span | None = None,
    ) -> None:
        """Record a failed validation; ends the span when one was opened."""
        self.metrics.record_query_validation(
            QueryValidationMetric(
                entity=query.from_,
                valid=False,
                error_codes=validation.error_codes,
                validation_time_ms=validation_time_ms,
            )
        )

        if span is not None:
            span.add_event("query.validation_failed", {"error_codes": validation.error_codes})
            span.set_status(Status(StatusCode.ERROR, "validation failed"))
            span.end()

    def on_query_error(
        self, span: Span, start_time: float, query: QueryRequest, error: Exception
    ) -> None:
        execution_time_ms = (time.perf_counter() - start_time) * 1000
        error_type = type(error).__name__

        self.metrics.record_query_error(
            QueryErrorMetric(
                entity=query.from_,
                error_type=error_type,
                error_message=str(error),
                execution_time_ms=execution_time_ms,
            )
        )

        span.record_exception(error)
        span.set_status(Status(StatusCode.ERROR, str(error)))
        span.end()

    def get_metrics(self) -> QueryMetricsSnapshot:
        return self.metrics.get_metrics()
