"""Query planning service.

Control flow for a query: complexity pre-check, join planning, execution by
an external executor, then observability hooks. Validation failures raise
QueryValidationError; execution failures keep their own exception types so
callers can tell the two apart.
"""

import logging
import time
from typing import Any, Protocol

from pydantic import Field

from entity_query_server.errors import QueryComplexityError, QueryValidationError
from entity_query_server.models.metadata import CamelModel
from entity_query_server.models.query import QueryGuardrails, QueryRequest
from entity_query_server.models.results import (
    ComplexityReport,
    ExplainPlanOutput,
    ExplainQueryOutput,
    JoinPlan,
    ValidationResult,
)
from entity_query_server.observability import QueryObservabilityHooks
from entity_query_server.planner.complexity import DEFAULT_MAX_COMPLEXITY, check_complexity
from entity_query_server.planner.join_planner import JoinPlanner
from entity_query_server.planner.projection import render_projected_sql
from entity_query_server.planner.registry import RelationshipRegistry

logger = logging.getLogger(__name__)


class ExecutionResult(CamelModel):
    """Rows returned by an executor."""

    rows: list[dict[str, Any]] = Field(default_factory=list)
    total_count: int | None = None
    used_replica: bool = False


class QueryExecutor(Protocol):
    """Runs a validated plan against tenant data."""

    async def execute(
        self, plan: JoinPlan, query: QueryRequest, tenant_id: str
    ) -> ExecutionResult: ...


class ExplainResult(CamelModel):
    """Validation outcome plus, when valid, the plan and its projected SQL."""

    validation: ValidationResult
    plan: JoinPlan | None = None
    projected_sql: str | None = None

    def to_output(self) -> ExplainQueryOutput:
        return ExplainQueryOutput(
            valid=self.validation.valid,
            errors=self.validation.errors,
            warnings=self.validation.warnings,
            plan=(
                ExplainPlanOutput.from_plan(self.plan, self.projected_sql)
                if self.plan is not None
                else None
            ),
        )


class QueryPlanningService:
    """Validates, explains and executes queries for one registry."""

    def __init__(
        self,
        registry: RelationshipRegistry,
        guardrails: QueryGuardrails | None = None,
        hooks: QueryObservabilityHooks | None = None,
        max_complexity: int = DEFAULT_MAX_COMPLEXITY,
    ) -> None:
        self.planner = JoinPlanner(registry, guardrails)
        self.hooks = hooks or QueryObservabilityHooks()
        self.max_complexity = max_complexity

    @property
    def guardrails(self) -> QueryGuardrails:
        return self.planner.guardrails

    def score(self, query: Any) -> ComplexityReport:
        """Run the complexity pre-check on a parsed or raw query."""
        return check_complexity(query, self.max_complexity)

    def effective_timeout_ms(self, query: QueryRequest) -> int:
        """Requested timeout (or the default), clamped to the maximum."""
        requested = query.options.timeout or self.guardrails.default_timeout_ms
        return min(requested, self.guardrails.max_timeout_ms)

    async def validate(self, query: QueryRequest, tenant_id: str) -> ValidationResult:
        """Validate a query without executing it."""
        start = time.perf_counter()
        result = await self.planner.plan_joins(query, tenant_id)
        if not result.validation.valid:
            self.hooks.on_validation_failure(
                query, result.validation, (time.perf_counter() - start) * 1000
            )
        return result.validation

    async def explain(self, query: QueryRequest, tenant_id: str) -> ExplainResult:
        """Plan a query and render the SQL it would run."""
        result = await self.planner.plan_joins(query, tenant_id)
        if result.plan is None:
            return ExplainResult(validation=result.validation)
        return ExplainResult(
            validation=result.validation,
            plan=result.plan,
            projected_sql=render_projected_sql(query, result.plan, tenant_id),
        )

    async def execute(
        self,
        query: QueryRequest,
        tenant_id: str,
        executor: QueryExecutor,
        subject_type: str | None = None,
        trace_id: str | None = None,
    ) -> ExecutionResult:
        """Validate and plan a query, then hand it to an executor.

        The executor receives the query with options.timeout set to the
        effective (clamped) timeout.

        Raises:
            QueryComplexityError: If the complexity score is over the threshold.
            QueryValidationError: If planning reported errors.
            Exception: Planner and executor failures are recorded, their span
                is ended, and the exception is re-raised.
        """
        report = self.score(query)
        if not report.allowed:
            raise QueryComplexityError(report.score, report.max_complexity)

        span, start_time = self.hooks.on_query_start(query, tenant_id, trace_id)

        try:
            result = await self.planner.plan_joins(query, tenant_id)
            if result.plan is None:
                self.hooks.on_validation_failure(
                    query, result.validation, (time.perf_counter() - start_time) * 1000, span
                )
                raise QueryValidationError(result.validation.errors)

            plan = result.plan
            self.hooks.on_join_plan_complete(span, plan)

            options = query.options.model_copy(
                update={"timeout": self.effective_timeout_ms(query)}
            )
            normalized = query.model_copy(update={"options": options})
            execution = await executor.execute(plan, normalized, tenant_id)
        except QueryValidationError:
            raise
        except Exception as e:
            logger.error(f"Query on '{query.from_}' failed for tenant '{tenant_id}': {e}")
            self.hooks.on_query_error(span, start_time, query, e)
            raise

        self.hooks.on_query_complete(
            span,
            start_time,
            query,
            plan,
            row_count=len(execution.rows),
            tenant_id=tenant_id,
            used_replica=execution.used_replica,
            subject_type=subject_type,
            total_count=execution.total_count,
        )
        return execution
