"""Query planning tools.

These tools let LLMs check a declarative cross-entity query before anyone
runs it: structural validation, the join plan with its projected SQL, the
complexity score, and the metrics recorded so far.
"""

import logging
from typing import Any

from mcp.server.fastmcp import Context
from mcp.server.session import ServerSession
from mcp.types import ToolAnnotations
from pydantic import ValidationError

from entity_query_server.errors import ErrorCode, create_tool_error, missing_tenant_error
from entity_query_server.models.query import QueryRequest
from entity_query_server.models.results import (
    ComplexityReport,
    ExplainQueryOutput,
    ValidateQueryOutput,
)
from entity_query_server.observability import QueryMetricsSnapshot
from entity_query_server.planner.complexity import check_complexity
from entity_query_server.server import AppContext, mcp

logger = logging.getLogger(__name__)


def parse_query_request(
    query: dict[str, Any], tool_name: str
) -> QueryRequest | dict[str, Any]:
    """Parse a raw query, or build an INVALID_REQUEST tool error.

    Args:
        query: Raw query request as received by the tool.
        tool_name: Name of the calling tool.

    Returns:
        The parsed QueryRequest, or a tool error dictionary.
    """
    try:
        return QueryRequest.model_validate(query)
    except ValidationError as e:
        problems = [
            {
                "path": ".".join(str(part) for part in error["loc"]),
                "message": error["msg"],
            }
            for error in e.errors(include_url=False)
        ]
        return create_tool_error(
            ErrorCode.INVALID_REQUEST,
            f"Invalid query request: {len(problems)} problem(s)",
            tool_name,
            {"query": query},
            context={"errors": problems},
        )


@mcp.tool(
    annotations=ToolAnnotations(
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def validate_query(
    query: dict[str, Any],
    tenant_id: str | None = None,
    ctx: Context[ServerSession, AppContext] | None = None,
) -> ValidateQueryOutput | dict[str, Any]:
    """Validate a cross-entity query without running it.

    Every problem is reported at once, each with a machine-readable code and
    a path into the request (e.g. "joins[1].on", "select[3]").

    Args:
        query: Query request with "from", "select", "limit" and optional
            "as", "joins", "where", "orderBy", "offset", "options".
        tenant_id: Tenant whose entity metadata to use. Default: PLANNER_DEFAULT_TENANT_ID

    Returns:
        Validity flag with errors and warnings.

    Example:
        validate_query(query={
            "from": "orders",
            "select": ["o.id", "c.name"],
            "joins": [{"type": "inner", "entity": "customers", "as": "c",
                       "on": "o.customer_id = c.id"}],
            "limit": 10
        }) -> {"valid": true, "errors": [], "warnings": []}
    """
    if ctx is None:
        return create_tool_error(
            ErrorCode.CONNECTION_ERROR,
            "No context available",
            "validate_query",
        )

    request = parse_query_request(query, "validate_query")
    if isinstance(request, dict):
        return request

    app_ctx = ctx.request_context.lifespan_context
    tenant = app_ctx.resolve_tenant(tenant_id)
    if tenant is None:
        return missing_tenant_error("validate_query", {"query": query})

    try:
        service = app_ctx.planning_service(tenant)
        validation = await service.validate(request, tenant)
        return ValidateQueryOutput(
            valid=validation.valid,
            errors=validation.errors,
            warnings=validation.warnings,
        )
    except Exception as e:
        logger.exception("validate_query failed")
        return create_tool_error(
            ErrorCode.CONNECTION_ERROR,
            str(e),
            "validate_query",
            {"query": query, "tenant_id": tenant_id},
        )


@mcp.tool(
    annotations=ToolAnnotations(
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def explain_query(
    query: dict[str, Any],
    tenant_id: str | None = None,
    ctx: Context[ServerSession, AppContext] | None = None,
) -> ExplainQueryOutput | dict[str, Any]:
    """Show the join plan and the SQL a query projects to.

    The query is validated first; the plan is only returned when it is valid.
    The projected SQL uses bind placeholders and is never executed.

    Args:
        query: Query request (same shape as validate_query)
        tenant_id: Tenant whose entity metadata to use. Default: PLANNER_DEFAULT_TENANT_ID

    Returns:
        Validation result plus base entity, joins with depth, join graph,
        maximum depth and projected SQL.

    Example:
        explain_query(query={"from": "orders", "select": ["o.id"], "limit": 10})
    """
    if ctx is None:
        return create_tool_error(
            ErrorCode.CONNECTION_ERROR,
            "No context available",
            "explain_query",
        )

    request = parse_query_request(query, "explain_query")
    if isinstance(request, dict):
        return request

    app_ctx = ctx.request_context.lifespan_context
    tenant = app_ctx.resolve_tenant(tenant_id)
    if tenant is None:
        return missing_tenant_error("explain_query", {"query": query})

    try:
        service = app_ctx.planning_service(tenant)
        result = await service.explain(request, tenant)
        return result.to_output()
    except Exception as e:
        logger.exception("explain_query failed")
        return create_tool_error(
            ErrorCode.CONNECTION_ERROR,
            str(e),
            "explain_query",
            {"query": query, "tenant_id": tenant_id},
        )


@mcp.tool(
    annotations=ToolAnnotations(
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def score_query(
    query: dict[str, Any],
    ctx: Context[ServerSession, AppContext] | None = None,
) -> ComplexityReport | dict[str, Any]:
    """Estimate the complexity of a query.

    Score = 10 + 2 per selected field + 15 per join + 3 per filter node
    + 2 per orderBy entry. Queries scoring above the configured maximum are
    rejected before planning. Malformed parts count as zero.

    Args:
        query: Query request, not necessarily valid

    Returns:
        Score, configured maximum and whether the query is allowed.

    Example:
        score_query(query={"from": "orders", "select": ["o.id"], "limit": 10})
        -> {"score": 12, "maxComplexity": 100, "allowed": true}
    """
    if ctx is None:
        return create_tool_error(
            ErrorCode.CONNECTION_ERROR,
            "No context available",
            "score_query",
        )

    max_complexity = ctx.request_context.lifespan_context.settings.planner.max_complexity
    return check_complexity(query, max_complexity)


@mcp.tool(
    annotations=ToolAnnotations(
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=False,
        openWorldHint=False,
    )
)
async def get_query_metrics(
    ctx: Context[ServerSession, AppContext] | None = None,
) -> QueryMetricsSnapshot | dict[str, Any]:
    """Get aggregate query metrics collected by this server.

    Returns:
        Totals, average/p95/p99 execution time, per-entity and per-error-type
        counts and the collection period.
    """
    if ctx is None:
        return create_tool_error(
            ErrorCode.CONNECTION_ERROR,
            "No context available",
            "get_query_metrics",
        )

    return ctx.request_context.lifespan_context.hooks.get_metrics()
