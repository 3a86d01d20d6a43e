"""Error codes, exceptions and structured tool errors.

Validation problems are never raised by the planner; they are returned as
ValidationIssue lists. The exceptions here are for callers that need to stop
a request (the planning service) and for execution failures, which are a
separate class hierarchy so callers can tell them apart.
"""

from typing import Any

from entity_query_server.models.results import ErrorDetail, ToolError, ValidationIssue


class ErrorCode:
    """Validation and tool error codes."""

    # Planner validation
    UNKNOWN_ENTITY = "UNKNOWN_ENTITY"
    UNKNOWN_FIELD = "UNKNOWN_FIELD"
    INVALID_JOIN = "INVALID_JOIN"
    JOIN_NOT_ALLOWED = "JOIN_NOT_ALLOWED"
    DUPLICATE_ALIAS = "DUPLICATE_ALIAS"
    INVALID_ALIAS = "INVALID_ALIAS"
    MAX_JOINS_EXCEEDED = "MAX_JOINS_EXCEEDED"
    MAX_DEPTH_EXCEEDED = "MAX_DEPTH_EXCEEDED"
    MAX_FIELDS_EXCEEDED = "MAX_FIELDS_EXCEEDED"
    MAX_LIMIT_EXCEEDED = "MAX_LIMIT_EXCEEDED"
    INVALID_OPERATOR = "INVALID_OPERATOR"
    INVALID_VALUE = "INVALID_VALUE"
    SYNTAX_ERROR = "SYNTAX_ERROR"

    # Request handling
    INVALID_REQUEST = "INVALID_REQUEST"
    QUERY_TOO_COMPLEX = "QUERY_TOO_COMPLEX"
    QUERY_VALIDATION_ERROR = "QUERY_VALIDATION_ERROR"
    QUERY_TIMEOUT = "QUERY_TIMEOUT"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    PARAMETER_ERROR = "PARAMETER_ERROR"


class WarningCode:
    """Non-fatal warning codes."""

    REPEATED_ENTITY = "REPEATED_ENTITY"
    UNSTABLE_PAGINATION = "UNSTABLE_PAGINATION"
    TIMEOUT_CLAMPED = "TIMEOUT_CLAMPED"


# Default suggestions for each error code
ERROR_SUGGESTIONS: dict[str, str] = {
    ErrorCode.UNKNOWN_ENTITY: "List queryable entities with list_entities",
    ErrorCode.UNKNOWN_FIELD: "Describe the entity to see available fields",
    ErrorCode.INVALID_JOIN: "Use 'source.field = alias.field' with a previously bound source alias",
    ErrorCode.JOIN_NOT_ALLOWED: "Only declared relationships can be joined; see describe_entity",
    ErrorCode.DUPLICATE_ALIAS: "Give every joined entity a unique alias",
    ErrorCode.INVALID_ALIAS: "Reference only aliases bound by 'from'/'as' or a join",
    ErrorCode.MAX_JOINS_EXCEEDED: "Reduce the number of joins",
    ErrorCode.MAX_DEPTH_EXCEEDED: "Join closer to the base entity",
    ErrorCode.MAX_FIELDS_EXCEEDED: "Select fewer fields",
    ErrorCode.MAX_LIMIT_EXCEEDED: "Lower the limit and paginate with offset",
    ErrorCode.INVALID_OPERATOR: "Use one of the allowed filter operators",
    ErrorCode.INVALID_VALUE: "Check the value shape required by the operator",
    ErrorCode.SYNTAX_ERROR: "Use the 'alias.field' format",
    ErrorCode.INVALID_REQUEST: "Review the query request shape",
    ErrorCode.QUERY_TOO_COMPLEX: "Reduce joins, selected fields or filter conditions",
    ErrorCode.QUERY_VALIDATION_ERROR: "Fix the reported validation errors",
    ErrorCode.QUERY_TIMEOUT: "Simplify query or increase timeout",
    ErrorCode.CONNECTION_ERROR: "Check metadata store connectivity",
    ErrorCode.PARAMETER_ERROR: "Review parameter constraints",
}


class QueryValidationError(Exception):
    """Raised by the planning service when a query fails validation."""

    def __init__(self, errors: list[ValidationIssue]) -> None:
        """Initialize validation error.

        Args:
            errors: Validation issues reported by the planner.
        """
        self.code = ErrorCode.QUERY_VALIDATION_ERROR
        self.errors = errors
        self.message = "Query validation failed: " + ", ".join(e.message for e in errors)
        super().__init__(self.message)


class QueryComplexityError(Exception):
    """Raised when a query's complexity score exceeds the threshold."""

    def __init__(self, score: int, max_complexity: int) -> None:
        self.code = ErrorCode.QUERY_TOO_COMPLEX
        self.score = score
        self.max_complexity = max_complexity
        self.message = f"Query complexity ({score}) exceeds maximum ({max_complexity})"
        super().__init__(self.message)


class QueryExecutionError(Exception):
    """Base class for failures raised by the execution layer."""


class QueryTimeoutError(QueryExecutionError):
    """Execution exceeded its statement timeout."""

    def __init__(self, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(f"Query exceeded timeout of {timeout_ms}ms")


def create_tool_error(
    code: str,
    message: str,
    tool_name: str,
    input_received: dict[str, Any] | None = None,
    context: dict[str, Any] | None = None,
    suggestion: str | None = None,
) -> dict[str, Any]:
    """Create a structured error response.

    Args:
        code: Machine-readable error code.
        message: Human-readable error message.
        tool_name: Name of the tool that generated the error.
        input_received: Input parameters that were received.
        context: Additional context for debugging.
        suggestion: Actionable suggestion (uses default if not provided).

    Returns:
        Dictionary representation of ToolError.
    """
    error = ToolError(
        error=ErrorDetail(
            code=code,
            message=message,
            suggestion=suggestion or ERROR_SUGGESTIONS.get(code),
            context=context,
        ),
        tool_name=tool_name,
        input_received=input_received,
    )
    return error.model_dump(by_alias=True)


def find_similar_names(name: str, candidates: list[str], max_results: int = 3) -> list[str]:
    """Find similar names using Levenshtein distance.

    Args:
        name: The name to match against.
        candidates: List of candidate names.
        max_results: Maximum number of results to return.

    Returns:
        List of similar names sorted by similarity.
    """

    def levenshtein_distance(s1: str, s2: str) -> int:
        if len(s1) < len(s2):
            return levenshtein_distance(s2, s1)
        if len(s2) == 0:
            return len(s1)

        prev_row = list(range(len(s2) + 1))
        for i, c1 in enumerate(s1):
            curr_row = [i + 1]
            for j, c2 in enumerate(s2):
                insertions = prev_row[j + 1] + 1
                deletions = curr_row[j] + 1
                substitutions = prev_row[j] + (c1 != c2)
                curr_row.append(min(insertions, deletions, substitutions))
            prev_row = curr_row
        return prev_row[-1]

    scored = [(c, levenshtein_distance(name.lower(), c.lower())) for c in candidates]
    scored.sort(key=lambda x: x[1])

    # Names within edit distance of 3
    return [c for c, d in scored[:max_results] if d <= 3]


def missing_tenant_error(
    tool_name: str, input_received: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Tool error for a call with no tenant_id and no PLANNER_DEFAULT_TENANT_ID."""
    return create_tool_error(
        ErrorCode.PARAMETER_ERROR,
        "tenant_id is required when PLANNER_DEFAULT_TENANT_ID is not set",
        tool_name,
        input_received,
        suggestion="Pass tenant_id or set PLANNER_DEFAULT_TENANT_ID",
    )
