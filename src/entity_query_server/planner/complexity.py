"""Query complexity scoring.

Scoring is a cheap pre-check that runs before the planner touches the
registry. It accepts anything (a parsed QueryRequest, a raw mapping straight
off the wire, or garbage) and never raises: malformed parts score zero.
"""

from collections.abc import Mapping
from typing import Any

from entity_query_server.models.query import QueryRequest, WhereGroup, WhereLeaf
from entity_query_server.models.results import ComplexityReport

DEFAULT_MAX_COMPLEXITY = 100

BASE_SCORE = 10
SELECT_FIELD_WEIGHT = 2
JOIN_WEIGHT = 15
WHERE_CONDITION_WEIGHT = 3
ORDER_BY_WEIGHT = 2


def count_where_conditions(condition: Any) -> int:
    """Count filter nodes: a leaf is 1, a group is 1 plus its children."""
    if isinstance(condition, WhereLeaf):
        return 1
    if isinstance(condition, WhereGroup):
        return 1 + sum(count_where_conditions(c) for c in condition.conditions)
    if isinstance(condition, Mapping):
        children = condition.get("conditions")
        if isinstance(children, list):
            return 1 + sum(count_where_conditions(c) for c in children)
        return 1
    return 0


def _length(value: Any) -> int:
    return len(value) if isinstance(value, list) else 0


def score_query(query: Any) -> int:
    """Compute the complexity score of a query.

    Args:
        query: QueryRequest, raw request mapping, or any other value.

    Returns:
        10 + 2 per selected field + 15 per join + 3 per filter node
        + 2 per order-by clause.
    """
    if isinstance(query, QueryRequest):
        select, joins, where, order_by = query.select, query.joins, query.where, query.order_by
    elif isinstance(query, Mapping):
        select = query.get("select")
        joins = query.get("joins")
        where = query.get("where")
        order_by = query.get("orderBy", query.get("order_by"))
    else:
        return BASE_SCORE

    score = BASE_SCORE
    score += _length(select) * SELECT_FIELD_WEIGHT
    score += _length(joins) * JOIN_WEIGHT
    if where is not None:
        score += count_where_conditions(where) * WHERE_CONDITION_WEIGHT
    score += _length(order_by) * ORDER_BY_WEIGHT
    return score


def check_complexity(query: Any, max_complexity: int = DEFAULT_MAX_COMPLEXITY) -> ComplexityReport:
    """Score a query and compare it with the threshold (score <= max is allowed)."""
    score = score_query(query)
    return ComplexityReport(
        score=score, max_complexity=max_complexity, allowed=score <= max_complexity
    )
