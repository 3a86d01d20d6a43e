"""Join planning, validation and complexity scoring."""

from entity_query_server.planner.cache import TTLCache
from entity_query_server.planner.complexity import (
    check_complexity,
    count_where_conditions,
    score_query,
)
from entity_query_server.planner.join_planner import JoinPlanner, parse_join_condition
from entity_query_server.planner.projection import ProjectedQueryBuilder, render_projected_sql
from entity_query_server.planner.registry import (
    InMemoryRelationshipRegistry,
    MetaSchemaRelationshipRegistry,
    RegistryProvider,
    RelationshipRegistry,
    convert_entity_schema,
    merge_relationships,
)
from entity_query_server.planner.service import (
    ExecutionResult,
    ExplainResult,
    QueryExecutor,
    QueryPlanningService,
)

__all__ = [
    "TTLCache",
    "check_complexity",
    "count_where_conditions",
    "score_query",
    "JoinPlanner",
    "parse_join_condition",
    "ProjectedQueryBuilder",
    "render_projected_sql",
    "InMemoryRelationshipRegistry",
    "MetaSchemaRelationshipRegistry",
    "RegistryProvider",
    "RelationshipRegistry",
    "convert_entity_schema",
    "merge_relationships",
    "ExecutionResult",
    "ExplainResult",
    "QueryExecutor",
    "QueryPlanningService",
]
