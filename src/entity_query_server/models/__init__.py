"""Pydantic models for entity metadata, query requests and planner output."""

from entity_query_server.models.metadata import (
    Cardinality,
    EntityMetadata,
    EntityRelationship,
    ForeignKey,
    MetaEntitySchema,
    MetaFieldSchema,
    MetaRelationSchema,
)
from entity_query_server.models.query import (
    DEFAULT_GUARDRAILS,
    JoinDefinition,
    OrderBy,
    QueryGuardrails,
    QueryOptions,
    QueryRequest,
    WhereCondition,
    WhereGroup,
    WhereLeaf,
    parse_qualified_field,
)
from entity_query_server.models.results import (
    ComplexityReport,
    DescribeEntityOutput,
    EntitySummary,
    ErrorDetail,
    ExplainJoin,
    ExplainPlanOutput,
    ExplainQueryOutput,
    JoinGraphNode,
    JoinPlan,
    ListEntitiesOutput,
    PlannedJoin,
    PlanResult,
    ToolError,
    ValidateQueryOutput,
    ValidationIssue,
    ValidationResult,
    ValidationWarning,
)

__all__ = [
    # Metadata models
    "Cardinality",
    "EntityMetadata",
    "EntityRelationship",
    "ForeignKey",
    "MetaEntitySchema",
    "MetaFieldSchema",
    "MetaRelationSchema",
    # Query models
    "DEFAULT_GUARDRAILS",
    "JoinDefinition",
    "OrderBy",
    "QueryGuardrails",
    "QueryOptions",
    "QueryRequest",
    "WhereCondition",
    "WhereGroup",
    "WhereLeaf",
    "parse_qualified_field",
    # Result models
    "ComplexityReport",
    "JoinGraphNode",
    "JoinPlan",
    "PlannedJoin",
    "PlanResult",
    "ValidationIssue",
    "ValidationResult",
    "ValidationWarning",
    "ValidateQueryOutput",
    "ExplainJoin",
    "ExplainPlanOutput",
    "ExplainQueryOutput",
    "EntitySummary",
    "ListEntitiesOutput",
    "DescribeEntityOutput",
    "ErrorDetail",
    "ToolError",
]
