"""Pydantic models for planner output, tool outputs and errors."""

from typing import Any

from pydantic import ConfigDict, Field

from entity_query_server.models.metadata import CamelModel, EntityRelationship
from entity_query_server.models.query import JoinDefinition, JoinType, QueryRequest

# === Validation ===


class ValidationIssue(CamelModel):
    """A structural problem the caller can fix by changing the request."""

    code: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error message")
    path: str | None = Field(
        default=None, description="Locator into the request, e.g. 'joins[2].on'"
    )
    details: dict[str, Any] | None = None


class ValidationWarning(CamelModel):
    """Non-fatal observation about a request."""

    code: str
    message: str
    path: str | None = None


class ValidationResult(CamelModel):
    """Outcome of validating a query."""

    valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationWarning] = Field(default_factory=list)
    normalized_query: QueryRequest | None = None

    @property
    def error_codes(self) -> list[str]:
        """Codes of all errors, in report order."""
        return [error.code for error in self.errors]


# === Join plan ===


class PlannedJoin(CamelModel):
    """Join with its resolved entities and authorizing relationship."""

    model_config = ConfigDict(frozen=True)

    definition: JoinDefinition
    source_entity: str
    source_alias: str
    target_entity: str
    target_table: str
    relationship: EntityRelationship
    depth: int = Field(description="1 = joined directly off the base alias")

    @property
    def alias(self) -> str:
        return self.definition.as_


class JoinGraphNode(CamelModel):
    """Node of the join graph used by explain tooling."""

    model_config = ConfigDict(frozen=True)

    entity: str
    alias: str
    join_type: JoinType | None = None
    parent_alias: str | None = None
    join_condition: str | None = None
    selected_fields: list[str] = Field(default_factory=list)


class JoinPlan(CamelModel):
    """Validated, ordered join plan ready for execution."""

    model_config = ConfigDict(frozen=True)

    base_entity: str
    base_table: str
    base_alias: str
    joins: list[PlannedJoin] = Field(default_factory=list)
    join_graph: list[JoinGraphNode] = Field(default_factory=list)
    max_depth: int = 0
    warnings: list[ValidationWarning] = Field(default_factory=list)

    def entities_accessed(self) -> list[str]:
        return [self.base_entity, *(join.target_entity for join in self.joins)]


class PlanResult(CamelModel):
    """Planner output: a plan only when validation passed."""

    plan: JoinPlan | None = None
    validation: ValidationResult


# === Complexity ===


class ComplexityReport(CamelModel):
    """Result of the complexity pre-check."""

    score: int
    max_complexity: int
    allowed: bool


# === Tool outputs ===


class ValidateQueryOutput(CamelModel):
    """Output for validate_query tool."""

    valid: bool
    errors: list[ValidationIssue]
    warnings: list[ValidationWarning]


class ExplainJoin(CamelModel):
    """Join summary in explain output."""

    entity: str
    table: str
    type: JoinType
    alias: str
    depth: int


class ExplainPlanOutput(CamelModel):
    """Plan section of explain output."""

    base_entity: str
    base_table: str
    joins: list[ExplainJoin]
    join_graph: list[JoinGraphNode]
    max_depth: int
    projected_sql: str | None = None

    @classmethod
    def from_plan(cls, plan: JoinPlan, projected_sql: str | None = None) -> "ExplainPlanOutput":
        return cls(
            base_entity=plan.base_entity,
            base_table=plan.base_table,
            joins=[
                ExplainJoin(
                    entity=join.target_entity,
                    table=join.target_table,
                    type=join.definition.type,
                    alias=join.alias,
                    depth=join.depth,
                )
                for join in plan.joins
            ],
            join_graph=plan.join_graph,
            max_depth=plan.max_depth,
            projected_sql=projected_sql,
        )


class ExplainQueryOutput(CamelModel):
    """Output for explain_query tool."""

    valid: bool
    errors: list[ValidationIssue]
    warnings: list[ValidationWarning]
    plan: ExplainPlanOutput | None = None


class EntitySummary(CamelModel):
    """Entity listing entry."""

    name: str
    table_name: str
    field_count: int
    joinable_entities: list[str]


class ListEntitiesOutput(CamelModel):
    """Output for list_entities tool."""

    entities: list[EntitySummary]
    total_count: int


class DescribeEntityOutput(CamelModel):
    """Output for describe_entity tool."""

    name: str
    table_name: str
    fields: list[str]
    primary_key: list[str]
    relationships: list[EntityRelationship]
    joinable_entities: list[str]


# === Error Models ===


class ErrorDetail(CamelModel):
    """Detailed error information."""

    code: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error message")
    suggestion: str | None = Field(
        default=None, description="Actionable suggestion to resolve the error"
    )
    context: dict[str, Any] | None = Field(
        default=None, description="Additional context for debugging"
    )


class ToolError(CamelModel):
    """Standard error response for tool failures."""

    error: ErrorDetail
    tool_name: str
    input_received: dict[str, Any] | None = None
