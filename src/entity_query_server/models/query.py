"""Pydantic models for the declarative query request and guardrails.

The request is the wire-level shape a caller submits. Structural limits that
are deployment specific (join count, depth, limit) are not enforced here; the
join planner checks them against QueryGuardrails so every violation is
reported together.
"""

from typing import Any, Literal

from pydantic import Field

from entity_query_server.models.metadata import CamelModel

ALIAS_PATTERN = r"^[a-zA-Z][a-zA-Z0-9_]*$"

JoinType = Literal["inner", "left"]

WhereOperator = Literal[
    "eq",
    "neq",
    "gt",
    "gte",
    "lt",
    "lte",
    "in",
    "nin",
    "like",
    "ilike",
    "is_null",
    "is_not_null",
    "between",
]

ALL_OPERATORS: tuple[str, ...] = (
    "eq",
    "neq",
    "gt",
    "gte",
    "lt",
    "lte",
    "in",
    "nin",
    "like",
    "ilike",
    "is_null",
    "is_not_null",
    "between",
)

# === Filters ===


class WhereLeaf(CamelModel):
    """Single comparison on a qualified field."""

    field: str = Field(description="Qualified field, e.g. 'o.status'")
    operator: WhereOperator
    value: Any = None


class WhereGroup(CamelModel):
    """Logical AND/OR over nested conditions."""

    logic: Literal["and", "or"]
    conditions: list["WhereCondition"] = Field(default_factory=list)


WhereCondition = WhereLeaf | WhereGroup

WhereGroup.model_rebuild()


# === Query request ===


class JoinDefinition(CamelModel):
    """Join requested by the caller."""

    type: JoinType
    entity: str = Field(description="Entity to join")
    as_: str = Field(alias="as", pattern=ALIAS_PATTERN, description="Alias for the joined entity")
    on: str = Field(description="Join condition, e.g. 'o.customer_id = c.id'")


class OrderBy(CamelModel):
    """Order by clause."""

    field: str
    direction: Literal["asc", "desc"] = "asc"
    nulls: Literal["first", "last"] | None = None


class QueryOptions(CamelModel):
    """Execution options passed through to the execution layer."""

    timeout: int | None = Field(default=None, ge=1000, le=60000, description="Timeout in ms")
    use_replica: bool = False
    explain: bool = False
    distinct: bool = False


class QueryRequest(CamelModel):
    """Declarative cross-entity query."""

    from_: str = Field(alias="from", description="Base entity")
    as_: str | None = Field(
        default=None,
        alias="as",
        pattern=ALIAS_PATTERN,
        description="Base alias (default: first letter of the entity)",
    )
    select: list[str] = Field(max_length=50, description="Qualified fields to return")
    joins: list[JoinDefinition] = Field(default_factory=list, max_length=5)
    where: WhereCondition | None = None
    order_by: list[OrderBy] = Field(default_factory=list, max_length=5)
    limit: int = Field(ge=1, le=1000)
    offset: int | None = Field(default=None, ge=0)
    include_count: bool = False
    options: QueryOptions = Field(default_factory=QueryOptions)

    @property
    def base_alias(self) -> str:
        """Alias bound to the base entity."""
        return self.as_ or self.from_[:1].lower()

    def aliases(self) -> list[str]:
        """All aliases declared by the query, base first."""
        return [self.base_alias, *(join.as_ for join in self.joins)]

    def entities(self) -> list[str]:
        """All entities referenced by the query, base first."""
        return [self.from_, *(join.entity for join in self.joins)]


# === Guardrails ===


class QueryGuardrails(CamelModel):
    """Limits enforced by the join planner."""

    max_joins: int = Field(default=3, ge=0)
    max_depth: int = Field(default=2, ge=1)
    max_select_fields: int = Field(default=50, ge=1)
    max_limit: int = Field(default=500, ge=1)
    max_timeout_ms: int = Field(default=60000, ge=1000)
    default_timeout_ms: int = Field(default=30000, ge=1000)
    allowed_join_types: list[JoinType] = Field(default_factory=lambda: ["inner", "left"])
    allowed_operators: list[WhereOperator] | None = None


DEFAULT_GUARDRAILS = QueryGuardrails()


def parse_qualified_field(qualified: Any) -> tuple[str, str] | None:
    """Split 'alias.field' into its parts.

    Returns:
        (alias, field) or None when the value is not exactly two non-empty parts.
    """
    if not isinstance(qualified, str):
        return None
    parts = qualified.split(".")
    if len(parts) != 2 or not all(parts):
        return None
    return parts[0], parts[1]
