"""Join planner: validates a query request and plans its joins.

Validation is a single pass that collects every problem a caller could fix,
so a UI can show complete feedback. Only an unknown base entity stops the
pass early, because nothing else can be resolved without it.

Joins must be declared in dependency order: the left-hand alias of each
join condition has to be bound by 'from'/'as' or by an earlier accepted join.
Depth is therefore a lookup on already accepted joins, not a graph search.
Joining back to an entity already in the query (A -> B -> A under another
alias) is not rejected; it is bounded by max_joins and max_depth and reported
as a REPEATED_ENTITY warning.
"""

import logging
import re
from typing import Any

from entity_query_server.errors import ErrorCode, WarningCode, find_similar_names
from entity_query_server.models.metadata import EntityMetadata
from entity_query_server.models.query import (
    DEFAULT_GUARDRAILS,
    QueryGuardrails,
    QueryRequest,
    WhereCondition,
    WhereGroup,
    WhereLeaf,
    parse_qualified_field,
)
from entity_query_server.models.results import (
    JoinGraphNode,
    JoinPlan,
    PlannedJoin,
    PlanResult,
    ValidationIssue,
    ValidationResult,
    ValidationWarning,
)
from entity_query_server.planner.registry import RelationshipRegistry

logger = logging.getLogger(__name__)

# Join conditions are restricted to equality between two qualified fields:
# "<bound alias>.<field> = <joined alias>.<field>". Nothing else is accepted.
JOIN_CONDITION_PATTERN = re.compile(r"(\w+)\.\w+\s*=\s*(\w+)\.\w+", re.ASCII)

NULL_OPERATORS = {"is_null", "is_not_null"}
LIST_OPERATORS = {"in", "nin"}
PATTERN_OPERATORS = {"like", "ilike"}


def parse_join_condition(condition: str) -> tuple[str, str] | None:
    """Extract (source_alias, target_alias) from a join condition.

    Returns:
        The two aliases, or None if the condition is not 'a.x = b.y'.
    """
    match = JOIN_CONDITION_PATTERN.fullmatch(condition.strip())
    if match is None:
        return None
    return match.group(1), match.group(2)


class JoinPlanner:
    """Validates and plans joins for query requests."""

    def __init__(
        self,
        registry: RelationshipRegistry,
        guardrails: QueryGuardrails | None = None,
    ) -> None:
        """Initialize the planner.

        Args:
            registry: Entity metadata and relationship lookups.
            guardrails: Limits to enforce (defaults to DEFAULT_GUARDRAILS).
        """
        self.registry = registry
        self.guardrails = guardrails or DEFAULT_GUARDRAILS

    async def plan_joins(self, query: QueryRequest, tenant_id: str) -> PlanResult:
        """Validate a query and plan its joins.

        Args:
            query: Query request to plan.
            tenant_id: Tenant issuing the query.

        Returns:
            PlanResult with a plan only when validation passed.
        """
        errors: list[ValidationIssue] = []
        warnings: list[ValidationWarning] = []

        base_entity = await self.registry.get_entity(query.from_)
        if base_entity is None:
            errors.append(
                ValidationIssue(
                    code=ErrorCode.UNKNOWN_ENTITY,
                    message=f"Unknown entity: {query.from_}",
                    path="from",
                )
            )
            return self._invalid(query, tenant_id, errors, warnings)

        base_alias = query.base_alias

        # Aliases: report duplicates, keep going
        declared_aliases = {base_alias}
        for i, join in enumerate(query.joins):
            if join.as_ in declared_aliases:
                errors.append(
                    ValidationIssue(
                        code=ErrorCode.DUPLICATE_ALIAS,
                        message=f"Duplicate alias: {join.as_}",
                        path=f"joins[{i}].as",
                    )
                )
            declared_aliases.add(join.as_)

        if len(query.joins) > self.guardrails.max_joins:
            errors.append(
                ValidationIssue(
                    code=ErrorCode.MAX_JOINS_EXCEEDED,
                    message=(
                        f"Too many joins: {len(query.joins)} "
                        f"(max: {self.guardrails.max_joins})"
                    ),
                    path="joins",
                )
            )

        alias_entities: dict[str, EntityMetadata] = {base_alias: base_entity}
        planned_joins = await self._plan_each_join(
            query, base_alias, alias_entities, errors, warnings
        )

        # SELECT
        if not query.select:
            errors.append(
                ValidationIssue(
                    code=ErrorCode.SYNTAX_ERROR,
                    message="SELECT cannot be empty",
                    path="select",
                )
            )
        if len(query.select) > self.guardrails.max_select_fields:
            errors.append(
                ValidationIssue(
                    code=ErrorCode.MAX_FIELDS_EXCEEDED,
                    message=(
                        f"Too many fields: {len(query.select)} "
                        f"(max: {self.guardrails.max_select_fields})"
                    ),
                    path="select",
                )
            )
        for i, field in enumerate(query.select):
            self._check_field_reference(field, f"select[{i}]", alias_entities, errors)

        # WHERE and ORDER BY
        if query.where is not None:
            self._check_where(query.where, "where", alias_entities, errors)
        for i, clause in enumerate(query.order_by):
            self._check_field_reference(clause.field, f"orderBy[{i}].field", alias_entities, errors)

        if query.limit > self.guardrails.max_limit:
            errors.append(
                ValidationIssue(
                    code=ErrorCode.MAX_LIMIT_EXCEEDED,
                    message=f"Limit too high: {query.limit} (max: {self.guardrails.max_limit})",
                    path="limit",
                )
            )

        warnings.extend(self._request_warnings(query))

        if errors:
            return self._invalid(query, tenant_id, errors, warnings)

        plan = JoinPlan(
            base_entity=query.from_,
            base_table=base_entity.table_name,
            base_alias=base_alias,
            joins=planned_joins,
            join_graph=self._build_join_graph(query, base_alias, planned_joins),
            max_depth=max((j.depth for j in planned_joins), default=0),
            warnings=warnings,
        )
        logger.debug(
            f"Planned query on '{query.from_}' for tenant '{tenant_id}': "
            f"{len(planned_joins)} joins, depth {plan.max_depth}"
        )
        return PlanResult(
            plan=plan,
            validation=ValidationResult(
                valid=True, errors=[], warnings=warnings, normalized_query=query
            ),
        )

    async def _plan_each_join(
        self,
        query: QueryRequest,
        base_alias: str,
        alias_entities: dict[str, EntityMetadata],
        errors: list[ValidationIssue],
        warnings: list[ValidationWarning],
    ) -> list[PlannedJoin]:
        """Validate joins in request order, binding aliases as they are accepted."""
        planned: list[PlannedJoin] = []
        depth_by_alias: dict[str, int] = {base_alias: 0}
        seen_entities = {query.from_}

        for i, join in enumerate(query.joins):
            path = f"joins[{i}]"

            if join.type not in self.guardrails.allowed_join_types:
                errors.append(
                    ValidationIssue(
                        code=ErrorCode.INVALID_JOIN,
                        message=f"Join type not allowed: {join.type}",
                        path=f"{path}.type",
                    )
                )
                continue

            aliases = parse_join_condition(join.on)
            if aliases is None or aliases[0] not in alias_entities:
                errors.append(
                    ValidationIssue(
                        code=ErrorCode.INVALID_JOIN,
                        message=f"Invalid join condition: {join.on}. Source alias not found.",
                        path=f"{path}.on",
                    )
                )
                continue

            # the right-hand alias is not checked; projection reads that field from the joined entity
            source_alias = aliases[0]
            source_entity = alias_entities[source_alias]

            target_entity = await self.registry.get_entity(join.entity)
            if target_entity is None:
                errors.append(
                    ValidationIssue(
                        code=ErrorCode.UNKNOWN_ENTITY,
                        message=f"Unknown entity in join: {join.entity}",
                        path=f"{path}.entity",
                    )
                )
                continue

            relationship = await self.registry.get_relationship(source_entity.name, join.entity)
            if relationship is None:
                errors.append(
                    ValidationIssue(
                        code=ErrorCode.JOIN_NOT_ALLOWED,
                        message=(
                            f"Join not allowed: {source_entity.name} -> {join.entity}. "
                            "No declared relationship."
                        ),
                        path=path,
                    )
                )
                continue

            depth = depth_by_alias[source_alias] + 1
            if depth > self.guardrails.max_depth:
                errors.append(
                    ValidationIssue(
                        code=ErrorCode.MAX_DEPTH_EXCEEDED,
                        message=f"Join depth exceeded: {depth} (max: {self.guardrails.max_depth})",
                        path=path,
                    )
                )
                continue

            # First binding of a duplicated alias wins
            if join.as_ not in alias_entities:
                alias_entities[join.as_] = target_entity
                depth_by_alias[join.as_] = depth

            if join.entity in seen_entities:
                warnings.append(
                    ValidationWarning(
                        code=WarningCode.REPEATED_ENTITY,
                        message=f"Entity '{join.entity}' is joined more than once",
                        path=path,
                    )
                )
            seen_entities.add(join.entity)

            planned.append(
                PlannedJoin(
                    definition=join,
                    source_entity=source_entity.name,
                    source_alias=source_alias,
                    target_entity=join.entity,
                    target_table=target_entity.table_name,
                    relationship=relationship,
                    depth=depth,
                )
            )

        return planned

    def _check_field_reference(
        self,
        reference: Any,
        path: str,
        alias_entities: dict[str, EntityMetadata],
        errors: list[ValidationIssue],
    ) -> None:
        """Check that 'alias.field' is well formed, bound and exists."""
        parsed = parse_qualified_field(reference)
        if parsed is None:
            errors.append(
                ValidationIssue(
                    code=ErrorCode.SYNTAX_ERROR,
                    message=f"Invalid field format: {reference}. Use alias.field format.",
                    path=path,
                )
            )
            return

        alias, field = parsed
        entity = alias_entities.get(alias)
        if entity is None:
            errors.append(
                ValidationIssue(
                    code=ErrorCode.INVALID_ALIAS,
                    message=f"Unknown alias: {alias}",
                    path=path,
                )
            )
            return

        if not entity.has_field(field):
            suggestions = find_similar_names(field, list(entity.fields))
            errors.append(
                ValidationIssue(
                    code=ErrorCode.UNKNOWN_FIELD,
                    message=f"Unknown field: {field} on entity {entity.name}",
                    path=path,
                    details={"suggestions": suggestions} if suggestions else None,
                )
            )

    def _check_where(
        self,
        condition: WhereCondition,
        path: str,
        alias_entities: dict[str, EntityMetadata],
        errors: list[ValidationIssue],
    ) -> None:
        """Check field references, operators and values of a filter tree."""
        if isinstance(condition, WhereGroup):
            for i, child in enumerate(condition.conditions):
                self._check_where(child, f"{path}.conditions[{i}]", alias_entities, errors)
        elif isinstance(condition, WhereLeaf):
            self._check_field_reference(condition.field, f"{path}.field", alias_entities, errors)

            allowed = self.guardrails.allowed_operators
            if allowed is not None and condition.operator not in allowed:
                errors.append(
                    ValidationIssue(
                        code=ErrorCode.INVALID_OPERATOR,
                        message=f"Operator not allowed: {condition.operator}",
                        path=f"{path}.operator",
                    )
                )
                return

            problem = _value_problem(condition.operator, condition.value)
            if problem:
                errors.append(
                    ValidationIssue(
                        code=ErrorCode.INVALID_VALUE,
                        message=f"Invalid value for '{condition.operator}': {problem}",
                        path=f"{path}.value",
                    )
                )
        else:
            raise TypeError(f"Unsupported where condition: {type(condition).__name__}")

    def _request_warnings(self, query: QueryRequest) -> list[ValidationWarning]:
        warnings = []
        if query.offset and not query.order_by:
            warnings.append(
                ValidationWarning(
                    code=WarningCode.UNSTABLE_PAGINATION,
                    message="Offset without orderBy may return inconsistent pages",
                    path="offset",
                )
            )
        timeout = query.options.timeout
        if timeout is not None and timeout > self.guardrails.max_timeout_ms:
            warnings.append(
                ValidationWarning(
                    code=WarningCode.TIMEOUT_CLAMPED,
                    message=(
                        f"Timeout {timeout}ms will be clamped to "
                        f"{self.guardrails.max_timeout_ms}ms"
                    ),
                    path="options.timeout",
                )
            )
        return warnings

    def _build_join_graph(
        self, query: QueryRequest, base_alias: str, planned_joins: list[PlannedJoin]
    ) -> list[JoinGraphNode]:
        """Build graph nodes (base first) with each alias's selected fields."""
        selected: dict[str, list[str]] = {}
        for entry in query.select:
            parsed = parse_qualified_field(entry)
            if parsed is not None:
                selected.setdefault(parsed[0], []).append(parsed[1])

        nodes = [
            JoinGraphNode(
                entity=query.from_,
                alias=base_alias,
                selected_fields=selected.get(base_alias, []),
            )
        ]
        for join in planned_joins:
            nodes.append(
                JoinGraphNode(
                    entity=join.target_entity,
                    alias=join.alias,
                    join_type=join.definition.type,
                    parent_alias=join.source_alias,
                    join_condition=join.definition.on,
                    selected_fields=selected.get(join.alias, []),
                )
            )
        return nodes

    def _invalid(
        self,
        query: QueryRequest,
        tenant_id: str,
        errors: list[ValidationIssue],
        warnings: list[ValidationWarning],
    ) -> PlanResult:
        logger.debug(
            f"Rejected query on '{query.from_}' for tenant '{tenant_id}': "
            f"{', '.join(e.code for e in errors)}"
        )
        return PlanResult(validation=ValidationResult(valid=False, errors=errors, warnings=warnings))


def _value_problem(operator: str, value: Any) -> str | None:
    """Describe what is wrong with a filter value, or None if it fits."""
    if operator in NULL_OPERATORS:
        return None
    if operator in LIST_OPERATORS:
        if not isinstance(value, list) or not value:
            return "expected a non-empty list"
        return None
    if operator == "between":
        if not isinstance(value, list) or len(value) != 2:
            return "expected a [min, max] pair"
        return None
    if operator in PATTERN_OPERATORS:
        return None if isinstance(value, str) else "expected a string pattern"
    if value is None or isinstance(value, (list, dict)):
        return "expected a scalar value"
    return None
