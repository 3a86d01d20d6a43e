"""Render the SQL a valid plan projects to.

The statement is built with SQLAlchemy Core against lightweight table
constructs and compiled for PostgreSQL. It is shown in explain output only;
nothing here executes it. Every table is filtered on tenant_id, the base
table in WHERE and joined tables in their ON clause.
"""

from collections.abc import Callable
from typing import Any

from sqlalchemy import ColumnElement, Select, and_, column, or_, select, table, true
from sqlalchemy.dialects import postgresql
from sqlalchemy.sql.expression import Alias

from entity_query_server.models.query import (
    OrderBy,
    QueryRequest,
    WhereCondition,
    WhereGroup,
    WhereLeaf,
    parse_qualified_field,
)
from entity_query_server.models.results import JoinPlan

TENANT_COLUMN = "tenant_id"

OPERATORS: dict[str, Callable[[ColumnElement[Any], Any], ColumnElement[bool]]] = {
    "eq": lambda col, value: col == value,
    "neq": lambda col, value: col != value,
    "gt": lambda col, value: col > value,
    "gte": lambda col, value: col >= value,
    "lt": lambda col, value: col < value,
    "lte": lambda col, value: col <= value,
    "in": lambda col, value: col.in_(value),
    "nin": lambda col, value: col.not_in(value),
    "like": lambda col, value: col.like(value),
    "ilike": lambda col, value: col.ilike(value),
    "is_null": lambda col, value: col.is_(None),
    "is_not_null": lambda col, value: col.is_not(None),
    "between": lambda col, value: col.between(value[0], value[1]),
}


def _split_join_condition(condition: str) -> tuple[tuple[str, str], tuple[str, str]]:
    left, right = (parse_qualified_field(part.strip()) for part in condition.split("=", 1))
    if left is None or right is None:
        raise ValueError(f"Invalid join condition format: {condition}")
    return left, right


def _where_fields(condition: WhereCondition) -> list[str]:
    if isinstance(condition, WhereLeaf):
        return [condition.field]
    fields: list[str] = []
    for child in condition.conditions:
        fields.extend(_where_fields(child))
    return fields


class ProjectedQueryBuilder:
    """Builds the SELECT statement for a query and its validated plan."""

    def __init__(self, query: QueryRequest, plan: JoinPlan, tenant_id: str) -> None:
        self.query = query
        self.plan = plan
        self.tenant_id = tenant_id
        self._tables: dict[str, Alias] = {}

    def build(self) -> Select:
        """Build the statement.

        Returns:
            SQLAlchemy Select with joins, tenant filters, filters, ordering
            and pagination applied.
        """
        columns = self._referenced_columns()
        base = self._table(self.plan.base_table, self.plan.base_alias, columns)

        from_clause: Any = base
        for join in self.plan.joins:
            target = self._table(join.target_table, join.alias, columns)
            (left_alias, left_field), (_, right_field) = _split_join_condition(
                join.definition.on
            )
            onclause = and_(
                self._tables[left_alias].c[left_field] == target.c[right_field],
                target.c[TENANT_COLUMN] == self.tenant_id,
            )
            from_clause = from_clause.join(
                target, onclause, isouter=join.definition.type == "left"
            )

        stmt = (
            select(*(self._column(field) for field in self.query.select))
            .select_from(from_clause)
            .where(base.c[TENANT_COLUMN] == self.tenant_id)
        )
        if self.query.where is not None:
            stmt = stmt.where(self._condition(self.query.where))
        for clause in self.query.order_by:
            stmt = stmt.order_by(self._order(clause))
        stmt = stmt.limit(self.query.limit)
        if self.query.offset:
            stmt = stmt.offset(self.query.offset)
        if self.query.options.distinct:
            stmt = stmt.distinct()
        return stmt

    def _referenced_columns(self) -> dict[str, list[str]]:
        """Columns each alias needs, collected from every clause."""
        referenced = list(self.query.select)
        referenced.extend(clause.field for clause in self.query.order_by)
        if self.query.where is not None:
            referenced.extend(_where_fields(self.query.where))
        for join in self.plan.joins:
            left, right = _split_join_condition(join.definition.on)
            # the right-hand field always belongs to the joined table
            referenced.append(f"{left[0]}.{left[1]}")
            referenced.append(f"{join.alias}.{right[1]}")

        columns: dict[str, list[str]] = {}
        for entry in referenced:
            parsed = parse_qualified_field(entry)
            if parsed is None:
                continue
            alias, field = parsed
            names = columns.setdefault(alias, [TENANT_COLUMN])
            if field not in names:
                names.append(field)
        return columns

    def _table(self, name: str, alias: str, columns: dict[str, list[str]]) -> Alias:
        names = columns.get(alias, [TENANT_COLUMN])
        aliased = table(name, *(column(n) for n in names)).alias(alias)
        self._tables[alias] = aliased
        return aliased

    def _column(self, qualified: str) -> ColumnElement[Any]:
        parsed = parse_qualified_field(qualified)
        if parsed is None:
            raise ValueError(f"Invalid field format: {qualified}")
        alias, field = parsed
        return self._tables[alias].c[field]

    def _condition(self, condition: WhereCondition) -> ColumnElement[bool]:
        if isinstance(condition, WhereLeaf):
            return OPERATORS[condition.operator](self._column(condition.field), condition.value)
        if isinstance(condition, WhereGroup):
            if not condition.conditions:
                return true()
            clauses = [self._condition(c) for c in condition.conditions]
            return and_(*clauses) if condition.logic == "and" else or_(*clauses)
        raise TypeError(f"Unsupported where condition: {type(condition).__name__}")

    def _order(self, clause: OrderBy) -> ColumnElement[Any]:
        col = self._column(clause.field)
        ordered = col.desc() if clause.direction == "desc" else col.asc()
        if clause.nulls == "first":
            return ordered.nulls_first()
        if clause.nulls == "last":
            return ordered.nulls_last()
        return ordered


def render_projected_sql(query: QueryRequest, plan: JoinPlan, tenant_id: str) -> str:
    """Compile the projected statement to PostgreSQL SQL with bind placeholders."""
    stmt = ProjectedQueryBuilder(query, plan, tenant_id).build()
    return str(stmt.compile(dialect=postgresql.dialect()))
