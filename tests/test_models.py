"""Tests for request models, settings and tool errors."""

import pytest
from pydantic import ValidationError

from entity_query_server.config import PlannerSettings
from entity_query_server.errors import (
    ERROR_SUGGESTIONS,
    ErrorCode,
    QueryValidationError,
    create_tool_error,
    find_similar_names,
)
from entity_query_server.models.query import QueryRequest, parse_qualified_field
from entity_query_server.models.results import ValidationIssue


class TestQueryRequest:
    """Tests for QueryRequest parsing."""

    def test_default_base_alias(self) -> None:
        query = QueryRequest.model_validate({"from": "Orders", "select": ["o.id"], "limit": 1})

        assert query.base_alias == "o"
        assert query.aliases() == ["o"]

    def test_explicit_alias_and_joins(self) -> None:
        query = QueryRequest.model_validate(
            {
                "from": "orders",
                "as": "ord",
                "select": ["ord.id"],
                "joins": [
                    {"type": "left", "entity": "customers", "as": "cu", "on": "ord.cid = cu.id"}
                ],
                "limit": 1,
            }
        )

        assert query.aliases() == ["ord", "cu"]
        assert query.entities() == ["orders", "customers"]

    def test_nested_where(self) -> None:
        query = QueryRequest.model_validate(
            {
                "from": "orders",
                "select": ["o.id"],
                "where": {
                    "logic": "and",
                    "conditions": [
                        {"field": "o.status", "operator": "in", "value": ["paid", "open"]},
                        {"logic": "or", "conditions": [{"field": "o.x", "operator": "is_null"}]},
                    ],
                },
                "limit": 1,
            }
        )

        assert query.where is not None
        assert query.where.conditions[1].logic == "or"  # type: ignore[union-attr]

    @pytest.mark.parametrize(
        "overrides",
        [
            {"limit": 0},
            {"limit": 1001},
            {"offset": -1},
            {"as": "1o"},
            {"options": {"timeout": 500}},
            {"joins": [{"type": "cross", "entity": "c", "as": "c", "on": "o.a = c.b"}]},
            {"where": {"field": "o.id", "operator": "regex", "value": "x"}},
        ],
    )
    def test_rejects_malformed(self, overrides: dict) -> None:
        raw = {"from": "orders", "select": ["o.id"], "limit": 10, **overrides}

        with pytest.raises(ValidationError):
            QueryRequest.model_validate(raw)


class TestParseQualifiedField:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("o.id", ("o", "id")),
            ("id", None),
            ("o.", None),
            (".id", None),
            ("a.b.c", None),
            (None, None),
        ],
    )
    def test_parse(self, value: object, expected: tuple[str, str] | None) -> None:
        assert parse_qualified_field(value) == expected


class TestPlannerSettings:
    def test_guardrails_from_settings(self) -> None:
        settings = PlannerSettings(max_joins=1, max_limit=100, allowed_operators=["eq"])

        guardrails = settings.guardrails

        assert guardrails.max_joins == 1
        assert guardrails.max_limit == 100
        assert guardrails.allowed_operators == ["eq"]
        assert guardrails.max_depth == 2

    def test_no_default_tenant(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("PLANNER_DEFAULT_TENANT_ID", raising=False)

        assert PlannerSettings().default_tenant_id is None

    def test_bounds(self) -> None:
        with pytest.raises(ValidationError):
            PlannerSettings(max_joins=6)


class TestErrors:
    def test_create_tool_error_uses_default_suggestion(self) -> None:
        error = create_tool_error(
            ErrorCode.UNKNOWN_ENTITY, "Unknown entity: x", "describe_entity", {"entity": "x"}
        )

        assert error["error"]["suggestion"] == ERROR_SUGGESTIONS[ErrorCode.UNKNOWN_ENTITY]
        assert error["toolName"] == "describe_entity"
        assert error["inputReceived"] == {"entity": "x"}

    def test_every_code_has_a_suggestion(self) -> None:
        codes = [v for k, v in vars(ErrorCode).items() if k.isupper()]
        assert set(codes) <= set(ERROR_SUGGESTIONS)

    def test_validation_error_message(self) -> None:
        error = QueryValidationError(
            [
                ValidationIssue(code="UNKNOWN_ALIAS", message="Unknown alias: x"),
                ValidationIssue(code="UNKNOWN_FIELD", message="Unknown field: y on entity z"),
            ]
        )

        assert error.code == "QUERY_VALIDATION_ERROR"
        assert str(error) == (
            "Query validation failed: Unknown alias: x, Unknown field: y on entity z"
        )

    def test_find_similar_names(self) -> None:
        assert find_similar_names("ordrs", ["orders", "customers", "products"]) == ["orders"]
