"""Tests for entity schema loaders."""

import json
import logging
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from entity_query_server.database.loader import (
    DatabaseMetaSchemaLoader,
    StaticMetaSchemaLoader,
    map_relation_kind,
)
from entity_query_server.models.metadata import MetaEntitySchema
from tests.conftest import create_mock_result

ORDERS_ROW = {
    "id": "6b1f0c1e-0000-0000-0000-000000000001",
    "name": "orders",
    "table_schema": "tenant_data",
    "table_name": "ent_orders",
    "version_id": 7,
}

FIELD_ROWS = [
    {"name": "id", "column_name": "id", "data_type": "uuid", "lookup_config": None},
    {
        "name": "customer_id",
        "column_name": None,
        "data_type": "reference",
        "lookup_config": '{"entity": "customers"}',
    },
    {"name": "total", "column_name": "total", "data_type": "number", "lookup_config": None},
]

RELATION_ROWS = [
    {
        "name": "items",
        "relation_kind": "has_many",
        "target_entity": "order_items",
        "fk_field": "id",
        "target_key": "order_id",
    }
]


class TestMapRelationKind:
    """Tests for relation kind mapping."""

    @pytest.mark.parametrize(
        ("kind", "expected"),
        [
            ("belongs_to", "many-to-one"),
            ("has_one", "one-to-one"),
            ("has_many", "one-to-many"),
            ("m2m", "many-to-many"),
        ],
    )
    def test_known_kinds(self, kind: str, expected: str) -> None:
        assert map_relation_kind(kind) == expected

    def test_unknown_kind_defaults_with_warning(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that unmapped kinds fall back to many-to-one and are logged."""
        with caplog.at_level(logging.WARNING):
            assert map_relation_kind("polymorphic") == "many-to-one"

        assert "Unmapped relation kind 'polymorphic'" in caplog.text


class TestDatabaseMetaSchemaLoader:
    """Tests for DatabaseMetaSchemaLoader."""

    @pytest.mark.asyncio
    async def test_load_entity(self, mock_engine: AsyncMock, mock_connection: AsyncMock) -> None:
        mock_connection.execute.side_effect = [
            None,
            create_mock_result([ORDERS_ROW]),
            None,
            create_mock_result(FIELD_ROWS),
            None,
            create_mock_result(RELATION_ROWS),
        ]
        loader = DatabaseMetaSchemaLoader(mock_engine, statement_timeout=5000)

        schema = await loader.load_entity("orders", "tenant-1")

        assert schema is not None
        assert schema.entity_key == "orders"
        assert schema.table_name == "ent_orders"
        assert schema.table_schema == "tenant_data"
        assert [f.field_key for f in schema.fields] == ["id", "customer_id", "total"]

        id_field, customer_field, total_field = schema.fields
        assert id_field.is_primary_key is True
        assert customer_field.column_name == "customer_id"
        assert customer_field.is_foreign_key is True
        assert customer_field.references_entity == "customers"
        assert customer_field.references_field == "id"
        assert total_field.is_foreign_key is False

        (relation,) = schema.relations
        assert relation.relation_key == "items"
        assert relation.cardinality == "one-to-many"
        assert relation.target_field == "order_id"

    @pytest.mark.asyncio
    async def test_load_entity_sets_statement_timeout(
        self, mock_engine: AsyncMock, mock_connection: AsyncMock
    ) -> None:
        loader = DatabaseMetaSchemaLoader(mock_engine, statement_timeout=5000)

        await loader.load_entity("orders", "tenant-1")

        first_sql = str(mock_connection.execute.call_args_list[0][0][0])
        assert first_sql == "SET LOCAL statement_timeout = 5000"
        params = mock_connection.execute.call_args_list[1][0][1]
        assert params == {"entity_key": "orders", "tenant_id": "tenant-1"}

    @pytest.mark.asyncio
    async def test_load_entity_not_found(self, mock_engine: AsyncMock) -> None:
        loader = DatabaseMetaSchemaLoader(mock_engine, statement_timeout=5000)

        assert await loader.load_entity("invoices", "tenant-1") is None

    @pytest.mark.asyncio
    async def test_reference_without_lookup_target_is_plain_field(
        self, mock_engine: AsyncMock, mock_connection: AsyncMock
    ) -> None:
        mock_connection.execute.side_effect = [
            None,
            create_mock_result([ORDERS_ROW]),
            None,
            create_mock_result(
                [
                    {
                        "name": "owner",
                        "column_name": "owner",
                        "data_type": "reference",
                        "lookup_config": {},
                    }
                ]
            ),
            None,
            create_mock_result([]),
        ]
        loader = DatabaseMetaSchemaLoader(mock_engine, statement_timeout=5000)

        schema = await loader.load_entity("orders", "tenant-1")

        assert schema is not None
        assert schema.fields[0].is_foreign_key is False
        assert schema.fields[0].references_entity is None

    @pytest.mark.asyncio
    async def test_load_all_entities_skips_unpublished(
        self, mock_engine: AsyncMock, mock_connection: AsyncMock
    ) -> None:
        mock_connection.execute.side_effect = [
            None,
            create_mock_result([{"name": "drafts"}, {"name": "orders"}]),
            None,
            create_mock_result([]),
            None,
            create_mock_result([ORDERS_ROW]),
            None,
            create_mock_result(FIELD_ROWS),
            None,
            create_mock_result([]),
        ]
        loader = DatabaseMetaSchemaLoader(mock_engine, statement_timeout=5000)

        schemas = await loader.load_all_entities("tenant-1")

        assert [s.entity_key for s in schemas] == ["orders"]
        mock_engine.connect.assert_called_once()

    @pytest.mark.asyncio
    async def test_errors_propagate(self, mock_engine: AsyncMock) -> None:
        mock_engine.connect.side_effect = ConnectionError("Connection refused")
        loader = DatabaseMetaSchemaLoader(mock_engine, statement_timeout=5000)

        with pytest.raises(ConnectionError):
            await loader.load_entity("orders", "tenant-1")


class TestStaticMetaSchemaLoader:
    """Tests for StaticMetaSchemaLoader."""

    @pytest.mark.asyncio
    async def test_serves_every_tenant(self, static_loader: StaticMetaSchemaLoader) -> None:
        first = await static_loader.load_entity("orders", "tenant-1")
        second = await static_loader.load_entity("orders", "tenant-2")

        assert first is not None
        assert first is second
        assert await static_loader.load_entity("invoices", "tenant-1") is None

    @pytest.mark.asyncio
    async def test_register_schema_replaces(
        self, static_loader: StaticMetaSchemaLoader, meta_schemas: list[MetaEntitySchema]
    ) -> None:
        static_loader.register_schema(
            meta_schemas[0].model_copy(update={"table_name": "ent_orders_v2"})
        )

        schema = await static_loader.load_entity("orders", "tenant-1")
        assert schema is not None
        assert schema.table_name == "ent_orders_v2"
        assert len(await static_loader.load_all_entities("tenant-1")) == 2

    @pytest.mark.asyncio
    async def test_from_file_with_entities_object(self, tmp_path: Path) -> None:
        path = tmp_path / "schemas.json"
        path.write_text(
            json.dumps(
                {
                    "entities": [
                        {
                            "entityKey": "orders",
                            "tableName": "ent_orders",
                            "fields": [
                                {"fieldKey": "id", "isPrimaryKey": True},
                                {
                                    "fieldKey": "customer_id",
                                    "isForeignKey": True,
                                    "referencesEntity": "customers",
                                },
                            ],
                            "relations": [
                                {
                                    "relationKey": "items",
                                    "sourceField": "id",
                                    "targetEntity": "order_items",
                                    "targetField": "order_id",
                                    "cardinality": "one-to-many",
                                }
                            ],
                        }
                    ]
                }
            )
        )

        loader = StaticMetaSchemaLoader.from_file(path)
        schema = await loader.load_entity("orders", "any")

        assert schema is not None
        assert schema.fields[1].references_entity == "customers"
        assert schema.relations[0].cardinality == "one-to-many"

    def test_from_file_with_list(self, tmp_path: Path) -> None:
        path = tmp_path / "schemas.json"
        path.write_text(json.dumps([{"entityKey": "customers", "tableName": "ent_customers"}]))

        loader = StaticMetaSchemaLoader.from_file(str(path))

        assert [s.entity_key for s in loader._schemas.values()] == ["customers"]

    def test_from_file_rejects_non_list(self, tmp_path: Path) -> None:
        path = tmp_path / "schemas.json"
        path.write_text('"orders"')

        with pytest.raises(ValueError, match="Expected a list"):
            StaticMetaSchemaLoader.from_file(path)

    def test_from_file_missing(self, tmp_path: Path) -> None:
        with pytest.raises(OSError):
            StaticMetaSchemaLoader.from_file(tmp_path / "missing.json")
