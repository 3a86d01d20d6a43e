"""Pytest fixtures for Entity Query Server tests."""

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import Tracer
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from entity_query_server.config import DatabaseSettings, PlannerSettings, ServerSettings, Settings
from entity_query_server.database.loader import StaticMetaSchemaLoader
from entity_query_server.models.metadata import (
    EntityMetadata,
    EntityRelationship,
    ForeignKey,
    MetaEntitySchema,
    MetaFieldSchema,
    MetaRelationSchema,
)
from entity_query_server.planner.registry import InMemoryRelationshipRegistry


@pytest.fixture
def database_settings() -> DatabaseSettings:
    """Create test database settings."""
    return DatabaseSettings(
        host="localhost",
        port=5432,
        database="test_db",
        user="test_user",
        password="test_password",  # type: ignore
        pool_size=2,
        statement_timeout=5000,
    )


@pytest.fixture
def server_settings() -> ServerSettings:
    """Create test server settings."""
    return ServerSettings(
        transport="stdio",
        log_level="DEBUG",
    )


@pytest.fixture
def planner_settings() -> PlannerSettings:
    """Create test planner settings."""
    return PlannerSettings(
        metadata_source="database",
        cache_ttl_ms=60000,
        default_tenant_id="11111111-1111-1111-1111-111111111111",
    )


@pytest.fixture
def span_exporter() -> InMemorySpanExporter:
    """Exporter collecting finished spans in memory."""
    return InMemorySpanExporter()


@pytest.fixture
def tracer(span_exporter: InMemorySpanExporter) -> Tracer:
    """Tracer whose spans end up in span_exporter."""
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    return provider.get_tracer("tests")

@pytest.fixture
def settings(
    database_settings: DatabaseSettings,
    server_settings: ServerSettings,
    planner_settings: PlannerSettings,
) -> Settings:
    """Create combined test settings."""
    return Settings(
        database=database_settings,
        server=server_settings,
        planner=planner_settings,
    )


def create_mock_result(rows: list[dict[str, Any]]) -> MagicMock:
    """Create a mock database result.

    Args:
        rows: List of row dictionaries to return.

    Returns:
        Mock result object with fetchall/fetchone/scalar methods.
    """
    mock_result = MagicMock()

    # Create mock rows with _mapping attribute
    mock_rows = []
    for row_data in rows:
        mock_row = MagicMock()
        mock_row._mapping = row_data
        mock_rows.append(mock_row)

    mock_result.fetchall.return_value = mock_rows
    mock_result.fetchone.return_value = mock_rows[0] if mock_rows else None
    mock_result.scalar.return_value = next(iter(rows[0].values())) if rows else None
    return mock_result


@pytest_asyncio.fixture
async def mock_connection() -> AsyncMock:
    """Create mock async connection."""
    conn = AsyncMock(spec=AsyncConnection)

    # Default execute returns empty result
    mock_result = create_mock_result([])
    conn.execute.return_value = mock_result

    return conn


@pytest_asyncio.fixture
async def mock_engine(mock_connection: AsyncMock) -> AsyncMock:
    """Create mock async engine."""
    engine = AsyncMock(spec=AsyncEngine)

    # Make connect() return async context manager
    cm = AsyncMock()
    cm.__aenter__.return_value = mock_connection
    cm.__aexit__.return_value = None
    engine.connect.return_value = cm

    return engine


# === Entity metadata ===


def make_relationship(
    source: str,
    target: str,
    source_field: str,
    target_field: str = "id",
    cardinality: str = "many-to-one",
    name: str | None = None,
) -> EntityRelationship:
    """Create a declared relationship."""
    return EntityRelationship(
        source_entity=source,
        source_field=source_field,
        target_entity=target,
        target_field=target_field,
        cardinality=cardinality,  # type: ignore[arg-type]
        name=name or target,
    )


def make_entity(
    name: str,
    fields: list[str],
    relationships: list[EntityRelationship] | None = None,
    foreign_keys: list[ForeignKey] | None = None,
    table_name: str | None = None,
) -> EntityMetadata:
    """Create entity metadata with 'id' as primary key."""
    return EntityMetadata(
        name=name,
        table_name=table_name or f"ent_{name}",
        fields=tuple(fields),
        primary_key=("id",),
        foreign_keys=tuple(foreign_keys or ()),
        relationships=tuple(relationships or ()),
    )


def build_commerce_registry() -> InMemoryRelationshipRegistry:
    """Registry with a small commerce model.

    orders -> customers -> addresses -> countries
    orders -> order_items -> products
    """
    registry = InMemoryRelationshipRegistry()
    registry.register_entity(
        make_entity(
            "orders",
            ["id", "customer_id", "total", "status", "created_at"],
            [
                make_relationship("orders", "customers", "customer_id"),
                make_relationship(
                    "orders", "order_items", "id", "order_id", "one-to-many", "items"
                ),
            ],
        )
    )
    registry.register_entity(
        make_entity(
            "customers",
            ["id", "name", "email", "address_id"],
            [
                make_relationship("customers", "addresses", "address_id"),
                make_relationship(
                    "customers", "orders", "id", "customer_id", "one-to-many", "orders"
                ),
            ],
        )
    )
    registry.register_entity(
        make_entity(
            "addresses",
            ["id", "city", "country_id"],
            [make_relationship("addresses", "countries", "country_id")],
        )
    )
    registry.register_entity(make_entity("countries", ["id", "name", "code"]))
    registry.register_entity(
        make_entity(
            "order_items",
            ["id", "order_id", "product_id", "quantity"],
            [
                make_relationship("order_items", "orders", "order_id"),
                make_relationship("order_items", "products", "product_id"),
            ],
        )
    )
    registry.register_entity(make_entity("products", ["id", "name", "price"]))
    return registry


@pytest.fixture
def registry() -> InMemoryRelationshipRegistry:
    """In-memory registry with the commerce model."""
    return build_commerce_registry()


# === Loader schemas ===


def make_schema(
    entity_key: str,
    fields: list[MetaFieldSchema],
    relations: list[MetaRelationSchema] | None = None,
) -> MetaEntitySchema:
    return MetaEntitySchema(
        id=f"{entity_key}-id",
        entity_key=entity_key,
        table_name=f"ent_{entity_key}",
        fields=fields,
        relations=relations or [],
    )


@pytest.fixture
def meta_schemas() -> list[MetaEntitySchema]:
    """Loader schemas: orders has a foreign key to customers."""
    return [
        make_schema(
            "orders",
            [
                MetaFieldSchema(field_key="id", column_name="id", is_primary_key=True),
                MetaFieldSchema(
                    field_key="customer_id",
                    column_name="customer_id",
                    data_type="reference",
                    is_foreign_key=True,
                    references_entity="customers",
                ),
                MetaFieldSchema(field_key="total", column_name="total", data_type="number"),
            ],
        ),
        make_schema(
            "customers",
            [
                MetaFieldSchema(field_key="id", column_name="id", is_primary_key=True),
                MetaFieldSchema(field_key="name", column_name="name"),
            ],
        ),
    ]


@pytest.fixture
def static_loader(meta_schemas: list[MetaEntitySchema]) -> StaticMetaSchemaLoader:
    """Static loader populated with meta_schemas."""
    return StaticMetaSchemaLoader(meta_schemas)
