"""Tests for relationship registries and the metadata cache."""

import logging
from unittest.mock import AsyncMock

import pytest

from entity_query_server.database.loader import StaticMetaSchemaLoader
from entity_query_server.models.metadata import (
    EntityRelationship,
    ForeignKey,
    MetaEntitySchema,
    MetaFieldSchema,
    MetaRelationSchema,
)
from entity_query_server.planner.cache import TTLCache
from entity_query_server.planner.registry import (
    InMemoryRelationshipRegistry,
    MetaSchemaRelationshipRegistry,
    RegistryProvider,
    convert_entity_schema,
    merge_relationships,
)
from tests.conftest import make_relationship, make_schema


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestTTLCache:
    """Tests for the expiring cache."""

    def test_get_before_and_after_expiry(self) -> None:
        clock = FakeClock()
        cache: TTLCache[str] = TTLCache(1000, clock)
        cache.set("orders", "metadata")

        clock.advance(0.5)
        assert cache.get("orders") == "metadata"

        clock.advance(0.5)
        assert cache.get("orders") is None
        assert len(cache) == 0

    def test_invalidate_and_clear(self) -> None:
        cache: TTLCache[int] = TTLCache(60000)
        cache.set("a", 1)
        cache.set("b", 2)

        cache.invalidate("a")
        assert cache.get("a") is None
        assert cache.get("b") == 2

        cache.clear()
        assert len(cache) == 0


class TestInMemoryRegistry:
    """Tests for InMemoryRelationshipRegistry."""

    @pytest.mark.asyncio
    async def test_get_entity(self, registry: InMemoryRelationshipRegistry) -> None:
        entity = await registry.get_entity("orders")
        assert entity is not None
        assert entity.table_name == "ent_orders"
        assert await registry.get_entity("invoices") is None

    @pytest.mark.asyncio
    async def test_get_relationship(self, registry: InMemoryRelationshipRegistry) -> None:
        relationship = await registry.get_relationship("orders", "customers")
        assert relationship is not None
        assert relationship.source_field == "customer_id"
        assert await registry.get_relationship("customers", "products") is None

    @pytest.mark.asyncio
    async def test_relationships_are_directed(
        self, registry: InMemoryRelationshipRegistry
    ) -> None:
        assert await registry.is_join_allowed("addresses", "countries") is True
        assert await registry.is_join_allowed("countries", "addresses") is False

    @pytest.mark.asyncio
    async def test_joinable_entities_are_deduplicated(self) -> None:
        registry = InMemoryRelationshipRegistry()
        registry.register_relationship(make_relationship("orders", "customers", "customer_id"))
        registry.register_relationship(make_relationship("orders", "order_items", "id"))
        registry.register_relationship(make_relationship("orders", "customers", "billing_id"))

        assert await registry.get_joinable_entities("orders") == ["customers", "order_items"]

    @pytest.mark.asyncio
    async def test_remove_relationship(self, registry: InMemoryRelationshipRegistry) -> None:
        assert registry.remove_relationship("orders", "customers") == 1
        assert registry.remove_relationship("orders", "customers") == 0
        assert await registry.is_join_allowed("orders", "customers") is False
        assert await registry.is_join_allowed("orders", "order_items") is True

    @pytest.mark.asyncio
    async def test_get_all_entities(self, registry: InMemoryRelationshipRegistry) -> None:
        names = {e.name for e in await registry.get_all_entities()}
        assert names == {"orders", "customers", "addresses", "countries", "order_items", "products"}


class TestMergeRelationships:
    """Tests for foreign key relationship synthesis."""

    def test_foreign_key_becomes_many_to_one(self) -> None:
        merged = merge_relationships(
            "orders", [], [ForeignKey(field="customer_id", references_entity="customers")]
        )

        assert merged == [
            EntityRelationship(
                source_entity="orders",
                source_field="customer_id",
                target_entity="customers",
                target_field="id",
                cardinality="many-to-one",
                name="customer_id_ref",
            )
        ]

    def test_declared_relationship_wins(self) -> None:
        declared = make_relationship(
            "orders", "customers", "customer_id", cardinality="one-to-one", name="customer"
        )
        merged = merge_relationships(
            "orders",
            [declared],
            [ForeignKey(field="customer_id", references_entity="customers")],
        )

        assert merged == [declared]

    def test_same_target_different_field_is_kept(self) -> None:
        declared = make_relationship("orders", "customers", "customer_id", name="customer")
        merged = merge_relationships(
            "orders",
            [declared],
            [ForeignKey(field="billing_customer_id", references_entity="customers")],
        )

        assert [r.name for r in merged] == ["customer", "billing_customer_id_ref"]

    def test_duplicate_declared_keys_keep_first(self) -> None:
        first = make_relationship("orders", "customers", "customer_id", name="first")
        second = make_relationship("orders", "customers", "customer_id", name="second")

        assert merge_relationships("orders", [first, second], []) == [first]


class TestConvertEntitySchema:
    """Tests for loader schema conversion."""

    def test_converts_fields_keys_and_relations(self) -> None:
        schema = make_schema(
            "orders",
            [
                MetaFieldSchema(field_key="id", is_primary_key=True),
                MetaFieldSchema(
                    field_key="customer_id",
                    is_foreign_key=True,
                    references_entity="customers",
                ),
                MetaFieldSchema(field_key="total"),
            ],
            [
                MetaRelationSchema(
                    relation_key="items",
                    source_field="id",
                    target_entity="order_items",
                    target_field="order_id",
                    cardinality="one-to-many",
                )
            ],
        )

        entity = convert_entity_schema(schema)

        assert entity.name == "orders"
        assert entity.table_name == "ent_orders"
        assert entity.fields == ("id", "customer_id", "total")
        assert entity.primary_key == ("id",)
        assert entity.foreign_keys == (
            ForeignKey(field="customer_id", references_entity="customers", references_field="id"),
        )
        assert [(r.name, r.target_entity) for r in entity.relationships] == [
            ("items", "order_items"),
            ("customer_id_ref", "customers"),
        ]

    def test_foreign_key_without_target_is_ignored(self) -> None:
        schema = make_schema(
            "orders", [MetaFieldSchema(field_key="customer_id", is_foreign_key=True)]
        )

        entity = convert_entity_schema(schema)

        assert entity.foreign_keys == ()
        assert entity.relationships == ()


class TestMetaSchemaRegistry:
    """Tests for the loader-backed registry."""

    @pytest.mark.asyncio
    async def test_loads_and_synthesizes_relationships(
        self, static_loader: StaticMetaSchemaLoader
    ) -> None:
        registry = MetaSchemaRelationshipRegistry(static_loader, "tenant-1")

        relationship = await registry.get_relationship("orders", "customers")

        assert relationship is not None
        assert relationship.name == "customer_id_ref"
        assert relationship.cardinality == "many-to-one"

    @pytest.mark.asyncio
    async def test_cache_hit_skips_loader(self, meta_schemas: list[MetaEntitySchema]) -> None:
        loader = AsyncMock()
        loader.load_entity.return_value = meta_schemas[0]
        registry = MetaSchemaRelationshipRegistry(loader, "tenant-1")

        await registry.get_entity("orders")
        await registry.get_entity("orders")
        await registry.get_entity_relationships("orders")

        loader.load_entity.assert_awaited_once_with("orders", "tenant-1")

    @pytest.mark.asyncio
    async def test_reloads_after_ttl(self, meta_schemas: list[MetaEntitySchema]) -> None:
        clock = FakeClock()
        loader = AsyncMock()
        loader.load_entity.return_value = meta_schemas[0]
        registry = MetaSchemaRelationshipRegistry(loader, "tenant-1", cache_ttl_ms=1000, clock=clock)

        await registry.get_entity("orders")
        clock.advance(1.5)
        await registry.get_entity("orders")

        assert loader.load_entity.await_count == 2

    @pytest.mark.asyncio
    async def test_unknown_entity_is_not_cached(self) -> None:
        loader = AsyncMock()
        loader.load_entity.return_value = None
        registry = MetaSchemaRelationshipRegistry(loader, "tenant-1")

        assert await registry.get_entity("invoices") is None
        assert await registry.get_entity("invoices") is None
        assert await registry.get_entity_relationships("invoices") == []
        assert loader.load_entity.await_count == 3

    @pytest.mark.asyncio
    async def test_loader_error_degrades_to_absent(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        loader = AsyncMock()
        loader.load_entity.side_effect = ConnectionError("meta store unavailable")
        loader.load_all_entities.side_effect = ConnectionError("meta store unavailable")
        registry = MetaSchemaRelationshipRegistry(loader, "tenant-1")

        with caplog.at_level(logging.ERROR):
            assert await registry.get_entity("orders") is None
            assert await registry.get_relationship("orders", "customers") is None
            assert await registry.get_all_entities() == []

        assert "Failed to load entity 'orders'" in caplog.text

    @pytest.mark.asyncio
    async def test_get_all_entities_populates_cache(
        self, meta_schemas: list[MetaEntitySchema]
    ) -> None:
        loader = AsyncMock()
        loader.load_all_entities.return_value = meta_schemas
        registry = MetaSchemaRelationshipRegistry(loader, "tenant-1")

        entities = await registry.get_all_entities()
        customers = await registry.get_entity("customers")

        assert [e.name for e in entities] == ["orders", "customers"]
        assert customers is not None
        loader.load_entity.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refresh_entity_reloads(self, meta_schemas: list[MetaEntitySchema]) -> None:
        loader = AsyncMock()
        loader.load_entity.return_value = meta_schemas[0]
        registry = MetaSchemaRelationshipRegistry(loader, "tenant-1")
        await registry.get_entity_relationships("orders")

        updated = meta_schemas[0].model_copy(update={"table_name": "ent_orders_v2"})
        loader.load_entity.return_value = updated
        refreshed = await registry.refresh_entity("orders")

        assert refreshed is not None
        assert refreshed.table_name == "ent_orders_v2"
        assert loader.load_entity.await_count == 2

    @pytest.mark.asyncio
    async def test_clear_cache(self, meta_schemas: list[MetaEntitySchema]) -> None:
        loader = AsyncMock()
        loader.load_entity.return_value = meta_schemas[0]
        registry = MetaSchemaRelationshipRegistry(loader, "tenant-1")

        await registry.get_entity("orders")
        registry.clear_cache()
        await registry.get_entity("orders")

        assert loader.load_entity.await_count == 2


class TestRegistryProvider:
    """Tests for per-tenant registries."""

    def test_one_registry_per_tenant(self, static_loader: StaticMetaSchemaLoader) -> None:
        provider = RegistryProvider(static_loader, cache_ttl_ms=5000)

        first = provider.for_tenant("tenant-1")

        assert provider.for_tenant("tenant-1") is first
        assert provider.for_tenant("tenant-2") is not first
        assert first.tenant_id == "tenant-1"

    @pytest.mark.asyncio
    async def test_tenants_do_not_share_cache(self, meta_schemas: list[MetaEntitySchema]) -> None:
        loader = AsyncMock()
        loader.load_entity.return_value = meta_schemas[0]
        provider = RegistryProvider(loader)

        await provider.for_tenant("tenant-1").get_entity("orders")
        await provider.for_tenant("tenant-2").get_entity("orders")

        assert [c.args for c in loader.load_entity.await_args_list] == [
            ("orders", "tenant-1"),
            ("orders", "tenant-2"),
        ]

    def test_evicts_least_recently_used_tenant(
        self, static_loader: StaticMetaSchemaLoader
    ) -> None:
        provider = RegistryProvider(static_loader, max_tenants=2)
        first = provider.for_tenant("tenant-1")
        provider.for_tenant("tenant-2")

        # touching tenant-1 makes tenant-2 the oldest
        assert provider.for_tenant("tenant-1") is first
        provider.for_tenant("tenant-3")

        assert len(provider) == 2
        assert provider.for_tenant("tenant-1") is first
        assert len(provider) == 2

    def test_many_distinct_tenants_stay_bounded(
        self, static_loader: StaticMetaSchemaLoader
    ) -> None:
        provider = RegistryProvider(static_loader, max_tenants=10)

        for i in range(500):
            provider.for_tenant(f"tenant-{i}")

        assert len(provider) == 10
        assert provider.for_tenant("tenant-499").tenant_id == "tenant-499"
        assert len(provider) == 10

    def test_evicted_tenant_gets_fresh_registry(
        self, static_loader: StaticMetaSchemaLoader
    ) -> None:
        provider = RegistryProvider(static_loader, max_tenants=1)
        first = provider.for_tenant("tenant-1")
        provider.for_tenant("tenant-2")

        assert provider.for_tenant("tenant-1") is not first
