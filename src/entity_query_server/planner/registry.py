"""Relationship registries.

A registry answers two questions for the join planner: what an entity looks
like, and whether a declared relationship exists from one entity to another.
A join is structurally legal only if get_relationship() finds one.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Callable

from entity_query_server.database.loader import MetaSchemaLoader
from entity_query_server.models.metadata import (
    EntityMetadata,
    EntityRelationship,
    ForeignKey,
    MetaEntitySchema,
)
from entity_query_server.planner.cache import TTLCache

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_MS = 60000
DEFAULT_MAX_TENANTS = 1000

IMPLICIT_RELATIONSHIP_SUFFIX = "_ref"


class RelationshipRegistry(ABC):
    """Entity metadata and join authorization lookups."""

    @abstractmethod
    async def get_entity(self, entity_name: str) -> EntityMetadata | None:
        """Get entity metadata, or None for an unknown entity."""

    @abstractmethod
    async def get_all_entities(self) -> list[EntityMetadata]:
        """Get all registered entities."""

    @abstractmethod
    async def get_entity_relationships(self, entity_name: str) -> list[EntityRelationship]:
        """Get all relationships declared from an entity."""

    async def get_relationship(
        self, source_entity: str, target_entity: str
    ) -> EntityRelationship | None:
        """Get the first declared relationship from source to target."""
        for relationship in await self.get_entity_relationships(source_entity):
            if relationship.target_entity == target_entity:
                return relationship
        return None

    async def is_join_allowed(self, source_entity: str, target_entity: str) -> bool:
        return await self.get_relationship(source_entity, target_entity) is not None

    async def get_joinable_entities(self, entity_name: str) -> list[str]:
        """Distinct target entities reachable in one join, in declaration order."""
        relationships = await self.get_entity_relationships(entity_name)
        return list(dict.fromkeys(r.target_entity for r in relationships))


class InMemoryRelationshipRegistry(RelationshipRegistry):
    """Registry populated explicitly, for tests and static configuration."""

    def __init__(self) -> None:
        self._entities: dict[str, EntityMetadata] = {}
        self._relationships: dict[str, list[EntityRelationship]] = {}

    def register_entity(self, entity: EntityMetadata) -> None:
        """Register an entity and index its declared relationships."""
        self._entities[entity.name] = entity
        for relationship in entity.relationships:
            self.register_relationship(relationship)

    def register_relationship(self, relationship: EntityRelationship) -> None:
        self._relationships.setdefault(relationship.source_entity, []).append(relationship)

    def remove_relationship(self, source_entity: str, target_entity: str) -> int:
        """Remove all relationships from source to target.

        Returns:
            Number of relationships removed.
        """
        current = self._relationships.get(source_entity, [])
        kept = [r for r in current if r.target_entity != target_entity]
        self._relationships[source_entity] = kept
        return len(current) - len(kept)

    async def get_entity(self, entity_name: str) -> EntityMetadata | None:
        return self._entities.get(entity_name)

    async def get_all_entities(self) -> list[EntityMetadata]:
        return list(self._entities.values())

    async def get_entity_relationships(self, entity_name: str) -> list[EntityRelationship]:
        return list(self._relationships.get(entity_name, []))


def merge_relationships(
    entity_name: str,
    declared: list[EntityRelationship],
    foreign_keys: list[ForeignKey],
) -> list[EntityRelationship]:
    """Merge declared relationships with ones implied by foreign keys.

    Relationships are keyed by (target_entity, source_field). A foreign key
    whose key is already declared is skipped; otherwise it becomes a
    many-to-one relationship named '{field}_ref'.
    """
    merged: dict[tuple[str, str], EntityRelationship] = {}
    for relationship in declared:
        merged.setdefault((relationship.target_entity, relationship.source_field), relationship)

    for fk in foreign_keys:
        key = (fk.references_entity, fk.field)
        if key in merged:
            continue
        merged[key] = EntityRelationship(
            source_entity=entity_name,
            source_field=fk.field,
            target_entity=fk.references_entity,
            target_field=fk.references_field,
            cardinality="many-to-one",
            name=f"{fk.field}{IMPLICIT_RELATIONSHIP_SUFFIX}",
        )
    return list(merged.values())


def convert_entity_schema(schema: MetaEntitySchema) -> EntityMetadata:
    """Convert a loader schema into planner metadata."""
    foreign_keys = [
        ForeignKey(
            field=f.field_key,
            references_entity=f.references_entity,
            references_field=f.references_field or "id",
        )
        for f in schema.fields
        if f.is_foreign_key and f.references_entity
    ]

    declared = [
        EntityRelationship(
            source_entity=schema.entity_key,
            source_field=r.source_field,
            target_entity=r.target_entity,
            target_field=r.target_field,
            cardinality=r.cardinality,
            name=r.relation_key,
            is_virtual=r.is_virtual,
        )
        for r in schema.relations
    ]

    return EntityMetadata(
        name=schema.entity_key,
        table_name=schema.table_name,
        table_schema=schema.table_schema,
        fields=tuple(f.field_key for f in schema.fields),
        primary_key=tuple(f.field_key for f in schema.fields if f.is_primary_key),
        foreign_keys=tuple(foreign_keys),
        relationships=tuple(merge_relationships(schema.entity_key, declared, foreign_keys)),
    )


class MetaSchemaRelationshipRegistry(RelationshipRegistry):
    """Registry backed by a metadata loader, with TTL caching.

    Loader failures are logged and reported as "entity not found", so the
    planner sees an unknown entity rather than an exception.
    """

    def __init__(
        self,
        loader: MetaSchemaLoader,
        tenant_id: str,
        cache_ttl_ms: int = DEFAULT_CACHE_TTL_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the registry.

        Args:
            loader: Source of entity schemas.
            tenant_id: Tenant whose entities this registry serves.
            cache_ttl_ms: Lifetime of cached metadata in milliseconds.
            clock: Monotonic clock, injectable for tests.
        """
        self.loader = loader
        self.tenant_id = tenant_id
        self._entities: TTLCache[EntityMetadata] = TTLCache(cache_ttl_ms, clock)
        self._relationships: TTLCache[list[EntityRelationship]] = TTLCache(cache_ttl_ms, clock)

    async def get_entity(self, entity_name: str) -> EntityMetadata | None:
        cached = self._entities.get(entity_name)
        if cached is not None:
            return cached

        try:
            schema = await self.loader.load_entity(entity_name, self.tenant_id)
        except Exception:
            logger.exception(
                f"Failed to load entity '{entity_name}' for tenant '{self.tenant_id}'"
            )
            return None
        if schema is None:
            return None

        metadata = convert_entity_schema(schema)
        self._entities.set(entity_name, metadata)
        return metadata

    async def get_all_entities(self) -> list[EntityMetadata]:
        try:
            schemas = await self.loader.load_all_entities(self.tenant_id)
        except Exception:
            logger.exception(f"Failed to load entities for tenant '{self.tenant_id}'")
            return []

        entities = []
        for schema in schemas:
            metadata = convert_entity_schema(schema)
            self._entities.set(schema.entity_key, metadata)
            entities.append(metadata)
        return entities

    async def get_entity_relationships(self, entity_name: str) -> list[EntityRelationship]:
        cached = self._relationships.get(entity_name)
        if cached is not None:
            return list(cached)

        entity = await self.get_entity(entity_name)
        if entity is None:
            return []

        relationships = list(entity.relationships)
        self._relationships.set(entity_name, relationships)
        return list(relationships)

    async def refresh_entity(self, entity_name: str) -> EntityMetadata | None:
        """Drop cached metadata for an entity and reload it."""
        self._entities.invalidate(entity_name)
        self._relationships.invalidate(entity_name)
        return await self.get_entity(entity_name)

    def clear_cache(self) -> None:
        self._entities.clear()
        self._relationships.clear()


class RegistryProvider:
    """Hands out one metadata-backed registry per tenant.

    At most max_tenants registries are kept; the least recently used one is
    dropped, with its cache, when another tenant is added.
    """

    def __init__(
        self,
        loader: MetaSchemaLoader,
        cache_ttl_ms: int = DEFAULT_CACHE_TTL_MS,
        max_tenants: int = DEFAULT_MAX_TENANTS,
    ) -> None:
        self.loader = loader
        self.cache_ttl_ms = cache_ttl_ms
        self.max_tenants = max_tenants
        self._registries: OrderedDict[str, MetaSchemaRelationshipRegistry] = OrderedDict()

    def for_tenant(self, tenant_id: str) -> MetaSchemaRelationshipRegistry:
        registry = self._registries.get(tenant_id)
        if registry is not None:
            self._registries.move_to_end(tenant_id)
            return registry

        registry = MetaSchemaRelationshipRegistry(self.loader, tenant_id, self.cache_ttl_ms)
        self._registries[tenant_id] = registry
        while len(self._registries) > self.max_tenants:
            evicted, _ = self._registries.popitem(last=False)
            logger.debug(f"Evicted registry for tenant '{evicted}'")
        return registry

    def __len__(self) -> int:
        return len(self._registries)
