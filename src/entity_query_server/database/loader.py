"""Entity schema loaders for the relationship registry.

DatabaseMetaSchemaLoader reads published entity definitions from the META
schema tables (meta.entity, meta.entity_version, meta.field, meta.relation).
StaticMetaSchemaLoader serves schemas registered in memory or read from a
JSON file, for tests and deployments without a meta store.
"""

import json
import logging
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from entity_query_server.models.metadata import (
    Cardinality,
    MetaEntitySchema,
    MetaFieldSchema,
    MetaRelationSchema,
)

logger = logging.getLogger(__name__)

# Latest published version of an active entity
LOAD_ENTITY_SQL = """
SELECT
    e.id::text AS id,
    e.name,
    e.table_schema,
    e.table_name,
    v.id AS version_id
FROM meta.entity e
JOIN meta.entity_version v
    ON v.entity_id = e.id
    AND v.tenant_id = e.tenant_id
WHERE e.name = :entity_key
  AND e.tenant_id = CAST(:tenant_id AS uuid)
  AND e.is_active = true
  AND v.status = 'published'
ORDER BY v.version_no DESC
LIMIT 1;
"""

LOAD_FIELDS_SQL = """
SELECT
    f.name,
    f.column_name,
    f.data_type,
    f.lookup_config
FROM meta.field f
WHERE f.entity_version_id = :version_id
  AND f.is_active = true
ORDER BY f.sort_order, f.name;
"""

LOAD_RELATIONS_SQL = """
SELECT
    r.name,
    r.relation_kind,
    r.target_entity,
    r.fk_field,
    r.target_key
FROM meta.relation r
WHERE r.entity_version_id = :version_id
ORDER BY r.name;
"""

LIST_ENTITIES_SQL = """
SELECT e.name
FROM meta.entity e
WHERE e.tenant_id = CAST(:tenant_id AS uuid)
  AND e.is_active = true
ORDER BY e.name;
"""

# relation_kind vocabulary of meta.relation
RELATION_KIND_CARDINALITY: dict[str, Cardinality] = {
    "belongs_to": "many-to-one",
    "has_one": "one-to-one",
    "has_many": "one-to-many",
    "m2m": "many-to-many",
}

# Applied to kinds missing from RELATION_KIND_CARDINALITY; always logged.
DEFAULT_CARDINALITY: Cardinality = "many-to-one"

REFERENCE_DATA_TYPE = "reference"


def map_relation_kind(relation_kind: str) -> Cardinality:
    """Map a meta.relation kind to a join cardinality.

    Unknown kinds fall back to DEFAULT_CARDINALITY with a warning, since
    many-to-one is weaker than whatever the author intended.
    """
    cardinality = RELATION_KIND_CARDINALITY.get(relation_kind)
    if cardinality is None:
        logger.warning(
            f"Unmapped relation kind '{relation_kind}', defaulting to {DEFAULT_CARDINALITY}"
        )
        return DEFAULT_CARDINALITY
    return cardinality


class MetaSchemaLoader(Protocol):
    """Source of entity schemas for one or more tenants."""

    async def load_entity(self, entity_key: str, tenant_id: str) -> MetaEntitySchema | None:
        """Load an entity schema by key, or None if it does not exist."""
        ...

    async def load_all_entities(self, tenant_id: str) -> list[MetaEntitySchema]:
        """Load every entity schema of a tenant."""
        ...


class DatabaseMetaSchemaLoader:
    """Loads entity schemas from the META schema tables.

    Errors from the database propagate; the registry decides how to degrade.
    """

    def __init__(self, engine: AsyncEngine, statement_timeout: int) -> None:
        """Initialize the loader.

        Args:
            engine: Async engine connected to the meta store.
            statement_timeout: Statement timeout in milliseconds.
        """
        self.engine = engine
        self.statement_timeout = statement_timeout

    async def _execute_with_timeout(
        self, conn: AsyncConnection, sql: str, params: dict[str, Any]
    ) -> Any:
        """Execute query with statement timeout.

        Args:
            conn: Open connection.
            sql: SQL query string.
            params: Query parameters.

        Returns:
            Query result.
        """
        await conn.execute(text(f"SET LOCAL statement_timeout = {self.statement_timeout}"))
        return await conn.execute(text(sql), params)

    async def load_entity(self, entity_key: str, tenant_id: str) -> MetaEntitySchema | None:
        """Load the latest published version of an entity.

        Args:
            entity_key: Entity name.
            tenant_id: Tenant owning the entity.

        Returns:
            Entity schema, or None if no published version exists.
        """
        async with self.engine.connect() as conn:
            return await self._load_entity(conn, entity_key, tenant_id)

    async def load_all_entities(self, tenant_id: str) -> list[MetaEntitySchema]:
        """Load all active entities of a tenant.

        Args:
            tenant_id: Tenant to load.

        Returns:
            Entity schemas; entities without a published version are skipped.
        """
        schemas: list[MetaEntitySchema] = []
        async with self.engine.connect() as conn:
            result = await self._execute_with_timeout(
                conn, LIST_ENTITIES_SQL, {"tenant_id": tenant_id}
            )
            names = [row._mapping["name"] for row in result.fetchall()]

            for name in names:
                schema = await self._load_entity(conn, name, tenant_id)
                if schema is not None:
                    schemas.append(schema)

        return schemas

    async def _load_entity(
        self, conn: AsyncConnection, entity_key: str, tenant_id: str
    ) -> MetaEntitySchema | None:
        result = await self._execute_with_timeout(
            conn, LOAD_ENTITY_SQL, {"entity_key": entity_key, "tenant_id": tenant_id}
        )
        row = result.fetchone()
        if row is None:
            return None
        entity = dict(row._mapping)

        params = {"version_id": entity["version_id"]}
        field_rows = (await self._execute_with_timeout(conn, LOAD_FIELDS_SQL, params)).fetchall()
        relation_rows = (
            await self._execute_with_timeout(conn, LOAD_RELATIONS_SQL, params)
        ).fetchall()

        return MetaEntitySchema(
            id=entity["id"],
            entity_key=entity["name"],
            table_name=entity["table_name"],
            table_schema=entity.get("table_schema"),
            fields=[self._convert_field(dict(r._mapping)) for r in field_rows],
            relations=[self._convert_relation(dict(r._mapping)) for r in relation_rows],
        )

    def _convert_field(self, row: dict[str, Any]) -> MetaFieldSchema:
        """Convert a meta.field row.

        Reference fields name their target in lookup_config
        ({"entity": ..., "field": ...}).
        """
        lookup = row.get("lookup_config") or {}
        if isinstance(lookup, str):
            lookup = json.loads(lookup)

        is_reference = row["data_type"] == REFERENCE_DATA_TYPE and bool(lookup.get("entity"))
        return MetaFieldSchema(
            field_key=row["name"],
            column_name=row.get("column_name") or row["name"],
            data_type=row["data_type"],
            is_primary_key=row["name"] == "id",
            is_foreign_key=is_reference,
            references_entity=lookup.get("entity") if is_reference else None,
            references_field=lookup.get("field", "id") if is_reference else None,
        )

    def _convert_relation(self, row: dict[str, Any]) -> MetaRelationSchema:
        """Convert a meta.relation row."""
        return MetaRelationSchema(
            relation_key=row["name"],
            source_field=row.get("fk_field") or row["name"],
            target_entity=row["target_entity"],
            target_field=row.get("target_key") or "id",
            cardinality=map_relation_kind(row["relation_kind"]),
            is_virtual=False,
        )


class StaticMetaSchemaLoader:
    """Loader over schemas registered in memory.

    Schemas are shared by all tenants.
    """

    def __init__(self, schemas: list[MetaEntitySchema] | None = None) -> None:
        self._schemas: dict[str, MetaEntitySchema] = {}
        self.register_schemas(schemas or [])

    @classmethod
    def from_file(cls, path: str | Path) -> "StaticMetaSchemaLoader":
        """Build a loader from a JSON file.

        The file holds either a list of entity schemas or an object with an
        "entities" list, using the camelCase keys of MetaEntitySchema.

        Raises:
            OSError: If the file cannot be read.
            ValueError: If the content is not valid JSON or not a schema list.
        """
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(data, dict):
            data = data.get("entities", [])
        if not isinstance(data, list):
            raise ValueError(f"Expected a list of entity schemas in {path}")
        return cls([MetaEntitySchema.model_validate(item) for item in data])

    def register_schema(self, schema: MetaEntitySchema) -> None:
        self._schemas[schema.entity_key] = schema

    def register_schemas(self, schemas: list[MetaEntitySchema]) -> None:
        for schema in schemas:
            self.register_schema(schema)

    async def load_entity(self, entity_key: str, tenant_id: str) -> MetaEntitySchema | None:
        return self._schemas.get(entity_key)

    async def load_all_entities(self, tenant_id: str) -> list[MetaEntitySchema]:
        return list(self._schemas.values())
