"""Pydantic models for entity metadata and the metadata loader contract.

EntityMetadata and EntityRelationship are what the planner consumes. The
Meta*Schema models are the raw shape produced by a metadata loader before
the registry converts them.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Cardinality = Literal["one-to-one", "one-to-many", "many-to-one", "many-to-many"]


class CamelModel(BaseModel):
    """Base model accepting both snake_case and camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# === Planner-facing metadata ===


class ForeignKey(CamelModel):
    """A foreign key field on an entity."""

    model_config = ConfigDict(frozen=True)

    field: str
    references_entity: str
    references_field: str = "id"


class EntityRelationship(CamelModel):
    """Declared, directed relationship between two entities."""

    model_config = ConfigDict(frozen=True)

    source_entity: str
    source_field: str
    target_entity: str
    target_field: str = "id"
    cardinality: Cardinality
    name: str
    is_virtual: bool = False


class EntityMetadata(CamelModel):
    """Entity metadata used for query planning.

    Replaced wholesale on refresh; never mutated.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Logical entity key, unique within a tenant")
    table_name: str = Field(description="Physical table name")
    table_schema: str | None = Field(default=None, description="Physical schema name")
    fields: tuple[str, ...] = ()
    primary_key: tuple[str, ...] = ()
    foreign_keys: tuple[ForeignKey, ...] = ()
    relationships: tuple[EntityRelationship, ...] = ()

    def has_field(self, field: str) -> bool:
        """Check whether the entity declares a field."""
        return field in self.fields


# === Loader output ===


class MetaFieldSchema(CamelModel):
    """Field as stored in the meta schema."""

    field_key: str
    column_name: str | None = None
    data_type: str = "string"
    is_primary_key: bool = False
    is_foreign_key: bool = False
    references_entity: str | None = None
    references_field: str | None = None


class MetaRelationSchema(CamelModel):
    """Relation as stored in the meta schema."""

    relation_key: str
    source_field: str
    target_entity: str
    target_field: str = "id"
    cardinality: Cardinality = "many-to-one"
    is_virtual: bool = False


class MetaEntitySchema(CamelModel):
    """Entity schema as returned by a metadata loader."""

    id: str | None = None
    entity_key: str
    table_name: str
    table_schema: str | None = None
    fields: list[MetaFieldSchema] = Field(default_factory=list)
    relations: list[MetaRelationSchema] = Field(default_factory=list)
