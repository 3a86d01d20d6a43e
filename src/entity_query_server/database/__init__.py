"""Meta schema store access for the Entity Query Server."""

from entity_query_server.database.engine import check_meta_store, create_engine, dispose_engine
from entity_query_server.database.loader import (
    DatabaseMetaSchemaLoader,
    MetaSchemaLoader,
    StaticMetaSchemaLoader,
    map_relation_kind,
)

__all__ = [
    "check_meta_store",
    "create_engine",
    "dispose_engine",
    "DatabaseMetaSchemaLoader",
    "MetaSchemaLoader",
    "StaticMetaSchemaLoader",
    "map_relation_kind",
]
