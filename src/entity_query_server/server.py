"""MCP server initialization using FastMCP.

This module creates the FastMCP server instance with lifespan management
for the metadata source (meta store connection pool or static schema file),
per-tenant relationship registries and shared observability hooks.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import FastMCP
from sqlalchemy.ext.asyncio import AsyncEngine

from entity_query_server.config import Settings, get_settings
from entity_query_server.database.engine import create_engine, dispose_engine
from entity_query_server.database.loader import (
    DatabaseMetaSchemaLoader,
    MetaSchemaLoader,
    StaticMetaSchemaLoader,
)
from entity_query_server.observability import QueryObservabilityHooks
from entity_query_server.planner.registry import RegistryProvider
from entity_query_server.planner.service import QueryPlanningService

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Application context with shared resources."""

    settings: Settings
    registries: RegistryProvider
    hooks: QueryObservabilityHooks
    engine: AsyncEngine | None = None

    def resolve_tenant(self, tenant_id: str | None) -> str | None:
        """Return the given tenant, else the configured default (may be None)."""
        return tenant_id or self.settings.planner.default_tenant_id

    def planning_service(self, tenant_id: str) -> QueryPlanningService:
        """Build a planning service bound to a tenant's registry."""
        planner = self.settings.planner
        return QueryPlanningService(
            self.registries.for_tenant(tenant_id),
            guardrails=planner.guardrails,
            hooks=self.hooks,
            max_complexity=planner.max_complexity,
        )


def create_static_loader(settings: Settings) -> StaticMetaSchemaLoader:
    """Create the static loader configured by PLANNER_STATIC_SCHEMA_PATH."""
    path = settings.planner.static_schema_path
    if path is None:
        raise ValueError("PLANNER_STATIC_SCHEMA_PATH is required when metadata_source=static")
    return StaticMetaSchemaLoader.from_file(path)


def create_hooks(settings: Settings) -> QueryObservabilityHooks:
    return QueryObservabilityHooks(
        slow_query_threshold_ms=settings.planner.slow_query_threshold_ms,
    )


@asynccontextmanager
async def open_metadata_loader(
    settings: Settings,
) -> AsyncIterator[tuple[MetaSchemaLoader, AsyncEngine | None]]:
    """Open the configured metadata source.

    Yields:
        The loader and, for metadata_source=database, the engine it uses.
    """
    if settings.planner.metadata_source == "static":
        logger.info(f"Loading entity metadata from {settings.planner.static_schema_path}")
        yield create_static_loader(settings), None
        return

    # database settings are always loaded for metadata_source=database
    assert settings.database is not None
    engine = await create_engine(settings.database)
    try:
        yield DatabaseMetaSchemaLoader(engine, settings.database.statement_timeout), engine
    finally:
        await dispose_engine(engine)


def build_app_context(
    settings: Settings, loader: MetaSchemaLoader, engine: AsyncEngine | None = None
) -> AppContext:
    return AppContext(
        settings=settings,
        registries=RegistryProvider(
            loader, settings.planner.cache_ttl_ms, settings.planner.max_cached_tenants
        ),
        hooks=create_hooks(settings),
        engine=engine,
    )


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Manage application lifecycle - metadata source and registries.

    Args:
        server: The FastMCP server instance.

    Yields:
        AppContext with initialized resources.
    """
    settings = get_settings()

    async with open_metadata_loader(settings) as (loader, engine):
        yield build_app_context(settings, loader, engine)


# Create MCP server with lifespan
mcp = FastMCP(
    "Entity Query Server",
    lifespan=app_lifespan,
)
