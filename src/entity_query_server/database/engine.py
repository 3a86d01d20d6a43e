"""SQLAlchemy async engine management for the meta schema store."""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from entity_query_server.config import DatabaseSettings

APPLICATION_NAME = "entity-query-server"

COUNT_ENTITIES_SQL = "SELECT count(*) FROM meta.entity WHERE is_active = true"


async def create_engine(settings: DatabaseSettings) -> AsyncEngine:
    """Create async SQLAlchemy engine for the meta store.

    Args:
        settings: Database configuration settings.

    Returns:
        AsyncEngine configured for asyncpg with connection pooling.
    """
    return create_async_engine(
        settings.async_url,
        pool_size=settings.pool_size,
        pool_timeout=settings.pool_timeout,
        pool_pre_ping=True,
        connect_args={"server_settings": {"application_name": APPLICATION_NAME}},
        echo=False,
    )


async def dispose_engine(engine: AsyncEngine) -> None:
    """Dispose of the engine and close all connections."""
    await engine.dispose()


async def check_meta_store(engine: AsyncEngine) -> int:
    """Check connectivity and that the meta schema is present.

    Args:
        engine: The async engine to check.

    Returns:
        Number of active entities across all tenants.

    Raises:
        Exception: If the connection fails or meta.entity is missing.
    """
    async with engine.connect() as conn:
        result = await conn.execute(text(COUNT_ENTITIES_SQL))
        return int(result.scalar() or 0)
