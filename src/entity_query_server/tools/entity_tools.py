"""Entity discovery tools.

These tools help LLMs find the queryable entities of a tenant, their fields
and which entities they can be joined to.
"""

from typing import Any

from mcp.server.fastmcp import Context
from mcp.server.session import ServerSession
from mcp.types import ToolAnnotations

from entity_query_server.errors import (
    ErrorCode,
    create_tool_error,
    find_similar_names,
    missing_tenant_error,
)
from entity_query_server.models.results import (
    DescribeEntityOutput,
    EntitySummary,
    ListEntitiesOutput,
)
from entity_query_server.server import AppContext, mcp


@mcp.tool(
    annotations=ToolAnnotations(
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def list_entities(
    tenant_id: str | None = None,
    name_pattern: str | None = None,
    ctx: Context[ServerSession, AppContext] | None = None,
) -> ListEntitiesOutput | dict[str, Any]:
    """List entities that can be queried.

    Args:
        tenant_id: Tenant whose entities to list. Default: PLANNER_DEFAULT_TENANT_ID
        name_pattern: Case-insensitive substring filter on the entity name

    Returns:
        Entities with table name, field count and directly joinable entities.

    Example:
        list_entities(name_pattern="order") -> {"entities": [...], "totalCount": 2}
    """
    if ctx is None:
        return create_tool_error(
            ErrorCode.CONNECTION_ERROR,
            "No context available",
            "list_entities",
        )

    app_ctx = ctx.request_context.lifespan_context
    tenant = app_ctx.resolve_tenant(tenant_id)
    if tenant is None:
        return missing_tenant_error("list_entities", {"name_pattern": name_pattern})
    registry = app_ctx.registries.for_tenant(tenant)

    entities = await registry.get_all_entities()
    if name_pattern:
        pattern = name_pattern.lower()
        entities = [e for e in entities if pattern in e.name.lower()]

    summaries = [
        EntitySummary(
            name=entity.name,
            table_name=entity.table_name,
            field_count=len(entity.fields),
            joinable_entities=await registry.get_joinable_entities(entity.name),
        )
        for entity in sorted(entities, key=lambda e: e.name)
    ]
    return ListEntitiesOutput(entities=summaries, total_count=len(summaries))


@mcp.tool(
    annotations=ToolAnnotations(
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def describe_entity(
    entity: str,
    tenant_id: str | None = None,
    ctx: Context[ServerSession, AppContext] | None = None,
) -> DescribeEntityOutput | dict[str, Any]:
    """Get fields and relationships of an entity.

    Only entities listed in "joinableEntities" can be joined from this one.

    Args:
        entity: Entity name
        tenant_id: Tenant whose metadata to use. Default: PLANNER_DEFAULT_TENANT_ID

    Returns:
        Fields, primary key, declared and foreign-key relationships.

    Example:
        describe_entity(entity="orders")
    """
    if ctx is None:
        return create_tool_error(
            ErrorCode.CONNECTION_ERROR,
            "No context available",
            "describe_entity",
        )

    app_ctx = ctx.request_context.lifespan_context
    tenant = app_ctx.resolve_tenant(tenant_id)
    if tenant is None:
        return missing_tenant_error("describe_entity", {"entity": entity})
    registry = app_ctx.registries.for_tenant(tenant)

    metadata = await registry.get_entity(entity)
    if metadata is None:
        known = [e.name for e in await registry.get_all_entities()]
        return create_tool_error(
            ErrorCode.UNKNOWN_ENTITY,
            f"Unknown entity: {entity}",
            "describe_entity",
            {"entity": entity, "tenant_id": tenant_id},
            context={"similar_entities": find_similar_names(entity, known)},
        )

    return DescribeEntityOutput(
        name=metadata.name,
        table_name=metadata.table_name,
        fields=list(metadata.fields),
        primary_key=list(metadata.primary_key),
        relationships=list(metadata.relationships),
        joinable_entities=await registry.get_joinable_entities(entity),
    )
