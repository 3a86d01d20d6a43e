"""Entry point for the Entity Query Server."""

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Annotated

import typer
from pydantic import BaseModel, ValidationError

from entity_query_server.config import Settings, get_settings, set_env_file_path
from entity_query_server.database.engine import check_meta_store, create_engine, dispose_engine
from entity_query_server.models.query import QueryRequest
from entity_query_server.models.results import ExplainQueryOutput, ValidateQueryOutput
from entity_query_server.server import build_app_context, mcp, open_metadata_loader

# Import tools to register them with the server
from entity_query_server.tools import entity_tools, query_tools  # noqa: F401

app = typer.Typer(
    name="entity-query-server",
    no_args_is_help=False,
)


def validate_env_file(ctx: typer.Context, value: str | None) -> str | None:
    """Validate that the specified env file exists.

    Args:
        ctx: Typer context for handling shell completion.
        value: Path to env file, or None if not specified.

    Returns:
        Resolved absolute path to the env file, or None if not specified.

    Raises:
        typer.BadParameter: If the file doesn't exist or is not a file.
    """
    # Skip validation during shell completion
    if ctx.resilient_parsing:
        return None

    if value is None:
        return None

    env_path = Path(value)
    if not env_path.exists():
        raise typer.BadParameter(f"Environment file not found: {value}")
    if not env_path.is_file():
        raise typer.BadParameter(f"Path is not a file: {value}")
    return str(env_path.resolve())


def resolve_default_env_file(env_file: str | None) -> str | None:
    """Resolve default .env file if --env-file not specified.

    Args:
        env_file: Explicitly provided env file path, or None.

    Returns:
        The provided path if set, otherwise the resolved path to .env
        in the current working directory if it exists, or None.
    """
    if env_file is not None:
        return env_file

    default_env = Path.cwd() / ".env"
    if default_env.exists() and default_env.is_file():
        return str(default_env.resolve())
    return None


def setup_logging(level: str, format_type: str) -> None:
    """Configure logging based on settings.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR).
        format_type: Log format type ('json' or 'text').
    """
    if format_type == "json":
        log_format = (
            '{"time": "%(asctime)s", "name": "%(name)s", '
            '"level": "%(levelname)s", "message": "%(message)s"}'
        )
    else:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=level.upper(),
        format=log_format,
        stream=sys.stderr,  # MCP stdio uses stdout, so log to stderr
    )


def load_query_file(path: Path) -> QueryRequest:
    """Read and parse a JSON query request file.

    Raises:
        typer.Exit: With code 1 if the file is not valid JSON or not a valid request.
    """
    try:
        return QueryRequest.model_validate(json.loads(path.read_text()))
    except json.JSONDecodeError as e:
        typer.echo(f"Invalid JSON in {path}: {e}", err=True)
        raise typer.Exit(1) from e
    except ValidationError as e:
        typer.echo(f"Invalid query request in {path}:\n{e}", err=True)
        raise typer.Exit(1) from e


def echo_model(model: BaseModel) -> None:
    typer.echo(model.model_dump_json(by_alias=True, indent=2, exclude_none=True))


def resolve_tenant(settings: Settings, tenant: str | None) -> str:
    """Return --tenant or PLANNER_DEFAULT_TENANT_ID.

    Raises:
        typer.Exit: With code 1 if neither is set.
    """
    resolved = tenant or settings.planner.default_tenant_id
    if resolved is None:
        typer.echo("No tenant given: pass --tenant or set PLANNER_DEFAULT_TENANT_ID", err=True)
        raise typer.Exit(1)
    return resolved


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    env_file: Annotated[
        str | None,
        typer.Option(
            "--env-file",
            help="Path to .env file (default: .env in current directory)",
            callback=validate_env_file,
            metavar="PATH",
        ),
    ] = None,
) -> None:
    """Entity Query Server: validated cross-entity queries via Model Context Protocol."""
    # Resolve default .env file if not explicitly provided
    resolved_env_file = resolve_default_env_file(env_file)

    # If a subcommand is being invoked, just set env_file and return
    if ctx.invoked_subcommand is not None:
        set_env_file_path(resolved_env_file)
        return

    # No subcommand - start the server
    set_env_file_path(resolved_env_file)

    settings = get_settings()

    setup_logging(settings.server.log_level, settings.server.log_format)

    logger = logging.getLogger(__name__)
    logger.info(f"Starting Entity Query Server with {settings.server.transport} transport")

    # Run with appropriate transport
    if settings.server.transport == "stdio":
        mcp.run(transport="stdio")
    else:
        # Set host/port via environment variables for uvicorn
        os.environ.setdefault("UVICORN_HOST", settings.server.host)
        os.environ.setdefault("UVICORN_PORT", str(settings.server.port))
        mcp.run(transport="streamable-http")


@app.command()
def test() -> None:
    """Test the meta store connection and exit."""
    # env_file is set by the callback
    settings = get_settings()
    if settings.database is None:
        typer.echo("No meta store configured (PLANNER_METADATA_SOURCE=static)", err=True)
        raise typer.Exit(1)

    async def run_test() -> int | None:
        engine = await create_engine(settings.database)
        try:
            return await check_meta_store(engine)
        except Exception as e:
            typer.echo(f"Connection failed: {e}", err=True)
            return None
        finally:
            await dispose_engine(engine)

    entity_count = asyncio.run(run_test())
    if entity_count is None:
        raise typer.Exit(1)
    typer.echo(f"Connection successful ({entity_count} active entities)")


QueryFile = Annotated[
    Path,
    typer.Argument(exists=True, dir_okay=False, readable=True, help="JSON query request file"),
]
TenantOption = Annotated[
    str | None,
    typer.Option("--tenant", help="Tenant ID (default: PLANNER_DEFAULT_TENANT_ID)"),
]


async def _validate(settings: Settings, query: QueryRequest, tenant_id: str) -> ValidateQueryOutput:
    async with open_metadata_loader(settings) as (loader, engine):
        service = build_app_context(settings, loader, engine).planning_service(tenant_id)
        validation = await service.validate(query, tenant_id)
    return ValidateQueryOutput(
        valid=validation.valid, errors=validation.errors, warnings=validation.warnings
    )


async def _explain(settings: Settings, query: QueryRequest, tenant_id: str) -> ExplainQueryOutput:
    async with open_metadata_loader(settings) as (loader, engine):
        service = build_app_context(settings, loader, engine).planning_service(tenant_id)
        result = await service.explain(query, tenant_id)
    return result.to_output()


@app.command()
def validate(file: QueryFile, tenant: TenantOption = None) -> None:
    """Validate a JSON query request against the configured metadata."""
    settings = get_settings()
    query = load_query_file(file)
    tenant_id = resolve_tenant(settings, tenant)

    result = asyncio.run(_validate(settings, query, tenant_id))
    echo_model(result)
    if not result.valid:
        raise typer.Exit(1)


@app.command()
def explain(file: QueryFile, tenant: TenantOption = None) -> None:
    """Print the join plan and projected SQL for a JSON query request."""
    settings = get_settings()
    query = load_query_file(file)
    tenant_id = resolve_tenant(settings, tenant)

    result = asyncio.run(_explain(settings, query, tenant_id))
    echo_model(result)
    if not result.valid:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
