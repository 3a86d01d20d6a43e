"""Configuration management using pydantic-settings."""

from typing import Any

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from entity_query_server.models.query import JoinType, QueryGuardrails, WhereOperator

# Module-level state for env file path
_env_file_path: str | None = None


def set_env_file_path(path: str | None) -> None:
    """Set the env file path for settings to use.

    Args:
        path: Path to .env file, or None to use default (.env in current directory).
    """
    global _env_file_path
    _env_file_path = path


def get_env_file_path() -> str | None:
    """Get the currently configured env file path.

    Returns:
        The configured env file path, or None if using default.
    """
    return _env_file_path


class DatabaseSettings(BaseSettings):
    """Connection configuration for the PostgreSQL meta schema store."""

    model_config = SettingsConfigDict(
        env_prefix="PG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, ge=1, le=65535, description="Database port")
    database: str = Field(..., description="Database name")
    user: str = Field(..., description="Database user")
    password: SecretStr = Field(..., description="Database password")

    # Connection pool settings
    pool_size: int = Field(default=5, ge=1, le=20, description="Connection pool size")
    pool_timeout: float = Field(
        default=30.0, gt=0, description="Pool connection timeout in seconds"
    )

    # Metadata query settings
    statement_timeout: int = Field(
        default=30000, ge=1000, description="Statement timeout in milliseconds"
    )

    @property
    def async_url(self) -> str:
        """Build async connection URL for asyncpg."""
        return (
            f"postgresql+asyncpg://{self.user}:"
            f"{self.password.get_secret_value()}@"
            f"{self.host}:{self.port}/{self.database}"
        )


class ServerSettings(BaseSettings):
    """MCP server configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MCP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    transport: str = Field(default="stdio", pattern="^(stdio|http)$", description="Transport type")
    host: str = Field(default="0.0.0.0", description="HTTP server host")
    port: int = Field(default=8080, ge=1, le=65535, description="HTTP server port")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="json", pattern="^(json|text)$", description="Log output format"
    )


class PlannerSettings(BaseSettings):
    """Query planner guardrails, caching and observability thresholds."""

    model_config = SettingsConfigDict(
        env_prefix="PLANNER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Guardrails
    max_joins: int = Field(default=3, ge=0, le=5, description="Maximum joins per query")
    max_depth: int = Field(default=2, ge=1, le=5, description="Maximum join depth")
    max_select_fields: int = Field(default=50, ge=1, le=50, description="Maximum selected fields")
    max_limit: int = Field(default=500, ge=1, le=1000, description="Maximum LIMIT value")
    max_timeout_ms: int = Field(default=60000, ge=1000, description="Maximum statement timeout")
    allowed_join_types: list[JoinType] = Field(default_factory=lambda: ["inner", "left"])
    allowed_operators: list[WhereOperator] | None = Field(
        default=None, description="Allowed filter operators (default: all)"
    )

    # Complexity pre-check
    max_complexity: int = Field(default=100, ge=10, description="Maximum complexity score")

    # Registry
    cache_ttl_ms: int = Field(default=60000, ge=0, description="Entity metadata cache TTL")
    metadata_source: str = Field(
        default="database",
        pattern="^(database|static)$",
        description="Where entity metadata is loaded from",
    )
    static_schema_path: str | None = Field(
        default=None, description="JSON file with entity schemas (metadata_source=static)"
    )
    max_cached_tenants: int = Field(
        default=1000, ge=1, description="Tenant registries kept before the least recent is dropped"
    )
    default_tenant_id: str | None = Field(
        default=None, description="Tenant UUID used when a call names none"
    )

    # Observability
    slow_query_threshold_ms: float = Field(
        default=1000.0, gt=0, description="Queries slower than this are logged"
    )

    @property
    def guardrails(self) -> QueryGuardrails:
        """Guardrails passed to the join planner."""
        return QueryGuardrails(
            max_joins=self.max_joins,
            max_depth=self.max_depth,
            max_select_fields=self.max_select_fields,
            max_limit=self.max_limit,
            max_timeout_ms=self.max_timeout_ms,
            allowed_join_types=self.allowed_join_types,
            allowed_operators=self.allowed_operators,
        )


class Settings(BaseSettings):
    """Root settings combining all configuration."""

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
    )

    database: DatabaseSettings | None = Field(default=None)
    server: ServerSettings = Field(default=None)  # type: ignore[assignment]
    planner: PlannerSettings = Field(default=None)  # type: ignore[assignment]

    @model_validator(mode="before")
    @classmethod
    def load_nested_settings(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Load nested settings with the configured env file path.

        Database settings are only required when metadata comes from the
        database.
        """
        env_file = _env_file_path
        if "planner" not in data or data["planner"] is None:
            # _env_file is a valid pydantic-settings init parameter
            data["planner"] = PlannerSettings(_env_file=env_file)  # type: ignore[call-arg]
        if "server" not in data or data["server"] is None:
            data["server"] = ServerSettings(_env_file=env_file)  # type: ignore[call-arg]
        planner = data["planner"]
        if isinstance(planner, dict):
            source = planner.get("metadata_source", "database")
        else:
            source = planner.metadata_source
        if data.get("database") is None and source == "database":
            data["database"] = DatabaseSettings(_env_file=env_file)  # type: ignore[call-arg]
        return data


def get_settings() -> Settings:
    """Factory function to create settings instance."""
    return Settings()
