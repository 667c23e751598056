"""
Database connection management for tenantdb.

A provisioning run owns exactly one PostgreSQL connection: steps run strictly
in order on it and the advisory lock is scoped to its session.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import parse_qs, urlparse

import asyncpg
from pydantic import BaseModel, Field, field_validator

from ..exceptions import DatabaseConfigurationError, DatabaseConnectionError


logger = logging.getLogger(__name__)


class ConnectionConfig(BaseModel):
    """Database connection configuration."""

    host: str = Field("localhost", description="Database host")
    port: int = Field(5432, description="Database port")
    database: str = Field(..., description="Database name")
    user: str = Field("postgres", description="Database user")
    password: str = Field("", description="Database password")

    # Connection settings
    connect_timeout: float = Field(30.0, description="Connect timeout in seconds")
    command_timeout: Optional[float] = Field(
        None, description="Client-side command timeout in seconds"
    )
    statement_timeout_seconds: Optional[int] = Field(
        None, description="Server-side statement_timeout applied to the session"
    )
    server_settings: Dict[str, str] = Field(
        default_factory=lambda: {"application_name": "tenantdb"},
        description="PostgreSQL server settings",
    )

    # SSL settings
    ssl_mode: Optional[str] = Field(None, description="SSL mode")

    @field_validator("database")
    @classmethod
    def validate_database(cls, v):
        if not v or not v.strip():
            raise ValueError("Database name is required")
        return v

    @classmethod
    def from_url(cls, url: str) -> "ConnectionConfig":
        """Create configuration from database URL."""
        parsed = urlparse(url)

        if parsed.scheme not in ("postgresql", "postgres"):
            raise DatabaseConfigurationError(f"Invalid database URL scheme: {parsed.scheme}")

        if not parsed.path or parsed.path == "/":
            raise DatabaseConfigurationError("Database name is required")

        query_params = parse_qs(parsed.query) if parsed.query else {}

        config_data = {
            "host": parsed.hostname or "localhost",
            "port": parsed.port or 5432,
            "database": parsed.path.lstrip("/"),
            "user": parsed.username or "postgres",
            "password": parsed.password or "",
        }

        if "sslmode" in query_params:
            config_data["ssl_mode"] = query_params["sslmode"][0]

        return cls(**config_data)

    def to_connection_kwargs(self) -> Dict[str, Any]:
        """Convert to asyncpg connection kwargs."""
        kwargs = {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.user,
            "password": self.password,
            "timeout": self.connect_timeout,
            "command_timeout": self.command_timeout,
            "server_settings": self.server_settings,
        }

        if self.ssl_mode:
            kwargs["ssl"] = self.ssl_mode

        return kwargs

    @property
    def display_name(self) -> str:
        """Host/database label without credentials, for logs."""
        return f"{self.host}:{self.port}/{self.database}"


async def apply_statement_timeout(
    connection: asyncpg.Connection, seconds: Optional[int]
) -> None:
    """Set the session statement_timeout; ``None`` keeps the server default."""
    if seconds is None:
        return
    # SET does not accept bind parameters; set_config does.
    await connection.execute(
        "SELECT set_config('statement_timeout', $1, false)", f"{int(seconds)}s"
    )


async def verify_connection(connection: asyncpg.Connection) -> None:
    """Pre-flight health check for a run connection."""
    try:
        await connection.fetchval("SELECT 1")
    except Exception as e:
        logger.error(f"Database connection unhealthy: {e}")
        raise DatabaseConnectionError(
            f"Database connection unhealthy: {e}", cause=e
        ) from e


@asynccontextmanager
async def connect(config: ConnectionConfig) -> AsyncIterator[asyncpg.Connection]:
    """Open a single connection for one provisioning run and close it after."""
    logger.info(f"Connecting to {config.display_name}")
    try:
        connection = await asyncpg.connect(**config.to_connection_kwargs())
    except Exception as e:
        logger.error(f"Failed to connect to {config.display_name}: {e}")
        raise DatabaseConnectionError(
            f"Failed to connect to {config.display_name}: {e}", cause=e
        ) from e

    try:
        await apply_statement_timeout(connection, config.statement_timeout_seconds)
        yield connection
    finally:
        await connection.close()
        logger.debug(f"Closed connection to {config.display_name}")
