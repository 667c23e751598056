"""
Configuration system for tenantdb using Pydantic.
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Any, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, ConfigDict
from pydantic_settings import BaseSettings

from .database.connection import ConnectionConfig
from .exceptions import ConfigurationError
from .schema.definitions import is_valid_identifier
from .schema.metadata import VERSION_MAX_LENGTH


class ProvisioningConfig(BaseModel):
    """Schema provisioning run constants."""

    lock_key: str = Field(
        "agency_schema_creation", description="Advisory lock resource name"
    )
    lock_timeout_seconds: float = Field(
        30.0, gt=0, description="How long to wait on a peer holding the lock"
    )
    lock_poll_interval_seconds: float = Field(
        1.0, gt=0, description="Interval between readiness checks while waiting"
    )
    lock_progress_interval_seconds: float = Field(
        5.0, gt=0, description="Interval between progress log lines while waiting"
    )
    min_table_count: int = Field(
        20, ge=0, description="Minimum base tables expected after provisioning"
    )
    critical_tables: List[str] = Field(
        default_factory=lambda: ["users", "profiles", "attendance", "clients", "invoices"],
        description="Tables that must exist for the schema to be usable",
    )
    critical_functions: List[str] = Field(
        default_factory=lambda: [
            "update_updated_at_column",
            "log_audit_change",
            "current_user_id",
        ],
        description="Functions that must exist for the schema to be usable",
    )
    compatibility_view: str = Field(
        "unified_employees", description="View that must exist after provisioning"
    )
    schema_version: str = Field(
        "1.0.0",
        min_length=1,
        max_length=VERSION_MAX_LENGTH,
        description="Version recorded on success",
    )
    schema_name: str = Field("public", description="Target database schema")
    statement_timeout_seconds: Optional[int] = Field(
        None, gt=0, description="Server-side statement timeout for the run"
    )

    @field_validator("lock_key", "schema_name", "compatibility_view")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        if not is_valid_identifier(v):
            raise ValueError(f"'{v}' is not a plain lower-case identifier")
        return v

    @field_validator("critical_tables", "critical_functions")
    @classmethod
    def validate_identifiers(cls, v: List[str]) -> List[str]:
        invalid = [name for name in v if not is_valid_identifier(name)]
        if invalid:
            raise ValueError(f"Invalid identifiers: {', '.join(invalid)}")
        return v


class SourcesConfig(BaseModel):
    """Where schema definitions come from."""

    paths: List[str] = Field(
        default_factory=list,
        description="SQL files or directories; empty uses the bundled schema",
    )
    functions_sql: Optional[str] = Field(
        None, description="Override for the shared functions SQL file"
    )
    views_sql: Optional[str] = Field(
        None, description="Override for the compatibility view SQL file"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        "INFO", description="Log level"
    )
    format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format",
    )
    file: Optional[str] = Field(None, description="Log file path")
    max_size: int = Field(10485760, description="Max log file size in bytes")  # 10MB
    backup_count: int = Field(5, description="Number of backup log files")


def setup_logging(config: LoggingConfig, debug: bool = False) -> None:
    """Configure the root logger from a LoggingConfig."""
    level = logging.DEBUG if debug else getattr(logging, config.level)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    formatter = logging.Formatter(config.format)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            config.file,
            maxBytes=config.max_size,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # asyncpg is chatty at DEBUG
    logging.getLogger("asyncpg").setLevel(max(level, logging.INFO))


class TenantDBConfig(BaseSettings):
    """Main tenantdb configuration."""

    service_name: str = Field("tenantdb", description="Service name")
    debug: bool = Field(False, description="Enable debug mode")

    database_url: Optional[str] = Field(
        None, description="PostgreSQL URL; takes precedence over 'database'"
    )
    database: Optional[ConnectionConfig] = Field(
        None, description="Database connection details"
    )
    provisioning: ProvisioningConfig = Field(
        default_factory=ProvisioningConfig, description="Provisioning settings"
    )
    sources: SourcesConfig = Field(
        default_factory=SourcesConfig, description="Schema definition sources"
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    model_config = ConfigDict(
        env_file=".env",
        env_prefix="TENANTDB_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "TenantDBConfig":
        """Load configuration from a YAML file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

            # Expand environment variables in the data
            data = cls._expand_env_vars(data)

            return cls(**data)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in configuration file: {e}")
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    @classmethod
    def _expand_env_vars(cls, data: Any) -> Any:
        """Recursively expand environment variables in configuration data."""
        if isinstance(data, dict):
            return {k: cls._expand_env_vars(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [cls._expand_env_vars(item) for item in data]
        elif isinstance(data, str):
            return os.path.expandvars(data)
        else:
            return data

    def connection_config(self, dsn: Optional[str] = None) -> ConnectionConfig:
        """Resolve connection settings; ``dsn`` overrides the file."""
        url = dsn or self.database_url
        if url:
            connection = ConnectionConfig.from_url(url)
        elif self.database is not None:
            connection = self.database.model_copy()
        else:
            raise ConfigurationError(
                "No database configured: set database_url, a database section, "
                "or pass --dsn"
            )

        if (
            connection.statement_timeout_seconds is None
            and self.provisioning.statement_timeout_seconds is not None
        ):
            connection.statement_timeout_seconds = self.provisioning.statement_timeout_seconds
        return connection

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save configuration to a YAML file."""
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(
                self.model_dump(exclude_none=True),
                f,
                default_flow_style=False,
                indent=2,
                sort_keys=False,
            )
