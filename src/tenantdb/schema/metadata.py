"""
Version registry for tenantdb.

Two small tables record provisioning runs: ``schema_migrations`` is a ledger
with one row per schema version (checksum, outcome, error) and
``schema_info`` is a key/value store holding the current ``schema_version``
with a JSON metadata blob.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

from ..database.introspection import SchemaIntrospector
from ..exceptions import SchemaError


logger = logging.getLogger(__name__)

MIGRATIONS_TABLE = "schema_migrations"
INFO_TABLE = "schema_info"
VERSION_KEY = "schema_version"

# Width of schema_migrations.version
VERSION_MAX_LENGTH = 20


@dataclass
class SchemaVersionRecord:
    """The current schema version as stored in ``schema_info``."""

    version: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None


def _decode_json(value: Any) -> Dict[str, Any]:
    # asyncpg returns json/jsonb as text unless a codec is registered
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


class VersionRegistry:
    """Reads and writes the schema version tables."""

    def __init__(self, connection: asyncpg.Connection, schema: str = "public"):
        self.connection = connection
        self.schema = schema
        self.introspector = SchemaIntrospector(connection, schema)

    @property
    def migrations_table(self) -> str:
        return f"{self.schema}.{MIGRATIONS_TABLE}"

    @property
    def info_table(self) -> str:
        return f"{self.schema}.{INFO_TABLE}"

    def _get_ddl(self) -> str:
        """Get DDL for both registry tables."""
        return f"""
        CREATE TABLE IF NOT EXISTS {self.migrations_table} (
            version VARCHAR({VERSION_MAX_LENGTH}) PRIMARY KEY,
            description TEXT,
            applied_at TIMESTAMP DEFAULT NOW(),
            checksum VARCHAR(64),
            success BOOLEAN DEFAULT true,
            error_message TEXT
        );

        CREATE TABLE IF NOT EXISTS {self.info_table} (
            key VARCHAR(50) PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TIMESTAMP DEFAULT NOW(),
            metadata JSONB DEFAULT '{{}}'::jsonb
        );
        """

    async def ensure_tables(self) -> None:
        """Create the registry tables if they don't exist."""
        try:
            await self.connection.execute(self._get_ddl())
        except Exception as e:
            logger.error(f"Error creating version registry tables: {e}")
            raise SchemaError(f"Failed to create version registry tables: {e}") from e

    async def initialize(self, version: str, description: str = "Initial schema") -> None:
        """Create the tables and seed the ledger row for ``version``."""
        await self.ensure_tables()
        await self.connection.execute(
            f"""
            INSERT INTO {self.migrations_table} (version, description)
            VALUES ($1, $2)
            ON CONFLICT (version) DO NOTHING
            """,
            version,
            description,
        )
        logger.debug(f"Version registry initialized for {version}")

    async def exists(self) -> bool:
        found = await self.introspector.find_tables([MIGRATIONS_TABLE, INFO_TABLE])
        return len(set(found)) == 2

    async def verify(self) -> None:
        """Raise if either registry table is missing."""
        found = set(await self.introspector.find_tables([MIGRATIONS_TABLE, INFO_TABLE]))
        missing = [t for t in (MIGRATIONS_TABLE, INFO_TABLE) if t not in found]
        if missing:
            raise SchemaError(f"Version registry tables missing: {', '.join(missing)}")

    async def record_version(
        self,
        version: str,
        metadata: Optional[Dict[str, Any]] = None,
        checksum: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        """Upsert the current version and mark its ledger row successful."""
        metadata_json = json.dumps(metadata or {}, default=str)

        try:
            async with self.connection.transaction():
                await self.connection.execute(
                    f"""
                    INSERT INTO {self.info_table} (key, value, metadata, updated_at)
                    VALUES ($1, $2, $3::jsonb, NOW())
                    ON CONFLICT (key) DO UPDATE SET
                        value = EXCLUDED.value,
                        metadata = EXCLUDED.metadata,
                        updated_at = NOW()
                    """,
                    VERSION_KEY,
                    version,
                    metadata_json,
                )
                await self.connection.execute(
                    f"""
                    INSERT INTO {self.migrations_table}
                        (version, description, checksum, success, error_message)
                    VALUES ($1, $2, $3, true, NULL)
                    ON CONFLICT (version) DO UPDATE SET
                        description = COALESCE(EXCLUDED.description, {MIGRATIONS_TABLE}.description),
                        checksum = EXCLUDED.checksum,
                        applied_at = NOW(),
                        success = true,
                        error_message = NULL
                    """,
                    version,
                    description,
                    checksum,
                )
        except Exception as e:
            logger.error(f"Error recording schema version {version}: {e}")
            raise SchemaError(f"Failed to record schema version: {e}") from e

        logger.info(f"Recorded schema version {version}")

    async def record_failure(self, version: str, error: str) -> bool:
        """Mark the ledger row for ``version`` failed. Never raises."""
        try:
            if not await self.exists():
                return False
            await self.connection.execute(
                f"""
                INSERT INTO {self.migrations_table} (version, success, error_message)
                VALUES ($1, false, $2)
                ON CONFLICT (version) DO UPDATE SET
                    applied_at = NOW(),
                    success = false,
                    error_message = EXCLUDED.error_message
                """,
                version,
                error,
            )
            return True
        except Exception as e:
            logger.error(f"Could not record failure for schema version {version}: {e}")
            return False

    async def get_version(self) -> Optional[SchemaVersionRecord]:
        """Current version, or None if the registry is empty or absent."""
        if not await self.exists():
            return None

        row = await self.connection.fetchrow(
            f"SELECT value, metadata, updated_at FROM {self.info_table} WHERE key = $1",
            VERSION_KEY,
        )
        if row is None:
            return None

        return SchemaVersionRecord(
            version=row["value"],
            metadata=_decode_json(row["metadata"]),
            updated_at=row["updated_at"],
        )

    async def get_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent ledger rows first."""
        if not await self.exists():
            return []

        rows = await self.connection.fetch(
            f"""
            SELECT version, description, applied_at, checksum, success, error_message
            FROM {self.migrations_table}
            ORDER BY applied_at DESC
            LIMIT $1
            """,
            limit,
        )
        return [dict(row) for row in rows]
