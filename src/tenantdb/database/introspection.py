"""
Database schema introspection for tenantdb.

Reads the live PostgreSQL catalog and reports column metadata in the same
type vocabulary the DDL parser produces, so expected and actual schemas can
be compared directly.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import asyncpg

from ..exceptions import DatabaseError, SchemaError


logger = logging.getLogger(__name__)


# udt_name -> parser vocabulary
_TYPE_MAP = {
    "uuid": "UUID",
    "text": "TEXT",
    "varchar": "VARCHAR",
    "bpchar": "CHAR",
    "char": "CHAR",
    "int2": "SMALLINT",
    "int4": "INTEGER",
    "int8": "BIGINT",
    "float4": "REAL",
    "float8": "DOUBLE PRECISION",
    "numeric": "NUMERIC",
    "bool": "BOOLEAN",
    "date": "DATE",
    "time": "TIME",
    "timetz": "TIME WITH TIME ZONE",
    "timestamp": "TIMESTAMP",
    "timestamptz": "TIMESTAMP WITH TIME ZONE",
    "interval": "INTERVAL",
    "json": "JSON",
    "jsonb": "JSONB",
    "bytea": "BYTEA",
    "inet": "INET",
}


def map_postgres_type(
    data_type: str,
    udt_name: Optional[str] = None,
    numeric_precision: Optional[int] = None,
    numeric_scale: Optional[int] = None,
    max_length: Optional[int] = None,
) -> str:
    """Translate information_schema type fields back to SQL type names."""
    udt = (udt_name or "").lower()

    if data_type == "ARRAY":
        # Array storage types are the element type prefixed with "_"
        element = udt[1:] if udt.startswith("_") else udt
        mapped = _TYPE_MAP.get(element)
        return f"{mapped}[]" if mapped else "ARRAY"

    if udt == "numeric":
        if numeric_precision is not None and numeric_scale is not None:
            return f"NUMERIC({numeric_precision},{numeric_scale})"
        if numeric_precision is not None:
            return f"NUMERIC({numeric_precision})"
        return "NUMERIC"

    if udt in ("varchar", "bpchar") and max_length:
        return f"{_TYPE_MAP[udt]}({max_length})"

    if udt in _TYPE_MAP:
        return _TYPE_MAP[udt]

    return data_type.upper()


@dataclass
class ColumnInfo:
    """Information about a live database column."""

    name: str
    type: str
    is_nullable: bool
    default: Optional[str] = None
    is_identity: bool = False

    # Raw catalog fields
    data_type: Optional[str] = None
    udt_name: Optional[str] = None
    ordinal_position: int = 0

    def __str__(self) -> str:
        result = f"{self.name} {self.type}"
        if not self.is_nullable:
            result += " NOT NULL"
        if self.default:
            result += f" DEFAULT {self.default}"
        return result


class SchemaIntrospector:
    """Catalog queries for a single schema on one connection."""

    def __init__(self, connection: asyncpg.Connection, schema: str = "public"):
        self.connection = connection
        self.schema = schema

    async def table_exists(self, table: str) -> bool:
        """Check if a base table exists."""
        query = """
            SELECT EXISTS (
                SELECT 1 FROM information_schema.tables
                WHERE table_schema = $1 AND table_name = $2
            )
        """

        try:
            result = await self.connection.fetchval(query, self.schema, table)
            return bool(result)
        except Exception as e:
            logger.error(f"Error checking table existence for {self.schema}.{table}: {e}")
            raise DatabaseError(f"Failed to check table existence: {e}") from e

    async def get_columns(self, table: str) -> Dict[str, ColumnInfo]:
        """Get all columns for a table; a missing table yields an empty dict."""
        query = """
            SELECT
                c.column_name,
                c.data_type,
                c.udt_name,
                c.character_maximum_length,
                c.numeric_precision,
                c.numeric_scale,
                c.is_nullable,
                c.column_default,
                c.is_identity,
                c.ordinal_position
            FROM information_schema.columns c
            WHERE c.table_schema = $1 AND c.table_name = $2
            ORDER BY c.ordinal_position
        """

        try:
            rows = await self.connection.fetch(query, self.schema, table)
        except Exception as e:
            logger.error(f"Error getting columns for {self.schema}.{table}: {e}")
            raise SchemaError(f"Failed to get columns: {e}") from e

        columns = {}
        for row in rows:
            col_info = ColumnInfo(
                name=row["column_name"],
                type=map_postgres_type(
                    row["data_type"],
                    row["udt_name"],
                    row["numeric_precision"],
                    row["numeric_scale"],
                    row["character_maximum_length"],
                ),
                is_nullable=row["is_nullable"] == "YES",
                default=row["column_default"],
                is_identity=row["is_identity"] == "YES",
                data_type=row["data_type"],
                udt_name=row["udt_name"],
                ordinal_position=row["ordinal_position"],
            )
            columns[col_info.name] = col_info

        return columns

    async def list_tables(self) -> List[str]:
        """List base tables in the schema."""
        query = """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = $1
            AND table_type = 'BASE TABLE'
            ORDER BY table_name
        """
        rows = await self.connection.fetch(query, self.schema)
        return [row["table_name"] for row in rows]

    async def count_tables(self) -> int:
        """Count base tables in the schema."""
        query = """
            SELECT COUNT(*)
            FROM information_schema.tables
            WHERE table_schema = $1
            AND table_type = 'BASE TABLE'
        """
        return int(await self.connection.fetchval(query, self.schema) or 0)

    async def find_tables(self, names: Iterable[str]) -> List[str]:
        """Return which of ``names`` exist as tables or views."""
        query = """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = $1
            AND table_name = ANY($2::text[])
        """
        rows = await self.connection.fetch(query, self.schema, list(names))
        return [row["table_name"] for row in rows]

    async def find_functions(self, names: Iterable[str]) -> List[str]:
        """Return which of ``names`` exist as functions in the schema."""
        query = """
            SELECT DISTINCT p.proname
            FROM pg_proc p
            JOIN pg_namespace n ON p.pronamespace = n.oid
            WHERE n.nspname = $1
            AND p.proname = ANY($2::text[])
        """
        rows = await self.connection.fetch(query, self.schema, list(names))
        return [row["proname"] for row in rows]

    async def view_exists(self, view: str) -> bool:
        """Check if a view exists."""
        query = """
            SELECT EXISTS (
                SELECT 1 FROM information_schema.views
                WHERE table_schema = $1 AND table_name = $2
            )
        """
        return bool(await self.connection.fetchval(query, self.schema, view))

    async def constraint_exists(
        self, table: str, constraint: str, constraint_type: str = "FOREIGN KEY"
    ) -> bool:
        """Check if a named table constraint exists."""
        query = """
            SELECT EXISTS (
                SELECT 1 FROM information_schema.table_constraints
                WHERE constraint_schema = $1
                AND table_name = $2
                AND constraint_name = $3
                AND constraint_type = $4
            )
        """
        return bool(
            await self.connection.fetchval(
                query, self.schema, table, constraint, constraint_type
            )
        )
