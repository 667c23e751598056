"""
Safe schema operations for tenantdb.

Plans and executes the ALTER statements that bring a live table up to its
expected column set: plain ADD COLUMN, the nullable-add/backfill/SET NOT NULL
sequence for NOT NULL columns without a default, and foreign keys for newly
created columns. Every change runs inside its own transaction.
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum

import asyncpg

from ..database.introspection import SchemaIntrospector
from ..exceptions import ColumnSyncError, ForeignKeySyncError, SchemaError
from .definitions import (
    ColumnDefinition,
    MAX_IDENTIFIER_LENGTH,
    is_valid_identifier,
    type_keyword,
)


logger = logging.getLogger(__name__)


TEXT_TYPES = {"TEXT", "VARCHAR", "CHAR", "CHARACTER"}
NUMERIC_TYPES = {
    "INTEGER", "INT", "BIGINT", "SMALLINT", "SERIAL", "BIGSERIAL",
    "SMALLSERIAL", "NUMERIC", "DECIMAL", "REAL", "DOUBLE", "FLOAT",
}
BOOLEAN_TYPES = {"BOOLEAN", "BOOL"}
TEMPORAL_TYPES = {"DATE", "TIME", "TIMETZ", "TIMESTAMP", "TIMESTAMPTZ"}
JSON_TYPES = {"JSON", "JSONB"}

SQL_KEYWORD_DEFAULTS = {
    "CURRENT_DATE", "CURRENT_TIME", "CURRENT_TIMESTAMP", "LOCALTIME",
    "LOCALTIMESTAMP", "CURRENT_USER", "SESSION_USER",
}

FUNCTION_CALL_PATTERN = re.compile(r"[A-Za-z_][\w.]*\(.*\)", re.S)
NUMBER_PATTERN = re.compile(r"[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?")


class ChangeType(str, Enum):
    """Types of schema changes."""

    ADD_COLUMN = "add_column"
    BACKFILL_COLUMN = "backfill_column"
    ADD_FOREIGN_KEY = "add_foreign_key"


@dataclass
class SchemaChange:
    """Represents a schema change operation."""

    change_type: ChangeType
    schema: str
    table: str
    description: str
    target_object: Optional[str] = None  # Column or constraint name
    sql_commands: List[str] = None

    # Execution results
    executed: bool = False
    execution_time_ms: Optional[float] = None
    error: Optional[str] = None

    def __post_init__(self):
        if self.sql_commands is None:
            self.sql_commands = []

    @property
    def full_table_name(self) -> str:
        """Get fully qualified table name."""
        return f"{self.schema}.{self.table}"

    @property
    def has_error(self) -> bool:
        return self.error is not None

    @property
    def change_id(self) -> str:
        """Get unique identifier for this change."""
        target = self.target_object or "unknown"
        return f"{self.change_type.value}_{self.schema}_{self.table}_{target}"


def safe_fallback(sql_type: str) -> Optional[str]:
    """Backfill value for existing rows when a NOT NULL column has no default.

    Returns None when no safe value is known for the type.
    """
    keyword = type_keyword(sql_type)

    if sql_type.rstrip().endswith("[]") or keyword == "ARRAY":
        return "'{}'"
    if keyword in TEXT_TYPES:
        return "''"
    if keyword in NUMERIC_TYPES:
        return "0"
    if keyword in BOOLEAN_TYPES:
        return "false"
    if keyword == "UUID":
        return "gen_random_uuid()"
    if keyword in TEMPORAL_TYPES:
        return "NOW()"
    if keyword in JSON_TYPES:
        return "'{}'"
    return None


def format_default(value: Optional[str], literal: bool = False) -> Optional[str]:
    """Render a normalized default as SQL, quoting plain string values.

    ``literal`` marks a value that was a quoted string in the source; it is
    always quoted, even when it looks like a function call or a number.
    """
    if value is None:
        return None

    if literal:
        return "'" + value.replace("'", "''") + "'"

    stripped = value.strip()
    upper = stripped.upper()

    if stripped and (
        upper in ("TRUE", "FALSE", "NULL")
        or upper in SQL_KEYWORD_DEFAULTS
        or NUMBER_PATTERN.fullmatch(stripped)
        or FUNCTION_CALL_PATTERN.fullmatch(stripped)
        or "::" in stripped
        or upper.startswith("ARRAY[")
        or (len(stripped) >= 2 and stripped[0] == "'" and stripped[-1] == "'")
    ):
        return upper if upper in ("TRUE", "FALSE", "NULL") else stripped

    return "'" + value.replace("'", "''") + "'"


def _require_identifier(*names: str) -> None:
    for name in names:
        if not is_valid_identifier(name):
            raise SchemaError(f"Invalid identifier: {name!r}")


def foreign_key_name(table: str, column: str) -> str:
    """Constraint name PostgreSQL would generate, truncated the same way."""
    return f"{table}_{column}_fkey"[:MAX_IDENTIFIER_LENGTH]


def plan_add_column(schema: str, table: str, column: ColumnDefinition) -> SchemaChange:
    """Build the SQL needed to add ``column`` to an existing, possibly populated table."""
    try:
        _require_identifier(schema, table, column.name)
    except SchemaError as e:
        raise ColumnSyncError(table, column.name, str(e)) from e

    qualified = f"{schema}.{table}"

    if column.requires_backfill:
        fallback = safe_fallback(column.type)
        if fallback is None:
            raise ColumnSyncError(
                table, column.name, f"no safe fallback value for type {column.type}"
            )

        return SchemaChange(
            change_type=ChangeType.BACKFILL_COLUMN,
            schema=schema,
            table=table,
            description=f"Add NOT NULL column {column.name} with backfill {fallback}",
            target_object=column.name,
            sql_commands=[
                f"ALTER TABLE {qualified} ADD COLUMN IF NOT EXISTS {column.name} {column.type}",
                f"UPDATE {qualified} SET {column.name} = {fallback} WHERE {column.name} IS NULL",
                f"ALTER TABLE {qualified} ALTER COLUMN {column.name} SET NOT NULL",
            ],
        )

    definition = f"{column.name} {column.type}"
    if not column.nullable:
        definition += " NOT NULL"
    if column.default is not None:
        definition += f" DEFAULT {format_default(column.default, column.default_is_literal)}"

    return SchemaChange(
        change_type=ChangeType.ADD_COLUMN,
        schema=schema,
        table=table,
        description=f"Add column {column.name}",
        target_object=column.name,
        sql_commands=[f"ALTER TABLE {qualified} ADD COLUMN IF NOT EXISTS {definition}"],
    )


def plan_foreign_key(schema: str, table: str, column: ColumnDefinition) -> SchemaChange:
    """Build the ADD CONSTRAINT statement for a column's REFERENCES clause."""
    reference = column.references
    if reference is None:
        raise SchemaError(f"Column {table}.{column.name} has no reference")

    _require_identifier(schema, table, column.name, reference.table, reference.column)
    constraint = foreign_key_name(table, column.name)

    return SchemaChange(
        change_type=ChangeType.ADD_FOREIGN_KEY,
        schema=schema,
        table=table,
        description=f"Add foreign key {constraint} -> {reference}",
        target_object=constraint,
        sql_commands=[
            f"ALTER TABLE {schema}.{table} ADD CONSTRAINT {constraint} "
            f"FOREIGN KEY ({column.name}) "
            f"REFERENCES {schema}.{reference.table}({reference.column})"
        ],
    )


class SchemaOperations:
    """Executes planned schema changes on a single connection."""

    def __init__(self, connection: asyncpg.Connection, schema: str = "public"):
        self.connection = connection
        self.schema = schema
        self.introspector = SchemaIntrospector(connection, schema)

    async def execute(self, change: SchemaChange) -> SchemaChange:
        """Run all of a change's commands atomically."""
        start_time = time.perf_counter()

        try:
            async with self.connection.transaction():
                for sql_command in change.sql_commands:
                    await self.connection.execute(sql_command)
            change.executed = True
            logger.debug(f"Executed {change.change_id}")
        except Exception as e:
            change.executed = False
            change.error = str(e)
            logger.error(f"Failed to execute {change.change_id}: {e}")
            raise
        finally:
            change.execution_time_ms = (time.perf_counter() - start_time) * 1000

        return change

    async def add_column(self, table: str, column: ColumnDefinition) -> SchemaChange:
        """Add a missing column, backfilling first when it is NOT NULL without default."""
        change = plan_add_column(self.schema, table, column)
        try:
            return await self.execute(change)
        except Exception as e:
            raise ColumnSyncError(table, column.name, str(e)) from e

    async def add_foreign_key(
        self, table: str, column: ColumnDefinition
    ) -> Optional[SchemaChange]:
        """Add the FK for a column; returns None when it already exists."""
        if column.references is None:
            return None

        reference = column.references
        constraint = foreign_key_name(table, column.name)

        try:
            if await self.introspector.constraint_exists(table, constraint):
                logger.debug(f"Foreign key {constraint} already exists")
                return None

            if not await self.introspector.table_exists(reference.table):
                raise ForeignKeySyncError(
                    table,
                    column.name,
                    f"referenced table {reference.table} does not exist",
                )

            change = plan_foreign_key(self.schema, table, column)
            return await self.execute(change)
        except ForeignKeySyncError:
            raise
        except Exception as e:
            raise ForeignKeySyncError(table, column.name, str(e)) from e

