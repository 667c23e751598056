"""
Expected-schema data model for tenantdb.

Column definitions extracted from CREATE TABLE sources, the vocabulary of
recognized SQL types, and the ordered table map the reconciler diffs against.
"""

import re
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional


IDENTIFIER_PATTERN = re.compile(r"^[a-z_][a-z0-9_]*$")

MAX_IDENTIFIER_LENGTH = 63

RESERVED_COLUMN_NAMES = frozenset({
    "etc", "and", "or", "not", "null", "default", "unique", "primary",
    "key", "foreign", "references", "constraint", "check", "table", "from",
    "where", "select", "insert", "update", "delete", "create", "alter",
    "drop",
})

# Leading keywords of every type the parser accepts
RECOGNIZED_TYPES = frozenset({
    "UUID", "TEXT", "VARCHAR", "CHAR", "CHARACTER",
    "INTEGER", "INT", "BIGINT", "SMALLINT",
    "SERIAL", "BIGSERIAL", "SMALLSERIAL",
    "NUMERIC", "DECIMAL", "REAL", "DOUBLE", "FLOAT",
    "BOOLEAN", "BOOL",
    "DATE", "TIME", "TIMETZ", "TIMESTAMP", "TIMESTAMPTZ", "INTERVAL",
    "JSON", "JSONB", "ARRAY", "BYTEA", "INET",
})


def is_valid_identifier(name: str) -> bool:
    """Check a table or column name against the identifier allow-list."""
    return (
        bool(name)
        and len(name) <= MAX_IDENTIFIER_LENGTH
        and IDENTIFIER_PATTERN.match(name) is not None
    )


def is_valid_column_name(name: str) -> bool:
    """Check a lower-cased column name for validity and reserved words."""
    return is_valid_identifier(name) and name not in RESERVED_COLUMN_NAMES


def type_keyword(sql_type: str) -> str:
    """Return the leading keyword of a type string, e.g. ``NUMERIC`` for ``NUMERIC(10,2)``."""
    match = re.match(r"\s*([A-Za-z]+)", sql_type)
    return match.group(1).upper() if match else ""


@dataclass(frozen=True)
class ForeignKeyReference:
    """Target of a REFERENCES clause."""

    table: str
    column: str

    def __str__(self) -> str:
        return f"{self.table}({self.column})"


@dataclass
class ColumnDefinition:
    """A column as declared in a schema definition source."""

    name: str
    type: str
    nullable: bool = True
    default: Optional[str] = None
    unique: bool = False
    references: Optional[ForeignKeyReference] = None
    # The default was written as a quoted string literal
    default_is_literal: bool = False

    @property
    def requires_backfill(self) -> bool:
        """NOT NULL without a default cannot be added to a populated table directly."""
        return not self.nullable and self.default is None

    def __str__(self) -> str:
        result = f"{self.name} {self.type}"
        if not self.nullable:
            result += " NOT NULL"
        if self.default is not None:
            default = self.default
            if self.default_is_literal:
                default = "'" + default.replace("'", "''") + "'"
            result += f" DEFAULT {default}"
        if self.unique:
            result += " UNIQUE"
        if self.references:
            result += f" REFERENCES {self.references}"
        return result


class ExpectedSchema:
    """Ordered ``table -> columns`` map built from one or more sources.

    Tables keep the order in which they were first declared. Within a table,
    the first definition seen for a column name wins and later duplicates are
    ignored, whether they come from the same source or a later one.
    """

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[str, ColumnDefinition]] = {}

    def merge(self, table: str, columns: Iterable[ColumnDefinition]) -> List[str]:
        """Add columns to a table; returns the names of ignored duplicates."""
        existing = self._tables.setdefault(table, {})
        ignored = []
        for column in columns:
            if column.name in existing:
                ignored.append(column.name)
                continue
            existing[column.name] = column
        return ignored

    def tables(self) -> List[str]:
        return list(self._tables)

    def columns(self, table: str) -> List[ColumnDefinition]:
        return list(self._tables.get(table, {}).values())

    def get_column(self, table: str, column: str) -> Optional[ColumnDefinition]:
        return self._tables.get(table, {}).get(column)

    @property
    def column_count(self) -> int:
        return sum(len(cols) for cols in self._tables.values())

    def to_dict(self) -> Dict[str, List[Dict[str, object]]]:
        """Plain representation for CLI/JSON output."""
        return {
            table: [
                {
                    "name": col.name,
                    "type": col.type,
                    "nullable": col.nullable,
                    "default": col.default,
                    "unique": col.unique,
                    "references": str(col.references) if col.references else None,
                }
                for col in cols.values()
            ]
            for table, cols in self._tables.items()
        }

    def __contains__(self, table: object) -> bool:
        return table in self._tables

    def __len__(self) -> int:
        return len(self._tables)

    def __iter__(self) -> Iterator[str]:
        return iter(self._tables)

    def __bool__(self) -> bool:
        return bool(self._tables)
