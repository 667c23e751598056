"""
Pytest configuration and shared fixtures for tenantdb tests.

Besides plain AsyncMock connections this module provides FakePostgres, a
small in-memory stand-in for one database that understands exactly the SQL
tenantdb emits: catalog queries, advisory locks, CREATE TABLE (via the DDL
parser), ALTER TABLE ADD COLUMN / SET NOT NULL / ADD CONSTRAINT, backfill
UPDATEs and the version registry upserts.
"""

import asyncio
import copy
import re
from typing import Any, Dict, List, Optional, Set, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

from tenantdb.config import ProvisioningConfig
from tenantdb.schema.definitions import ColumnDefinition
from tenantdb.schema.parser import DDLParser
from tenantdb.schema.sources import SchemaSource


# ============================================================================
# In-memory database
# ============================================================================

ADD_COLUMN_RE = re.compile(
    r"ALTER TABLE (\w+)\.(\w+) ADD COLUMN IF NOT EXISTS (.+)$", re.S
)
SET_NOT_NULL_RE = re.compile(r"ALTER TABLE (\w+)\.(\w+) ALTER COLUMN (\w+) SET NOT NULL")
ADD_FK_RE = re.compile(
    r"ALTER TABLE (\w+)\.(\w+) ADD CONSTRAINT (\w+) FOREIGN KEY \((\w+)\) "
    r"REFERENCES (\w+)\.(\w+)\((\w+)\)"
)
BACKFILL_RE = re.compile(r"UPDATE (\w+)\.(\w+) SET (\w+) = (.+) WHERE (\w+) IS NULL")
FUNCTION_RE = re.compile(r"CREATE OR REPLACE FUNCTION (\w+)", re.I)
VIEW_RE = re.compile(r"CREATE OR REPLACE VIEW (\w+)", re.I)
TRIGGER_RE = re.compile(r"CREATE TRIGGER (\w+)\s+BEFORE UPDATE ON (\w+)\.(\w+)")


def _literal(value: Optional[str]) -> Any:
    """Rough evaluation of a SQL literal for row storage."""
    if value is None:
        return None
    value = value.strip()
    if len(value) >= 2 and value[0] == "'" and value[-1] == "'":
        return value[1:-1].replace("''", "'")
    if re.fullmatch(r"-?\d+", value):
        return int(value)
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    return value


class FakePostgres:
    """Shared state of one fake database; hand out connections with connect()."""

    def __init__(self):
        self.tables: Dict[str, Dict[str, ColumnDefinition]] = {}
        self.rows: Dict[str, List[Dict[str, Any]]] = {}
        self.views: Set[str] = set()
        self.functions: Set[str] = set()
        self.constraints: Set[Tuple[str, str]] = set()
        self.triggers: Set[Tuple[str, str]] = set()
        self.schema_info: Dict[str, Dict[str, Any]] = {}
        self.migrations: Dict[str, Dict[str, Any]] = {}
        self.locks: Dict[str, int] = {}
        self.fail_on: List[str] = []

    def connect(self) -> "FakeConnection":
        return FakeConnection(self)

    def create_table(self, ddl: str, rows: Optional[List[Dict[str, Any]]] = None) -> None:
        """Create tables from DDL text and optionally seed rows."""
        for parsed in DDLParser().parse(ddl):
            self.tables[parsed.name] = {c.name: c for c in parsed.columns}
            self.rows[parsed.name] = [dict(row) for row in rows or []]

    def snapshot(self):
        return copy.deepcopy((self.tables, self.rows, self.constraints))

    def restore(self, state) -> None:
        self.tables, self.rows, self.constraints = state


class _FakeTransaction:
    def __init__(self, connection: "FakeConnection"):
        self.connection = connection
        self._state = None

    async def __aenter__(self):
        self._state = self.connection.server.snapshot()
        self.connection.transactions += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.connection.server.restore(self._state)
            self.connection.rollbacks += 1
        return False


class FakeConnection:
    """asyncpg.Connection look-alike backed by a FakePostgres."""

    def __init__(self, server: FakePostgres):
        self.server = server
        self.executed: List[str] = []
        self.transactions = 0
        self.rollbacks = 0
        self.closed = False

    def transaction(self) -> _FakeTransaction:
        return _FakeTransaction(self)

    async def close(self) -> None:
        self.closed = True
        for key, holder in list(self.server.locks.items()):
            if holder == id(self):
                del self.server.locks[key]

    # -- catalog ---------------------------------------------------------

    def _relation_exists(self, name: str) -> bool:
        return name in self.server.tables or name in self.server.views

    def _column_rows(self, table: str) -> List[Dict[str, Any]]:
        rows = []
        for position, column in enumerate(self.server.tables.get(table, {}).values(), 1):
            rows.append({
                "column_name": column.name,
                "data_type": column.type.lower(),
                "udt_name": "",
                "character_maximum_length": None,
                "numeric_precision": None,
                "numeric_scale": None,
                "is_nullable": "YES" if column.nullable else "NO",
                "column_default": column.default,
                "is_identity": "NO",
                "ordinal_position": position,
            })
        return rows

    async def fetchval(self, sql: str, *args):
        await asyncio.sleep(0)
        server = self.server

        if "pg_try_advisory_lock" in sql:
            holder = server.locks.get(args[0])
            if holder is None or holder == id(self):
                server.locks[args[0]] = id(self)
                return True
            return False
        if "pg_advisory_unlock" in sql:
            if server.locks.get(args[0]) == id(self):
                del server.locks[args[0]]
                return True
            return False
        if sql.strip() == "SELECT 1":
            return 1
        if "information_schema.views" in sql:
            return args[1] in server.views
        if "information_schema.table_constraints" in sql:
            return (args[1], args[2]) in server.constraints
        if "COUNT(*)" in sql:
            return len(server.tables)
        if "information_schema.tables" in sql:
            return self._relation_exists(args[1])
        raise AssertionError(f"Unexpected fetchval: {sql}")

    async def fetch(self, sql: str, *args):
        await asyncio.sleep(0)
        server = self.server

        if "information_schema.columns" in sql:
            return self._column_rows(args[1])
        if "pg_proc" in sql:
            return [{"proname": name} for name in args[1] if name in server.functions]
        if "ANY($2::text[])" in sql:
            return [{"table_name": name} for name in args[1] if self._relation_exists(name)]
        if "BASE TABLE" in sql:
            return [{"table_name": name} for name in sorted(server.tables)]
        if "schema_migrations" in sql:
            return list(server.migrations.values())
        raise AssertionError(f"Unexpected fetch: {sql}")

    async def fetchrow(self, sql: str, *args):
        await asyncio.sleep(0)
        if "schema_info" in sql:
            return self.server.schema_info.get(args[0])
        raise AssertionError(f"Unexpected fetchrow: {sql}")

    # -- statements ------------------------------------------------------

    async def execute(self, sql: str, *args):
        await asyncio.sleep(0)
        server = self.server
        self.executed.append(sql)

        for marker in server.fail_on:
            if marker in sql:
                raise RuntimeError(f"forced failure on {marker}")

        statement = sql.strip()

        if statement.startswith("INSERT INTO") and "schema_info" in statement:
            server.schema_info[args[0]] = {
                "value": args[1], "metadata": args[2], "updated_at": None,
            }
            return "INSERT 0 1"
        if statement.startswith("INSERT INTO") and "schema_migrations" in statement:
            self._upsert_migration(statement, args)
            return "INSERT 0 1"

        match = ADD_COLUMN_RE.match(statement)
        if match:
            self._add_column(match.group(2), match.group(3))
            return "ALTER TABLE"

        match = BACKFILL_RE.match(statement)
        if match:
            table, column, value = match.group(2), match.group(3), match.group(4)
            for row in server.rows.get(table, []):
                if row.get(column) is None:
                    row[column] = _literal(value)
            return "UPDATE"

        match = SET_NOT_NULL_RE.match(statement)
        if match:
            table, column = match.group(2), match.group(3)
            if any(row.get(column) is None for row in server.rows.get(table, [])):
                raise RuntimeError(f'column "{column}" of relation "{table}" contains null values')
            server.tables[table][column].nullable = False
            return "ALTER TABLE"

        match = ADD_FK_RE.match(statement)
        if match:
            table, constraint, ref_table = match.group(2), match.group(3), match.group(6)
            if ref_table not in server.tables:
                raise RuntimeError(f'relation "{ref_table}" does not exist')
            if (table, constraint) in server.constraints:
                raise RuntimeError(f'constraint "{constraint}" already exists')
            server.constraints.add((table, constraint))
            return "ALTER TABLE"

        if "CREATE TABLE" in statement.upper():
            for parsed in DDLParser().parse(statement):
                if parsed.name not in server.tables:
                    server.tables[parsed.name] = {c.name: c for c in parsed.columns}
                    server.rows[parsed.name] = []
        server.functions.update(FUNCTION_RE.findall(statement))
        server.views.update(VIEW_RE.findall(statement))
        for trigger, _schema, table in TRIGGER_RE.findall(statement):
            server.triggers.add((table, trigger))
        return "OK"

    def _add_column(self, table: str, definition: str) -> None:
        if table not in self.server.tables:
            raise RuntimeError(f'relation "{table}" does not exist')

        column = DDLParser().parse_column(definition)
        columns = self.server.tables[table]
        if column.name in columns:
            return

        rows = self.server.rows.get(table, [])
        if not column.nullable and column.default is None and rows:
            raise RuntimeError(f'column "{column.name}" of relation "{table}" contains null values')

        columns[column.name] = column
        for row in rows:
            row[column.name] = _literal(column.default) if column.default is not None else None

    def _upsert_migration(self, statement: str, args) -> None:
        migrations = self.server.migrations
        version = args[0]

        if "checksum" in statement:
            migrations[version] = {
                "version": version,
                "description": args[1],
                "checksum": args[2],
                "success": True,
                "error_message": None,
            }
        elif "error_message" in statement:
            entry = migrations.setdefault(version, {"version": version, "description": None})
            entry.update({"success": False, "error_message": args[1]})
        else:
            migrations.setdefault(
                version,
                {"version": version, "description": args[1], "success": True,
                 "error_message": None, "checksum": None},
            )


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def fake_db() -> FakePostgres:
    """Empty in-memory database."""
    return FakePostgres()


@pytest.fixture
def fake_conn(fake_db) -> FakeConnection:
    """Connection to the fake_db fixture."""
    return fake_db.connect()


@pytest.fixture
def mock_database_connection():
    """Mock database connection for testing."""
    conn = AsyncMock()
    conn.execute = AsyncMock()
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock()

    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=transaction)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=transaction)
    return conn


@pytest.fixture
def fast_settings() -> ProvisioningConfig:
    """Provisioning settings with short lock timings."""
    return ProvisioningConfig(
        lock_timeout_seconds=2.0,
        lock_poll_interval_seconds=0.001,
        lock_progress_interval_seconds=0.5,
    )


@pytest.fixture
def users_profiles_sources() -> List[SchemaSource]:
    """Two sources declaring users and profiles."""
    return [
        SchemaSource(
            "users.sql",
            "CREATE TABLE IF NOT EXISTS users ("
            "id uuid primary key, email text not null, "
            "created_at timestamp default now());",
        ),
        SchemaSource(
            "profiles.sql",
            "CREATE TABLE IF NOT EXISTS profiles ("
            "id uuid primary key, user_id uuid references users(id), bio text);",
        ),
    ]
