"""
Schema reconciliation core logic for tenantdb.

Diffs the expected schema parsed from the definition sources against the
live database and adds whatever columns are missing. Tables are processed
independently: a failure on one column or table is recorded and the pass
moves on, so a partial run can always be repeated safely.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import asyncpg

from ..database.introspection import SchemaIntrospector
from ..exceptions import SyncError
from .definitions import ColumnDefinition, ExpectedSchema
from .operations import SchemaOperations
from .parser import DDLParser
from .sources import SchemaSource


logger = logging.getLogger(__name__)


@dataclass
class TableSyncResult:
    """Outcome of reconciling a single table."""

    table: str
    created: List[str] = field(default_factory=list)
    foreign_keys: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class SyncResult:
    """Result of a reconciliation pass over every expected table."""

    tables_processed: int = 0
    columns_created: int = 0
    errors: List[str] = field(default_factory=list)
    details: List[TableSyncResult] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SchemaReconciler:
    """Adds columns that the expected schema declares but the database lacks."""

    def __init__(
        self,
        connection: asyncpg.Connection,
        schema: str = "public",
        logger: Optional[logging.Logger] = None,
    ):
        self.connection = connection
        self.schema = schema
        self.logger = logger or logging.getLogger(__name__)
        self.introspector = SchemaIntrospector(connection, schema)
        self.operations = SchemaOperations(connection, schema)

    async def missing_columns(
        self, table: str, expected_columns: Iterable[ColumnDefinition]
    ) -> List[ColumnDefinition]:
        """Expected columns whose names are absent from the live table."""
        actual = await self.introspector.get_columns(table)
        return [column for column in expected_columns if column.name not in actual]

    async def detect_drift(self, expected: ExpectedSchema) -> Dict[str, List[ColumnDefinition]]:
        """Report missing columns per existing table without changing anything."""
        live_tables = set(await self.introspector.list_tables())
        drift = {}

        for table in expected:
            if table not in live_tables:
                continue
            missing = await self.missing_columns(table, expected.columns(table))
            if missing:
                drift[table] = missing

        return drift

    async def sync_table(
        self, table: str, expected_columns: Iterable[ColumnDefinition]
    ) -> TableSyncResult:
        """Create the missing columns of one table, then their foreign keys."""
        result = TableSyncResult(table=table)

        if not await self.introspector.table_exists(table):
            self.logger.debug(f"Skipping {table}: table does not exist")
            return result

        missing = await self.missing_columns(table, expected_columns)
        if not missing:
            return result

        self.logger.info(
            f"{table}: {len(missing)} missing columns "
            f"({', '.join(c.name for c in missing)})"
        )

        for column in missing:
            try:
                await self.operations.add_column(table, column)
            except SyncError as e:
                self.logger.warning(f"{table}: {e}")
                result.errors.append(str(e))
                continue

            result.created.append(column.name)
            self.logger.info(f"{table}: created column {column}")

            if column.references is None:
                continue
            try:
                change = await self.operations.add_foreign_key(table, column)
            except SyncError as e:
                self.logger.warning(str(e))
                result.errors.append(str(e))
                continue
            if change is not None:
                result.foreign_keys.append(change.target_object)

        return result

    async def sync_all(self, expected: ExpectedSchema) -> SyncResult:
        """Reconcile every table that exists both in ``expected`` and the database."""
        start_time = time.perf_counter()
        result = SyncResult()

        live_tables = set(await self.introspector.list_tables())

        for table in expected:
            if table not in live_tables:
                continue

            try:
                table_result = await self.sync_table(table, expected.columns(table))
            except Exception as e:
                self.logger.error(f"Failed to sync {table}: {e}")
                table_result = TableSyncResult(table=table, errors=[str(e)])

            result.tables_processed += 1
            result.columns_created += len(table_result.created)
            result.errors.extend(f"{table}: {error}" for error in table_result.errors)
            result.details.append(table_result)

        result.duration_ms = (time.perf_counter() - start_time) * 1000
        self.logger.info(
            f"Schema sync: {result.tables_processed} tables processed, "
            f"{result.columns_created} columns created, {len(result.errors)} errors "
            f"in {result.duration_ms:.0f}ms"
        )
        return result

    async def quick_sync(
        self, sources: Iterable[SchemaSource], parser: Optional[DDLParser] = None
    ) -> SyncResult:
        """Parse ``sources`` and reconcile in one call."""
        parser = parser or DDLParser()
        expected = parser.build_expected_schema(sources)
        if not expected:
            return SyncResult(errors=["No expected schema found"])
        return await self.sync_all(expected)
