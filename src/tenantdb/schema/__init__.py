"""
Schema management package for tenantdb.

This package provides:
- DDL parsing of CREATE TABLE sources into an expected schema
- Safe ALTER TABLE operations with NOT NULL backfill
- Column drift detection and reconciliation
- The schema version registry
"""

from .definitions import ColumnDefinition, ExpectedSchema, ForeignKeyReference
from .metadata import SchemaVersionRecord, VersionRegistry
from .operations import ChangeType, SchemaChange, SchemaOperations, safe_fallback
from .parser import DDLParser, ParsedTable
from .reconciler import SchemaReconciler, SyncResult, TableSyncResult
from .sources import SchemaSource, load_bundled_sources, load_sources

__all__ = [
    "ColumnDefinition",
    "ExpectedSchema",
    "ForeignKeyReference",
    "SchemaVersionRecord",
    "VersionRegistry",
    "ChangeType",
    "SchemaChange",
    "SchemaOperations",
    "safe_fallback",
    "DDLParser",
    "ParsedTable",
    "SchemaReconciler",
    "SyncResult",
    "TableSyncResult",
    "SchemaSource",
    "load_bundled_sources",
    "load_sources",
]
