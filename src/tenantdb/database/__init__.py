"""
Database integration package for tenantdb.

This package provides:
- Single-connection lifecycle and health checks
- Live schema introspection
- Advisory lock coordination between processes
"""

from .connection import ConnectionConfig, connect, verify_connection
from .introspection import SchemaIntrospector, ColumnInfo, map_postgres_type
from .locks import AdvisoryLockCoordinator, LockHandle

__all__ = [
    "ConnectionConfig",
    "connect",
    "verify_connection",
    "SchemaIntrospector",
    "ColumnInfo",
    "map_postgres_type",
    "AdvisoryLockCoordinator",
    "LockHandle",
]
