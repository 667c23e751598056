"""
tenantdb: schema provisioning and drift reconciliation for tenant PostgreSQL databases.

tenantdb creates a tenant's schema from CREATE TABLE sources through a
lock-guarded, verified step pipeline and keeps existing databases in line
with those sources by adding missing columns safely.
"""

__version__ = "0.1.0"

from .config import TenantDBConfig
from .exceptions import (
    TenantDBError,
    ConfigurationError,
    DatabaseError,
    ProvisioningError,
    SyncError,
)
from .provisioning import RunOptions, SchemaOrchestrator, ProvisioningReport
from .schema import DDLParser, SchemaReconciler

__all__ = [
    "__version__",
    "TenantDBConfig",
    "TenantDBError",
    "ConfigurationError",
    "DatabaseError",
    "ProvisioningError",
    "SyncError",
    "RunOptions",
    "SchemaOrchestrator",
    "ProvisioningReport",
    "DDLParser",
    "SchemaReconciler",
]
