"""
Exception classes for tenantdb.
"""

from typing import Any, Dict, List, Optional


class TenantDBError(Exception):
    """Base exception for all tenantdb errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        result = self.message
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            result += f" [{details_str}]"
        if self.cause:
            result += f" (caused by: {self.cause})"
        return result


class ConfigurationError(TenantDBError):
    """Raised when there's an error in configuration."""

    pass


class DatabaseError(TenantDBError):
    """Raised when there's an error with database operations."""

    pass


class DatabaseConnectionError(DatabaseError):
    """Raised when the pre-flight connection health check fails."""

    pass


class DatabaseConfigurationError(DatabaseError):
    """Raised when there's an error in database configuration."""

    pass


class SchemaError(DatabaseError):
    """Raised when there's an error with database schema operations."""

    pass


class ProvisioningError(TenantDBError):
    """Base class for fatal errors raised by a schema provisioning run."""

    pass


class StepExecutionError(ProvisioningError):
    """Raised when a pipeline step's action or verifier fails."""

    def __init__(
        self,
        ordinal: int,
        name: str,
        elapsed_ms: float,
        cause: Optional[Exception] = None,
        total_steps: Optional[int] = None,
    ) -> None:
        position = f"{ordinal}/{total_steps}" if total_steps else str(ordinal)
        message = f"Step {position} ({name}) failed after {elapsed_ms:.0f}ms"
        super().__init__(
            message,
            details={"step": ordinal, "name": name},
            cause=cause,
        )
        self.ordinal = ordinal
        self.name = name
        self.elapsed_ms = elapsed_ms


class FinalVerificationError(ProvisioningError):
    """Raised when the post-pipeline catalog check fails."""

    def __init__(self, summary: Any, problems: Optional[List[str]] = None) -> None:
        problems = problems or []
        message = "Final schema verification failed"
        if problems:
            message += ": " + "; ".join(problems)
        super().__init__(message)
        self.summary = summary
        self.problems = problems


class LockTimeoutError(ProvisioningError):
    """Raised when a peer holding the creation lock never finished in time."""

    def __init__(self, lock_key: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Schema creation timeout - waited {timeout_seconds:g}s "
            f"but schema not ready",
            details={"lock_key": lock_key},
        )
        self.lock_key = lock_key
        self.timeout_seconds = timeout_seconds


class SyncError(TenantDBError):
    """Base class for non-fatal reconciliation errors."""

    pass


class ColumnSyncError(SyncError):
    """Raised when a single missing column cannot be created."""

    def __init__(
        self,
        table: str,
        column: str,
        reason: str,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(f"Failed to create {column}: {reason}", cause=cause)
        self.table = table
        self.column = column
        self.reason = reason


class ForeignKeySyncError(SyncError):
    """Raised when a foreign key for a newly created column cannot be added."""

    def __init__(
        self,
        table: str,
        column: str,
        reason: str,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            f"Could not add FK for {table}.{column}: {reason}", cause=cause
        )
        self.table = table
        self.column = column
        self.reason = reason


class ParseWarning(UserWarning):
    """A statement or column the DDL parser could not confidently extract."""

    def __init__(self, message: str, source: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.source = source

    def __str__(self) -> str:
        if self.source:
            return f"{self.message} (in {self.source})"
        return self.message
