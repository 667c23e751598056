"""
Provisioning pipeline steps for tenantdb.

A step is a tagged record: an ordinal, a name, an action and an optional
verifier, all sharing the signature ``(connection, context)``. The default
pipeline creates shared functions, the version registry, every source's
tables, the compatibility view and updated-at triggers, and finishes with
the optional column auto-sync.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import asyncpg
from pydantic import BaseModel, Field

from ..config import ProvisioningConfig
from ..database.introspection import SchemaIntrospector
from ..exceptions import ConfigurationError, SchemaError
from ..schema.definitions import ExpectedSchema
from ..schema.metadata import VersionRegistry
from ..schema.reconciler import SchemaReconciler, SyncResult
from ..schema.sources import SchemaSource


logger = logging.getLogger(__name__)


class RunOptions(BaseModel):
    """Per-run switches."""

    skip_auto_sync: bool = Field(False, description="Skip the optional column sync step")
    verbose: bool = Field(False, description="Log step outputs at INFO level")


@dataclass
class StepContext:
    """Everything a step needs besides the connection."""

    options: RunOptions
    settings: ProvisioningConfig
    sources: List[SchemaSource]
    expected: ExpectedSchema
    functions_sql: str = ""
    views_sql: str = ""
    # Source name -> tables parsed from it
    source_tables: Dict[str, List[str]] = field(default_factory=dict)
    logger: logging.Logger = field(default_factory=lambda: logger)

    @property
    def schema(self) -> str:
        return self.settings.schema_name

    def introspector(self, connection: asyncpg.Connection) -> SchemaIntrospector:
        return SchemaIntrospector(connection, self.schema)


StepAction = Callable[[asyncpg.Connection, StepContext], Awaitable[Any]]
StepVerifier = Callable[[asyncpg.Connection, StepContext], Awaitable[None]]


class StepKind(str, Enum):
    """Whether a step is optional and whether it verifies its own result."""

    REQUIRED_VERIFIED = "required_verified"
    REQUIRED_UNVERIFIED = "required_unverified"
    OPTIONAL_VERIFIED = "optional_verified"
    OPTIONAL_UNVERIFIED = "optional_unverified"


@dataclass(frozen=True)
class SchemaStep:
    """A single named step of the provisioning pipeline."""

    ordinal: int
    name: str
    action: StepAction
    verifier: Optional[StepVerifier] = None
    optional: bool = False

    @property
    def kind(self) -> StepKind:
        if self.optional:
            return StepKind.OPTIONAL_VERIFIED if self.verifier else StepKind.OPTIONAL_UNVERIFIED
        return StepKind.REQUIRED_VERIFIED if self.verifier else StepKind.REQUIRED_UNVERIFIED


def validate_steps(steps: Sequence[SchemaStep]) -> None:
    """Check ordinal ordering and that optional steps come last."""
    previous = None
    seen_optional = False

    for step in steps:
        if previous is not None and step.ordinal <= previous:
            raise ConfigurationError(
                f"Step ordinals must be strictly increasing: "
                f"{step.ordinal} ({step.name}) follows {previous}"
            )
        if step.optional:
            seen_optional = True
        elif seen_optional:
            raise ConfigurationError(
                f"Required step {step.ordinal} ({step.name}) follows an optional step"
            )
        previous = step.ordinal


# Step 1: shared functions

async def create_shared_functions(connection: asyncpg.Connection, context: StepContext) -> None:
    await connection.execute(context.functions_sql)


async def verify_shared_functions(connection: asyncpg.Connection, context: StepContext) -> None:
    expected = context.settings.critical_functions
    found = set(await context.introspector(connection).find_functions(expected))
    missing = [name for name in expected if name not in found]
    if missing:
        raise SchemaError(f"Shared functions missing: {', '.join(missing)}")


# Step 2: version registry

async def create_version_tables(connection: asyncpg.Connection, context: StepContext) -> None:
    registry = VersionRegistry(connection, context.schema)
    await registry.initialize(context.settings.schema_version)


async def verify_version_tables(connection: asyncpg.Connection, context: StepContext) -> None:
    await VersionRegistry(connection, context.schema).verify()


# Steps 3..k: one per schema source

async def apply_source(
    source: SchemaSource, connection: asyncpg.Connection, context: StepContext
) -> List[str]:
    await connection.execute(source.sql)
    return context.source_tables.get(source.name, [])


async def verify_source(
    source: SchemaSource, connection: asyncpg.Connection, context: StepContext
) -> None:
    expected = context.source_tables.get(source.name, [])
    if not expected:
        return
    found = set(await context.introspector(connection).find_tables(expected))
    missing = [table for table in expected if table not in found]
    if missing:
        raise SchemaError(
            f"Tables from {source.name} not created: {', '.join(missing)}"
        )


# Compatibility view

async def create_compatibility_view(connection: asyncpg.Connection, context: StepContext) -> None:
    if context.views_sql.strip():
        await connection.execute(context.views_sql)


async def verify_compatibility_view(connection: asyncpg.Connection, context: StepContext) -> None:
    view = context.settings.compatibility_view
    if not await context.introspector(connection).view_exists(view):
        raise SchemaError(f"View {view} not created")


# Updated-at triggers

async def attach_updated_at_triggers(
    connection: asyncpg.Connection, context: StepContext
) -> List[str]:
    """Attach the updated_at trigger to every expected table that has the column."""
    introspector = context.introspector(connection)
    live_tables = set(await introspector.list_tables())
    attached = []

    for table in context.expected:
        if table not in live_tables:
            continue
        columns = await introspector.get_columns(table)
        if "updated_at" not in columns:
            continue

        trigger = f"update_{table}_updated_at"
        await connection.execute(
            f"""
            DROP TRIGGER IF EXISTS {trigger} ON {context.schema}.{table};
            CREATE TRIGGER {trigger}
                BEFORE UPDATE ON {context.schema}.{table}
                FOR EACH ROW
                EXECUTE FUNCTION {context.schema}.update_updated_at_column();
            """
        )
        attached.append(table)

    context.logger.debug(f"updated_at triggers attached to {len(attached)} tables")
    return attached


# Optional final step

async def auto_sync_columns(connection: asyncpg.Connection, context: StepContext) -> SyncResult:
    reconciler = SchemaReconciler(connection, context.schema, context.logger)
    return await reconciler.sync_all(context.expected)


def build_default_steps(sources: Sequence[SchemaSource]) -> List[SchemaStep]:
    """The standard tenant pipeline for the given sources."""
    steps = [
        SchemaStep(1, "Shared Functions", create_shared_functions, verify_shared_functions),
        SchemaStep(2, "Schema Versioning", create_version_tables, verify_version_tables),
    ]

    for source in sources:
        steps.append(
            SchemaStep(
                len(steps) + 1,
                f"Tables: {source.name}",
                partial(apply_source, source),
                partial(verify_source, source),
            )
        )

    steps.append(
        SchemaStep(
            len(steps) + 1,
            "Compatibility View",
            create_compatibility_view,
            verify_compatibility_view,
        )
    )
    steps.append(SchemaStep(len(steps) + 1, "Updated-at Triggers", attach_updated_at_triggers))
    steps.append(
        SchemaStep(len(steps) + 1, "Auto-Sync Columns", auto_sync_columns, optional=True)
    )
    return steps
