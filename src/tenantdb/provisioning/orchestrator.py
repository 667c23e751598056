"""
Schema provisioning orchestrator for tenantdb.

Runs the ordered step pipeline against one tenant database:

    verify connection -> acquire advisory lock -> run steps in order
    -> final verification -> record version -> release lock

A process that loses the lock race waits for the winner's critical tables to
appear instead of creating anything itself. Any step failure aborts the
remaining steps; the lock is released on every exit path.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import asyncpg

from ..config import ProvisioningConfig
from ..database.connection import verify_connection
from ..database.introspection import SchemaIntrospector
from ..database.locks import AdvisoryLockCoordinator, LockHandle
from ..exceptions import StepExecutionError
from ..schema.metadata import VersionRegistry
from ..schema.parser import DDLParser
from ..schema.reconciler import SyncResult
from ..schema.definitions import ExpectedSchema
from ..schema.sources import (
    SchemaSource,
    load_bundled_sources,
    load_bundled_sql,
    sources_checksum,
)
from .steps import RunOptions, SchemaStep, StepContext, build_default_steps, validate_steps
from .verification import FinalVerifier, VerificationSummary


logger = logging.getLogger(__name__)


class OrchestratorState(str, Enum):
    """Provisioning run lifecycle."""

    NOT_STARTED = "not_started"
    CONNECTION_VERIFIED = "connection_verified"
    LOCK_ACQUIRED = "lock_acquired"
    WAITING_ON_PEER_LOCK = "waiting_on_peer_lock"
    RUNNING = "running"
    VERIFIED = "verified"
    FINAL_VERIFICATION = "final_verification"
    VERSION_RECORDED = "version_recorded"
    LOCK_RELEASED = "lock_released"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class StepResult:
    """Outcome of one pipeline step."""

    ordinal: int
    name: str
    success: bool
    duration_ms: float = 0.0
    skipped: bool = False
    error: Optional[str] = None
    output: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ordinal": self.ordinal,
            "name": self.name,
            "success": self.success,
            "skipped": self.skipped,
            "duration_ms": round(self.duration_ms, 1),
            "error": self.error,
        }


@dataclass
class ProvisioningReport:
    """Structured result of a provisioning run."""

    schema_version: str
    success: bool = False
    concurrent: bool = False
    state: OrchestratorState = OrchestratorState.NOT_STARTED
    duration_ms: float = 0.0
    steps: List[StepResult] = field(default_factory=list)
    verification: Optional[VerificationSummary] = None
    sync_result: Optional[SyncResult] = None
    error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        """Succeeded, but the column sync reported errors."""
        return self.success and bool(self.sync_result and self.sync_result.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "concurrent": self.concurrent,
            "degraded": self.degraded,
            "state": self.state.value,
            "schema_version": self.schema_version,
            "duration_ms": round(self.duration_ms, 1),
            "steps": [step.to_dict() for step in self.steps],
            "verification": self.verification.to_dict() if self.verification else None,
            "sync": self.sync_result.to_dict() if self.sync_result else None,
            "error": self.error,
        }


class SchemaOrchestrator:
    """Provisions a tenant schema through an ordered, verified step pipeline."""

    def __init__(
        self,
        connection: asyncpg.Connection,
        settings: Optional[ProvisioningConfig] = None,
        sources: Optional[Sequence[SchemaSource]] = None,
        steps: Optional[Sequence[SchemaStep]] = None,
        functions_sql: Optional[str] = None,
        views_sql: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.connection = connection
        self.settings = settings or ProvisioningConfig()
        self.sources = list(sources) if sources is not None else load_bundled_sources()
        self.steps = list(steps) if steps is not None else build_default_steps(self.sources)
        validate_steps(self.steps)

        self.functions_sql = (
            functions_sql if functions_sql is not None else load_bundled_sql("functions.sql")
        )
        self.views_sql = views_sql if views_sql is not None else load_bundled_sql("views.sql")

        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._sleep = sleep

        self.state = OrchestratorState.NOT_STARTED
        self.history: List[OrchestratorState] = [OrchestratorState.NOT_STARTED]

    def _transition(self, state: OrchestratorState) -> None:
        self.logger.debug(f"Provisioning state: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _elapsed_ms(self, started: float) -> float:
        return (self._clock() - started) * 1000

    def build_context(self, options: RunOptions) -> StepContext:
        """Parse the sources and bundle everything the steps need."""
        parser = DDLParser()
        expected = ExpectedSchema()
        source_tables = {}

        for source in self.sources:
            parsed = parser.parse_source(source)
            source_tables[source.name] = [table.name for table in parsed]
            for table in parsed:
                expected.merge(table.name, table.columns)

        if parser.warnings:
            self.logger.warning(f"DDL parser reported {len(parser.warnings)} warnings")

        return StepContext(
            options=options,
            settings=self.settings,
            sources=self.sources,
            expected=expected,
            functions_sql=self.functions_sql,
            views_sql=self.views_sql,
            source_tables=source_tables,
            logger=self.logger,
        )

    async def _prepare_session(self) -> None:
        await verify_connection(self.connection)

        schema = self.settings.schema_name
        if schema != "public":
            # Bundled SQL is unqualified; objects land in the target schema
            await self.connection.execute(f"CREATE SCHEMA IF NOT EXISTS {schema}")
            await self.connection.execute(f"SET search_path TO {schema}, public")

        self._transition(OrchestratorState.CONNECTION_VERIFIED)

    async def _run_steps(self, context: StepContext, report: ProvisioningReport) -> None:
        total = len(self.steps)

        for step in self.steps:
            if step.optional and context.options.skip_auto_sync:
                self.logger.info(f"Step {step.ordinal}/{total}: {step.name} skipped")
                report.steps.append(
                    StepResult(step.ordinal, step.name, success=True, skipped=True)
                )
                continue

            self._transition(OrchestratorState.RUNNING)
            self.logger.info(f"Step {step.ordinal}/{total}: {step.name}...")
            started = self._clock()

            try:
                output = await step.action(self.connection, context)
                if step.verifier is not None:
                    await step.verifier(self.connection, context)
            except Exception as e:
                elapsed = self._elapsed_ms(started)
                report.steps.append(
                    StepResult(step.ordinal, step.name, False, elapsed, error=str(e))
                )
                self._transition(OrchestratorState.FAILED)
                error = StepExecutionError(
                    step.ordinal, step.name, elapsed, cause=e, total_steps=total
                )
                self.logger.error(str(error))
                raise error from e

            elapsed = self._elapsed_ms(started)
            self._transition(OrchestratorState.VERIFIED)
            report.steps.append(
                StepResult(step.ordinal, step.name, True, elapsed, output=output)
            )

            log = self.logger.info if context.options.verbose else self.logger.debug
            log(f"Step {step.ordinal}/{total}: {step.name} completed in {elapsed:.0f}ms")

            if isinstance(output, SyncResult):
                report.sync_result = output
                if output.errors:
                    self.logger.warning(
                        f"Auto-sync completed with {len(output.errors)} errors"
                    )
                    for sync_error in output.errors:
                        self.logger.warning(f"  {sync_error}")

    def _version_metadata(self, report: ProvisioningReport) -> Dict[str, Any]:
        return {
            "sources": [source.name for source in self.sources],
            "steps": len(report.steps),
            "table_count": report.verification.table_count if report.verification else None,
            "columns_synced": report.sync_result.columns_created if report.sync_result else 0,
        }

    async def _create(
        self, options: RunOptions, report: ProvisioningReport, verifier: FinalVerifier
    ) -> None:
        context = self.build_context(options)
        registry = VersionRegistry(self.connection, self.settings.schema_name)

        try:
            await self._run_steps(context, report)

            self._transition(OrchestratorState.FINAL_VERIFICATION)
            report.verification = await verifier.verify()

            await registry.record_version(
                self.settings.schema_version,
                metadata=self._version_metadata(report),
                checksum=sources_checksum(self.sources),
                description=f"Tenant schema {self.settings.schema_version}",
            )
            self._transition(OrchestratorState.VERSION_RECORDED)
        except Exception as e:
            await registry.record_failure(self.settings.schema_version, str(e))
            raise

    async def run(self, options: Optional[RunOptions] = None) -> ProvisioningReport:
        """Provision the schema; fatal errors propagate after the lock is released."""
        options = options or RunOptions()
        started = self._clock()
        report = ProvisioningReport(schema_version=self.settings.schema_version)

        introspector = SchemaIntrospector(self.connection, self.settings.schema_name)
        verifier = FinalVerifier(introspector, self.settings)
        coordinator = AdvisoryLockCoordinator(
            self.connection,
            self.settings.lock_key,
            timeout=self.settings.lock_timeout_seconds,
            poll_interval=self.settings.lock_poll_interval_seconds,
            progress_interval=self.settings.lock_progress_interval_seconds,
            logger=self.logger,
            clock=self._clock,
            sleep=self._sleep,
        )
        handle: Optional[LockHandle] = None

        try:
            await self._prepare_session()
            handle = await coordinator.acquire()

            if handle.acquired:
                self._transition(OrchestratorState.LOCK_ACQUIRED)
                await self._create(options, report, verifier)
            else:
                self._transition(OrchestratorState.WAITING_ON_PEER_LOCK)
                await coordinator.wait_for_peer(verifier.critical_tables_present)
                report.concurrent = True

            report.success = True
        except Exception as e:
            report.error = str(e)
            raise
        finally:
            if handle is not None and handle.acquired:
                await coordinator.release(handle)
                self._transition(OrchestratorState.LOCK_RELEASED)

            self._transition(
                OrchestratorState.COMPLETED if report.success else OrchestratorState.FAILED
            )
            report.state = self.state
            report.duration_ms = self._elapsed_ms(started)
            self._log_outcome(report)

        return report

    def _log_outcome(self, report: ProvisioningReport) -> None:
        if not report.success:
            self.logger.error(
                f"Schema provisioning failed after {report.duration_ms:.0f}ms: {report.error}"
            )
        elif report.concurrent:
            self.logger.info("Schema created by a concurrent process; nothing to do")
        elif report.degraded:
            self.logger.warning(
                f"Schema {report.schema_version} ready in {report.duration_ms:.0f}ms "
                f"with {len(report.sync_result.errors)} sync errors"
            )
        else:
            self.logger.info(
                f"Schema {report.schema_version} ready in {report.duration_ms:.0f}ms"
            )
