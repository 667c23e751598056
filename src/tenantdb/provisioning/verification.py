"""
Final schema verification for tenantdb.

Re-reads the catalog after the pipeline, independently of the per-step
verifiers, so a step that silently did nothing still fails the run.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Tuple

from ..config import ProvisioningConfig
from ..database.introspection import SchemaIntrospector
from ..exceptions import FinalVerificationError


logger = logging.getLogger(__name__)


@dataclass
class VerificationSummary:
    """Catalog state observed by the final check."""

    table_count: int
    min_table_count: int
    missing_tables: List[str] = field(default_factory=list)
    missing_functions: List[str] = field(default_factory=list)
    view_name: str = ""
    view_exists: bool = False

    @property
    def success(self) -> bool:
        return not self.problems()

    def problems(self) -> List[str]:
        problems = []
        if self.table_count < self.min_table_count:
            problems.append(
                f"expected at least {self.min_table_count} tables, found {self.table_count}"
            )
        if self.missing_tables:
            problems.append(f"missing critical tables: {', '.join(self.missing_tables)}")
        if self.missing_functions:
            problems.append(
                f"missing critical functions: {', '.join(self.missing_functions)}"
            )
        if not self.view_exists:
            problems.append(f"missing view: {self.view_name}")
        return problems

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["success"] = self.success
        return result


class FinalVerifier:
    """Checks table count, critical tables and functions, and the compatibility view."""

    def __init__(self, introspector: SchemaIntrospector, settings: ProvisioningConfig):
        self.introspector = introspector
        self.settings = settings

    async def critical_tables_present(self) -> Tuple[bool, int]:
        """Readiness check used while waiting on a peer's lock."""
        expected = self.settings.critical_tables
        found = set(await self.introspector.find_tables(expected))
        return len(found) >= len(set(expected)), len(found)

    async def collect(self) -> VerificationSummary:
        settings = self.settings

        found_tables = set(await self.introspector.find_tables(settings.critical_tables))
        found_functions = set(
            await self.introspector.find_functions(settings.critical_functions)
        )

        return VerificationSummary(
            table_count=await self.introspector.count_tables(),
            min_table_count=settings.min_table_count,
            missing_tables=[t for t in settings.critical_tables if t not in found_tables],
            missing_functions=[
                f for f in settings.critical_functions if f not in found_functions
            ],
            view_name=settings.compatibility_view,
            view_exists=await self.introspector.view_exists(settings.compatibility_view),
        )

    async def verify(self) -> VerificationSummary:
        """Collect the summary and raise FinalVerificationError if anything is missing."""
        summary = await self.collect()

        if not summary.success:
            for problem in summary.problems():
                logger.error(f"Final verification: {problem}")
            raise FinalVerificationError(summary, summary.problems())

        logger.info(
            f"Verification passed: {summary.table_count} tables, "
            f"{len(self.settings.critical_functions)} critical functions, "
            f"{summary.view_name} view"
        )
        return summary
