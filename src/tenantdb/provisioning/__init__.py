"""
Schema provisioning package for tenantdb.

This package provides:
- The ordered, verified step pipeline
- Final catalog verification
- The lock-guarded orchestrator that runs it all
"""

from .orchestrator import (
    OrchestratorState,
    ProvisioningReport,
    SchemaOrchestrator,
    StepResult,
)
from .steps import (
    RunOptions,
    SchemaStep,
    StepContext,
    StepKind,
    build_default_steps,
    validate_steps,
)
from .verification import FinalVerifier, VerificationSummary

__all__ = [
    "OrchestratorState",
    "ProvisioningReport",
    "SchemaOrchestrator",
    "StepResult",
    "RunOptions",
    "SchemaStep",
    "StepContext",
    "StepKind",
    "build_default_steps",
    "validate_steps",
    "FinalVerifier",
    "VerificationSummary",
]
