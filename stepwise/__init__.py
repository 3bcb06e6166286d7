"""Durable workflow runs with human-in-the-loop pause and resume."""

from .contracts import (
    HookSpec,
    RunContext,
    SleepSpec,
    StepSpec,
    WorkflowBuilder,
    WorkflowDefinition,
)
from .engine import StartResult, WorkflowEngine
from .errors import (
    ClaimConflict,
    Conflict,
    DuplicateToken,
    EngineFault,
    InvalidArguments,
    InvalidPayload,
    InvalidToken,
    NotFound,
    StepFailure,
    StepwiseError,
    StoreUnavailable,
)
from .persistence import RunStatus
from .registry import StepRegistry, WorkflowRegistry
from .status import HookView, RunHandle, RunStatusView

__version__ = "0.1.0"

__all__ = [
    "HookSpec",
    "RunContext",
    "SleepSpec",
    "StepSpec",
    "WorkflowBuilder",
    "WorkflowDefinition",
    "StartResult",
    "WorkflowEngine",
    "ClaimConflict",
    "Conflict",
    "DuplicateToken",
    "EngineFault",
    "InvalidArguments",
    "InvalidPayload",
    "InvalidToken",
    "NotFound",
    "StepFailure",
    "StepwiseError",
    "StoreUnavailable",
    "RunStatus",
    "StepRegistry",
    "WorkflowRegistry",
    "HookView",
    "RunHandle",
    "RunStatusView",
]
