"""Error taxonomy for the stepwise engine."""

from __future__ import annotations

from typing import Any, Optional


class StepwiseError(Exception):
    """Base class for all stepwise errors."""


class NotFound(StepwiseError):
    """Lookup of an unknown run, hook, workflow or step."""


class RunNotFound(NotFound):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id} not found")
        self.run_id = run_id


class HookNotFound(NotFound):
    def __init__(self, token: str) -> None:
        super().__init__(f"No open hook for token {token}")
        self.token = token


class WorkflowNotFound(NotFound):
    def __init__(self, name: str) -> None:
        super().__init__(f"Workflow {name!r} is not registered")
        self.name = name


class StepNotFound(NotFound):
    def __init__(self, step_id: str) -> None:
        super().__init__(f"Step {step_id!r} is not registered")
        self.step_id = step_id


class InvalidToken(StepwiseError):
    """Resume was called with an unknown or already consumed token."""

    def __init__(self, token: str) -> None:
        super().__init__(f"Invalid or already consumed token: {token}")
        self.token = token


class DuplicateToken(StepwiseError):
    """A hook with the same token is already open."""

    def __init__(self, token: str) -> None:
        super().__init__(f"Hook token already registered: {token}")
        self.token = token


class Conflict(StepwiseError):
    """Concurrent mutation of the same run was detected.

    Callers may retry the request that raised it.
    """

    retryable = True

    def __init__(self, run_id: str, reason: str = "concurrent update in flight") -> None:
        super().__init__(f"Conflict on run {run_id}: {reason}")
        self.run_id = run_id
        self.reason = reason


class ClaimConflict(Conflict):
    """The execution claim on a run belongs to another executor.

    Retrying the same checkpoint cannot succeed.
    """

    retryable = False


class StepFailure(StepwiseError):
    """Failure reported by (or on behalf of) a step.

    ``retryable`` only matters for steps registered as safe to retry.
    """

    def __init__(
        self,
        message: str,
        *,
        step_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.step_id = step_id
        self.details = details or {}
        self.retryable = retryable


class EngineFault(StepwiseError):
    """An engine invariant was violated (e.g. resuming a run that is not paused)."""


class InvalidPayload(EngineFault):
    """Resume payload does not match the hook's expected shape."""


class InvalidArguments(EngineFault):
    """Start arguments do not match the workflow's declared parameters."""


class RegistryFrozen(EngineFault):
    """Registration attempted after the registry was frozen."""


class StoreUnavailable(StepwiseError):
    """The backing store could not be reached; the run's true state is unknown."""


__all__ = [
    "StepwiseError",
    "NotFound",
    "RunNotFound",
    "HookNotFound",
    "WorkflowNotFound",
    "StepNotFound",
    "InvalidToken",
    "DuplicateToken",
    "Conflict",
    "ClaimConflict",
    "StepFailure",
    "EngineFault",
    "InvalidPayload",
    "InvalidArguments",
    "RegistryFrozen",
    "StoreUnavailable",
]
