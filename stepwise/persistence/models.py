"""Data models for persisted run and hook state.

Transitions of a :class:`Run` are pure methods returning an updated copy, so a
store's ``update`` can apply them as atomic mutators.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..errors import ClaimConflict, EngineFault


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
)


class StepResult(BaseModel):
    """Captured output of one executed node."""

    index: int
    name: str
    kind: str = "step"  # step, hook, sleep
    output: Any = None
    completed_at: datetime = Field(default_factory=_utcnow)


class PendingHook(BaseModel):
    """Pause point shown to the approver while a run is paused."""

    token: str
    index: int
    name: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class RunError(BaseModel):
    """Failure detail kept on a failed run."""

    type: str
    message: str
    step: Optional[str] = None
    index: Optional[int] = None
    details: dict[str, Any] = Field(default_factory=dict)


class HookRecord(BaseModel):
    """Open hook keyed by token with a back-reference to its run."""

    token: str
    run_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class Run(BaseModel):
    """One execution instance of a workflow definition."""

    run_id: str
    workflow_name: str
    args: list[Any] = Field(default_factory=list)
    approval_token: Optional[str] = None
    status: RunStatus = RunStatus.PENDING
    cursor: int = 0
    step_results: list[StepResult] = Field(default_factory=list)
    pending_hook: Optional[PendingHook] = None
    return_value: Any = None
    error: Optional[RunError] = None
    cancel_requested: bool = False
    claimed_by: Optional[str] = None
    version: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def results_by_index(self) -> dict[int, Any]:
        return {result.index: result.output for result in self.step_results}

    # ------------------------------------------------------------------
    # Guards
    def _require_open(self) -> None:
        if self.is_terminal:
            raise EngineFault(
                f"Run {self.run_id} is {self.status.value}; no further transitions allowed"
            )

    def _require_claim(self, claim: str) -> None:
        self._require_open()
        if self.claimed_by != claim:
            raise ClaimConflict(self.run_id, "execution claim held by another executor")

    def _evolve(self, **changes: Any) -> "Run":
        return self.model_copy(update=changes, deep=True)

    # ------------------------------------------------------------------
    # Transitions
    def begin(self, claim: str) -> "Run":
        """``pending -> running`` and take the execution claim."""
        if self.status != RunStatus.PENDING:
            raise EngineFault(
                f"Run {self.run_id} cannot start from status {self.status.value}"
            )
        return self._evolve(status=RunStatus.RUNNING, claimed_by=claim)

    def record(self, claim: str, result: StepResult) -> "Run":
        """Append ``result`` and advance the cursor past it."""
        self._require_claim(claim)
        if result.index != self.cursor:
            raise EngineFault(
                f"Run {self.run_id}: result for node {result.index} does not match cursor {self.cursor}"
            )
        return self._evolve(
            step_results=[*self.step_results, result], cursor=self.cursor + 1
        )

    def pause(self, claim: str, hook: PendingHook) -> "Run":
        """Suspend at ``hook`` and release the claim."""
        self._require_claim(claim)
        return self._evolve(
            status=RunStatus.PAUSED, pending_hook=hook, claimed_by=None
        )

    def resume(self, claim: str, token: str, result: StepResult) -> "Run":
        """``paused -> running`` recording the hook's resolved value."""
        self._require_open()
        if self.status != RunStatus.PAUSED or self.pending_hook is None:
            raise EngineFault(
                f"Run {self.run_id} is {self.status.value}, not paused"
            )
        if self.pending_hook.token != token:
            raise EngineFault(
                f"Run {self.run_id} is waiting on a different token"
            )
        if result.index != self.pending_hook.index:
            raise EngineFault(
                f"Run {self.run_id}: hook result index {result.index} does not match pause point"
            )
        return self._evolve(
            status=RunStatus.RUNNING,
            pending_hook=None,
            claimed_by=claim,
            step_results=[*self.step_results, result],
            cursor=self.cursor + 1,
        )

    def abandon(self, token: str, error: RunError) -> "Run":
        """Fail a paused run whose hook could not be registered."""
        if (
            self.status != RunStatus.PAUSED
            or self.pending_hook is None
            or self.pending_hook.token != token
        ):
            raise EngineFault(f"Run {self.run_id} is not paused on token {token}")
        return self._evolve(status=RunStatus.FAILED, pending_hook=None, error=error)

    def complete(self, claim: str, value: Any) -> "Run":
        self._require_claim(claim)
        return self._evolve(
            status=RunStatus.COMPLETED, return_value=value, claimed_by=None
        )

    def fail(self, claim: str, error: RunError) -> "Run":
        """Terminate as ``failed``; ``cancelled`` wins when it was requested first."""
        self._require_claim(claim)
        status = RunStatus.CANCELLED if self.cancel_requested else RunStatus.FAILED
        return self._evolve(
            status=status, error=error, return_value=None, claimed_by=None
        )

    def finish_cancelled(self, claim: str) -> "Run":
        self._require_claim(claim)
        return self._evolve(status=RunStatus.CANCELLED, claimed_by=None)

    def request_cancel(self) -> "Run":
        """Cancel now when idle, otherwise flag for the next checkpoint."""
        self._require_open()
        if self.status == RunStatus.RUNNING and self.claimed_by is not None:
            return self._evolve(cancel_requested=True)
        return self._evolve(
            status=RunStatus.CANCELLED,
            cancel_requested=True,
            pending_hook=None,
            claimed_by=None,
        )

    def reclaim(self, claim: str, force: bool = False) -> "Run":
        """Take over a ``running`` run whose executor went away."""
        self._require_open()
        if self.status != RunStatus.RUNNING:
            raise EngineFault(
                f"Run {self.run_id} is {self.status.value}; only running runs can be recovered"
            )
        if self.claimed_by is not None and not force:
            raise ClaimConflict(self.run_id, "run is claimed by an active executor")
        return self._evolve(claimed_by=claim)
