"""Read-only views over persisted runs for pollers."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel

from .persistence import PendingHook, Run, RunError, RunStatus, RunStore

T = TypeVar("T")


class RunStatusView(BaseModel):
    """Snapshot returned to callers polling a run."""

    run_id: str
    workflow_name: str
    status: RunStatus
    result: Any = None
    error: Optional[RunError] = None
    pending_hook: Optional[PendingHook] = None
    steps_completed: int = 0

    @classmethod
    def from_run(cls, run: Run) -> "RunStatusView":
        return cls(
            run_id=run.run_id,
            workflow_name=run.workflow_name,
            status=run.status,
            result=run.return_value if run.status == RunStatus.COMPLETED else None,
            error=run.error if run.status in (RunStatus.FAILED, RunStatus.CANCELLED) else None,
            pending_hook=run.pending_hook if run.status == RunStatus.PAUSED else None,
            steps_completed=len(run.step_results),
        )


class HookView(BaseModel):
    """What an approver sees for an open hook."""

    token: str
    run_id: str
    workflow_name: str
    name: Optional[str] = None
    metadata: dict[str, Any] = {}


class RunHandle:
    """Handle on a run whose fields are resolved lazily.

    Each property returns a fresh awaitable that reads the latest snapshot,
    e.g. ``status = await handle.status``.
    """

    def __init__(self, run_id: str, store: RunStore) -> None:
        self.run_id = run_id
        self._store = store

    async def _read(self, pick: Callable[[Run], T]) -> T:
        run = await self._store.get(self.run_id)
        return pick(run)

    @property
    def status(self) -> Awaitable[RunStatus]:
        return self._read(lambda run: run.status)

    @property
    def return_value(self) -> Awaitable[Any]:
        return self._read(
            lambda run: run.return_value if run.status == RunStatus.COMPLETED else None
        )

    @property
    def workflow_name(self) -> Awaitable[str]:
        return self._read(lambda run: run.workflow_name)

    @property
    def error(self) -> Awaitable[Optional[RunError]]:
        return self._read(lambda run: run.error)

    def __repr__(self) -> str:  # pragma: no cover - simple formatting
        return f"RunHandle(run_id={self.run_id!r})"


class StatusReader:
    """Pure reads over the run store; never mutates."""

    def __init__(self, runs: RunStore) -> None:
        self._runs = runs

    async def status(self, run_id: str) -> RunStatusView:
        run = await self._runs.get(run_id)
        return RunStatusView.from_run(run)

    def run(self, run_id: str) -> RunHandle:
        return RunHandle(run_id, self._runs)

    async def hook(self, token: str) -> HookView:
        """Approver view of the paused run waiting on ``token``."""
        run = await self._runs.find_by_token(token)
        hook = run.pending_hook
        return HookView(
            token=token,
            run_id=run.run_id,
            workflow_name=run.workflow_name,
            name=hook.name if hook else None,
            metadata=hook.metadata if hook else {},
        )

    async def list_runs(self) -> list[RunStatusView]:
        return [RunStatusView.from_run(run) for run in await self._runs.list_runs()]
