"""Store abstractions for run and hook persistence."""

from __future__ import annotations

from typing import Any, Callable, Protocol

from .models import HookRecord, Run

RunMutator = Callable[[Run], Run]


class RunStore(Protocol):
    """Protocol for run state persistence backends."""

    async def create(
        self,
        workflow_name: str,
        args: list[Any] | None = None,
        approval_token: str | None = None,
    ) -> Run:
        """Allocate a new run in ``pending`` state."""

    async def get(self, run_id: str) -> Run:
        """Return the run or raise ``RunNotFound``."""

    async def update(self, run_id: str, mutator: RunMutator) -> Run:
        """Atomically apply ``mutator`` and persist the result.

        Raises ``Conflict`` when another update for ``run_id`` is in flight.
        Exceptions raised by ``mutator`` abort the update unchanged.
        """

    async def find_by_token(self, token: str) -> Run:
        """Return the paused run waiting on ``token`` or raise ``RunNotFound``."""

    async def list_runs(self) -> list[Run]:
        """Return all persisted runs, newest first."""


class HookStore(Protocol):
    """Protocol for open-hook persistence backends."""

    async def create_hook(
        self, run_id: str, token: str, metadata: dict[str, Any] | None = None
    ) -> HookRecord:
        """Register a hook or raise ``DuplicateToken``."""

    async def get_hook(self, token: str) -> HookRecord:
        """Return the open hook or raise ``HookNotFound``."""

    async def consume_hook(self, token: str) -> HookRecord:
        """Atomically remove and return the hook or raise ``HookNotFound``."""

    async def discard_hooks(self, run_id: str) -> int:
        """Drop all open hooks of ``run_id``; return how many were removed."""
