"""In-memory implementation of the run and hook stores."""

from __future__ import annotations

import threading
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict

from ..errors import Conflict, DuplicateToken, HookNotFound, RunNotFound
from .models import HookRecord, Run
from .repository import HookStore, RunMutator, RunStore


class InMemoryRunStore(RunStore):
    """Store run state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, Run] = {}
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)

    # ------------------------------------------------------------------
    async def create(
        self,
        workflow_name: str,
        args: list[Any] | None = None,
        approval_token: str | None = None,
    ) -> Run:
        run = Run(
            run_id=str(uuid.uuid4()),
            workflow_name=workflow_name,
            args=list(args or []),
            approval_token=approval_token,
        )
        self._runs[run.run_id] = run
        return run.model_copy(deep=True)

    async def get(self, run_id: str) -> Run:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run.model_copy(deep=True)

    async def update(self, run_id: str, mutator: RunMutator) -> Run:
        if run_id not in self._runs:
            raise RunNotFound(run_id)
        lock = self._locks[run_id]
        if not lock.acquire(blocking=False):
            raise Conflict(run_id)
        try:
            current = self._runs[run_id]
            updated = mutator(current.model_copy(deep=True))
            updated = updated.model_copy(
                update={
                    "version": current.version + 1,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            self._runs[run_id] = updated
            return updated.model_copy(deep=True)
        finally:
            lock.release()

    async def find_by_token(self, token: str) -> Run:
        for run in self._runs.values():
            if run.pending_hook is not None and run.pending_hook.token == token:
                return run.model_copy(deep=True)
        raise RunNotFound(f"token:{token}")

    async def list_runs(self) -> list[Run]:
        runs = sorted(self._runs.values(), key=lambda r: r.created_at, reverse=True)
        return [run.model_copy(deep=True) for run in runs]


class InMemoryHookStore(HookStore):
    """Keep open hooks in local memory."""

    def __init__(self) -> None:
        self._hooks: Dict[str, HookRecord] = {}
        self._lock = threading.Lock()

    async def create_hook(
        self, run_id: str, token: str, metadata: dict[str, Any] | None = None
    ) -> HookRecord:
        with self._lock:
            if token in self._hooks:
                raise DuplicateToken(token)
            hook = HookRecord(token=token, run_id=run_id, metadata=metadata or {})
            self._hooks[token] = hook
        return hook.model_copy(deep=True)

    async def get_hook(self, token: str) -> HookRecord:
        hook = self._hooks.get(token)
        if hook is None:
            raise HookNotFound(token)
        return hook.model_copy(deep=True)

    async def consume_hook(self, token: str) -> HookRecord:
        with self._lock:
            hook = self._hooks.pop(token, None)
        if hook is None:
            raise HookNotFound(token)
        return hook

    async def discard_hooks(self, run_id: str) -> int:
        with self._lock:
            tokens = [t for t, h in self._hooks.items() if h.run_id == run_id]
            for token in tokens:
                del self._hooks[token]
        return len(tokens)
