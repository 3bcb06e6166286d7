"""Persistence layer for stepwise runs and hooks."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepwiseConfig, load_config
from .inmemory import InMemoryHookStore, InMemoryRunStore
from .models import (
    HookRecord,
    PendingHook,
    Run,
    RunError,
    RunStatus,
    StepResult,
    TERMINAL_STATUSES,
)
from .repository import HookStore, RunMutator, RunStore
from .sqlite import SQLiteHookStore, SQLiteRunStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresHookStore, PostgresRunStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresRunStore = None  # type: ignore
    PostgresHookStore = None  # type: ignore

_run_store_instance: RunStore | None = None
_hook_store_instance: HookStore | None = None


def _resolve_database_url(
    database_url: Optional[str], config: Optional[StepwiseConfig]
) -> Optional[str]:
    config = config or load_config()
    return (
        database_url
        or os.getenv("STEPWISE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )


def _build(database_url: Optional[str], kind: str):
    if not database_url:
        return InMemoryRunStore() if kind == "run" else InMemoryHookStore()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteRunStore(path) if kind == "run" else SQLiteHookStore(path)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresRunStore is None:
            raise RuntimeError("Postgres support not available")
        return (
            PostgresRunStore(database_url)
            if kind == "run"
            else PostgresHookStore(database_url)
        )
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_run_store(
    database_url: Optional[str] = None, config: Optional[StepwiseConfig] = None
) -> RunStore:
    """Factory function to obtain a run store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``STEPWISE_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _run_store_instance
    if _run_store_instance is not None and database_url is None and config is None:
        return _run_store_instance

    _run_store_instance = _build(_resolve_database_url(database_url, config), "run")
    return _run_store_instance


def get_hook_store(
    database_url: Optional[str] = None, config: Optional[StepwiseConfig] = None
) -> HookStore:
    """Factory function to obtain a hook store; see :func:`get_run_store`."""

    global _hook_store_instance
    if _hook_store_instance is not None and database_url is None and config is None:
        return _hook_store_instance

    _hook_store_instance = _build(_resolve_database_url(database_url, config), "hook")
    return _hook_store_instance


def reset_stores() -> None:
    """Forget the cached store instances."""
    global _run_store_instance, _hook_store_instance
    _run_store_instance = None
    _hook_store_instance = None


__all__ = [
    "HookRecord",
    "PendingHook",
    "Run",
    "RunError",
    "RunStatus",
    "StepResult",
    "TERMINAL_STATUSES",
    "RunMutator",
    "RunStore",
    "HookStore",
    "InMemoryRunStore",
    "InMemoryHookStore",
    "SQLiteRunStore",
    "SQLiteHookStore",
    "PostgresRunStore",
    "PostgresHookStore",
    "get_run_store",
    "get_hook_store",
    "reset_stores",
]
