"""SQLite implementation of the run and hook stores."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import uuid
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from ..errors import (
    Conflict,
    DuplicateToken,
    HookNotFound,
    RunNotFound,
    StoreUnavailable,
)
from .models import HookRecord, Run
from .repository import HookStore, RunMutator, RunStore

T = TypeVar("T")


class _SQLiteBase:
    """Shared connection handling for the SQLite stores."""

    def __init__(self, db_path: str | Path, timeout: float = 5.0):
        self.db_path = str(db_path)
        try:
            self._conn = sqlite3.connect(
                self.db_path,
                timeout=timeout,
                check_same_thread=False,
                isolation_level=None,
            )
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open SQLite database {self.db_path}: {e}") from e
        self._conn.row_factory = sqlite3.Row
        self._conn_lock = threading.Lock()
        self._call(self._ensure_schema)

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                status TEXT NOT NULL,
                hook_token TEXT,
                version INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS runs_hook_token ON runs (hook_token)")
        cur.execute("CREATE INDEX IF NOT EXISTS runs_status ON runs (status)")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS hooks (
                token TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                metadata TEXT,
                created_at TEXT NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    # Helper methods
    def _call(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` holding the connection lock, mapping driver errors."""
        with self._conn_lock:
            try:
                return fn()
            except sqlite3.Error as e:
                raise StoreUnavailable(f"SQLite error on {self.db_path}: {e}") from e

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        cur = self._conn.cursor()
        cur.execute("BEGIN IMMEDIATE")
        try:
            yield cur
        except BaseException:
            cur.execute("ROLLBACK")
            raise
        else:
            cur.execute("COMMIT")

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def close(self) -> None:
        self._conn.close()


class SQLiteRunStore(_SQLiteBase, RunStore):
    """Persist run state using SQLite."""

    def __init__(self, db_path: str | Path, timeout: float = 5.0):
        super().__init__(db_path, timeout=timeout)
        self._inflight: dict[str, threading.Lock] = defaultdict(threading.Lock)

    @staticmethod
    def _row_values(run: Run) -> tuple[Any, ...]:
        return (
            run.workflow_name,
            run.status.value,
            run.pending_hook.token if run.pending_hook else None,
            run.version,
            run.created_at.isoformat(),
            run.model_dump_json(),
        )

    # ------------------------------------------------------------------
    # Store API
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

        def insert() -> None:
            self._conn.execute(
                "INSERT INTO runs (run_id, workflow_name, status, hook_token, version, created_at, document)"
                " VALUES (?, ?, ?, ?, ?, ?, ?)",
                (run.run_id, *self._row_values(run)),
            )

        await asyncio.to_thread(self._call, insert)
        return run

    async def get(self, run_id: str) -> Run:
        row = await asyncio.to_thread(
            self._call,
            lambda: self._fetchone("SELECT document FROM runs WHERE run_id = ?", run_id),
        )
        if row is None:
            raise RunNotFound(run_id)
        return Run.model_validate_json(row["document"])

    def _update_sync(self, run_id: str, mutator: RunMutator) -> Run:
        lock = self._inflight[run_id]
        if not lock.acquire(blocking=False):
            raise Conflict(run_id)
        try:
            with self._conn_lock:
                try:
                    with self._transaction() as cur:
                        cur.execute(
                            "SELECT document, version FROM runs WHERE run_id = ?",
                            (run_id,),
                        )
                        row = cur.fetchone()
                        if row is None:
                            raise RunNotFound(run_id)
                        current = Run.model_validate_json(row["document"])
                        updated = mutator(current).model_copy(
                            update={
                                "version": row["version"] + 1,
                                "updated_at": datetime.now(timezone.utc),
                            }
                        )
                        cur.execute(
                            "UPDATE runs SET workflow_name = ?, status = ?, hook_token = ?, version = ?,"
                            " created_at = ?, document = ? WHERE run_id = ? AND version = ?",
                            (*self._row_values(updated), run_id, row["version"]),
                        )
                        if cur.rowcount != 1:
                            raise Conflict(run_id, "version changed during update")
                except sqlite3.OperationalError as e:
                    if "locked" in str(e):
                        raise Conflict(run_id, "database is locked") from e
                    raise StoreUnavailable(f"SQLite error on {self.db_path}: {e}") from e
                except sqlite3.Error as e:
                    raise StoreUnavailable(f"SQLite error on {self.db_path}: {e}") from e
            return updated
        finally:
            lock.release()

    async def update(self, run_id: str, mutator: RunMutator) -> Run:
        return await asyncio.to_thread(self._update_sync, run_id, mutator)

    async def find_by_token(self, token: str) -> Run:
        row = await asyncio.to_thread(
            self._call,
            lambda: self._fetchone(
                "SELECT document FROM runs WHERE hook_token = ? AND status = 'paused'",
                token,
            ),
        )
        if row is None:
            raise RunNotFound(f"token:{token}")
        return Run.model_validate_json(row["document"])

    async def list_runs(self) -> list[Run]:
        rows = await asyncio.to_thread(
            self._call,
            lambda: self._fetchall("SELECT document FROM runs ORDER BY created_at DESC"),
        )
        return [Run.model_validate_json(row["document"]) for row in rows]


class SQLiteHookStore(_SQLiteBase, HookStore):
    """Persist open hooks using SQLite."""

    @staticmethod
    def _to_record(row: sqlite3.Row) -> HookRecord:
        return HookRecord(
            token=row["token"],
            run_id=row["run_id"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    async def create_hook(
        self, run_id: str, token: str, metadata: dict[str, Any] | None = None
    ) -> HookRecord:
        hook = HookRecord(token=token, run_id=run_id, metadata=metadata or {})

        def insert() -> None:
            try:
                self._conn.execute(
                    "INSERT INTO hooks (token, run_id, metadata, created_at) VALUES (?, ?, ?, ?)",
                    (
                        hook.token,
                        hook.run_id,
                        json.dumps(hook.metadata),
                        hook.created_at.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateToken(token) from e

        await asyncio.to_thread(self._call, insert)
        return hook

    async def get_hook(self, token: str) -> HookRecord:
        row = await asyncio.to_thread(
            self._call,
            lambda: self._fetchone(
                "SELECT token, run_id, metadata, created_at FROM hooks WHERE token = ?",
                token,
            ),
        )
        if row is None:
            raise HookNotFound(token)
        return self._to_record(row)

    async def consume_hook(self, token: str) -> HookRecord:
        def pop() -> sqlite3.Row | None:
            with self._transaction() as cur:
                cur.execute(
                    "SELECT token, run_id, metadata, created_at FROM hooks WHERE token = ?",
                    (token,),
                )
                row = cur.fetchone()
                if row is not None:
                    cur.execute("DELETE FROM hooks WHERE token = ?", (token,))
                return row

        row = await asyncio.to_thread(self._call, pop)
        if row is None:
            raise HookNotFound(token)
        return self._to_record(row)

    async def discard_hooks(self, run_id: str) -> int:
        def delete() -> int:
            cur = self._conn.cursor()
            cur.execute("DELETE FROM hooks WHERE run_id = ?", (run_id,))
            return cur.rowcount

        return await asyncio.to_thread(self._call, delete)


__all__ = ["SQLiteRunStore", "SQLiteHookStore"]
