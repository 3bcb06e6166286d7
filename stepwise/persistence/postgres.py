"""PostgreSQL implementation of the run and hook stores."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any

import asyncpg

from ..errors import (
    Conflict,
    DuplicateToken,
    HookNotFound,
    RunNotFound,
    StepwiseError,
    StoreUnavailable,
)
from .models import HookRecord, Run
from .repository import HookStore, RunMutator, RunStore


class _PostgresBase:
    """Connection handling shared by the PostgreSQL stores."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
        except (OSError, asyncpg.PostgresError) as e:
            raise StoreUnavailable(f"Cannot connect to PostgreSQL: {e}") from e
        if not self._initialized:
            try:
                await self._ensure_schema(conn)
            except (OSError, asyncpg.PostgresError) as e:
                await conn.close()
                raise StoreUnavailable(f"Cannot prepare PostgreSQL schema: {e}") from e
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                status TEXT NOT NULL,
                hook_token TEXT,
                version INTEGER NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS runs_hook_token ON runs (hook_token)"
        )
        await conn.execute("CREATE INDEX IF NOT EXISTS runs_status ON runs (status)")
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS hooks (
                token TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                metadata JSONB,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )


def _load_document(value: Any) -> Run:
    if isinstance(value, str):
        return Run.model_validate_json(value)
    return Run.model_validate(value)


class PostgresRunStore(_PostgresBase, RunStore):
    """Persist run state using PostgreSQL."""

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
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO runs (run_id, workflow_name, status, hook_token, version, created_at, document)"
                " VALUES ($1, $2, $3, $4, $5, $6, $7)",
                run.run_id,
                run.workflow_name,
                run.status.value,
                None,
                run.version,
                run.created_at,
                run.model_dump_json(),
            )
        except asyncpg.PostgresError as e:
            raise StoreUnavailable(f"PostgreSQL error: {e}") from e
        finally:
            await conn.close()
        return run

    async def get(self, run_id: str) -> Run:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document FROM runs WHERE run_id = $1", run_id
            )
        except asyncpg.PostgresError as e:
            raise StoreUnavailable(f"PostgreSQL error: {e}") from e
        finally:
            await conn.close()
        if not row:
            raise RunNotFound(run_id)
        return _load_document(row["document"])

    async def update(self, run_id: str, mutator: RunMutator) -> Run:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT document, version FROM runs WHERE run_id = $1 FOR UPDATE NOWAIT",
                    run_id,
                )
                if not row:
                    raise RunNotFound(run_id)
                updated = mutator(_load_document(row["document"])).model_copy(
                    update={
                        "version": row["version"] + 1,
                        "updated_at": datetime.now(timezone.utc),
                    }
                )
                await conn.execute(
                    "UPDATE runs SET status = $1, hook_token = $2, version = $3, document = $4"
                    " WHERE run_id = $5",
                    updated.status.value,
                    updated.pending_hook.token if updated.pending_hook else None,
                    updated.version,
                    updated.model_dump_json(),
                    run_id,
                )
        except asyncpg.LockNotAvailableError as e:
            raise Conflict(run_id) from e
        except StepwiseError:
            raise
        except asyncpg.PostgresError as e:
            raise StoreUnavailable(f"PostgreSQL error: {e}") from e
        finally:
            await conn.close()
        return updated

    async def find_by_token(self, token: str) -> Run:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document FROM runs WHERE hook_token = $1 AND status = 'paused'",
                token,
            )
        except asyncpg.PostgresError as e:
            raise StoreUnavailable(f"PostgreSQL error: {e}") from e
        finally:
            await conn.close()
        if not row:
            raise RunNotFound(f"token:{token}")
        return _load_document(row["document"])

    async def list_runs(self) -> list[Run]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT document FROM runs ORDER BY created_at DESC"
            )
        except asyncpg.PostgresError as e:
            raise StoreUnavailable(f"PostgreSQL error: {e}") from e
        finally:
            await conn.close()
        return [_load_document(r["document"]) for r in rows]


class PostgresHookStore(_PostgresBase, HookStore):
    """Persist open hooks using PostgreSQL."""

    @staticmethod
    def _to_record(row: asyncpg.Record) -> HookRecord:
        metadata = row["metadata"]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return HookRecord(
            token=row["token"],
            run_id=row["run_id"],
            metadata=metadata or {},
            created_at=row["created_at"],
        )

    async def create_hook(
        self, run_id: str, token: str, metadata: dict[str, Any] | None = None
    ) -> HookRecord:
        hook = HookRecord(token=token, run_id=run_id, metadata=metadata or {})
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO hooks (token, run_id, metadata, created_at) VALUES ($1, $2, $3, $4)",
                hook.token,
                hook.run_id,
                json.dumps(hook.metadata),
                hook.created_at,
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateToken(token) from e
        except asyncpg.PostgresError as e:
            raise StoreUnavailable(f"PostgreSQL error: {e}") from e
        finally:
            await conn.close()
        return hook

    async def get_hook(self, token: str) -> HookRecord:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT token, run_id, metadata, created_at FROM hooks WHERE token = $1",
                token,
            )
        except asyncpg.PostgresError as e:
            raise StoreUnavailable(f"PostgreSQL error: {e}") from e
        finally:
            await conn.close()
        if not row:
            raise HookNotFound(token)
        return self._to_record(row)

    async def consume_hook(self, token: str) -> HookRecord:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "DELETE FROM hooks WHERE token = $1 RETURNING token, run_id, metadata, created_at",
                token,
            )
        except asyncpg.PostgresError as e:
            raise StoreUnavailable(f"PostgreSQL error: {e}") from e
        finally:
            await conn.close()
        if not row:
            raise HookNotFound(token)
        return self._to_record(row)

    async def discard_hooks(self, run_id: str) -> int:
        conn = await self._connect()
        try:
            status = await conn.execute("DELETE FROM hooks WHERE run_id = $1", run_id)
        except asyncpg.PostgresError as e:
            raise StoreUnavailable(f"PostgreSQL error: {e}") from e
        finally:
            await conn.close()
        # asyncpg returns the command tag, e.g. "DELETE 2"
        return int(status.split()[-1])
