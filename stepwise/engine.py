"""Workflow engine: drives runs through their definitions.

Every trigger (start, resume, recover) performs one bounded burst: execute
nodes from the persisted cursor until the run completes, fails, is cancelled
or reaches a hook, persisting after each node. Suspension is nothing more
than persisted state, so a run paused in one process can be resumed in
another.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from functools import partial
from typing import Any, Coroutine, Optional

from pydantic import BaseModel, ValidationError
from pydantic_core import to_jsonable_python

from .config import EngineConfig, StepwiseConfig
from .contracts import HookSpec, RunContext, SleepSpec, StepSpec, WorkflowDefinition
from .errors import (
    ClaimConflict,
    Conflict,
    DuplicateToken,
    EngineFault,
    HookNotFound,
    InvalidArguments,
    InvalidPayload,
    InvalidToken,
    StepFailure,
    StepNotFound,
    StoreUnavailable,
)
from .persistence import (
    HookStore,
    PendingHook,
    Run,
    RunError,
    RunMutator,
    RunStatus,
    RunStore,
    StepResult,
    get_hook_store,
    get_run_store,
)
from .registry import StepRegistry, WorkflowRegistry
from .status import HookView, RunHandle, RunStatusView, StatusReader
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)


class StartResult(BaseModel):
    """Returned by :meth:`WorkflowEngine.start`."""

    run_id: str
    workflow_name: str
    status: RunStatus
    approval_token: Optional[str] = None


def _error_from_failure(
    failure: StepFailure, node_name: Optional[str], index: Optional[int]
) -> RunError:
    return RunError(
        type=str(failure.details.get("type", type(failure).__name__)),
        message=failure.message,
        step=node_name,
        index=index,
        details=to_jsonable_python(failure.details, fallback=str),
    )


class WorkflowEngine:
    """Executes registered workflow definitions against persisted runs."""

    def __init__(
        self,
        workflows: WorkflowRegistry,
        steps: StepRegistry,
        runs: Optional[RunStore] = None,
        hooks: Optional[HookStore] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self._workflows = workflows
        self._steps = steps
        self._runs = runs or get_run_store()
        self._hooks = hooks or get_hook_store()
        self._config = config or EngineConfig()
        self._reader = StatusReader(self._runs)
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_config(
        cls,
        workflows: WorkflowRegistry,
        steps: StepRegistry,
        config: StepwiseConfig,
    ) -> "WorkflowEngine":
        """Build an engine whose stores follow ``config.database_url``."""
        return cls(
            workflows,
            steps,
            runs=get_run_store(config.database_url),
            hooks=get_hook_store(config.database_url),
            config=config.engine,
        )

    @property
    def workflows(self) -> WorkflowRegistry:
        return self._workflows

    # ------------------------------------------------------------------
    # Public API
    async def start(
        self,
        workflow_name: str,
        args: Optional[list[Any]] = None,
        *,
        approval_token: Optional[str] = None,
        wait: bool = True,
    ) -> StartResult:
        """Create a new run and execute its first burst.

        Every call mints a new run; there is no deduplication. With
        ``wait=False`` the burst runs as a background task and the returned
        status is ``running``.
        """
        definition = self._workflows.get(workflow_name)
        args = list(args or [])
        if definition.params and len(args) != len(definition.params):
            raise InvalidArguments(
                f"Workflow {workflow_name} expects {len(definition.params)} arguments "
                f"({', '.join(definition.params)}), got {len(args)}"
            )

        run = await self._runs.create(
            workflow_name, to_jsonable_python(args, fallback=str), approval_token
        )
        claim = self._new_claim()
        run = await self._checkpoint(run.run_id, lambda r: r.begin(claim))
        logger.info(f"Started run {run.run_id} of workflow {workflow_name}")

        if wait:
            run = await self._execute(definition, run, claim)
        else:
            self._spawn(self._execute(definition, run, claim), run.run_id)

        return StartResult(
            run_id=run.run_id,
            workflow_name=workflow_name,
            status=run.status,
            approval_token=approval_token,
        )

    async def resume(
        self, token: str, payload: Any = True, *, wait: bool = True
    ) -> RunStatusView:
        """Resolve the hook registered under ``token`` and continue its run.

        Raises:
            InvalidToken: the token is unknown or was already consumed.
            InvalidPayload: ``payload`` does not match the hook's payload type.
            EngineFault: the run is not paused on this token.
            Conflict, StoreUnavailable: the run could not be claimed; the
                hook is re-opened so the resume can be retried.
        """
        try:
            hook = await self._hooks.get_hook(token)
        except HookNotFound as e:
            raise InvalidToken(token) from e

        run = await self._runs.get(hook.run_id)
        pending = run.pending_hook
        if run.status != RunStatus.PAUSED or pending is None or pending.token != token:
            raise EngineFault(
                f"Run {run.run_id} is {run.status.value} and not waiting on this token"
            )
        definition = self._workflows.get(run.workflow_name)
        node = definition.nodes[pending.index]
        if not isinstance(node, HookSpec):
            raise EngineFault(
                f"Run {run.run_id} is paused on node {pending.index}, which is not a hook"
            )
        try:
            value = node.validate_payload(payload)
        except ValidationError as e:
            raise InvalidPayload(f"Invalid payload for hook {node.name}: {e}") from e

        try:
            await self._hooks.consume_hook(token)
        except HookNotFound as e:
            raise InvalidToken(token) from e

        claim = self._new_claim()
        result = StepResult(
            index=pending.index,
            name=node.name,
            kind="hook",
            output=to_jsonable_python(value, fallback=str),
        )
        try:
            run = await self._checkpoint(
                run.run_id, lambda r: r.resume(claim, token, result)
            )
        except (Conflict, StoreUnavailable):
            await self._hooks.create_hook(hook.run_id, token, hook.metadata)
            raise
        logger.info(f"Resumed run {run.run_id} at hook {node.name}")

        if node.rejects(value):
            run = await self._reject(definition, node, run, claim)
        elif wait:
            run = await self._execute(definition, run, claim)
        else:
            self._spawn(self._execute(definition, run, claim), run.run_id)
        return RunStatusView.from_run(run)

    async def cancel(self, run_id: str) -> RunStatusView:
        """Cancel a run now, or at its next checkpoint when a burst is active."""
        run = await self._checkpoint(run_id, lambda r: r.request_cancel())
        if run.status == RunStatus.CANCELLED:
            await self._hooks.discard_hooks(run_id)
            logger.info(f"Cancelled run {run_id}")
        else:
            logger.info(f"Cancellation requested for run {run_id}")
        return RunStatusView.from_run(run)

    async def recover(
        self, run_id: str, *, force: bool = False, wait: bool = True
    ) -> RunStatusView:
        """Re-drive a ``running`` run whose executor disappeared.

        The node at the cursor may have been interrupted mid-flight; a step is
        re-invoked only when registered as ``retry_safe``, otherwise the run
        fails.
        """
        run = await self._runs.get(run_id)
        definition = self._workflows.get(run.workflow_name)
        claim = self._new_claim()
        run = await self._checkpoint(
            run_id, lambda r: r.reclaim(claim, force=force), retry=False
        )
        logger.warning(f"Recovering run {run_id} at node {run.cursor}")

        if run.cursor < len(definition.nodes):
            node = definition.nodes[run.cursor]
            # An unregistered step fails the run from inside the burst.
            if (
                isinstance(node, StepSpec)
                and node.step_id in self._steps
                and not self._steps.get(node.step_id).retry_safe
            ):
                error = RunError(
                    type="EngineFault",
                    message=f"Step {node.name} was interrupted and is not safe to retry",
                    step=node.name,
                    index=run.cursor,
                )
                run = await self._checkpoint(run_id, lambda r: r.fail(claim, error))
                return RunStatusView.from_run(run)

        if wait:
            run = await self._execute(definition, run, claim)
        else:
            self._spawn(self._execute(definition, run, claim), run_id)
        return RunStatusView.from_run(run)

    async def status(self, run_id: str) -> RunStatusView:
        return await self._reader.status(run_id)

    def run(self, run_id: str) -> RunHandle:
        return self._reader.run(run_id)

    async def hook(self, token: str) -> HookView:
        return await self._reader.hook(token)

    async def list_runs(self) -> list[RunStatusView]:
        return await self._reader.list_runs()

    async def drain(self) -> None:
        """Wait for all background bursts started by this engine."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Burst execution
    async def _execute(
        self, definition: WorkflowDefinition, run: Run, claim: str
    ) -> Run:
        while True:
            if run.cancel_requested:
                run = await self._checkpoint(
                    run.run_id, lambda r: r.finish_cancelled(claim)
                )
                logger.info(f"Run {run.run_id} cancelled at node {run.cursor}")
                return run

            if run.cursor >= len(definition.nodes):
                return await self._complete(definition, run, claim)

            index = run.cursor
            node = definition.nodes[index]
            ctx = definition.context_for(run)

            if isinstance(node, HookSpec):
                return await self._pause(node, run, ctx, claim)

            if isinstance(node, SleepSpec):
                logger.debug(f"Run {run.run_id} sleeping {node.seconds}s at {node.name}")
                await asyncio.sleep(node.seconds)
                result = StepResult(index=index, name=node.name, kind="sleep")
            else:
                try:
                    output = await self._invoke(node, ctx)
                except StepFailure as e:
                    logger.info(f"Run {run.run_id} failed at step {node.name}: {e.message}")
                    error = _error_from_failure(e, node.name, index)
                    return await self._checkpoint(
                        run.run_id, lambda r: r.fail(claim, error)
                    )
                result = StepResult(index=index, name=node.name, kind="step", output=output)

            run = await self._checkpoint(
                run.run_id, lambda r: r.record(claim, result)
            )

    async def _invoke(self, node: StepSpec, ctx: RunContext) -> Any:
        try:
            step_input = node.resolve_input(ctx)
        except Exception as e:
            raise StepFailure(
                f"Could not bind input for step {node.name}: {e}",
                step_id=node.step_id,
                details={"type": type(e).__name__},
            ) from e
        logger.debug(f"Run {ctx.run_id} invoking step {node.step_id}")
        try:
            return await self._steps.invoke(
                node.step_id,
                step_input,
                default_timeout=self._config.default_step_timeout,
            )
        except StepNotFound as e:
            raise StepFailure(
                str(e),
                step_id=node.step_id,
                details={"type": "StepNotFound"},
                retryable=False,
            ) from e

    async def _pause(
        self, node: HookSpec, run: Run, ctx: RunContext, claim: str
    ) -> Run:
        try:
            token = node.resolve_token(ctx)
            metadata = to_jsonable_python(node.resolve_metadata(ctx), fallback=str)
        except Exception as e:
            error = RunError(
                type=type(e).__name__,
                message=f"Could not prepare hook {node.name}: {e}",
                step=node.name,
                index=run.cursor,
            )
            return await self._checkpoint(run.run_id, lambda r: r.fail(claim, error))

        pending = PendingHook(
            token=token, index=run.cursor, name=node.name, metadata=metadata
        )
        run = await self._checkpoint(run.run_id, lambda r: r.pause(claim, pending))
        try:
            await self._hooks.create_hook(run.run_id, token, metadata)
        except DuplicateToken as e:
            error = RunError(
                type="DuplicateToken",
                message=str(e),
                step=node.name,
                index=pending.index,
            )
            await self._checkpoint(run.run_id, lambda r: r.abandon(token, error))
            logger.error(f"Run {run.run_id} failed: hook token {token} already open")
            raise
        logger.info(f"Run {run.run_id} paused at hook {node.name}")
        return run

    async def _complete(
        self, definition: WorkflowDefinition, run: Run, claim: str
    ) -> Run:
        try:
            value = to_jsonable_python(
                definition.return_value(definition.context_for(run))
            )
        except Exception as e:
            error = RunError(
                type=type(e).__name__,
                message=f"Could not compute return value: {e}",
                step="returns",
            )
            return await self._checkpoint(run.run_id, lambda r: r.fail(claim, error))
        run = await self._checkpoint(run.run_id, lambda r: r.complete(claim, value))
        logger.info(f"Run {run.run_id} completed")
        return run

    async def _reject(
        self, definition: WorkflowDefinition, node: HookSpec, run: Run, claim: str
    ) -> Run:
        try:
            value = to_jsonable_python(node.on_reject(definition.context_for(run)))
        except Exception as e:
            error = RunError(
                type=type(e).__name__,
                message=f"Could not compute rejection value: {e}",
                step=node.name,
            )
            return await self._checkpoint(run.run_id, lambda r: r.fail(claim, error))
        run = await self._checkpoint(run.run_id, lambda r: r.complete(claim, value))
        logger.info(f"Run {run.run_id} completed after rejection at {node.name}")
        return run

    # ------------------------------------------------------------------
    # Helpers
    @staticmethod
    def _new_claim() -> str:
        return f"burst-{uuid.uuid4()}"

    async def _checkpoint(
        self, run_id: str, mutator: RunMutator, retry: bool = True
    ) -> Run:
        """Persist ``mutator`` retrying transient conflicts with backoff.

        A lost execution claim is raised at once.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._runs.update(run_id, mutator)
            except ClaimConflict:
                raise
            except Conflict as e:
                if not retry or attempt > self._config.conflict_retries:
                    raise
                logger.warning(f"{e}; retrying checkpoint (attempt {attempt})")
                await schedule_retry(
                    attempt,
                    base=self._config.backoff_base,
                    jitter=self._config.backoff_jitter,
                )

    def _spawn(self, coro: Coroutine[Any, Any, Run], run_id: str) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(partial(self._task_done, run_id))

    def _task_done(self, run_id: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Background burst for run {run_id} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background burst for run {run_id} failed: {exc}", exc_info=exc)
