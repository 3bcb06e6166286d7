"""FastAPI app exposing start/status/resume over HTTP.

Endpoints are thin wrappers over :class:`~stepwise.engine.WorkflowEngine`.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from . import __version__
from .bootstrap import build_engine
from .config import StepwiseConfig
from .engine import WorkflowEngine
from .errors import (
    Conflict,
    DuplicateToken,
    EngineFault,
    InvalidArguments,
    InvalidPayload,
    InvalidToken,
    NotFound,
    StepwiseError,
    StoreUnavailable,
)
from .persistence import RunStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/workflow", tags=["workflow"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartRequest(_CamelModel):
    workflow: str
    args: list[Any] = []
    approval_token: Optional[str] = None
    wait: bool = True


class ResumeRequest(_CamelModel):
    token: str
    data: Any = True
    wait: bool = True


def get_engine(request: Request) -> WorkflowEngine:
    return request.app.state.engine


@router.post("")
async def start_workflow(
    body: StartRequest, engine: WorkflowEngine = Depends(get_engine)
) -> dict[str, Any]:
    # Callers may mint their own token; otherwise one is minted per request.
    approval_token = body.approval_token or str(uuid.uuid4())
    started = await engine.start(
        body.workflow, body.args, approval_token=approval_token, wait=body.wait
    )
    response: dict[str, Any] = {
        "message": f"{body.workflow} workflow started",
        "runId": started.run_id,
        "approvalToken": approval_token,
        "status": started.status.value,
        "workflowName": started.workflow_name,
    }
    if started.status == RunStatus.COMPLETED:
        response["result"] = await engine.run(started.run_id).return_value
    return response


@router.get("/status")
async def workflow_status(
    run_id: str = Query(..., alias="runId"),
    engine: WorkflowEngine = Depends(get_engine),
) -> dict[str, Any]:
    view = await engine.status(run_id)
    response: dict[str, Any] = {
        "runId": view.run_id,
        "status": view.status.value,
        "workflowName": view.workflow_name,
        "stepsCompleted": view.steps_completed,
    }
    if view.status == RunStatus.COMPLETED:
        response["result"] = view.result
    if view.error is not None:
        response["error"] = view.error.model_dump(mode="json")
    if view.pending_hook is not None:
        response["pendingHook"] = view.pending_hook.model_dump(mode="json")
    return response


@router.post("/resume")
async def resume_workflow(
    body: ResumeRequest, engine: WorkflowEngine = Depends(get_engine)
) -> dict[str, Any]:
    view = await engine.resume(body.token, body.data, wait=body.wait)
    return {"message": "Hook resumed", "runId": view.run_id, "status": view.status.value}


@router.get("/hook/{token}")
async def hook_details(
    token: str, engine: WorkflowEngine = Depends(get_engine)
) -> dict[str, Any]:
    view = await engine.hook(token)
    return {
        "token": view.token,
        "runId": view.run_id,
        "workflowName": view.workflow_name,
        "name": view.name,
        "metadata": view.metadata,
    }


@router.post("/{run_id}/cancel")
async def cancel_workflow(
    run_id: str, engine: WorkflowEngine = Depends(get_engine)
) -> dict[str, Any]:
    view = await engine.cancel(run_id)
    return {"runId": view.run_id, "status": view.status.value}


def _status_code_for(exc: StepwiseError) -> int:
    if isinstance(exc, (NotFound, InvalidToken)):
        return 404
    if isinstance(exc, (InvalidPayload, InvalidArguments)):
        return 422
    if isinstance(exc, (Conflict, DuplicateToken, EngineFault)):
        return 409
    if isinstance(exc, StoreUnavailable):
        return 503
    return 500


async def _stepwise_error_handler(request: Request, exc: StepwiseError) -> JSONResponse:
    status_code = _status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    content: dict[str, Any] = {"error": str(exc), "type": type(exc).__name__}
    if isinstance(exc, Conflict):
        content["retryable"] = exc.retryable
    return JSONResponse(status_code=status_code, content=content)


def create_app(
    engine: Optional[WorkflowEngine] = None, config: Optional[StepwiseConfig] = None
) -> FastAPI:
    engine = engine or build_engine(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await engine.drain()

    app = FastAPI(
        title="stepwise",
        version=__version__,
        description="Durable workflow runs with human-in-the-loop hooks.",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.add_exception_handler(StepwiseError, _stepwise_error_handler)
    app.include_router(router)

    @app.get("/api/health")
    def health() -> dict[str, Any]:
        return {"status": "ok", "workflows": engine.workflows.names()}

    return app
