"""Workflow definition contracts for the stepwise engine.

Workflows are described as data: an ordered tuple of nodes (steps, hooks and
sleeps) that the engine walks with a persisted cursor. Binders are plain
callables receiving a :class:`RunContext`, which is rebuilt from persisted
state on every burst.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from .persistence.models import Run, StepResult
from .utils.durations import parse_duration

logger = logging.getLogger(__name__)

_NO_ARGS = object()


class RunContext(BaseModel):
    """Execution context handed to binders."""

    run_id: str
    workflow_name: str
    params: Tuple[str, ...] = ()
    args: List[Any] = Field(default_factory=list)
    approval_token: Optional[str] = None
    results: List[StepResult] = Field(default_factory=list)

    @classmethod
    def from_run(cls, run: Run, params: Tuple[str, ...] = ()) -> "RunContext":
        return cls(
            run_id=run.run_id,
            workflow_name=run.workflow_name,
            params=params,
            args=list(run.args),
            approval_token=run.approval_token,
            results=list(run.step_results),
        )

    def arg(self, key: Union[int, str], default: Any = _NO_ARGS) -> Any:
        """Return a start argument by position or declared parameter name."""
        if isinstance(key, str):
            index = self.params.index(key) if key in self.params else -1
        else:
            index = key
        if 0 <= index < len(self.args):
            return self.args[index]
        if default is _NO_ARGS:
            raise KeyError(key)
        return default

    def result(self, name: str) -> Any:
        """Return the output recorded for the node called ``name``."""
        for result in self.results:
            if result.name == name:
                return result.output
        raise KeyError(name)

    @property
    def last_output(self) -> Any:
        """Output of the most recent step node, or ``None`` when none ran yet."""
        for result in reversed(self.results):
            if result.kind == "step":
                return result.output
        return None

    def default_input(self) -> Any:
        for result in reversed(self.results):
            if result.kind == "step":
                return result.output
        if len(self.args) == 1:
            return self.args[0]
        return list(self.args)


Binder = Callable[[RunContext], Any]


class StepSpec(BaseModel):
    """Defines one step in a workflow."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["step"] = "step"
    name: str
    step_id: str
    input: Optional[Binder] = None

    def resolve_input(self, ctx: RunContext) -> Any:
        if self.input is None:
            return ctx.default_input()
        return self.input(ctx)


class HookSpec(BaseModel):
    """A human-in-the-loop pause point awaiting an external resume."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    kind: Literal["hook"] = "hook"
    name: str
    token: Union[str, Binder, None] = None
    metadata: Union[Dict[str, Any], Binder, None] = None
    payload_type: Any = bool
    on_reject: Optional[Binder] = None

    def resolve_token(self, ctx: RunContext) -> str:
        """Explicit token, else the run's approval token, else a fresh UUID."""
        token = self.token(ctx) if callable(self.token) else self.token
        return token or ctx.approval_token or str(uuid.uuid4())

    def resolve_metadata(self, ctx: RunContext) -> dict[str, Any]:
        metadata = self.metadata(ctx) if callable(self.metadata) else self.metadata
        return dict(metadata or {})

    def validate_payload(self, payload: Any) -> Any:
        return TypeAdapter(self.payload_type).validate_python(payload)

    def rejects(self, payload: Any) -> bool:
        return self.on_reject is not None and not payload


class SleepSpec(BaseModel):
    """Durable delay between steps."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["sleep"] = "sleep"
    name: str
    seconds: float

    @field_validator("seconds", mode="before")
    @classmethod
    def _parse_seconds(cls, v: Any) -> float:
        return parse_duration(v)


Node = Union[StepSpec, HookSpec, SleepSpec]


class WorkflowDefinition(BaseModel):
    """Ordered, immutable plan of nodes registered under ``name``."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: Optional[str] = None
    params: Tuple[str, ...] = ()
    nodes: Tuple[Node, ...] = ()
    returns: Optional[Binder] = None

    @field_validator("nodes")
    @classmethod
    def _unique_names(cls, nodes: Tuple[Node, ...]) -> Tuple[Node, ...]:
        seen: set[str] = set()
        for node in nodes:
            if node.name in seen:
                raise ValueError(f"Duplicate node name: {node.name}")
            seen.add(node.name)
        return nodes

    def context_for(self, run: Run) -> RunContext:
        return RunContext.from_run(run, self.params)

    def step_ids(self) -> list[str]:
        return [node.step_id for node in self.nodes if isinstance(node, StepSpec)]

    def return_value(self, ctx: RunContext) -> Any:
        if self.returns is None:
            return ctx.last_output
        return self.returns(ctx)


class WorkflowBuilder:
    """Fluent helper assembling a :class:`WorkflowDefinition`."""

    def __init__(
        self,
        name: str,
        params: Tuple[str, ...] | List[str] = (),
        description: Optional[str] = None,
    ) -> None:
        self._name = name
        self._params = tuple(params)
        self._description = description
        self._nodes: List[Node] = []
        self._returns: Optional[Binder] = None

    def step(
        self,
        step_id: str,
        input: Optional[Binder] = None,
        name: Optional[str] = None,
    ) -> "WorkflowBuilder":
        self._nodes.append(StepSpec(name=name or step_id, step_id=step_id, input=input))
        return self

    def hook(
        self,
        name: str,
        token: Union[str, Binder, None] = None,
        metadata: Union[Mapping[str, Any], Binder, None] = None,
        payload_type: Any = bool,
        on_reject: Optional[Binder] = None,
    ) -> "WorkflowBuilder":
        if metadata is not None and not callable(metadata):
            metadata = dict(metadata)
        self._nodes.append(
            HookSpec(
                name=name,
                token=token,
                metadata=metadata,
                payload_type=payload_type,
                on_reject=on_reject,
            )
        )
        return self

    def sleep(self, duration: str | float, name: Optional[str] = None) -> "WorkflowBuilder":
        index = sum(1 for node in self._nodes if isinstance(node, SleepSpec)) + 1
        self._nodes.append(SleepSpec(name=name or f"sleep-{index}", seconds=duration))
        return self

    def returns(self, binder: Binder) -> "WorkflowBuilder":
        self._returns = binder
        return self

    def build(self) -> WorkflowDefinition:
        definition = WorkflowDefinition(
            name=self._name,
            description=self._description,
            params=self._params,
            nodes=tuple(self._nodes),
            returns=self._returns,
        )
        logger.debug(
            f"Built workflow {definition.name} with nodes {[n.name for n in definition.nodes]}"
        )
        return definition
