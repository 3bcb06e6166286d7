"""Tests for workflow definitions and run contexts."""

import pytest
from pydantic import ValidationError

from stepwise.contracts import (
    HookSpec,
    RunContext,
    SleepSpec,
    StepSpec,
    WorkflowBuilder,
)
from stepwise.persistence import StepResult


def _ctx(args=None, results=None, approval_token=None) -> RunContext:
    return RunContext(
        run_id="r1",
        workflow_name="wf",
        params=("url", "depth"),
        args=args or [],
        approval_token=approval_token,
        results=results or [],
    )


def test_builder_assembles_nodes_in_order() -> None:
    definition = (
        WorkflowBuilder("scrape", params=["url"], description="Scrape a page")
        .step("fetch")
        .hook("approve")
        .sleep("2s")
        .step("store", name="persist")
        .build()
    )
    assert definition.name == "scrape"
    assert definition.params == ("url",)
    assert [n.name for n in definition.nodes] == ["fetch", "approve", "sleep-1", "persist"]
    assert isinstance(definition.nodes[0], StepSpec)
    assert isinstance(definition.nodes[1], HookSpec)
    assert isinstance(definition.nodes[2], SleepSpec)
    assert definition.nodes[2].seconds == 2.0
    assert definition.step_ids() == ["fetch", "store"]


def test_builder_rejects_duplicate_node_names() -> None:
    with pytest.raises(ValidationError):
        WorkflowBuilder("wf").step("a").step("a").build()


def test_sleep_spec_parses_durations() -> None:
    assert SleepSpec(name="pause", seconds="1.5m").seconds == 90.0
    with pytest.raises(ValidationError):
        SleepSpec(name="pause", seconds="soon")


def test_context_arg_by_name_or_position() -> None:
    ctx = _ctx(args=["https://example.com", 2])
    assert ctx.arg("url") == "https://example.com"
    assert ctx.arg(1) == 2
    assert ctx.arg("missing", None) is None
    with pytest.raises(KeyError):
        ctx.arg("missing")
    with pytest.raises(KeyError):
        ctx.arg(5)


def test_context_result_and_last_output() -> None:
    ctx = _ctx(
        results=[
            StepResult(index=0, name="fetch", output={"html": "<p>"}),
            StepResult(index=1, name="approve", kind="hook", output=True),
        ]
    )
    assert ctx.result("fetch") == {"html": "<p>"}
    assert ctx.result("approve") is True
    assert ctx.last_output == {"html": "<p>"}
    with pytest.raises(KeyError):
        ctx.result("store")


def test_default_input_rules() -> None:
    assert _ctx(args=["only"]).default_input() == "only"
    assert _ctx(args=["a", "b"]).default_input() == ["a", "b"]
    with_hook = _ctx(
        args=["a"],
        results=[
            StepResult(index=0, name="fetch", output=1),
            StepResult(index=1, name="approve", kind="hook", output=False),
        ],
    )
    assert with_hook.default_input() == 1


def test_step_spec_uses_binder() -> None:
    step = StepSpec(name="fetch", step_id="fetch", input=lambda ctx: ctx.arg("url").upper())
    assert step.resolve_input(_ctx(args=["abc", 1])) == "ABC"


def test_hook_token_resolution_order() -> None:
    ctx = _ctx(approval_token="from-run")
    assert HookSpec(name="h", token="explicit").resolve_token(ctx) == "explicit"
    assert HookSpec(name="h", token=lambda c: f"{c.run_id}-x").resolve_token(ctx) == "r1-x"
    assert HookSpec(name="h").resolve_token(ctx) == "from-run"
    generated = HookSpec(name="h").resolve_token(_ctx())
    assert len(generated) == 36


def test_hook_metadata_and_payload_validation() -> None:
    hook = HookSpec(
        name="h",
        metadata=lambda ctx: {"run": ctx.run_id},
        payload_type=dict,
    )
    assert hook.resolve_metadata(_ctx()) == {"run": "r1"}
    assert hook.validate_payload({"ok": True}) == {"ok": True}
    with pytest.raises(ValidationError):
        hook.validate_payload("not a dict")


def test_hook_rejects_only_with_branch() -> None:
    assert HookSpec(name="h", on_reject=lambda ctx: "no").rejects(False)
    assert not HookSpec(name="h", on_reject=lambda ctx: "no").rejects(True)
    assert not HookSpec(name="h").rejects(False)


def test_return_value_defaults_to_last_step_output() -> None:
    ctx = _ctx(results=[StepResult(index=0, name="fetch", output=3)])
    assert WorkflowBuilder("wf").step("fetch").build().return_value(ctx) == 3
    custom = WorkflowBuilder("wf").step("fetch").returns(lambda c: {"n": c.last_output}).build()
    assert custom.return_value(ctx) == {"n": 3}
