"""Command line interface for stepwise runs."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import typer

from stepwise.bootstrap import build_engine
from stepwise.config import load_config
from stepwise.errors import StepwiseError
from stepwise.persistence import Run, get_run_store

app = typer.Typer(help="CLI for stepwise workflows")

# Command groups
run_app = typer.Typer(help="Commands for starting and inspecting runs")
hook_app = typer.Typer(help="Commands for human-in-the-loop hooks")

app.add_typer(run_app, name="run")
app.add_typer(hook_app, name="hook")

WorkflowsOption = typer.Option(
    None,
    "--workflows",
    "-w",
    help="Module defining 'workflows' and 'steps' registries (default: config)",
)


@app.callback()
def main() -> None:
    """stepwise CLI entry point."""
    pass


def _parse_json(value: Optional[str], default: Any) -> Any:
    if value is None:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=2)


def _fail(exc: StepwiseError) -> None:
    typer.secho(f"Error: {exc}", fg=typer.colors.RED)
    raise typer.Exit(code=1)


@run_app.command("start")
def run_start(
    workflow_name: str,
    args: Optional[str] = typer.Option(None, help="JSON array of workflow arguments"),
    approval_token: Optional[str] = typer.Option(
        None, help="Token handed to hooks the workflow opens"
    ),
    workflows: Optional[str] = WorkflowsOption,
) -> None:
    """
    Start a new run of a registered workflow.

    Executes steps until the run completes, fails or pauses at a hook, then
    prints the run ID and status.

    Example:
        stepwise run start web-scraper --args '["https://example.com"]' -w myapp.workflows
        # Output: Run 1c9e...: paused
        #         Waiting on hook approve with token 5f2a...
    """
    arguments = _parse_json(args, [])
    if not isinstance(arguments, list):
        typer.secho("--args must be a JSON array", fg=typer.colors.RED)
        raise typer.Exit(code=2)

    engine = build_engine(module_name=workflows)

    async def _start():
        started = await engine.start(workflow_name, arguments, approval_token=approval_token)
        return started, await engine.status(started.run_id)

    try:
        started, view = asyncio.run(_start())
    except StepwiseError as exc:
        _fail(exc)

    typer.echo(f"Run {started.run_id}: {view.status.value}")
    if view.pending_hook is not None:
        typer.echo(
            f"Waiting on hook {view.pending_hook.name} with token {view.pending_hook.token}"
        )
    if view.result is not None:
        typer.echo(f"Result: {json.dumps(view.result)}")
    if view.error is not None:
        typer.echo(f"Error: {view.error.message}")


@run_app.command("list")
def run_list() -> None:
    """
    List all runs with their current status.

    Returns:
        Tab-separated run IDs, workflow names and statuses, or "No runs found"

    Example:
        stepwise run list
        # Output: abc123-def456-789    web-scraper    paused
    """
    store = get_run_store()
    runs = asyncio.run(store.list_runs())
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.run_id}\t{run.workflow_name}\t{run.status.value}")


def _show(run: Run) -> None:
    typer.echo(f"Run {run.run_id} ({run.workflow_name}): {run.status.value}")
    if run.args:
        typer.echo(f"Args: {json.dumps(run.args)}")
    for result in run.step_results:
        typer.echo(f"- [{result.index}] {result.name} ({result.kind}) at {result.completed_at}")
    if run.pending_hook is not None:
        typer.echo(f"Paused at {run.pending_hook.name}; token {run.pending_hook.token}")
        if run.pending_hook.metadata:
            typer.echo(f"Metadata: {json.dumps(run.pending_hook.metadata)}")
    if run.return_value is not None:
        typer.echo(f"Result: {json.dumps(run.return_value)}")
    if run.error is not None:
        typer.echo(f"Error ({run.error.type}): {run.error.message}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """
    Show detailed information for a specific run.

    Displays status, arguments, recorded node results and any pending hook or
    failure detail.

    Example:
        stepwise run show abc123-def456-789
        # Output: Run abc123-def456-789 (web-scraper): failed
        #         - [0] scrape_metadata (step) at 2024-01-01 10:00:00
        #         Error (TimeoutError): Step capture_screenshot timed out after 30s
    """
    store = get_run_store()
    try:
        run = asyncio.run(store.get(run_id))
    except StepwiseError:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    _show(run)


@run_app.command("cancel")
def run_cancel(run_id: str, workflows: Optional[str] = WorkflowsOption) -> None:
    """Cancel a run, or flag it for cancellation at its next checkpoint."""
    engine = build_engine(module_name=workflows)
    try:
        view = asyncio.run(engine.cancel(run_id))
    except StepwiseError as exc:
        _fail(exc)
    typer.echo(f"Run {view.run_id}: {view.status.value}")


@run_app.command("recover")
def run_recover(
    run_id: str,
    force: bool = typer.Option(False, help="Take over even if the run is claimed"),
    workflows: Optional[str] = WorkflowsOption,
) -> None:
    """Re-drive a run left running by an executor that went away."""
    engine = build_engine(module_name=workflows)
    try:
        view = asyncio.run(engine.recover(run_id, force=force))
    except StepwiseError as exc:
        _fail(exc)
    typer.echo(f"Run {view.run_id}: {view.status.value}")


@hook_app.command("show")
def hook_show(token: str) -> None:
    """Show the paused run and approver metadata for a hook token."""
    store = get_run_store()
    try:
        run = asyncio.run(store.find_by_token(token))
    except StepwiseError:
        typer.echo("No paused run for token")
        raise typer.Exit(code=1)
    hook = run.pending_hook
    typer.echo(f"Run {run.run_id} ({run.workflow_name}) waiting at {hook.name}")
    if hook.metadata:
        typer.echo(f"Metadata: {json.dumps(hook.metadata)}")


@hook_app.command("resume")
def hook_resume(
    token: str,
    payload: Optional[str] = typer.Option(
        None, help="JSON payload for the hook (default: true)"
    ),
    workflows: Optional[str] = WorkflowsOption,
) -> None:
    """
    Resume the run paused on ``token``.

    Example:
        stepwise hook resume 5f2a... --payload false -w myapp.workflows
        # Output: Run 1c9e...: completed
    """
    data = _parse_json(payload, True)
    engine = build_engine(module_name=workflows)
    try:
        view = asyncio.run(engine.resume(token, data))
    except StepwiseError as exc:
        _fail(exc)
    typer.echo(f"Run {view.run_id}: {view.status.value}")


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address (default: config)"),
    port: Optional[int] = typer.Option(None, help="Port (default: config)"),
    workflows: Optional[str] = WorkflowsOption,
) -> None:
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    from stepwise.server import create_app

    config = load_config()
    engine = build_engine(config, module_name=workflows)
    uvicorn.run(
        create_app(engine),
        host=host or config.server.host,
        port=port or config.server.port,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
