"""Command line interface for running and operating contentflow."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer

from .catalog import delete_pipeline, load_catalog
from .config import load_config
from .errors import ContentFlowError
from .persistence import JobStatus, dispose_databases
from .runtime import Runtime, build_runtime

T = TypeVar("T")

app = typer.Typer(help="CLI for contentflow pipelines")

# Command groups
catalog_app = typer.Typer(help="Commands for loading pipeline catalogs")
pipeline_app = typer.Typer(help="Commands for managing pipelines")
flow_app = typer.Typer(help="Commands for running and scheduling flows")
job_app = typer.Typer(help="Commands for inspecting jobs")
maintenance_app = typer.Typer(help="Job housekeeping commands")
handler_app = typer.Typer(help="Commands for registered handlers")

app.add_typer(catalog_app, name="catalog")
app.add_typer(pipeline_app, name="pipeline")
app.add_typer(flow_app, name="flow")
app.add_typer(job_app, name="job")
app.add_typer(maintenance_app, name="maintenance")
app.add_typer(handler_app, name="handler")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to config.yaml (default: CONTENTFLOW_CONFIG)"
    ),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """contentflow CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"config_path": str(config) if config else None}


def _run(ctx: typer.Context, action: Callable[[Runtime], Awaitable[T]]) -> T:
    """Build a runtime, run ``action`` on it and exit 1 on contentflow errors."""

    async def runner() -> T:
        runtime = build_runtime(load_config(ctx.obj.get("config_path")))
        try:
            return await action(runtime)
        finally:
            await dispose_databases()

    try:
        return asyncio.run(runner())
    except ContentFlowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _fail(message: Optional[str]) -> None:
    typer.secho(message or "Operation failed", fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _fmt(value: Any) -> str:
    if value is None:
        return "-"
    if hasattr(value, "isoformat"):
        return value.isoformat(timespec="seconds")
    return str(value)


@app.command("worker")
def worker(
    ctx: typer.Context,
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run indefinitely)"
    ),
) -> None:
    """
    Run a worker process: job execution, trigger polling and maintenance.

    Example:
        contentflow worker
        contentflow --config prod.yaml worker --lifespan 300
    """
    typer.echo("Starting contentflow worker")
    _run(ctx, lambda runtime: runtime.serve(lifespan=lifespan))


@catalog_app.command("load")
def catalog_load(
    ctx: typer.Context,
    path: Path,
    activate: bool = typer.Option(True, help="Activate flows marked active"),
) -> None:
    """
    Load pipelines and flows from a YAML catalog.

    Example:
        contentflow catalog load guides/example_catalog.yaml
    """
    if not path.exists():
        _fail(f"Catalog {path} does not exist")

    async def action(runtime: Runtime):
        return await load_catalog(
            path, runtime.config_store, runtime.scheduler if activate else None
        )

    result = _run(ctx, action)
    for pipeline in result.pipelines:
        typer.echo(f"pipeline {pipeline.pipeline_id}\t{pipeline.name}")
    for flow in result.flows:
        status = "active" if flow.flow_id in result.activated else flow.scheduling.status
        typer.echo(f"flow {flow.flow_id}\t{flow.name}\t{flow.scheduling.interval}\t{status}")


@pipeline_app.command("list")
def pipeline_list(ctx: typer.Context) -> None:
    """List pipelines and their steps."""
    pipelines = _run(ctx, lambda runtime: runtime.config_store.list_pipelines())
    if not pipelines:
        typer.echo("No pipelines found")
        return
    for pipeline in pipelines:
        steps = " -> ".join(f"{s.name}({s.step_type}:{s.handler_slug})" for s in pipeline.steps)
        typer.echo(f"{pipeline.pipeline_id}\t{pipeline.name}\t{steps}")


@pipeline_app.command("delete")
def pipeline_delete(ctx: typer.Context, pipeline_id: int) -> None:
    """Unschedule a pipeline's flows, then delete the pipeline and its flows."""
    flow_ids = _run(
        ctx,
        lambda runtime: delete_pipeline(runtime.config_store, runtime.scheduler, pipeline_id),
    )
    typer.echo(f"Deleted pipeline {pipeline_id} (flows: {flow_ids or 'none'})")


@flow_app.command("list")
def flow_list(ctx: typer.Context, pipeline_id: Optional[int] = None) -> None:
    """
    List flows with their schedule.

    Example:
        contentflow flow list
        # Output: 1    hourly-news    pipeline=1    hourly    active    last_run=...
    """
    flows = _run(ctx, lambda runtime: runtime.config_store.list_flows(pipeline_id))
    if not flows:
        typer.echo("No flows found")
        return
    for flow in flows:
        typer.echo(
            f"{flow.flow_id}\t{flow.name}\tpipeline={flow.pipeline_id}\t"
            f"{flow.scheduling.interval}\t{flow.scheduling.status}\t"
            f"last_run={_fmt(flow.scheduling.last_run_at)}"
        )


@flow_app.command("run")
def flow_run(
    ctx: typer.Context,
    flow_id: int,
    wait: bool = typer.Option(False, help="Execute the job in this process and wait"),
    timeout: Optional[float] = typer.Option(None, help="Give up waiting after N seconds"),
) -> None:
    """
    Create a manual job for a flow.

    Without --wait the job is queued for a running worker.

    Example:
        contentflow flow run 3
        contentflow flow run 3 --wait
    """

    async def action(runtime: Runtime):
        result = await runtime.scheduler.run_now(flow_id)
        if result.success and wait:
            await runtime.worker.run_until_idle(timeout=timeout)
            return result, await runtime.repository.get_job(result.job_id)
        return result, None

    result, job = _run(ctx, action)
    if not result.success:
        _fail(result.reason)
    typer.echo(f"Created job {result.job_id}")
    if job is not None:
        typer.echo(f"Job {job.job_id}: {job.status.value}")


@flow_app.command("activate")
def flow_activate(ctx: typer.Context, flow_id: int) -> None:
    """Arm the recurring trigger of a flow."""
    result = _run(ctx, lambda runtime: runtime.scheduler.activate(flow_id))
    if not result.success:
        _fail(result.reason)
    typer.echo(f"Flow {flow_id} active ({result.interval}); next run {_fmt(result.next_run)}")


@flow_app.command("deactivate")
def flow_deactivate(ctx: typer.Context, flow_id: int) -> None:
    """Remove the recurring trigger of a flow."""
    result = _run(ctx, lambda runtime: runtime.scheduler.deactivate(flow_id))
    if not result.success:
        _fail(result.reason)
    typer.echo(f"Flow {flow_id} inactive")


@flow_app.command("reschedule")
def flow_reschedule(ctx: typer.Context, flow_id: int, interval: str) -> None:
    """
    Change a flow's interval; active flows are re-armed.

    Example:
        contentflow flow reschedule 3 daily
    """
    result = _run(ctx, lambda runtime: runtime.scheduler.reschedule(flow_id, interval))
    if not result.success:
        _fail(result.reason)
    typer.echo(f"Flow {flow_id} interval set to {interval}; next run {_fmt(result.next_run)}")


@flow_app.command("next-run")
def flow_next_run(ctx: typer.Context, flow_id: int) -> None:
    """Show when a flow's trigger fires next."""
    next_run = _run(ctx, lambda runtime: runtime.scheduler.next_run(flow_id))
    typer.echo(_fmt(next_run) if next_run else "Not scheduled")


@job_app.command("list")
def job_list(
    ctx: typer.Context,
    status: Optional[JobStatus] = typer.Option(None, help="Filter by status"),
    flow_id: Optional[int] = typer.Option(None, help="Filter by flow"),
    limit: int = typer.Option(50, help="Maximum number of jobs"),
) -> None:
    """
    List jobs, newest first.

    Example:
        contentflow job list --status failed
        # Output: 12    flow=3    failed    scheduled    created=...
    """
    jobs = _run(
        ctx,
        lambda runtime: runtime.repository.list_jobs(status=status, flow_id=flow_id, limit=limit),
    )
    if not jobs:
        typer.echo("No jobs found")
        return
    for job in jobs:
        typer.echo(
            f"{job.job_id}\tflow={job.flow_id}\t{job.status.value}\t"
            f"{job.trigger_type.value}\tcreated={_fmt(job.created_at)}"
        )


@job_app.command("show")
def job_show(ctx: typer.Context, job_id: int) -> None:
    """Show a job's timestamps, current step and error details."""
    job = _run(ctx, lambda runtime: runtime.repository.get_job(job_id))
    if job is None:
        _fail("Job not found")
    typer.echo(f"Job {job.job_id}: {job.status.value}")
    typer.echo(f"Pipeline {job.pipeline_id} / flow {job.flow_id} / user {job.user_id}")
    typer.echo(f"Trigger: {job.trigger_type.value}")
    typer.echo(f"Created: {_fmt(job.created_at)}")
    typer.echo(f"Started: {_fmt(job.started_at)}")
    typer.echo(f"Completed: {_fmt(job.completed_at)}")
    typer.echo(f"Current step: {_fmt(job.current_step_name)}")
    if job.error_details:
        typer.echo(f"Error: {job.error_details}")


@job_app.command("retry")
def job_retry(ctx: typer.Context, job_id: int) -> None:
    """Create a new manual job for a finished job's flow."""
    result = _run(ctx, lambda runtime: runtime.job_creator.retry_job(job_id))
    if not result.success:
        _fail(result.reason)
    typer.echo(f"Created job {result.job_id}")


@job_app.command("fail")
def job_fail(
    ctx: typer.Context,
    job_id: int,
    reason: str = typer.Option("stuck", help="Reason recorded on the job"),
) -> None:
    """Close a running job as failed (e.g. after a crash)."""
    job = _run(ctx, lambda runtime: runtime.maintenance.fail_stuck_job(job_id, reason))
    typer.echo(f"Job {job.job_id}: {job.status.value}")


@maintenance_app.command("sweep")
def maintenance_sweep(ctx: typer.Context) -> None:
    """Report jobs running longer than the stuck timeout."""
    stuck = _run(ctx, lambda runtime: runtime.maintenance.sweep_stuck_jobs())
    if not stuck:
        typer.echo("No stuck jobs")
        return
    for job in stuck:
        typer.echo(
            f"{job.job_id}\tflow={job.flow_id}\tstarted={_fmt(job.started_at)}\t"
            f"step={_fmt(job.current_step_name)}"
        )


@maintenance_app.command("cleanup")
def maintenance_cleanup(ctx: typer.Context) -> None:
    """Delete finished jobs older than the retention period."""
    deleted = _run(ctx, lambda runtime: runtime.maintenance.cleanup_old_jobs())
    typer.echo(f"Deleted {deleted} jobs")


@handler_app.command("list")
def handler_list(
    ctx: typer.Context,
    step_type: Optional[str] = typer.Option(None, help="Only this step type"),
) -> None:
    """List registered handlers."""

    async def action(runtime: Runtime):
        return runtime.registry.list_handlers(step_type)

    handlers = _run(ctx, action)
    if not handlers:
        typer.echo("No handlers registered")
        return
    for descriptor in handlers:
        flags = []
        if descriptor.requires_auth:
            flags.append("auth")
        if descriptor.requires_tool_result:
            flags.append("tool-result")
        typer.echo(
            f"{descriptor.step_type}\t{descriptor.slug}\t{descriptor.display_label}"
            + (f"\t[{', '.join(flags)}]" if flags else "")
        )


if __name__ == "__main__":
    app()
