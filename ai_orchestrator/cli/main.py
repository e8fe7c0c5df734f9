"""
CLI interface for AI Orchestrator.

Provides command-line access to the queue, workers, dead-letter entries and
cost reports.
"""

import sys
import time
from pathlib import Path
from typing import Dict, List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ai_orchestrator.config.loader import CONFIG_ENV_VAR, default_config, load_config, OrchestratorConfig
from ai_orchestrator.config.logging import configure_logging
from ai_orchestrator.core.cost_monitor import Timeframe
from ai_orchestrator.core.dead_letter import RetryOptions
from ai_orchestrator.core.errors import OrchestratorError
from ai_orchestrator.core.queue import BatchOptions, EnqueueOptions, JobRequest
from ai_orchestrator.orchestrator import Orchestrator
from ai_orchestrator.storage.models import (
    FailureCategory,
    JobState,
    PayloadRef,
    Priority,
    ResolutionMethod,
    TERMINAL_STATES,
)
from ai_orchestrator.storage.repository import initialize_schema

app = typer.Typer()
dlq_app = typer.Typer(help="Inspect and resolve dead-letter entries.")
cost_app = typer.Typer(help="Cost reports and budget alerts.")
app.add_typer(dlq_app, name="dlq")
app.add_typer(cost_app, name="cost")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

BATCH_ITEM_KEYS = {"content_id", "agent_id", "template_id", "variables", "provider_id"}


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        envvar=CONFIG_ENV_VAR,
        help="Path to the orchestrator YAML config",
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Log level (default: $AI_ORCHESTRATOR_LOG_LEVEL or INFO)",
    ),
):
    """AI Orchestrator CLI."""
    configure_logging(log_level)
    ctx.obj = {"config_path": config}
    if ctx.invoked_subcommand is None:
        console.print("AI Orchestrator - Use --help to see available commands")


def _load_config(ctx: typer.Context) -> OrchestratorConfig:
    path = (ctx.obj or {}).get("config_path")
    if path is None:
        return default_config()
    try:
        return load_config(str(path))
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


def _orchestrator(ctx: typer.Context) -> Orchestrator:
    """Build an orchestrator that is stopped when the command's context closes."""
    return ctx.with_resource(Orchestrator(_load_config(ctx)))


def _parse_variables(values: List[str]) -> Dict[str, str]:
    variables = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected KEY=VALUE, got '{item}'", param_hint="--var")
        variables[key] = value
    return variables


def _format_currency(amount: float) -> str:
    return f"${amount:,.4f}" if amount < 1 else f"${amount:,.2f}"


@app.command()
def init(ctx: typer.Context):
    """Initialize the orchestrator database."""
    config = _load_config(ctx)
    try:
        initialize_schema(config.database_path)
        console.print(f"[green]✓[/] Database initialized at {config.database_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show queue counts."""
    stats = _orchestrator(ctx).queue.get_stats()

    table = Table(title="Queue status")
    table.add_column("State")
    table.add_column("Jobs", justify="right")
    for name, count in stats.to_dict().items():
        if name != "is_paused":
            table.add_row(name, str(count))
    console.print(table)
    if stats.is_paused:
        console.print("[yellow]Queue is paused[/]")


@app.command()
def enqueue(
    ctx: typer.Context,
    template: str = typer.Option(..., "--template", "-t", help="Template id"),
    content_id: Optional[str] = typer.Option(None, "--content-id", help="Content the job generates for"),
    agent_id: Optional[str] = typer.Option(None, "--agent-id", help="Agent the job runs as"),
    var: List[str] = typer.Option([], "--var", help="Template variable as KEY=VALUE"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Pin a provider"),
    priority: Priority = typer.Option(Priority.NORMAL, "--priority", help="Scheduling band"),
    delay: float = typer.Option(0.0, "--delay", help="Seconds before the job becomes runnable"),
    cost_limit: Optional[float] = typer.Option(None, "--cost-limit", help="Reject if the estimate is higher"),
    timeout_ms: Optional[int] = typer.Option(None, "--timeout-ms", help="Provider call timeout"),
    requester: Optional[str] = typer.Option(None, "--requester", help="Requester id"),
):
    """Admit a single generation job."""
    orchestrator = _orchestrator(ctx)
    request = JobRequest(
        payload_ref=PayloadRef(
            content_id=content_id,
            agent_id=agent_id,
            template_id=template,
            variables=_parse_variables(var),
        ),
        provider_id=provider,
    )
    try:
        job_id = orchestrator.queue.enqueue(
            request,
            priority=priority,
            requester_id=requester,
            options=EnqueueOptions(delay=delay, cost_limit=cost_limit, timeout_ms=timeout_ms),
        )
    except OrchestratorError as e:
        console.print(f"[red]Rejected ({e.code}):[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Enqueued job {job_id}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def batch(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="YAML list of job requests"),
    priority: Priority = typer.Option(Priority.NORMAL, "--priority", help="Scheduling band"),
    parallel_limit: Optional[int] = typer.Option(None, "--parallel-limit", help="Members run at once"),
    fail_fast: bool = typer.Option(False, "--fail-fast", help="Cancel the rest after a permanent failure"),
    cost_limit: Optional[float] = typer.Option(None, "--cost-limit", help="Limit for the whole batch"),
    requester: Optional[str] = typer.Option(None, "--requester", help="Requester id"),
):
    """Admit a batch of jobs from a YAML file."""
    with open(file, "r", encoding="utf-8") as f:
        items = yaml.safe_load(f)
    if not isinstance(items, list):
        console.print("[red]Batch file must contain a list of requests[/]")
        sys.exit(EXIT_CODE_FAIL)

    requests = []
    for index, item in enumerate(items):
        if not isinstance(item, dict) or set(item) - BATCH_ITEM_KEYS:
            console.print(f"[red]Invalid request at index {index}:[/] {item}")
            sys.exit(EXIT_CODE_FAIL)
        requests.append(JobRequest(
            payload_ref=PayloadRef.from_dict(item),
            provider_id=item.get("provider_id"),
        ))

    orchestrator = _orchestrator(ctx)
    try:
        receipt = orchestrator.queue.enqueue_batch(
            requests,
            priority=priority,
            requester_id=requester,
            options=BatchOptions(parallel_limit=parallel_limit, fail_fast=fail_fast, cost_limit=cost_limit),
        )
    except (OrchestratorError, ValueError) as e:
        console.print(f"[red]Rejected:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(
        f"[green]✓[/] Enqueued batch {receipt.batch_id} with {len(receipt.job_ids)} jobs "
        f"(estimated {_format_currency(receipt.total_estimated_cost)})"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def job(ctx: typer.Context, job_id: str = typer.Argument(..., help="Job id")):
    """Show one job's status."""
    job_status = _orchestrator(ctx).queue.get_status(job_id)
    if job_status is None:
        console.print(f"[red]Job {job_id} not found[/]")
        sys.exit(EXIT_CODE_FAIL)

    record = job_status.job
    console.print(f"\n[bold]Job:[/bold] {job_status.id}")
    console.print(f"Status: {job_status.status} ({job_status.progress}%)")
    console.print(f"Provider: {record.provider_id or 'auto'}")
    console.print(f"Attempts: {record.retry_count + 1}/{record.max_retries + 1}")
    console.print(f"Estimated cost: {_format_currency(record.cost_estimate)}")
    if record.batch_id:
        console.print(f"Batch: {record.batch_id}")
    if job_status.error:
        console.print(f"[red]Last error:[/] {job_status.error}")
    if record.result:
        console.print(f"Cost: {_format_currency(record.result.get('cost', 0.0))}")
        console.print(f"\n{record.result.get('content', '')}")


@app.command()
def cancel(ctx: typer.Context, job_id: str = typer.Argument(..., help="Job id")):
    """Cancel a pending job or request cancellation of an active one."""
    if _orchestrator(ctx).queue.cancel(job_id):
        console.print(f"[green]✓[/] Cancellation accepted for {job_id}")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[yellow]Job {job_id} cannot be cancelled[/]")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def pause(ctx: typer.Context):
    """Stop workers from claiming new jobs."""
    _orchestrator(ctx).queue.pause()
    console.print("[green]✓[/] Queue paused")


@app.command()
def resume(ctx: typer.Context):
    """Let workers claim jobs again."""
    _orchestrator(ctx).queue.resume()
    console.print("[green]✓[/] Queue resumed")


@app.command()
def clean(
    ctx: typer.Context,
    grace: float = typer.Option(86400.0, "--grace", help="Only jobs finished this many seconds ago"),
    limit: int = typer.Option(1000, "--limit", help="Maximum jobs to delete"),
    state: JobState = typer.Option(JobState.COMPLETED, "--state", help="Terminal state to clean"),
):
    """Delete old terminal jobs."""
    if state not in TERMINAL_STATES:
        console.print(f"[red]Only terminal jobs can be cleaned, got '{state.value}'[/]")
        sys.exit(EXIT_CODE_FAIL)
    removed = _orchestrator(ctx).queue.clean(grace, limit, state)
    console.print(f"[green]✓[/] Removed {removed} {state.value} jobs")


@app.command()
def worker(
    ctx: typer.Context,
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-n", help="Worker threads"),
    drain: bool = typer.Option(False, "--drain", help="Exit once nothing is runnable"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Stop after this many seconds"),
):
    """Run the worker pool until interrupted, drained or timed out."""
    orchestrator = _orchestrator(ctx)
    if concurrency:
        orchestrator.workers.concurrency = concurrency

    if drain:
        orchestrator.queue.requeue_stalled()
        processed = orchestrator.workers.drain(timeout)
        orchestrator.stop()
        console.print(f"[green]✓[/] Processed {processed} units of work")
        sys.exit(EXIT_CODE_PASS)

    orchestrator.start()
    console.print(f"Running {orchestrator.workers.concurrency} workers, press Ctrl+C to stop")
    deadline = time.monotonic() + timeout if timeout is not None else None
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.5)
    except KeyboardInterrupt:
        console.print("\nStopping workers...")
    finally:
        orchestrator.stop()
    sys.exit(EXIT_CODE_PASS)


@app.command()
def providers(ctx: typer.Context):
    """Check provider health."""
    orchestrator = _orchestrator(ctx)
    results = orchestrator.registry.check_health()
    if not results:
        console.print("[yellow]No providers registered. Set the API key environment variables.[/]")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Provider health")
    table.add_column("Provider")
    table.add_column("Healthy")
    table.add_column("Response (ms)", justify="right")
    table.add_column("Error")
    for name, result in results.items():
        table.add_row(
            name,
            "[green]yes[/]" if result.is_healthy else "[red]no[/]",
            f"{result.response_time_ms:.0f}",
            result.error or "",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS if all(r.is_healthy for r in results.values()) else EXIT_CODE_FAIL)


@dlq_app.command("list")
def dlq_list(
    ctx: typer.Context,
    show_all: bool = typer.Option(False, "--all", help="Include resolved entries"),
    category: Optional[FailureCategory] = typer.Option(None, "--category", help="Failure category"),
    provider: Optional[str] = typer.Option(None, "--provider", help="Provider id"),
    limit: int = typer.Option(50, "--limit", help="Maximum entries"),
):
    """List dead-letter entries, newest first."""
    entries = _orchestrator(ctx).dead_letter.get_entries(
        resolved=None if show_all else False,
        category=category,
        provider_id=provider,
        limit=limit,
    )
    if not entries:
        console.print("[dim]No dead-letter entries.[/]")
        return

    table = Table(title="Dead-letter entries")
    table.add_column("Entry")
    table.add_column("Job")
    table.add_column("Category")
    table.add_column("Provider")
    table.add_column("Failures", justify="right")
    table.add_column("Last failure")
    table.add_column("Resolution")
    for entry in entries:
        table.add_row(
            entry.id,
            entry.original_job.id,
            entry.failure_category.value,
            entry.provider_id or "-",
            str(entry.failure_count),
            entry.last_failure_at.strftime("%Y-%m-%d %H:%M:%S"),
            entry.resolution.method.value if entry.resolution else "",
        )
    console.print(table)


@dlq_app.command("stats")
def dlq_stats(ctx: typer.Context):
    """Summarize dead-letter entries."""
    stats = _orchestrator(ctx).dead_letter.get_stats()
    console.print("\n[bold]Dead-letter summary[/bold]")
    console.print("-" * 40)
    console.print(f"Total: {stats.total_entries}")
    console.print(f"Unresolved: {stats.unresolved}")
    console.print(f"Resolved: {stats.resolved} ({stats.abandoned} abandoned)")
    console.print(f"Average time to resolution: {stats.average_hours_to_resolution:.2f}h")
    if stats.oldest_unresolved:
        console.print(f"Oldest unresolved: {stats.oldest_unresolved:%Y-%m-%d %H:%M:%S}")
    for title, counts in (
        ("By category", stats.by_category),
        ("By provider", stats.by_provider),
        ("Resolution methods", stats.resolution_methods),
    ):
        if counts:
            console.print(f"\n[bold]{title}[/bold]")
            for key, count in sorted(counts.items(), key=lambda item: -item[1]):
                console.print(f"  {key}: {count}")


@dlq_app.command("retry")
def dlq_retry(
    ctx: typer.Context,
    entry_id: str = typer.Argument(..., help="Dead-letter entry id"),
    different_provider: bool = typer.Option(False, "--different-provider", help="Use another provider"),
    resolved_by: str = typer.Option("cli", "--by", help="Who is retrying"),
    notes: Optional[str] = typer.Option(None, "--notes", help="Resolution notes"),
):
    """Re-admit a dead-lettered job as a new job."""
    result = _orchestrator(ctx).dead_letter.retry(entry_id, RetryOptions(
        force_different_provider=different_provider,
        resolved_by=resolved_by,
        notes=notes,
    ))
    if not result.success:
        console.print(f"[red]Retry refused ({result.code.value}):[/] {result.error}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Retried as job {result.new_job_id}")
    sys.exit(EXIT_CODE_PASS)


@dlq_app.command("resolve")
def dlq_resolve(
    ctx: typer.Context,
    entry_id: str = typer.Argument(..., help="Dead-letter entry id"),
    method: ResolutionMethod = typer.Option(..., "--method", help="How the failure was resolved"),
    resolved_by: str = typer.Option("cli", "--by", help="Who resolved it"),
    notes: Optional[str] = typer.Option(None, "--notes", help="Resolution notes"),
):
    """Close a dead-letter entry without retrying it."""
    if _orchestrator(ctx).dead_letter.resolve(entry_id, method, resolved_by, notes):
        console.print(f"[green]✓[/] Entry {entry_id} resolved via {method.value}")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[yellow]Entry {entry_id} not found or already resolved[/]")
    sys.exit(EXIT_CODE_FAIL)


@cost_app.command("report")
def cost_report(
    ctx: typer.Context,
    timeframe: Timeframe = typer.Option(Timeframe.DAY, "--timeframe", "-t", help="Report period"),
):
    """Show spend for a period."""
    report = _orchestrator(ctx).cost_monitor.report(timeframe)

    console.print(f"\n[bold]Cost report ({timeframe.value})[/bold]")
    console.print(f"{report.start:%Y-%m-%d %H:%M} to {report.end:%Y-%m-%d %H:%M}")
    console.print("-" * 40)
    console.print(f"Total cost: {_format_currency(report.totals.cost)}")
    console.print(f"Tokens: {report.totals.tokens:,}")
    console.print(f"Requests: {report.totals.requests} ({report.totals.jobs} successful)")
    growth = report.trends.cost_growth
    console.print(f"Cost growth vs previous period: {'+' if growth >= 0 else ''}{growth:.2f}%")

    if report.by_provider:
        table = Table(title="By provider")
        table.add_column("Provider")
        table.add_column("Cost", justify="right")
        table.add_column("Requests", justify="right")
        table.add_column("Avg/request", justify="right")
        table.add_column("Success", justify="right")
        for name, stats in sorted(report.by_provider.items()):
            table.add_row(
                name,
                _format_currency(stats.cost),
                str(stats.requests),
                _format_currency(stats.average_cost_per_request),
                f"{stats.success_rate:.1f}%",
            )
        console.print(table)

    if report.top_expensive:
        console.print("\n[bold]Most expensive jobs[/bold]")
        for item in report.top_expensive:
            console.print(f"  {item.job_id} ({item.provider}): {_format_currency(item.cost)}")


@cost_app.command("alerts")
def cost_alerts(ctx: typer.Context):
    """List unacknowledged budget alerts."""
    alerts = _orchestrator(ctx).cost_monitor.get_active_alerts()
    if not alerts:
        console.print("[green]✓[/] No active cost alerts")
        return

    table = Table(title="Active cost alerts")
    table.add_column("Alert")
    table.add_column("Severity")
    table.add_column("Message")
    table.add_column("Triggered")
    for alert in alerts:
        color = "red" if alert.severity.value == "critical" else "yellow"
        table.add_row(
            alert.id,
            f"[{color}]{alert.severity.value}[/]",
            alert.message,
            alert.triggered_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@cost_app.command("ack")
def cost_ack(ctx: typer.Context, alert_id: str = typer.Argument(..., help="Alert id")):
    """Acknowledge a budget alert."""
    if _orchestrator(ctx).cost_monitor.acknowledge_alert(alert_id):
        console.print(f"[green]✓[/] Alert {alert_id} acknowledged")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[yellow]Alert {alert_id} not found or already acknowledged[/]")
    sys.exit(EXIT_CODE_FAIL)


@cost_app.command("recommend")
def cost_recommend(ctx: typer.Context):
    """Suggest cost optimisations based on the last week."""
    recommendations = _orchestrator(ctx).cost_monitor.recommendations()
    if not recommendations:
        console.print("[green]✓[/] No recommendations")
        return
    for item in recommendations:
        console.print(f"\n[bold]{item.type}[/bold] ({item.priority})")
        console.print(f"  {item.description}")
        console.print(f"  Potential savings: {_format_currency(item.potential_savings)}")
        console.print(f"  {item.implementation}")


if __name__ == "__main__":
    app()
