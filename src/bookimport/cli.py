"""CLI for submitting, watching and managing book import runs.

Usage:
    bookimport submit --env staging --booklist lists/classics.json
    bookimport poll --watch
    bookimport resume <batch-id>
    bookimport rollback <batch-id> --check
"""

import logging
import time
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from bookimport import debuglog
from bookimport.cache import RunSnapshotCache
from bookimport.config import get_settings
from bookimport.errors import ImportCoreError
from bookimport.models.batch import BatchFilter, BatchStatus, BookSource, Precheck
from bookimport.models.health import HealthState, Severity
from bookimport.models.run import (
    TERMINAL_RUN_STATUSES,
    Environment,
    RunSnapshot,
    environment_requires_confirmation,
)
from bookimport.service import ImportService, build_service

app = typer.Typer(help="Book import pipeline control CLI")
console = Console()

_recent_logs = debuglog.RecentLogBuffer(max_size=200)

_STATUS_COLOR = {
    "submitted": "cyan",
    "running": "cyan",
    "completed": "green",
    "failed": "red",
    "not_found": "red",
    "cancelled": "yellow",
}

_HEALTH_COLOR = {
    HealthState.HEALTHY: "green",
    HealthState.DEGRADED: "yellow",
    HealthState.UNHEALTHY: "red",
}

_SEVERITY_COLOR = {Severity.INFO: "cyan", Severity.WARNING: "yellow", Severity.CRITICAL: "red"}


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if not any(isinstance(h, debuglog.BufferHandler) for h in logging.getLogger("bookimport").handlers):
        debuglog.install(_recent_logs)


def get_service() -> ImportService:
    return build_service(get_settings())


def get_cache() -> RunSnapshotCache:
    return RunSnapshotCache(get_settings().run_cache_path)


def _fail(e: Exception) -> None:
    console.print(f"[red]{type(e).__name__}: {e}[/red]")
    recent = _recent_logs.read(last=5)
    if recent:
        console.print("[dim]Recent log lines:[/dim]")
        for line in recent:
            console.print(f"[dim]  {line}[/dim]")
    raise typer.Exit(1)


def _print_snapshot(snap: RunSnapshot) -> None:
    color = _STATUS_COLOR.get(snap.status.value, "white")
    console.print(f"[bold]Run:[/bold]      {snap.run_id}")
    console.print(f"[bold]Batch:[/bold]    {snap.batch_id}")
    console.print(f"[bold]Target:[/bold]   {snap.environment.value} ({snap.executor.value})")
    console.print(f"[bold]Status:[/bold]   [{color}]{snap.status.value}[/{color}]")
    if snap.stage:
        console.print(f"[bold]Stage:[/bold]    {snap.stage}")
    console.print(
        f"[bold]Progress:[/bold] {snap.percent_complete:.1f}%  "
        f"books {snap.books.processed}/{snap.books.total} "
        f"(ok={snap.books.succeeded} failed={snap.books.failed} skipped={snap.books.skipped})  "
        f"elapsed {snap.elapsed_seconds:.0f}s"
    )
    if snap.current_item:
        console.print(f"[bold]Current:[/bold]  {snap.current_item.title} - {snap.current_item.author}")

    table = Table(title="Pipeline nodes")
    table.add_column("Node")
    table.add_column("Status")
    table.add_column("Processed", justify="right")
    table.add_column("Total", justify="right")
    for node in snap.nodes:
        table.add_row(node.name, node.status.value, str(node.processed), str(node.total))
    console.print(table)

    if snap.error:
        console.print(f"[red]Error: {snap.error}[/red]")


def _print_precheck(check: Precheck) -> None:
    verdict = "[green]allowed[/green]" if check.allowed else f"[red]not allowed: {check.reason}[/red]"
    console.print(f"[bold]{check.operation.capitalize()} {check.batch_id}:[/bold] {verdict}")
    console.print(f"  items affected: {check.item_count}")
    if check.destructive:
        console.print("  [yellow]destructive: imported books will be unpublished[/yellow]")
    if check.requires_confirmation:
        console.print("  [yellow]requires confirmation[/yellow]")


@app.command()
def submit(
    env: Environment = typer.Option(Environment.LOCAL, "--env", help="Target environment"),
    booklist: Optional[str] = typer.Option(None, "--booklist", help="Book list reference"),
    source: BookSource = typer.Option(BookSource.STANDARD_EBOOKS, help="Book source"),
    created_by: Optional[str] = typer.Option(None, "--by", help="Operator name"),
    notes: Optional[str] = typer.Option(None, help="Free-form batch notes"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompts"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """Submit a new import run."""
    _setup_logging(log_level)
    if environment_requires_confirmation(env) and not yes:
        typer.confirm(f"Submit an import to {env.value}?", abort=True)
    try:
        snap = get_service().submit_run(env, booklist, source=source, created_by=created_by, notes=notes)
    except ImportCoreError as e:
        _fail(e)
    get_cache().save(snap)
    console.print(f"[green]✓ Submitted run {snap.run_id} (batch {snap.batch_id})[/green]")


@app.command()
def poll(
    run_id: Optional[str] = typer.Argument(None, help="Run id (default: cached current run)"),
    watch: bool = typer.Option(False, help="Keep polling until the run finishes"),
    interval: float = typer.Option(5.0, help="Seconds between polls with --watch"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """Refresh a run from its executor and show progress."""
    _setup_logging(log_level)
    service = get_service()
    cache = get_cache()
    try:
        if run_id is None:
            snap = cache.reconcile(service)
            if snap is None:
                console.print("[yellow]No current run cached. Pass a run id.[/yellow]")
                raise typer.Exit(1)
        else:
            snap = service.poll_run(run_id)
        while watch and snap.status not in TERMINAL_RUN_STATUSES:
            _print_snapshot(snap)
            time.sleep(interval)
            snap = service.poll_run(snap.run_id)
    except ImportCoreError as e:
        _fail(e)
    _print_snapshot(snap)


@app.command()
def cancel(
    run_id: str = typer.Argument(..., help="Run id"),
    terminate: bool = typer.Option(False, help="Also ask the executor to stop the run"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompts"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """Stop tracking a run and cancel its batch."""
    _setup_logging(log_level)
    service = get_service()
    try:
        snap = service.snapshot_run(run_id)
        if environment_requires_confirmation(snap.environment) and not yes:
            typer.confirm(f"Cancel {snap.environment.value} run {run_id}?", abort=True)
        result = service.terminate_run(run_id) if terminate else service.cancel_run(run_id)
    except ImportCoreError as e:
        _fail(e)
    cache = get_cache()
    cached = cache.load()
    if cached is not None and cached.run_id == run_id:
        cache.evict()
    console.print(f"[green]✓ Run {run_id} cancelled[/green]")
    if result.warning:
        console.print(f"[yellow]⚠ {result.warning}[/yellow]")


@app.command()
def books(
    run_id: Optional[str] = typer.Argument(None, help="Run id (default: cached current run)"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """Show per-book outcomes reported for a run so far."""
    _setup_logging(log_level)
    if run_id is None:
        cached = get_cache().load()
        if cached is None:
            console.print("[yellow]No current run cached. Pass a run id.[/yellow]")
            raise typer.Exit(1)
        run_id = cached.run_id
    try:
        outcomes = get_service().run_books(run_id)
    except ImportCoreError as e:
        _fail(e)

    if not outcomes:
        console.print(f"[yellow]No per-book results reported for run {run_id} yet.[/yellow]")
        return
    table = Table(title=f"Books in run {run_id}")
    table.add_column("Book")
    table.add_column("Title")
    table.add_column("Author")
    table.add_column("Status")
    table.add_column("Error")
    for o in outcomes:
        color = "green" if o.status == "imported" else "red" if o.status == "failed" else "yellow"
        table.add_row(o.book_ref, o.title, o.author, f"[{color}]{o.status}[/{color}]", o.error or "")
    console.print(table)


def _batch_action(batch_id: str, action: str, yes: bool) -> None:
    service = get_service()
    try:
        batch = service.get_batch(batch_id)
        if environment_requires_confirmation(batch.environment) and not yes:
            typer.confirm(f"{action.capitalize()} {batch.environment} batch {batch_id}?", abort=True)
        if action == "start":
            batch = service.start_batch(batch_id)
        elif action == "complete":
            batch = service.complete_batch(batch_id)
        else:
            batch = service.cancel_batch(batch_id)
    except ImportCoreError as e:
        _fail(e)
    console.print(f"[green]✓ Batch {batch_id} is now {batch.status.value}[/green]")


@app.command("start-batch")
def start_batch(
    batch_id: str = typer.Argument(..., help="Pending batch id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompts"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """Mark a pending batch as running."""
    _setup_logging(log_level)
    _batch_action(batch_id, "start", yes)


@app.command("complete-batch")
def complete_batch(
    batch_id: str = typer.Argument(..., help="Running batch id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompts"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """Close a running batch by hand, keeping its counters."""
    _setup_logging(log_level)
    _batch_action(batch_id, "complete", yes)


@app.command("cancel-batch")
def cancel_batch(
    batch_id: str = typer.Argument(..., help="Pending or running batch id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompts"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """Cancel a batch whose run is gone or no longer wanted."""
    _setup_logging(log_level)
    _batch_action(batch_id, "cancel", yes)


@app.command()
def retry(
    run_id: str = typer.Argument(..., help="Failed, lost or cancelled run id"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """Resubmit a finished-unsuccessfully run as a new run."""
    _setup_logging(log_level)
    try:
        snap = get_service().retry_run(run_id)
    except ImportCoreError as e:
        _fail(e)
    get_cache().save(snap)
    console.print(f"[green]✓ Retried as run {snap.run_id} (batch {snap.batch_id})[/green]")


@app.command()
def resume(
    batch_id: str = typer.Argument(..., help="Batch id"),
    check: bool = typer.Option(False, help="Only show whether resume is possible"),
    created_by: Optional[str] = typer.Option(None, "--by", help="Operator name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompts"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """Re-run only the failed books of a batch."""
    _setup_logging(log_level)
    service = get_service()
    try:
        pre = service.check_resume(batch_id)
        if check:
            _print_precheck(pre)
            return
        if pre.requires_confirmation and not yes:
            typer.confirm(f"Resume {pre.item_count} failed book(s) of batch {batch_id}?", abort=True)
        snap = service.resume_batch(batch_id, created_by=created_by)
    except ImportCoreError as e:
        _fail(e)
    get_cache().save(snap)
    console.print(f"[green]✓ Resumed as run {snap.run_id} (batch {snap.batch_id})[/green]")


@app.command()
def rollback(
    batch_id: str = typer.Argument(..., help="Batch id"),
    check: bool = typer.Option(False, help="Only show whether rollback is possible"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompts"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """Unpublish every book a batch imported."""
    _setup_logging(log_level)
    service = get_service()
    try:
        pre = service.check_rollback(batch_id)
        if check:
            _print_precheck(pre)
            return
        if not yes:
            typer.confirm(
                f"Roll back batch {batch_id}? This unpublishes {pre.item_count} book(s).", abort=True
            )
        result = service.rollback_batch(batch_id)
    except ImportCoreError as e:
        _fail(e)

    if result.complete:
        console.print(f"[green]✓ Batch {batch_id} rolled back ({len(result.reversed)} book(s))[/green]")
        return
    console.print(
        f"[yellow]⚠ Partial rollback: {len(result.reversed)} reversed, "
        f"{len(result.not_rolled_back)} left. Batch stays {result.status.value}.[/yellow]"
    )
    table = Table(title="Not rolled back")
    table.add_column("Book")
    table.add_column("Error")
    for ref in result.not_rolled_back:
        table.add_row(ref, result.errors.get(ref, ""))
    console.print(table)
    raise typer.Exit(1)


@app.command()
def batches(
    status: Optional[BatchStatus] = typer.Option(None, help="Filter by status"),
    source: Optional[BookSource] = typer.Option(None, help="Filter by source"),
    env: Optional[Environment] = typer.Option(None, "--env", help="Filter by environment"),
    search: Optional[str] = typer.Option(None, help="Search id, notes, booklist, operator"),
    page: int = typer.Option(1, help="Page number"),
    per_page: int = typer.Option(20, help="Rows per page"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """List import batches, newest first."""
    _setup_logging(log_level)
    flt = BatchFilter(
        status=status, source=source, environment=env.value if env else None, search=search
    )
    try:
        result = get_service().list_batches(flt, page, per_page)
    except ImportCoreError as e:
        _fail(e)

    table = Table(title=f"Batches (page {result.page}, {result.total} total)")
    table.add_column("Batch")
    table.add_column("Env")
    table.add_column("Source")
    table.add_column("Status")
    table.add_column("Books", justify="right")
    table.add_column("OK", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Created")
    for b in result.items:
        table.add_row(
            b.id,
            b.environment,
            b.source.value,
            b.status.value,
            f"{b.processed_books}/{b.total_books}",
            str(b.success_books),
            str(b.failed_books),
            b.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command()
def stats(
    days: int = typer.Option(7, help="Days of activity to show"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """Show batch totals and daily activity."""
    _setup_logging(log_level)
    service = get_service()
    try:
        s = service.batch_stats()
        activity = service.activity(days)
    except ImportCoreError as e:
        _fail(e)

    console.print(f"[bold]Batches:[/bold]  {s.total_batches}")
    for status_name, count in sorted(s.by_status.items()):
        console.print(f"  {status_name:<12} {count}")
    console.print(
        f"[bold]Recent:[/bold]   today={s.recent_batches.today} "
        f"week={s.recent_batches.this_week} month={s.recent_batches.this_month}"
    )
    console.print(f"[bold]Books:[/bold]    imported={s.total_books_imported} failed={s.total_books_failed}")

    table = Table(title="Daily activity")
    table.add_column("Date")
    table.add_column("Imported", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Skipped", justify="right")
    for day in activity:
        table.add_row(day.date, str(day.imported), str(day.failed), str(day.skipped))
    console.print(table)


@app.command()
def health(
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """Show import health metrics and active alerts."""
    _setup_logging(log_level)
    try:
        report = get_service().health()
    except ImportCoreError as e:
        _fail(e)

    color = _HEALTH_COLOR[report.status]
    console.print(f"[bold]Health:[/bold] [{color}]{report.status.value}[/{color}]")
    m = report.metrics
    table = Table(title="Metrics")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Books / minute", f"{m.books_per_minute:.2f}")
    table.add_row("Avg process time (ms)", f"{m.average_process_time:.0f}")
    table.add_row("Success rate", f"{m.success_rate:.1f}%")
    table.add_row("Error rate", f"{m.error_rate:.1f}%")
    table.add_row("Duplicate rate", f"{m.duplicate_rate:.1f}%")
    table.add_row("Active batches", str(m.active_batches))
    table.add_row("Pending batches", str(m.pending_batches))
    table.add_row("Imported today", str(m.total_books_today))
    table.add_row("Failed today", str(m.failed_books_today))
    table.add_row("Current batch", f"{m.current_batch_progress:.1f}%")
    console.print(table)

    for alert in report.alerts:
        c = _SEVERITY_COLOR[alert.severity]
        console.print(f"[{c}]{alert.severity.value.upper()}[/{c}] {alert.rule}: {alert.message}")
    if report.status == HealthState.UNHEALTHY:
        raise typer.Exit(2)


@app.command()
def forget(
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """Drop the cached current run without touching the run itself."""
    _setup_logging(log_level)
    get_cache().evict()
    console.print("[green]✓ Cleared cached run[/green]")


if __name__ == "__main__":
    app()
