"""
Typer CLI for the learnloop pipeline.

Commands:
    learnloop db init                   - Create database tables
    learnloop input submit TEXT         - Store an input and queue its generation
    learnloop feedback add OUTPUT ACT   - Record feedback on an output
    learnloop output regenerate OUTPUT  - Queue a new version of an output
    learnloop worker run                - Run the worker pool
    learnloop worker drain              - Execute ready jobs, then exit
    learnloop dlq list                  - List dead-lettered jobs
    learnloop dlq requeue ID            - Requeue one dead-lettered job
    learnloop dlq requeue-bulk ID...    - Requeue several dead-lettered jobs
    learnloop dlq archive               - Archive records past the retention window
    learnloop dlq stats                 - Failure analysis and alerts
    learnloop breaker status            - Circuit breaker states

Usage:
    learnloop --help
    learnloop worker run --concurrency 8
    learnloop dlq list --category rate_limit
"""

from __future__ import annotations

import asyncio
import signal
import sys

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from config import get_settings
from learnloop import __version__

app = typer.Typer(
    help="learnloop CLI: feedback-driven generation, retrieval and job reliability",
    no_args_is_help=True,
)

console = Console()


# ========================================
# Context Builder (Dependency Injection)
# ========================================


class CLIContext:
    """
    Dependency injection container for CLI commands.

    Lazily builds the pipeline so `db init` works before any table exists.
    """

    def __init__(self) -> None:
        self.settings = get_settings()
        self._pipeline = None

    @property
    def pipeline(self):
        if self._pipeline is None:
            from learnloop.jobs.pipeline import LearningPipeline

            self._pipeline = LearningPipeline()
        return self._pipeline


# ========================================
# Database Commands
# ========================================

db_app = typer.Typer(help="Database management")
app.add_typer(db_app, name="db")


@db_app.command("init")
def db_init() -> None:
    """
    Create all tables from the SQLAlchemy models.

    Safe to run multiple times.
    """
    from learnloop.db.database import init_db

    logger.info("Initializing database tables...")
    init_db()
    rprint("[green]✓[/green] Database initialized!")


# ========================================
# Input / Feedback Commands
# ========================================

input_app = typer.Typer(help="Submit inputs for generation")
app.add_typer(input_app, name="input")


@input_app.command("submit")
def input_submit(
    content: str = typer.Argument(..., help="Raw input text"),
    output_kind: str = typer.Option("summary", "--kind", "-k", help="Kind of output to generate"),
    tier: str = typer.Option(None, "--tier", "-t", help="Queue tier (urgent, high, medium, low)"),
    source: str = typer.Option("manual", "--source", help="Where the input came from"),
) -> None:
    """Store an input and queue its output generation."""
    ctx = CLIContext()
    input_id, job = ctx.pipeline.submit_input(content, source=source, output_kind=output_kind, tier=tier)
    if job is None:
        rprint(f"[yellow]⚠[/yellow] Input {input_id} stored; generation already queued or running")
    else:
        rprint(f"[green]✓[/green] Input {input_id} stored; job {job.id} queued on {job.tier.value}")


feedback_app = typer.Typer(help="Record feedback on outputs")
app.add_typer(feedback_app, name="feedback")


@feedback_app.command("add")
def feedback_add(
    output_id: int = typer.Argument(..., help="Output id"),
    action: str = typer.Argument(..., help="accept, edit, reject, copy or a passive signal"),
    user_id: int = typer.Option(..., "--user", "-u", help="User giving the feedback"),
    confidence: float = typer.Option(None, "--confidence", "-c", help="Confidence in [0, 1]"),
    correction: str = typer.Option(None, "--correction", help="Corrected content for edits"),
    reason: str = typer.Option(None, "--reason", help="Why the output was edited"),
) -> None:
    """Record feedback and queue learning for the output."""
    from learnloop.errors import LearnLoopError

    ctx = CLIContext()
    try:
        feedback = ctx.pipeline.submit_feedback(
            output_id, user_id, action, confidence=confidence, correction=correction, edit_reason=reason
        )
    except LearnLoopError as e:
        rprint(f"[red]✗[/red] {e}")
        raise typer.Exit(code=1)
    rprint(f"[green]✓[/green] Feedback {feedback.id} recorded ({feedback.action}, confidence {feedback.confidence})")


output_app = typer.Typer(help="Manage generated outputs")
app.add_typer(output_app, name="output")


@output_app.command("regenerate")
def output_regenerate(
    output_id: int = typer.Argument(..., help="Output to regenerate"),
    tier: str = typer.Option("high", "--tier", "-t", help="Queue tier"),
) -> None:
    """Queue a new version of an output, linked to it as parent."""
    from learnloop.errors import EntityNotFoundError

    ctx = CLIContext()
    try:
        job = ctx.pipeline.regenerate(output_id, tier=tier)
    except EntityNotFoundError as e:
        rprint(f"[red]✗[/red] {e}")
        raise typer.Exit(code=1)
    if job is None:
        rprint("[yellow]⚠[/yellow] Generation already queued or running")
    else:
        rprint(f"[green]✓[/green] Regeneration queued as job {job.id}")


# ========================================
# Worker Commands
# ========================================

worker_app = typer.Typer(help="Run job workers")
app.add_typer(worker_app, name="worker")


@worker_app.command("run")
def worker_run(
    concurrency: int = typer.Option(None, "--concurrency", "-n", help="Number of concurrent workers"),
) -> None:
    """Run the worker pool until interrupted."""
    ctx = CLIContext()
    pool = ctx.pipeline.worker_pool(concurrency=concurrency)

    async def _run() -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass
        await pool.run(stop)

    rprint(f"[cyan]Starting {pool.concurrency} workers (Ctrl+C to stop)[/cyan]")
    asyncio.run(_run())
    rprint(f"[green]✓[/green] Processed {pool.processed} jobs")


@worker_app.command("drain")
def worker_drain(
    max_jobs: int = typer.Option(None, "--max-jobs", help="Stop after this many jobs"),
) -> None:
    """Execute ready jobs one at a time until the queue has nothing ready."""
    ctx = CLIContext()
    outcomes = asyncio.run(ctx.pipeline.worker_pool().run_until_idle(max_jobs=max_jobs))

    table = Table(title=f"Executed {len(outcomes)} jobs", show_header=True)
    table.add_column("Job Type", style="cyan")
    table.add_column("Entity")
    table.add_column("Attempt", justify="right")
    table.add_column("Outcome")
    for outcome in outcomes:
        job = outcome.job
        style = "green" if outcome.ok else "yellow"
        table.add_row(
            job.job_type,
            f"{job.entity_type}:{job.entity_id}",
            str(job.attempt),
            f"[{style}]{outcome.status.value}[/{style}]",
        )
    console.print(table)


# ========================================
# Dead Letter Commands
# ========================================

dlq_app = typer.Typer(help="Inspect and recover dead-lettered jobs")
app.add_typer(dlq_app, name="dlq")


@dlq_app.command("list")
def dlq_list(
    category: str = typer.Option(None, "--category", "-c", help="Filter by failure category"),
    limit: int = typer.Option(50, "--limit", "-l", help="Maximum records to show"),
) -> None:
    """List dead-lettered jobs, newest first."""
    ctx = CLIContext()
    store = ctx.pipeline.dead_letters
    records = store.list_records(category=category, limit=limit)
    if not records:
        rprint("[green]✓[/green] Dead-letter queue is empty")
        return

    table = Table(title=f"Dead-lettered jobs ({len(records)})", show_header=True)
    table.add_column("ID", justify="right")
    table.add_column("Job Type", style="cyan")
    table.add_column("Entity")
    table.add_column("Category", style="magenta")
    table.add_column("Attempts", justify="right")
    table.add_column("Failed At", style="dim")
    table.add_column("Error")
    for record in records:
        table.add_row(
            str(record.id),
            record.job_type,
            f"{record.entity_type}:{record.entity_id}",
            record.category,
            str(record.attempts),
            record.failed_at.strftime("%Y-%m-%d %H:%M"),
            (record.exception or "")[:60],
        )
    console.print(table)


@dlq_app.command("requeue")
def dlq_requeue(record_id: int = typer.Argument(..., help="Dead-letter record id")) -> None:
    """Requeue one record with its attempt counter reset."""
    ctx = CLIContext()
    if ctx.pipeline.dead_letters.requeue(record_id):
        rprint(f"[green]✓[/green] Record {record_id} requeued")
    else:
        rprint(f"[red]✗[/red] Record {record_id} not found")
        raise typer.Exit(code=1)


@dlq_app.command("requeue-bulk")
def dlq_requeue_bulk(record_ids: list[int] = typer.Argument(..., help="Dead-letter record ids")) -> None:
    """Requeue several records."""
    ctx = CLIContext()
    count = ctx.pipeline.dead_letters.requeue_bulk(record_ids)
    rprint(f"[green]✓[/green] Requeued {count}/{len(record_ids)} records")


@dlq_app.command("archive")
def dlq_archive(
    older_than_days: int = typer.Option(None, "--older-than-days", help="Retention window in days"),
) -> None:
    """Move records older than the retention window to the archive."""
    ctx = CLIContext()
    moved = ctx.pipeline.dead_letters.archive(older_than_days)
    rprint(f"[green]✓[/green] Archived {moved} records")


@dlq_app.command("stats")
def dlq_stats() -> None:
    """Failure analysis by category, job type and day."""
    ctx = CLIContext()
    store = ctx.pipeline.dead_letters
    analysis = store.failure_analysis()

    rprint(f"[bold]Total failures:[/bold] {analysis['total_failures']}")

    table = Table(title="Failures by category", show_header=True)
    table.add_column("Category", style="magenta")
    table.add_column("Count", justify="right")
    table.add_column("Recovery Strategy", style="dim")
    for category, count in sorted(analysis["failure_by_category"].items(), key=lambda kv: -kv[1]):
        table.add_row(category, str(count), store.recovery_strategy(category))
    console.print(table)

    if analysis["most_common_errors"]:
        errors = Table(title="Most common errors", show_header=True)
        errors.add_column("Count", justify="right")
        errors.add_column("Error")
        for entry in analysis["most_common_errors"]:
            errors.add_row(str(entry["count"]), entry["error"][:80])
        console.print(errors)

    for alert in store.check_alerts():
        style = "red" if alert["level"] == "critical" else "yellow"
        rprint(f"[{style}]⚠ {alert['level'].upper()}[/{style}] {alert['message']}")


# ========================================
# Circuit Breaker Commands
# ========================================

breaker_app = typer.Typer(help="Circuit breaker state")
app.add_typer(breaker_app, name="breaker")


@breaker_app.command("status")
def breaker_status() -> None:
    """Show every circuit breaker known to this process."""
    from learnloop.reliability.circuit_breaker import get_registry

    CLIContext().pipeline  # registers the AI provider breaker
    breakers = get_registry().snapshot()

    table = Table(title="Circuit breakers", show_header=True)
    table.add_column("Name", style="cyan")
    table.add_column("State")
    table.add_column("Consecutive Failures", justify="right")
    table.add_column("Trials In Flight", justify="right")
    for entry in sorted(breakers, key=lambda b: b["name"]):
        table.add_row(entry["name"], entry["state"], str(entry["failure_count"]), str(entry["trials_in_flight"]))
    console.print(table)


@app.command("version")
def show_version() -> None:
    """Show version information."""
    rprint(f"[bold]learnloop[/bold] v{__version__}")


def main() -> None:
    """Entry point for the CLI."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=get_settings().log_level,
        format="<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {extra} | {message}",
    )
    app()


if __name__ == "__main__":
    main()
