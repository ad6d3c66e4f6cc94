"""ParallelDB CLI and entry points."""

import asyncio
from pathlib import Path
from typing import Optional

import typer
import structlog
from rich.console import Console
from rich.table import Table

from .config import get_settings
from .core.logging import configure_logging
from .core.messaging import message_broker
from .exceptions import PromotionFailed, ValidationFailure
from .forks.manager import ForkLifecycleManager
from .orchestrator import Orchestrator
from .schemas.run import OptimizationRun, SchedulingMode

configure_logging()

logger = structlog.get_logger(__name__)

app = typer.Typer(
    name="paralleldb",
    help="Run competing database optimization strategies on zero-copy forks",
)
console = Console()


def _print_run(run: OptimizationRun) -> None:
    table = Table(title=f"Optimization Run {run.run_id[:8]}")
    table.add_column("Universe", style="cyan")
    table.add_column("Strategy", style="cyan")
    table.add_column("Status")
    table.add_column("Improvement", justify="right", style="green")
    table.add_column("Baseline ms", justify="right")
    table.add_column("Optimized ms", justify="right")
    table.add_column("Changes", justify="right")
    table.add_column("Fork")

    for result in run.results:
        status = "[green]complete[/green]" if result.is_complete else "[red]failed[/red]"
        if result.strategy_id == run.winner_strategy_id:
            status += " [bold yellow]★[/bold yellow]"
        improvement = f"{result.improvement_percent:.0f}%" if result.is_complete else "-"
        if result.simulated:
            improvement += " (sim)"
        fork = result.fork_id or "-"
        if result.is_fallback:
            fork += " (shared)"
        table.add_row(
            f"{result.symbol or ''} {result.universe or ''}".strip(),
            result.strategy_id,
            status,
            improvement,
            "-" if result.baseline_latency_ms is None else f"{result.baseline_latency_ms:.2f}",
            "-" if result.optimized_latency_ms is None else f"{result.optimized_latency_ms:.2f}",
            str(len(result.applied_changes)),
            fork,
        )

    console.print(table)

    for result in run.results:
        if result.error:
            console.print(f"[red]{result.strategy_id}: {result.error}[/red]")

    winner = run.winner
    if winner is None:
        console.print("[yellow]No strategy completed; nothing to promote[/yellow]")
    else:
        console.print(
            f"[bold green]Winner: {winner.strategy_id}[/bold green] "
            f"({winner.improvement_percent:.0f}% faster)"
        )
        if winner.summary:
            console.print(winner.summary)
        for change in winner.applied_changes:
            console.print(f"  - {change}")

    if run.cost_summary:
        cost = run.cost_summary
        console.print(
            f"Forks: {cost.fork_count}, traditional ${cost.traditional_cost:.2f} vs "
            f"zero-copy ${cost.actual_cost:.2f} ({cost.savings_multiplier}x cheaper)"
        )


@app.command()
def optimize(
    problem: str = typer.Argument(..., help="Description of the performance problem"),
    strategy: Optional[list[str]] = typer.Option(
        None, "--strategy", "-s", help="Strategy to run (repeatable, default: all)"
    ),
    mode: Optional[SchedulingMode] = typer.Option(None, help="Scheduling mode override"),
):
    """Run competing strategies and report the winner."""
    console.print("[bold blue]Starting optimization run[/bold blue]")

    async def _run():
        async with message_broker():
            orchestrator = Orchestrator.from_settings()
            try:
                return await orchestrator.optimize(problem, strategies=strategy or None, mode=mode)
            finally:
                # The process is exiting; skip the grace period
                await orchestrator.shutdown(teardown_now=True)

    try:
        run = asyncio.run(_run())
    except ValidationFailure as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(2)

    _print_run(run)


@app.command()
def promote(
    fork_id: str = typer.Argument(..., help="Fork whose changes are promoted"),
    change: Optional[list[str]] = typer.Option(
        None, "--change", "-c", help="SQL statement to apply (repeatable, in order)"
    ),
    file: Optional[Path] = typer.Option(None, help="File with one SQL statement per line"),
):
    """Apply a fork's changes to production in one transaction."""
    changes = list(change or [])
    if file is not None:
        try:
            lines = file.read_text().splitlines()
        except FileNotFoundError:
            console.print(f"[red]File not found: {file}[/red]")
            raise typer.Exit(1)
        changes.extend(line.strip() for line in lines if line.strip() and not line.startswith("--"))

    async def _run():
        orchestrator = Orchestrator.from_settings()
        async with message_broker():
            return await orchestrator.promote(fork_id, changes)

    try:
        outcome = asyncio.run(_run())
    except ValidationFailure as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(2)
    except PromotionFailed as e:
        console.print(f"[red]Promotion rolled back: {e}[/red]")
        if e.statement:
            console.print(f"Statement: {e.statement}")
        raise typer.Exit(1)

    console.print(
        f"[green]Promoted {outcome.applied_count} change(s) from {outcome.fork_id}[/green] "
        f"at {outcome.timestamp.isoformat()}"
    )


@app.command()
def forks():
    """List forks of the configured service."""
    manager = ForkLifecycleManager.from_settings()
    if not manager.provisioning_enabled:
        console.print("[yellow]Fork provisioning is disabled[/yellow]")
        return

    fork_ids = asyncio.run(manager.list_forks())

    table = Table(title="Forks")
    table.add_column("Fork ID", style="cyan")
    for fork_id in fork_ids:
        table.add_row(fork_id)
    console.print(table)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address (default from settings)"),
    port: Optional[int] = typer.Option(None, help="Port (default from settings)"),
):
    """Start the HTTP API."""
    import uvicorn

    from .api import create_app

    settings = get_settings()
    host = host or settings.api.host
    port = port or settings.api.port

    console.print(f"[bold blue]Starting ParallelDB API on {host}:{port}[/bold blue]")
    uvicorn.run(create_app(), host=host, port=port)


@app.command()
def config():
    """Show current configuration."""
    settings = get_settings()

    table = Table(title="ParallelDB Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Database configured", str(bool(settings.database.url)))
    table.add_row("Tiger CLI enabled", str(settings.tiger.enabled))
    table.add_row("Tiger CLI path", settings.tiger.cli_path)
    table.add_row("Tiger service ID", settings.tiger.service_id or "-")
    table.add_row("Fork create timeout", f"{settings.tiger.create_timeout_seconds}s")
    table.add_row("Scheduling mode", settings.orchestrator.mode)
    table.add_row("Teardown grace", f"{settings.orchestrator.teardown_grace_seconds}s")
    table.add_row("Advisory model", settings.openai.model if settings.openai.api_key else "disabled")
    table.add_row("Events enabled", str(settings.rabbitmq.enabled))
    table.add_row("API", f"{settings.api.host}:{settings.api.port}")

    console.print(table)


if __name__ == "__main__":
    app()
