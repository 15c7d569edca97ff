"""Command line interface for the lesson pipeline.

Commands:
    process FILE   Run one document through extract, evaluate and refine
    refresh        Re-evaluate every lesson of the current user not marked incomplete
    status         Show admission budgets and recorded provider metrics
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from Lesson_Pipeline.config.settings import AppSettings, load_settings
from Lesson_Pipeline.orchestration.orchestrator import PipelineOrchestrator, build_orchestrator
from Lesson_Pipeline.orchestration.state import ProgressEvent, ProgressLevel, SourceDocument
from Lesson_Pipeline.utils.logging import configure_logging, configure_tracing

app = typer.Typer(
    name="lesson-pipeline",
    help="Process educational documents through a rate-limited language model",
    rich_markup_mode="rich",
)
console = Console()

_LEVEL_STYLES = {
    ProgressLevel.INFO: "cyan",
    ProgressLevel.SUCCESS: "green",
    ProgressLevel.ERROR: "red",
}


def _bootstrap(environment: str | None) -> AppSettings:
    settings = load_settings(environment)
    configure_logging(settings=settings.logging)
    configure_tracing(settings.service_name, settings.telemetry)
    return settings


def _print_event(event: ProgressEvent) -> None:
    label = f"[{event.agent}] " if event.agent else ""
    console.print(Text(f"{label}{event.message}", style=_LEVEL_STYLES[event.level]))


def display_status(orchestrator: PipelineOrchestrator) -> None:
    """Render admission counters and per-provider metrics."""
    stats = orchestrator.stats()
    table = Table(title=f"Admission Controller: {stats.name}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")

    active_color = "red" if stats.active_requests >= stats.max_concurrent_requests else "green"
    table.add_row(
        "Active Requests",
        Text(f"{stats.active_requests}/{stats.max_concurrent_requests}", style=active_color),
    )
    table.add_row("Queue Length", str(stats.queue_length))
    table.add_row("Requests This Window", f"{stats.request_count}/{stats.max_requests_per_minute}")
    table.add_row("Tokens This Window", f"{stats.token_count}/{stats.max_tokens_per_minute}")
    table.add_row("Window Age", f"{stats.window_age_seconds:.1f}s")
    console.print(table)

    snapshot = orchestrator.metrics.snapshot()
    if not snapshot:
        console.print("No metric samples recorded yet", style="yellow")
        return
    metrics_table = Table(title="Provider Metrics")
    metrics_table.add_column("Provider", style="cyan")
    metrics_table.add_column("Requests")
    metrics_table.add_column("Avg Latency")
    metrics_table.add_column("Tokens")
    metrics_table.add_column("Errors")
    for provider, row in snapshot.items():
        metrics_table.add_row(
            provider,
            str(row.requests),
            f"{row.average_latency_ms:.0f}ms",
            str(row.tokens),
            Text(str(row.errors), style="red" if row.errors else "green"),
        )
    console.print(metrics_table)


@app.command()
def process(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Document to process"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
    env: Optional[str] = typer.Option(None, "--env", "-e", help="Environment (dev, staging, prod)"),
) -> None:
    """Run one document through the pipeline."""
    settings = _bootstrap(env)
    document = SourceDocument.from_path(file)
    if not as_json:
        console.print(Panel(f"Processing {document.name}", style="bold blue"))

    async def _run() -> int:
        orchestrator = build_orchestrator(settings)
        try:
            run = await orchestrator.process_one(document, on_event=None if as_json else _print_event)
        finally:
            await orchestrator.aclose()
        if as_json:
            console.print_json(json.dumps(run.result().to_dict()))
        elif run.error is not None:
            console.print(f"✗ {run.error.message}", style="red")
        else:
            console.print(f"✓ Lesson {run.lesson_id} complete", style="green")
        return 0 if run.succeeded else 1

    exit_code = asyncio.run(_run())
    if exit_code:
        raise typer.Exit(code=exit_code)


@app.command()
def refresh(
    env: Optional[str] = typer.Option(None, "--env", "-e", help="Environment (dev, staging, prod)"),
) -> None:
    """Re-evaluate and refine every lesson not marked incomplete, course by course."""
    settings = _bootstrap(env)
    console.print(Panel("Global Content Refresh", style="bold blue"))

    async def _run() -> int:
        orchestrator = build_orchestrator(settings)
        failures = 0
        try:
            async for event in orchestrator.process_all():
                _print_event(event)
                if event.level is ProgressLevel.ERROR:
                    failures += 1
        finally:
            await orchestrator.aclose()
        return failures

    failures = asyncio.run(_run())
    if failures:
        console.print(f"{failures} step(s) failed", style="yellow")


@app.command()
def status(
    env: Optional[str] = typer.Option(None, "--env", "-e", help="Environment (dev, staging, prod)"),
) -> None:
    """Show admission budgets and recorded metrics."""
    settings = _bootstrap(env)
    console.print(Panel("Lesson Pipeline Status", style="bold blue"))

    async def _run() -> None:
        orchestrator = build_orchestrator(settings)
        try:
            display_status(orchestrator)
        finally:
            await orchestrator.aclose()

    asyncio.run(_run())


def main() -> None:
    app()


if __name__ == "__main__":
    main()
