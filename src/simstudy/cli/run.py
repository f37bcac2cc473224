# Copyright (c) Syntropy Systems
"""simstudy run command."""
from __future__ import annotations

import logging
import signal
from pathlib import Path
from threading import Event
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn
from rich.table import Table

from simstudy.aggregate import summary_table
from simstudy.cache import ResultCache, cached
from simstudy.config import find_project_dir, get_cache_dir, load_config
from simstudy.export import record_rows, write_rows
from simstudy.models.records import NestedSimulationResult, SimulationResult
from simstudy.study import StudyDefinition

if TYPE_CHECKING:
    from types import FrameType

    from simstudy.models.records import AggregateRecord
    from simstudy.study import StudyResult

console = Console()

# Cancellation event for Ctrl-C during a run
_cancel_event = Event()


def _signal_handler(signum: int, frame: Optional[FrameType]) -> None:
    """Handle SIGINT by cancelling between rows."""
    _ = (signum, frame)
    console.print("\n[yellow]Cancel requested, finishing rows in flight...[/yellow]")
    _cancel_event.set()


def setup_logging(level: str) -> None:
    """Route simstudy's loggers to a rich console handler."""
    handler = RichHandler(console=console, show_path=False, markup=False)
    logger = logging.getLogger("simstudy")
    logger.handlers = [handler]
    logger.setLevel(level)
    logger.propagate = False


def _fmt(value: float | None, spec: str = ".3f") -> str:
    if value is None:
        return "[dim]-[/dim]"
    return format(value, spec)


def _summary(aggregates: list[AggregateRecord], title: str) -> Table:
    table = Table(title=title)
    varying = [
        name
        for name in (aggregates[0].params if aggregates else {})
        if len({str(a.params.get(name)) for a in aggregates}) > 1
    ]
    for name in varying:
        table.add_column(name)
    table.add_column("Attempted", justify="right")
    table.add_column("Resolved", justify="right")
    table.add_column("Rejection", justify="right")
    table.add_column("Mean est.", justify="right")
    table.add_column("Bias", justify="right")
    table.add_column("Coverage", justify="right")
    metric_names = list(aggregates[0].metrics) if aggregates else []
    for name in metric_names:
        table.add_column(name, justify="right")

    for aggregate in aggregates:
        resolved = str(aggregate.resolved)
        if aggregate.resolved < aggregate.attempted:
            resolved = f"[yellow]{resolved}[/yellow]"
        table.add_row(
            *(str(aggregate.params.get(name)) for name in varying),
            str(aggregate.attempted),
            resolved,
            _fmt(aggregate.rejection_rate),
            _fmt(aggregate.mean_estimate),
            _fmt(aggregate.bias, "+.3f"),
            _fmt(aggregate.coverage),
            *(_fmt(aggregate.metrics[name]) for name in metric_names),
        )
    return table


def run(  # noqa: PLR0913, PLR0915
    study_file: Path = typer.Argument(
        ...,
        help="Path to study definition YAML file",
        exists=True,
    ),
    seed: Optional[int] = typer.Option(
        None,
        "--seed", "-s",
        help="Base seed (overrides study and project config)",
    ),
    workers: Optional[int] = typer.Option(
        None,
        "--workers", "-w",
        help="Parallel workers (1 = sequential)",
    ),
    executor: Optional[str] = typer.Option(
        None,
        "--executor", "-e",
        help="Worker pool: thread or process",
    ),
    stream: Optional[str] = typer.Option(
        None,
        "--stream",
        help="Random stream policy: per_row or shared",
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output", "-o",
        help="Write the summary table to a .csv or .json file",
    ),
    records_output: Optional[Path] = typer.Option(
        None,
        "--records",
        help="Write every result record to a .csv or .json file",
    ),
    no_cache: bool = typer.Option(
        False,
        "--no-cache",
        help="Ignore and do not update the result cache",
    ),
    keep_datasets: bool = typer.Option(
        False,
        "--keep-datasets",
        help="Keep generated datasets in memory (disables the cache)",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Log per-row failures and pipeline stages",
    ),
) -> None:
    r"""Run a simulation study and print its summary.

    Examples:

    \b
        simstudy run study.yaml
        simstudy run study.yaml --workers 4 --output summary.csv
        simstudy run study.yaml --seed 42 --no-cache
    """
    project_dir = find_project_dir()
    config = load_config(project_dir)
    setup_logging("DEBUG" if verbose else config.log_level)

    try:
        study = StudyDefinition.from_yaml(study_file)
        rows = study.rows()
    except (OSError, ValueError) as e:
        console.print(f"[red]Error loading study:[/red] {e}")
        raise typer.Exit(1) from e

    run_seed = seed if seed is not None else (study.seed if study.seed is not None else config.seed)
    run_workers = workers if workers is not None else config.workers
    run_executor = executor or config.executor
    run_stream = stream or config.stream

    use_cache = config.cache and not no_cache and not keep_datasets and project_dir is not None
    cache = ResultCache(get_cache_dir(project_dir)) if use_cache else None
    model = NestedSimulationResult if study.is_nested else SimulationResult

    _cancel_event.clear()
    previous_handler = signal.signal(signal.SIGINT, _signal_handler)
    try:
        key = study.cache_key(rows, run_seed, run_stream, config.alpha)
        with Progress(
            TextColumn("[bold]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=console,
            transient=True,
        ) as progress:
            task_id = progress.add_task(study.name, total=len(rows))

            def _advance(done: int, total: int) -> None:
                progress.update(task_id, completed=done, total=total)

            def _compute() -> StudyResult:
                return study.run(
                    rows,
                    run_seed,
                    alpha=config.alpha,
                    workers=run_workers,
                    executor=run_executor,
                    stream=run_stream,
                    keep_datasets=keep_datasets,
                    cancel=_cancel_event,
                    progress=_advance,
                )

            result, hit = cached(cache, key, _compute, model)  # type: ignore[arg-type]
        aggregates = study.summarize(result, config.alpha)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        _ = signal.signal(signal.SIGINT, previous_handler)

    console.print(f"\n[bold]Study: {study.name}[/bold]")
    console.print(f"  [dim]seed:[/dim] {run_seed}")
    console.print(f"  [dim]rows:[/dim] {len(rows)}")
    console.print(f"  [dim]analysis:[/dim] {study.default_analysis()}")
    if hit:
        console.print("  [dim]cache:[/dim] hit")
    if result.cancelled:
        console.print("[yellow]Cancelled: summary covers completed rows only[/yellow]")

    if aggregates:
        console.print(_summary(aggregates, f"Summary: {study.name}"))
    else:
        console.print("[yellow]No records to summarize[/yellow]")

    try:
        if output is not None:
            write_rows(summary_table(aggregates), output)
            console.print(f"[green]Exported {len(aggregates)} condition(s) to {output}[/green]")
        if records_output is not None:
            records = result.records(study.default_analysis())
            write_rows(record_rows(records), records_output)
            console.print(f"[green]Exported {len(records)} record(s) to {records_output}[/green]")
    except (OSError, ValueError) as e:
        console.print(f"[red]Error exporting:[/red] {e}")
        raise typer.Exit(1) from e
