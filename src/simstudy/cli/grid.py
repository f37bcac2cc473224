# Copyright (c) Syntropy Systems
"""simstudy grid command."""
from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from simstudy.models.records import GroupKey
from simstudy.study import StudyDefinition

console = Console()


def grid(
    study_file: Path = typer.Argument(
        ...,
        help="Path to study definition YAML file",
        exists=True,
    ),
    limit: int = typer.Option(
        20,
        "--limit", "-l",
        help="Max conditions to show",
    ),
) -> None:
    r"""Preview the parameter grid of a study without running it.

    Example:

    \b
        simstudy grid study.yaml
        simstudy grid study.yaml --limit 50
    """
    try:
        study = StudyDefinition.from_yaml(study_file)
        rows = study.rows()
    except (OSError, ValueError) as e:
        console.print(f"[red]Error loading study:[/red] {e}")
        raise typer.Exit(1) from e

    if not rows:
        console.print("[yellow]Grid is empty: every condition was excluded[/yellow]")
        return

    counts: dict[GroupKey, int] = {}
    for row in rows:
        counts[row.key] = counts.get(row.key, 0) + 1

    axes = list(rows[0].params)
    table = Table(title=f"Grid: {study.name} ({study.grid.mode})")
    table.add_column("#", style="dim")
    for axis in axes:
        table.add_column(axis)
    table.add_column("Rows", justify="right")

    for i, (key, count) in enumerate(counts.items()):
        if i >= limit:
            break
        values = dict(key)
        table.add_row(str(i), *(str(values[axis]) for axis in axes), str(count))

    console.print(table)
    if len(counts) > limit:
        console.print(f"[dim]... {len(counts) - limit} more conditions[/dim]")
    console.print(
        f"\n[bold]{len(counts)} conditions[/bold], "
        f"[bold]{len(rows)} rows[/bold] ({study.grid.iterations} iterations each)"
    )
    if study.is_nested:
        console.print("[dim]Each row is one simulated literature (nested study)[/dim]")

