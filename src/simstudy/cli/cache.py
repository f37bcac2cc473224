# Copyright (c) Syntropy Systems
"""simstudy cache subcommands."""

import typer
from rich.console import Console

from simstudy.cache import ResultCache
from simstudy.config import get_cache_dir, require_project_dir

console = Console()

cache_app = typer.Typer(
    name="cache",
    help="Manage cached simulation results.",
    no_args_is_help=True,
)


@cache_app.command()
def clear() -> None:
    """Delete every cached result of the current project."""
    try:
        project_dir = require_project_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    removed = ResultCache(get_cache_dir(project_dir)).clear()
    console.print(f"[green]Removed {removed} cached result(s)[/green]")


@cache_app.command(name="list")
def list_entries() -> None:
    """List cached result keys of the current project."""
    try:
        project_dir = require_project_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    keys = ResultCache(get_cache_dir(project_dir)).keys()
    if not keys:
        console.print("[dim]No cached results[/dim]")
        return
    for key in keys:
        console.print(key)
    console.print(f"\n[bold]{len(keys)} cached result(s)[/bold]")
