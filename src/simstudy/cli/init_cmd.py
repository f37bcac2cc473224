# Copyright (c) Syntropy Systems
"""simstudy init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from simstudy.config import PROJECT_DIR_NAME, SimStudyConfig

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
) -> None:
    """Initialize a new simstudy project.

    Creates a .simstudy directory with configuration and a result cache.
    """
    target = path.resolve()
    project_dir = target / PROJECT_DIR_NAME

    if project_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {project_dir}")
        return

    project_dir.mkdir(parents=True)
    cache_dir = project_dir / "cache"
    cache_dir.mkdir()

    config_path = project_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.dump(SimStudyConfig().to_dict(), f, default_flow_style=False)

    console.print(f"[green]Initialized simstudy project:[/green] {project_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]cache:[/dim] {cache_dir}")
