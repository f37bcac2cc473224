# Copyright (c) Syntropy Systems
"""Main CLI entry point for simstudy."""

import typer

from simstudy.cli.cache import cache_app
from simstudy.cli.grid import grid
from simstudy.cli.init_cmd import init
from simstudy.cli.run import run

app = typer.Typer(
    name="simstudy",
    help=(
        "Monte Carlo simulation studies over parameter grids. "
        "Generate, analyze, repeat, summarize."
    ),
    no_args_is_help=True,
    add_completion=False,
)

# Register commands
_ = app.command()(init)
_ = app.command()(grid)
_ = app.command()(run)

# Register cache sub-app
app.add_typer(cache_app, name="cache")


if __name__ == "__main__":
    app()
