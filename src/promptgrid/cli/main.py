# Copyright (c) Syntropy Systems
"""Main CLI entry point for promptgrid."""

import logging

import typer
from rich.logging import RichHandler

from promptgrid.cli.combos import combos
from promptgrid.cli.common import console
from promptgrid.cli.export import export
from promptgrid.cli.init_cmd import init
from promptgrid.cli.locks import lock, locks, unlock
from promptgrid.cli.run_cmd import run

app = typer.Typer(
    name="promptgrid",
    help=(
        "Combinatorial prompt runs. Cross every variant, run the grid, "
        "lock the results worth keeping."
    ),
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Show debug logging"
    ),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


# Register commands
_ = app.command()(init)
_ = app.command()(combos)
_ = app.command()(run)
_ = app.command()(locks)
_ = app.command()(lock)
_ = app.command()(unlock)
_ = app.command(name="export")(export)


if __name__ == "__main__":
    app()
