# Copyright (c) Syntropy Systems
"""promptgrid combos command."""

from pathlib import Path
from typing import Optional

import typer
from rich.table import Table

from promptgrid.aggregate import SORT_STATUS
from promptgrid.cli.common import (
    console,
    format_output,
    format_status,
    load_pipeline,
    load_project,
    offline_aggregator,
    open_store,
    resolve_namespace,
)
from promptgrid.combine import combination_count


def combos(
    pipeline_file: Path = typer.Argument(
        ...,
        help="Pipeline YAML file",
        exists=True,
        dir_okay=False,
    ),
    sort: Optional[str] = typer.Option(
        None,
        "--sort",
        "-s",
        help=f"Sort by a dimension key or '{SORT_STATUS}'",
    ),
) -> None:
    """List the execution units a pipeline produces.

    Shows each unit's lock state and the frozen result when it is locked.
    """
    project_dir, config = load_project()
    pipeline = load_pipeline(pipeline_file)
    store = open_store(project_dir, resolve_namespace(pipeline, config))
    aggregator = offline_aggregator(pipeline, store)

    units = list(aggregator.board.units)
    if sort:
        try:
            units = aggregator.sorted_view(sort)
        except ValueError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from e

    if not units:
        console.print("[dim]No units (a dimension has no visible variants)[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", style="dim")
    for key in aggregator.board.state.dimension_keys:
        table.add_column(key)
    table.add_column("Status")
    table.add_column("Result")

    for i, view in enumerate(aggregator.views(units), start=1):
        names = [v.name for v in view.unit.variants.values()]
        table.add_row(str(i), *names, format_status(view), format_output(view))

    console.print(table)

    summary = aggregator.summary(units)
    line = f"{combination_count(pipeline.dimensions)} unit(s), {summary.locked} locked"
    if summary.drifted:
        line += f", {summary.drifted} drifted"
    console.print(f"\n[dim]{line}[/dim]")
