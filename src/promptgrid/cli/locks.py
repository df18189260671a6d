# Copyright (c) Syntropy Systems
"""Lock management commands: locks, lock, unlock."""
from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from promptgrid.cli.common import (
    console,
    load_pipeline,
    load_project,
    matching_units,
    offline_aggregator,
    open_store,
    parse_selection,
    resolve_namespace,
)
from promptgrid.snapshot import key_for


def _selection_or_exit(select: list[str]) -> list[tuple[str, str]]:
    try:
        return parse_selection(select)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e


def locks(
    pipeline_file: Path | None = typer.Argument(
        None, help="Pipeline YAML file (default: list the config namespace)"
    ),
    namespace: str | None = typer.Option(
        None, "--namespace", "-n", help="Namespace to list"
    ),
) -> None:
    """List locked results.

    With a pipeline file, each lock is checked against the current pipeline:
    edited variants show as drifted and locks no unit produces show as orphaned.
    """
    project_dir, config = load_project()

    pipeline = None
    if pipeline_file is not None:
        pipeline = load_pipeline(pipeline_file)
        namespace = namespace or resolve_namespace(pipeline, config)
    namespace = namespace or config.namespace

    store = open_store(project_dir, namespace)
    snapshots = store.list_snapshots()

    if not snapshots:
        console.print(f"[dim]No locks in namespace '{namespace}'[/dim]")
        return

    units_by_key = {}
    if pipeline is not None:
        aggregator = offline_aggregator(pipeline, store)
        units_by_key = {store.key_for_unit(u): u for u in aggregator.board.units}

    table = Table(show_header=True, header_style="bold")
    table.add_column("Key")
    table.add_column("Locked at", style="dim")
    table.add_column("Result")
    if pipeline is not None:
        table.add_column("State")

    for snapshot in snapshots:
        if snapshot.result is None:
            result_text = "[dim]pending[/dim]"
        elif snapshot.result.success:
            result_text = "[green]success[/green]"
        else:
            result_text = "[red]error[/red]"

        row = [snapshot.key, snapshot.locked_at, result_text]
        if pipeline is not None:
            unit = units_by_key.get(snapshot.key)
            if unit is None:
                row.append("[dim]orphaned[/dim]")
            else:
                changed = store.unit_drift_fields(unit)
                if changed:
                    row.append(f"[yellow]drifted[/yellow] ({', '.join(changed)})")
                else:
                    row.append("[cyan]locked[/cyan]")
        table.add_row(*row)

    console.print(table)
    console.print(f"\n[dim]{len(snapshots)} lock(s) in namespace '{namespace}'[/dim]")


def lock(
    pipeline_file: Path = typer.Argument(
        ..., help="Pipeline YAML file", exists=True, dir_okay=False
    ),
    select: list[str] = typer.Option(
        [],
        "--select",
        help="Lock units with this variant, as DIMENSION=VARIANT (repeatable)",
    ),
) -> None:
    """Lock units so later runs skip them.

    Units are locked with no result here. Use ``run --lock`` to freeze the
    results a run produced.
    """
    selection = _selection_or_exit(select)
    project_dir, config = load_project()
    pipeline = load_pipeline(pipeline_file)
    store = open_store(project_dir, resolve_namespace(pipeline, config))
    aggregator = offline_aggregator(pipeline, store)

    locked = 0
    for unit in matching_units(aggregator, selection):
        if store.is_locked(unit):
            continue
        if store.lock_unit(unit) is None:
            console.print(f"[red]Could not lock[/red] {unit.name}")
            continue
        console.print(f"[cyan]Locked[/cyan] {unit.name}")
        locked += 1

    console.print(f"\n[dim]{locked} unit(s) locked[/dim]")


def unlock(
    pipeline_file: Path = typer.Argument(
        ..., help="Pipeline YAML file", exists=True, dir_okay=False
    ),
    select: list[str] = typer.Option(
        [],
        "--select",
        help="Unlock units with this variant, as DIMENSION=VARIANT (repeatable)",
    ),
    names: list[str] = typer.Option(
        [],
        "--names",
        help="Unlock the unit with these variant names, one per dimension in order",
    ),
    all_locks: bool = typer.Option(
        False, "--all", help="Unlock everything in the pipeline's namespace"
    ),
) -> None:
    """Remove locks so units run again.

    Examples:
        promptgrid unlock pipeline.yaml --all
        promptgrid unlock pipeline.yaml --select model=gpt-4o
        promptgrid unlock pipeline.yaml --names gpt-4o --names terse

    """
    selection = _selection_or_exit(select)
    if not (selection or names or all_locks):
        console.print("[red]Error:[/red] Pass --select, --names or --all")
        raise typer.Exit(1)

    project_dir, config = load_project()
    pipeline = load_pipeline(pipeline_file)
    store = open_store(project_dir, resolve_namespace(pipeline, config))

    if all_locks:
        removed = store.clear_namespace()
        console.print(f"[green]Removed {removed} lock(s)[/green]")
        return

    removed = 0
    if names:
        # Works for orphaned locks too, which no current unit produces.
        key = key_for(store.namespace, names)
        if store.read(key) is not None and store.unlock(key):
            removed += 1
        else:
            console.print(f"[yellow]No lock for[/yellow] {' / '.join(names)}")

    if selection:
        aggregator = offline_aggregator(pipeline, store)
        for unit in matching_units(aggregator, selection):
            if store.is_locked(unit) and store.unlock_unit(unit):
                console.print(f"Unlocked {unit.name}")
                removed += 1

    console.print(f"[green]Removed {removed} lock(s)[/green]")
