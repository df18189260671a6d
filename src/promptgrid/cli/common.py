# Copyright (c) Syntropy Systems
"""Helpers shared by promptgrid commands."""
from __future__ import annotations

from typing import TYPE_CHECKING

import typer
from rich.console import Console

from promptgrid.aggregate import ResultsAggregator
from promptgrid.combine import PipelineConfig, find_name_collisions
from promptgrid.config import get_db_path, load_config, require_project_dir
from promptgrid.kv import SQLiteKeyValueStore, StorageError
from promptgrid.scheduler import ExecutionScheduler, UnitBoard
from promptgrid.snapshot import SnapshotStore

if TYPE_CHECKING:
    from pathlib import Path

    from promptgrid.aggregate import UnitView
    from promptgrid.config import GridConfig
    from promptgrid.models.pipeline import ExecutionUnit, Result

console = Console()

STATUS_STYLES = {
    "running": "blue",
    "success": "green",
    "error": "red",
    "not_run": "dim",
}


def load_project() -> tuple[Path, GridConfig]:
    """Find the project directory and its config, or exit with an error."""
    try:
        project_dir = require_project_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    return project_dir, load_config(project_dir)


def load_pipeline(path: Path) -> PipelineConfig:
    """Load a pipeline file, or exit with an error."""
    try:
        pipeline = PipelineConfig.from_yaml(path)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error loading pipeline:[/red] {e}")
        raise typer.Exit(1) from e

    for dimension, names in find_name_collisions(pipeline.dimensions).items():
        console.print(
            f"[yellow]Warning:[/yellow] dimension '{dimension}' repeats "
            f"{', '.join(repr(n) for n in names)}; units with those names share one lock"
        )
    return pipeline


def open_store(project_dir: Path, namespace: str) -> SnapshotStore:
    """Open the project's snapshot store, or exit with an error."""
    try:
        medium = SQLiteKeyValueStore(get_db_path(project_dir))
    except StorageError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    return SnapshotStore(medium, namespace)


def format_status(view: UnitView) -> str:
    """Status cell with lock markers."""
    status = view.status.value
    style = STATUS_STYLES.get(status, "white")
    text = f"[{style}]{status.replace('_', ' ')}[/{style}]"
    if view.drifted:
        text += " [yellow]locked (drifted)[/yellow]"
    elif view.locked:
        text += " [cyan]locked[/cyan]"
    return text


def format_output(view: UnitView, width: int = 60) -> str:
    """Short one-line preview of a unit's effective result."""
    result = view.result
    if result is None:
        return "-"
    if not result.success:
        return f"[red]{result.error}[/red]"
    text = str(result.output) if result.output is not None else ""
    text = " ".join(text.split())
    if len(text) > width:
        text = text[: width - 3] + "..."
    return text


def resolve_namespace(pipeline: PipelineConfig, config: GridConfig) -> str:
    """Snapshot namespace: the pipeline's own, then its name, then the config."""
    return pipeline.namespace or pipeline.name or config.namespace


async def _read_only(unit: ExecutionUnit) -> Result:
    msg = f"Refusing to run {unit.name}: this command only reads results"
    raise RuntimeError(msg)


def offline_aggregator(pipeline: PipelineConfig, store: SnapshotStore) -> ResultsAggregator:
    """Lock-aware views over a pipeline's units without running anything."""
    board = UnitBoard(pipeline.to_state())
    return ResultsAggregator(ExecutionScheduler(board, _read_only, snapshots=store))


def parse_selection(raw: list[str]) -> list[tuple[str, str]]:
    """Parse repeated ``DIMENSION=VARIANT`` options."""
    pairs: list[tuple[str, str]] = []
    for item in raw:
        if "=" not in item:
            msg = f"Invalid selection '{item}' (expected DIMENSION=VARIANT)"
            raise ValueError(msg)
        key, value = item.split("=", 1)
        pairs.append((key.strip(), value.strip()))
    return pairs


def matching_units(
    aggregator: ResultsAggregator,
    selection: list[tuple[str, str]],
) -> list[ExecutionUnit]:
    """Units on the board matching every ``(dimension, variant)`` pair."""
    chosen: frozenset[str] | None = None
    for key, value in selection:
        matched = aggregator.select_by_dimension_value(key, value)
        chosen = matched if chosen is None else chosen & matched
    if chosen is None:
        return list(aggregator.board.units)
    return [u for u in aggregator.board.units if u.id in chosen]
