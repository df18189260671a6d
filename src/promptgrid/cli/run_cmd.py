# Copyright (c) Syntropy Systems
"""promptgrid run command."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, cast

import typer
from rich.table import Table

from promptgrid.aggregate import ResultsAggregator
from promptgrid.cli.common import (
    console,
    format_output,
    format_status,
    load_pipeline,
    load_project,
    matching_units,
    open_store,
    parse_selection,
    resolve_namespace,
)
from promptgrid.cli.export import check_export_path, write_export
from promptgrid.generation import GenerationClient
from promptgrid.scheduler import ExecutionScheduler, UnitBoard

if TYPE_CHECKING:
    from promptgrid.combine import PipelineConfig
    from promptgrid.config import GridConfig
    from promptgrid.models.base import JSONValue
    from promptgrid.models.pipeline import PipelineState
    from promptgrid.scheduler import BatchReport
    from promptgrid.snapshot import SnapshotStore

logger = logging.getLogger(__name__)


def request_defaults(config: GridConfig, pipeline: PipelineConfig) -> dict[str, JSONValue]:
    """Body fields sent with every request: config first, pipeline settings on top."""
    defaults: dict[str, JSONValue] = {}
    if config.temperature is not None:
        defaults["temperature"] = config.temperature
    if config.max_output_tokens is not None:
        defaults["maxOutputTokens"] = config.max_output_tokens
    for key, value in pipeline.settings.items():
        defaults[key] = cast("JSONValue", value)
    return defaults


class _Progress:
    """Prints a line whenever a unit finishes."""

    def __init__(self) -> None:
        self._running: set[str] = set()

    def __call__(self, state: PipelineState) -> None:
        for unit in state.units:
            if unit.is_running:
                self._running.add(unit.id)
            elif unit.id in self._running:
                self._running.discard(unit.id)
                if unit.result is not None and unit.result.success:
                    console.print(f"  [green]done[/green] {unit.name}")
                elif unit.result is not None:
                    console.print(f"  [red]failed[/red] {unit.name}: {unit.result.error}")


async def execute(
    pipeline: PipelineConfig,
    store: SnapshotStore,
    client: GenerationClient,
    *,
    concurrency: int,
    selection: list[tuple[str, str]],
    lock: bool,
) -> tuple[ResultsAggregator, BatchReport]:
    """Run a pipeline's units and optionally lock the successful ones."""
    board = UnitBoard(pipeline.to_state())
    unsubscribe = board.subscribe(_Progress())
    scheduler = ExecutionScheduler(board, client, snapshots=store, concurrency=concurrency)
    aggregator = ResultsAggregator(scheduler)

    try:
        if selection:
            chosen = matching_units(aggregator, selection)
            report = await aggregator.run_selected(u.id for u in chosen)
        else:
            report = await aggregator.run_all()
    finally:
        unsubscribe()

    if lock:
        for unit_id in report.dispatched:
            unit = board.state.unit(unit_id)
            if unit is None or unit.result is None or not unit.result.success:
                continue
            if store.lock_unit(unit) is None:
                logger.warning("Could not lock %s", unit.name)

    return aggregator, report


def run(
    pipeline_file: Path = typer.Argument(
        ..., help="Pipeline YAML file", exists=True, dir_okay=False
    ),
    select: list[str] = typer.Option(
        [],
        "--select",
        help="Only run units with this variant, as DIMENSION=VARIANT (repeatable)",
    ),
    concurrency: int | None = typer.Option(
        None, "--concurrency", "-c", help="Units per batch (default from config)"
    ),
    endpoint: str | None = typer.Option(
        None, "--endpoint", "-e", help="Generation endpoint URL"
    ),
    lock: bool = typer.Option(
        False, "--lock", help="Lock every successful result after the run"
    ),
    export_path: Path | None = typer.Option(
        None, "--export", "-o", help="Write results to a .csv or .json file"
    ),
) -> None:
    """Run every visible, unlocked combination of a pipeline.

    Units run in batches; each batch must finish before the next starts.

    Examples:
        promptgrid run pipeline.yaml
        promptgrid run pipeline.yaml --select model=gpt-4o --lock
        promptgrid run pipeline.yaml -c 5 -o results.json

    """
    if export_path is not None:
        check_export_path(export_path)

    try:
        selection = parse_selection(select)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    project_dir, config = load_project()
    pipeline = load_pipeline(pipeline_file)
    store = open_store(project_dir, resolve_namespace(pipeline, config))

    batch_size = concurrency if concurrency is not None else config.concurrency
    if batch_size < 1:
        console.print("[red]Error:[/red] --concurrency must be at least 1")
        raise typer.Exit(1)

    url = endpoint or config.endpoint
    console.print(f"[bold]Running[/bold] {pipeline.name} against {url}")

    async def _main() -> tuple[ResultsAggregator, BatchReport]:
        async with GenerationClient(
            url,
            timeout=float(config.request_timeout),
            defaults=request_defaults(config, pipeline),
        ) as client:
            return await execute(
                pipeline,
                store,
                client,
                concurrency=batch_size,
                selection=selection,
                lock=lock,
            )

    aggregator, report = asyncio.run(_main())

    table = Table(show_header=True, header_style="bold")
    table.add_column("Unit")
    table.add_column("Status")
    table.add_column("Time", justify="right")
    table.add_column("Result")
    for view in aggregator.views():
        result = view.result
        duration = f"{result.duration_seconds:.1f}s" if result else "-"
        table.add_row(view.unit.name, format_status(view), duration, format_output(view))
    console.print()
    console.print(table)

    console.print(
        f"\n[dim]{len(report.dispatched)} run in {report.batches} batch(es), "
        f"{len(report.failed)} failed, {len(report.skipped_locked)} skipped (locked)[/dim]"
    )

    if export_path is not None:
        write_export(aggregator.export(), export_path)
        console.print(f"[green]Exported results to {export_path}[/green]")

    if report.failed:
        raise typer.Exit(1)
