# Copyright (c) Syntropy Systems
"""Export command - write unit results to CSV/JSON."""
from __future__ import annotations

import csv
from pathlib import Path

import typer
from pydantic import TypeAdapter

from promptgrid.cli.common import (
    console,
    load_pipeline,
    load_project,
    offline_aggregator,
    open_store,
    resolve_namespace,
)
from promptgrid.models.base import JSONValue

_JSON_VALUE_ADAPTER = TypeAdapter(JSONValue)
_EXPORT_ADAPTER = TypeAdapter(list[dict[str, JSONValue]])

EXPORT_SUFFIXES = (".csv", ".json")


def _to_csv_value(value: JSONValue | None) -> str | float | None:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    if isinstance(value, (dict, list)):
        return _JSON_VALUE_ADAPTER.dump_json(value).decode("utf-8")
    return str(value)


def check_export_path(output: Path) -> None:
    """Exit early when the output format is not supported."""
    if output.suffix.lower() not in EXPORT_SUFFIXES:
        console.print("[red]Output must be .csv or .json[/red]")
        raise typer.Exit(1)


def write_export(records: list[dict[str, JSONValue]], output: Path) -> None:
    """Write export records as JSON, or as CSV with metadata flattened."""
    if output.suffix.lower() == ".json":
        _ = output.write_bytes(_EXPORT_ADAPTER.dump_json(records, indent=2))
        return

    fieldnames: list[str] = []
    rows: list[dict[str, str | float | None]] = []
    for record in records:
        row: dict[str, str | float | None] = {}
        for key, value in record.items():
            if key == "metadata" and isinstance(value, dict):
                for meta_key, meta_value in value.items():
                    row[f"metadata.{meta_key}"] = _to_csv_value(meta_value)
            else:
                row[key] = _to_csv_value(value)
        for key in row:
            if key not in fieldnames:
                fieldnames.append(key)
        rows.append(row)

    with output.open("w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)


def export(
    pipeline_file: Path = typer.Argument(
        ..., help="Pipeline YAML file", exists=True, dir_okay=False
    ),
    output: Path = typer.Argument(..., help="Output file path (.csv or .json)"),
    locked_only: bool = typer.Option(
        False, "--locked", "-l", help="Only export locked units"
    ),
) -> None:
    """Export the effective results of a pipeline's units to CSV or JSON.

    Every unit is exported unless --locked limits the output to locked units.

    Examples:
        promptgrid export pipeline.yaml results.json
        promptgrid export pipeline.yaml results.csv --locked

    """
    check_export_path(output)

    project_dir, config = load_project()
    pipeline = load_pipeline(pipeline_file)
    store = open_store(project_dir, resolve_namespace(pipeline, config))
    aggregator = offline_aggregator(pipeline, store)

    units = list(aggregator.board.units)
    if locked_only:
        units = [u for u in units if store.is_locked(u)]

    if not units:
        console.print("[yellow]No units to export[/yellow]")
        raise typer.Exit(0)

    records = aggregator.export(units)
    write_export(records, output)
    console.print(f"[green]Exported {len(records)} unit(s) to {output}[/green]")
