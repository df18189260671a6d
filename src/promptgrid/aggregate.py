# Copyright (c) Syntropy Systems
"""Sorted, selectable and lock-aware views over execution units."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from promptgrid.combine import NAME_SEPARATOR
from promptgrid.models.pipeline import UnitStatus, status_of
from promptgrid.models.snapshot import SnapshotState

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from promptgrid.models.base import JSONValue
    from promptgrid.models.pipeline import ExecutionUnit, Result
    from promptgrid.scheduler import BatchReport, ExecutionScheduler, UnitBoard
    from promptgrid.snapshot import SnapshotStore

SORT_STATUS = "status"

ResultLookup = Callable[["ExecutionUnit"], "Result | None"]


def _live_result(unit: ExecutionUnit) -> Result | None:
    return unit.result


def sorted_view(
    units: Sequence[ExecutionUnit],
    sort_key: str,
    result_for: ResultLookup = _live_result,
) -> list[ExecutionUnit]:
    """Stable sort by a dimension's variant name or by status.

    Status order is running, success, error, not run. Ties keep their
    original order.
    """
    if sort_key == SORT_STATUS:
        return sorted(
            units,
            key=lambda u: status_of(u.is_running, result_for(u)).priority,
        )

    for unit in units:
        if sort_key not in unit.variants:
            msg = f"Unknown sort key '{sort_key}'"
            raise ValueError(msg)
    return sorted(units, key=lambda u: u.variants[sort_key].name)


def select_by_dimension_value(
    units: Iterable[ExecutionUnit],
    dimension_key: str,
    value: str,
    current: frozenset[str] = frozenset(),
) -> frozenset[str]:
    """Select every unit whose variant on a dimension is named ``value``.

    When all matching units are already selected the selection is cleared
    instead, so repeating the same pick toggles it off.
    """
    matching = frozenset(
        u.id
        for u in units
        if dimension_key in u.variants and u.variants[dimension_key].name == value
    )
    if matching and matching <= current:
        return frozenset()
    return matching


def toggle_selection(current: frozenset[str], unit_id: str) -> frozenset[str]:
    """Add or remove a single unit from a selection."""
    if unit_id in current:
        return current - {unit_id}
    return current | {unit_id}


@dataclass(frozen=True)
class UnitView:
    """A unit as it should be displayed."""

    unit: ExecutionUnit
    result: Result | None
    state: SnapshotState = SnapshotState.UNLOCKED

    @property
    def locked(self) -> bool:
        return self.state is not SnapshotState.UNLOCKED

    @property
    def drifted(self) -> bool:
        return self.state is SnapshotState.DRIFTED

    @property
    def status(self) -> UnitStatus:
        # Locked units never show a spinner.
        if self.locked:
            return status_of(False, self.result)
        return status_of(self.unit.is_running, self.result)


@dataclass
class GridSummary:
    """Counts for a status line."""

    total: int = 0
    running: int = 0
    succeeded: int = 0
    failed: int = 0
    not_run: int = 0
    locked: int = 0
    drifted: int = 0


@dataclass
class GridRow:
    """One row of a results grid: units sharing the row dimensions."""

    label: str
    cells: dict[str, UnitView] = field(default_factory=dict)


class ResultsAggregator:
    """Lock-aware views and bulk runs over the units on a board."""

    def __init__(
        self,
        scheduler: ExecutionScheduler,
        snapshots: SnapshotStore | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.snapshots = snapshots if snapshots is not None else scheduler.snapshots

    @property
    def board(self) -> UnitBoard:
        return self.scheduler.board

    def _units(self, units: Sequence[ExecutionUnit] | None) -> Sequence[ExecutionUnit]:
        return self.board.units if units is None else units

    def effective_result(self, unit: ExecutionUnit) -> Result | None:
        if self.snapshots is None:
            return unit.result
        return self.snapshots.effective_result(unit)

    def view(self, unit: ExecutionUnit) -> UnitView:
        if self.snapshots is None:
            return UnitView(unit=unit, result=unit.result)
        return UnitView(
            unit=unit,
            result=self.snapshots.effective_result(unit),
            state=self.snapshots.state(unit),
        )

    def views(self, units: Sequence[ExecutionUnit] | None = None) -> list[UnitView]:
        return [self.view(u) for u in self._units(units)]

    def sorted_view(
        self,
        sort_key: str,
        units: Sequence[ExecutionUnit] | None = None,
    ) -> list[ExecutionUnit]:
        """Sort using locked results where a snapshot overrides the live one."""
        return sorted_view(self._units(units), sort_key, self.effective_result)

    def select_by_dimension_value(
        self,
        dimension_key: str,
        value: str,
        current: frozenset[str] = frozenset(),
    ) -> frozenset[str]:
        return select_by_dimension_value(self.board.units, dimension_key, value, current)

    async def run_selected(self, selection: Iterable[str]) -> BatchReport:
        """Run the selected units in board order."""
        wanted = set(selection)
        units = [u for u in self.board.units if u.id in wanted]
        return await self.scheduler.run_all(units)

    async def run_all(self) -> BatchReport:
        return await self.scheduler.run_all()

    def summary(self, units: Sequence[ExecutionUnit] | None = None) -> GridSummary:
        summary = GridSummary()
        for view in self.views(units):
            summary.total += 1
            status = view.status
            if status is UnitStatus.RUNNING:
                summary.running += 1
            elif status is UnitStatus.SUCCESS:
                summary.succeeded += 1
            elif status is UnitStatus.ERROR:
                summary.failed += 1
            else:
                summary.not_run += 1
            if view.locked:
                summary.locked += 1
            if view.drifted:
                summary.drifted += 1
        return summary

    def grid(
        self,
        row_keys: Sequence[str],
        units: Sequence[ExecutionUnit] | None = None,
    ) -> list[GridRow]:
        """Group units into rows by ``row_keys``; columns are the other names."""
        rows: dict[str, GridRow] = {}
        for view in self.views(units):
            variants = view.unit.variants
            label = " / ".join(variants[k].name for k in row_keys)
            column = NAME_SEPARATOR.join(
                v.name for k, v in variants.items() if k not in row_keys
            )
            row = rows.setdefault(label, GridRow(label=label))
            _ = row.cells.setdefault(column, view)
        return list(rows.values())

    def export(self, units: Sequence[ExecutionUnit] | None = None) -> list[dict[str, JSONValue]]:
        """Plain records of every unit's effective result."""
        records: list[dict[str, JSONValue]] = []
        for view in self.views(units):
            result = view.result
            record: dict[str, JSONValue] = {"thread": view.unit.name}
            for key, variant in view.unit.variants.items():
                record[key] = variant.name
            record["locked"] = view.locked
            record["result"] = result.output if result else None
            record["metadata"] = {
                "duration": result.duration_seconds if result else None,
                "tokens": result.usage.model_dump(by_alias=True) if result and result.usage else None,
                "error": result.error if result else None,
            }
            records.append(record)
        return records
