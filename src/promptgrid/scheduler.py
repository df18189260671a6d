# Copyright (c) Syntropy Systems
"""Bounded-concurrency execution of units against a generation endpoint."""
from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, TypeVar

from promptgrid.combine import generate_units
from promptgrid.models.pipeline import ExecutionUnit, PipelineState, Result

if TYPE_CHECKING:
    from collections.abc import Awaitable, Iterable, Iterator, Sequence

    from promptgrid.models.pipeline import StageThreadList
    from promptgrid.snapshot import SnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3

T = TypeVar("T")
RunOne = Callable[[ExecutionUnit], "Awaitable[Result]"]
IsLocked = Callable[[ExecutionUnit], bool]
Listener = Callable[[PipelineState], None]


def batched(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Split items into consecutive lists of at most ``size``."""
    iterator = iter(items)
    while batch := list(itertools.islice(iterator, size)):
        yield batch


class UnitBoard:
    """Holder of the current pipeline state.

    Every change swaps in a new ``PipelineState`` and notifies listeners
    synchronously, so a listener always sees a whole, consistent unit list.
    """

    def __init__(self, state: PipelineState | None = None) -> None:
        self._state = state or PipelineState()
        self._listeners: list[Listener] = []

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def units(self) -> tuple[ExecutionUnit, ...]:
        return self._state.units

    @property
    def any_running(self) -> bool:
        """True while any unit is in flight. Callers gate run triggers on it."""
        return any(u.is_running for u in self._state.units)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, state: PipelineState) -> None:
        self._state = state
        for listener in list(self._listeners):
            listener(state)

    def set_dimensions(self, dimensions: Sequence[StageThreadList]) -> PipelineState:
        """Replace all dimensions and regenerate units, keeping identities."""
        state = PipelineState(
            dimensions=tuple(dimensions),
            units=tuple(generate_units(dimensions, self._state.units)),
        )
        self._publish(state)
        return state

    def update_dimension(self, dimension: StageThreadList) -> PipelineState:
        """Replace one dimension by key and regenerate units."""
        edited = self._state.with_dimension(dimension)
        return self.set_dimensions(edited.dimensions)

    def update_unit(self, unit_id: str, **changes: object) -> ExecutionUnit | None:
        """Replace fields on one unit. Returns None if the unit is gone."""
        updated: ExecutionUnit | None = None
        units: list[ExecutionUnit] = []
        for unit in self._state.units:
            if unit.id == unit_id and updated is None:
                updated = unit.model_copy(update=changes)
                units.append(updated)
            else:
                units.append(unit)
        if updated is None:
            return None
        self._publish(self._state.model_copy(update={"units": tuple(units)}))
        return updated


@dataclass
class BatchReport:
    """What a run call did with the units it was given."""

    dispatched: list[str] = field(default_factory=list)
    skipped_locked: list[str] = field(default_factory=list)
    skipped_hidden: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    batches: int = 0


class ExecutionScheduler:
    """Runs units in sequential batches of at most ``concurrency``.

    Units inside a batch run concurrently; the next batch starts only once
    every unit of the previous one has resolved. Hidden and locked units are
    never dispatched. There is no re-entrancy guard: callers should not
    trigger a run while ``board.any_running`` is true.
    """

    def __init__(
        self,
        board: UnitBoard,
        run_one: RunOne,
        *,
        is_locked: IsLocked | None = None,
        snapshots: SnapshotStore | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        if concurrency < 1:
            msg = f"concurrency must be at least 1, got {concurrency}"
            raise ValueError(msg)
        self.board = board
        self.run_one = run_one
        self.snapshots = snapshots
        self.concurrency = concurrency
        if is_locked is not None:
            self.is_locked = is_locked
        elif snapshots is not None:
            self.is_locked = snapshots.is_locked
        else:
            self.is_locked = lambda _unit: False

    def select(self, units: Iterable[ExecutionUnit], report: BatchReport) -> list[ExecutionUnit]:
        """Drop hidden and locked units, recording why."""
        selected: list[ExecutionUnit] = []
        for unit in units:
            if not unit.visible:
                report.skipped_hidden.append(unit.id)
            elif self.is_locked(unit):
                report.skipped_locked.append(unit.id)
            else:
                selected.append(unit)
        return selected

    async def run_all(self, units: Iterable[ExecutionUnit] | None = None) -> BatchReport:
        """Run the given units (default: every unit on the board)."""
        report = BatchReport()
        candidates = self.board.units if units is None else units
        selected = self.select(candidates, report)

        for batch in batched(selected, self.concurrency):
            report.batches += 1
            logger.debug(
                "Batch %d: %s", report.batches, ", ".join(u.name for u in batch)
            )
            results = await asyncio.gather(*(self._run_tracked(u.id) for u in batch))
            for unit, result in zip(batch, results):
                if result is None:
                    continue
                report.dispatched.append(unit.id)
                if not result.success:
                    report.failed.append(unit.id)

        return report

    async def run_unit(self, unit_id: str) -> Result | None:
        """Run a single unit under the same rules as a batch of one."""
        unit = self.board.state.unit(unit_id)
        if unit is None:
            msg = f"Unit '{unit_id}' not found"
            raise KeyError(msg)
        report = await self.run_all([unit])
        if not report.dispatched:
            return None
        current = self.board.state.unit(unit_id)
        return current.result if current else None

    async def _run_tracked(self, unit_id: str) -> Result | None:
        unit = self.board.state.unit(unit_id)
        if unit is None:
            logger.debug("Skipping %s: unit no longer exists", unit_id)
            return None

        started = self.board.update_unit(unit_id, is_running=True, result=None)
        if started is None:
            return None

        try:
            result = await self.run_one(started)
        except Exception as exc:
            logger.exception("Generation call for %s raised", started.name)
            result = Result.failure(f"{type(exc).__name__}: {exc}")

        finished = self.board.update_unit(unit_id, is_running=False, result=result)
        if finished is None:
            logger.debug("Dropping result for %s: unit was removed", started.name)

        if self.snapshots is not None and self.snapshots.fill_pending(started, result):
            logger.debug("Filled pending snapshot for %s", started.name)

        return result
