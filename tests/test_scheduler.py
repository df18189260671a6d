# Copyright (c) Syntropy Systems
"""Tests for the unit board and batched execution."""

from __future__ import annotations

import asyncio

import pytest
from conftest import make_dimension

from promptgrid.models.pipeline import ExecutionUnit, PipelineState, Result
from promptgrid.scheduler import ExecutionScheduler, UnitBoard, batched


def make_board(*prompts: str) -> UnitBoard:
    board = UnitBoard()
    _ = board.set_dimensions([make_dimension("model", "m"), make_dimension("prompt", *prompts)])
    return board


class Recorder:
    """run_one that records start/finish order and peak concurrency."""

    def __init__(self, fail: set[str] | None = None, raise_on: set[str] | None = None) -> None:
        self.events: list[tuple[str, str]] = []
        self.active = 0
        self.peak = 0
        self.fail = fail or set()
        self.raise_on = raise_on or set()

    async def __call__(self, unit: ExecutionUnit) -> Result:
        prompt = unit.variants["prompt"].name
        self.events.append(("start", prompt))
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0.01)
        self.active -= 1
        self.events.append(("finish", prompt))
        if prompt in self.raise_on:
            msg = f"boom {prompt}"
            raise RuntimeError(msg)
        if prompt in self.fail:
            return Result.failure(f"failed {prompt}")
        return Result.ok(f"output {prompt}")


class TestBatched:
    def test_batched(self):
        assert list(batched(range(7), 3)) == [[0, 1, 2], [3, 4, 5], [6]]

    def test_batched_empty(self):
        assert list(batched([], 3)) == []


class TestUnitBoard:
    """Tests for board state and notifications."""

    def test_set_dimensions_generates_units(self):
        board = make_board("a", "b")
        assert [u.variants["prompt"].name for u in board.units] == ["a", "b"]

    def test_regeneration_keeps_identity(self):
        board = make_board("a", "b")
        ids = [u.id for u in board.units]

        dim = board.state.dimension("prompt").update("prompt-a", payload={"text": "new"})
        _ = board.update_dimension(dim)

        assert [u.id for u in board.units] == ids

    def test_update_unit_missing_returns_none(self):
        board = make_board("a")
        assert board.update_unit("missing", is_running=True) is None

    def test_listeners_see_every_change(self):
        board = make_board("a")
        seen: list[PipelineState] = []
        unsubscribe = board.subscribe(seen.append)

        unit_id = board.units[0].id
        _ = board.update_unit(unit_id, is_running=True)
        unsubscribe()
        _ = board.update_unit(unit_id, is_running=False)

        assert len(seen) == 1
        assert seen[0].units[0].is_running is True

    def test_any_running(self):
        board = make_board("a")
        assert board.any_running is False
        _ = board.update_unit(board.units[0].id, is_running=True)
        assert board.any_running is True


class TestExecutionScheduler:
    """Tests for sequential batches of concurrent units."""

    def test_concurrency_must_be_positive(self):
        with pytest.raises(ValueError):
            _ = ExecutionScheduler(make_board("a"), Recorder(), concurrency=0)

    def test_batches_run_sequentially(self):
        board = make_board("1", "2", "3", "4")
        recorder = Recorder()
        scheduler = ExecutionScheduler(board, recorder, concurrency=3)

        report = asyncio.run(scheduler.run_all())

        assert report.batches == 2
        assert len(report.dispatched) == 4
        # Unit 4 starts only after every unit of the first batch finished
        start_4 = recorder.events.index(("start", "4"))
        for prompt in ("1", "2", "3"):
            assert recorder.events.index(("finish", prompt)) < start_4
        assert recorder.peak == 3

    def test_peak_never_exceeds_concurrency(self):
        board = make_board(*[str(i) for i in range(10)])
        recorder = Recorder()
        scheduler = ExecutionScheduler(board, recorder, concurrency=4)

        report = asyncio.run(scheduler.run_all())

        assert report.batches == 3
        assert recorder.peak <= 4

    def test_results_written_to_board(self):
        board = make_board("a", "b")
        scheduler = ExecutionScheduler(board, Recorder())

        _ = asyncio.run(scheduler.run_all())

        assert [u.result.output for u in board.units] == ["output a", "output b"]
        assert not board.any_running

    def test_locked_units_skipped(self):
        board = make_board("a", "b", "c")
        recorder = Recorder()
        scheduler = ExecutionScheduler(
            board,
            recorder,
            is_locked=lambda u: u.variants["prompt"].name == "b",
        )

        report = asyncio.run(scheduler.run_all())

        started = [p for kind, p in recorder.events if kind == "start"]
        assert started == ["a", "c"]
        assert report.skipped_locked == [board.units[1].id]
        assert board.units[1].result is None

    def test_hidden_units_skipped(self):
        board = make_board("a", "b")
        _ = board.update_unit(board.units[0].id, visible=False)
        recorder = Recorder()

        report = asyncio.run(ExecutionScheduler(board, recorder).run_all())

        assert report.skipped_hidden == [board.units[0].id]
        assert [p for kind, p in recorder.events if kind == "start"] == ["b"]

    def test_failure_does_not_stop_batch(self):
        board = make_board("a", "b", "c", "d")
        scheduler = ExecutionScheduler(board, Recorder(fail={"b"}), concurrency=2)

        report = asyncio.run(scheduler.run_all())

        assert report.failed == [board.units[1].id]
        assert [u.result.success for u in board.units] == [True, False, True, True]

    def test_raising_run_one_becomes_failure(self):
        board = make_board("a", "b")
        scheduler = ExecutionScheduler(board, Recorder(raise_on={"a"}))

        report = asyncio.run(scheduler.run_all())

        unit = board.units[0]
        assert unit.result is not None
        assert unit.result.success is False
        assert "boom a" in unit.result.error
        assert unit.is_running is False
        assert board.units[1].result.success is True
        assert report.failed == [unit.id]

    def test_listener_sees_running_before_result(self):
        board = make_board("a")
        states: list[tuple[bool, bool]] = []
        _ = board.subscribe(
            lambda s: states.append((s.units[0].is_running, s.units[0].result is not None))
        )

        _ = asyncio.run(ExecutionScheduler(board, Recorder()).run_all())

        assert states == [(True, False), (False, True)]

    def test_run_resets_previous_result(self):
        board = make_board("a")
        _ = board.update_unit(board.units[0].id, result=Result.failure("old"))
        states: list[Result | None] = []
        _ = board.subscribe(lambda s: states.append(s.units[0].result))

        _ = asyncio.run(ExecutionScheduler(board, Recorder()).run_all())

        assert states[0] is None
        assert states[-1].output == "output a"

    def test_removed_unit_result_dropped(self):
        board = make_board("a", "b")

        async def run_one(unit: ExecutionUnit) -> Result:
            # Remove prompt "a" while its call is in flight
            dim = board.state.dimension("prompt")
            if any(v.name == "a" for v in dim.variants):
                _ = board.update_dimension(dim.remove("prompt-a"))
            await asyncio.sleep(0)
            return Result.ok(unit.name)

        _ = asyncio.run(ExecutionScheduler(board, run_one, concurrency=1).run_all())

        assert [u.variants["prompt"].name for u in board.units] == ["b"]
        assert board.units[0].result is not None

    def test_run_unit(self):
        board = make_board("a", "b")
        scheduler = ExecutionScheduler(board, Recorder())

        result = asyncio.run(scheduler.run_unit(board.units[1].id))

        assert result is not None
        assert result.output == "output b"
        assert board.units[0].result is None

    def test_run_unit_locked_returns_none(self):
        board = make_board("a")
        scheduler = ExecutionScheduler(board, Recorder(), is_locked=lambda _u: True)

        assert asyncio.run(scheduler.run_unit(board.units[0].id)) is None

    def test_run_unit_missing(self):
        scheduler = ExecutionScheduler(make_board("a"), Recorder())
        with pytest.raises(KeyError):
            _ = asyncio.run(scheduler.run_unit("missing"))

    def test_subset_run(self):
        board = make_board("a", "b", "c")
        recorder = Recorder()
        scheduler = ExecutionScheduler(board, recorder)

        _ = asyncio.run(scheduler.run_all([board.units[2]]))

        assert [p for kind, p in recorder.events if kind == "start"] == ["c"]
