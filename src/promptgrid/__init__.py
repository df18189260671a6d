"""
promptgrid - Combinatorial LLM prompt runs.

Cross every visible variant, run the grid, lock the results you want to keep.
"""

from promptgrid.aggregate import ResultsAggregator
from promptgrid.combine import PipelineConfig, generate_units
from promptgrid.models.pipeline import (
    ExecutionUnit,
    PipelineState,
    Result,
    StageThreadList,
    Variant,
)
from promptgrid.scheduler import ExecutionScheduler, UnitBoard
from promptgrid.snapshot import SnapshotStore, key_for

__version__ = "0.1.0"
__all__ = [
    "ExecutionScheduler",
    "ExecutionUnit",
    "PipelineConfig",
    "PipelineState",
    "Result",
    "ResultsAggregator",
    "SnapshotStore",
    "StageThreadList",
    "UnitBoard",
    "Variant",
    "__version__",
    "generate_units",
    "key_for",
]
