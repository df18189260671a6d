# Copyright (c) Syntropy Systems
"""Pytest fixtures for promptgrid tests."""

import os
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

from promptgrid.kv import MemoryKeyValueStore
from promptgrid.models.pipeline import StageThreadList, Variant
from promptgrid.snapshot import SnapshotStore

# Store original cwd at module load time
_original_cwd = Path.cwd()


def make_dimension(key: str, *names: str, **payloads: dict) -> StageThreadList:
    """Build a dimension whose variant ids are ``{key}-{name}``.

    ``payloads`` maps a variant name to its payload.
    """
    return StageThreadList(
        key=key,
        label=key,
        variants=tuple(
            Variant(id=f"{key}-{name}", name=name, payload=payloads.get(name, {"value": name}))
            for name in names
        ),
    )


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def grid_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a temporary promptgrid project directory."""
    from promptgrid.kv import init_db

    project_dir = temp_dir / ".promptgrid"
    project_dir.mkdir()

    # Initialize database
    init_db(project_dir / "snapshots.db")

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def memory_store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def snapshots(memory_store: MemoryKeyValueStore) -> SnapshotStore:
    """Snapshot store over an in-memory medium."""
    return SnapshotStore(memory_store, "test")


@pytest.fixture
def dimensions() -> list[StageThreadList]:
    """Two models crossed with three prompts: six units."""
    return [
        make_dimension("model", "gpt", "claude"),
        make_dimension("prompt", "a", "b", "c"),
    ]


@pytest.fixture
def pipeline_file(grid_project: Path) -> Path:
    """A small pipeline file inside the project."""
    path = grid_project / "pipeline.yaml"
    path.write_text(
        """\
name: demo
dimensions:
  model:
    - name: gpt
      payload: {model: gpt-4o}
    - name: claude
      payload: {model: claude-sonnet}
  prompt:
    - name: short
      payload:
        prompt: "Describe ${topic} briefly"
        variables: {topic: rivers}
    - terse
"""
    )
    return path
