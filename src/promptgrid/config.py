# Copyright (c) Syntropy Systems
"""Configuration management for promptgrid."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, cast

import yaml

PROJECT_DIR_NAME = ".promptgrid"
CONFIG_FILE_NAME = "config.yaml"
DB_FILE_NAME = "snapshots.db"


@dataclass
class GridConfig:
    """Configuration for promptgrid."""

    # Units dispatched together per batch
    concurrency: int = 3

    # Generation request timeout (seconds)
    request_timeout: int = 60

    # Generation route the default run_one posts to
    endpoint: str = "http://localhost:3000/api/generate-text"

    # Snapshot namespace used when a pipeline file names none
    namespace: str = "root"

    # Sent with every request when set
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def find_project_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .promptgrid directory by walking up from start_path.

    Returns None if no .promptgrid directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        project_dir = current / PROJECT_DIR_NAME
        if project_dir.is_dir():
            return project_dir
        current = current.parent

    # Check root
    project_dir = current / PROJECT_DIR_NAME
    if project_dir.is_dir():
        return project_dir

    return None


def get_global_config_dir() -> Path:
    """Get the global promptgrid config directory (~/.promptgrid)."""
    return Path.home() / PROJECT_DIR_NAME


def load_config(project_dir: Path | None = None) -> GridConfig:
    """Load configuration from .promptgrid/config.yaml or defaults.

    Looks for config in:
    1. Provided project_dir
    2. Nearest .promptgrid directory walking up
    3. ~/.promptgrid/config.yaml
    4. Defaults
    """
    config = GridConfig()

    # Find config file
    config_path = None

    if project_dir is not None:
        config_path = project_dir / CONFIG_FILE_NAME
    else:
        found_dir = find_project_dir()
        if found_dir is not None:
            config_path = found_dir / CONFIG_FILE_NAME
        else:
            global_config = get_global_config_dir() / CONFIG_FILE_NAME
            if global_config.exists():
                config_path = global_config

    if config_path is not None and config_path.exists():
        with config_path.open() as f:
            data = cast("dict[str, object]", yaml.safe_load(f) or {})

        concurrency = data.get("concurrency")
        if isinstance(concurrency, (int, float)) and concurrency >= 1:
            config.concurrency = int(concurrency)
        request_timeout = data.get("request_timeout")
        if isinstance(request_timeout, (int, float)) and request_timeout > 0:
            config.request_timeout = int(request_timeout)
        endpoint = data.get("endpoint")
        if isinstance(endpoint, str) and endpoint:
            config.endpoint = endpoint
        namespace = data.get("namespace")
        if isinstance(namespace, str) and namespace:
            config.namespace = namespace
        temperature = data.get("temperature")
        if isinstance(temperature, (int, float)):
            config.temperature = float(temperature)
        max_output_tokens = data.get("max_output_tokens")
        if isinstance(max_output_tokens, int):
            config.max_output_tokens = max_output_tokens

    return config


def get_db_path(project_dir: Path | None = None) -> Path:
    """Get the path to the snapshot database."""
    if project_dir is None:
        project_dir = find_project_dir()

    if project_dir is None:
        msg = "No .promptgrid directory found. Run 'promptgrid init' first."
        raise RuntimeError(
            msg
        )

    return project_dir / DB_FILE_NAME


def require_project_dir() -> Path:
    """Get project directory or raise an error if not found."""
    project_dir = find_project_dir()
    if project_dir is None:
        msg = "No .promptgrid directory found. Run 'promptgrid init' first."
        raise RuntimeError(
            msg
        )
    return project_dir
