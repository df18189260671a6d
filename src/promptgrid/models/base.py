# Copyright (c) Syntropy Systems
"""Shared Pydantic model helpers for promptgrid."""

from __future__ import annotations

import hashlib
import json
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, JsonValue
from typing_extensions import TypeAlias

JSONValue: TypeAlias = JsonValue


class GridBaseModel(BaseModel):
    """Base model with shared config for promptgrid schemas."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
    )


class FrozenModel(BaseModel):
    """Immutable model for live pipeline state.

    Changes go through ``model_copy(update=...)`` so readers holding an
    older instance never see it change underneath them.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        frozen=True,
    )


def digest(value: object) -> str:
    """Return a stable short digest of a JSON-compatible value."""
    encoded = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:16]
