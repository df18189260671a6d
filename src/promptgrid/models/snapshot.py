# Copyright (c) Syntropy Systems
"""Pydantic models for locked result snapshots."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import Field

from .base import GridBaseModel
from .pipeline import Result

if TYPE_CHECKING:
    from .pipeline import ExecutionUnit

SNAPSHOT_VERSION = 1


def utcnow() -> str:
    """Get current UTC time as ISO format string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class SnapshotState(str, Enum):
    """Lock state of one snapshot key. DRIFTED is derived, never stored."""

    UNLOCKED = "unlocked"
    LOCKED = "locked"
    DRIFTED = "drifted"


class SnapshotSource(GridBaseModel):
    """What a result was derived from, captured for drift detection."""

    names: dict[str, str] = Field(default_factory=dict)
    payload_digests: dict[str, str] = Field(default_factory=dict)
    result_digest: str | None = None

    @classmethod
    def from_unit(cls, unit: ExecutionUnit) -> SnapshotSource:
        """Capture the live source of a unit."""
        return cls(
            names={key: v.name for key, v in unit.variants.items()},
            payload_digests={key: v.payload_digest() for key, v in unit.variants.items()},
            result_digest=unit.result.content_digest() if unit.result else None,
        )

    def differences(self, other: SnapshotSource) -> list[str]:
        """Return dotted paths of every tracked field that differs."""
        changed: list[str] = []
        for key in _ordered_union(self.names, other.names):
            if self.names.get(key) != other.names.get(key):
                changed.append(f"names.{key}")
        for key in _ordered_union(self.payload_digests, other.payload_digests):
            if self.payload_digests.get(key) != other.payload_digests.get(key):
                changed.append(f"payload.{key}")
        if self.result_digest != other.result_digest:
            changed.append("result")
        return changed


def _ordered_union(first: dict[str, str], second: dict[str, str]) -> list[str]:
    keys = list(first)
    keys.extend(k for k in second if k not in first)
    return keys


class Snapshot(GridBaseModel):
    """A durable, name-keyed freeze of a result."""

    key: str
    result: Result | None = None
    locked_at: str = Field(default_factory=utcnow)
    source: SnapshotSource = Field(default_factory=SnapshotSource)


class SnapshotEnvelope(GridBaseModel):
    """Versioned wrapper written to the key-value medium."""

    version: int = Field(default=SNAPSHOT_VERSION, alias="_v")
    written_at: int = Field(alias="_t")
    data: Snapshot
