# Copyright (c) Syntropy Systems
"""Lock/snapshot store for execution results.

A snapshot freezes one unit's result under a key built from the namespace
and the ordered variant *names*, never the unit id, so a lock survives
regeneration as long as the same names recombine.

Locking is best effort. Any failure of the underlying medium, whatever it
raises, is logged and treated as "no snapshot"; nothing here raises into the
execution pipeline.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING

from pydantic import ValidationError

from promptgrid.models.snapshot import (
    SNAPSHOT_VERSION,
    Snapshot,
    SnapshotEnvelope,
    SnapshotSource,
    SnapshotState,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from promptgrid.kv import KeyValueStore
    from promptgrid.models.pipeline import ExecutionUnit, Result

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "root"
STORAGE_PREFIX = "snapshot:"
NAME_DELIMITER = "|#|"


def _escape(part: str) -> str:
    return part.replace("\\", "\\\\").replace("|", "\\|").replace(":", "\\:")


def key_for(namespace: str, names: Sequence[str]) -> str:
    """Build the stable snapshot key for an ordered list of variant names.

    Separators inside names are escaped, so distinct inputs never share a key.
    """
    return f"{_escape(namespace)}:{NAME_DELIMITER.join(_escape(n) for n in names)}"


def _namespace_prefix(namespace: str) -> str:
    return f"{STORAGE_PREFIX}{_escape(namespace)}:"


class SnapshotStore:
    """Name-keyed snapshots persisted in a key-value medium."""

    def __init__(self, medium: KeyValueStore, namespace: str = DEFAULT_NAMESPACE) -> None:
        self.medium = medium
        self.namespace = namespace

    # --- Key operations ---

    def lock(
        self,
        key: str,
        result: Result | None,
        source: SnapshotSource | None = None,
    ) -> Snapshot | None:
        """Freeze a result under ``key``. Returns None if the write failed."""
        snapshot = Snapshot(key=key, result=result, source=source or SnapshotSource())
        if not self._write(snapshot):
            return None
        logger.debug("Locked %s", key)
        return snapshot

    def unlock(self, key: str) -> bool:
        """Drop the snapshot for ``key``. Returns False if the delete failed."""
        try:
            self.medium.delete(STORAGE_PREFIX + key)
        except Exception as e:
            logger.warning("Could not unlock %s: %s", key, e)
            return False
        logger.debug("Unlocked %s", key)
        return True

    def read(self, key: str) -> Snapshot | None:
        """Return the snapshot for ``key``, or None if absent or unreadable."""
        try:
            raw = self.medium.get(STORAGE_PREFIX + key)
        except Exception as e:
            logger.warning("Could not read snapshot %s: %s", key, e)
            return None
        if raw is None:
            return None
        return self._decode(key, raw)

    def drift_fields(self, key: str, live_source: SnapshotSource) -> list[str]:
        """List tracked fields whose live value differs from the snapshot."""
        snapshot = self.read(key)
        if snapshot is None:
            return []
        return snapshot.source.differences(live_source)

    def has_drifted(self, key: str, live_source: SnapshotSource) -> bool:
        """Return True if the live source no longer matches the snapshot."""
        return bool(self.drift_fields(key, live_source))

    def list_snapshots(self, namespace: str | None = None) -> list[Snapshot]:
        """Return every readable snapshot in a namespace, ordered by key."""
        prefix = _namespace_prefix(self.namespace if namespace is None else namespace)
        try:
            storage_keys = self.medium.keys(prefix)
        except Exception as e:
            logger.warning("Could not list snapshots: %s", e)
            return []

        snapshots: list[Snapshot] = []
        for storage_key in storage_keys:
            snapshot = self.read(storage_key[len(STORAGE_PREFIX):])
            if snapshot is not None:
                snapshots.append(snapshot)
        return snapshots

    def clear_namespace(self, namespace: str | None = None) -> int:
        """Unlock everything in a namespace. Returns the number removed."""
        prefix = _namespace_prefix(self.namespace if namespace is None else namespace)
        try:
            storage_keys = self.medium.keys(prefix)
        except Exception as e:
            logger.warning("Could not list snapshots: %s", e)
            return 0
        return sum(1 for k in storage_keys if self.unlock(k[len(STORAGE_PREFIX):]))

    # --- Unit helpers ---

    def key_for_unit(self, unit: ExecutionUnit) -> str:
        """Snapshot key of a unit in this store's namespace."""
        return key_for(self.namespace, unit.variant_names())

    def read_unit(self, unit: ExecutionUnit) -> Snapshot | None:
        return self.read(self.key_for_unit(unit))

    def is_locked(self, unit: ExecutionUnit) -> bool:
        """Return True if a snapshot exists for the unit's names."""
        return self.read_unit(unit) is not None

    def lock_unit(self, unit: ExecutionUnit) -> Snapshot | None:
        """Freeze the unit's current result together with its source."""
        return self.lock(
            self.key_for_unit(unit),
            unit.result,
            SnapshotSource.from_unit(unit),
        )

    def unlock_unit(self, unit: ExecutionUnit) -> bool:
        return self.unlock(self.key_for_unit(unit))

    def effective_result(self, unit: ExecutionUnit) -> Result | None:
        """The frozen result when locked with one, else the live result."""
        snapshot = self.read_unit(unit)
        if snapshot is not None and snapshot.result is not None:
            return snapshot.result
        return unit.result

    def unit_drift_fields(self, unit: ExecutionUnit) -> list[str]:
        """Tracked fields of a locked unit that changed since it was locked.

        A unit with no live result is compared against the frozen one, so a
        fresh session only reports name and payload edits.
        """
        snapshot = self.read_unit(unit)
        if snapshot is None:
            return []
        live = unit if unit.result is not None else unit.model_copy(update={"result": snapshot.result})
        return snapshot.source.differences(SnapshotSource.from_unit(live))

    def state(self, unit: ExecutionUnit) -> SnapshotState:
        """Lock state of a unit, with drift derived against its live source."""
        snapshot = self.read_unit(unit)
        if snapshot is None:
            return SnapshotState.UNLOCKED
        if self.unit_drift_fields(unit):
            return SnapshotState.DRIFTED
        return SnapshotState.LOCKED

    def fill_pending(self, unit: ExecutionUnit, result: Result) -> bool:
        """Store ``result`` into a snapshot that was locked before any result.

        Snapshots that already hold a result are never overwritten.
        """
        snapshot = self.read_unit(unit)
        if snapshot is None or snapshot.result is not None:
            return False
        completed = unit.model_copy(update={"result": result})
        filled = snapshot.model_copy(
            update={"result": result, "source": SnapshotSource.from_unit(completed)}
        )
        return self._write(filled)

    # --- Encoding ---

    def _write(self, snapshot: Snapshot) -> bool:
        envelope = SnapshotEnvelope(
            version=SNAPSHOT_VERSION,
            written_at=int(time.time() * 1000),
            data=snapshot,
        )
        try:
            self.medium.set(
                STORAGE_PREFIX + snapshot.key,
                envelope.model_dump_json(by_alias=True),
            )
        except Exception as e:
            logger.warning("Could not lock %s: %s", snapshot.key, e)
            return False
        return True

    def _decode(self, key: str, raw: str) -> Snapshot | None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring corrupt snapshot record %s", key)
            return None

        if not isinstance(data, dict):
            logger.warning("Ignoring corrupt snapshot record %s", key)
            return None

        if data.get("_v") != SNAPSHOT_VERSION:
            logger.warning("Discarding snapshot %s with unknown version", key)
            _ = self.unlock(key)
            return None

        try:
            envelope = SnapshotEnvelope.model_validate(data)
        except ValidationError:
            logger.warning("Ignoring invalid snapshot record %s", key)
            return None
        return envelope.data
