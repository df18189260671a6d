# Copyright (c) Syntropy Systems
"""Pipeline configuration and execution unit generation."""
from __future__ import annotations

import itertools
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, cast

import yaml
from pydantic import ValidationError

from promptgrid.models.pipeline import (
    ExecutionUnit,
    PipelineState,
    StageThreadList,
    Variant,
    generate_id,
)

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence
    from pathlib import Path

NAME_SEPARATOR = " × "


@dataclass
class PipelineConfig:
    """A pipeline file: a name plus ordered dimensions."""

    name: str
    dimensions: list[StageThreadList]
    namespace: str | None = None
    settings: dict[str, object] = field(default_factory=dict)

    @classmethod
    def from_yaml(cls, path: Path) -> PipelineConfig:
        """Load pipeline configuration from YAML file.

        Example:

            name: summarize
            dimensions:
              model:
                - name: gpt-4o
                  payload: {provider: openai, model: gpt-4o}
              system:
                - name: terse
                  payload: {system: "Answer in one line."}
        """
        with path.open() as f:
            data = cast("dict[str, object]", yaml.safe_load(f) or {})

        if not isinstance(data, dict):
            msg = "Pipeline file must be a mapping"
            raise ValueError(msg)
        if "dimensions" not in data:
            msg = "Pipeline file must have 'dimensions' field"
            raise ValueError(msg)
        raw_dimensions = data["dimensions"]
        if not isinstance(raw_dimensions, dict) or not raw_dimensions:
            msg = "'dimensions' must map dimension names to variant lists"
            raise ValueError(msg)

        dimensions: list[StageThreadList] = []
        for key, raw_variants in cast("dict[str, object]", raw_dimensions).items():
            dimensions.append(_parse_dimension(str(key), raw_variants))

        settings = data.get("settings") or {}
        if not isinstance(settings, dict):
            msg = "'settings' must be a mapping"
            raise ValueError(msg)

        return cls(
            name=str(data.get("name") or path.stem),
            dimensions=dimensions,
            namespace=cast("Optional[str]", data.get("namespace")),
            settings=cast("dict[str, object]", settings),
        )

    def to_state(self) -> PipelineState:
        """Fresh pipeline state with units generated from the dimensions."""
        return PipelineState(
            dimensions=tuple(self.dimensions),
            units=tuple(generate_units(self.dimensions)),
        )


def _parse_dimension(key: str, raw_variants: object) -> StageThreadList:
    if not isinstance(raw_variants, list):
        msg = f"Dimension '{key}' must be a list of variants"
        raise ValueError(msg)

    variants: list[Variant] = []
    for i, raw in enumerate(cast("list[object]", raw_variants)):
        if isinstance(raw, str):
            raw = {"name": raw}
        if not isinstance(raw, dict) or "name" not in raw:
            msg = f"Variant {i} of dimension '{key}' must have a 'name'"
            raise ValueError(msg)
        try:
            variants.append(Variant.model_validate(raw))
        except ValidationError as e:
            msg = f"Invalid variant {i} of dimension '{key}': {e}"
            raise ValueError(msg) from e

    try:
        return StageThreadList(key=key, label=key, variants=tuple(variants))
    except ValidationError as e:
        msg = f"Invalid dimension '{key}': {e}"
        raise ValueError(msg) from e


def composite_name(variants: Sequence[Variant]) -> str:
    """Join variant names in dimension order."""
    return NAME_SEPARATOR.join(v.name for v in variants)


def generate_combinations(
    dimensions: Sequence[StageThreadList],
) -> Iterator[dict[str, Variant]]:
    """Generate all combinations of visible variants.

    The first dimension varies slowest. A dimension with no visible variant
    makes the whole product empty.
    """
    if not dimensions:
        return

    keys = [d.key for d in dimensions]
    visible = [d.visible_variants() for d in dimensions]

    for combo in itertools.product(*visible):
        yield dict(zip(keys, combo))


def combination_count(dimensions: Sequence[StageThreadList]) -> int:
    """Number of units the dimensions produce."""
    if not dimensions:
        return 0
    return math.prod(len(d.visible_variants()) for d in dimensions)


def generate_units(
    dimensions: Sequence[StageThreadList],
    previous_units: Sequence[ExecutionUnit] = (),
) -> list[ExecutionUnit]:
    """Build the execution units for the current dimensions.

    A unit whose composite name already existed keeps the id, running flag
    and result of a previous unit with that name; anything else starts
    fresh. Each previous unit is claimed at most once, in order, so repeated
    names still yield distinct ids.
    """
    previous_by_name: dict[str, list[ExecutionUnit]] = {}
    for unit in previous_units:
        previous_by_name.setdefault(unit.name, []).append(unit)

    units: list[ExecutionUnit] = []
    for variants in generate_combinations(dimensions):
        name = composite_name(list(variants.values()))
        claimable = previous_by_name.get(name)
        existing = claimable.pop(0) if claimable else None
        units.append(
            ExecutionUnit(
                id=existing.id if existing else generate_id(),
                name=name,
                variants=variants,
                visible=True,
                is_running=existing.is_running if existing else False,
                result=existing.result if existing else None,
            )
        )
    return units


def find_name_collisions(dimensions: Sequence[StageThreadList]) -> dict[str, list[str]]:
    """Return visible variant names used more than once, per dimension.

    Duplicate names make composite names ambiguous. Units keep distinct ids,
    but they share one lock key, so a lock covers all of them.
    """
    collisions: dict[str, list[str]] = {}
    for dimension in dimensions:
        seen: set[str] = set()
        duplicated: list[str] = []
        for variant in dimension.visible_variants():
            if variant.name in seen and variant.name not in duplicated:
                duplicated.append(variant.name)
            seen.add(variant.name)
        if duplicated:
            collisions[dimension.key] = duplicated
    return collisions
