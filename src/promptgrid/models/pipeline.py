# Copyright (c) Syntropy Systems
"""Pydantic models for pipeline dimensions, execution units and results."""

from __future__ import annotations

import uuid
from enum import Enum

from pydantic import Field, field_validator, model_validator
from typing_extensions import Self

from .base import FrozenModel, JSONValue, digest


def generate_id(prefix: str = "unit") -> str:
    """Generate a short random identifier."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class Variant(FrozenModel):
    """A single named option within a dimension."""

    id: str = Field(default_factory=lambda: generate_id("variant"))
    name: str
    visible: bool = True
    payload: dict[str, JSONValue] = Field(default_factory=dict)

    @property
    def variables(self) -> dict[str, str]:
        """Template variables carried in the payload, if any."""
        raw = self.payload.get("variables")
        if not isinstance(raw, dict):
            return {}
        return {str(k): str(v) for k, v in raw.items()}

    def payload_digest(self) -> str:
        """Digest of the payload, used to detect edits behind a lock."""
        return digest(self.payload)


class StageThreadList(FrozenModel):
    """Ordered collection of variants for one pipeline dimension.

    Every edit returns a new list; the original is left untouched.
    """

    key: str
    label: str = ""
    variants: tuple[Variant, ...] = ()

    @field_validator("variants")
    @classmethod
    def _unique_ids(cls, value: tuple[Variant, ...]) -> tuple[Variant, ...]:
        seen: set[str] = set()
        for variant in value:
            if variant.id in seen:
                msg = f"Duplicate variant id '{variant.id}'"
                raise ValueError(msg)
            seen.add(variant.id)
        return value

    def _with(self, variants: list[Variant]) -> Self:
        return type(self)(key=self.key, label=self.label, variants=tuple(variants))

    def _index(self, variant_id: str) -> int:
        for i, variant in enumerate(self.variants):
            if variant.id == variant_id:
                return i
        msg = f"Variant '{variant_id}' not found in dimension '{self.key}'"
        raise KeyError(msg)

    def get(self, variant_id: str) -> Variant:
        """Return the variant with the given id."""
        return self.variants[self._index(variant_id)]

    def visible_variants(self) -> list[Variant]:
        """Return visible variants in list order."""
        return [v for v in self.variants if v.visible]

    def add(self, variant: Variant) -> Self:
        """Append a variant."""
        return self._with([*self.variants, variant])

    def remove(self, variant_id: str) -> Self:
        """Remove a variant by id."""
        index = self._index(variant_id)
        variants = list(self.variants)
        del variants[index]
        return self._with(variants)

    def update(self, variant_id: str, **changes: object) -> Self:
        """Replace fields on one variant (name, visible, payload)."""
        index = self._index(variant_id)
        variants = list(self.variants)
        current = variants[index].model_dump()
        current.update(changes)
        variants[index] = Variant.model_validate(current)
        return self._with(variants)

    def toggle_visibility(self, variant_id: str) -> Self:
        """Flip the visibility flag of one variant."""
        variant = self.get(variant_id)
        return self.update(variant_id, visible=not variant.visible)

    def move(self, variant_id: str, index: int) -> Self:
        """Move a variant to a new position."""
        variants = list(self.variants)
        variant = variants.pop(self._index(variant_id))
        variants.insert(index, variant)
        return self._with(variants)


class Usage(FrozenModel):
    """Token counters reported by the generation endpoint."""

    input_tokens: int | None = Field(default=None, alias="inputTokens")
    output_tokens: int | None = Field(default=None, alias="outputTokens")
    total_tokens: int | None = Field(default=None, alias="totalTokens")

    @property
    def total(self) -> int:
        """Total tokens, falling back to input + output."""
        if self.total_tokens:
            return self.total_tokens
        return (self.input_tokens or 0) + (self.output_tokens or 0)


class Result(FrozenModel):
    """Outcome of one generation call."""

    success: bool
    output: JSONValue = None
    error: str | None = None
    duration_seconds: float = 0.0
    usage: Usage | None = None
    is_validation_failure: bool = False
    finish_reason: str | None = None

    @model_validator(mode="after")
    def _output_xor_error(self) -> Self:
        if self.success and self.error is not None:
            msg = "A successful result cannot carry an error"
            raise ValueError(msg)
        if not self.success and not self.error:
            msg = "A failed result must describe its error"
            raise ValueError(msg)
        return self

    @classmethod
    def ok(
        cls,
        output: JSONValue,
        duration_seconds: float = 0.0,
        usage: Usage | None = None,
        finish_reason: str | None = None,
    ) -> Result:
        """Build a success result."""
        return cls(
            success=True,
            output=output,
            duration_seconds=duration_seconds,
            usage=usage,
            finish_reason=finish_reason,
        )

    @classmethod
    def failure(
        cls,
        error: str,
        duration_seconds: float = 0.0,
        *,
        is_validation_failure: bool = False,
        usage: Usage | None = None,
        finish_reason: str | None = None,
    ) -> Result:
        """Build a failure result."""
        return cls(
            success=False,
            error=error,
            duration_seconds=duration_seconds,
            usage=usage,
            is_validation_failure=is_validation_failure,
            finish_reason=finish_reason,
        )

    def content_digest(self) -> str:
        """Digest of the tracked fields: content and token usage."""
        return digest(
            {
                "output": self.output,
                "error": self.error,
                "usage": self.usage.model_dump() if self.usage else None,
            }
        )


class UnitStatus(str, Enum):
    """Display status of a unit, in sort priority order."""

    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    NOT_RUN = "not_run"

    @property
    def priority(self) -> int:
        return list(UnitStatus).index(self)


def status_of(is_running: bool, result: Result | None) -> UnitStatus:
    """Classify a unit for display and sorting."""
    if is_running:
        return UnitStatus.RUNNING
    if result is None:
        return UnitStatus.NOT_RUN
    if result.success:
        return UnitStatus.SUCCESS
    return UnitStatus.ERROR


class ExecutionUnit(FrozenModel):
    """One point in the cartesian product of visible variants."""

    id: str = Field(default_factory=generate_id)
    name: str
    variants: dict[str, Variant]
    visible: bool = True
    is_running: bool = False
    result: Result | None = None

    def variant_names(self) -> list[str]:
        """Variant names in dimension order."""
        return [v.name for v in self.variants.values()]

    def variant_for(self, dimension_key: str) -> Variant:
        """Return the variant chosen for a dimension."""
        try:
            return self.variants[dimension_key]
        except KeyError:
            msg = f"Unit '{self.name}' has no dimension '{dimension_key}'"
            raise KeyError(msg) from None

    @property
    def status(self) -> UnitStatus:
        return status_of(self.is_running, self.result)


class PipelineState(FrozenModel):
    """Dimensions plus the units derived from them."""

    dimensions: tuple[StageThreadList, ...] = ()
    units: tuple[ExecutionUnit, ...] = ()

    @property
    def dimension_keys(self) -> list[str]:
        return [d.key for d in self.dimensions]

    def dimension(self, key: str) -> StageThreadList:
        """Return a dimension by key."""
        for dimension in self.dimensions:
            if dimension.key == key:
                return dimension
        msg = f"Unknown dimension '{key}'"
        raise KeyError(msg)

    def unit(self, unit_id: str) -> ExecutionUnit | None:
        """Return a unit by id, or None when it no longer exists."""
        for unit in self.units:
            if unit.id == unit_id:
                return unit
        return None

    def with_dimension(self, dimension: StageThreadList) -> PipelineState:
        """Replace the dimension with the same key, keeping units as they are."""
        replaced = False
        dimensions: list[StageThreadList] = []
        for current in self.dimensions:
            if current.key == dimension.key:
                dimensions.append(dimension)
                replaced = True
            else:
                dimensions.append(current)
        if not replaced:
            msg = f"Unknown dimension '{dimension.key}'"
            raise KeyError(msg)
        return self.model_copy(update={"dimensions": tuple(dimensions)})
