# Copyright (c) Syntropy Systems
"""Tests for dimension editing and unit generation."""

from pathlib import Path

import pytest
from conftest import make_dimension

from promptgrid.combine import (
    NAME_SEPARATOR,
    PipelineConfig,
    combination_count,
    composite_name,
    find_name_collisions,
    generate_units,
)
from promptgrid.models.pipeline import Result, StageThreadList, Variant
from promptgrid.scheduler import UnitBoard


class TestStageThreadList:
    """Tests for immutable dimension edits."""

    def test_add_returns_new_list(self):
        dim = make_dimension("model", "gpt")
        added = dim.add(Variant(id="model-claude", name="claude"))

        assert [v.name for v in added.variants] == ["gpt", "claude"]
        assert [v.name for v in dim.variants] == ["gpt"]

    def test_remove(self):
        dim = make_dimension("model", "gpt", "claude")
        assert [v.name for v in dim.remove("model-gpt").variants] == ["claude"]

    def test_remove_unknown_raises(self):
        dim = make_dimension("model", "gpt")
        with pytest.raises(KeyError):
            _ = dim.remove("missing")

    def test_update_payload(self):
        dim = make_dimension("model", "gpt")
        updated = dim.update("model-gpt", payload={"model": "gpt-4o-mini"})

        assert updated.get("model-gpt").payload == {"model": "gpt-4o-mini"}
        assert updated.get("model-gpt").name == "gpt"

    def test_toggle_visibility(self):
        dim = make_dimension("model", "gpt", "claude")
        hidden = dim.toggle_visibility("model-gpt")

        assert [v.name for v in hidden.visible_variants()] == ["claude"]
        assert [v.name for v in hidden.toggle_visibility("model-gpt").visible_variants()] == [
            "gpt",
            "claude",
        ]

    def test_move(self):
        dim = make_dimension("prompt", "a", "b", "c")
        moved = dim.move("prompt-c", 0)
        assert [v.name for v in moved.variants] == ["c", "a", "b"]

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ValueError):
            _ = StageThreadList(
                key="model",
                variants=(Variant(id="x", name="a"), Variant(id="x", name="b")),
            )

    def test_template_variables(self):
        variant = Variant(name="v", payload={"variables": {"topic": "rivers", "n": 3}})
        assert variant.variables == {"topic": "rivers", "n": "3"}


class TestGenerateUnits:
    """Tests for cartesian product generation."""

    def test_product_order_first_dimension_slowest(self):
        dims = [
            make_dimension("a", "a1", "a2"),
            make_dimension("b", "b1"),
            make_dimension("c", "c1", "c2", "c3"),
        ]

        units = generate_units(dims)

        assert [u.name for u in units] == [
            f"a1{NAME_SEPARATOR}b1{NAME_SEPARATOR}c1",
            f"a1{NAME_SEPARATOR}b1{NAME_SEPARATOR}c2",
            f"a1{NAME_SEPARATOR}b1{NAME_SEPARATOR}c3",
            f"a2{NAME_SEPARATOR}b1{NAME_SEPARATOR}c1",
            f"a2{NAME_SEPARATOR}b1{NAME_SEPARATOR}c2",
            f"a2{NAME_SEPARATOR}b1{NAME_SEPARATOR}c3",
        ]
        assert combination_count(dims) == 6

    def test_units_carry_variants_by_dimension(self, dimensions):
        unit = generate_units(dimensions)[0]

        assert list(unit.variants) == ["model", "prompt"]
        assert unit.variant_names() == ["gpt", "a"]
        assert unit.visible is True
        assert unit.is_running is False
        assert unit.result is None

    def test_no_dimensions_yields_nothing(self):
        assert generate_units([]) == []
        assert combination_count([]) == 0

    def test_empty_dimension_empties_product(self):
        dims = [make_dimension("model", "gpt"), make_dimension("prompt")]
        assert generate_units(dims) == []
        assert combination_count(dims) == 0

    def test_all_hidden_dimension_empties_product(self):
        dims = [
            make_dimension("model", "gpt"),
            make_dimension("prompt", "a").toggle_visibility("prompt-a"),
        ]
        assert generate_units(dims) == []

    def test_hidden_variants_excluded(self, dimensions):
        dims = [dimensions[0].toggle_visibility("model-claude"), dimensions[1]]
        units = generate_units(dims)

        assert len(units) == 3
        assert all(u.variants["model"].name == "gpt" for u in units)

    def test_visibility_toggle_keeps_unaffected_identities(self, dimensions):
        first = generate_units(dimensions)
        done = Result.ok("kept")
        first = [first[0].model_copy(update={"result": done}), *first[1:]]

        hidden = [dimensions[0].toggle_visibility("model-claude"), dimensions[1]]
        second = generate_units(hidden, first)

        assert [u.id for u in second] == [u.id for u in first[:3]]
        assert second[0].result == done

        shown = [hidden[0].toggle_visibility("model-claude"), hidden[1]]
        third = generate_units(shown, second)

        assert [u.id for u in third[:3]] == [u.id for u in first[:3]]
        assert third[0].result == done
        restored = third[3:]
        assert all(u.variants["model"].name == "claude" for u in restored)
        assert not {u.id for u in restored} & {u.id for u in first}
        assert all(u.result is None for u in restored)

    def test_identity_survives_payload_edit(self, dimensions):
        first = generate_units(dimensions)
        done = Result.ok("hello")
        first = [first[0].model_copy(update={"result": done}), *first[1:]]

        edited = [dimensions[0].update("model-gpt", payload={"model": "other"}), dimensions[1]]
        second = generate_units(edited, first)

        assert [u.id for u in second] == [u.id for u in first]
        assert second[0].result == done
        assert second[0].variants["model"].payload == {"model": "other"}

    def test_rename_gives_fresh_identity(self, dimensions):
        first = generate_units(dimensions)
        renamed = [dimensions[0].update("model-gpt", name="gpt-4"), dimensions[1]]
        second = generate_units(renamed, first)

        assert second[0].id != first[0].id
        assert second[0].result is None
        # Untouched combinations keep their ids
        assert second[3].id == first[3].id

    def test_running_flag_carried_over(self, dimensions):
        first = generate_units(dimensions)
        first = [first[0].model_copy(update={"is_running": True}), *first[1:]]

        second = generate_units(dimensions, first)
        assert second[0].is_running is True

    def test_composite_name(self):
        assert composite_name([Variant(name="x"), Variant(name="y")]) == f"x{NAME_SEPARATOR}y"


class TestNameCollisions:
    """Tests for duplicate variant name detection."""

    def test_reports_duplicates(self):
        dim = StageThreadList(
            key="model",
            variants=(
                Variant(id="1", name="gpt"),
                Variant(id="2", name="gpt"),
                Variant(id="3", name="claude"),
            ),
        )
        assert find_name_collisions([dim]) == {"model": ["gpt"]}

    def test_no_duplicates(self, dimensions):
        assert find_name_collisions(dimensions) == {}

    def test_duplicate_names_keep_distinct_identities(self):
        dim = StageThreadList(
            key="model",
            variants=(Variant(id="1", name="gpt"), Variant(id="2", name="gpt")),
        )
        first = generate_units([dim])
        second = generate_units([dim], first)

        assert second[0].id == first[0].id
        assert second[1].id == first[1].id
        assert second[0].id != second[1].id

    def test_duplicate_names_update_separately(self):
        dim = StageThreadList(
            key="model",
            variants=(Variant(id="1", name="gpt"), Variant(id="2", name="gpt")),
        )
        board = UnitBoard()
        _ = board.set_dimensions([dim])
        _ = board.set_dimensions([dim])
        target = board.units[1].id

        _ = board.update_unit(target, result=Result.ok("second"))

        assert board.units[0].result is None
        assert board.units[1].result == Result.ok("second")


class TestPipelineConfig:
    """Tests for loading pipeline files."""

    def test_from_yaml(self, temp_dir: Path):
        path = temp_dir / "grid.yaml"
        path.write_text(
            """\
name: summarize
namespace: team
settings:
  temperature: 0.2
dimensions:
  model:
    - name: gpt
      payload: {model: gpt-4o}
    - claude
  prompt:
    - name: terse
      visible: false
"""
        )

        config = PipelineConfig.from_yaml(path)

        assert config.name == "summarize"
        assert config.namespace == "team"
        assert config.settings == {"temperature": 0.2}
        assert [d.key for d in config.dimensions] == ["model", "prompt"]
        assert config.dimensions[0].variants[0].payload == {"model": "gpt-4o"}
        assert config.dimensions[0].variants[1].name == "claude"
        assert config.dimensions[1].variants[0].visible is False
        # Every prompt variant is hidden
        assert config.to_state().units == ()

    def test_name_defaults_to_file_stem(self, temp_dir: Path):
        path = temp_dir / "my-grid.yaml"
        path.write_text("dimensions:\n  model: [gpt]\n")

        config = PipelineConfig.from_yaml(path)
        assert config.name == "my-grid"
        assert config.namespace is None

    def test_missing_dimensions(self, temp_dir: Path):
        path = temp_dir / "bad.yaml"
        path.write_text("name: nothing\n")

        with pytest.raises(ValueError, match="dimensions"):
            _ = PipelineConfig.from_yaml(path)

    def test_variant_without_name(self, temp_dir: Path):
        path = temp_dir / "bad.yaml"
        path.write_text("dimensions:\n  model:\n    - payload: {model: x}\n")

        with pytest.raises(ValueError, match="name"):
            _ = PipelineConfig.from_yaml(path)

    def test_to_state(self, temp_dir: Path):
        path = temp_dir / "grid.yaml"
        path.write_text("dimensions:\n  model: [gpt, claude]\n  prompt: [a, b]\n")

        state = PipelineConfig.from_yaml(path).to_state()
        assert state.dimension_keys == ["model", "prompt"]
        assert len(state.units) == 4
