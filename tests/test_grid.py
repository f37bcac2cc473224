# Copyright (c) Syntropy Systems
"""Tests for parameter grid expansion."""

import pytest

from simstudy.errors import SimulationConfigError
from simstudy.grid import (
    GridConfig,
    Restriction,
    count_conditions,
    full_factorial,
    one_at_a_time,
    partial_factorial,
    union,
)


class TestFullFactorial:
    """Tests for full factorial grids."""

    def test_cardinality(self):
        """Test a*b*c*N rows."""
        rows = full_factorial(
            {"a": [1, 2], "b": ["x", "y", "z"], "c": [True, False]}, iterations=3
        )
        assert len(rows) == 2 * 3 * 2 * 3
        assert count_conditions(rows) == 12

    def test_emission_order(self):
        """Test last axis and iteration vary fastest."""
        rows = full_factorial({"a": [1, 2], "b": ["x", "y"]}, iterations=2)

        assert [r.index for r in rows] == list(range(8))
        assert [r.iteration for r in rows[:4]] == [1, 2, 1, 2]
        assert rows[0].params == {"a": 1, "b": "x"}
        assert rows[2].params == {"a": 1, "b": "y"}
        assert rows[4].params == {"a": 2, "b": "x"}

    def test_scalar_axis_promoted(self):
        """Test scalars become single-value axes."""
        rows = full_factorial({"n": [10, 20], "sd": 1, "label": "null"}, iterations=5)

        assert len(rows) == 10
        assert all(r["sd"] == 1 for r in rows)
        assert all(r["label"] == "null" for r in rows)

    def test_deterministic(self):
        """Test building twice yields identical rows."""
        axes = {"n": [10, 20, 30], "d": [0.0, 0.5]}
        assert full_factorial(axes, 4) == full_factorial(axes, 4)

    def test_key_excludes_iteration(self):
        """Test rows of one condition share a grouping key."""
        rows = full_factorial({"n": [10], "d": [0.5]}, iterations=3)
        assert len({r.key for r in rows}) == 1
        assert rows[0].key == (("d", 0.5), ("n", 10))

    def test_empty_axis(self):
        """Test an empty axis is rejected."""
        with pytest.raises(SimulationConfigError, match="no values"):
            full_factorial({"n": []}, iterations=1)

    def test_zero_iterations(self):
        """Test N < 1 is rejected."""
        with pytest.raises(SimulationConfigError, match="positive integer"):
            full_factorial({"n": [10]}, iterations=0)

    def test_reserved_axis_name(self):
        """Test 'iteration' cannot be an axis."""
        with pytest.raises(SimulationConfigError, match="reserved"):
            full_factorial({"iteration": [1, 2]}, iterations=1)


class TestOneAtATime:
    """Tests for one-at-a-time grids."""

    def test_cardinality(self):
        """Test (a+b+c-2)*N rows, never a*b*c*N."""
        rows = one_at_a_time(
            defaults={"n": 50, "d": 0.0, "sd": 1},
            variations={"n": [20, 50, 100], "d": [0.0, 0.2, 0.5, 0.8], "sd": [1, 2]},
            iterations=10,
        )
        assert len(rows) == (3 + 4 + 2 - 2) * 10
        assert count_conditions(rows) == 7

    def test_baseline_emitted_once(self):
        """Test the default condition appears in exactly one sub-grid."""
        rows = one_at_a_time(
            defaults={"n": 50, "d": 0.0},
            variations={"n": [20, 50], "d": [0.0, 0.5]},
            iterations=4,
        )
        baseline = [r for r in rows if r.params == {"n": 50, "d": 0.0}]
        assert [r.iteration for r in baseline] == [1, 2, 3, 4]
        assert rows[0].params == {"n": 50, "d": 0.0}

    def test_other_axes_held_at_defaults(self):
        """Test each varied row differs from the defaults in one axis only."""
        defaults = {"n": 50, "d": 0.0, "sd": 1}
        rows = one_at_a_time(
            defaults, {"n": [20, 100], "d": [0.5], "sd": [2]}, iterations=1
        )
        for row in rows[1:]:
            differing = [k for k in defaults if row[k] != defaults[k]]
            assert len(differing) == 1

    def test_union_of_factorials_repeats_baseline(self):
        """Test per-axis factorial sub-grids keep the baseline in each one."""
        rows = union(
            full_factorial({"n": [20, 50, 100], "d": 0.0, "sd": 1}, iterations=10),
            full_factorial({"n": 50, "d": [0.0, 0.2, 0.5, 0.8], "sd": 1}, iterations=10),
            full_factorial({"n": 50, "d": 0.0, "sd": [1, 2]}, iterations=10),
        )
        assert len(rows) == (3 + 4 + 2) * 10
        assert count_conditions(rows) == 7
        baseline = [r for r in rows if r.params == {"n": 50, "d": 0.0, "sd": 1}]
        assert len(baseline) == 3 * 10

    def test_variation_without_default(self):
        """Test a varied axis must have a default."""
        with pytest.raises(SimulationConfigError, match="without a default"):
            one_at_a_time({"n": 50}, {"d": [0.0, 0.5]}, iterations=1)


class TestUnion:
    """Tests for grid unions."""

    def test_duplicates_kept(self):
        """Test duplicate conditions stay as independent rows."""
        grid = full_factorial({"a": [1]}, iterations=2)
        rows = union(grid, grid)

        assert len(rows) == 4
        assert [r.index for r in rows] == [0, 1, 2, 3]
        assert count_conditions(rows) == 1

    def test_mismatched_axes(self):
        """Test sub-grids must share their axes."""
        with pytest.raises(SimulationConfigError, match="same axes"):
            union(full_factorial({"a": [1]}, 1), full_factorial({"b": [1]}, 1))


class TestPartialFactorial:
    """Tests for restricted grids."""

    def test_restriction_applied_before_iterations(self):
        """Test excluded combinations never reach iteration expansion."""
        rule = Restriction(when={"n": {">=": 200}}, require={"sd": 1})
        rows = partial_factorial({"n": [50, 200], "sd": [1, 2]}, iterations=3, where=rule)

        assert len(rows) == 3 * 3
        assert {r.key for r in rows} == {
            (("n", 50), ("sd", 1)),
            (("n", 50), ("sd", 2)),
            (("n", 200), ("sd", 1)),
        }

    def test_callable_predicate(self):
        """Test any callable on the condition works as a predicate."""
        rows = partial_factorial(
            {"a": [1, 2, 3], "b": [1, 2, 3]}, 1, where=lambda c: c["a"] <= c["b"]
        )
        assert len(rows) == 6

    def test_unknown_operator(self):
        """Test restrictions reject unknown comparisons."""
        with pytest.raises(SimulationConfigError, match="operator"):
            Restriction(when={"n": {"=>": 200}}, require={"sd": 1})


class TestGridConfig:
    """Tests for YAML grid definitions."""

    def test_from_yaml_factorial(self, temp_dir):
        """Test loading a factorial grid."""
        path = temp_dir / "grid.yaml"
        path.write_text(
            "iterations: 5\n"
            "axes:\n"
            "  n: [10, 20]\n"
            "  d: [0.0, 0.5, 0.8]\n"
        )
        config = GridConfig.from_yaml(path)

        assert config.mode == "factorial"
        assert len(config.build()) == 2 * 3 * 5

    def test_one_at_a_time_mode(self):
        """Test mode one_at_a_time uses defaults."""
        config = GridConfig.from_dict(
            {
                "mode": "one_at_a_time",
                "iterations": 2,
                "defaults": {"n": 50, "d": 0.0},
                "axes": {"n": [20, 50, 100], "d": [0.0, 0.5]},
            }
        )
        assert len(config.build()) == (3 + 2 - 1) * 2

    def test_partial_mode_with_where(self):
        """Test where restrictions parsed from a mapping."""
        config = GridConfig.from_dict(
            {
                "mode": "partial",
                "iterations": 1,
                "axes": {"n": [50, 200], "sd": [1, 2]},
                "where": [{"when": {"n": {">=": 200}}, "require": {"sd": 1}}],
            }
        )
        assert len(config.build()) == 3

    def test_partial_without_where(self):
        """Test partial grids need a restriction."""
        config = GridConfig(axes={"n": [1]}, iterations=1, mode="partial")
        with pytest.raises(SimulationConfigError, match="where"):
            config.build()

    def test_unknown_mode(self):
        """Test an unknown mode is rejected."""
        config = GridConfig(axes={"n": [1]}, iterations=1, mode="latin")
        with pytest.raises(SimulationConfigError, match="Unknown grid mode"):
            config.build()

    def test_missing_axes(self):
        """Test axes are required."""
        with pytest.raises(ValueError, match="axes"):
            GridConfig.from_dict({"iterations": 3})
