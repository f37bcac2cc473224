# Copyright (c) Syntropy Systems
"""Parameter grid expansion.

Three ways to lay out conditions:

- full factorial: every combination of every axis
- one at a time: a baseline at the defaults plus one sub-grid per varied axis
- partial factorial: full factorial minus combinations a predicate rejects

Each condition is crossed with iterations ``1..N``. Rows are emitted in a
fixed order (axes in declaration order, last axis fastest, iteration fastest
of all) so a grid built twice is identical.
"""
from __future__ import annotations

import itertools
import operator
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Optional, Union, cast

import yaml

from simstudy.errors import SimulationConfigError
from simstudy.models.records import ParameterRow

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence
    from pathlib import Path

    from simstudy.models.base import ParamValue

AxisValues = Union["ParamValue", Iterable["ParamValue"]]
Axes = Mapping[str, AxisValues]
RowPredicate = Callable[[Mapping[str, "ParamValue"]], bool]

RESERVED_NAMES = frozenset({"iteration", "index"})
GRID_MODES = ("factorial", "one_at_a_time", "partial")

_OPERATORS: dict[str, Callable[[object, object], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def normalize_axes(axes: Axes) -> dict[str, list[ParamValue]]:
    """Turn axis specs into explicit value lists.

    Scalars (and strings) become single-value axes, the way a fixed
    parameter is written in an ``expand_grid`` call.
    """
    normalized: dict[str, list[ParamValue]] = {}
    for name, spec in axes.items():
        if name in RESERVED_NAMES:
            msg = f"Axis name '{name}' is reserved"
            raise SimulationConfigError(msg)
        if isinstance(spec, (str, bytes)) or not isinstance(spec, Iterable):
            values = [cast("ParamValue", spec)]
        else:
            values = list(cast("Iterable[ParamValue]", spec))
        if not values:
            msg = f"Axis '{name}' has no values"
            raise SimulationConfigError(msg)
        normalized[name] = values
    return normalized


def generate_conditions(axes: Axes) -> Iterator[dict[str, ParamValue]]:
    """Generate all combinations of axis values, without iterations."""
    normalized = normalize_axes(axes)
    names = list(normalized)
    for combo in itertools.product(*normalized.values()):
        yield dict(zip(names, combo))


def expand_iterations(
    conditions: Iterable[Mapping[str, ParamValue]],
    iterations: int,
    start: int = 0,
) -> list[ParameterRow]:
    """Cross conditions with iterations ``1..iterations``."""
    _check_iterations(iterations)
    rows: list[ParameterRow] = []
    index = start
    for condition in conditions:
        for iteration in range(1, iterations + 1):
            rows.append(
                ParameterRow(index=index, iteration=iteration, params=dict(condition))
            )
            index += 1
    return rows


def full_factorial(
    axes: Axes,
    iterations: int,
    where: RowPredicate | None = None,
) -> list[ParameterRow]:
    """Cartesian product of all axes, crossed with iterations."""
    conditions: Iterable[dict[str, ParamValue]] = generate_conditions(axes)
    if where is not None:
        conditions = (c for c in conditions if where(c))
    return expand_iterations(conditions, iterations)


def partial_factorial(
    axes: Axes,
    iterations: int,
    where: RowPredicate,
) -> list[ParameterRow]:
    """Factorial grid with combinations excluded before iteration expansion."""
    return full_factorial(axes, iterations, where=where)


def union(*grids: Sequence[ParameterRow]) -> list[ParameterRow]:
    """Concatenate sub-grids.

    Duplicate conditions are kept as independent rows: each one is a
    separately drawn iteration. Rows are renumbered in emission order.
    """
    axis_sets = {frozenset(row.params) for grid in grids for row in grid}
    if len(axis_sets) > 1:
        msg = "Sub-grids in a union must share the same axes"
        raise SimulationConfigError(msg)

    rows: list[ParameterRow] = []
    for grid in grids:
        for row in grid:
            rows.append(row.model_copy(update={"index": len(rows)}))
    return rows


def one_at_a_time(
    defaults: Mapping[str, ParamValue],
    variations: Axes,
    iterations: int,
) -> list[ParameterRow]:
    """Vary each axis alone around shared defaults.

    Emits the baseline condition once, then for every varied axis its
    non-default values with all other axes at their defaults. Over axes of
    sizes (a, b, c) that all contain their default this is
    ``(a + b + c - 2) * iterations`` rows.

    To repeat the baseline once per varied axis instead, ``union()`` one
    ``full_factorial`` sub-grid per axis, each with the other axes fixed at
    their defaults. That layout has ``(a + b + c) * iterations`` rows.
    """
    varied = normalize_axes(variations)
    baseline = dict(normalize_axes({k: [v] for k, v in defaults.items()}))
    unknown = [name for name in varied if name not in baseline]
    if unknown:
        msg = f"Varied axes without a default: {', '.join(unknown)}"
        raise SimulationConfigError(msg)

    base_condition = {name: values[0] for name, values in baseline.items()}
    sub_grids: list[list[ParameterRow]] = [
        expand_iterations([base_condition], iterations)
    ]
    for name, values in varied.items():
        conditions = [
            {**base_condition, name: value}
            for value in values
            if value != base_condition[name]
        ]
        sub_grids.append(expand_iterations(conditions, iterations))
    return union(*sub_grids)


def _check_iterations(iterations: int) -> None:
    if isinstance(iterations, bool) or not isinstance(iterations, int) or iterations < 1:
        msg = f"Iteration count must be a positive integer, got {iterations!r}"
        raise SimulationConfigError(msg)


@dataclass
class Restriction:
    """Row validity rule: when every ``when`` test holds, ``require`` must hold.

    ``when`` maps an axis to either a literal (equality) or a mapping of
    comparison operator to threshold, e.g. ``{"n": {">=": 200}}``.
    """

    when: dict[str, object]
    require: dict[str, object]

    def __post_init__(self) -> None:
        for test in self.when.values():
            if isinstance(test, dict):
                for op in cast("dict[str, object]", test):
                    if op not in _OPERATORS:
                        msg = f"Unknown comparison operator: {op}"
                        raise SimulationConfigError(msg)

    def __call__(self, condition: Mapping[str, ParamValue]) -> bool:
        if all(_matches(condition.get(k), t) for k, t in self.when.items()):
            return all(_matches(condition.get(k), t) for k, t in self.require.items())
        return True


def _matches(value: object, test: object) -> bool:
    if isinstance(test, dict):
        tests = cast("dict[str, object]", test)
        try:
            return all(_OPERATORS[op](value, bound) for op, bound in tests.items())
        except TypeError:
            return False
    return value == test


def all_of(*predicates: RowPredicate) -> RowPredicate:
    """Combine predicates; a row is valid only if every predicate accepts it."""

    def _predicate(condition: Mapping[str, ParamValue]) -> bool:
        return all(p(condition) for p in predicates)

    return _predicate


@dataclass
class GridConfig:
    """Declarative grid definition, usually loaded from YAML."""

    axes: dict[str, AxisValues]
    iterations: int = 1000
    mode: str = "factorial"  # factorial, one_at_a_time, partial
    defaults: dict[str, ParamValue] = field(default_factory=dict)
    where: list[Restriction] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> GridConfig:
        """Build a grid config from a parsed mapping."""
        if "axes" not in data:
            msg = "Grid config must have 'axes' field"
            raise ValueError(msg)

        raw_where = cast("list[dict[str, dict[str, object]]]", data.get("where") or [])
        where: list[Restriction] = []
        for item in raw_where:
            if "when" not in item or "require" not in item:
                msg = "Each 'where' entry needs 'when' and 'require'"
                raise ValueError(msg)
            where.append(Restriction(when=dict(item["when"]), require=dict(item["require"])))

        return cls(
            axes=dict(cast("dict[str, AxisValues]", data["axes"])),
            iterations=cast("int", data.get("iterations", 1000)),
            mode=cast("str", data.get("mode", "factorial")),
            defaults=dict(cast("dict[str, ParamValue]", data.get("defaults") or {})),
            where=where,
        )

    @classmethod
    def from_yaml(cls, path: Path) -> GridConfig:
        """Load a grid configuration from a YAML file."""
        with path.open() as f:
            data = cast("dict[str, object]", yaml.safe_load(f) or {})
        return cls.from_dict(data)

    def predicate(self) -> Optional[RowPredicate]:
        """Row predicate built from the ``where`` restrictions, if any."""
        if not self.where:
            return None
        return all_of(*self.where)

    def build(self) -> list[ParameterRow]:
        """Expand into parameter rows."""
        if self.mode == "factorial":
            return full_factorial(self.axes, self.iterations, where=self.predicate())
        if self.mode == "partial":
            predicate = self.predicate()
            if predicate is None:
                msg = "Partial grids require at least one 'where' restriction"
                raise SimulationConfigError(msg)
            return partial_factorial(self.axes, self.iterations, predicate)
        if self.mode == "one_at_a_time":
            if not self.defaults:
                msg = "One-at-a-time grids require 'defaults'"
                raise SimulationConfigError(msg)
            return one_at_a_time(self.defaults, self.axes, self.iterations)
        msg = f"Unknown grid mode: {self.mode}"
        raise SimulationConfigError(msg)


def count_conditions(rows: Iterable[ParameterRow]) -> int:
    """Number of distinct grouping keys in a grid."""
    return len({row.key for row in rows})
