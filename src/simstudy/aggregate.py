# Copyright (c) Syntropy Systems
"""Group result records by condition and reduce them to summary statistics.

Failed records never contribute to a numerator, but they are always counted
as attempted, so attrition shows up as ``attempted - resolved`` instead of a
quietly smaller N.
"""
from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional, Union

from simstudy.errors import SimulationConfigError
from simstudy.models.records import (
    AggregateRecord,
    GroupKey,
    NestedSimulationResult,
    RecordStatus,
    ResultRecord,
    SimulationResult,
)
from simstudy.procedures.base import SignificancePredicate, p_below

if TYPE_CHECKING:
    from simstudy.models.base import ParamValue

TruthSpec = Union[str, float, Callable[[Mapping[str, "ParamValue"]], Optional[float]]]
ValueSpec = Union[str, Callable[[ResultRecord], Optional[float]]]

REDUCTIONS = ("mean", "sd", "rate", "min", "max", "sum")


class RunningStats:
    """Streaming mean/variance (Welford) over the values actually observed."""

    __slots__ = ("count", "mean", "_m2", "minimum", "maximum", "total")

    def __init__(self) -> None:
        self.count = 0
        self.mean = 0.0
        self._m2 = 0.0
        self.minimum = math.inf
        self.maximum = -math.inf
        self.total = 0.0

    def add(self, value: float) -> None:
        """Add one observation."""
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self._m2 += delta * (value - self.mean)
        self.minimum = min(self.minimum, value)
        self.maximum = max(self.maximum, value)
        self.total += value

    @property
    def variance(self) -> Optional[float]:
        """Sample variance, or None with fewer than two observations."""
        if self.count < 2:
            return None
        return self._m2 / (self.count - 1)

    def reduce(self, how: str) -> Optional[float]:
        """Apply a named reduction; None when nothing was observed."""
        if self.count == 0:
            return None
        if how in ("mean", "rate"):
            return self.mean
        if how == "sd":
            variance = self.variance
            return math.sqrt(variance) if variance is not None else None
        if how == "min":
            return self.minimum
        if how == "max":
            return self.maximum
        if how == "sum":
            return self.total
        msg = f"Unknown reduction: {how}"
        raise SimulationConfigError(msg)


@dataclass(frozen=True)
class Metric:
    """A caller-defined reduction over one value per record.

    ``value`` is either a metric name on the record or a callable returning
    a number (or None to skip the record).
    """

    name: str
    value: ValueSpec
    reduce: str = "mean"

    def __post_init__(self) -> None:
        if self.reduce not in REDUCTIONS:
            msg = f"Unknown reduction '{self.reduce}' for metric '{self.name}'"
            raise SimulationConfigError(msg)

    def extract(self, record: ResultRecord) -> Optional[float]:
        """Value of this metric for one record."""
        if not record.ok:
            return None
        if isinstance(self.value, str):
            return record.value(self.value)
        return self.value(record)


def interval_width(lower: str = "ci_lower", upper: str = "ci_upper") -> Callable[[ResultRecord], Optional[float]]:
    """Value extractor for the width of a confidence interval."""

    def _width(record: ResultRecord) -> Optional[float]:
        lo, hi = record.value(lower), record.value(upper)
        if lo is None or hi is None:
            return None
        return hi - lo

    return _width


class _Group:
    """Accumulator for one grouping key."""

    def __init__(self, params: dict[str, ParamValue], metrics: Sequence[Metric]) -> None:
        self.params = params
        self.attempted = 0
        self.failed = 0
        self.no_data = 0
        self.rejections = RunningStats()
        self.estimates = RunningStats()
        self.errors = RunningStats()
        self.covered = RunningStats()
        self.metrics = {metric.name: RunningStats() for metric in metrics}


def _truth_value(truth: TruthSpec | None, params: Mapping[str, ParamValue]) -> Optional[float]:
    if truth is None:
        return None
    if isinstance(truth, str):
        raw = params.get(truth)
        if raw is None or isinstance(raw, (bool, str)):
            return None
        return float(raw)
    if isinstance(truth, (int, float)):
        return float(truth)
    return truth(params)


def _group_key(record: ResultRecord, group_by: Sequence[str] | None) -> GroupKey:
    if group_by is None:
        return record.row.key
    return tuple((name, record.row.get(name)) for name in group_by)


def summarize(  # noqa: PLR0913
    records: Iterable[ResultRecord],
    *,
    estimate: str | None = "estimate",
    significant: SignificancePredicate | None = None,
    truth: TruthSpec | None = None,
    ci: tuple[str, str] | None = None,
    metrics: Sequence[Metric] = (),
    group_by: Sequence[str] | None = None,
) -> list[AggregateRecord]:
    """Summarize records per condition, in order of first appearance.

    Args:
        records: Records to group, typically ``result.records(name)``
        estimate: Metric holding the point estimate (None to skip)
        significant: Predicate on record values for the rejection rate
            (default ``p < 0.05``)
        truth: Parameter name, constant or callable giving the generating
            value, used for bias and coverage
        ci: ``(lower, upper)`` metric names for coverage of ``truth``
        metrics: Additional caller-defined reductions
        group_by: Parameter names to group by (default: every parameter
            except the iteration index)

    """
    names = [metric.name for metric in metrics]
    if len(set(names)) != len(names):
        msg = "Metric names must be unique"
        raise SimulationConfigError(msg)
    predicate = significant or p_below()

    groups: dict[GroupKey, _Group] = {}
    for record in records:
        key = _group_key(record, group_by)
        group = groups.get(key)
        if group is None:
            group = _Group(dict(key), metrics)
            groups[key] = group

        group.attempted += 1
        if record.status is RecordStatus.FAILED:
            group.failed += 1
            continue
        if record.status is RecordStatus.NO_DATA:
            group.no_data += 1
            continue

        group.rejections.add(1.0 if predicate(record.values) else 0.0)

        params = record.row.params
        true_value = _truth_value(truth, params)
        point = record.value(estimate) if estimate is not None else None
        if point is not None:
            group.estimates.add(point)
            if true_value is not None:
                group.errors.add(point - true_value)

        if ci is not None and true_value is not None:
            lower, upper = record.value(ci[0]), record.value(ci[1])
            if lower is not None and upper is not None:
                group.covered.add(1.0 if lower <= true_value <= upper else 0.0)

        for metric in metrics:
            value = metric.extract(record)
            if value is not None and not math.isnan(value):
                group.metrics[metric.name].add(value)

    return [
        AggregateRecord(
            params=group.params,
            attempted=group.attempted,
            resolved=group.attempted - group.failed,
            failed=group.failed,
            no_data=group.no_data,
            rejection_rate=group.rejections.reduce("rate"),
            mean_estimate=group.estimates.reduce("mean"),
            bias=group.errors.reduce("mean"),
            coverage=group.covered.reduce("rate"),
            metrics={
                metric.name: group.metrics[metric.name].reduce(metric.reduce)
                for metric in metrics
            },
        )
        for group in groups.values()
    ]


def summarize_result(
    result: SimulationResult | NestedSimulationResult,
    analysis: str,
    **kwargs: object,
) -> list[AggregateRecord]:
    """Summarize one named analysis of a run result."""
    if analysis not in result.analyses:
        msg = f"Unknown analysis '{analysis}', available: {', '.join(result.analyses)}"
        raise SimulationConfigError(msg)
    return summarize(result.records(analysis), **kwargs)  # type: ignore[arg-type]


def summary_table(aggregates: Iterable[AggregateRecord]) -> list[dict[str, ParamValue]]:
    """Flatten aggregate records to plain rows for export or display."""
    rows: list[dict[str, ParamValue]] = []
    for aggregate in aggregates:
        row: dict[str, ParamValue] = dict(aggregate.params)
        row.update(
            {
                "attempted": aggregate.attempted,
                "resolved": aggregate.resolved,
                "failed": aggregate.failed,
                "no_data": aggregate.no_data,
                "attrition": aggregate.attrition,
                "rejection_rate": aggregate.rejection_rate,
                "mean_estimate": aggregate.mean_estimate,
                "bias": aggregate.bias,
                "coverage": aggregate.coverage,
            }
        )
        row.update(aggregate.metrics)
        rows.append(row)
    return rows
