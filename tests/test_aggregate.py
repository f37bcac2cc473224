# Copyright (c) Syntropy Systems
"""Tests for result aggregation."""

import math

import numpy as np
import pytest

from simstudy.aggregate import (
    Metric,
    RunningStats,
    interval_width,
    summarize,
    summarize_result,
    summary_table,
)
from simstudy.errors import SimulationConfigError
from simstudy.grid import full_factorial
from simstudy.models.records import ParameterRow, RecordStatus, ResultRecord
from simstudy.procedures import p_below
from simstudy.procedures.two_sample import generate_two_groups, welch_t_test
from simstudy.runner import run_simulation


def _record(index, params, status=RecordStatus.OK, **values):
    row = ParameterRow(index=index, iteration=index + 1, params=params)
    return ResultRecord(analysis="a", row=row, status=status, values=values)


class TestRunningStats:
    """Tests for streaming statistics."""

    def test_matches_numpy(self):
        """Test Welford mean and variance against numpy."""
        values = [1.5, 2.0, -3.25, 8.0, 0.0, 4.5]
        stats = RunningStats()
        for v in values:
            stats.add(v)

        assert stats.count == 6
        assert math.isclose(stats.mean, float(np.mean(values)))
        assert math.isclose(stats.variance, float(np.var(values, ddof=1)))
        assert stats.reduce("min") == -3.25
        assert stats.reduce("max") == 8.0
        assert math.isclose(stats.reduce("sum"), sum(values))

    def test_empty(self):
        """Test nothing observed reduces to None."""
        stats = RunningStats()
        assert stats.reduce("mean") is None
        assert stats.variance is None


class TestSummarize:
    """Tests for per-condition summaries."""

    def test_status_accounting(self):
        """Test failed and no_data records are counted but not averaged."""
        params = {"n": 10}
        records = [
            _record(0, params, p=0.01, estimate=1.0),
            _record(1, params, p=0.20, estimate=3.0),
            _record(2, params, status=RecordStatus.FAILED),
            _record(3, params, status=RecordStatus.NO_DATA),
        ]
        [agg] = summarize(records)

        assert agg.params == {"n": 10}
        assert agg.attempted == 4
        assert agg.failed == 1
        assert agg.resolved == 3
        assert agg.no_data == 1
        assert agg.rejection_rate == 0.5
        assert agg.mean_estimate == 2.0
        assert agg.attrition == 0.25

    def test_bias_and_coverage(self):
        """Test bias and coverage against a truth parameter."""
        params = {"mu": 1.5}
        records = [
            _record(0, params, estimate=1.0, lo=0.0, hi=2.0, p=0.5),
            _record(1, params, estimate=3.0, lo=2.0, hi=4.0, p=0.5),
        ]
        [agg] = summarize(records, truth="mu", ci=("lo", "hi"))

        assert agg.bias == 0.5
        assert agg.coverage == 0.5
        assert agg.rejection_rate == 0.0

    def test_truth_callable_and_constant(self):
        """Test truth may be a constant or derived from parameters."""
        records = [_record(0, {"a": 1.0, "b": 3.0}, estimate=2.5)]
        [by_const] = summarize(records, truth=2.0)
        [by_func] = summarize(records, truth=lambda p: p["b"] - p["a"])
        assert by_const.bias == 0.5
        assert by_func.bias == 0.5

    def test_groups_in_first_appearance_order(self):
        """Test one aggregate per condition, ordered by first record."""
        records = [
            _record(0, {"n": 50}, p=0.01),
            _record(1, {"n": 10}, p=0.01),
            _record(2, {"n": 50}, p=0.9),
        ]
        aggregates = summarize(records)
        assert [a.params["n"] for a in aggregates] == [50, 10]
        assert [a.attempted for a in aggregates] == [2, 1]

    def test_group_by_subset(self):
        """Test grouping on a subset of parameters merges the rest."""
        records = [
            _record(0, {"n": 10, "sd": 1}, p=0.01),
            _record(1, {"n": 10, "sd": 2}, p=0.9),
        ]
        [agg] = summarize(records, group_by=["n"])
        assert agg.params == {"n": 10}
        assert agg.attempted == 2

    def test_custom_significance(self):
        """Test a different alpha changes the rejection rate."""
        records = [_record(0, {"n": 1}, p=0.03), _record(1, {"n": 1}, p=0.2)]
        [strict] = summarize(records, significant=p_below(0.01))
        [loose] = summarize(records, significant=p_below(0.10))
        assert strict.rejection_rate == 0.0
        assert loose.rejection_rate == 0.5

    def test_caller_metrics(self):
        """Test named reductions over values and extractors."""
        records = [
            _record(0, {"n": 1}, estimate=1.0, ci_lower=0.0, ci_upper=2.0),
            _record(1, {"n": 1}, estimate=3.0, ci_lower=1.0, ci_upper=5.0),
            _record(2, {"n": 1}, status=RecordStatus.FAILED),
        ]
        [agg] = summarize(
            records,
            metrics=[
                Metric("sd_estimate", "estimate", reduce="sd"),
                Metric("max_estimate", "estimate", reduce="max"),
                Metric("ci_width", interval_width()),
            ],
        )
        assert math.isclose(agg.metrics["sd_estimate"], math.sqrt(2.0))
        assert agg.metrics["max_estimate"] == 3.0
        assert agg.metrics["ci_width"] == 3.0

    def test_unknown_reduction(self):
        """Test metrics validate their reduction."""
        with pytest.raises(SimulationConfigError, match="median"):
            Metric("m", "estimate", reduce="median")

    def test_duplicate_metric_names(self):
        """Test metric names must be unique."""
        with pytest.raises(SimulationConfigError, match="unique"):
            summarize([], metrics=[Metric("m", "x"), Metric("m", "y")])


class TestSummarizeRuns:
    """Tests for summaries of real runs."""

    def test_attrition_from_failed_generation(self):
        """Test rows that cannot be generated show up as attrition."""
        rows = full_factorial(
            {
                "n_per_condition": [0, 20],
                "mean_control": 0.0,
                "mean_intervention": 0.5,
                "sd_control": 1.0,
                "sd_intervention": 1.0,
            },
            iterations=10,
        )
        result = run_simulation(rows, generate_two_groups, {"welch": welch_t_test}, seed=1)
        empty, full = summarize_result(result, "welch", truth="mean_intervention")

        assert empty.params["n_per_condition"] == 0
        assert (empty.attempted, empty.resolved, empty.failed) == (10, 0, 10)
        assert empty.rejection_rate is None
        assert empty.attrition == 1.0
        assert (full.attempted, full.resolved) == (10, 10)
        assert full.rejection_rate is not None

    def test_unknown_analysis(self):
        """Test summarizing an analysis that never ran is an error."""
        rows = full_factorial(
            {
                "n_per_condition": 20,
                "mean_control": 0.0,
                "mean_intervention": 0.0,
                "sd_control": 1.0,
                "sd_intervention": 1.0,
            },
            iterations=2,
        )
        result = run_simulation(rows, generate_two_groups, {"welch": welch_t_test}, seed=1)
        with pytest.raises(SimulationConfigError, match="student"):
            summarize_result(result, "student")

    def test_summary_table_flattens(self):
        """Test summary rows carry parameters, counts and metrics."""
        records = [_record(0, {"n": 10}, p=0.01, estimate=1.0)]
        [row] = summary_table(summarize(records, metrics=[Metric("est", "estimate")]))
        assert row["n"] == 10
        assert row["attempted"] == 1
        assert row["rejection_rate"] == 1.0
        assert row["attrition"] == 0.0
        assert row["est"] == 1.0
