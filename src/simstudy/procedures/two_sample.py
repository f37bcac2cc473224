# Copyright (c) Syntropy Systems
"""Two-group (control vs intervention) data and analyses.

Positive estimates mean intervention > control.
"""
from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from scipy import stats

from simstudy.errors import AnalysisError, GenerationError
from simstudy.procedures.base import procedure

if TYPE_CHECKING:
    from simstudy.models.base import MetricValue, ParamValue

MIN_GROUP_SIZE = 2
CONFIDENCE = 0.95

GROUP_PARAMS = ("mean_control", "mean_intervention", "sd_control", "sd_intervention")
SIZE_PARAMS = ("n_per_condition", "n_minimum", "n_maximum")


@dataclass(frozen=True)
class TwoGroupData:
    """Scores for a control and an intervention group."""

    control: np.ndarray
    intervention: np.ndarray

    @property
    def n_control(self) -> int:
        return int(self.control.size)

    @property
    def n_intervention(self) -> int:
        return int(self.intervention.size)


def _number(params: Mapping[str, ParamValue], name: str, default: float | None = None) -> float:
    value = params.get(name, default)
    if value is None or isinstance(value, (bool, str)):
        msg = f"Parameter '{name}' must be a number, got {value!r}"
        raise GenerationError(msg)
    return float(value)


def _group_size(params: Mapping[str, ParamValue], rng: np.random.Generator) -> int:
    if params.get("n_per_condition") is not None:
        return int(_number(params, "n_per_condition"))
    n_min = _number(params, "n_minimum")
    n_max = _number(params, "n_maximum")
    if n_max < n_min:
        msg = f"n_maximum ({n_max}) is below n_minimum ({n_min})"
        raise GenerationError(msg)
    return int(rng.uniform(n_min, n_max))


@procedure(params=GROUP_PARAMS, optional=SIZE_PARAMS)
def generate_two_groups(
    params: Mapping[str, ParamValue], rng: np.random.Generator
) -> TwoGroupData:
    """Draw normal scores for both groups.

    The group size is ``n_per_condition`` when given, otherwise one uniform
    draw between ``n_minimum`` and ``n_maximum`` shared by both groups.
    """
    n = _group_size(params, rng)
    if n < MIN_GROUP_SIZE:
        msg = f"Group size must be at least {MIN_GROUP_SIZE}, got {n}"
        raise GenerationError(msg)

    sd_control = _number(params, "sd_control", 1.0)
    sd_intervention = _number(params, "sd_intervention", 1.0)
    if sd_control < 0 or sd_intervention < 0:
        msg = "Standard deviations must be non-negative"
        raise GenerationError(msg)

    control = rng.normal(_number(params, "mean_control", 0.0), sd_control, size=n)
    intervention = rng.normal(_number(params, "mean_intervention"), sd_intervention, size=n)
    return TwoGroupData(control=control, intervention=intervention)


def _check_variance(data: TwoGroupData) -> tuple[float, float]:
    if data.n_control < MIN_GROUP_SIZE or data.n_intervention < MIN_GROUP_SIZE:
        msg = "Each group needs at least two observations"
        raise AnalysisError(msg)
    var_c = float(np.var(data.control, ddof=1))
    var_i = float(np.var(data.intervention, ddof=1))
    if var_c == 0.0 and var_i == 0.0:
        msg = "Both groups have zero variance"
        raise AnalysisError(msg)
    return var_c, var_i


def welch_t_test(data: TwoGroupData, params: Mapping[str, ParamValue]) -> dict[str, MetricValue]:
    """Two-sided Welch t-test of intervention minus control."""
    _ = params
    var_c, var_i = _check_variance(data)
    n_c, n_i = data.n_control, data.n_intervention
    diff = float(np.mean(data.intervention) - np.mean(data.control))

    se_c, se_i = var_c / n_c, var_i / n_i
    se = math.sqrt(se_c + se_i)
    df = (se_c + se_i) ** 2 / (se_c**2 / (n_c - 1) + se_i**2 / (n_i - 1))
    t = diff / se
    p = float(2 * stats.t.sf(abs(t), df))
    crit = float(stats.t.ppf(0.5 + CONFIDENCE / 2, df))
    return {
        "estimate": diff,
        "statistic": t,
        "df": df,
        "p": p,
        "ci_lower": diff - crit * se,
        "ci_upper": diff + crit * se,
        "total_n": n_c + n_i,
    }


def student_t_test(data: TwoGroupData, params: Mapping[str, ParamValue]) -> dict[str, MetricValue]:
    """Two-sided pooled-variance t-test of intervention minus control."""
    _ = params
    var_c, var_i = _check_variance(data)
    n_c, n_i = data.n_control, data.n_intervention
    diff = float(np.mean(data.intervention) - np.mean(data.control))

    df = n_c + n_i - 2
    pooled = ((n_c - 1) * var_c + (n_i - 1) * var_i) / df
    se = math.sqrt(pooled * (1 / n_c + 1 / n_i))
    t = diff / se
    p = float(2 * stats.t.sf(abs(t), df))
    crit = float(stats.t.ppf(0.5 + CONFIDENCE / 2, df))
    return {
        "estimate": diff,
        "statistic": t,
        "df": float(df),
        "p": p,
        "ci_lower": diff - crit * se,
        "ci_upper": diff + crit * se,
        "total_n": n_c + n_i,
    }


def cohens_d(data: TwoGroupData, params: Mapping[str, ParamValue]) -> dict[str, MetricValue]:
    """Standardized mean difference with its large-sample sampling variance.

    ``p`` comes from the pooled-variance t-test, so the estimate and its
    significance describe the same comparison.
    """
    var_c, var_i = _check_variance(data)
    n_c, n_i = data.n_control, data.n_intervention
    pooled_sd = math.sqrt(((n_c - 1) * var_c + (n_i - 1) * var_i) / (n_c + n_i - 2))
    d = float(np.mean(data.intervention) - np.mean(data.control)) / pooled_sd

    variance = (n_c + n_i) / (n_c * n_i) + d**2 / (2 * (n_c + n_i))
    se = math.sqrt(variance)
    z = float(stats.norm.ppf(0.5 + CONFIDENCE / 2))
    t_test = student_t_test(data, params)
    return {
        "estimate": d,
        "variance": variance,
        "se": se,
        "ci_lower": d - z * se,
        "ci_upper": d + z * se,
        "p": t_test["p"],
        "total_n": n_c + n_i,
    }
