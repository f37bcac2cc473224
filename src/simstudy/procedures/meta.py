# Copyright (c) Syntropy Systems
"""Outer analyses over a set of published studies.

Each function takes the published ``StudyRecord``s of one iteration and the
outer row's parameters. Study records must carry an effect ``estimate`` and
its sampling ``variance``.
"""
from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

import numpy as np
from scipy import stats

from simstudy.errors import AnalysisError
from simstudy.procedures.base import procedure

if TYPE_CHECKING:
    from simstudy.models.base import MetricValue, ParamValue
    from simstudy.models.records import StudyRecord

MIN_BIAS_TEST_STUDIES = 3
CONFIDENCE = 0.95


def effect_sizes(
    studies: Sequence[StudyRecord],
    estimate: str = "estimate",
    variance: str = "variance",
) -> tuple[np.ndarray, np.ndarray]:
    """Estimates and sampling variances of the usable studies."""
    yi: list[float] = []
    vi: list[float] = []
    for study in studies:
        y, v = study.value(estimate), study.value(variance)
        if y is None or v is None:
            continue
        if v <= 0 or not math.isfinite(v):
            msg = f"Study {study.study} has non-positive variance {v}"
            raise AnalysisError(msg)
        yi.append(y)
        vi.append(v)
    return np.asarray(yi, dtype=float), np.asarray(vi, dtype=float)


def _pooled(yi: np.ndarray, weights: np.ndarray) -> dict[str, MetricValue]:
    total = float(np.sum(weights))
    estimate = float(np.sum(weights * yi) / total)
    se = math.sqrt(1.0 / total)
    z = estimate / se
    crit = float(stats.norm.ppf(0.5 + CONFIDENCE / 2))
    return {
        "estimate": estimate,
        "variance": se**2,
        "se": se,
        "z": z,
        "p": float(2 * stats.norm.sf(abs(z))),
        "ci_lower": estimate - crit * se,
        "ci_upper": estimate + crit * se,
        "k": int(yi.size),
    }


def _heterogeneity(yi: np.ndarray, vi: np.ndarray) -> tuple[float, float, float]:
    """Cochran's Q, I^2 and the DerSimonian-Laird tau^2."""
    w = 1.0 / vi
    fixed = float(np.sum(w * yi) / np.sum(w))
    q = float(np.sum(w * (yi - fixed) ** 2))
    df = yi.size - 1
    i2 = max(0.0, (q - df) / q) if q > 0 else 0.0
    c = float(np.sum(w) - np.sum(w**2) / np.sum(w))
    tau2 = max(0.0, (q - df) / c) if c > 0 else 0.0
    return q, i2, tau2


def fixed_effect(
    studies: Sequence[StudyRecord], params: Mapping[str, ParamValue]
) -> dict[str, MetricValue] | None:
    """Inverse-variance weighted (common effect) pooled estimate."""
    _ = params
    yi, vi = effect_sizes(studies)
    if yi.size == 0:
        return None
    result = _pooled(yi, 1.0 / vi)
    q, i2, _ = _heterogeneity(yi, vi)
    result.update({"q": q, "i2": i2})
    return result


def random_effects(
    studies: Sequence[StudyRecord], params: Mapping[str, ParamValue]
) -> dict[str, MetricValue] | None:
    """DerSimonian-Laird random-effects pooled estimate."""
    _ = params
    yi, vi = effect_sizes(studies)
    if yi.size == 0:
        return None
    q, i2, tau2 = _heterogeneity(yi, vi)
    result = _pooled(yi, 1.0 / (vi + tau2))
    result.update({"q": q, "i2": i2, "tau2": tau2})
    return result


def egger_test(
    studies: Sequence[StudyRecord], params: Mapping[str, ParamValue]
) -> dict[str, MetricValue] | None:
    """Egger's regression test for funnel-plot asymmetry.

    Regresses the standardized effect on precision; a non-zero intercept
    indicates small-study effects. Returns None with fewer than three
    studies.
    """
    _ = params
    yi, vi = effect_sizes(studies)
    k = int(yi.size)
    if k < MIN_BIAS_TEST_STUDIES:
        return None

    se = np.sqrt(vi)
    design = np.column_stack([np.ones(k), 1.0 / se])
    if np.linalg.matrix_rank(design) < 2:
        msg = "Egger regression is singular: all studies share one standard error"
        raise AnalysisError(msg)

    response = yi / se
    coef, _, _, _ = np.linalg.lstsq(design, response, rcond=None)
    residuals = response - design @ coef
    df = k - 2
    sigma2 = float(residuals @ residuals) / df
    cov = sigma2 * np.linalg.inv(design.T @ design)
    intercept_se = math.sqrt(float(cov[0, 0]))
    if intercept_se == 0.0:
        msg = "Egger regression fits perfectly; intercept test undefined"
        raise AnalysisError(msg)

    intercept = float(coef[0])
    t = intercept / intercept_se
    return {
        "intercept": intercept,
        "intercept_se": intercept_se,
        "slope": float(coef[1]),
        "statistic": t,
        "df": float(df),
        "p": float(2 * stats.t.sf(abs(t), df)),
        "k": k,
    }


def _rate(params: Mapping[str, ParamValue], name: str, default: float) -> float:
    value = params.get(name)
    return default if value is None else float(value)


@procedure(optional=["lr_alpha", "lr_power"])
def mixed_results_lr(
    studies: Sequence[StudyRecord], params: Mapping[str, ParamValue]
) -> dict[str, MetricValue] | None:
    """Likelihood ratio for the number of significant studies in a set.

    Compares a binomial with success rate ``lr_alpha`` (no true effect,
    default 0.05) against one with rate ``lr_power`` (true effect, default
    0.80), and reports the ratio in favour of whichever is more likely.
    """
    n = len(studies)
    if n == 0:
        return None
    alpha = _rate(params, "lr_alpha", 0.05)
    power = _rate(params, "lr_power", 0.80)
    n_sig = sum(1 for study in studies if study.significant)

    like_h0 = float(stats.binom.pmf(n_sig, n, alpha))
    like_h1 = float(stats.binom.pmf(n_sig, n, power))
    if like_h0 == 0.0 and like_h1 == 0.0:
        msg = "Both hypotheses assign zero likelihood"
        raise AnalysisError(msg)
    favours_h1 = like_h1 >= like_h0
    if favours_h1:
        ratio = like_h1 / like_h0 if like_h0 > 0 else math.inf
    else:
        ratio = like_h0 / like_h1 if like_h1 > 0 else math.inf
    return {
        "likelihood_ratio": ratio,
        "favours_h1": favours_h1,
        "n_significant": n_sig,
        "n_studies": n,
    }
