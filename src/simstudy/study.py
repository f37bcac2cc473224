# Copyright (c) Syntropy Systems
"""Study definitions loaded from YAML.

Example study.yaml::

    name: welch-power
    seed: 123
    grid:
      mode: factorial
      iterations: 1000
      axes:
        n_per_condition: [20, 50, 100]
        mean_control: 0
        mean_intervention: [0, 0.2, 0.5]
        sd_control: 1
        sd_intervention: 1
    generate: simstudy.procedures.two_sample:generate_two_groups
    analyses:
      welch: simstudy.procedures.two_sample:welch_t_test
    summary:
      analysis: welch
      truth: mean_intervention
      ci: [ci_lower, ci_upper]

A ``nested`` block turns the study into studies-within-meta-analyses: the
single entry of ``analyses`` analyzes each study, and ``outer`` and
``bias_tests`` run on the published ones.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Union, cast

import yaml

from simstudy.aggregate import Metric, summarize
from simstudy.cache import cache_key
from simstudy.errors import SimulationConfigError
from simstudy.grid import GridConfig
from simstudy.nested import PUBLICATION_RECORD, run_nested_simulation
from simstudy.procedures.base import PBelow, p_below, resolve_callable
from simstudy.runner import run_simulation

if TYPE_CHECKING:
    from pathlib import Path
    from threading import Event

    from simstudy.models.records import (
        AggregateRecord,
        NestedSimulationResult,
        ParameterRow,
        SimulationResult,
    )
    from simstudy.runner import ProgressCallback

StudyResult = Union["SimulationResult", "NestedSimulationResult"]


def _require(data: Mapping[str, object], key: str, where: str) -> object:
    if key not in data:
        msg = f"{where} must have '{key}' field"
        raise ValueError(msg)
    return data[key]


def _paths(value: object, where: str) -> dict[str, str]:
    if not isinstance(value, dict) or not value:
        msg = f"'{where}' must map names to import paths"
        raise ValueError(msg)
    paths = cast("dict[object, object]", value)
    for name, path in paths.items():
        if not isinstance(path, str):
            msg = f"'{where}.{name}' must be an import path string"
            raise ValueError(msg)
    return {str(name): cast("str", path) for name, path in paths.items()}


@dataclass
class NestedSpec:
    """Publication filter and outer analyses of a nested study."""

    p_sig: float
    p_nonsig: float
    outer: dict[str, str]
    bias_tests: dict[str, str] = field(default_factory=dict)
    k_param: str = "k_studies"
    keep_studies: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> NestedSpec:
        """Build from the ``nested`` block of a study file."""
        bias_tests = data.get("bias_tests")
        return cls(
            p_sig=cast("float", _require(data, "p_sig", "Nested block")),
            p_nonsig=cast("float", _require(data, "p_nonsig", "Nested block")),
            outer=_paths(_require(data, "outer", "Nested block"), "nested.outer"),
            bias_tests=_paths(bias_tests, "nested.bias_tests") if bias_tests else {},
            k_param=cast("str", data.get("k_param", "k_studies")),
            keep_studies=bool(data.get("keep_studies", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "p_sig": self.p_sig,
            "p_nonsig": self.p_nonsig,
            "outer": dict(self.outer),
            "bias_tests": dict(self.bias_tests),
            "k_param": self.k_param,
            "keep_studies": self.keep_studies,
        }


@dataclass
class SummarySpec:
    """How to reduce one analysis to per-condition aggregates."""

    analysis: Optional[str] = None
    estimate: Optional[str] = "estimate"
    truth: Optional[Union[str, float]] = None
    ci: Optional[tuple[str, str]] = None
    p_key: str = "p"
    alpha: Optional[float] = None
    group_by: Optional[list[str]] = None
    metrics: list[Metric] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> SummarySpec:
        """Build from the ``summary`` block of a study file."""
        ci = data.get("ci")
        if ci is not None:
            if not isinstance(ci, list) or len(cast("list[object]", ci)) != 2:  # noqa: PLR2004
                msg = "'summary.ci' must be a [lower, upper] pair of metric names"
                raise ValueError(msg)
            lower, upper = cast("list[str]", ci)
            ci = (str(lower), str(upper))

        metrics: list[Metric] = []
        for item in cast("list[dict[str, object]]", data.get("metrics") or []):
            metrics.append(
                Metric(
                    name=cast("str", _require(item, "name", "Summary metric")),
                    value=cast("str", item.get("value", item["name"])),
                    reduce=cast("str", item.get("reduce", "mean")),
                )
            )

        group_by = data.get("group_by")
        return cls(
            analysis=cast("Optional[str]", data.get("analysis")),
            estimate=cast("Optional[str]", data.get("estimate", "estimate")),
            truth=cast("Optional[Union[str, float]]", data.get("truth")),
            ci=cast("Optional[tuple[str, str]]", ci),
            p_key=cast("str", data.get("p_key", "p")),
            alpha=cast("Optional[float]", data.get("alpha")),
            group_by=list(cast("list[str]", group_by)) if group_by else None,
            metrics=metrics,
        )


@dataclass
class StudyDefinition:
    """A complete simulation study: grid, procedures and summary."""

    name: str
    grid: GridConfig
    generate: str
    analyses: dict[str, str]
    nested: Optional[NestedSpec] = None
    summary: SummarySpec = field(default_factory=SummarySpec)
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if self.nested is not None and len(self.analyses) != 1:
            msg = "A nested study needs exactly one per-study analysis"
            raise SimulationConfigError(msg)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StudyDefinition:
        """Build a study from a parsed mapping."""
        grid_data = _require(data, "grid", "Study")
        if not isinstance(grid_data, dict):
            msg = "'grid' must be a mapping"
            raise ValueError(msg)
        nested = data.get("nested")
        summary = data.get("summary")
        seed = data.get("seed")
        if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int)):
            msg = f"'seed' must be an integer, got {seed!r}"
            raise ValueError(msg)

        return cls(
            name=cast("str", data.get("name", "study")),
            grid=GridConfig.from_dict(cast("dict[str, object]", grid_data)),
            generate=cast("str", _require(data, "generate", "Study")),
            analyses=_paths(_require(data, "analyses", "Study"), "analyses"),
            nested=NestedSpec.from_dict(cast("dict[str, object]", nested)) if nested else None,
            summary=(
                SummarySpec.from_dict(cast("dict[str, object]", summary))
                if summary
                else SummarySpec()
            ),
            seed=seed,
        )

    @classmethod
    def from_yaml(cls, path: Path) -> StudyDefinition:
        """Load a study definition from a YAML file."""
        with path.open() as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            msg = f"Study file {path} must contain a mapping"
            raise ValueError(msg)
        return cls.from_dict(cast("dict[str, object]", data))

    @property
    def is_nested(self) -> bool:
        return self.nested is not None

    def rows(self) -> list[ParameterRow]:
        """Expand the grid into parameter rows."""
        return self.grid.build()

    def procedure_paths(self) -> list[str]:
        """Every import path the study runs, in a fixed order."""
        paths = [self.generate, *self.analyses.values()]
        if self.nested is not None:
            paths.extend(self.nested.outer.values())
            paths.extend(self.nested.bias_tests.values())
        return paths

    def significance(self, alpha: float = 0.05) -> PBelow:
        """Significance predicate, with the summary block's alpha taking precedence."""
        if self.summary.alpha is not None:
            alpha = self.summary.alpha
        return p_below(alpha, self.summary.p_key)

    def default_analysis(self) -> str:
        """Analysis summarized when the summary block names none."""
        if self.summary.analysis:
            return self.summary.analysis
        if self.nested is not None:
            return next(iter(self.nested.outer), PUBLICATION_RECORD)
        return next(iter(self.analyses))

    def cache_key(
        self, rows: list[ParameterRow], seed: int, stream: str, alpha: float = 0.05
    ) -> str:
        """Cache key for running this study on ``rows``."""
        procedures = [resolve_callable(path) for path in self.procedure_paths()]
        extra: dict[str, Any] = {
            "analyses": sorted(self.analyses),
            "stream": stream,
            "nested": self.nested.to_dict() if self.nested is not None else None,
            "significance": [self.significance(alpha).alpha, self.summary.p_key],
        }
        return cache_key(rows, procedures, seed, extra)

    def run(  # noqa: PLR0913
        self,
        rows: list[ParameterRow],
        seed: int,
        *,
        alpha: float = 0.05,
        workers: int = 1,
        executor: str = "thread",
        stream: str = "per_row",
        keep_datasets: bool = False,
        cancel: Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> StudyResult:
        """Run the study's simulation on ``rows``."""
        generate = resolve_callable(self.generate)
        analyses = {name: resolve_callable(path) for name, path in self.analyses.items()}

        if self.nested is None:
            return run_simulation(
                rows,
                generate,
                analyses,
                seed,
                keep_datasets=keep_datasets,
                stream=stream,
                workers=workers,
                executor=executor,
                cancel=cancel,
                progress=progress,
            )

        return run_nested_simulation(
            rows,
            generate,
            next(iter(analyses.values())),
            {name: resolve_callable(path) for name, path in self.nested.outer.items()},
            self.nested.p_sig,
            self.nested.p_nonsig,
            seed,
            bias_tests={
                name: resolve_callable(path) for name, path in self.nested.bias_tests.items()
            },
            k_param=self.nested.k_param,
            significant=self.significance(alpha),
            keep_studies=self.nested.keep_studies,
            stream=stream,
            workers=workers,
            executor=executor,
            cancel=cancel,
            progress=progress,
        )

    def summarize(self, result: StudyResult, alpha: float = 0.05) -> list[AggregateRecord]:
        """Aggregate the summarized analysis per condition."""
        analysis = self.default_analysis()
        records = result.records(analysis)
        if not records and result.analyses and analysis not in result.analyses:
            msg = f"Unknown analysis '{analysis}', available: {', '.join(result.analyses)}"
            raise SimulationConfigError(msg)
        spec = self.summary
        return summarize(
            records,
            estimate=spec.estimate,
            significant=self.significance(alpha),
            truth=spec.truth,
            ci=spec.ci,
            metrics=spec.metrics,
            group_by=spec.group_by,
        )
