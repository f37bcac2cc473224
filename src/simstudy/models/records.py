# Copyright (c) Syntropy Systems
"""Typed records flowing through grid, runners and aggregator."""

from __future__ import annotations

import math
from enum import Enum
from typing import Any, Optional, cast

from pydantic import Field, field_validator

from .base import FrozenModel, MetricValue, ParamValue, SimBaseModel

GroupKey = tuple[tuple[str, ParamValue], ...]


def _to_builtin(value: object) -> object:
    """Unwrap numpy scalars so records serialize as plain JSON."""
    item = getattr(value, "item", None)
    if callable(item) and not isinstance(value, (list, dict, str)):
        try:
            return item()
        except (TypeError, ValueError):
            return value
    return value


class ParameterRow(FrozenModel):
    """One fully resolved parameter combination plus its iteration index.

    ``index`` is the row's position in the grid and is the handle used for
    sub-stream seeding and the dataset side-table.
    """

    index: int
    iteration: int
    params: dict[str, ParamValue]

    @field_validator("params", mode="before")
    @classmethod
    def _coerce_params(cls, value: object) -> dict[str, object]:
        if not isinstance(value, dict):
            return cast("dict[str, object]", value)
        value_dict = cast("dict[str, object]", value)
        return {name: _to_builtin(item) for name, item in value_dict.items()}

    @property
    def key(self) -> GroupKey:
        """Grouping key: every parameter except the iteration index."""
        return tuple(sorted(self.params.items(), key=lambda item: item[0]))

    def get(self, name: str, default: ParamValue = None) -> ParamValue:
        """Return a parameter value or the provided default."""
        return self.params.get(name, default)

    def __getitem__(self, name: str) -> ParamValue:
        return self.params[name]

    def __contains__(self, name: object) -> bool:
        return name in self.params

    def __hash__(self) -> int:
        return hash((self.index, self.iteration, self.key))


class RecordStatus(str, Enum):
    """Outcome of one analysis of one row."""

    OK = "ok"
    FAILED = "failed"
    NO_DATA = "no_data"


class ResultRecord(SimBaseModel):
    """Metrics produced by one named analysis for one row."""

    analysis: str
    row: ParameterRow
    status: RecordStatus = RecordStatus.OK
    values: dict[str, MetricValue] = Field(default_factory=dict)
    error: Optional[str] = None

    @field_validator("values", mode="before")
    @classmethod
    def _coerce_values(cls, value: object) -> dict[str, object]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            return dict(cast("Any", value))
        value_dict = cast("dict[str, object]", value)
        return {name: _to_builtin(item) for name, item in value_dict.items()}

    @property
    def ok(self) -> bool:
        """Whether the analysis produced usable values."""
        return self.status is RecordStatus.OK

    @property
    def failed(self) -> bool:
        """Whether the row or analysis raised a recorded error."""
        return self.status is RecordStatus.FAILED

    def value(self, name: str) -> float | None:
        """Return a numeric value (booleans as 0/1), or None if absent or NaN."""
        if not self.ok:
            return None
        raw = self.values.get(name)
        if raw is None:
            return None
        number = float(raw)
        if math.isnan(number):
            return None
        return number


class RowResult(SimBaseModel):
    """All analysis results for one parameter row."""

    row: ParameterRow
    results: dict[str, ResultRecord] = Field(default_factory=dict)
    dataset_id: Optional[int] = None
    generation_failed: bool = False


class StudyRecord(ResultRecord):
    """Inner study result with its publication decision."""

    study: int
    significant: bool = False
    published: bool = False


class MetaAnalysisRecord(SimBaseModel):
    """Outcome of one outer iteration of a nested simulation."""

    row: ParameterRow
    status: RecordStatus = RecordStatus.OK
    n_studies: int = 0
    n_resolved: int = 0
    n_significant: int = 0
    n_published: int = 0
    results: dict[str, ResultRecord] = Field(default_factory=dict)
    studies: list[StudyRecord] = Field(default_factory=list)

    @property
    def published(self) -> list[StudyRecord]:
        """Studies retained by the publication filter."""
        return [study for study in self.studies if study.published]


class AggregateRecord(SimBaseModel):
    """Summary statistics for one grouping key."""

    params: dict[str, ParamValue]
    attempted: int = 0
    resolved: int = 0
    failed: int = 0
    no_data: int = 0
    rejection_rate: Optional[float] = None
    mean_estimate: Optional[float] = None
    bias: Optional[float] = None
    coverage: Optional[float] = None
    metrics: dict[str, Optional[float]] = Field(default_factory=dict)

    @property
    def attrition(self) -> float:
        """Fraction of attempted rows that ended in a recorded failure."""
        if self.attempted == 0:
            return 0.0
        return (self.attempted - self.resolved) / self.attempted


class SimulationResult(SimBaseModel):
    """Output of a flat simulation run."""

    seed: int
    rows: list[RowResult] = Field(default_factory=list)
    cancelled: bool = False
    datasets: dict[int, Any] = Field(default_factory=dict, exclude=True)

    def records(self, analysis: str) -> list[ResultRecord]:
        """Flatten to one record per row for the named analysis."""
        return [row.results[analysis] for row in self.rows if analysis in row.results]

    @property
    def analyses(self) -> list[str]:
        """Analysis names in first-seen order."""
        names: dict[str, None] = {}
        for row in self.rows:
            for name in row.results:
                names.setdefault(name)
        return list(names)


class NestedSimulationResult(SimBaseModel):
    """Output of a nested (studies within meta-analyses) run."""

    seed: int
    iterations: list[MetaAnalysisRecord] = Field(default_factory=list)
    cancelled: bool = False

    def records(self, analysis: str) -> list[ResultRecord]:
        """Flatten to one record per outer iteration for the named analysis."""
        return [
            meta.results[analysis] for meta in self.iterations if analysis in meta.results
        ]

    @property
    def analyses(self) -> list[str]:
        """Outer analysis names in first-seen order."""
        names: dict[str, None] = {}
        for meta in self.iterations:
            for name in meta.results:
                names.setdefault(name)
        return list(names)
