# Copyright (c) Syntropy Systems
"""Two-level simulation: studies nested inside meta-analyses.

Every outer row is one simulated literature. For each of them:

1. GENERATING_STUDIES: ``k`` inner studies are generated and analyzed.
2. FILTERING: each study is published with probability ``p_sig`` when
   significant and ``p_nonsig`` otherwise, one uniform draw per study.
3. AGGREGATING: outer analyses pool the published studies.
4. BIAS_TESTING: optional small-study-effect tests on the same subset.
5. DONE: counts and the analyses' records form one MetaAnalysisRecord.

An empty published subset is a normal outcome and yields a ``no_data``
record. Outer analyses only ever see studies from their own iteration, and
only once all of its studies have resolved.
"""
from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from enum import Enum
from typing import TYPE_CHECKING, Optional

from simstudy.errors import AnalysisError, SimulationConfigError
from simstudy.models.records import (
    MetaAnalysisRecord,
    NestedSimulationResult,
    ParameterRow,
    RecordStatus,
    ResultRecord,
    StudyRecord,
)
from simstudy.procedures.base import (
    Procedure,
    SignificancePredicate,
    as_procedure,
    p_below,
    validate_procedures,
)
from simstudy.rng import RandomStreams, StreamPolicy
from simstudy.runner import (
    ProcedureLike,
    ProgressCallback,
    check_execution,
    describe_error,
    execute_units,
    run_row,
)

if TYPE_CHECKING:
    from threading import Event

    import numpy as np

    from simstudy.models.base import MetricValue

logger = logging.getLogger(__name__)

PUBLICATION_RECORD = "publication"
STUDY_ANALYSIS = "study"


class IterationStage(str, Enum):
    """Stages one outer iteration moves through."""

    GENERATING_STUDIES = "generating_studies"
    FILTERING = "filtering"
    AGGREGATING = "aggregating"
    BIAS_TESTING = "bias_testing"
    DONE = "done"


def publication_filter(significant: bool, p_sig: float, p_nonsig: float, u: float) -> bool:  # noqa: FBT001
    """Retain a study when its uniform draw falls below its retention probability.

    The comparison is strict, so a probability of 0 never retains and a
    probability of 1 always retains a draw from ``[0, 1)``.
    """
    return u < (p_sig if significant else p_nonsig)


class PublicationFilter:
    """Stochastic, memoryless publication rule."""

    p_sig: float
    p_nonsig: float

    def __init__(self, p_sig: float, p_nonsig: float) -> None:
        for name, value in (("p_sig", p_sig), ("p_nonsig", p_nonsig)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                msg = f"{name} must be a number, got {value!r}"
                raise SimulationConfigError(msg)
            if not 0.0 <= float(value) <= 1.0:
                msg = f"{name} must be within [0, 1], got {value}"
                raise SimulationConfigError(msg)
        self.p_sig = float(p_sig)
        self.p_nonsig = float(p_nonsig)

    def decide(self, significant: bool, rng: np.random.Generator) -> bool:  # noqa: FBT001
        """Draw once and decide."""
        return publication_filter(significant, self.p_sig, self.p_nonsig, float(rng.random()))

    def for_row(self, row: ParameterRow) -> PublicationFilter:
        """Filter with probabilities overridden by ``p_sig``/``p_nonsig`` axes."""
        p_sig = row.get("p_sig", self.p_sig)
        p_nonsig = row.get("p_nonsig", self.p_nonsig)
        if p_sig == self.p_sig and p_nonsig == self.p_nonsig:
            return self
        return PublicationFilter(_as_float(p_sig), _as_float(p_nonsig))


def _as_float(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        msg = f"Publication probability must be a number, got {value!r}"
        raise SimulationConfigError(msg)
    return float(value)


def study_count(row: ParameterRow, k_param: str) -> int:
    """Number of inner studies an outer row asks for."""
    if k_param not in row:
        msg = f"Outer row {row.index} has no '{k_param}' parameter"
        raise SimulationConfigError(msg)
    k = row[k_param]
    if isinstance(k, float) and k.is_integer():
        k = int(k)
    if isinstance(k, bool) or not isinstance(k, int) or k < 0:
        msg = f"'{k_param}' must be a non-negative integer, got {k!r}"
        raise SimulationConfigError(msg)
    return k


def _mean(values: Sequence[float]) -> Optional[float]:
    return math.fsum(values) / len(values) if values else None


def run_outer_analysis(
    name: str,
    analyze: Procedure,
    studies: Sequence[StudyRecord],
    row: ParameterRow,
) -> ResultRecord:
    """Apply one outer analysis to the published studies of one iteration."""
    if not studies:
        return ResultRecord(analysis=name, row=row, status=RecordStatus.NO_DATA)
    try:
        values = analyze(list(studies), dict(row.params))
    except AnalysisError as e:
        logger.debug("Outer analysis '%s' failed for row %d: %s", name, row.index, e)
        return ResultRecord(
            analysis=name, row=row, status=RecordStatus.FAILED, error=describe_error(e)
        )
    if values is None:
        return ResultRecord(analysis=name, row=row, status=RecordStatus.NO_DATA)
    return ResultRecord(analysis=name, row=row, values=dict(values))


class IterationTask:
    """Picklable unit of work for one outer iteration."""

    def __init__(  # noqa: PLR0913
        self,
        generate: Procedure,
        analyze: Procedure,
        outer: Mapping[str, Procedure],
        bias_tests: Mapping[str, Procedure],
        publication: PublicationFilter,
        significant: SignificancePredicate,
        streams: RandomStreams,
        k_param: str,
        estimate_key: str,
        keep_studies: bool,  # noqa: FBT001
    ) -> None:
        self.generate = generate
        self.analyze = analyze
        self.outer = dict(outer)
        self.bias_tests = dict(bias_tests)
        self.publication = publication
        self.significant = significant
        self.streams = streams
        self.k_param = k_param
        self.estimate_key = estimate_key
        self.keep_studies = keep_studies

    def __call__(self, row: ParameterRow) -> MetaAnalysisRecord:
        rng = self.streams.for_row(row.index)
        k = study_count(row, self.k_param)

        _log_stage(row, IterationStage.GENERATING_STUDIES)
        studies = self._generate_studies(row, k, rng)

        # All k studies are resolved past this point.
        _log_stage(row, IterationStage.FILTERING)
        publication = self.publication.for_row(row)
        studies = [
            study.model_copy(
                update={"published": publication.decide(study.significant, rng) and study.ok}
            )
            for study in studies
        ]
        published = [study for study in studies if study.published]

        results: dict[str, ResultRecord] = {}
        _log_stage(row, IterationStage.AGGREGATING)
        for name, analyze in self.outer.items():
            results[name] = run_outer_analysis(name, analyze, published, row)

        if self.bias_tests:
            _log_stage(row, IterationStage.BIAS_TESTING)
            for name, test in self.bias_tests.items():
                results[name] = run_outer_analysis(name, test, published, row)

        results[PUBLICATION_RECORD] = self._publication_record(row, studies)
        _log_stage(row, IterationStage.DONE)

        return MetaAnalysisRecord(
            row=row,
            status=RecordStatus.OK if published else RecordStatus.NO_DATA,
            n_studies=len(studies),
            n_resolved=sum(1 for s in studies if not s.failed),
            n_significant=sum(1 for s in studies if s.significant),
            n_published=len(published),
            results=results,
            studies=studies if self.keep_studies else [],
        )

    def _generate_studies(
        self, row: ParameterRow, k: int, rng: np.random.Generator
    ) -> list[StudyRecord]:
        studies: list[StudyRecord] = []
        for study_idx in range(k):
            study_row = ParameterRow(
                index=study_idx, iteration=row.iteration, params=dict(row.params)
            )
            row_result, _ = run_row(
                study_row, rng, self.generate, {STUDY_ANALYSIS: self.analyze}
            )
            record = row_result.results[STUDY_ANALYSIS]
            studies.append(
                StudyRecord(
                    analysis=record.analysis,
                    row=record.row,
                    status=record.status,
                    values=record.values,
                    error=record.error,
                    study=study_idx,
                    significant=record.ok and self.significant(record.values),
                )
            )
        return studies

    def _publication_record(
        self, row: ParameterRow, studies: Sequence[StudyRecord]
    ) -> ResultRecord:
        all_estimates = [
            v for v in (s.value(self.estimate_key) for s in studies) if v is not None
        ]
        published_estimates = [
            v
            for v in (s.value(self.estimate_key) for s in studies if s.published)
            if v is not None
        ]
        n_published = sum(1 for s in studies if s.published)
        values: dict[str, MetricValue] = {
            "n_studies": len(studies),
            "n_resolved": sum(1 for s in studies if not s.failed),
            "n_significant": sum(1 for s in studies if s.significant),
            "n_published": n_published,
            "published_fraction": n_published / len(studies) if studies else None,
            "mean_estimate_all": _mean(all_estimates),
            "mean_estimate_published": _mean(published_estimates),
        }
        return ResultRecord(analysis=PUBLICATION_RECORD, row=row, values=values)


def _log_stage(row: ParameterRow, stage: IterationStage) -> None:
    logger.debug("Outer row %d: %s", row.index, stage.value)


class NestedSimulationRunner:
    """Runs studies, publication filtering and outer analyses per iteration.

    Parallelism is across outer iterations; each iteration draws all of its
    randomness (studies and publication decisions) from its own sub-stream.
    """

    def __init__(  # noqa: PLR0913
        self,
        generate: ProcedureLike,
        analyze: ProcedureLike,
        outer: Mapping[str, ProcedureLike],
        p_sig: float,
        p_nonsig: float,
        seed: int = 123,
        *,
        bias_tests: Mapping[str, ProcedureLike] | None = None,
        k_param: str = "k_studies",
        significant: SignificancePredicate | None = None,
        estimate_key: str = "estimate",
        keep_studies: bool = False,
        stream: StreamPolicy | str = StreamPolicy.PER_ROW,
        workers: int = 1,
        executor: str = "thread",
    ) -> None:
        """Initialize a nested runner.

        Args:
            generate: Inner generate procedure for one study
            analyze: Inner analysis producing estimate, variance and p-value
            outer: Named pooling analyses, ``(studies, params) -> metrics``
            p_sig: Publication probability of a significant study
            p_nonsig: Publication probability of a non-significant study
            seed: Base seed for all random streams
            bias_tests: Named small-study-effect tests run after pooling
            k_param: Outer parameter holding the number of studies
            significant: Predicate on study metrics (default ``p < 0.05``)
            estimate_key: Study metric holding the effect estimate
            keep_studies: Keep StudyRecords on each MetaAnalysisRecord
            stream: Random stream policy
            workers: Number of parallel workers (1 = sequential)
            executor: ``thread`` or ``process`` pool for workers > 1

        """
        self.generate = as_procedure(generate, "generate")
        self.analyze = as_procedure(analyze, STUDY_ANALYSIS)
        self.outer = {name: as_procedure(f, name) for name, f in outer.items()}
        self.bias_tests = {
            name: as_procedure(f, name) for name, f in (bias_tests or {}).items()
        }
        reserved = {PUBLICATION_RECORD} & (set(self.outer) | set(self.bias_tests))
        if reserved:
            msg = f"'{PUBLICATION_RECORD}' is a reserved analysis name"
            raise SimulationConfigError(msg)
        duplicate = set(self.outer) & set(self.bias_tests)
        if duplicate:
            msg = f"Duplicate outer analysis names: {', '.join(sorted(duplicate))}"
            raise SimulationConfigError(msg)
        self.publication = PublicationFilter(p_sig, p_nonsig)
        self.seed = seed
        self.k_param = k_param
        self.significant = significant or p_below()
        self.estimate_key = estimate_key
        self.keep_studies = keep_studies
        self.stream = StreamPolicy(stream)
        self.workers = workers
        self.executor = executor

    def validate(self, rows: Sequence[ParameterRow]) -> None:
        """Fail fast on misconfiguration, before any iteration executes."""
        check_execution(RandomStreams(self.seed, self.stream), self.workers, self.executor)
        for row in rows:
            _ = study_count(row, self.k_param)
            _ = self.publication.for_row(row)
        validate_procedures(
            rows,
            self.generate,
            {STUDY_ANALYSIS: self.analyze, **self.outer, **self.bias_tests},
            extra_params=(self.k_param, "p_sig", "p_nonsig"),
        )

    def run(
        self,
        rows: Sequence[ParameterRow],
        cancel: Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> NestedSimulationResult:
        """Run every outer iteration and return records in row order."""
        self.validate(rows)
        task = IterationTask(
            generate=self.generate,
            analyze=self.analyze,
            outer=self.outer,
            bias_tests=self.bias_tests,
            publication=self.publication,
            significant=self.significant,
            streams=RandomStreams(self.seed, self.stream),
            k_param=self.k_param,
            estimate_key=self.estimate_key,
            keep_studies=self.keep_studies,
        )
        records, cancelled = execute_units(
            rows,
            task,
            workers=self.workers,
            executor=self.executor,
            cancel=cancel,
            progress=progress,
        )

        no_data = sum(1 for r in records if r.status is RecordStatus.NO_DATA)
        logger.info(
            "Nested simulation finished: %d/%d iterations, %d without published studies%s",
            len(records),
            len(rows),
            no_data,
            " (cancelled)" if cancelled else "",
        )
        return NestedSimulationResult(seed=self.seed, iterations=records, cancelled=cancelled)


def run_nested_simulation(  # noqa: PLR0913
    rows: Sequence[ParameterRow],
    generate: ProcedureLike,
    analyze: ProcedureLike,
    outer: Mapping[str, ProcedureLike],
    p_sig: float,
    p_nonsig: float,
    seed: int = 123,
    *,
    bias_tests: Mapping[str, ProcedureLike] | None = None,
    k_param: str = "k_studies",
    significant: SignificancePredicate | None = None,
    estimate_key: str = "estimate",
    keep_studies: bool = False,
    stream: StreamPolicy | str = StreamPolicy.PER_ROW,
    workers: int = 1,
    executor: str = "thread",
    cancel: Event | None = None,
    progress: ProgressCallback | None = None,
) -> NestedSimulationResult:
    """Run a nested simulation with a publication filter between levels."""
    runner = NestedSimulationRunner(
        generate,
        analyze,
        outer,
        p_sig,
        p_nonsig,
        seed,
        bias_tests=bias_tests,
        k_param=k_param,
        significant=significant,
        estimate_key=estimate_key,
        keep_studies=keep_studies,
        stream=stream,
        workers=workers,
        executor=executor,
    )
    return runner.run(rows, cancel=cancel, progress=progress)


__all__ = [
    "IterationStage",
    "NestedSimulationRunner",
    "PublicationFilter",
    "p_below",
    "publication_filter",
    "run_nested_simulation",
]

