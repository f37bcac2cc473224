# Copyright (c) Syntropy Systems
"""Row-level simulation runner.

Each parameter row is generated once and analyzed by every requested
analysis. Rows are independent units of work: they may run sequentially or
on a thread/process pool, and a ``GenerationError`` or ``AnalysisError`` in
one row is recorded and never stops the batch.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from concurrent.futures import (
    Executor,
    Future,
    ProcessPoolExecutor,
    ThreadPoolExecutor,
    as_completed,
)
from typing import TYPE_CHECKING, Any, Callable, Generic, Optional, TypeVar, Union

from simstudy.errors import AnalysisError, GenerationError, SimulationConfigError
from simstudy.models.records import (
    ParameterRow,
    RecordStatus,
    ResultRecord,
    RowResult,
    SimulationResult,
)
from simstudy.procedures.base import Procedure, as_procedure, validate_procedures
from simstudy.rng import RandomStreams, StreamPolicy

if TYPE_CHECKING:
    from threading import Event

    import numpy as np

    from simstudy.procedures.base import Dataset

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

ProgressCallback = Callable[[int, int], None]
ProcedureLike = Union[Procedure, Callable[..., Any]]

EXECUTORS = ("thread", "process")


def describe_error(error: BaseException) -> str:
    """Short ``Type: message`` description stored on failed records."""
    return f"{type(error).__name__}: {error}"


def analyze_dataset(
    dataset: Dataset,
    row: ParameterRow,
    name: str,
    analyze: Procedure,
) -> ResultRecord:
    """Apply one analysis to a dataset, recording failure instead of raising."""
    try:
        values = analyze(dataset, dict(row.params))
    except AnalysisError as e:
        logger.debug("Analysis '%s' failed for row %d: %s", name, row.index, e)
        return ResultRecord(
            analysis=name,
            row=row,
            status=RecordStatus.FAILED,
            error=describe_error(e),
        )
    if values is None:
        return ResultRecord(analysis=name, row=row, status=RecordStatus.NO_DATA)
    return ResultRecord(analysis=name, row=row, values=dict(values))


def run_row(
    row: ParameterRow,
    rng: np.random.Generator,
    generate: Procedure,
    analyses: Mapping[str, Procedure],
) -> tuple[RowResult, Optional[Dataset]]:
    """Generate one dataset and run every analysis on it."""
    try:
        dataset = generate(dict(row.params), rng)
    except GenerationError as e:
        logger.debug("Generation failed for row %d: %s", row.index, e)
        error = describe_error(e)
        failed = {
            name: ResultRecord(
                analysis=name, row=row, status=RecordStatus.FAILED, error=error
            )
            for name in analyses
        }
        return RowResult(row=row, results=failed, generation_failed=True), None

    results = {
        name: analyze_dataset(dataset, row, name, analyze)
        for name, analyze in analyses.items()
    }
    return RowResult(row=row, results=results), dataset


class RowTask:
    """Picklable unit of work for one row."""

    generate: Procedure
    analyses: dict[str, Procedure]
    streams: RandomStreams
    keep_datasets: bool

    def __init__(
        self,
        generate: Procedure,
        analyses: Mapping[str, Procedure],
        streams: RandomStreams,
        keep_datasets: bool = False,  # noqa: FBT001, FBT002
    ) -> None:
        self.generate = generate
        self.analyses = dict(analyses)
        self.streams = streams
        self.keep_datasets = keep_datasets

    def __call__(self, row: ParameterRow) -> tuple[RowResult, Optional[Dataset]]:
        result, dataset = run_row(
            row, self.streams.for_row(row.index), self.generate, self.analyses
        )
        if not self.keep_datasets:
            # Only the records outlive the row.
            dataset = None
        elif dataset is not None:
            result = result.model_copy(update={"dataset_id": row.index})
        return result, dataset


class _Collector(Generic[R]):
    """Collects unit results and reports progress."""

    def __init__(self, total: int, progress: ProgressCallback | None) -> None:
        self.total = total
        self.progress = progress
        self.done: list[tuple[int, R]] = []

    def add(self, position: int, result: R) -> None:
        self.done.append((position, result))
        if self.progress is not None:
            self.progress(len(self.done), self.total)

    def ordered(self) -> list[R]:
        return [result for _, result in sorted(self.done, key=lambda item: item[0])]


def execute_units(
    units: Sequence[T],
    task: Callable[[T], R],
    *,
    workers: int = 1,
    executor: str = "thread",
    cancel: Event | None = None,
    progress: ProgressCallback | None = None,
) -> tuple[list[R], bool]:
    """Run ``task`` over ``units`` and return results in unit order.

    Cancellation is checked between units only. Units still pending or in
    flight when cancellation is observed are discarded.

    Returns:
        (results, cancelled)

    """
    collector: _Collector[R] = _Collector(len(units), progress)

    if workers <= 1:
        for position, unit in enumerate(units):
            if cancel is not None and cancel.is_set():
                return collector.ordered(), True
            collector.add(position, task(unit))
        return collector.ordered(), False

    pool = _make_pool(executor, workers)
    cancelled = False
    try:
        futures: dict[Future[R], int] = {
            pool.submit(task, unit): position for position, unit in enumerate(units)
        }
        for future in as_completed(futures):
            if cancel is not None and cancel.is_set():
                cancelled = True
                break
            collector.add(futures[future], future.result())
    finally:
        pool.shutdown(wait=True, cancel_futures=True)
    return collector.ordered(), cancelled


def _make_pool(executor: str, workers: int) -> Executor:
    if executor == "process":
        return ProcessPoolExecutor(max_workers=workers)
    if executor == "thread":
        return ThreadPoolExecutor(max_workers=workers)
    msg = f"Unknown executor: {executor}"
    raise SimulationConfigError(msg)


def check_execution(streams: RandomStreams, workers: int, executor: str) -> None:
    """Reject execution settings that would break reproducibility."""
    if executor not in EXECUTORS:
        msg = f"Unknown executor: {executor}"
        raise SimulationConfigError(msg)
    if workers < 1:
        msg = f"Workers must be at least 1, got {workers}"
        raise SimulationConfigError(msg)
    if workers > 1 and not streams.parallel_safe:
        msg = "A shared random stream cannot be used with parallel workers"
        raise SimulationConfigError(msg)


def normalize_analyses(analyses: Mapping[str, ProcedureLike]) -> dict[str, Procedure]:
    """Wrap named analyze callables as Procedures."""
    if not analyses:
        msg = "At least one analysis is required"
        raise SimulationConfigError(msg)
    return {name: as_procedure(func, name) for name, func in analyses.items()}


class SimulationRunner:
    """Runs generate-then-analyze over a sequence of parameter rows.

    Features:
    - Per-row failure tolerance for GenerationError/AnalysisError
    - Per-row or shared random streams from one explicit base seed
    - Optional dataset side-table keyed by row index
    - Sequential, thread or process execution with identical results
    - Coarse-grained cancellation between rows
    """

    generate: Procedure
    analyses: dict[str, Procedure]
    seed: int
    stream: StreamPolicy
    workers: int
    executor: str
    keep_datasets: bool

    def __init__(  # noqa: PLR0913
        self,
        generate: ProcedureLike,
        analyses: Mapping[str, ProcedureLike],
        seed: int = 123,
        *,
        stream: StreamPolicy | str = StreamPolicy.PER_ROW,
        workers: int = 1,
        executor: str = "thread",
        keep_datasets: bool = False,
    ) -> None:
        """Initialize a runner.

        Args:
            generate: Generate procedure, ``(params, rng) -> dataset``
            analyses: Named analyze procedures, ``(dataset, params) -> metrics``
            seed: Base seed for all random streams
            stream: ``per_row`` or ``shared`` random stream policy
            workers: Number of parallel workers (1 = sequential)
            executor: ``thread`` or ``process`` pool for workers > 1
            keep_datasets: Keep generated datasets in the result side-table

        """
        self.generate = as_procedure(generate, "generate")
        self.analyses = normalize_analyses(analyses)
        self.seed = seed
        self.stream = StreamPolicy(stream)
        self.workers = workers
        self.executor = executor
        self.keep_datasets = keep_datasets

    def validate(self, rows: Sequence[ParameterRow]) -> None:
        """Fail fast on misconfiguration, before any row executes."""
        check_execution(RandomStreams(self.seed, self.stream), self.workers, self.executor)
        validate_procedures(rows, self.generate, self.analyses)

    def run(
        self,
        rows: Sequence[ParameterRow],
        cancel: Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> SimulationResult:
        """Run every row and return results in row order."""
        self.validate(rows)
        streams = RandomStreams(self.seed, self.stream)
        task = RowTask(self.generate, self.analyses, streams, self.keep_datasets)

        outcomes, cancelled = execute_units(
            rows,
            task,
            workers=self.workers,
            executor=self.executor,
            cancel=cancel,
            progress=progress,
        )

        result = SimulationResult(seed=self.seed, cancelled=cancelled)
        for row_result, dataset in outcomes:
            result.rows.append(row_result)
            if dataset is not None:
                result.datasets[row_result.row.index] = dataset

        failed = sum(1 for r in result.rows for rec in r.results.values() if rec.failed)
        logger.info(
            "Simulation finished: %d/%d rows, %d failed analyses%s",
            len(result.rows),
            len(rows),
            failed,
            " (cancelled)" if cancelled else "",
        )
        return result


def run_simulation(  # noqa: PLR0913
    rows: Sequence[ParameterRow],
    generate: ProcedureLike,
    analyses: Mapping[str, ProcedureLike],
    seed: int = 123,
    *,
    keep_datasets: bool = False,
    stream: StreamPolicy | str = StreamPolicy.PER_ROW,
    workers: int = 1,
    executor: str = "thread",
    cancel: Event | None = None,
    progress: ProgressCallback | None = None,
) -> SimulationResult:
    """Run a flat simulation: generate then analyze for every row."""
    runner = SimulationRunner(
        generate,
        analyses,
        seed,
        stream=stream,
        workers=workers,
        executor=executor,
        keep_datasets=keep_datasets,
    )
    return runner.run(rows, cancel=cancel, progress=progress)
