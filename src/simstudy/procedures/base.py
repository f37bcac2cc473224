# Copyright (c) Syntropy Systems
"""Contract for pluggable generate/analyze procedures.

A generate procedure maps a row's parameters and a random generator to an
opaque dataset::

    def generate(params: Mapping[str, ParamValue], rng: np.random.Generator) -> Dataset

An analyze procedure maps a dataset (and the same parameters) to a flat
mapping of metrics, or ``None`` when there is nothing to report::

    def analyze(dataset: Dataset, params: Mapping[str, ParamValue]) -> Mapping | None

Outer analyses of a nested run receive the published studies instead of a
dataset. Procedures signal degenerate inputs by raising ``GenerationError``
or ``AnalysisError``; anything else is treated as a bug and propagates.
"""
from __future__ import annotations

import importlib
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional, TypeVar, Union

from simstudy.errors import AnalysisError, GenerationError, SimulationConfigError

if TYPE_CHECKING:
    import numpy as np

    from simstudy.models.base import MetricValue, ParamValue
    from simstudy.models.records import ParameterRow, StudyRecord

Dataset = Any
Metrics = Mapping[str, "MetricValue"]
GenerateFn = Callable[[Mapping[str, "ParamValue"], "np.random.Generator"], Dataset]
AnalyzeFn = Callable[[Dataset, Mapping[str, "ParamValue"]], Optional[Metrics]]
OuterAnalyzeFn = Callable[
    [Sequence["StudyRecord"], Mapping[str, "ParamValue"]], Optional[Metrics]
]

SignificancePredicate = Callable[[Mapping[str, "MetricValue"]], bool]

F = TypeVar("F", bound=Callable[..., Any])

PARAMS_ATTR = "__simstudy_params__"
OPTIONAL_ATTR = "__simstudy_optional__"


class PBelow:
    """Significance predicate: ``values[key] < alpha``."""

    alpha: float
    key: str

    def __init__(self, alpha: float = 0.05, key: str = "p") -> None:
        self.alpha = alpha
        self.key = key

    def __call__(self, values: Mapping[str, MetricValue]) -> bool:
        p = values.get(self.key)
        if p is None or isinstance(p, bool):
            return False
        return float(p) < self.alpha


def p_below(alpha: float = 0.05, key: str = "p") -> PBelow:
    """Significance predicate on a p-value metric."""
    return PBelow(alpha, key)


def procedure(
    params: Iterable[str] | None = None,
    optional: Iterable[str] | None = None,
) -> Callable[[F], F]:
    """Declare the parameter names a procedure requires and accepts.

    Declared names are checked against the grid once, before any row runs.
    The function itself is returned unchanged so it stays picklable.
    """

    def _decorate(func: F) -> F:
        setattr(func, PARAMS_ATTR, frozenset(params or ()))
        setattr(func, OPTIONAL_ATTR, frozenset(optional or ()))
        return func

    return _decorate


@dataclass(frozen=True)
class Procedure:
    """A named procedure with its declared parameters."""

    name: str
    func: Callable[..., Any]
    params: Optional[frozenset[str]] = None
    optional: frozenset[str] = frozenset()

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self.func(*args, **kwargs)

    @property
    def identity(self) -> str:
        """Stable ``module:qualname`` identity, used for cache keys."""
        return callable_identity(self.func)


def callable_identity(func: Callable[..., Any]) -> str:
    """Return ``module:qualname`` for a callable (or its wrapped callable)."""
    if isinstance(func, Safely):
        return f"safely({callable_identity(func.func)})"
    module = getattr(func, "__module__", None) or type(func).__module__
    qualname = getattr(func, "__qualname__", None) or type(func).__qualname__
    return f"{module}:{qualname}"


def as_procedure(func: Union[Procedure, Callable[..., Any]], name: str | None = None) -> Procedure:
    """Wrap a callable as a Procedure, reading declared params if present."""
    if isinstance(func, Procedure):
        return func
    if not callable(func):
        msg = f"Procedure {name or func!r} is not callable"
        raise SimulationConfigError(msg)
    target = func.func if isinstance(func, Safely) else func
    declared = getattr(target, PARAMS_ATTR, None)
    optional = getattr(target, OPTIONAL_ATTR, frozenset())
    label = name or getattr(func, "__name__", None) or type(func).__name__
    return Procedure(name=label, func=func, params=declared, optional=optional)


class Safely:
    """Convert foreign exceptions raised by a procedure into row-level errors.

    Wraps e.g. a numpy or scipy call that raises ``ValueError`` on a
    degenerate draw, so the runner records the row instead of aborting.
    """

    func: Callable[..., Any]
    catch: tuple[type[BaseException], ...]
    as_: type[GenerationError] | type[AnalysisError]

    def __init__(
        self,
        func: Callable[..., Any],
        catch: tuple[type[BaseException], ...] = (ValueError, ArithmeticError),
        as_: type[GenerationError] | type[AnalysisError] = AnalysisError,
    ) -> None:
        self.func = func
        self.catch = catch
        self.as_ = as_
        self.__name__ = getattr(func, "__name__", type(func).__name__)

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        try:
            return self.func(*args, **kwargs)
        except self.catch as e:
            raise self.as_(str(e)) from e


def safely(
    func: Callable[..., Any],
    catch: tuple[type[BaseException], ...] = (ValueError, ArithmeticError),
    as_: type[GenerationError] | type[AnalysisError] = AnalysisError,
) -> Safely:
    """Wrap ``func`` so the listed exceptions become ``as_`` errors."""
    return Safely(func, catch=catch, as_=as_)


def resolve_callable(path: str) -> Callable[..., Any]:
    """Import ``package.module:attribute`` (or dotted ``package.module.attribute``)."""
    if ":" in path:
        module_name, _, attr_path = path.partition(":")
    else:
        module_name, _, attr_path = path.rpartition(".")
    if not module_name or not attr_path:
        msg = f"Invalid procedure path: {path!r}"
        raise SimulationConfigError(msg)

    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as e:
        msg = f"Cannot import module '{module_name}' for procedure {path!r}"
        raise SimulationConfigError(msg) from e

    for attr in attr_path.split("."):
        try:
            target = getattr(target, attr)
        except AttributeError as e:
            msg = f"Module '{module_name}' has no attribute '{attr_path}'"
            raise SimulationConfigError(msg) from e

    if not callable(target):
        msg = f"Procedure {path!r} is not callable"
        raise SimulationConfigError(msg)
    return target


def validate_procedures(
    rows: Sequence[ParameterRow],
    generate: Procedure,
    analyses: Mapping[str, Procedure],
    extra_params: Iterable[str] = (),
) -> None:
    """Check a grid against the procedures before anything runs.

    Every parameter the generate procedure requires must be present on every
    row. When the generate procedure declares its parameters, every grid axis
    must also be accepted by it, by an analysis that declares the axis, or be
    listed in ``extra_params``. Undeclared analyses accept no extra axes.
    """
    if not rows:
        return

    axes = set(rows[0].params)
    for row in rows:
        if set(row.params) != axes:
            msg = f"Row {row.index} has axes {sorted(row.params)}, expected {sorted(axes)}"
            raise SimulationConfigError(msg)

    if generate.params is None:
        return
    missing = generate.params - axes
    if missing:
        msg = (
            f"Generate procedure '{generate.name}' needs parameters "
            f"missing from the grid: {', '.join(sorted(missing))}"
        )
        raise SimulationConfigError(msg)

    accepted: set[str] = set(extra_params)
    for proc in (generate, *analyses.values()):
        accepted |= set(proc.params or ()) | set(proc.optional)
    unknown = axes - accepted
    if unknown:
        msg = (
            f"Grid axes not accepted by any procedure: {', '.join(sorted(unknown))}"
        )
        raise SimulationConfigError(msg)
