"""
simstudy - Monte Carlo simulation studies over parameter grids.

Generate, analyze, repeat, summarize.
"""

from simstudy.aggregate import Metric, summarize, summarize_result, summary_table
from simstudy.errors import (
    AnalysisError,
    GenerationError,
    SimulationConfigError,
    SimulationError,
)
from simstudy.grid import GridConfig, full_factorial, one_at_a_time, partial_factorial, union
from simstudy.nested import NestedSimulationRunner, run_nested_simulation
from simstudy.procedures import p_below, procedure, safely
from simstudy.rng import StreamPolicy
from simstudy.runner import SimulationRunner, run_simulation

__version__ = "0.1.0"
__all__ = [
    "AnalysisError",
    "GenerationError",
    "GridConfig",
    "Metric",
    "NestedSimulationRunner",
    "SimulationConfigError",
    "SimulationError",
    "SimulationRunner",
    "StreamPolicy",
    "__version__",
    "full_factorial",
    "one_at_a_time",
    "p_below",
    "partial_factorial",
    "procedure",
    "run_nested_simulation",
    "run_simulation",
    "safely",
    "summarize",
    "summarize_result",
    "summary_table",
    "union",
]
