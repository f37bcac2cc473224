# Copyright (c) Syntropy Systems
"""Exception types for simstudy.

Row-level errors (``GenerationError``, ``AnalysisError``) are raised by
generate/analyze procedures and recorded per row by the runners; they never
abort a run. ``SimulationConfigError`` is raised once, before any row
executes, when a grid or procedure set cannot be run at all.
"""
from __future__ import annotations


class SimulationError(Exception):
    """Base class for simstudy errors."""


class GenerationError(SimulationError):
    """A generate procedure could not produce a dataset for its parameters."""


class AnalysisError(SimulationError):
    """An analyze procedure could not be fit to its dataset."""


class SimulationConfigError(SimulationError, ValueError):
    """Grid or procedure misconfiguration detected before the run starts."""
