# Copyright (c) Syntropy Systems
"""Typed records for simstudy."""

from .base import JSONObject, JSONValue, MetricValue, ParamValue
from .records import (
    AggregateRecord,
    GroupKey,
    MetaAnalysisRecord,
    NestedSimulationResult,
    ParameterRow,
    RecordStatus,
    ResultRecord,
    RowResult,
    SimulationResult,
    StudyRecord,
)

__all__ = [
    "AggregateRecord",
    "GroupKey",
    "JSONObject",
    "JSONValue",
    "MetaAnalysisRecord",
    "MetricValue",
    "NestedSimulationResult",
    "ParamValue",
    "ParameterRow",
    "RecordStatus",
    "ResultRecord",
    "RowResult",
    "SimulationResult",
    "StudyRecord",
]
