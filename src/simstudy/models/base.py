# Copyright (c) Syntropy Systems
"""Shared Pydantic model helpers for simstudy."""

from __future__ import annotations

from typing import ClassVar, Union

from pydantic import BaseModel, ConfigDict, JsonValue
from typing_extensions import TypeAlias

ParamValue: TypeAlias = Union[str, int, float, bool, None]
MetricValue: TypeAlias = Union[int, float, bool, None]
JSONValue: TypeAlias = JsonValue
JSONObject: TypeAlias = dict[str, JSONValue]


class SimBaseModel(BaseModel):
    """Base model with shared config for simstudy records."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        ser_json_inf_nan="constants",
    )


class FrozenModel(BaseModel):
    """Immutable, hashable record."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="forbid",
        frozen=True,
        ser_json_inf_nan="constants",
    )
