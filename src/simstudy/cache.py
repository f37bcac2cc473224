# Copyright (c) Syntropy Systems
"""File-based cache of simulation results.

Results are keyed on the realized grid, the identities of the procedures
that ran on it and the base seed. Datasets are never cached.
"""
from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Callable, TypeVar, Union

from pydantic import ValidationError

from simstudy.models.records import NestedSimulationResult, SimulationResult
from simstudy.procedures.base import Procedure, callable_identity

if TYPE_CHECKING:
    from pathlib import Path

    from simstudy.models.base import JSONValue
    from simstudy.models.records import ParameterRow

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT", SimulationResult, NestedSimulationResult)


def stable_json_sha256(obj: JSONValue) -> str:
    """SHA-256 of the canonical JSON encoding of ``obj``."""
    data = json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def cache_key(
    rows: Sequence[ParameterRow],
    procedures: Iterable[Union[Procedure, Callable[..., object]]],
    seed: int,
    extra: Mapping[str, JSONValue] | None = None,
) -> str:
    """Key identifying a run: grid rows, procedure identities and seed."""
    identities = [
        p.identity if isinstance(p, Procedure) else callable_identity(p) for p in procedures
    ]
    payload: dict[str, JSONValue] = {
        "rows": [[row.index, row.iteration, row.params] for row in rows],
        "procedures": identities,  # type: ignore[dict-item]
        "seed": seed,
        "extra": dict(extra or {}),
    }
    return stable_json_sha256(payload)


class ResultCache:
    """Directory of cached results, one JSON file per key."""

    directory: Path

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def path(self, key: str) -> Path:
        """File that holds the result for ``key``."""
        return self.directory / f"{key}.json"

    def get(self, key: str, model: type[ResultT]) -> ResultT | None:
        """Load a cached result, or None if absent or unreadable."""
        path = self.path(key)
        if not path.exists():
            return None
        try:
            return model.model_validate_json(path.read_text())
        except (OSError, ValidationError) as e:
            logger.warning("Ignoring unreadable cache entry %s: %s", path.name, e)
            return None

    def put(self, key: str, result: SimulationResult | NestedSimulationResult) -> Path:
        """Persist a result under ``key``."""
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path(key)
        tmp_path = path.with_suffix(".tmp")
        _ = tmp_path.write_text(result.model_dump_json())
        _ = tmp_path.replace(path)
        return path

    def keys(self) -> list[str]:
        """All cached keys."""
        if not self.directory.is_dir():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))

    def clear(self) -> int:
        """Delete every cached result and return how many were removed."""
        removed = 0
        for key in self.keys():
            self.path(key).unlink(missing_ok=True)
            removed += 1
        return removed


def cached(
    cache: ResultCache | None,
    key: str,
    compute: Callable[[], ResultT],
    model: type[ResultT],
) -> tuple[ResultT, bool]:
    """Return a cached result or compute and persist it.

    Cancelled runs are returned but never persisted.

    Returns:
        (result, hit)

    """
    if cache is not None:
        hit = cache.get(key, model)
        if hit is not None:
            logger.info("Cache hit %s", key[:12])
            return hit, True

    result = compute()
    if cache is not None and not result.cancelled:
        _ = cache.put(key, result)
        logger.info("Cached result %s", key[:12])
    return result, False
