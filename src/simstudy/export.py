# Copyright (c) Syntropy Systems
"""Write summary tables and result records to CSV or JSON."""
from __future__ import annotations

import csv
from typing import TYPE_CHECKING

from pydantic import TypeAdapter

from simstudy.models.base import JSONValue

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence
    from pathlib import Path

    from simstudy.models.base import ParamValue
    from simstudy.models.records import ResultRecord

EXPORT_FORMATS = (".csv", ".json")

_EXPORT_ADAPTER = TypeAdapter(list[dict[str, JSONValue]])


def record_rows(records: Iterable[ResultRecord]) -> list[dict[str, ParamValue]]:
    """Flatten result records to one plain row each."""
    rows: list[dict[str, ParamValue]] = []
    for record in records:
        row: dict[str, ParamValue] = {
            "index": record.row.index,
            "iteration": record.row.iteration,
        }
        row.update(record.row.params)
        row["analysis"] = record.analysis
        row["status"] = record.status.value
        row.update({f"value.{k}": v for k, v in record.values.items()})
        row["error"] = record.error
        rows.append(row)
    return rows


def _fieldnames(rows: Sequence[dict[str, ParamValue]]) -> list[str]:
    names: dict[str, None] = {}
    for row in rows:
        for name in row:
            names.setdefault(name)
    return list(names)


def write_rows(rows: Sequence[dict[str, ParamValue]], output: Path) -> None:
    """Write plain rows as CSV or JSON, chosen by the file extension."""
    suffix = output.suffix.lower()
    if suffix not in EXPORT_FORMATS:
        msg = f"Output must be .csv or .json, got '{output.name}'"
        raise ValueError(msg)

    if suffix == ".json":
        payload: list[dict[str, JSONValue]] = [dict(row) for row in rows]
        _ = output.write_bytes(_EXPORT_ADAPTER.dump_json(payload, indent=2))
        return

    with output.open("w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=_fieldnames(rows), extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
