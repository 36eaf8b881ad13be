"""Output helper utilities.

The routines in this module provide thin wrappers around :mod:`pandas` and
:mod:`pyarrow` to serialise scheduler output.  Parquet is used for the
per-cycle history and JSON for run summaries.  All functions ensure that
destination directories are created when necessary.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

HISTORY_UNITS = {
    "cycle": "count",
    "epoch": "count",
    "local_tick": "tick",
    "absolute_tick": "tick",
    "scale_factor": "dimensionless",
    "num_active": "count",
    "force_update_count": "count",
    "pm_start": "tick",
    "pm_step": "tick",
    "n_bins_occupied": "count",
    "min_bin": "bin",
    "max_bin": "bin",
    "active_binmask": "bitmask",
    "phase": "category",
}

HISTORY_DEFINITIONS = {
    "cycle": "Index of the scheduler cycle, starting at 0",
    "epoch": "Snapshot interval of the synchronisation point",
    "local_tick": "Offset of the synchronisation point inside its epoch",
    "absolute_tick": "epoch * timebase + local_tick",
    "scale_factor": "Scale factor at the synchronisation point",
    "num_active": "Local particles in active bins after the rebuild",
    "force_update_count": "Sum of the bin counts over active bins",
    "pm_start": "Start of the long-range step after the cycle",
    "pm_step": "Length of the long-range step after the cycle",
    "n_bins_occupied": "Bins holding at least one local particle",
    "min_bin": "Lowest occupied bin (-1 when empty)",
    "max_bin": "Highest occupied bin (-1 when empty)",
    "active_binmask": "Bit b set when bin b is active",
    "phase": "Stepper phase at the end of the cycle",
}


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def write_parquet(df: pd.DataFrame, path: Path, *, compression: str = "snappy") -> None:
    """Write a DataFrame to a Parquet file using ``pyarrow``.

    Column units and definitions are stored as JSON in the schema metadata
    under ``units`` and ``definitions``.
    """
    _ensure_parent(path)
    units = {name: HISTORY_UNITS[name] for name in df.columns if name in HISTORY_UNITS}
    definitions = {name: HISTORY_DEFINITIONS[name] for name in df.columns if name in HISTORY_DEFINITIONS}
    table = pa.Table.from_pandas(df, preserve_index=False)
    metadata = dict(table.schema.metadata or {})
    metadata.update(
        {
            b"units": json.dumps(units, sort_keys=True).encode("utf-8"),
            b"definitions": json.dumps(definitions, sort_keys=True).encode("utf-8"),
        }
    )
    table = table.replace_schema_metadata(metadata)
    compression_arg = None if compression == "none" else compression
    pq.write_table(table, path, compression=compression_arg)


def write_summary(summary: Mapping[str, Any], path: Path) -> None:
    """Write a summary dictionary as indented JSON."""
    _ensure_parent(path)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(summary, fh, indent=2, sort_keys=True, default=str)
