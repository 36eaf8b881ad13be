"""Cycle history container used by the stepper."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping

import pandas as pd
import pyarrow as pa

HISTORY_COLUMNS = (
    "cycle",
    "epoch",
    "local_tick",
    "absolute_tick",
    "scale_factor",
    "num_active",
    "force_update_count",
    "pm_start",
    "pm_step",
    "n_bins_occupied",
    "min_bin",
    "max_bin",
    "active_binmask",
    "phase",
)


class ColumnarBuffer:
    """Column-oriented record buffer; a row may introduce new columns."""

    def __init__(self, columns: Iterable[str] | None = None) -> None:
        self._columns: Dict[str, List[Any]] = {}
        self._column_order: List[str] = []
        self._row_count = 0
        if columns:
            for name in columns:
                self._columns[name] = []
                self._column_order.append(name)

    @property
    def row_count(self) -> int:
        return self._row_count

    def __len__(self) -> int:
        return self._row_count

    def __bool__(self) -> bool:
        return self._row_count > 0

    def columns(self) -> List[str]:
        return list(self._column_order)

    def append_row(self, record: Mapping[str, Any]) -> None:
        for key in record:
            if key not in self._columns:
                self._columns[key] = [None] * self._row_count
                self._column_order.append(key)
        for name in self._column_order:
            self._columns[name].append(record.get(name))
        self._row_count += 1

    def clear(self) -> None:
        for values in self._columns.values():
            values.clear()
        self._row_count = 0

    def last(self) -> Dict[str, Any]:
        if not self._row_count:
            raise IndexError("history is empty")
        return {name: self._columns[name][-1] for name in self._column_order}

    def to_records(self) -> List[Dict[str, Any]]:
        return [
            {name: self._columns[name][idx] for name in self._column_order}
            for idx in range(self._row_count)
        ]

    def to_table(self) -> pa.Table:
        return pa.Table.from_pydict({name: self._columns[name] for name in self._column_order})

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({name: self._columns[name] for name in self._column_order})


__all__ = ["HISTORY_COLUMNS", "ColumnarBuffer"]
