"""Per-bin occupancy tables and active flags."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

import numpy as np

from .. import constants
from ..errors import InvariantViolationError


@dataclass
class TimeBinRegistry:
    """Particle counts per bin (total and per kind) and the active mask.

    ``count`` and ``count_by_kind`` are updated incrementally by
    :meth:`apply_migrations` during a cycle and recomputed from scratch by
    :class:`~kickstep.scheduler.active.ActiveListBuilder`.
    """

    count: np.ndarray
    count_by_kind: np.ndarray
    active: np.ndarray

    @classmethod
    def empty(cls, timebins: int = constants.TIMEBINS) -> "TimeBinRegistry":
        return cls(
            count=np.zeros(timebins, dtype=np.int64),
            count_by_kind=np.zeros((constants.N_KINDS, timebins), dtype=np.int64),
            active=np.ones(timebins, dtype=bool),
        )

    @property
    def timebins(self) -> int:
        return int(self.count.shape[0])

    def reset_counts(self) -> None:
        self.count[:] = 0
        self.count_by_kind[:] = 0

    def apply_migrations(self, kinds: np.ndarray, old_bins: np.ndarray, new_bins: np.ndarray) -> int:
        """Move particles between bins in one merge step; return how many moved.

        Deltas are accumulated with :func:`numpy.bincount`, so the result does
        not depend on the order in which the particles were assigned.
        """

        kinds = np.asarray(kinds, dtype=np.int64)
        old_bins = np.asarray(old_bins, dtype=np.int64)
        new_bins = np.asarray(new_bins, dtype=np.int64)
        moved = old_bins != new_bins
        n_moved = int(np.count_nonzero(moved))
        if n_moved == 0:
            return 0
        nb = self.timebins
        k, src, dst = kinds[moved], old_bins[moved], new_bins[moved]
        self.count += np.bincount(dst, minlength=nb) - np.bincount(src, minlength=nb)
        size = constants.N_KINDS * nb
        delta = np.bincount(k * nb + dst, minlength=size) - np.bincount(k * nb + src, minlength=size)
        self.count_by_kind += delta.reshape(constants.N_KINDS, nb)
        if np.any(self.count < 0) or np.any(self.count_by_kind < 0):
            raise InvariantViolationError("bin migration left a negative occupancy")
        return n_moved

    def set_active_mask(self, mask: np.ndarray) -> None:
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != self.active.shape:
            raise ValueError(f"active mask must have {self.timebins} entries")
        self.active[:] = mask

    def set_active_from_binmask(self, binmask: int) -> None:
        """Activate bin ``b`` iff bit ``b`` of ``binmask`` is set."""

        bits = (int(binmask) >> np.arange(self.timebins)) & 1
        self.active[:] = bits.astype(bool)

    def is_active(self, bin_index: int) -> bool:
        return bool(self.active[int(bin_index)])

    def occupied_bins(self) -> np.ndarray:
        return np.flatnonzero(self.count)

    def total(self) -> int:
        return int(self.count.sum())

    def check_consistent(self, n_local: int, kind_totals: np.ndarray | None = None) -> None:
        """Raise :class:`InvariantViolationError` unless the counts add up."""

        if self.total() != int(n_local):
            raise InvariantViolationError(
                f"bin counts sum to {self.total()} but {n_local} particles are local"
            )
        if not np.array_equal(self.count_by_kind.sum(axis=0), self.count):
            raise InvariantViolationError("per-kind bin counts disagree with the bin totals")
        if kind_totals is not None:
            per_kind = self.count_by_kind.sum(axis=1)
            if not np.array_equal(per_kind, np.asarray(kind_totals, dtype=np.int64)):
                raise InvariantViolationError(
                    f"per-kind bin counts {per_kind.tolist()} do not match particle kinds "
                    f"{np.asarray(kind_totals).tolist()}"
                )

    def as_record(self) -> Dict[str, Any]:
        occupied = self.occupied_bins()
        return {
            "n_total": self.total(),
            "n_bins_occupied": int(occupied.size),
            "min_bin": int(occupied[0]) if occupied.size else -1,
            "max_bin": int(occupied[-1]) if occupied.size else -1,
            "active_binmask": int(np.sum(self.active.astype(np.int64) << np.arange(self.timebins))),
        }


__all__ = ["TimeBinRegistry"]
