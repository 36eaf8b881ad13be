"""Quantisation of desired steps onto the power-of-two bin hierarchy."""
from __future__ import annotations

import logging
from typing import Tuple

import numpy as np

from .. import constants
from ..parallel import ReductionTransport
from ..timeline import bin_for_ticks, round_down_power_of_two, ticks_for_bin

logger = logging.getLogger(__name__)

# Seed of the equal-step reduction; the identity of MIN over int64 tick counts.
_EQUAL_STEP_SEED = np.iinfo(np.int64).max


class BinAssigner:
    """Round desired tick counts down to a bin without outgrowing the sync cadence.

    A particle whose step wants to grow is moved to the highest active bin
    between its current bin and the candidate bin, or stays in its current
    bin when none of those is active.  A shrinking step is always accepted.
    """

    def __init__(self, timebins: int = constants.TIMEBINS) -> None:
        self.timebins = int(timebins)
        constants.timebase_for(self.timebins)

    def _highest_active(self, active_mask: np.ndarray) -> np.ndarray:
        # entry b holds the highest active bin <= b, or -1
        active = np.asarray(active_mask, dtype=bool)
        if active.shape != (self.timebins,):
            raise ValueError(f"active mask must have {self.timebins} entries")
        return np.maximum.accumulate(np.where(active, np.arange(self.timebins), -1))

    def assign_with_faults(
        self,
        desired_ticks,
        current_bin,
        active_mask,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Return ``(new_bin, new_ticks, faults)`` for arrays of particles.

        A rounded step that resolves to a bin below 1 is a fault; faulted
        particles keep their current bin and its cadence.
        """

        desired = np.atleast_1d(np.asarray(desired_ticks, dtype=np.int64))
        current = np.atleast_1d(np.asarray(current_bin, dtype=np.int64))
        rounded = round_down_power_of_two(desired)
        bins = np.minimum(bin_for_ticks(rounded), self.timebins - 1)
        faults = self.faults(rounded)

        growing = bins > current
        if np.any(growing):
            highest = self._highest_active(active_mask)
            bins = np.where(growing, np.maximum(highest[bins], current), bins)

        bins = np.where(faults, current, bins)
        ticks = ticks_for_bin(bins)
        if logger.isEnabledFor(logging.DEBUG) and desired.size:
            logger.debug(
                "assign: n=%d grown=%d demoted=%d faults=%d",
                desired.size,
                int(np.count_nonzero(bins > current)),
                int(np.count_nonzero(growing & (ticks < rounded))),
                int(np.count_nonzero(faults)),
            )
        return bins, ticks, faults

    def assign(self, desired_ticks, current_bin, active_mask):
        """Return ``(new_bin, new_ticks)``; scalars in, scalars out."""

        scalar = np.ndim(desired_ticks) == 0 and np.ndim(current_bin) == 0
        bins, ticks, _ = self.assign_with_faults(desired_ticks, current_bin, active_mask)
        if scalar:
            return int(bins[0]), int(ticks[0])
        return bins, ticks

    def faults(self, rounded_ticks) -> np.ndarray:
        """Mask of rounded step lengths that cannot be placed in a bin of at least 1."""

        return np.atleast_1d(np.asarray(rounded_ticks, dtype=np.int64)) <= 1

    def equal_step_ticks(self, desired_ticks, transport: ReductionTransport) -> int:
        """Global minimum of ``desired_ticks`` over all particles on all workers."""

        desired = np.asarray(desired_ticks, dtype=np.int64)
        local = int(desired.min()) if desired.size else int(_EQUAL_STEP_SEED)
        local = min(local, int(_EQUAL_STEP_SEED))
        return int(transport.allreduce(local, "min"))


__all__ = ["BinAssigner"]
