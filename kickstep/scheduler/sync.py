"""Next synchronisation point and active-bin marking."""
from __future__ import annotations

import logging
from typing import Tuple

import numpy as np

from ..parallel import ReductionTransport
from ..timeline import Tick
from .registry import TimeBinRegistry

logger = logging.getLogger(__name__)


class SynchronizationCoordinator:
    """Agree on the next tick at which some bin is due, on every worker."""

    def __init__(self, registry: TimeBinRegistry, transport: ReductionTransport, timebase: int) -> None:
        self.registry = registry
        self.transport = transport
        self.timebase = int(timebase)

    def local_next_sync(self, current: Tick) -> Tick:
        """Return this worker's candidate for the next sync point.

        With bin 0 occupied the current tick is due again.  Otherwise the
        earliest tick strictly after ``current`` that is a multiple of an
        occupied bin's cadence wins; an empty hierarchy resolves to the end
        of the epoch.
        """

        count = self.registry.count
        local = int(current.local_tick)
        if count[0]:
            return Tick(current.epoch, local)
        occupied = np.flatnonzero(count[1:]) + 1
        if occupied.size == 0:
            return Tick(current.epoch, self.timebase)
        cadence = np.left_shift(np.int64(1), occupied.astype(np.int64))
        candidates = (local // cadence) * cadence + cadence
        return Tick(current.epoch, int(min(int(candidates.min()), self.timebase)))

    def find_next_sync(self, current: Tick) -> Tick:
        """MIN-reduce the per-worker candidates and return the normalised result."""

        candidate = self.local_next_sync(current).to_absolute(self.timebase)
        agreed = int(self.transport.allreduce(candidate, "min"))
        result = Tick.from_absolute(agreed, self.timebase)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("find_next_sync: current=%s local=%#x next=%s", current, candidate, result)
        return result

    def mark_active_bins(self, next_tick: Tick) -> Tuple[np.ndarray, int]:
        """Activate bin 0 and every bin ``k`` whose cadence divides ``next_tick``.

        Returns the mask and the number of particles due for a force update.
        """

        nb = self.registry.timebins
        local = int(next_tick.local_tick)
        cadence = np.left_shift(np.int64(1), np.arange(nb, dtype=np.int64))
        mask = (local % cadence) == 0
        mask[0] = True
        self.registry.set_active_mask(mask)
        force_update_count = int(self.registry.count[mask].sum())
        return mask, force_update_count


__all__ = ["SynchronizationCoordinator"]
