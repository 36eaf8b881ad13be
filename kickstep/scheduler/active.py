"""Active-particle list and ground-truth bin occupancy."""
from __future__ import annotations

import logging

import numpy as np

from .. import constants
from ..errors import InvariantViolationError
from ..particles import ParticleStore
from .registry import TimeBinRegistry

logger = logging.getLogger(__name__)


class ActiveListBuilder:
    """Recount bin occupancy from every particle and collect the active ones."""

    def __init__(self, store: ParticleStore, registry: TimeBinRegistry) -> None:
        self.store = store
        self.registry = registry
        self.active = np.zeros(0, dtype=np.int64)

    @property
    def num_active(self) -> int:
        return int(self.active.shape[0])

    def rebuild(self) -> np.ndarray:
        """Zero and recompute the registry counts; return active indices in storage order."""

        p = self.store
        reg = self.registry
        nb = reg.timebins
        bins = p.time_bin
        if bins.size and (bins.min() < 0 or bins.max() >= nb):
            raise InvariantViolationError(
                f"particle bins span [{int(bins.min())}, {int(bins.max())}], outside [0, {nb})"
            )
        reg.reset_counts()
        reg.count[:] = np.bincount(bins, minlength=nb)
        flat = np.bincount(p.kind * nb + bins, minlength=constants.N_KINDS * nb)
        reg.count_by_kind[:] = flat.reshape(constants.N_KINDS, nb)
        self.active = np.flatnonzero(reg.active[bins]).astype(np.int64)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("rebuild: %d of %d particles active", self.active.size, bins.size)
        return self.active


__all__ = ["ActiveListBuilder"]
