"""Per-particle admissible step lengths.

The policy turns local force and state data into a step in ``log a`` and
then into an integer tick count on the timeline.  The smallest of the
applicable bounds wins:

* gravity: ``sqrt(2 η a ε / |acc|)`` with ``ε`` the kind's softening,
* fluid particles: a Courant bound from the smoothing length and the
  maximum signal speed,
* accreting particles (``features.black_holes``): a quarter of the
  mass-doubling time and an externally imposed bin limit.

Unusable results are reported in a fault mask and never raised here; the
stepper aggregates them across workers.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .. import constants, schema
from ..cosmology import Cosmology, TimeFactors, softening_table
from ..particles import ParticleStore
from ..timeline import TimelineMap

logger = logging.getLogger(__name__)


@dataclass
class DesiredSteps:
    """Result of :meth:`TimestepPolicy.desired_ticks` for a batch of particles."""

    ticks: np.ndarray
    faults: np.ndarray
    dloga: np.ndarray

    @property
    def fault_count(self) -> int:
        return int(np.count_nonzero(self.faults))


class TimestepPolicy:
    """Admissible step per particle from the configured error-control criteria."""

    def __init__(
        self,
        cfg: schema.Config,
        store: ParticleStore,
        cosmology: Cosmology,
        timeline: TimelineMap,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.cosmology = cosmology
        self.timeline = timeline
        self.timebase = int(timeline.timebase)
        self.factors: TimeFactors | None = None
        self.softening: np.ndarray | None = None
        self.update_time(cfg.timeline.time_begin)

    def update_time(self, a: float) -> None:
        """Refresh the scale-factor dependent factors and the softening table."""

        self.factors = self.cosmology.factors(a)
        self.softening = softening_table(self.cfg.softening, self.factors.a)

    def physical_acceleration(self, idx: np.ndarray) -> np.ndarray:
        """Return ``|a^-2 (g_tree + g_pm) + [fluid] a^-(3γ-2) g_hydro|``, floored above zero."""

        p = self.store
        f = self.factors
        acc = f.a2inv * (p.grav_accel[idx] + p.pm_accel[idx])
        fluid = p.kind[idx] == constants.KIND_GAS
        if np.any(fluid):
            fac2 = 1.0 / f.a ** (3.0 * constants.GAMMA - 2.0)
            acc[fluid] += fac2 * p.hydro_accel[idx[fluid]]
        ac = np.sqrt(np.einsum("ij,ij->i", acc, acc))
        return np.where(ac == 0.0, constants.MIN_ACCELERATION, ac)

    def timestep_dloga(self, idx: np.ndarray, epoch: int = 0) -> np.ndarray:
        """Return the admissible step in ``log a`` for each particle in ``idx``."""

        p = self.store
        f = self.factors
        ts = self.cfg.timestep
        kind = p.kind[idx]
        fluid = kind == constants.KIND_GAS
        ac = self.physical_acceleration(idx)

        eps = self.softening[kind]
        if ts.adaptive_gravsoft_for_gas:
            eps = np.where(fluid, p.hsml[idx] / constants.SOFTENING_KERNEL_FACTOR, eps)
        dt = np.sqrt(2.0 * ts.err_tol_int_accuracy * f.a * eps / ac)

        with np.errstate(divide="ignore", invalid="ignore"):
            if np.any(fluid):
                fac3 = f.a ** (3.0 * (1.0 - constants.GAMMA) / 2.0)
                sub = idx[fluid]
                dt_courant = 2.0 * ts.courant_fac * f.a * p.hsml[sub] / (fac3 * p.max_signal_vel[sub])
                # NaN bounds (0/0) never win the comparison
                dt[fluid] = np.where(dt_courant < dt[fluid], dt_courant, dt[fluid])

            if self.cfg.features.black_holes:
                bh = kind == constants.KIND_BH
                if np.any(bh):
                    sub = idx[bh]
                    dt_bh = dt[bh]
                    accreting = (p.bh_mdot[sub] > 0.0) & (p.bh_mass[sub] > 0.0)
                    dt_accr = np.where(accreting, 0.25 * p.bh_mass[sub] / p.bh_mdot[sub], np.inf)
                    dt_bh = np.where(dt_accr < dt_bh, dt_accr, dt_bh)
                    limit = p.bh_timebin_limit[sub]
                    dt_limiter = np.where(
                        limit > 0,
                        self.timeline.dloga_for_bin(np.maximum(limit, 0), epoch) / f.hubble,
                        np.inf,
                    )
                    dt[bh] = np.where(dt_limiter < dt_bh, dt_limiter, dt_bh)

        # d a / a = dt * H
        return dt * f.hubble

    def desired_ticks(self, idx, max_ticks: int, epoch: int = 0) -> DesiredSteps:
        """Return desired tick counts and the fault mask for ``idx``.

        ``max_ticks`` is the long-range cadence currently in force.  A result
        of at most one tick, beyond the epoch length, or not a number is a
        fault; faulted entries are still returned, clipped to
        ``[0, timebase]``.
        """

        idx = np.asarray(idx, dtype=np.int64)
        n = idx.shape[0]
        max_ticks = int(max_ticks)
        if max_ticks == 0:
            zeros = np.zeros(n, dtype=np.int64)
            return DesiredSteps(zeros, np.zeros(n, dtype=bool), np.zeros(n, dtype=np.float64))
        if not self.cfg.timestep.tree_grav_on:
            return DesiredSteps(
                np.full(n, max_ticks, dtype=np.int64),
                np.zeros(n, dtype=bool),
                np.full(n, self.timeline.dloga_from_dti(max_ticks, epoch), dtype=np.float64),
            )

        dloga = self.timestep_dloga(idx, epoch)
        min_size = self.cfg.timestep.min_size_timestep
        dloga = np.where(dloga < min_size, min_size, dloga)

        ticks_f = np.minimum(self.timeline.ticks_from_dloga(dloga, epoch), float(max_ticks))
        faults = np.isnan(ticks_f) | (ticks_f <= 1.0) | (ticks_f > float(self.timebase))
        ticks = np.clip(
            np.nan_to_num(ticks_f, nan=0.0, posinf=float(self.timebase), neginf=0.0),
            0.0,
            float(self.timebase),
        ).astype(np.int64)

        if np.any(faults):
            for j in np.flatnonzero(faults):
                self._report_fault(int(idx[j]), int(ticks[j]), float(dloga[j]), max_ticks)
        if logger.isEnabledFor(logging.DEBUG) and n:
            logger.debug(
                "desired_ticks: n=%d max_ticks=%#x min=%d max=%d faults=%d",
                n,
                max_ticks,
                int(ticks.min()),
                int(ticks.max()),
                int(np.count_nonzero(faults)),
            )
        return DesiredSteps(ticks, faults, dloga)

    def compute_desired_ticks(self, index: int, max_ticks: int, epoch: int = 0) -> Tuple[int, bool]:
        """Scalar form of :meth:`desired_ticks` for one particle."""

        res = self.desired_ticks(np.array([index], dtype=np.int64), max_ticks, epoch)
        return int(res.ticks[0]), bool(res.faults[0])

    def _report_fault(self, i: int, ticks: int, dloga: float, max_ticks: int) -> None:
        p = self.store
        logger.warning(
            "Bad timestep (%#x) assigned! id=%d kind=%d dloga=%g max_ticks=%#x "
            "pos=(%g|%g|%g) tree=(%g|%g|%g) pm=(%g|%g|%g)",
            ticks,
            int(p.ids[i]),
            int(p.kind[i]),
            dloga,
            max_ticks,
            *p.pos[i],
            *p.grav_accel[i],
            *p.pm_accel[i],
        )
        if p.kind[i] == constants.KIND_GAS:
            logger.warning(
                "hydro=(%g|%g|%g) density=%g hsml=%g energy=%g energy_rate=%g",
                *p.hydro_accel[i],
                p.density[i],
                p.hsml[i],
                p.internal_energy[i],
                p.energy_rate[i],
            )


__all__ = ["DesiredSteps", "TimestepPolicy"]
