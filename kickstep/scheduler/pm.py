"""Long-range (mesh) step bookkeeping.

The long-range step is shared by all particles.  It is recomputed only at
the tick where the current step ends, from the RMS velocity of each particle
kind: the displacement over one step must stay below a fraction of the
smaller of the force-split scale and the mean particle spacing.
"""
from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass

import numpy as np

from .. import constants, schema
from ..cosmology import Cosmology, TimeFactors
from ..errors import InvariantViolationError
from ..parallel import ReductionTransport
from ..particles import ParticleStore
from ..timeline import TimelineMap, is_power_of_two_or_zero, round_down_power_of_two
from ..warnings import NumericalWarning

logger = logging.getLogger(__name__)

_MASS_SEED = 1.0e30


@dataclass
class PMDescriptor:
    """Start and length (absolute ticks) of the current long-range step."""

    pm_start: int = 0
    pm_step: int = 0

    @property
    def pm_end(self) -> int:
        return self.pm_start + self.pm_step

    @property
    def kick_tick(self) -> int:
        return self.pm_start + self.pm_step // 2


class PMStepController:
    """Own the :class:`PMDescriptor` and estimate new long-range steps."""

    def __init__(
        self,
        cfg: schema.Config,
        store: ParticleStore,
        cosmology: Cosmology,
        timeline: TimelineMap,
        transport: ReductionTransport,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.cosmology = cosmology
        self.timeline = timeline
        self.transport = transport
        self.descriptor = PMDescriptor()
        self.factors: TimeFactors = cosmology.factors(cfg.timeline.time_begin)

    def reset(self) -> None:
        self.descriptor = PMDescriptor()

    def update_time(self, a: float) -> None:
        self.factors = self.cosmology.factors(a)

    def is_pm_timestep(self, tick: int) -> bool:
        """True when ``tick`` (absolute) ends the current long-range step."""

        return int(tick) == self.descriptor.pm_end

    def _reduced_kind_stats(self):
        p = self.store
        v2 = np.einsum("ij,ij->i", p.vel, p.vel)
        v_sum = np.bincount(p.kind, weights=v2, minlength=constants.N_KINDS).astype(np.float64)
        counts = np.bincount(p.kind, minlength=constants.N_KINDS).astype(np.int64)
        min_mass = np.full(constants.N_KINDS, _MASS_SEED, dtype=np.float64)
        massive = p.mass > 0.0
        np.minimum.at(min_mass, p.kind[massive], p.mass[massive])

        v_sum = self.transport.allreduce(v_sum, "sum")
        counts = self.transport.allreduce(counts, "sum")
        min_mass = self.transport.allreduce(min_mass, "min")
        return v_sum, counts, min_mass

    def long_range_timestep_dloga(self) -> float:
        """Return the long-range step in ``log a`` allowed by the RMS displacement bound."""

        v_sum, counts, min_mass = self._reduced_kind_stats()
        features = self.cfg.features
        gas, star, bh = constants.KIND_GAS, constants.KIND_STAR, constants.KIND_BH
        if features.star_formation:
            # stars (and accreting particles) share the gas spacing
            v_sum[gas] += v_sum[star]
            counts[gas] += counts[star]
            v_sum[star] = v_sum[gas]
            counts[star] = counts[gas]
            if features.black_holes:
                v_sum[gas] += v_sum[bh]
                counts[gas] += counts[bh]
                v_sum[bh] = v_sum[gas]
                counts[bh] = counts[gas]
                min_mass[bh] = min_mass[gas]

        cosmo = self.cfg.cosmology
        pm = self.cfg.pm
        f = self.factors
        asmth = pm.asmth * cosmo.box_size / pm.nmesh
        rho_crit = self.cosmology.critical_density()
        dloga = float(self.cfg.timestep.max_size_timestep)

        for kind in range(constants.N_KINDS):
            if counts[kind] <= 0:
                continue
            baryonic = (
                kind == gas
                or (kind == star and features.star_formation)
                or (kind == bh and features.black_holes)
            )
            omega = cosmo.omega_baryon if baryonic else self.cosmology.omega_cdm
            with np.errstate(divide="ignore", invalid="ignore"):
                dmean = (min_mass[kind] / (omega * rho_crit)) ** (1.0 / 3.0)
                rms = math.sqrt(v_sum[kind] / counts[kind])
                dloga_kind = (
                    pm.max_rms_displacement_fac * f.hubble * f.a * f.a * min(asmth, dmean) / rms
                    if rms > 0.0
                    else math.inf
                )
            logger.info(
                "kind=%d (%s) dmean=%g asmth=%g min_mass=%g a=%g sqrt(<p^2>)=%g dlogmax=%g",
                kind,
                constants.KIND_NAMES[kind],
                dmean,
                asmth,
                min_mass[kind],
                f.a,
                rms,
                dloga,
            )
            if kind != pm.fast_particle_type and dloga_kind < dloga:
                dloga = float(dloga_kind)
        return dloga

    def long_range_timestep_ticks(self, epoch: int = 0) -> int:
        """Return the new long-range step in ticks, a power of two in ``[0, timebase]``."""

        dloga = self.long_range_timestep_dloga()
        ticks = round_down_power_of_two(self.timeline.dti_from_dloga(dloga, epoch))
        logger.info(
            "Maximal PM timestep: dloga = %g  (%g)",
            self.timeline.dloga_from_dti(ticks, epoch),
            self.cfg.timestep.max_size_timestep,
        )
        if ticks == 0:
            warnings.warn(
                f"long-range step estimate dloga={dloga:g} is shorter than one tick",
                NumericalWarning,
            )
        return int(ticks)

    def advance(self, new_step: int, current_tick: int) -> PMDescriptor:
        """Start the next long-range step at the end of the current one."""

        if not self.is_pm_timestep(current_tick):
            raise InvariantViolationError(
                f"long-range step may only change at tick {self.descriptor.pm_end:#x}, not {int(current_tick):#x}"
            )
        if not is_power_of_two_or_zero(new_step):
            raise InvariantViolationError(f"long-range step {new_step} is not a power of two")
        self.descriptor = PMDescriptor(
            pm_start=self.descriptor.pm_end,
            pm_step=int(new_step),
        )
        return self.descriptor


__all__ = ["PMDescriptor", "PMStepController"]
