"""Momentum-space kicks.

All time integration goes through a :class:`~kickstep.cosmology.KickFactorProvider`;
the integrator only multiplies accelerations by the returned factors and
applies the fluid limiters.  Short-range kicks act on a list of particles,
each over its own tick interval.  The long-range kick acts on every local
particle over the shared mesh interval.
"""
from __future__ import annotations

import logging
import os
import warnings
from typing import Optional

import numpy as np

from .. import constants, schema
from ..cosmology import Cosmology, KickFactorProvider, KickKind, TimeFactors
from ..errors import KickTimeMismatchError
from ..parallel import ReductionTransport
from ..particles import ParticleStore
from ..timeline import kick_tick, ticks_for_bin
from ..warnings import NumericalWarning
from ._numba_kernels import fluid_kick_numba, gravity_kick_numba
from .pm import PMDescriptor

logger = logging.getLogger(__name__)

_NUMBA_DISABLED_ENV = os.environ.get("KICKSTEP_DISABLE_NUMBA", "").lower() in {"1", "true", "yes", "on"}
_USE_NUMBA = not _NUMBA_DISABLED_ENV
_NUMBA_FAILED = False


def kernel_status() -> dict[str, object]:
    """Numba switches recorded in the run summary."""

    return {
        "disabled_env": bool(_NUMBA_DISABLED_ENV),
        "use_numba": bool(_USE_NUMBA),
        "numba_failed": bool(_NUMBA_FAILED),
    }


def _gravity_kick_numpy(vel, accel, indices, factors) -> None:
    vel[indices] += accel[indices] * factors[:, None]


def _fluid_kick_numpy(
    vel,
    hydro_accel,
    energy,
    energy_rate,
    eom_density,
    indices,
    hydro_factors,
    dloga_kick,
    dloga_next,
    max_speed,
    min_egy_coeff,
    a3inv,
    gamma_minus1,
) -> int:
    v = vel[indices] + hydro_accel[indices] * hydro_factors[:, None]
    vv = np.sqrt(np.einsum("ij,ij->i", v, v))
    fast = vv > max_speed
    if np.any(fast):
        v[fast] *= (max_speed / vv[fast])[:, None]
    vel[indices] = v

    u = energy[indices]
    rate = energy_rate[indices]
    de = rate * dloga_kick
    u = np.where(de < -0.5 * u, 0.5 * u, u + de)

    n_floored = 0
    if min_egy_coeff > 0.0:
        with np.errstate(divide="ignore"):
            floor = min_egy_coeff / (eom_density[indices] * a3inv) ** gamma_minus1
        below = u < floor
        u = np.where(below, floor, u)
        rate = np.where(below, 0.0, rate)
        n_floored = int(np.count_nonzero(below))

    with np.errstate(divide="ignore", invalid="ignore"):
        overcool = (dloga_next > 0.0) & (rate * dloga_next < -0.5 * u)
        rate = np.where(overcool, -0.5 * u / dloga_next, rate)
    energy[indices] = u
    energy_rate[indices] = rate
    return n_floored


def _dispatch(jit_kernel, numpy_kernel, use_jit: bool, *args):
    global _NUMBA_FAILED
    if use_jit and not _NUMBA_FAILED:
        try:
            return jit_kernel(*args)
        except Exception as exc:  # pragma: no cover - fallback path
            _NUMBA_FAILED = True
            warnings.warn(
                f"{jit_kernel.__name__}: numba kernel failed ({exc!r}); falling back to NumPy.",
                NumericalWarning,
            )
    return numpy_kernel(*args)


class KickIntegrator:
    """Apply short-range, long-range and half kicks to a :class:`ParticleStore`."""

    def __init__(
        self,
        cfg: schema.Config,
        store: ParticleStore,
        provider: KickFactorProvider,
        cosmology: Cosmology,
        *,
        timebase: int,
        use_numba: Optional[bool] = None,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.provider = provider
        self.cosmology = cosmology
        self.timebase = int(timebase)
        self.debug_check = bool(cfg.debug.check_kick_times)
        self.use_numba = _USE_NUMBA if use_numba is None else bool(use_numba)
        self.factors: TimeFactors = cosmology.factors(cfg.timeline.time_begin)

    def update_time(self, a: float) -> None:
        self.factors = self.cosmology.factors(a)

    def _epoch(self, ticks: np.ndarray) -> np.ndarray:
        return ticks // self.timebase

    def short_range_kick(self, indices, tick_start, tick_end) -> None:
        """Kick ``indices`` from ``tick_start`` to ``tick_end`` (scalars or per particle).

        Every particle gets the gravity kick; fluid particles also get the
        hydro kick, the speed clamp and the energy update.  The next-step
        limiter uses each particle's current ``time_bin``, so bins must be
        assigned before the kick.
        """

        p = self.store
        idx = np.atleast_1d(np.asarray(indices, dtype=np.int64))
        if idx.size == 0:
            return
        t0 = np.broadcast_to(np.asarray(tick_start, dtype=np.int64), idx.shape).copy()
        t1 = np.broadcast_to(np.asarray(tick_end, dtype=np.int64), idx.shape).copy()

        if self.debug_check:
            mismatch = p.kick_tick[idx] != t0
            if np.any(mismatch):
                j = int(np.flatnonzero(mismatch)[0])
                raise KickTimeMismatchError(
                    f"particle id={int(p.ids[idx[j]])} was last kicked to tick {int(p.kick_tick[idx[j]]):#x}, "
                    f"next kick starts at {int(t0[j]):#x}"
                )
            p.kick_tick[idx] = t1

        gfac = np.broadcast_to(
            np.asarray(self.provider.kick_factor(t0, t1, KickKind.GRAVITY), dtype=np.float64), idx.shape
        ).copy()

        fluid = p.kind[idx] == constants.KIND_GAS
        fidx = idx[fluid]
        args = None
        if fidx.size:
            f0, f1 = t0[fluid], t1[fluid]
            hfac = np.broadcast_to(
                np.asarray(self.provider.kick_factor(f0, f1, KickKind.HYDRO), dtype=np.float64), fidx.shape
            ).copy()
            dloga_kick = np.asarray(
                self.provider.tick_delta_to_log_scale(f1 - f0, self._epoch(f0)), dtype=np.float64
            )
            dloga_next = 0.5 * np.asarray(
                self.provider.tick_delta_to_log_scale(ticks_for_bin(p.time_bin[fidx]), self._epoch(f1)),
                dtype=np.float64,
            )
            gas = self.cfg.gas
            args = (
                p.vel,
                p.hydro_accel,
                p.internal_energy,
                p.energy_rate,
                p.eom_density,
                fidx,
                hfac,
                np.broadcast_to(dloga_kick, fidx.shape).copy(),
                np.broadcast_to(dloga_next, fidx.shape).copy(),
                float(gas.max_gas_vel * np.sqrt(self.factors.a3inv)),
                float(gas.min_egy_spec * constants.GAMMA_MINUS1),
                float(self.factors.a3inv),
                float(constants.GAMMA_MINUS1),
            )

        use_jit = self.use_numba and not _NUMBA_FAILED
        _dispatch(gravity_kick_numba, _gravity_kick_numpy, use_jit, p.vel, p.grav_accel, idx, gfac)
        n_floored = 0
        if args is not None:
            n_floored = int(_dispatch(fluid_kick_numba, _fluid_kick_numpy, use_jit, *args))

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "short_range_kick: n=%d fluid=%d floored=%d use_numba=%s",
                idx.size,
                fidx.size,
                n_floored,
                use_jit,
            )

    def long_range_kick(self, tick_start: int, tick_end: int) -> None:
        """Apply the mesh acceleration to every local particle."""

        fac = float(self.provider.kick_factor(int(tick_start), int(tick_end), KickKind.GRAVITY))
        self.store.vel += self.store.pm_accel * fac
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("long_range_kick: [%#x, %#x] factor=%g", int(tick_start), int(tick_end), fac)

    def half_kick(self, active: np.ndarray, pm: PMDescriptor) -> None:
        """Kick active particles to their step midpoints and everyone to the mesh midpoint."""

        p = self.store
        idx = np.asarray(active, dtype=np.int64)
        start = p.step_start_tick[idx]
        self.short_range_kick(idx, start, kick_tick(start, ticks_for_bin(p.time_bin[idx])))
        self.long_range_kick(pm.pm_start, pm.kick_tick)

    def short_kick_tick(self, i: int) -> int:
        """Return the midpoint of particle ``i``'s current step."""

        p = self.store
        return kick_tick(int(p.step_start_tick[i]), ticks_for_bin(int(p.time_bin[i])))

    def predicted_velocity(self, i: int, drift_tick: int, pm: PMDescriptor) -> np.ndarray:
        """Velocity of particle ``i`` extrapolated back from its kick points to ``drift_tick``."""

        p = self.store
        kick_i = self.short_kick_tick(i)
        fg = self.provider.kick_factor(drift_tick, kick_i, KickKind.GRAVITY)
        fg_pm = self.provider.kick_factor(drift_tick, pm.kick_tick, KickKind.GRAVITY)
        vel = p.vel[i] - fg * p.grav_accel[i] - fg_pm * p.pm_accel[i]
        if p.kind[i] == constants.KIND_GAS:
            fh = self.provider.kick_factor(drift_tick, kick_i, KickKind.HYDRO)
            vel = vel - fh * p.hydro_accel[i]
        return vel

    def predicted_energy(self, i: int, drift_tick: int) -> float:
        p = self.store
        dti = int(drift_tick) - self.short_kick_tick(i)
        dloga = self.provider.tick_delta_to_log_scale(dti, int(drift_tick) // self.timebase)
        return float(p.internal_energy[i] + p.energy_rate[i] * dloga)

    def predicted_entropy_variable(self, i: int, drift_tick: int) -> float:
        return float(self.predicted_energy(i, drift_tick) ** (1.0 / constants.GAMMA))

    def predicted_pressure(self, i: int, drift_tick: int) -> float:
        return float(self.predicted_energy(i, drift_tick) * self.store.eom_density[i] ** constants.GAMMA)

    def reverse_and_apply_gravity(self, transport: ReductionTransport) -> float:
        """Move particles along the reversed gravity field (glass making).

        The tree force is reversed with the mesh force folded into it, the
        largest displacement is MAX-reduced across workers, and every particle
        is moved by at most the mean spacing of the first local particle's
        mass.  Velocities and accelerations are zeroed.  Returns the applied
        displacement factor.
        """

        p = self.store
        hubble = self.cfg.cosmology.hubble
        p.grav_accel *= -1.0
        p.grav_accel -= p.pm_accel
        p.pm_accel[:] = 0.0
        to_disp = 2.0 / (3.0 * hubble * hubble)
        disp = np.sqrt(np.einsum("ij,ij->i", p.grav_accel, p.grav_accel)) * to_disp
        dispmax = float(disp.max()) if disp.size else 0.0
        globmax = float(transport.allreduce(dispmax, "max"))

        mass0 = float(p.mass[0]) if len(p) else 0.0
        dmean = (mass0 / (self.cfg.cosmology.omega0 * self.cosmology.critical_density())) ** (1.0 / 3.0)
        fac = min(1.0, dmean / globmax) if globmax > 0.0 else 1.0
        logger.info("Glass-making: dmean= %g  global disp-maximum= %g", dmean, globmax)

        p.vel[:] = 0.0
        p.pos += fac * p.grav_accel * to_disp
        p.grav_accel[:] = 0.0
        return fac


__all__ = ["KickIntegrator", "kernel_status"]
