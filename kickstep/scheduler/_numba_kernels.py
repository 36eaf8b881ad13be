"""Numba-compiled per-particle kick loops.

Both kernels iterate over a list of particle indices with ``prange``.  Each
iteration touches only its own particle, so the loops need no locking as
long as the index list holds no duplicates.

Notes
-----
* All kernels use ``cache=True`` to persist compiled bytecode across runs.
* ``parallel=True`` enables threading via ``prange``; the number of threads
  respects ``NUMBA_NUM_THREADS``.
* The fluid kernel uses IEEE division (``error_model="numpy"``) so a zero
  density yields an infinite floor instead of an exception.
* The NumPy implementations in :mod:`kickstep.scheduler.kick` are used when
  ``KICKSTEP_DISABLE_NUMBA`` is set.
"""
from __future__ import annotations

import math

import numpy as np
from numba import njit, prange

__all__ = [
    "gravity_kick_numba",
    "fluid_kick_numba",
]


@njit(cache=True, parallel=True)
def gravity_kick_numba(
    vel: np.ndarray,
    accel: np.ndarray,
    indices: np.ndarray,
    factors: np.ndarray,
) -> None:
    """``vel[i] += accel[i] * factors[j]`` for ``i = indices[j]``."""

    n = indices.shape[0]
    for j in prange(n):
        i = indices[j]
        fac = factors[j]
        for k in range(3):
            vel[i, k] += accel[i, k] * fac


@njit(cache=True, parallel=True, error_model="numpy")
def fluid_kick_numba(
    vel: np.ndarray,
    hydro_accel: np.ndarray,
    energy: np.ndarray,
    energy_rate: np.ndarray,
    eom_density: np.ndarray,
    indices: np.ndarray,
    hydro_factors: np.ndarray,
    dloga_kick: np.ndarray,
    dloga_next: np.ndarray,
    max_speed: float,
    min_egy_coeff: float,
    a3inv: float,
    gamma_minus1: float,
) -> int:
    """Hydro kick with the speed clamp and the energy limiters.

    Returns the number of particles that hit the energy floor.
    """

    n = indices.shape[0]
    floored = np.zeros(n, dtype=np.int64)
    for j in prange(n):
        i = indices[j]
        fac = hydro_factors[j]
        vv = 0.0
        for k in range(3):
            vel[i, k] += hydro_accel[i, k] * fac
            vv += vel[i, k] * vel[i, k]
        vv = math.sqrt(vv)
        if vv > max_speed:
            scale = max_speed / vv
            for k in range(3):
                vel[i, k] *= scale

        # never lose more than half the energy in one step
        de = energy_rate[i] * dloga_kick[j]
        if de < -0.5 * energy[i]:
            energy[i] *= 0.5
        else:
            energy[i] += de

        if min_egy_coeff > 0.0:
            floor = min_egy_coeff / (eom_density[i] * a3inv) ** gamma_minus1
            if energy[i] < floor:
                energy[i] = floor
                energy_rate[i] = 0.0
                floored[j] = 1

        dt_next = dloga_next[j]
        if dt_next > 0.0 and energy_rate[i] * dt_next < -0.5 * energy[i]:
            energy_rate[i] = -0.5 * energy[i] / dt_next
    return int(floored.sum())
