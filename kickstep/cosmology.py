"""Background cosmology and kick-factor integrals.

The kick integrator never integrates in time itself.  It asks a provider for
the integral of the appropriate momentum-space integrand between two ticks:

* gravity:  ``∫ da / (a² H(a))``
* hydro:    ``∫ da / (a^{3(γ-1)} a H(a))``

:class:`KickFactorTable` tabulates both integrands on a fine ``log a`` grid
once and answers queries by interpolating the cumulative integral, so
factors over adjacent intervals add up to the factor over their union.
"""
from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass
from typing import Protocol

import numpy as np
from scipy.integrate import cumulative_trapezoid

from . import schema
from .constants import GAMMA
from .timeline import TimelineMap

logger = logging.getLogger(__name__)


class KickKind(str, enum.Enum):
    """Integrand selector for :meth:`KickFactorProvider.kick_factor`."""

    GRAVITY = "gravity"
    HYDRO = "hydro"


@dataclass(frozen=True)
class TimeFactors:
    """Scale-factor dependent conversion factors at one instant."""

    a: float
    a2inv: float
    a3inv: float
    hubble: float


class Cosmology:
    """Friedmann background built from :class:`kickstep.schema.Cosmology`."""

    def __init__(self, params: schema.Cosmology) -> None:
        self.params = params

    @property
    def omega_cdm(self) -> float:
        return self.params.omega_cdm

    def hubble_function(self, a):
        """Return ``H(a)`` in internal units."""

        p = self.params
        a = np.asarray(a, dtype=np.float64)
        omega_k = 1.0 - p.omega0 - p.omega_lambda
        out = p.hubble * np.sqrt(p.omega0 / a**3 + omega_k / a**2 + p.omega_lambda)
        if out.ndim == 0:
            return float(out)
        return out

    def critical_density(self) -> float:
        """Return ``3 H0² / (8 π G)``."""

        return 3.0 * self.params.hubble**2 / (8.0 * math.pi * self.params.gravity)

    def factors(self, a: float) -> TimeFactors:
        a = float(a)
        hubble = self.hubble_function(a)
        return TimeFactors(
            a=a,
            a2inv=1.0 / (a * a),
            a3inv=1.0 / (a * a * a),
            hubble=hubble,
        )


def softening_table(params: schema.Softening, a: float) -> np.ndarray:
    """Return the comoving softening per kind, capped at its physical maximum.

    A kind whose physical softening ``ε a`` exceeds ``max_physical`` uses
    ``max_physical / a`` instead.
    """

    comoving = np.asarray(params.comoving, dtype=np.float64)
    max_phys = np.asarray(params.max_physical, dtype=np.float64)
    return np.where(comoving * a > max_phys, max_phys / a, comoving)


class KickFactorProvider(Protocol):
    """Interface the kick integrator uses for time integrals."""

    def kick_factor(self, tick_start, tick_end, kind: KickKind): ...

    def tick_delta_to_log_scale(self, dti, epoch=0): ...


class KickFactorTable:
    """Tabulated kick integrals over the whole timeline.

    Parameters
    ----------
    cosmology:
        Background providing ``H(a)``.
    timeline:
        Tick to ``log a`` map.
    samples_per_epoch:
        Grid intervals per epoch used for the trapezoidal tabulation.
    """

    def __init__(
        self,
        cosmology: Cosmology,
        timeline: TimelineMap,
        *,
        samples_per_epoch: int = 4096,
    ) -> None:
        if samples_per_epoch < 2:
            raise ValueError("samples_per_epoch must be at least 2")
        self.cosmology = cosmology
        self.timeline = timeline
        edges = timeline.loga_edges
        pieces = [np.linspace(edges[k], edges[k + 1], samples_per_epoch + 1)[:-1] for k in range(timeline.n_epochs)]
        pieces.append(edges[-1:])
        self.loga_grid = np.concatenate(pieces)
        a = np.exp(self.loga_grid)
        hubble = cosmology.hubble_function(a)
        # integrands per unit log a (da = a dloga)
        grav = 1.0 / (a * hubble)
        hydro = 1.0 / (hubble * a ** (3.0 * (GAMMA - 1.0)))
        self._cumulative = {
            KickKind.GRAVITY: cumulative_trapezoid(grav, self.loga_grid, initial=0.0),
            KickKind.HYDRO: cumulative_trapezoid(hydro, self.loga_grid, initial=0.0),
        }
        logger.debug(
            "KickFactorTable: %d samples over log a in [%g, %g]",
            self.loga_grid.size,
            self.loga_grid[0],
            self.loga_grid[-1],
        )

    def _integral_to(self, ticks, kind: KickKind):
        loga = self.timeline.loga(ticks)
        return np.interp(loga, self.loga_grid, self._cumulative[KickKind(kind)])

    def kick_factor(self, tick_start, tick_end, kind: KickKind = KickKind.GRAVITY):
        """Return the kick integral from ``tick_start`` to ``tick_end`` (scalars or arrays)."""

        out = self._integral_to(tick_end, kind) - self._integral_to(tick_start, kind)
        if np.ndim(out) == 0:
            return float(out)
        return out

    def tick_delta_to_log_scale(self, dti, epoch=0):
        return self.timeline.dloga_from_dti(dti, epoch)


__all__ = [
    "KickKind",
    "TimeFactors",
    "Cosmology",
    "softening_table",
    "KickFactorProvider",
    "KickFactorTable",
]
