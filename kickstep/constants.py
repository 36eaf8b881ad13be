"""Timeline constants and particle-kind tables for the kick scheduler.

The integer timeline is split into epochs of ``TIMEBASE`` ticks.  Bin ``b``
advances every ``2**b`` ticks, so the coarsest bin advances exactly once per
epoch.  Kind numbering follows the usual six-species layout of cosmological
N-body codes.
"""
from __future__ import annotations

from typing import Tuple

# Number of bins in the step hierarchy; bin ``TIMEBINS - 1`` spans a full epoch.
TIMEBINS: int = 29

# Ticks per epoch (snapshot interval)
TIMEBASE: int = 1 << (TIMEBINS - 1)

# Largest supported hierarchy; absolute ticks stay exact in float64 and int64
MAX_TIMEBINS: int = 32

# Particle kinds
N_KINDS: int = 6
KIND_GAS: int = 0
KIND_DM: int = 1
KIND_DISK: int = 2
KIND_BULGE: int = 3
KIND_STAR: int = 4
KIND_BH: int = 5

KIND_NAMES: Tuple[str, ...] = ("gas", "halo", "disk", "bulge", "stars", "bndry")

# Adiabatic index of the fluid
GAMMA: float = 5.0 / 3.0
GAMMA_MINUS1: float = GAMMA - 1.0

# Floor on the physical acceleration magnitude
MIN_ACCELERATION: float = 1.0e-30

# Ratio between the Plummer-equivalent softening and the spline kernel extent
SOFTENING_KERNEL_FACTOR: float = 2.8

# Snapshot number reserved for the dump written before a fatal abort
EMERGENCY_SNAPSHOT_ID: int = 999999


def timebase_for(timebins: int) -> int:
    """Return the epoch length in ticks for a hierarchy of ``timebins`` bins."""

    if timebins < 2:
        raise ValueError("timebins must be at least 2")
    if timebins > MAX_TIMEBINS:
        raise ValueError(f"timebins must be at most {MAX_TIMEBINS}")
    return 1 << (timebins - 1)
