"""Integer timeline helpers.

Ticks are integers on a fixed-resolution timeline.  Each epoch (snapshot
interval) holds ``TIMEBASE`` ticks and is mapped linearly onto an interval in
``log a``.  Inside the scheduler a position on the timeline is a
:class:`Tick` with an explicit epoch and local tick; the packed absolute
integer ``epoch * TIMEBASE + local_tick`` is only used where values are
stored per particle or exchanged between workers.

The power-of-two helpers accept Python integers as well as NumPy arrays and
return the same shape they were given.
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Iterable

import numpy as np

from .constants import TIMEBASE
from .errors import ConfigurationError
from .warnings import ConfigurationWarning

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class Tick:
    """Position on the integer timeline.

    Attributes
    ----------
    epoch:
        Snapshot interval the tick belongs to.
    local_tick:
        Offset inside the epoch, ``0 <= local_tick < timebase``.
    """

    epoch: int
    local_tick: int

    @classmethod
    def from_absolute(cls, value: int, timebase: int = TIMEBASE) -> "Tick":
        epoch, local = divmod(int(value), int(timebase))
        return cls(epoch=epoch, local_tick=local)

    def to_absolute(self, timebase: int = TIMEBASE) -> int:
        return int(self.epoch) * int(timebase) + int(self.local_tick)

    def normalized(self, timebase: int = TIMEBASE) -> "Tick":
        """Return the tick with ``local_tick`` rolled into ``[0, timebase)``."""

        return Tick.from_absolute(self.to_absolute(timebase), timebase)

    def __str__(self) -> str:
        return f"{self.epoch}:{self.local_tick:#x}"


def _as_int_array(values) -> tuple[np.ndarray, bool]:
    arr = np.asarray(values)
    scalar = arr.ndim == 0
    return np.atleast_1d(arr).astype(np.int64, copy=False), scalar


def _restore(arr: np.ndarray, scalar: bool):
    if scalar:
        return int(arr[0])
    return arr


def bin_for_ticks(ticks):
    """Return ``floor(log2(ticks))``, with a step of zero ticks mapped to bin 0."""

    arr, scalar = _as_int_array(ticks)
    if np.any(arr < 0):
        raise ValueError("tick counts must be non-negative")
    out = np.zeros(arr.shape, dtype=np.int64)
    pos = arr > 0
    if np.any(pos):
        values = arr[pos]
        _, exponent = np.frexp(values.astype(np.float64))
        bins = np.minimum(exponent.astype(np.int64) - 1, 62)
        # float64 rounding can carry a value just below 2**k up to 2**k
        bins -= (np.left_shift(np.int64(1), bins) > values).astype(np.int64)
        out[pos] = bins
    return _restore(out, scalar)


def ticks_for_bin(bins):
    """Return the cadence of ``bins`` in ticks; bin 0 has a zero-length step."""

    arr, scalar = _as_int_array(bins)
    out = np.where(arr > 0, np.left_shift(np.int64(1), np.maximum(arr, 0)), 0).astype(np.int64)
    return _restore(out, scalar)


def round_down_power_of_two(ticks):
    """Round non-negative tick counts down to a power of two (zero stays zero)."""

    arr, scalar = _as_int_array(ticks)
    bins = bin_for_ticks(arr)
    out = np.where(arr > 0, np.left_shift(np.int64(1), bins), 0).astype(np.int64)
    return _restore(out, scalar)


def is_power_of_two_or_zero(ticks) -> bool:
    arr, _ = _as_int_array(ticks)
    return bool(np.all((arr >= 0) & ((arr & (arr - 1)) == 0)))


def kick_tick(start, step):
    """Return the kick point of a step, i.e. its midpoint."""

    if isinstance(start, np.ndarray) or isinstance(step, np.ndarray):
        return np.asarray(start, dtype=np.int64) + np.asarray(step, dtype=np.int64) // 2
    return int(start) + int(step) // 2


class TimelineMap:
    """Linear map between ticks and ``log a`` inside each epoch.

    Parameters
    ----------
    time_begin, time_max:
        Scale factors at the start and end of the run.
    sync_points:
        Scale factors of intermediate outputs.  Each one closes an epoch.
    timebase:
        Ticks per epoch.
    """

    def __init__(
        self,
        time_begin: float,
        time_max: float,
        sync_points: Iterable[float] = (),
        *,
        timebase: int = TIMEBASE,
    ) -> None:
        if not (time_begin > 0.0 and time_max > time_begin):
            raise ConfigurationError("timeline requires 0 < time_begin < time_max")
        points = [float(a) for a in sync_points]
        inner = sorted({a for a in points if time_begin < a < time_max})
        dropped = [a for a in points if not time_begin < a < time_max]
        if dropped:
            warnings.warn(
                f"ignoring output times outside ({time_begin:g}, {time_max:g}): {dropped}",
                ConfigurationWarning,
            )
        edges = np.array([float(time_begin), *inner, float(time_max)], dtype=np.float64)
        self.timebase = int(timebase)
        self.loga_edges = np.log(edges)
        self.intervals = np.diff(self.loga_edges) / float(self.timebase)
        self.n_epochs = int(self.intervals.size)
        if self.n_epochs * self.timebase > np.iinfo(np.int64).max:
            raise ConfigurationError(
                f"{self.n_epochs} epochs of {self.timebase} ticks overflow the int64 tick counter"
            )
        logger.debug(
            "TimelineMap: %d epoch(s) between a=%g and a=%g, timebase=%d",
            self.n_epochs,
            time_begin,
            time_max,
            self.timebase,
        )

    @property
    def end_tick(self) -> int:
        return self.n_epochs * self.timebase

    def _clamp_epoch(self, epoch) -> np.ndarray:
        return np.clip(np.asarray(epoch, dtype=np.int64), 0, self.n_epochs - 1)

    def loga(self, ticks):
        """Return ``log a`` at absolute ``ticks`` (scalars or arrays)."""

        arr = np.asarray(ticks, dtype=np.int64)
        epoch = self._clamp_epoch(arr // self.timebase)
        local = arr - epoch * self.timebase
        out = self.loga_edges[epoch] + local * self.intervals[epoch]
        if out.ndim == 0:
            return float(out)
        return out

    def scale_factor(self, ticks):
        return np.exp(self.loga(ticks))

    def dloga_from_dti(self, dti, epoch=0):
        """Return the ``log a`` length of ``dti`` ticks inside ``epoch`` (scalar or per element)."""

        interval = self.intervals[self._clamp_epoch(epoch)]
        out = np.asarray(dti, dtype=np.float64) * interval
        if out.ndim == 0:
            return float(out)
        return out

    def ticks_from_dloga(self, dloga, epoch: int = 0):
        """Return ``floor(dloga / interval)`` as floats, so callers can clamp before casting."""

        interval = self.intervals[int(self._clamp_epoch(epoch))]
        with np.errstate(over="ignore", invalid="ignore"):
            out = np.floor(np.asarray(dloga, dtype=np.float64) / interval)
        if out.ndim == 0:
            return float(out)
        return out

    def dti_from_dloga(self, dloga: float, epoch: int = 0) -> int:
        """Integer ticks for ``dloga`` clipped to ``[0, timebase]``."""

        ticks = self.ticks_from_dloga(dloga, epoch)
        if not np.isfinite(ticks):
            return 0 if np.isnan(ticks) or ticks < 0 else self.timebase
        return int(min(max(ticks, 0.0), float(self.timebase)))

    def dloga_for_bin(self, bins, epoch=0):
        return self.dloga_from_dti(ticks_for_bin(bins), epoch)


__all__ = [
    "Tick",
    "bin_for_ticks",
    "ticks_for_bin",
    "round_down_power_of_two",
    "is_power_of_two_or_zero",
    "kick_tick",
    "TimelineMap",
]
