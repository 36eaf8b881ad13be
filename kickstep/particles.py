"""Struct-of-arrays particle store.

The scheduler reads and writes a fixed set of per-particle columns.  Fluid
and accreting columns are allocated at full length so that every column can
be indexed with the same local index; they are only meaningful for particles
of the matching kind.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Dict, Mapping

import numpy as np

from . import constants
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_VECTOR_COLUMNS = ("pos", "vel", "grav_accel", "pm_accel", "hydro_accel")
_INT_COLUMNS = ("ids", "kind", "time_bin", "step_start_tick", "kick_tick", "bh_timebin_limit")


@dataclass
class ParticleStore:
    """Local particles, one array per field."""

    ids: np.ndarray
    kind: np.ndarray
    mass: np.ndarray
    pos: np.ndarray
    vel: np.ndarray
    grav_accel: np.ndarray
    pm_accel: np.ndarray
    time_bin: np.ndarray
    step_start_tick: np.ndarray
    kick_tick: np.ndarray
    hsml: np.ndarray
    density: np.ndarray
    max_signal_vel: np.ndarray
    hydro_accel: np.ndarray
    internal_energy: np.ndarray
    energy_rate: np.ndarray
    eom_density: np.ndarray
    bh_mass: np.ndarray
    bh_mdot: np.ndarray
    bh_timebin_limit: np.ndarray

    def __post_init__(self) -> None:
        n = int(np.asarray(self.kind).shape[0])
        for f in fields(self):
            value = getattr(self, f.name)
            dtype = np.int64 if f.name in _INT_COLUMNS else np.float64
            arr = np.ascontiguousarray(value, dtype=dtype)
            expected = (n, 3) if f.name in _VECTOR_COLUMNS else (n,)
            if arr.shape != expected:
                raise ConfigurationError(
                    f"particle column '{f.name}' has shape {arr.shape}, expected {expected}"
                )
            setattr(self, f.name, arr)
        if n and (self.kind.min() < 0 or self.kind.max() >= constants.N_KINDS):
            raise ConfigurationError("particle kinds must lie in [0, %d)" % constants.N_KINDS)

    @classmethod
    def allocate(cls, kinds) -> "ParticleStore":
        """Return a zero-initialised store for particles of the given ``kinds``."""

        kind = np.asarray(kinds, dtype=np.int64)
        n = kind.shape[0]
        payload: Dict[str, np.ndarray] = {}
        for f in fields(cls):
            if f.name == "kind":
                payload[f.name] = kind
            elif f.name == "ids":
                payload[f.name] = np.arange(n, dtype=np.int64)
            elif f.name in _VECTOR_COLUMNS:
                payload[f.name] = np.zeros((n, 3), dtype=np.float64)
            elif f.name in _INT_COLUMNS:
                payload[f.name] = np.zeros(n, dtype=np.int64)
            else:
                payload[f.name] = np.zeros(n, dtype=np.float64)
        return cls(**payload)

    @classmethod
    def from_arrays(cls, arrays: Mapping[str, np.ndarray]) -> "ParticleStore":
        """Build a store from a mapping; missing columns are zero-filled.

        ``kind`` is required.  ``mass`` defaults to zero like the other
        columns, which the long-range estimator treats as massless.
        """

        if "kind" not in arrays:
            raise ConfigurationError("particle data must provide a 'kind' column")
        store = cls.allocate(arrays["kind"])
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(arrays) - known)
        if unknown:
            logger.warning("Ignoring unknown particle column(s): %s", ", ".join(unknown))
        payload = {name: getattr(store, name) for name in known}
        for name, value in arrays.items():
            if name in known and name != "kind":
                payload[name] = value
        return cls(**payload)

    def __len__(self) -> int:
        return int(self.kind.shape[0])

    def kind_totals(self) -> np.ndarray:
        return np.bincount(self.kind, minlength=constants.N_KINDS).astype(np.int64)

    def as_arrays(self) -> Dict[str, np.ndarray]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def copy(self) -> "ParticleStore":
        return ParticleStore(**{name: arr.copy() for name, arr in self.as_arrays().items()})


def load_npz(path: Path) -> ParticleStore:
    """Load particles from a NumPy ``.npz`` archive keyed by column name."""

    path = Path(path)
    with np.load(path) as data:
        arrays = {key: data[key] for key in data.files}
    store = ParticleStore.from_arrays(arrays)
    logger.info("Loaded %d particles from %s", len(store), path)
    return store


def save_npz(store: ParticleStore, path: Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez(path, **store.as_arrays())
    return path


__all__ = ["ParticleStore", "load_npz", "save_npz"]
