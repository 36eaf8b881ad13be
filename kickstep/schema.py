"""Configuration schema for the kick scheduler.

This module defines Pydantic models that mirror the structure of the YAML
configuration files read by :mod:`kickstep.run`.  Sections group the
parameters by the component that consumes them; optional physics terms are
plain switches in :class:`Features` and are checked at the start of the
computation that needs them.
"""
from __future__ import annotations

import math
from pathlib import Path
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from . import constants
from .errors import ConfigurationError


class Timeline(BaseModel):
    """Integer timeline and its mapping onto the scale factor."""

    timebins: int = Field(
        constants.TIMEBINS,
        ge=4,
        le=constants.MAX_TIMEBINS,
        description="Number of bins in the step hierarchy; an epoch spans 2**(timebins-1) ticks.",
    )
    time_begin: float = Field(..., gt=0.0, description="Scale factor at the start of the run")
    time_max: float = Field(1.0, gt=0.0, description="Scale factor at the end of the run")
    output_list: List[float] = Field(
        default_factory=list,
        description="Scale factors of intermediate outputs; each closes an epoch.",
    )

    @model_validator(mode="after")
    def _check_order(self) -> "Timeline":
        if self.time_max <= self.time_begin:
            raise ConfigurationError(
                f"timeline.time_max ({self.time_max}) must exceed time_begin ({self.time_begin})"
            )
        return self

    @property
    def timebase(self) -> int:
        return constants.timebase_for(self.timebins)


class Cosmology(BaseModel):
    """Background cosmology in internal units (default: kpc/h, 1e10 Msun/h, km/s)."""

    omega0: float = Field(0.2814, ge=0.0, description="Total matter density parameter")
    omega_lambda: float = Field(0.7186, ge=0.0, description="Cosmological constant density parameter")
    omega_baryon: float = Field(0.0464, ge=0.0, description="Baryon density parameter")
    hubble: float = Field(0.1, gt=0.0, description="H0 in internal units")
    gravity: float = Field(43007.1, gt=0.0, description="Gravitational constant in internal units")
    box_size: float = Field(25000.0, gt=0.0, description="Comoving box side length")

    @model_validator(mode="after")
    def _check_baryons(self) -> "Cosmology":
        if self.omega_baryon > self.omega0:
            raise ConfigurationError("cosmology.omega_baryon cannot exceed omega0")
        return self

    @property
    def omega_cdm(self) -> float:
        return self.omega0 - self.omega_baryon


def _six_kinds(values: List[float], label: str) -> List[float]:
    if len(values) != constants.N_KINDS:
        raise ConfigurationError(f"{label} needs one entry per particle kind ({constants.N_KINDS})")
    out = [float(v) for v in values]
    if any(not math.isfinite(v) or v < 0.0 for v in out):
        raise ConfigurationError(f"{label} entries must be finite and non-negative")
    return out


class Softening(BaseModel):
    """Gravitational softening per particle kind."""

    comoving: List[float] = Field(
        default_factory=lambda: [1.0, 1.0, 1.0, 1.0, 1.0, 1.0],
        description="Comoving softening length per kind",
    )
    max_physical: List[float] = Field(
        default_factory=lambda: [0.5, 0.5, 0.5, 0.5, 0.5, 0.5],
        description="Upper bound on the physical softening length per kind",
    )

    @field_validator("comoving")
    def _check_comoving(cls, value: List[float]) -> List[float]:
        return _six_kinds(value, "softening.comoving")

    @field_validator("max_physical")
    def _check_max_physical(cls, value: List[float]) -> List[float]:
        return _six_kinds(value, "softening.max_physical")


class Timestep(BaseModel):
    """Per-particle step criteria."""

    err_tol_int_accuracy: float = Field(0.02, gt=0.0, description="Accuracy parameter of the gravity criterion")
    courant_fac: float = Field(0.15, gt=0.0, description="Courant factor for fluid particles")
    min_size_timestep: float = Field(0.0, ge=0.0, description="Minimum step in log a")
    max_size_timestep: float = Field(0.1, gt=0.0, description="Maximum long-range step in log a")
    tree_grav_on: bool = Field(True, description="Disable to give every particle the long-range step")
    force_equal_timesteps: bool = Field(False, description="Give all particles the global minimum step")
    adaptive_gravsoft_for_gas: bool = Field(
        False,
        description="Use the smoothing length instead of the softening table for fluid particles",
    )


class PM(BaseModel):
    """Long-range (mesh) step controls."""

    asmth: float = Field(1.25, gt=0.0, description="Force split scale in mesh cells")
    nmesh: int = Field(128, gt=0, description="Mesh cells per dimension")
    max_rms_displacement_fac: float = Field(
        0.2,
        gt=0.0,
        description="Allowed RMS displacement per long-range step as a fraction of the smaller length scale",
    )
    fast_particle_type: Optional[int] = Field(
        2,
        description="Kind excluded from constraining the long-range step (e.g. neutrinos)",
    )

    @field_validator("fast_particle_type")
    def _check_fast_type(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and not 0 <= int(value) < constants.N_KINDS:
            raise ConfigurationError("pm.fast_particle_type must name a particle kind or be null")
        return value


class Gas(BaseModel):
    """Fluid particle limiters."""

    max_gas_vel: float = Field(3.0e5, gt=0.0, description="Maximum physical fluid speed")
    min_egy_spec: float = Field(0.0, ge=0.0, description="Specific energy floor (0 disables)")


class Features(BaseModel):
    """Optional physics terms."""

    black_holes: bool = Field(False, description="Enable accretion step limits for black holes")
    star_formation: bool = Field(False, description="Treat stars on equal footing with gas in the PM estimator")
    make_glass_file: bool = Field(False, description="Reverse gravity to relax a glass")


class Debug(BaseModel):
    """Consistency checks."""

    check_kick_times: bool = Field(False, description="Verify each kick continues from the previous kick point")


class Parallel(BaseModel):
    """Distributed reduction transport."""

    transport: Literal["single", "mpi"] = Field("single", description="Reduction transport")


class IO(BaseModel):
    """Output locations."""

    outdir: Path = Field(Path("out"), description="Output directory")
    snapshot_format: Literal["pickle", "json"] = Field("pickle", description="Emergency snapshot format")
    write_history: bool = Field(True, description="Write the per-cycle history as Parquet")
    quiet: bool = Field(False, description="Suppress INFO logs and Python warnings on the command line")


class Config(BaseModel):
    """Top-level configuration object."""

    timeline: Timeline
    cosmology: Cosmology = Cosmology()
    softening: Softening = Softening()
    timestep: Timestep = Timestep()
    pm: PM = PM()
    gas: Gas = Gas()
    features: Features = Features()
    debug: Debug = Debug()
    parallel: Parallel = Parallel()
    io: IO = IO()

    @model_validator(mode="before")
    def _forbid_unknown_sections(cls, data: Any) -> Any:
        """Reject top-level keys that do not name a section."""

        if not isinstance(data, dict):
            return data
        known = set(cls.model_fields)
        unknown = sorted(str(key) for key in data if key not in known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration section(s): {', '.join(unknown)}")
        return data


__all__ = [
    "Timeline",
    "Cosmology",
    "Softening",
    "Timestep",
    "PM",
    "Gas",
    "Features",
    "Debug",
    "Parallel",
    "IO",
    "Config",
]
