"""Structured warning classes for the :mod:`kickstep` package."""
from __future__ import annotations


class KickstepWarning(UserWarning):
    """Base warning class for kickstep."""


class NumericalWarning(KickstepWarning):
    """Numerical stability or accuracy warnings."""


class ConfigurationWarning(KickstepWarning):
    """Questionable but accepted configuration values."""


__all__ = [
    "KickstepWarning",
    "NumericalWarning",
    "ConfigurationWarning",
]
