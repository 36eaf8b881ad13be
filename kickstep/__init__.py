"""Hierarchical power-of-two kick scheduler for particle integrators."""
from . import constants
from .errors import KickstepError

__version__ = "0.1.0"

__all__ = ["constants", "KickstepError", "__version__"]
