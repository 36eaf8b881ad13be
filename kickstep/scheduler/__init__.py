"""Bin hierarchy, step assignment, synchronisation and kicks."""
from __future__ import annotations

from .active import ActiveListBuilder
from .assign import BinAssigner
from .kick import KickIntegrator
from .pm import PMDescriptor, PMStepController
from .policy import DesiredSteps, TimestepPolicy
from .registry import TimeBinRegistry
from .sync import SynchronizationCoordinator

__all__ = [
    "ActiveListBuilder",
    "BinAssigner",
    "DesiredSteps",
    "KickIntegrator",
    "PMDescriptor",
    "PMStepController",
    "SynchronizationCoordinator",
    "TimeBinRegistry",
    "TimestepPolicy",
]
