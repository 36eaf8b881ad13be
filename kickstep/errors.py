"""Custom exceptions for the :mod:`kickstep` package."""
from __future__ import annotations


class KickstepError(Exception):
    """Base exception for kick scheduler errors."""


class ConfigurationError(KickstepError, ValueError):
    """Invalid configuration file or parameter combination."""


class DegenerateStepError(KickstepError, RuntimeError):
    """One or more particles resolved to an unusable step on some worker.

    Raised on every worker once the global fault count is known, after the
    emergency snapshot has been requested.
    """

    def __init__(self, fault_count: int, message: str | None = None) -> None:
        self.fault_count = int(fault_count)
        super().__init__(message or f"Ending due to bad timestep ({self.fault_count} particles)")


class KickTimeMismatchError(KickstepError, RuntimeError):
    """A particle's recorded kick tick differs from the start of the next kick."""


class InvariantViolationError(KickstepError, RuntimeError):
    """Scheduler bookkeeping no longer satisfies its invariants."""


class TransportError(KickstepError, RuntimeError):
    """The distributed reduction transport rejected an operation."""


__all__ = [
    "KickstepError",
    "ConfigurationError",
    "DegenerateStepError",
    "KickTimeMismatchError",
    "InvariantViolationError",
    "TransportError",
]
