"""Runtime helpers used by the stepper."""

from .history import HISTORY_COLUMNS, ColumnarBuffer
from .helpers import format_exception_short, log_stage

__all__ = [
    "HISTORY_COLUMNS",
    "ColumnarBuffer",
    "format_exception_short",
    "log_stage",
]
