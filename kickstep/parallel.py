"""Blocking reduction transports shared by all workers.

Every collective the scheduler performs is a MIN, MAX or SUM over a scalar
or a small fixed-size array, and every participant must reach it.  The
single-rank transport returns its input unchanged; :class:`MPITransport`
wraps an :mod:`mpi4py` communicator.
"""
from __future__ import annotations

import logging
from typing import Any, Protocol

import numpy as np

from .errors import ConfigurationError, TransportError

logger = logging.getLogger(__name__)

REDUCTION_OPS = ("min", "max", "sum")


def _check_op(op: str) -> str:
    op_norm = str(op).lower()
    if op_norm not in REDUCTION_OPS:
        raise TransportError(f"Unsupported reduction '{op}'; expected one of {REDUCTION_OPS}")
    return op_norm


class ReductionTransport(Protocol):
    """Collective operations over a fixed, known set of participants."""

    rank: int
    size: int

    def allreduce(self, value: Any, op: str) -> Any: ...


class SingleRankTransport:
    """Transport for one participant; every reduction is the identity."""

    rank = 0
    size = 1

    def allreduce(self, value: Any, op: str) -> Any:
        _check_op(op)
        if isinstance(value, np.ndarray):
            return value.copy()
        return value


class MPITransport:
    """Reductions over an MPI communicator (``COMM_WORLD`` by default)."""

    def __init__(self, comm: Any = None) -> None:
        from mpi4py import MPI

        self._mpi = MPI
        self.comm = MPI.COMM_WORLD if comm is None else comm
        self.rank = int(self.comm.Get_rank())
        self.size = int(self.comm.Get_size())
        self._ops = {"min": MPI.MIN, "max": MPI.MAX, "sum": MPI.SUM}

    def allreduce(self, value: Any, op: str) -> Any:
        mpi_op = self._ops[_check_op(op)]
        if isinstance(value, np.ndarray):
            send = np.ascontiguousarray(value)
            recv = np.empty_like(send)
            self.comm.Allreduce(send, recv, op=mpi_op)
            return recv
        return self.comm.allreduce(value, op=mpi_op)


def make_transport(name: str = "single") -> ReductionTransport:
    """Return the transport selected by ``parallel.transport``."""

    key = str(name).lower()
    if key == "single":
        return SingleRankTransport()
    if key == "mpi":
        transport = MPITransport()
        logger.info("MPI transport: rank %d of %d", transport.rank, transport.size)
        return transport
    raise ConfigurationError(f"Unknown transport '{name}'")


__all__ = [
    "REDUCTION_OPS",
    "ReductionTransport",
    "SingleRankTransport",
    "MPITransport",
    "make_transport",
]
