from __future__ import annotations

import functools
import sys
from pathlib import Path
from typing import Any, Dict, List

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from kickstep import schema  # noqa: E402
from kickstep.particles import ParticleStore  # noqa: E402

_REDUCERS = {"min": np.minimum, "max": np.maximum, "sum": np.add}


class FakeTransport:
    """Single-process stand-in for a multi-rank transport.

    ``peers`` maps an operation to the contributions of the other ranks; a
    contribution only takes part in reductions of the same shape.
    """

    rank = 0

    def __init__(self, peers: Dict[str, List[Any]] | None = None, size: int = 2) -> None:
        self.peers = peers or {}
        self.size = size
        self.calls: List[tuple] = []

    def allreduce(self, value, op):
        self.calls.append((op, value))
        contributions = [value] + [
            peer for peer in self.peers.get(op, []) if np.shape(peer) == np.shape(value)
        ]
        out = functools.reduce(_REDUCERS[op], contributions)
        if isinstance(value, np.ndarray):
            return np.asarray(out, dtype=value.dtype)
        return type(value)(out)


class LinearKickFactors:
    """Kick-factor provider proportional to the tick interval."""

    def __init__(self, per_tick: float = 1.0e-3, dloga_per_tick: float = 1.0e-3) -> None:
        self.per_tick = per_tick
        self.dloga_per_tick = dloga_per_tick

    def kick_factor(self, tick_start, tick_end, kind):
        out = (np.asarray(tick_end, dtype=np.float64) - np.asarray(tick_start, dtype=np.float64)) * self.per_tick
        return float(out) if out.ndim == 0 else out

    def tick_delta_to_log_scale(self, dti, epoch=0):
        out = np.asarray(dti, dtype=np.float64) * self.dloga_per_tick
        return float(out) if out.ndim == 0 else out


class RecordingSnapshots:
    def __init__(self) -> None:
        self.calls: List[tuple] = []

    def __call__(self, snapshot_id, state):
        self.calls.append((snapshot_id, state))


@pytest.fixture
def make_config(tmp_path):
    def _make(**sections) -> schema.Config:
        payload: Dict[str, Dict[str, Any]] = {
            "timeline": {"timebins": 10, "time_begin": 0.5, "time_max": 1.0},
            "io": {"outdir": str(tmp_path / "out")},
        }
        for key, value in sections.items():
            payload.setdefault(key, {}).update(value)
        return schema.Config(**payload)

    return _make


@pytest.fixture
def make_store():
    def _make(kinds, **columns) -> ParticleStore:
        arrays = {"kind": np.asarray(kinds, dtype=np.int64)}
        arrays.update(columns)
        return ParticleStore.from_arrays(arrays)

    return _make


@pytest.fixture
def linear_provider():
    return LinearKickFactors()


@pytest.fixture
def fake_transport():
    return FakeTransport


@pytest.fixture
def recording_snapshots():
    return RecordingSnapshots()
