from __future__ import annotations

import base64
import json
import logging
import pickle
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np

from ..particles import ParticleStore

logger = logging.getLogger(__name__)

SnapshotFormat = Union[str, None]

SNAPSHOT_VERSION = 1

_SUFFIX = {"pickle": ".pkl", "json": ".json"}


def _b64_pack(payload: Any) -> str:
    return base64.b64encode(pickle.dumps(payload)).decode("ascii")


def _b64_unpack(payload: str) -> Any:
    return pickle.loads(base64.b64decode(payload.encode("ascii")))


@dataclass
class SnapshotState:
    """Particle columns plus the scheduler state needed to inspect a failed run."""

    version: int
    snapshot_id: int
    epoch: int
    local_tick: int
    scale_factor: float
    pm_start: int
    pm_step: int
    bin_count: List[int]
    active_bins: List[bool]
    fault_count: int
    particles: Dict[str, np.ndarray] = field(default_factory=dict)

    def to_store(self) -> ParticleStore:
        return ParticleStore.from_arrays(self.particles)


def _normalise_format(fmt: SnapshotFormat) -> str:
    fmt_normalized = "pickle" if fmt in (None, "") else str(fmt).lower()
    if fmt_normalized not in _SUFFIX:
        raise ValueError(f"Unsupported snapshot format: {fmt}")
    return fmt_normalized


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def save_snapshot(path: Path, state: SnapshotState, fmt: SnapshotFormat = "pickle") -> Path:
    """Serialise a snapshot to disk."""

    fmt_normalized = _normalise_format(fmt)
    _ensure_parent(path)
    if fmt_normalized == "pickle":
        with path.open("wb") as fh:
            pickle.dump(state, fh)
        return path

    payload = asdict(state)
    payload["particles"] = _b64_pack(state.particles)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh)
    return path


def load_snapshot(path: Path, fmt: SnapshotFormat = None) -> SnapshotState:
    """Load a snapshot; the format defaults to the one implied by the suffix."""

    path = Path(path)
    if fmt is None:
        fmt = "json" if path.suffix.lower() == ".json" else "pickle"
    fmt_normalized = _normalise_format(fmt)

    if fmt_normalized == "pickle":
        with path.open("rb") as fh:
            return pickle.load(fh)

    with path.open("r", encoding="utf-8") as fh:
        payload = json.load(fh)
    payload["particles"] = _b64_unpack(payload["particles"])
    return SnapshotState(**payload)


class SnapshotWriter:
    """Write numbered snapshots to ``<outdir>/snapshots``.

    Each worker writes its own file; ranks above zero get a ``.rank<N>``
    suffix so that the files do not collide.
    """

    def __init__(self, outdir: Path, fmt: SnapshotFormat = "pickle", *, rank: int = 0) -> None:
        self.directory = Path(outdir) / "snapshots"
        self.fmt = _normalise_format(fmt)
        self.rank = int(rank)
        self.written: List[Path] = []

    def path_for(self, snapshot_id: int) -> Path:
        rank_tag = f".rank{self.rank}" if self.rank else ""
        return self.directory / f"snapshot_{int(snapshot_id):06d}{rank_tag}{_SUFFIX[self.fmt]}"

    def write(self, snapshot_id: int, state: SnapshotState) -> Path:
        path = save_snapshot(self.path_for(snapshot_id), state, self.fmt)
        self.written.append(path)
        logger.info("Wrote snapshot %d to %s", int(snapshot_id), path)
        return path

    def __call__(self, snapshot_id: int, state: SnapshotState) -> Path:
        return self.write(snapshot_id, state)

    @property
    def last_path(self) -> Optional[Path]:
        return self.written[-1] if self.written else None


__all__ = [
    "SNAPSHOT_VERSION",
    "SnapshotState",
    "save_snapshot",
    "load_snapshot",
    "SnapshotWriter",
]
