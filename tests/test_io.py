import json
from pathlib import Path

import numpy as np
import pandas as pd
import pyarrow.parquet as pq
import pytest

from kickstep import constants, run
from kickstep.io.checkpoint import SNAPSHOT_VERSION, SnapshotState, SnapshotWriter, load_snapshot, save_snapshot
from kickstep.io.writer import write_parquet, write_summary
from kickstep.particles import ParticleStore, load_npz, save_npz
from kickstep.runtime.history import HISTORY_COLUMNS, ColumnarBuffer

ROOT = Path(__file__).resolve().parents[1]


def _state(store):
    return SnapshotState(
        version=SNAPSHOT_VERSION,
        snapshot_id=constants.EMERGENCY_SNAPSHOT_ID,
        epoch=1,
        local_tick=12,
        scale_factor=0.8,
        pm_start=8,
        pm_step=4,
        bin_count=[0, 2, 1],
        active_bins=[True, True, False],
        fault_count=3,
        particles=store.as_arrays(),
    )


@pytest.mark.parametrize("fmt, suffix", [("pickle", ".pkl"), ("json", ".json")])
def test_snapshot_roundtrip(tmp_path, make_store, fmt, suffix):
    store = make_store([0, 1, 1], mass=np.array([1.0, 2.0, 3.0]), time_bin=np.array([2, 1, 1]))
    path = save_snapshot(tmp_path / f"snap{suffix}", _state(store), fmt)

    loaded = load_snapshot(path)

    assert loaded.fault_count == 3
    assert loaded.bin_count == [0, 2, 1]
    assert loaded.active_bins == [True, True, False]
    restored = loaded.to_store()
    np.testing.assert_array_equal(restored.mass, store.mass)
    np.testing.assert_array_equal(restored.time_bin, store.time_bin)


def test_snapshot_writer_paths(tmp_path):
    assert SnapshotWriter(tmp_path).path_for(999999).name == "snapshot_999999.pkl"
    assert SnapshotWriter(tmp_path, "json", rank=3).path_for(7).name == "snapshot_000007.rank3.json"
    with pytest.raises(ValueError):
        SnapshotWriter(tmp_path, "hdf5")


def test_npz_roundtrip(tmp_path, make_store, caplog):
    store = make_store([0, 4], hsml=np.array([0.5, 0.0]))
    path = save_npz(store, tmp_path / "ics" / "particles.npz")
    loaded = load_npz(path)
    np.testing.assert_array_equal(loaded.hsml, store.hsml)
    np.testing.assert_array_equal(loaded.ids, [0, 1])

    with caplog.at_level("WARNING", logger="kickstep.particles"):
        ParticleStore.from_arrays({"kind": np.array([1]), "colour": np.array([3])})
    assert "colour" in caplog.text


def test_particle_store_validation():
    from kickstep.errors import ConfigurationError

    with pytest.raises(ConfigurationError):
        ParticleStore.from_arrays({"mass": np.ones(2)})
    with pytest.raises(ConfigurationError):
        ParticleStore.from_arrays({"kind": np.array([0, 6])})
    with pytest.raises(ConfigurationError):
        ParticleStore.from_arrays({"kind": np.array([0, 1]), "vel": np.zeros((2, 2))})


def test_columnar_buffer():
    buf = ColumnarBuffer(["a", "b"])
    assert not buf
    buf.append_row({"a": 1, "b": 2})
    buf.append_row({"a": 3, "c": "x"})
    assert len(buf) == 2
    assert buf.columns() == ["a", "b", "c"]
    assert buf.to_records() == [{"a": 1, "b": 2, "c": None}, {"a": 3, "b": None, "c": "x"}]
    assert buf.last() == {"a": 3, "b": None, "c": "x"}
    assert buf.to_table().num_rows == 2
    assert list(buf.to_frame().columns) == ["a", "b", "c"]
    buf.clear()
    assert buf.row_count == 0
    with pytest.raises(IndexError):
        buf.last()


def test_parquet_metadata(tmp_path):
    frame = pd.DataFrame({"cycle": [0, 1], "pm_step": [4, 4], "extra": [1.0, 2.0]})
    path = tmp_path / "nested" / "history.parquet"
    write_parquet(frame, path)

    table = pq.read_table(path)
    meta = table.schema.metadata
    units = json.loads(meta[b"units"])
    definitions = json.loads(meta[b"definitions"])
    assert units == {"cycle": "count", "pm_step": "tick"}
    assert set(definitions) == {"cycle", "pm_step"}
    pd.testing.assert_frame_equal(table.to_pandas(), frame)


def test_summary_json(tmp_path):
    path = tmp_path / "out" / "summary.json"
    write_summary({"status": "ok", "where": tmp_path}, path)
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data == {"status": "ok", "where": str(tmp_path)}


def _particles(tmp_path, n=4):
    store = ParticleStore.allocate([constants.KIND_DM] * n)
    store.mass[:] = 1.0
    return save_npz(store, tmp_path / "particles.npz")


def test_cli_end_to_end(tmp_path):
    outdir = tmp_path / "run"
    code = run.main(
        [
            "--config",
            str(ROOT / "configs" / "example.yml"),
            "--particles",
            str(_particles(tmp_path)),
            "--cycles",
            "3",
            "--override",
            f"io.outdir={outdir}",
            "timeline.timebins=8",
        ]
    )
    assert code == 0

    summary = json.loads((outdir / "summary.json").read_text(encoding="utf-8"))
    assert summary["status"] == "ok"
    assert summary["cycles"] == 3
    assert summary["particles"] == 4
    assert summary["timebins"] == 8
    assert set(summary["numba"]) == {"disabled_env", "use_numba", "numba_failed"}

    history = pq.read_table(outdir / "history.parquet").to_pandas()
    assert list(history.columns) == list(HISTORY_COLUMNS)
    assert history["cycle"].tolist() == [0, 1, 2]


def test_cli_degenerate_step_exit_code(tmp_path):
    outdir = tmp_path / "bad"
    config = tmp_path / "bad.yml"
    config.write_text(
        "timeline:\n"
        "  timebins: 8\n"
        "  time_begin: 0.5\n"
        "softening:\n"
        "  comoving: [0, 0, 0, 0, 0, 0]\n"
        f"io:\n  outdir: {outdir}\n  write_history: false\n",
        encoding="utf-8",
    )
    store = ParticleStore.allocate([constants.KIND_DM])
    store.mass[:] = 1.0
    store.grav_accel[:, 0] = 1.0
    particles = save_npz(store, tmp_path / "bad.npz")

    code = run.main(["--config", str(config), "--particles", str(particles), "--cycles", "2", "--quiet"])

    assert code == run.EXIT_DEGENERATE_STEP
    summary = json.loads((outdir / "summary.json").read_text(encoding="utf-8"))
    assert summary["status"] == "degenerate_step"
    assert (outdir / "snapshots" / "snapshot_999999.pkl").exists()
    assert not (outdir / "history.parquet").exists()
