import numpy as np
import pytest

from kickstep import constants
from kickstep.errors import DegenerateStepError, InvariantViolationError
from kickstep.io.checkpoint import load_snapshot
from kickstep.stepper import CyclePhase, KickStepper
from kickstep.timeline import Tick

SMALL = {"timebins": 6}


def _accel(n, value):
    acc = np.zeros((n, 3))
    acc[:, 0] = value
    return acc


def test_initial_state(make_config, make_store, recording_snapshots):
    cfg = make_config(timeline=SMALL)
    store = make_store([constants.KIND_DM] * 3, mass=np.ones(3))
    stepper = KickStepper(cfg, store, snapshot_writer=recording_snapshots, use_numba=False)

    assert stepper.timebase == 32
    assert stepper.current == Tick(0, 0)
    assert stepper.registry.active.all()
    assert stepper.registry.count[0] == 3
    assert stepper.active.tolist() == [0, 1, 2]
    assert stepper.phase is CyclePhase.IDLE
    assert stepper.scale_factor == pytest.approx(0.5)


def test_run_at_rest_reaches_end_of_timeline(make_config, make_store, recording_snapshots):
    cfg = make_config(timeline=SMALL)
    store = make_store([constants.KIND_DM] * 4, mass=np.ones(4))
    stepper = KickStepper(cfg, store, snapshot_writer=recording_snapshots, use_numba=False)

    reports = stepper.run(50)

    # max_size_timestep 0.1 over ln(2)/32 per tick -> 4-tick mesh steps
    assert len(reports) == 9
    assert [r.tick.to_absolute(32) for r in reports] == list(range(0, 33, 4))
    assert reports[-1].tick == Tick(1, 0)
    assert reports[-1].scale_factor == pytest.approx(1.0)
    assert all(r.pm_step == 4 for r in reports)
    assert stepper.finished
    assert store.time_bin.tolist() == [2, 2, 2, 2]
    assert store.step_start_tick.tolist() == [32, 32, 32, 32]
    assert stepper.phase is CyclePhase.DONE
    assert recording_snapshots.calls == []

    frame = stepper.history_frame()
    assert len(frame) == 9
    assert frame["absolute_tick"].tolist() == list(range(0, 33, 4))
    assert (frame["num_active"] == 4).all()
    assert frame["max_bin"].tolist() == [2] * 9

    with pytest.raises(InvariantViolationError):
        stepper.run_cycle()


def test_force_provider_sees_active_particles(make_config, make_store, recording_snapshots):
    cfg = make_config(timeline=SMALL)
    store = make_store([constants.KIND_DM] * 2, mass=np.ones(2))
    stepper = KickStepper(cfg, store, snapshot_writer=recording_snapshots, use_numba=False)
    seen = []

    def forces(particles, active, tick):
        seen.append((active.tolist(), tick))

    stepper.run(2, forces)
    assert seen == [([0, 1], Tick(0, 0)), ([0, 1], Tick(0, 4))]


def test_equal_steps(make_config, make_store, recording_snapshots):
    cfg = make_config(timeline=SMALL, timestep={"force_equal_timesteps": True})
    # g = 0.05 -> dt = sqrt(0.1), about 2.5 ticks
    store = make_store(
        [constants.KIND_DM, constants.KIND_DM],
        mass=np.ones(2),
        grav_accel=np.array([[0.05, 0.0, 0.0], [0.0, 0.0, 0.0]]),
    )
    stepper = KickStepper(cfg, store, snapshot_writer=recording_snapshots, use_numba=False)
    stepper.run_cycle()
    assert store.time_bin.tolist() == [1, 1]

    cfg_free = make_config(timeline=SMALL)
    free = make_store(
        [constants.KIND_DM, constants.KIND_DM],
        mass=np.ones(2),
        grav_accel=np.array([[0.05, 0.0, 0.0], [0.0, 0.0, 0.0]]),
    )
    KickStepper(cfg_free, free, snapshot_writer=recording_snapshots, use_numba=False).run_cycle()
    assert free.time_bin.tolist() == [1, 2]


def test_degenerate_step_aborts_with_snapshot(make_config, make_store, recording_snapshots):
    cfg = make_config(timeline=SMALL, softening={"comoving": [0.0] * 6})
    store = make_store([constants.KIND_DM, constants.KIND_DM], mass=np.ones(2), grav_accel=_accel(2, 1.0))
    stepper = KickStepper(cfg, store, snapshot_writer=recording_snapshots, use_numba=False)

    with pytest.raises(DegenerateStepError) as excinfo:
        stepper.run_cycle()

    assert excinfo.value.fault_count == 2
    assert stepper.phase is CyclePhase.ABORTED
    assert len(recording_snapshots.calls) == 1
    snapshot_id, state = recording_snapshots.calls[0]
    assert snapshot_id == constants.EMERGENCY_SNAPSHOT_ID
    assert state.fault_count == 2
    assert state.bin_count[0] == 2
    # faulted particles keep their bin
    assert store.time_bin.tolist() == [0, 0]
    with pytest.raises(InvariantViolationError):
        stepper.run_cycle()


def test_fault_on_another_worker_aborts_everyone(make_config, make_store, recording_snapshots, fake_transport):
    cfg = make_config(timeline=SMALL)
    store = make_store([constants.KIND_DM], mass=np.ones(1))
    transport = fake_transport(peers={"sum": [1]})
    stepper = KickStepper(cfg, store, transport=transport, snapshot_writer=recording_snapshots, use_numba=False)

    with pytest.raises(DegenerateStepError) as excinfo:
        stepper.run_cycle()
    assert excinfo.value.fault_count == 1
    assert recording_snapshots.calls[0][1].fault_count == 1
    assert stepper.phase is CyclePhase.ABORTED


def test_emergency_snapshot_is_written_to_disk(make_config, make_store):
    cfg = make_config(timeline=SMALL, softening={"comoving": [0.0] * 6}, io={"snapshot_format": "json"})
    store = make_store([constants.KIND_DM], mass=np.ones(1), grav_accel=_accel(1, 1.0))
    stepper = KickStepper(cfg, store, use_numba=False)

    with pytest.raises(DegenerateStepError):
        stepper.run(3)

    path = stepper.snapshot_writer.last_path
    assert path is not None and path.exists()
    assert path.name == "snapshot_999999.json"
    state = load_snapshot(path)
    assert state.fault_count == 1
    assert state.to_store().time_bin.tolist() == [0]


def test_half_kick_split_matches_plain_advance(make_config, make_store, linear_provider, recording_snapshots):
    cfg = make_config(timeline=SMALL)

    def build():
        store = make_store(
            [constants.KIND_DM, constants.KIND_DM, constants.KIND_GAS],
            mass=np.ones(3),
            grav_accel=np.array([[0.05, 0.0, 0.0], [0.0, 0.0, 0.0], [0.0, 0.02, 0.0]]),
            pm_accel=np.full((3, 3), 1.0e-3),
            hsml=np.array([0.0, 0.0, 1.0]),
        )
        return store, KickStepper(
            cfg, store, provider=linear_provider, snapshot_writer=recording_snapshots, use_numba=False
        )

    plain_store, plain = build()
    split_store, split = build()

    for stepper in (plain, split):
        stepper.run(2)
        # the third cycle lands on the mesh boundary at tick 4
        assert stepper.synchronize()[0] == Tick(0, 4)
        assert stepper.pm.is_pm_timestep(4)
    plain.advance_and_find_timesteps()
    split.advance_and_find_timesteps(do_half_kick=True)
    split.apply_half_kick()

    np.testing.assert_array_equal(split_store.time_bin, plain_store.time_bin)
    np.testing.assert_allclose(split_store.vel, plain_store.vel, rtol=1e-12)
    assert split.pm.descriptor == plain.pm.descriptor


def test_glass_mode_reverses_gravity(make_config, make_store, recording_snapshots):
    cfg = make_config(timeline=SMALL, features={"make_glass_file": True})
    store = make_store(
        [constants.KIND_DM, constants.KIND_DM],
        mass=np.ones(2),
        vel=np.ones((2, 3)),
        grav_accel=_accel(2, 1.0e-3),
    )
    stepper = KickStepper(cfg, store, snapshot_writer=recording_snapshots, use_numba=False)
    stepper.run_cycle()
    assert (store.pos[:, 0] < 0.0).all()
    assert not store.grav_accel.any()
    assert not store.vel.any()


def test_widest_timeline_runs_through_every_output(make_config, make_store, recording_snapshots):
    cfg = make_config(timeline={"timebins": 32, "output_list": [0.6, 0.7, 0.8]})
    store = make_store([constants.KIND_DM] * 2, mass=np.ones(2))
    stepper = KickStepper(cfg, store, snapshot_writer=recording_snapshots, use_numba=False)

    reports = stepper.run(100)

    assert stepper.finished
    assert reports[-1].tick == Tick(4, 0)
    assert reports[-1].scale_factor == pytest.approx(1.0)
    assert {Tick(e, 0) for e in range(5)} <= {r.tick for r in reports}
    assert recording_snapshots.calls == []
