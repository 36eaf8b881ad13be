import math

import numpy as np
import pytest

from kickstep import constants
from kickstep.cosmology import Cosmology
from kickstep.errors import InvariantViolationError
from kickstep.parallel import SingleRankTransport
from kickstep.scheduler import PMDescriptor, PMStepController
from kickstep.timeline import TimelineMap
from kickstep.warnings import NumericalWarning

A = 0.5


def _controller(cfg, store, transport=None):
    timeline = TimelineMap(cfg.timeline.time_begin, cfg.timeline.time_max, timebase=cfg.timeline.timebase)
    cosmology = Cosmology(cfg.cosmology)
    return PMStepController(cfg, store, cosmology, timeline, transport or SingleRankTransport()), cosmology


def _vel(n, value):
    vel = np.zeros((n, 3))
    vel[:, 0] = value
    return vel


def _expected(cfg, cosmology, min_mass, omega, rms):
    c = cfg.cosmology
    asmth = cfg.pm.asmth * c.box_size / cfg.pm.nmesh
    dmean = (min_mass / (omega * cosmology.critical_density())) ** (1.0 / 3.0)
    hubble = cosmology.hubble_function(A)
    return cfg.pm.max_rms_displacement_fac * hubble * A * A * min(asmth, dmean) / rms


def test_descriptor_kick_point():
    pm = PMDescriptor(pm_start=64, pm_step=32)
    assert pm.pm_end == 96
    assert pm.kick_tick == 80
    assert PMDescriptor().kick_tick == 0


def test_rms_displacement_bound(make_config, make_store):
    cfg = make_config()
    store = make_store([constants.KIND_DM], mass=np.array([1.0]), vel=_vel(1, 100.0))
    ctrl, cosmology = _controller(cfg, store)

    dloga = ctrl.long_range_timestep_dloga()

    assert dloga == pytest.approx(_expected(cfg, cosmology, 1.0, cfg.cosmology.omega_cdm, 100.0))
    assert dloga == pytest.approx(0.021037, rel=1e-4)


def test_fast_kind_does_not_constrain(make_config, make_store):
    cfg = make_config()
    store = make_store([constants.KIND_DISK], mass=np.array([1.0]), vel=_vel(1, 1.0e4))
    ctrl, _ = _controller(cfg, store)
    assert ctrl.long_range_timestep_dloga() == pytest.approx(cfg.timestep.max_size_timestep)


def test_at_rest_gives_maximum_step(make_config, make_store):
    cfg = make_config()
    store = make_store([constants.KIND_DM, constants.KIND_GAS], mass=np.array([1.0, 1.0]))
    ctrl, _ = _controller(cfg, store)
    assert ctrl.long_range_timestep_dloga() == pytest.approx(0.1)
    # 0.1 / (ln 2 / 512) = 73.9 ticks
    assert ctrl.long_range_timestep_ticks() == 64


def test_star_formation_merges_stars_into_gas(make_config, make_store):
    kinds = [constants.KIND_GAS, constants.KIND_STAR]
    mass = np.array([1.0, 1.0])
    vel = np.array([[0.0, 0.0, 0.0], [100.0, 0.0, 0.0]])

    cfg = make_config()
    ctrl, cosmology = _controller(cfg, make_store(kinds, mass=mass, vel=vel))
    separate = ctrl.long_range_timestep_dloga()
    assert separate == pytest.approx(_expected(cfg, cosmology, 1.0, cfg.cosmology.omega_cdm, 100.0))

    cfg_sf = make_config(features={"star_formation": True})
    ctrl_sf, _ = _controller(cfg_sf, make_store(kinds, mass=mass, vel=vel))
    merged = ctrl_sf.long_range_timestep_dloga()
    assert merged == pytest.approx(separate * math.sqrt(2.0))


def test_ticks_are_a_power_of_two(make_config, make_store):
    cfg = make_config()
    store = make_store([constants.KIND_DM], mass=np.array([1.0]), vel=_vel(1, 100.0))
    ctrl, _ = _controller(cfg, store)
    # 0.021 / (ln 2 / 512) = 15.5 ticks
    assert ctrl.long_range_timestep_ticks() == 8


def test_sub_tick_estimate_warns(make_config, make_store):
    cfg = make_config(timestep={"max_size_timestep": 1.0e-6})
    store = make_store([constants.KIND_DM], mass=np.array([1.0]))
    ctrl, _ = _controller(cfg, store)
    with pytest.warns(NumericalWarning):
        assert ctrl.long_range_timestep_ticks() == 0


def test_peer_statistics_are_reduced(make_config, make_store, fake_transport):
    cfg = make_config()
    store = make_store([constants.KIND_DM], mass=np.array([1.0]), vel=_vel(1, 100.0))
    transport = fake_transport(peers={"min": [np.full(constants.N_KINDS, 0.01)]})
    ctrl, cosmology = _controller(cfg, store, transport)

    dloga = ctrl.long_range_timestep_dloga()

    assert [op for op, _ in transport.calls] == ["sum", "sum", "min"]
    assert dloga == pytest.approx(_expected(cfg, cosmology, 0.01, cfg.cosmology.omega_cdm, 100.0))


def test_advance_only_at_the_boundary(make_config, make_store):
    cfg = make_config()
    ctrl, _ = _controller(cfg, make_store([constants.KIND_DM]))
    assert ctrl.is_pm_timestep(0)

    ctrl.advance(8, 0)
    assert ctrl.descriptor == PMDescriptor(pm_start=0, pm_step=8)
    assert not ctrl.is_pm_timestep(4)
    with pytest.raises(InvariantViolationError):
        ctrl.advance(8, 4)
    with pytest.raises(InvariantViolationError):
        ctrl.advance(6, 8)

    ctrl.advance(16, 8)
    assert ctrl.descriptor == PMDescriptor(pm_start=8, pm_step=16)
    ctrl.reset()
    assert ctrl.descriptor == PMDescriptor()
