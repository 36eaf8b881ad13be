import math
from pathlib import Path

import pytest

from kickstep import config_utils, schema
from kickstep.errors import ConfigurationError

ROOT = Path(__file__).resolve().parents[1]

MINIMAL = """\
timeline:
  timebins: 12
  time_begin: 0.25
pm:
  nmesh: 64
"""


def _write(tmp_path, text, name="config.yml"):
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_example_config_loads():
    cfg = config_utils.load_config(ROOT / "configs" / "example.yml")
    assert cfg.timeline.timebins == 29
    assert cfg.timeline.output_list == [0.75]
    assert cfg.debug.check_kick_times is True
    assert cfg.parallel.transport == "single"


def test_defaults_and_overrides(tmp_path):
    path = _write(tmp_path, MINIMAL)
    cfg = config_utils.load_config(
        path,
        overrides=["pm.nmesh=256", "features.black_holes=true", "gas.min_egy_spec=1e-3", "io.snapshot_format=json"],
    )
    assert cfg.timeline.time_max == 1.0
    assert cfg.timeline.timebase == 1 << 11
    assert cfg.pm.nmesh == 256
    assert cfg.features.black_holes is True
    assert cfg.gas.min_egy_spec == pytest.approx(1e-3)
    assert cfg.io.snapshot_format == "json"
    assert cfg.cosmology.omega_cdm == pytest.approx(0.2814 - 0.0464)


def test_overrides_file(tmp_path):
    path = _write(tmp_path, MINIMAL)
    overrides = _write(tmp_path, "# mesh\npm.nmesh=32\n\npm.fast_particle_type=null\n", name="overrides.txt")
    lines = config_utils.read_overrides_file(overrides)
    assert lines == ["pm.nmesh=32", "pm.fast_particle_type=null"]
    cfg = config_utils.load_config(path, overrides=lines)
    assert cfg.pm.nmesh == 32
    assert cfg.pm.fast_particle_type is None


def test_empty_file_is_missing_timeline(tmp_path):
    path = _write(tmp_path, "")
    with pytest.raises(ValueError):
        config_utils.load_config(path)


def test_non_mapping_root(tmp_path):
    path = _write(tmp_path, "- 1\n- 2\n")
    with pytest.raises(ConfigurationError):
        config_utils.load_config(path)


def test_unknown_section_is_rejected(tmp_path):
    path = _write(tmp_path, MINIMAL + "physics:\n  hydro: true\n")
    with pytest.raises(ValueError, match="physics"):
        config_utils.load_config(path)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("true", True),
        ("False", False),
        ("null", None),
        ("12", 12),
        ("1.5e-3", 1.5e-3),
        ("'mpi'", "mpi"),
        ("pickle", "pickle"),
        ("-inf", float("-inf")),
    ],
)
def test_parse_override_value(raw, expected):
    assert config_utils.parse_override_value(raw) == expected


def test_parse_override_nan():
    assert math.isnan(config_utils.parse_override_value("nan"))


def test_bad_override_syntax():
    with pytest.raises(ConfigurationError):
        config_utils.apply_overrides_dict({}, ["pm.nmesh"])
    with pytest.raises(ConfigurationError):
        config_utils.apply_overrides_dict({"pm": 3}, ["pm.nmesh=2"])
    nested = config_utils.apply_overrides_dict({}, ["a.b.c=1"])
    assert nested == {"a": {"b": {"c": 1}}}


def test_time_ordering_is_validated():
    with pytest.raises(ValueError):
        schema.Timeline(time_begin=1.0, time_max=0.5)
    with pytest.raises(ValueError):
        schema.Timeline(time_begin=0.5, timebins=2)


def test_softening_needs_one_entry_per_kind():
    with pytest.raises(ValueError):
        schema.Softening(comoving=[1.0, 1.0])
    with pytest.raises(ValueError):
        schema.Softening(max_physical=[1.0, 1.0, 1.0, 1.0, 1.0, -1.0])


def test_baryons_and_fast_kind_are_validated():
    with pytest.raises(ValueError):
        schema.Cosmology(omega0=0.1, omega_baryon=0.2)
    with pytest.raises(ValueError):
        schema.PM(fast_particle_type=7)
    with pytest.raises(ValueError):
        schema.Parallel(transport="grpc")


def test_timebins_are_capped():
    top = schema.Timeline(time_begin=0.5, timebins=32)
    assert top.timebase == 1 << 31
    with pytest.raises(ValueError):
        schema.Timeline(time_begin=0.5, timebins=33)
    with pytest.raises(ValueError):
        schema.Timeline(time_begin=0.5, timebins=62)
