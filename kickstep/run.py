"""Command-line dry run of the kick scheduler.

The driver loads a configuration and a particle file, freezes the external
forces at the values stored in the file and runs a number of scheduler
cycles.  The per-cycle history is written as Parquet together with a JSON
summary::

    python -m kickstep.run --config configs/example.yml --particles ics.npz --cycles 16
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import config_utils
from .errors import DegenerateStepError
from .io import writer
from .particles import load_npz
from .runtime.helpers import format_exception_short, log_stage
from .scheduler.kick import kernel_status
from .stepper import KickStepper

logger = logging.getLogger(__name__)

EXIT_DEGENERATE_STEP = 2


def _summary(stepper: KickStepper, status: str, reports: List[Any]) -> Dict[str, Any]:
    pm = stepper.pm.descriptor
    return {
        "status": status,
        "cycles": stepper.cycle,
        "cycles_this_run": len(reports),
        "particles": len(stepper.store),
        "epoch": stepper.current.epoch,
        "local_tick": stepper.current.local_tick,
        "scale_factor": stepper.scale_factor,
        "finished": stepper.finished,
        "pm_start": pm.pm_start,
        "pm_step": pm.pm_step,
        "timebins": stepper.timebins,
        "bin_count": [int(c) for c in stepper.registry.count],
        "numba": kernel_status(),
    }


def main(argv: Optional[List[str]] = None) -> int:
    """Command line entry point."""

    parser = argparse.ArgumentParser(description="Dry-run the hierarchical kick scheduler")
    parser.add_argument("--config", type=Path, required=True, help="Path to YAML configuration")
    parser.add_argument("--particles", type=Path, required=True, help="Particle columns as a .npz archive")
    parser.add_argument("--cycles", type=int, default=1, help="Number of scheduler cycles to run")
    parser.add_argument(
        "--quiet",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Suppress INFO logs and Python warnings (defaults to io.quiet; use --no-quiet to show logs).",
    )
    parser.add_argument(
        "--override",
        action="append",
        nargs="+",
        metavar="PATH=VALUE",
        help="Apply configuration overrides using dotted paths; e.g. --override pm.nmesh=256",
    )
    parser.add_argument(
        "--overrides-file",
        action="append",
        type=Path,
        help="Load overrides from a file (one PATH=VALUE per line).",
    )
    args = parser.parse_args(argv)

    override_list: List[str] = []
    if args.overrides_file:
        for override_path in args.overrides_file:
            override_list.extend(config_utils.read_overrides_file(override_path))
    if args.override:
        for group in args.override:
            override_list.extend(group)
    cfg = config_utils.load_config(args.config, overrides=override_list)
    quiet = cfg.io.quiet if args.quiet is None else bool(args.quiet)
    config_utils.configure_logging(logging.WARNING if quiet else logging.INFO, suppress_warnings=quiet)

    store = load_npz(args.particles)
    stepper = KickStepper(cfg, store)
    outdir = Path(cfg.io.outdir)
    log_stage(logger, "start", extra={"config": str(args.config), "outdir": str(outdir)})

    reports: List[Any] = []
    status = "ok"
    exit_code = 0
    try:
        reports = stepper.run(args.cycles)
    except DegenerateStepError as exc:
        logger.error("Run aborted: %s", format_exception_short(exc))
        status = "degenerate_step"
        exit_code = EXIT_DEGENERATE_STEP

    if stepper.transport.rank == 0:
        if cfg.io.write_history and len(stepper.history):
            writer.write_parquet(stepper.history_frame(), outdir / "history.parquet")
        writer.write_summary(_summary(stepper, status, reports), outdir / "summary.json")
    log_stage(logger, "done", extra={"status": status, "cycles": stepper.cycle})
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
