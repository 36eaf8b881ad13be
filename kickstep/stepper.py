"""Per-cycle orchestration of the kick scheduler.

One cycle runs

1. :meth:`KickStepper.synchronize` -- agree on the next sync tick, mark the
   active bins, refresh the time-dependent factors and rebuild the active list;
2. the external force computation on the active particles;
3. :meth:`KickStepper.advance_and_find_timesteps` -- new long-range step at
   mesh boundaries, per-particle steps, one registry merge, short-range kicks,
   the global fault check and, at mesh boundaries, the long-range kick.

A degenerate step anywhere is fatal on every worker: the fault count is
SUM-reduced, an emergency snapshot is written and
:class:`~kickstep.errors.DegenerateStepError` is raised.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import pandas as pd

from . import constants, schema
from .cosmology import Cosmology, KickFactorProvider, KickFactorTable
from .errors import DegenerateStepError, InvariantViolationError
from .io.checkpoint import SNAPSHOT_VERSION, SnapshotState, SnapshotWriter
from .parallel import ReductionTransport, make_transport
from .particles import ParticleStore
from .runtime.helpers import log_stage
from .runtime.history import HISTORY_COLUMNS, ColumnarBuffer
from .scheduler import (
    ActiveListBuilder,
    BinAssigner,
    KickIntegrator,
    PMStepController,
    SynchronizationCoordinator,
    TimeBinRegistry,
    TimestepPolicy,
)
from .timeline import Tick, TimelineMap, kick_tick, ticks_for_bin

logger = logging.getLogger(__name__)

ForceProvider = Callable[[ParticleStore, np.ndarray, Tick], None]
SnapshotSink = Callable[[int, SnapshotState], Any]


class CyclePhase(str, enum.Enum):
    """Where the stepper is inside a cycle."""

    IDLE = "idle"
    SYNC = "sync"
    FORCES = "forces"
    ASSIGN = "assign"
    KICK = "kick"
    PM = "pm"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class CycleReport:
    """Summary of one completed cycle."""

    cycle: int
    tick: Tick
    scale_factor: float
    num_active: int
    force_update_count: int
    pm_start: int
    pm_step: int


class KickStepper:
    """Own the scheduler state for one worker and drive it cycle by cycle."""

    def __init__(
        self,
        cfg: schema.Config,
        store: ParticleStore,
        *,
        transport: Optional[ReductionTransport] = None,
        provider: Optional[KickFactorProvider] = None,
        snapshot_writer: Optional[SnapshotSink] = None,
        use_numba: Optional[bool] = None,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.timebins = int(cfg.timeline.timebins)
        self.timebase = int(cfg.timeline.timebase)
        self.timeline = TimelineMap(
            cfg.timeline.time_begin,
            cfg.timeline.time_max,
            cfg.timeline.output_list,
            timebase=self.timebase,
        )
        self.cosmology = Cosmology(cfg.cosmology)
        self.provider = provider if provider is not None else KickFactorTable(self.cosmology, self.timeline)
        self.transport = transport if transport is not None else make_transport(cfg.parallel.transport)
        if snapshot_writer is None:
            snapshot_writer = SnapshotWriter(cfg.io.outdir, cfg.io.snapshot_format, rank=self.transport.rank)
        self.snapshot_writer = snapshot_writer

        self.registry = TimeBinRegistry.empty(self.timebins)
        self.policy = TimestepPolicy(cfg, store, self.cosmology, self.timeline)
        self.assigner = BinAssigner(self.timebins)
        self.sync = SynchronizationCoordinator(self.registry, self.transport, self.timebase)
        self.pm = PMStepController(cfg, store, self.cosmology, self.timeline, self.transport)
        self.kicker = KickIntegrator(cfg, store, self.provider, self.cosmology, timebase=self.timebase, use_numba=use_numba)
        self.active_builder = ActiveListBuilder(store, self.registry)

        self.history = ColumnarBuffer(HISTORY_COLUMNS)
        self.cycle = 0
        self.phase = CyclePhase.IDLE
        self.current = Tick(0, 0)
        self.scale_factor = float(cfg.timeline.time_begin)
        self.force_update_count = 0
        self.init_timebins()

    # ------------------------------------------------------------------
    # state
    # ------------------------------------------------------------------

    @property
    def active(self) -> np.ndarray:
        return self.active_builder.active

    @property
    def current_absolute(self) -> int:
        return self.current.to_absolute(self.timebase)

    @property
    def finished(self) -> bool:
        return self.current_absolute >= self.timeline.end_tick

    def set_time(self, a: float) -> None:
        """Refresh every scale-factor dependent factor, including the softenings."""

        self.scale_factor = float(a)
        self.policy.update_time(a)
        self.pm.update_time(a)
        self.kicker.update_time(a)

    def init_timebins(self) -> None:
        """Zero the long-range step, activate every bin and rebuild the active list at tick 0."""

        self.pm.reset()
        self.current = Tick(0, 0)
        self.set_time(self.timeline.scale_factor(0))
        self.registry.set_active_mask(np.ones(self.timebins, dtype=bool))
        self.active_builder.rebuild()
        self.registry.check_consistent(len(self.store), self.store.kind_totals())
        self.phase = CyclePhase.IDLE

    # ------------------------------------------------------------------
    # cycle pieces
    # ------------------------------------------------------------------

    def synchronize(self):
        """Move to the next sync point; return it with the force-update count."""

        self.phase = CyclePhase.SYNC
        next_tick = self.sync.find_next_sync(self.current)
        if next_tick.to_absolute(self.timebase) < self.current_absolute:
            raise InvariantViolationError(f"next sync {next_tick} precedes the current tick {self.current}")
        _, force_update_count = self.sync.mark_active_bins(next_tick)
        self.current = next_tick
        self.set_time(self.timeline.scale_factor(next_tick.to_absolute(self.timebase)))
        self.active_builder.rebuild()
        self.registry.check_consistent(len(self.store), self.store.kind_totals())
        self.force_update_count = force_update_count
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "synchronize: tick=%s a=%g active=%d force_updates=%d",
                next_tick,
                self.scale_factor,
                self.active_builder.num_active,
                force_update_count,
            )
        return next_tick, force_update_count

    def advance_and_find_timesteps(self, do_half_kick: bool = False) -> int:
        """Assign new steps to the active particles and kick them.

        Without ``do_half_kick`` the closing half of the old step and the
        opening half of the new one are applied as one kick; with it the kick
        stops at the end of the old step so that velocities are synchronised.
        Returns the number of particles that changed bin.
        """

        p = self.store
        self.phase = CyclePhase.ASSIGN
        if self.cfg.features.make_glass_file:
            self.kicker.reverse_and_apply_gravity(self.transport)

        now = self.current_absolute
        epoch = self.current.epoch
        at_pm = self.pm.is_pm_timestep(now)
        new_pm_step = self.pm.long_range_timestep_ticks(epoch) if at_pm else self.pm.descriptor.pm_step

        idx = self.active
        desired = self.policy.desired_ticks(idx, new_pm_step, epoch)
        desired_ticks = desired.ticks
        if self.cfg.timestep.force_equal_timesteps:
            ti_min = self.assigner.equal_step_ticks(desired_ticks, self.transport)
            desired_ticks = np.full(idx.shape, ti_min, dtype=np.int64)

        old_bins = p.time_bin[idx].copy()
        new_bins, new_ticks, bin_faults = self.assigner.assign_with_faults(desired_ticks, old_bins, self.registry.active)
        local_faults = int(np.count_nonzero(desired.faults | bin_faults))
        moved = self.registry.apply_migrations(p.kind[idx], old_bins, new_bins)
        p.time_bin[idx] = new_bins

        self.phase = CyclePhase.KICK
        dti_old = ticks_for_bin(old_bins)
        start = p.step_start_tick[idx]
        tick_start = kick_tick(start, dti_old)
        if do_half_kick:
            tick_end = start + dti_old
        else:
            tick_end = kick_tick(start + dti_old, new_ticks)
        p.step_start_tick[idx] = start + dti_old
        self.kicker.short_range_kick(idx, tick_start, tick_end)

        global_faults = int(self.transport.allreduce(local_faults, "sum"))
        if global_faults:
            self._abort(global_faults)

        if at_pm:
            self.phase = CyclePhase.PM
            pm = self.pm.descriptor
            pm_end = pm.pm_end
            self.kicker.long_range_kick(pm.kick_tick, pm_end if do_half_kick else kick_tick(pm_end, new_pm_step))
            self.pm.advance(new_pm_step, now)
        self.phase = CyclePhase.DONE
        return moved

    def apply_half_kick(self) -> None:
        """Kick the active particles to their step midpoints and all particles to the mesh midpoint."""

        self.kicker.half_kick(self.active, self.pm.descriptor)

    def _abort(self, global_faults: int) -> None:
        logger.error(
            "bad timestep spotted on %d particle(s): terminating and saving snapshot %d",
            global_faults,
            constants.EMERGENCY_SNAPSHOT_ID,
        )
        self.phase = CyclePhase.ABORTED
        self.snapshot_writer(constants.EMERGENCY_SNAPSHOT_ID, self.snapshot_state(global_faults))
        raise DegenerateStepError(global_faults)

    def snapshot_state(self, fault_count: int = 0, snapshot_id: int = constants.EMERGENCY_SNAPSHOT_ID) -> SnapshotState:
        pm = self.pm.descriptor
        return SnapshotState(
            version=SNAPSHOT_VERSION,
            snapshot_id=int(snapshot_id),
            epoch=int(self.current.epoch),
            local_tick=int(self.current.local_tick),
            scale_factor=float(self.scale_factor),
            pm_start=int(pm.pm_start),
            pm_step=int(pm.pm_step),
            bin_count=[int(c) for c in self.registry.count],
            active_bins=[bool(b) for b in self.registry.active],
            fault_count=int(fault_count),
            particles={name: arr.copy() for name, arr in self.store.as_arrays().items()},
        )

    # ------------------------------------------------------------------
    # driving
    # ------------------------------------------------------------------

    def run_cycle(self, force_provider: Optional[ForceProvider] = None) -> CycleReport:
        """Run one full cycle and append it to the history."""

        if self.phase is CyclePhase.ABORTED:
            raise InvariantViolationError("stepper was aborted; no further cycles can run")
        if self.finished:
            raise InvariantViolationError("the run already reached the end of the timeline")
        try:
            tick, force_update_count = self.synchronize()
            self.phase = CyclePhase.FORCES
            if force_provider is not None:
                force_provider(self.store, self.active, tick)
            num_active = self.active_builder.num_active
            self.advance_and_find_timesteps()
        except Exception:
            self.phase = CyclePhase.ABORTED
            raise

        pm = self.pm.descriptor
        report = CycleReport(
            cycle=self.cycle,
            tick=tick,
            scale_factor=self.scale_factor,
            num_active=num_active,
            force_update_count=force_update_count,
            pm_start=pm.pm_start,
            pm_step=pm.pm_step,
        )
        record: Dict[str, Any] = {
            "cycle": report.cycle,
            "epoch": tick.epoch,
            "local_tick": tick.local_tick,
            "absolute_tick": tick.to_absolute(self.timebase),
            "scale_factor": report.scale_factor,
            "num_active": report.num_active,
            "force_update_count": report.force_update_count,
            "pm_start": report.pm_start,
            "pm_step": report.pm_step,
        }
        reg = self.registry.as_record()
        record.update({key: reg[key] for key in ("n_bins_occupied", "min_bin", "max_bin", "active_binmask")})
        record["phase"] = self.phase.value
        self.history.append_row(record)
        self.cycle += 1
        return report

    def run(self, n_cycles: int, force_provider: Optional[ForceProvider] = None) -> List[CycleReport]:
        """Run up to ``n_cycles`` cycles, stopping early at the end of the timeline."""

        log_stage(logger, "run", extra={"cycles": int(n_cycles), "particles": len(self.store)})
        reports: List[CycleReport] = []
        for _ in range(int(n_cycles)):
            if self.finished:
                logger.info("Reached the end of the timeline after %d cycle(s)", self.cycle)
                break
            reports.append(self.run_cycle(force_provider))
        return reports

    def history_frame(self) -> pd.DataFrame:
        return self.history.to_frame()


__all__ = ["CyclePhase", "CycleReport", "KickStepper"]
