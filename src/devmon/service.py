"""
Core devmon operations.

``DevmonService`` wires the probes, classifier, ledger, threshold selector,
kill executor and cache reclaimer together and exposes the operations
every front end uses: ``status``, ``run_cycle``, ``kill``,
``kill_all_orphans``, ``kill_group``, ``clean``, ``pause`` and ``resume``.
None of them render anything.
"""

import dataclasses
import logging
import time
from collections.abc import Callable

from devmon import probes
from devmon.cache import CacheReclaimer, CacheTarget, CleanReport
from devmon.config import DevmonConfig
from devmon.errors import MalformedRowError, ProbeError
from devmon.killer import BatchKillResult, KillExecutor, KillResult
from devmon.ledger import OrphanLedger
from devmon.metrics import MemoryCounters, sample_pressure
from devmon.models import CycleSnapshot, OperationResult, ProcessRecord
from devmon.ports import PortCorrelator
from devmon.processes import ProcessClassifier, parse_row, summarize_memory
from devmon.state import PauseState
from devmon.thresholds import (
    PressureAlarm,
    ThresholdDecision,
    select_threshold,
    should_kill,
)

logger = logging.getLogger(__name__)


def log_notifier(title: str, message: str) -> None:
    """Default notifier: write the alert to the log."""
    logger.warning("%s: %s", title, message)


class DevmonService:
    """Entry point for the decision engine."""

    def __init__(
        self,
        config: DevmonConfig,
        ledger: OrphanLedger | None = None,
        pause_state: PauseState | None = None,
        executor: KillExecutor | None = None,
        reclaimer: CacheReclaimer | None = None,
        process_probe: Callable[[], tuple[list, dict[int, int]]] = probes.read_process_table,
        memory_probe: Callable[[], MemoryCounters] = probes.read_memory_counters,
        socket_probe: Callable[..., list] = probes.read_socket_table,
        clock: Callable[[], float] = time.time,
        notifier: Callable[[str, str], None] = log_notifier,
    ) -> None:
        self._config = config
        self._ledger = ledger or OrphanLedger(config.ledger_path)
        self._pause_state = pause_state or PauseState(config.state_path)
        self._executor = executor or KillExecutor(self._ledger, config.protected)
        self._reclaimer = reclaimer or CacheReclaimer(
            CacheTarget.from_config(t) for t in config.cache_targets
        )
        self._classifier = ProcessClassifier(config.process_pattern, config.whitelist)
        self._process_probe = process_probe
        self._memory_probe = memory_probe
        self._socket_probe = socket_probe
        self._clock = clock
        self._notifier = notifier
        self._last_snapshot: CycleSnapshot | None = None

    @property
    def config(self) -> DevmonConfig:
        """Active configuration."""
        return self._config

    @property
    def ledger(self) -> OrphanLedger:
        """The orphan ledger."""
        return self._ledger

    @property
    def last_snapshot(self) -> CycleSnapshot | None:
        """Most recent completed snapshot."""
        return self._last_snapshot

    def status(self) -> CycleSnapshot:
        """
        Collect a snapshot without touching the ledger or killing anything.

        Orphans not yet in the ledger are shown with age 0.

        Raises:
            ProbeError: If the process table or memory counters are unavailable.
        """
        now = int(self._clock())
        ledger = self._ledger.load()
        snapshot = self._collect(now, lambda pids: {p: max(0, now - ledger.get(p, now)) for p in pids})
        self._last_snapshot = snapshot
        return snapshot

    def run_cycle(self) -> CycleSnapshot | None:
        """
        One monitoring cycle: enumerate, age, decide, kill.

        The ledger is reconciled against the current orphan set every cycle,
        even while paused; kills only happen when not paused.

        Returns:
            The completed snapshot, or None when the OS probes failed and the
            cycle should be retried on the next tick.
        """
        now = int(self._clock())
        try:
            snapshot = self._collect(now, lambda pids: self._ledger.track(pids, now))
        except ProbeError as e:
            logger.warning("Skipping cycle: %s", e)
            return None

        self._check_alarm(snapshot)

        if snapshot.paused:
            logger.debug("Monitoring paused; no kills this cycle")
        else:
            decision = self._decide(snapshot.pressure.percent)
            doomed = [
                proc
                for proc in snapshot.orphans
                if should_kill(proc.orphan_age_seconds, decision)
                and not self._executor.is_protected(proc.command_name)
            ]
            for proc in doomed:
                logger.info(
                    "Killing idle orphan %s (pid %d, age %ds, tier %s, threshold %ds)",
                    proc.command_name,
                    proc.pid,
                    proc.orphan_age_seconds,
                    decision.tier.value,
                    decision.idle_threshold_seconds,
                )
                result = self._executor.kill(proc.pid)
                if result.ok:
                    snapshot.killed.append(proc.pid)
                else:
                    logger.warning("Could not kill pid %d: %s", proc.pid, result.reason)

        self._last_snapshot = snapshot
        return snapshot

    def kill(self, pid: int) -> KillResult:
        """Terminate one process on request."""
        return self._executor.kill(pid)

    def kill_all_orphans(self) -> BatchKillResult:
        """Terminate every currently orphaned dev process in one batch."""
        try:
            rows, _ = self._process_probe()
        except ProbeError as e:
            logger.warning("Cannot list processes: %s", e)
            return BatchKillResult(error=f"cannot list processes: {e}")
        orphans = [proc.pid for proc in self._classifier.classify(rows) if proc.is_orphan]
        if not orphans:
            return BatchKillResult()
        return self._executor.kill_many(orphans)

    def kill_group(self, name: str) -> BatchKillResult:
        """
        Terminate every process whose command name is ``name``.

        Pids are re-read from the live process table so a stale display
        cannot target recycled pids. Protected names are refused by the
        executor like any other kill.
        """
        try:
            rows, _ = self._process_probe()
        except ProbeError as e:
            logger.warning("Cannot list processes: %s", e)
            return BatchKillResult(error=f"cannot list processes: {e}")
        pids = []
        for row in rows:
            try:
                pid, _, _, command_name, _ = parse_row(row)
            except MalformedRowError:
                continue
            if command_name == name:
                pids.append(pid)
        if not pids:
            return BatchKillResult(error=f"no running processes named {name}")
        logger.info("Killing %d %s process(es)", len(pids), name)
        return self._executor.kill_many(pids)

    def clean(self, dry_run: bool = False) -> CleanReport:
        """Prune stale caches, or preview what would be pruned."""
        return self._reclaimer.clean(dry_run=dry_run)

    def pause(self) -> OperationResult:
        """Stop automatic kills until resumed."""
        return self._set_paused(True)

    def resume(self) -> OperationResult:
        """Re-enable automatic kills."""
        return self._set_paused(False)

    def is_paused(self) -> bool:
        """Persisted pause flag."""
        return self._pause_state.is_paused()

    def _set_paused(self, paused: bool) -> OperationResult:
        try:
            self._pause_state.set_paused(paused)
        except OSError as e:
            return OperationResult(ok=False, reason=f"cannot write {self._pause_state.path}: {e}")
        logger.info("Monitoring %s", "paused" if paused else "resumed")
        return OperationResult(ok=True)

    def _check_alarm(self, snapshot: CycleSnapshot) -> None:
        # The latch lives in the state file so one-shot scheduled runs share it
        was_fired = self._pause_state.alarm_fired()
        alarm = PressureAlarm(
            self._config.emergency_threshold, enabled=self._config.notify, fired=was_fired
        )
        if alarm.update(snapshot.pressure.percent):
            self._notifier(
                "devmon: high memory",
                f"Memory pressure at {snapshot.pressure.percent}%. "
                f"{len(snapshot.orphans)} orphaned dev process(es).",
            )
        if alarm.fired != was_fired:
            try:
                self._pause_state.set_alarm_fired(alarm.fired)
            except OSError as e:
                logger.warning("Cannot save alarm state to %s: %s", self._pause_state.path, e)

    def _decide(self, pressure_percent: int) -> ThresholdDecision:
        return select_threshold(
            pressure_percent,
            self._config.warn_threshold,
            self._config.emergency_threshold,
            self._config.idle_normal_seconds,
            self._config.idle_emergency_seconds,
        )

    def _collect(
        self, now: int, age_orphans: Callable[[list[int]], dict[int, int]]
    ) -> CycleSnapshot:
        paused = self._pause_state.is_paused()
        pressure = sample_pressure(
            self._memory_probe(), self._config.warn_threshold, self._config.emergency_threshold
        )
        rows, memory_mb = self._process_probe()
        if not rows:
            raise ProbeError("process table is empty")

        records = self._classifier.classify(rows, memory_mb)
        ages = age_orphans([proc.pid for proc in records if proc.is_orphan])

        correlator = PortCorrelator(
            self._socket_probe([proc.pid for proc in records]),
            self._config.port_min,
            self._config.port_max,
        )
        annotated: list[ProcessRecord] = []
        for proc in records:
            port = correlator.listening_port(proc.pid)
            annotated.append(
                dataclasses.replace(
                    proc,
                    listening_port=port,
                    connection_count=correlator.connection_count(port) if port else 0,
                    orphan_age_seconds=ages.get(proc.pid) if proc.is_orphan else None,
                )
            )

        names = {}
        for row in rows:
            try:
                pid, _, _, name, _ = parse_row(row)
            except MalformedRowError:
                continue
            names[pid] = name

        return CycleSnapshot(
            timestamp=now,
            pressure=pressure,
            idle_threshold_seconds=self._decide(pressure.percent).idle_threshold_seconds,
            processes=annotated,
            ports=correlator.listening_ports(names),
            paused=paused,
            memory_groups=summarize_memory(rows, memory_mb),
        )
