"""Tests for DevmonService cycles and operations."""

import signal

import pytest

from devmon.cache import CacheReclaimer
from devmon.config import DevmonConfig
from devmon.errors import ProbeError
from devmon.killer import KillExecutor
from devmon.ledger import OrphanLedger
from devmon.metrics import MemoryCounters
from devmon.models import PressureTier
from devmon.service import DevmonService

NOW = 10_000
PAGE = 4096
TOTAL_PAGES = 1000

PROCESS_ROWS = [
    (1, 0, None, "launchd", ["/sbin/launchd"]),
    (50, 1, "ttys001", "zsh", ["-zsh"]),
    (4242, 1, None, "node", ["node", "server.js"]),
    (4243, 50, "ttys001", "vite", ["vite", "--port", "5173"]),
    (4244, 1, None, "node", ["node", "/Users/dev/.vscode/extensions/tsserver.js"]),
]
MEMORY_MB = {1: 20, 50: 5, 4242: 300, 4243: 150, 4244: 80}
SOCKETS = [
    (4242, ("127.0.0.1", 3000), (), "LISTEN"),
    (4242, ("127.0.0.1", 3000), ("127.0.0.1", 50001), "ESTABLISHED"),
    (4243, ("::1", 5173), (), "LISTEN"),
]


class FakeSystem:
    """Probes and signal delivery backed by in-memory tables."""

    def __init__(self, pressure=50, rows=None):
        self.pressure = pressure
        self.rows = list(PROCESS_ROWS if rows is None else rows)
        self.signals: list[tuple[int, int]] = []
        self.fail_processes = False

    def process_probe(self):
        if self.fail_processes:
            raise ProbeError("ps unavailable")
        return list(self.rows), dict(MEMORY_MB)

    def memory_probe(self):
        return MemoryCounters(
            active_pages=self.pressure * TOTAL_PAGES // 100,
            wired_pages=0,
            compressed_pages=0,
            page_size=PAGE,
            total_bytes=TOTAL_PAGES * PAGE,
        )

    def socket_probe(self, pids=None):
        return list(SOCKETS)

    def alive(self, pid):
        return any(row[0] == pid for row in self.rows)

    def name_of(self, pid):
        for row in self.rows:
            if row[0] == pid:
                return row[3]
        return None

    def send_signal(self, pid, sig):
        self.signals.append((pid, sig))
        if not self.alive(pid):
            raise ProcessLookupError(3, "No such process")
        self.rows = [row for row in self.rows if row[0] != pid]


@pytest.fixture
def config(tmp_path):
    return DevmonConfig(state_dir=tmp_path / "state", cache_targets=[])


def make_service(config, system, notes=None):
    ledger = OrphanLedger(config.ledger_path)
    executor = KillExecutor(
        ledger,
        config.protected,
        send_signal=system.send_signal,
        is_alive=system.alive,
        name_of=system.name_of,
        sleep=lambda s: None,
    )
    kwargs = {}
    if notes is not None:
        kwargs["notifier"] = lambda title, msg: notes.append((title, msg))
    return DevmonService(
        config,
        ledger=ledger,
        executor=executor,
        reclaimer=CacheReclaimer([]),
        process_probe=system.process_probe,
        memory_probe=system.memory_probe,
        socket_probe=system.socket_probe,
        clock=lambda: NOW,
        **kwargs,
    )


class TestRunCycle:
    """Tests for the monitoring cycle."""

    def test_high_pressure_kills_idle_orphan(self, config):
        """Test an orphan idle 650s is killed at 85% pressure."""
        system = FakeSystem(pressure=85)
        service = make_service(config, system, notes=[])
        service.ledger.observe(4242, NOW - 650)

        snapshot = service.run_cycle()

        assert snapshot.pressure.tier is PressureTier.CRITICAL
        assert snapshot.idle_threshold_seconds == 600
        assert snapshot.killed == [4242]
        assert system.signals == [(4242, signal.SIGTERM)]
        assert 4242 not in service.ledger.load()

    def test_low_pressure_spares_orphan(self, config):
        """Test the same orphan survives at 50% pressure."""
        system = FakeSystem(pressure=50)
        service = make_service(config, system)
        service.ledger.observe(4242, NOW - 650)

        snapshot = service.run_cycle()

        assert snapshot.idle_threshold_seconds == 1800
        assert snapshot.killed == []
        assert system.signals == []
        assert service.ledger.load() == {4242: NOW - 650}

    def test_paused_tracks_but_never_kills(self, config):
        """Test a paused service keeps the ledger current without signalling."""
        system = FakeSystem(pressure=95)
        service = make_service(config, system)
        service.ledger.observe(4242, NOW - 5000)
        service.ledger.observe(9999, NOW - 5000)
        assert service.pause().ok

        snapshot = service.run_cycle()

        assert snapshot.paused
        assert snapshot.killed == []
        assert system.signals == []
        assert service.ledger.load() == {4242: NOW - 5000}

        assert service.resume().ok
        assert service.run_cycle().killed == [4242]

    def test_new_orphan_is_tracked_not_killed(self, config):
        """Test a newly seen orphan starts at age 0."""
        system = FakeSystem(pressure=95)
        service = make_service(config, system)

        snapshot = service.run_cycle()

        orphan = next(p for p in snapshot.processes if p.pid == 4242)
        assert orphan.orphan_age_seconds == 0
        assert snapshot.killed == []
        assert service.ledger.load() == {4242: NOW}

    def test_records_are_annotated(self, config):
        """Test classification, ports, connections and memory groups in a snapshot."""
        snapshot = make_service(config, FakeSystem()).run_cycle()

        by_pid = {p.pid: p for p in snapshot.processes}
        assert set(by_pid) == {4242, 4243}
        assert by_pid[4242].is_orphan
        assert by_pid[4242].listening_port == 3000
        assert by_pid[4242].connection_count == 1
        assert not by_pid[4243].is_orphan
        assert by_pid[4243].orphan_age_seconds is None
        assert [p.port for p in snapshot.ports] == [3000, 5173]
        assert snapshot.ports[1].process_name == "vite"
        assert snapshot.memory_groups[0].name == "node"
        assert snapshot.memory_groups[0].total_mb == 380

    def test_probe_failure_skips_cycle(self, config):
        """Test a failed process probe returns None and leaves the ledger alone."""
        system = FakeSystem()
        service = make_service(config, system)
        service.ledger.observe(4242, NOW - 10)
        system.fail_processes = True

        assert service.run_cycle() is None
        assert service.ledger.load() == {4242: NOW - 10}

    def test_empty_process_table_skips_cycle(self, config):
        """Test an empty process table is treated as a probe failure."""
        assert make_service(config, FakeSystem(rows=[])).run_cycle() is None

    def test_protected_orphan_never_signalled(self, config):
        """Test a protected process matching the dev pattern is not killed."""
        config.protected = config.protected + ["node"]
        system = FakeSystem(pressure=95)
        service = make_service(config, system)
        service.ledger.observe(4242, NOW - 5000)

        assert service.run_cycle().killed == []
        assert system.signals == []

    def test_alarm_notifies_once(self, config):
        """Test crossing the emergency threshold notifies once per episode."""
        notes = []
        system = FakeSystem(pressure=85)
        service = make_service(config, system, notes=notes)

        service.run_cycle()
        service.run_cycle()
        assert len(notes) == 1

        system.pressure = 50
        service.run_cycle()
        system.pressure = 90
        service.run_cycle()
        assert len(notes) == 2

    def test_alarm_latch_shared_across_runs(self, config):
        """Test separate one-shot runs share the alarm latch through the state file."""
        notes = []
        system = FakeSystem(pressure=85)

        for _ in range(3):
            make_service(config, system, notes=notes).run_cycle()
        assert len(notes) == 1

        system.pressure = 50
        make_service(config, system, notes=notes).run_cycle()
        system.pressure = 90
        make_service(config, system, notes=notes).run_cycle()
        assert len(notes) == 2

    def test_alarm_latch_keeps_pause_flag(self, config):
        """Test latching the alarm does not clear a persisted pause."""
        system = FakeSystem(pressure=95)
        service = make_service(config, system, notes=[])
        service.pause()

        service.run_cycle()

        assert service.is_paused()
        assert system.signals == []


class TestOperations:
    """Tests for on-demand operations."""

    def test_status_does_not_touch_ledger(self, config):
        """Test status reports ages without writing the ledger."""
        service = make_service(config, FakeSystem())

        snapshot = service.status()

        assert snapshot.orphans[0].orphan_age_seconds == 0
        assert not service.ledger.path.exists()
        assert service.last_snapshot is snapshot

    def test_status_raises_on_probe_failure(self, config):
        """Test status surfaces probe errors to the caller."""
        system = FakeSystem()
        system.fail_processes = True

        with pytest.raises(ProbeError):
            make_service(config, system).status()

    def test_kill_all_orphans(self, config):
        """Test every orphan is signalled in one batch."""
        system = FakeSystem()
        service = make_service(config, system)

        batch = service.kill_all_orphans()

        assert batch.ok
        assert batch.killed == [4242]
        assert system.signals == [(4242, signal.SIGTERM)]

    def test_kill_all_orphans_fails_without_process_list(self, config):
        """Test an unreadable process table is reported as a failure."""
        system = FakeSystem()
        system.fail_processes = True

        batch = make_service(config, system).kill_all_orphans()

        assert not batch.ok
        assert batch.results == []
        assert "ps unavailable" in batch.error
        assert "ps unavailable" in batch.reason
        assert system.signals == []

    def test_kill_group(self, config):
        """Test every process sharing a name is signalled in one batch."""
        system = FakeSystem()
        service = make_service(config, system)

        batch = service.kill_group("node")

        assert batch.ok
        assert sorted(batch.killed) == [4242, 4244]
        assert sorted(system.signals) == [(4242, signal.SIGTERM), (4244, signal.SIGTERM)]

    def test_kill_group_refuses_protected_name(self, config):
        """Test a group with a protected name is never signalled."""
        system = FakeSystem(rows=[*PROCESS_ROWS, (600, 1, None, "Finder", ["Finder"])])

        batch = make_service(config, system).kill_group("Finder")

        assert not batch.ok
        assert batch.killed == []
        assert system.signals == []

    def test_kill_group_unknown_name(self, config):
        """Test a name with no running processes is reported as a failure."""
        system = FakeSystem()

        batch = make_service(config, system).kill_group("webpack")

        assert not batch.ok
        assert "webpack" in batch.error
        assert system.signals == []

    def test_kill_single_pid(self, config):
        """Test kill terminates the requested pid."""
        system = FakeSystem()
        result = make_service(config, system).kill(4243)

        assert result.ok
        assert not system.alive(4243)

    def test_pause_is_persisted(self, config):
        """Test pause survives a new service instance."""
        make_service(config, FakeSystem()).pause()
        assert make_service(config, FakeSystem()).is_paused()

    def test_clean_with_no_targets(self, config):
        """Test clean returns an empty report when nothing is configured."""
        report = make_service(config, FakeSystem()).clean(dry_run=True)
        assert report.targets == []
        assert report.ok
