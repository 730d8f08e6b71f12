"""devmon - Textual dashboard."""

from queue import Empty, Queue

from rich.text import Text
from textual.app import App, ComposeResult
from textual.containers import Container
from textual.widgets import DataTable, Footer, Static

from devmon.formatting import format_age, format_mb, truncate
from devmon.models import CycleSnapshot, MemoryGroup, PortInfo, PressureTier, ProcessRecord
from devmon.monitor import MonitorWorker
from devmon.service import DevmonService

OLD_ORPHAN_SECONDS = 1200

TIER_COLORS = {
    PressureTier.OK: "green",
    PressureTier.WARN: "yellow",
    PressureTier.CRITICAL: "red",
}


def status_marker(proc: ProcessRecord) -> Text:
    """Green for attached, yellow for a recent orphan, red for an old one."""
    if not proc.is_orphan:
        return Text("●", style="green")
    if (proc.orphan_age_seconds or 0) > OLD_ORPHAN_SECONDS:
        return Text("●", style="red")
    return Text("●", style="yellow")


class PressureHeader(Static):
    """Header widget showing memory pressure, swap and monitor state."""

    DEFAULT_CSS = """
    PressureHeader {
        height: auto;
        min-height: 4;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize PressureHeader."""
        super().__init__("Loading memory info...", *args, **kwargs)
        self._snapshot: CycleSnapshot | None = None

    def update_snapshot(self, snapshot: CycleSnapshot) -> None:
        """Update the header from a cycle snapshot."""
        self._snapshot = snapshot
        self.update(self.render_text())

    def render_text(self) -> str:
        """Markup for the current snapshot."""
        snapshot = self._snapshot
        if snapshot is None:
            return "Loading memory info..."

        pressure = snapshot.pressure
        color = TIER_COLORS[pressure.tier]
        bar_len = min(20, pressure.percent // 5)
        bar = f"[{color}]█[/{color}]" * bar_len + "[dim]░[/dim]" * (20 - bar_len)
        state = "[yellow]PAUSED[/yellow]" if snapshot.paused else "[green]active[/green]"
        return (
            f"Mem\\[{bar}] {pressure.percent:3d}% [{color}]{pressure.tier.name}[/{color}]"
            f"   Swap: {format_mb(pressure.swap_used_mb)}\n"
            f"Orphans: {len(snapshot.orphans)}   Idle limit: {format_age(snapshot.idle_threshold_seconds)}"
            f"   Monitor: {state}"
        )


class ProcessTable(Container):
    """Container for the dev process table."""

    DEFAULT_CSS = """
    ProcessTable {
        height: 2fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize ProcessTable."""
        super().__init__(*args, **kwargs)
        self._row_pids: list[int] = []

    @property
    def pids(self) -> list[int]:
        """Pids in display order."""
        return list(self._row_pids)

    def compose(self) -> ComposeResult:
        """Compose the process table."""
        yield DataTable(id="process-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#process-table", DataTable)
        table.cursor_type = "row"

        table.add_column("", key="status", width=2)
        table.add_column("PID", key="pid", width=8)
        table.add_column("NAME", key="name", width=14)
        table.add_column("MEM", key="mem", width=9)
        table.add_column("AGE", key="age", width=7)
        table.add_column("PORT", key="port", width=6)
        table.add_column("CONN", key="conn", width=5)
        table.add_column("Command", key="command")

    def selected_pid(self) -> int | None:
        """Pid under the cursor, if any."""
        table = self.query_one("#process-table", DataTable)
        row = table.cursor_row
        if 0 <= row < len(self._row_pids):
            return self._row_pids[row]
        return None

    def update_processes(self, processes: list[ProcessRecord]) -> None:
        """Replace the rows, keeping the cursor on the same pid when it survives."""
        table = self.query_one("#process-table", DataTable)
        selected = self.selected_pid()

        table.clear()
        self._row_pids = []
        for proc in processes:
            table.add_row(
                status_marker(proc),
                str(proc.pid),
                Text(proc.command_name[:14]),
                format_mb(proc.resident_memory_mb),
                format_age(proc.orphan_age_seconds),
                str(proc.listening_port or ""),
                str(proc.connection_count) if proc.listening_port else "",
                Text(truncate(proc.full_command_line)),
                key=str(proc.pid),
            )
            self._row_pids.append(proc.pid)

        if selected in self._row_pids:
            table.move_cursor(row=self._row_pids.index(selected))


class PortTable(Container):
    """Container for the listening port table."""

    DEFAULT_CSS = """
    PortTable {
        height: 1fr;
        border: solid $secondary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize PortTable."""
        super().__init__(*args, **kwargs)
        self._ports: list[int] = []

    @property
    def ports(self) -> list[int]:
        """Ports in display order."""
        return list(self._ports)

    def compose(self) -> ComposeResult:
        """Compose the port table."""
        yield DataTable(id="port-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#port-table", DataTable)
        table.add_column("PORT", key="port", width=7)
        table.add_column("PID", key="pid", width=8)
        table.add_column("PROCESS", key="process", width=20)
        table.add_column("CONN", key="conn", width=5)

    def update_ports(self, ports: list[PortInfo]) -> None:
        """Replace the port rows."""
        table = self.query_one("#port-table", DataTable)
        table.clear()
        self._ports = []
        for info in ports:
            table.add_row(
                str(info.port),
                str(info.pid),
                Text(info.process_name[:20]),
                str(info.connection_count),
                key=str(info.port),
            )
            self._ports.append(info.port)


class MemoryTable(Container):
    """Container for the top-memory table, one row per command name."""

    DEFAULT_CSS = """
    MemoryTable {
        height: 1fr;
        border: solid $accent;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize MemoryTable."""
        super().__init__(*args, **kwargs)
        self._names: list[str] = []

    
    def groups(self) -> list[str]:
        """Group names in display order."""
        return list(self._names)

    def compose(self) -> ComposeResult:
        """Compose the memory table."""
        yield DataTable(id="memory-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#memory-table", DataTable)
        table.cursor_type = "row"
        table.add_column("NAME", key="name", width=20)
        table.add_column("MEM", key="mem", width=9)
        table.add_column("PROCS", key="count", width=6)

    def selected_group(self) -> str | None:
        """Group name under the cursor, if any."""
        row = self.query_one("#memory-table", DataTable).cursor_row
        if 0 <= row < len(self._names):
            return self._names[row]
        return None

    def update_groups(self, groups: list[MemoryGroup]) -> None:
        """Replace the rows, keeping the cursor on the same name when it survives."""
        table = self.query_one("#memory-table", DataTable)
        selected = self.selected_group()

        table.clear()
        self._names = []
        for group in groups:
            table.add_row(
                Text(group.name[:20]),
                format_mb(group.total_mb),
                str(group.process_count),
                key=group.name,
            )
            self._names.append(group.name)

        if selected in self._names:
            table.move_cursor(row=self._names.index(selected))


class DevmonApp(App):
    """Interactive devmon dashboard."""

    TITLE = "devmon"
    SUB_TITLE = "Orphaned dev process monitor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #pressure-header {
        dock: top;
        height: auto;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("k", "kill", "Kill"),
        ("a", "kill_orphans", "Kill orphans"),
        ("g", "kill_group", "Kill group"),
        ("p", "toggle_pause", "Pause/Resume"),
        ("r", "refresh", "Refresh"),
    ]

    def __init__(self, service: DevmonService, poll_rate: float = 5.0) -> None:
        """Initialize the DevmonApp."""
        super().__init__()
        self._service = service
        self._update_queue: Queue[CycleSnapshot] = Queue()
        # The dashboard only displays; automatic kills belong to the scheduled monitor
        self._monitor = MonitorWorker(service.status, self._update_queue, poll_rate=poll_rate)
        self._snapshot: CycleSnapshot | None = None
        self._last_tier: PressureTier | None = None

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield PressureHeader(id="pressure-header")
        yield ProcessTable()
        yield PortTable()
        yield MemoryTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start the monitor worker when the app is mounted."""
        self._monitor.start()
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Drain the queue and render the newest snapshot."""
        snapshot = None
        while True:
            try:
                snapshot = self._update_queue.get_nowait()
            except Empty:
                break

        if snapshot is not None:
            self.show_snapshot(snapshot)

    def show_snapshot(self, snapshot: CycleSnapshot) -> None:
        """Render a snapshot into every widget."""
        self._snapshot = snapshot
        self.query_one("#pressure-header", PressureHeader).update_snapshot(snapshot)
        self.query_one(ProcessTable).update_processes(snapshot.processes)
        self.query_one(PortTable).update_ports(snapshot.ports)
        self.query_one(MemoryTable).update_groups(snapshot.memory_groups)

        tier = snapshot.pressure.tier
        if tier is PressureTier.CRITICAL and self._last_tier is not PressureTier.CRITICAL:
            self.notify(
                f"High memory pressure: {snapshot.pressure.percent}%. "
                f"{len(snapshot.orphans)} orphaned dev process(es).",
                title="devmon",
                severity="warning",
            )
        self._last_tier = tier

    def action_kill(self) -> None:
        """Kill the selected process off the UI thread."""
        pid = self.query_one(ProcessTable).selected_pid()
        if pid is None:
            return
        self.notify(f"Killing {pid}...")
        self.run_worker(lambda: self._kill(pid), thread=True, exclusive=False)

    def _kill(self, pid: int) -> None:
        result = self._service.kill(pid)
        message = f"Killed {pid}" if result.ok else f"Kill {pid} failed: {result.reason}"
        self.call_from_thread(self.notify, message)
        self._monitor.refresh()

    def action_kill_orphans(self) -> None:
        """Kill every orphan in one batch off the UI thread."""
        self.notify("Killing orphaned processes...")
        self.run_worker(self._kill_orphans, thread=True, exclusive=False)

    def _kill_orphans(self) -> None:
        batch = self._service.kill_all_orphans()
        message = f"Killed {len(batch.killed)} orphan(s)"
        if not batch.ok:
            message += f"; failures: {batch.reason}"
        self.call_from_thread(self.notify, message)
        self._monitor.refresh()

    def action_kill_group(self) -> None:
        """Kill every process in the selected memory group off the UI thread."""
        name = self.query_one(MemoryTable).selected_group()
        if name is None:
            return
        self.notify(f"Killing all {name} processes...")
        self.run_worker(lambda: self._kill_group(name), thread=True, exclusive=False)

    def _kill_group(self, name: str) -> None:
        batch = self._service.kill_group(name)
        message = f"Killed {len(batch.killed)} {name} process(es)"
        if not batch.ok:
            message += f"; failures: {batch.reason}"
        self.call_from_thread(self.notify, message)
        self._monitor.refresh()

    def action_toggle_pause(self) -> None:
        """Toggle the persisted pause flag."""
        if self._service.is_paused():
            result = self._service.resume()
            label = "Monitoring resumed"
        else:
            result = self._service.pause()
            label = "Monitoring paused"
        self.notify(label if result.ok else result.reason)
        self._monitor.refresh()

    def action_refresh(self) -> None:
        """Collect a new snapshot now."""
        self._monitor.refresh()

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._monitor.stop()
        self.exit()
