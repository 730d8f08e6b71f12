"""CLI entry point for devmon.

Usage:
    devmon status [--json]        # Memory pressure, dev processes and ports
    devmon kill PID               # Terminate one process (SIGTERM, then SIGKILL)
    devmon kill --all-orphans     # Terminate every orphaned dev process
    devmon kill --group NAME      # Terminate every process named NAME
    devmon clean [--dry-run]      # Prune stale dev caches
    devmon pause | resume         # Toggle automatic kills
    devmon monitor [--once]       # Run the monitoring loop (or a single cycle)
    devmon tui                    # Interactive dashboard
"""

import argparse
import dataclasses
import json
import sys
from enum import Enum
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from queue import Empty, Queue

from devmon.config import load_config
from devmon.errors import ProbeError
from devmon.formatting import format_age, format_mb, format_size
from devmon.killer import BatchKillResult
from devmon.log import setup_logging
from devmon.models import CycleSnapshot
from devmon.monitor import MonitorWorker
from devmon.service import DevmonService


def _version() -> str:
    try:
        return version("devmon")
    except PackageNotFoundError:
        return "unknown"


def _to_jsonable(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(item) for item in value]
    return value


def render_status(snapshot: CycleSnapshot) -> str:
    """Plain-text status report."""
    pressure = snapshot.pressure
    lines = [
        f"Memory pressure: {pressure.percent}% ({pressure.tier.name})   "
        f"Swap: {format_mb(pressure.swap_used_mb)}   "
        f"Idle limit: {format_age(snapshot.idle_threshold_seconds)}"
        + ("   [PAUSED]" if snapshot.paused else ""),
        "",
    ]
    if snapshot.processes:
        lines.append(f"{'PID':>7}  {'NAME':<14} {'MEM':>8}  {'ORPHAN':<8} {'PORT':>5} {'CONN':>4}")
        for proc in snapshot.processes:
            orphan = format_age(proc.orphan_age_seconds) if proc.is_orphan else "-"
            lines.append(
                f"{proc.pid:>7}  {proc.command_name[:14]:<14} {format_mb(proc.resident_memory_mb):>8}  "
                f"{orphan:<8} {proc.listening_port or '':>5} "
                f"{proc.connection_count if proc.listening_port else '':>4}"
            )
    else:
        lines.append("No dev processes running.")

    if snapshot.ports:
        lines.append("")
        lines.append("Listening ports:")
        for info in snapshot.ports:
            lines.append(
                f"  :{info.port:<6} {info.process_name} (pid {info.pid}, {info.connection_count} conn)"
            )

    if snapshot.memory_groups:
        lines.append("")
        lines.append("Top memory:")
        for group in snapshot.memory_groups:
            lines.append(
                f"  {group.name[:20]:<20} {format_mb(group.total_mb):>8}  ({group.process_count} proc)"
            )
    return "\n".join(lines)


def cmd_status(service: DevmonService, args) -> int:
    try:
        snapshot = service.status()
    except ProbeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if args.json:
        print(json.dumps(_to_jsonable(snapshot), indent=2))
    else:
        print(render_status(snapshot))
    return 0


def _print_batch(batch: BatchKillResult) -> int:
    if batch.error is not None:
        print(f"Error: {batch.error}", file=sys.stderr)
        return 1
    if not batch.results:
        print("No orphaned dev processes.")
        return 0
    for result in batch.results:
        status = "killed" if result.ok else f"failed ({result.reason})"
        print(f"{result.pid}: {status}{' [forced]' if result.forced else ''}")
    return 0 if batch.ok else 1


def cmd_kill(service: DevmonService, args) -> int:
    if args.all_orphans:
        return _print_batch(service.kill_all_orphans())
    if args.group:
        return _print_batch(service.kill_group(args.group))

    if args.pid is None:
        print("Error: give a PID, --all-orphans or --group NAME", file=sys.stderr)
        return 2
    result = service.kill(args.pid)
    if result.ok:
        print(f"{args.pid}: killed{' [forced]' if result.forced else ''}")
        return 0
    print(f"{args.pid}: failed ({result.reason})", file=sys.stderr)
    return 1


def cmd_clean(service: DevmonService, args) -> int:
    report = service.clean(dry_run=args.dry_run)
    verb = "Would free" if report.dry_run else "Freed"
    for target in report.targets:
        if target.error:
            print(f"[{target.target.name}] skipped: {target.error}")
            continue
        print(
            f"[{target.target.name}] {len(target.candidates)} stale entr"
            f"{'y' if len(target.candidates) == 1 else 'ies'}, {verb.lower()} "
            f"{format_size(target.reclaimed_bytes)}"
        )
        if args.dry_run:
            for candidate in target.candidates:
                print(
                    f"    {candidate.path}  ({candidate.age_days:.0f}d, "
                    f"{format_size(candidate.size_bytes)})"
                )
    print(f"{verb} {format_size(report.reclaimed_bytes)} total")
    return 0 if report.skipped_entries == 0 else 1


def cmd_pause(service: DevmonService, args) -> int:
    result = service.pause() if args.command == "pause" else service.resume()
    if not result.ok:
        print(f"Error: {result.reason}", file=sys.stderr)
        return 1
    print("Monitoring paused." if args.command == "pause" else "Monitoring resumed.")
    return 0


def cmd_monitor(service: DevmonService, args) -> int:
    if args.once:
        snapshot = service.run_cycle()
        if snapshot is None:
            return 1
        if snapshot.killed:
            print(f"Killed: {', '.join(str(pid) for pid in snapshot.killed)}")
        return 0

    queue: Queue[CycleSnapshot] = Queue()
    worker = MonitorWorker(service.run_cycle, queue, poll_rate=args.interval)
    worker.start()
    try:
        while worker.is_running:
            try:
                snapshot = queue.get(timeout=1.0)
            except Empty:
                continue
            if snapshot.killed:
                print(f"Killed: {', '.join(str(pid) for pid in snapshot.killed)}")
    except KeyboardInterrupt:
        pass
    finally:
        worker.stop()
    return 0


def cmd_tui(service: DevmonService, args) -> int:
    from devmon.app import DevmonApp

    DevmonApp(service, poll_rate=args.interval).run()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devmon",
        description="Find and reap orphaned dev-server processes; prune stale dev caches",
    )
    parser.add_argument("--version", "-V", action="version", version=f"%(prog)s {_version()}")
    parser.add_argument("--config", help="Config file (default: $DEVMON_CONFIG or ~/.config/devmon/config.yaml)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log debug output to stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    status_parser = subparsers.add_parser("status", help="Show memory pressure and dev processes")
    status_parser.add_argument("--json", action="store_true", help="Emit JSON")
    status_parser.set_defaults(func=cmd_status)

    kill_parser = subparsers.add_parser("kill", help="Terminate a process or all orphans")
    kill_parser.add_argument("pid", nargs="?", type=int, help="Process ID")
    kill_parser.add_argument("--all-orphans", action="store_true", help="Kill every orphaned dev process")
    kill_parser.add_argument("--group", metavar="NAME", help="Kill every process with this command name")
    kill_parser.set_defaults(func=cmd_kill)

    clean_parser = subparsers.add_parser("clean", help="Prune stale dev caches")
    clean_parser.add_argument("--dry-run", action="store_true", help="Preview without deleting")
    clean_parser.set_defaults(func=cmd_clean)

    for name, text in (("pause", "Pause automatic kills"), ("resume", "Resume automatic kills")):
        subparsers.add_parser(name, help=text).set_defaults(func=cmd_pause)

    monitor_parser = subparsers.add_parser("monitor", help="Run the monitoring loop")
    monitor_parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    monitor_parser.add_argument("--interval", type=float, default=30.0, help="Seconds between cycles")
    monitor_parser.set_defaults(func=cmd_monitor)

    tui_parser = subparsers.add_parser("tui", help="Interactive dashboard")
    tui_parser.add_argument("--interval", type=float, default=5.0, help="Seconds between refreshes")
    tui_parser.set_defaults(func=cmd_tui)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    setup_logging(config, verbose=args.verbose)
    return args.func(DevmonService(config), args)


if __name__ == "__main__":
    sys.exit(main())
