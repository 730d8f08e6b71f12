"""OS queries via psutil, returned as plain rows and counters."""

import logging
import resource
import subprocess
import sys

import psutil

from devmon.errors import ProbeError
from devmon.metrics import MemoryCounters, parse_vm_stat

logger = logging.getLogger(__name__)

PROCESS_ATTRS = ["pid", "ppid", "terminal", "name", "cmdline", "memory_info"]


def read_process_table() -> tuple[list[tuple], dict[int, int]]:
    """
    Collect ``(pid, ppid, terminal, name, command_line)`` rows for every process.

    Uses psutil.process_iter() with oneshot() for efficiency. Processes that
    vanish or deny access mid-scan are skipped.

    Returns:
        The rows and a pid -> resident MB map.

    Raises:
        ProbeError: If the table could not be read or came back empty.
    """
    rows: list[tuple] = []
    memory_mb: dict[int, int] = {}

    try:
        procs = psutil.process_iter(attrs=PROCESS_ATTRS)
        for proc in procs:
            try:
                with proc.oneshot():
                    info = proc.info
                    cmdline = info.get("cmdline") or []
                    name = info.get("name") or ""
                    command_line = " ".join(cmdline) if cmdline else name

                    rows.append(
                        (info.get("pid", 0), info.get("ppid") or 0, info.get("terminal"), name, command_line)
                    )

                    mem_info = info.get("memory_info")
                    if mem_info:
                        memory_mb[info["pid"]] = mem_info.rss // (1024 * 1024)
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
    except psutil.Error as e:
        raise ProbeError(f"cannot read process table: {e}") from e

    if not rows:
        raise ProbeError("process table is empty")
    return rows, memory_mb


def _compressed_pages() -> int:
    """Pages held by the macOS compressor, from ``vm_stat``; 0 elsewhere."""
    if sys.platform != "darwin":
        return 0
    try:
        out = subprocess.run(
            ["vm_stat"], capture_output=True, text=True, timeout=5, check=True
        ).stdout
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("vm_stat unavailable: %s", e)
        return 0
    return parse_vm_stat(out).get("Pages occupied by compressor", 0)


def read_memory_counters() -> MemoryCounters:
    """
    Snapshot VM counters.

    On macOS active, wired and compressor pages are used directly. Other
    platforms have no wired/compressed split, so ``total - available`` is
    reported as active pages.

    Raises:
        ProbeError: If psutil cannot read memory statistics.
    """
    try:
        vm = psutil.virtual_memory()
        swap = psutil.swap_memory()
    except (psutil.Error, OSError) as e:
        raise ProbeError(f"cannot read memory counters: {e}") from e

    page_size = resource.getpagesize()
    if sys.platform == "darwin":
        active = getattr(vm, "active", 0) // page_size
        wired = getattr(vm, "wired", 0) // page_size
        compressed = _compressed_pages()
    else:
        active = (vm.total - vm.available) // page_size
        wired = 0
        compressed = 0

    return MemoryCounters(
        active_pages=active,
        wired_pages=wired,
        compressed_pages=compressed,
        page_size=page_size,
        total_bytes=vm.total,
        swap_used_bytes=swap.used,
    )


def read_socket_table(pids=None) -> list[tuple]:
    """
    Collect ``(pid, local_addr, remote_addr, status)`` rows for TCP sockets.

    The system-wide table needs elevated rights on some platforms; when it
    is denied, the per-process tables of ``pids`` are read instead.
    """
    try:
        return [
            (conn.pid, conn.laddr, conn.raddr, conn.status)
            for conn in psutil.net_connections(kind="tcp")
        ]
    except (psutil.Error, OSError) as e:
        logger.debug("System socket table unavailable (%s); falling back to per-process lookup", e)

    rows = []
    for pid in pids or ():
        try:
            for conn in psutil.Process(pid).net_connections(kind="tcp"):
                rows.append((pid, conn.laddr, conn.raddr, conn.status))
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return rows
