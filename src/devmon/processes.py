"""Classification of raw process rows into dev processes and orphans."""

import logging
import os
import re
from collections.abc import Iterable, Mapping, Sequence

from devmon.errors import MalformedRowError
from devmon.models import MemoryGroup, ProcessRecord

logger = logging.getLogger(__name__)

# (pid, parent_pid, terminal-or-None, command_name, full_args)
RawRow = Sequence

NO_TERMINAL = {"", "?", "??", "-"}
MIN_FIELDS = 4
ORPHAN_PARENT_PID = 1


def has_terminal(tty) -> bool:
    """Whether a ps/psutil terminal value names a controlling terminal."""
    if tty is None:
        return False
    return str(tty).strip() not in NO_TERMINAL


def parse_row(row: RawRow) -> tuple[int, int, bool, str, str]:
    """
    Normalize a raw row to ``(pid, ppid, has_tty, command_name, command_line)``.

    Raises:
        MalformedRowError: If the row is too short or pid/ppid are not integers.
    """
    if len(row) < MIN_FIELDS:
        raise MalformedRowError(f"expected at least {MIN_FIELDS} fields, got {len(row)}")
    try:
        pid = int(row[0])
        ppid = int(row[1])
    except (TypeError, ValueError) as e:
        raise MalformedRowError(f"bad pid/ppid in {row!r}") from e

    command_name = os.path.basename(str(row[3] or "").rstrip("/"))
    args = row[4] if len(row) > 4 else None
    if isinstance(args, (list, tuple)):
        args = " ".join(str(part) for part in args)
    command_line = str(args).strip() if args else ""
    return pid, ppid, has_terminal(row[2]), command_name, command_line or command_name


class ProcessClassifier:
    """
    Decides which rows are dev processes and which of those are orphaned.

    A dev process is one whose command basename matches ``pattern``
    (case-insensitive). Any row whose command line contains a whitelist
    substring is dropped before that test.
    """

    def __init__(self, pattern: str, whitelist: Iterable[str] = ()) -> None:
        self._pattern = re.compile(pattern, re.IGNORECASE)
        self._whitelist = [item for item in whitelist if item]

    def is_dev_command(self, command_name: str) -> bool:
        """Pattern test against the command's basename."""
        return bool(self._pattern.search(os.path.basename(command_name)))

    def is_whitelisted(self, command_line: str) -> bool:
        """Whether any whitelist substring occurs in the command line."""
        return any(item in command_line for item in self._whitelist)

    def classify(
        self,
        rows: Iterable[RawRow],
        memory_mb: Mapping[int, int] | None = None,
    ) -> list[ProcessRecord]:
        """
        Build records for every dev process in a process-table snapshot.

        Args:
            rows: Raw process rows; malformed ones are skipped.
            memory_mb: Optional pid -> resident MB map.

        Returns:
            Dev process records, largest resident memory first.
        """
        memory_mb = memory_mb or {}
        parsed = []
        for row in rows:
            try:
                parsed.append(parse_row(row))
            except MalformedRowError as e:
                logger.debug("Skipping process row: %s", e)

        all_pids = {pid for pid, *_ in parsed}
        records = []
        for pid, ppid, tty, name, command_line in parsed:
            if self.is_whitelisted(command_line) or not self.is_dev_command(name):
                continue
            parent_absent = ppid not in all_pids
            orphan = not tty and (ppid == ORPHAN_PARENT_PID or parent_absent)
            records.append(
                ProcessRecord(
                    pid=pid,
                    parent_pid=ppid,
                    has_controlling_terminal=tty,
                    command_name=name,
                    full_command_line=command_line,
                    is_dev_process=True,
                    is_orphan=orphan,
                    resident_memory_mb=int(memory_mb.get(pid, 0)),
                )
            )

        return sorted(records, key=lambda r: (-r.resident_memory_mb, r.pid))


def summarize_memory(
    rows: Iterable[RawRow],
    memory_mb: Mapping[int, int],
    min_mb: int = 30,
) -> list[MemoryGroup]:
    """Aggregate resident memory per command name across all processes."""
    totals: dict[str, int] = {}
    pids: dict[str, list[int]] = {}
    for row in rows:
        try:
            pid, _, _, name, _ = parse_row(row)
        except MalformedRowError:
            continue
        mb = int(memory_mb.get(pid, 0))
        if mb <= 0:
            continue
        totals[name] = totals.get(name, 0) + mb
        pids.setdefault(name, []).append(pid)

    groups = [
        MemoryGroup(name=name, total_mb=total, process_count=len(pids[name]), pids=tuple(pids[name]))
        for name, total in totals.items()
        if total >= min_mb
    ]
    return sorted(groups, key=lambda g: (-g.total_mb, g.name))
