"""
Durable pid -> first-seen table for orphaned processes.

The ledger is a text file with one ``<pid> <first_seen_epoch_seconds>``
line per tracked orphan. It is shared by the scheduled monitor, the CLI
and the TUI, so every mutation runs under an advisory ``flock`` on a
sidecar lock file, re-reads the table, and rewrites the whole file
through a temp file and ``os.replace``. Readers therefore never see a
half-written line; concurrent writers resolve as last-write-wins.
"""

import fcntl
import logging
import os
import tempfile
from collections.abc import Callable, Iterable
from contextlib import contextmanager
from pathlib import Path

from devmon.errors import LedgerIOError
from devmon.models import OrphanEntry

logger = logging.getLogger(__name__)


class OrphanLedger:
    """Owner of the on-disk orphan ledger."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()
        self._lock_path = self._path.with_name(self._path.name + ".lock")

    @property
    def path(self) -> Path:
        """Ledger file location."""
        return self._path

    def load(self) -> dict[int, int]:
        """
        Read the table. A missing or unreadable file is an empty table.

        Lines that do not parse as two integers are skipped.
        """
        try:
            return self._read()
        except LedgerIOError as e:
            logger.warning("%s; treating ledger as empty", e)
            return {}

    def entries(self) -> list[OrphanEntry]:
        """All entries ordered by pid."""
        return [OrphanEntry(pid, ts) for pid, ts in sorted(self.load().items())]

    def age(self, pid: int, now: int) -> int | None:
        """Age of a tracked pid, or None when it is not in the ledger."""
        first_seen = self.load().get(pid)
        if first_seen is None:
            return None
        return max(0, now - first_seen)

    def observe(self, pid: int, now: int) -> int:
        """Record ``pid`` if new and return its age in seconds."""
        return self.track_many([pid], now, reconcile=False)[pid]

    def track(self, current_orphan_pids: Iterable[int], now: int) -> dict[int, int]:
        """Reconcile against the current orphan set and observe each of its pids."""
        return self.track_many(current_orphan_pids, now, reconcile=True)

    def track_many(
        self, pids: Iterable[int], now: int, reconcile: bool = False
    ) -> dict[int, int]:
        """Observe several pids in a single locked rewrite.

        Args:
            pids: Pids to observe.
            now: Current epoch seconds.
            reconcile: Also drop entries whose pid is not in ``pids``.

        Returns:
            pid -> age for every observed pid.
        """
        wanted = set(pids)
        ages: dict[int, int] = {}

        def apply(table: dict[int, int]) -> bool:
            changed = False
            if reconcile:
                for stale in set(table) - wanted:
                    del table[stale]
                    changed = True
            for pid in wanted:
                if pid not in table:
                    table[pid] = now
                    changed = True
                ages[pid] = max(0, now - table[pid])
            return changed

        self._mutate(apply)
        return ages

    def forget(self, pid: int) -> None:
        """Drop a pid (killed or no longer orphaned)."""
        self.forget_many([pid])

    def forget_many(self, pids: Iterable[int]) -> None:
        """Drop several pids in one rewrite."""
        doomed = set(pids)
        if not doomed:
            return

        def apply(table: dict[int, int]) -> bool:
            present = doomed & set(table)
            for pid in present:
                del table[pid]
            return bool(present)

        self._mutate(apply)

    def reconcile(self, current_orphan_pids: Iterable[int]) -> set[int]:
        """Drop every entry whose pid is not currently orphaned; return the dropped pids."""
        keep = set(current_orphan_pids)
        removed: set[int] = set()

        def apply(table: dict[int, int]) -> bool:
            removed.update(set(table) - keep)
            for pid in removed:
                del table[pid]
            return bool(removed)

        self._mutate(apply)
        return removed

    def _mutate(self, apply: Callable[[dict[int, int]], bool]) -> None:
        """Lock, re-read, apply, and rewrite if anything changed."""
        with self._locked():
            table = self.load()
            if not apply(table):
                return
            try:
                self._write(table)
            except LedgerIOError as e:
                logger.error("%s; ledger update skipped", e)

    @contextmanager
    def _locked(self):
        """Hold an exclusive advisory lock for the duration of a mutation."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            lock_file = open(self._lock_path, "a")
        except OSError as e:
            logger.warning("Cannot open ledger lock %s: %s; continuing unlocked", self._lock_path, e)
            yield
            return

        # Closing the file releases the lock
        with lock_file:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            except OSError as e:
                logger.warning("Cannot lock %s: %s; continuing unlocked", self._lock_path, e)
            yield

    def _read(self) -> dict[int, int]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except (OSError, UnicodeDecodeError) as e:
            raise LedgerIOError(f"cannot read ledger {self._path}: {e}") from e

        table: dict[int, int] = {}
        for line in text.splitlines():
            parts = line.split()
            if len(parts) < 2:
                continue
            try:
                table[int(parts[0])] = int(parts[1])
            except ValueError:
                logger.debug("Skipping malformed ledger line %r", line)
        return table

    def _write(self, table: dict[int, int]) -> None:
        content = "".join(f"{pid} {ts}\n" for pid, ts in sorted(table.items()))
        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=self._path.name + ".", suffix=".tmp", dir=self._path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
        except OSError as e:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
            raise LedgerIOError(f"cannot write ledger {self._path}: {e}") from e
