"""
Age-based pruning of development tool caches.

Each target is a root directory, a glob selecting the entries under it,
and a maximum age in days. Entries whose own mtime is older than the
policy are candidates. Preview and real runs share ``find_candidates``,
so a dry run reports exactly what a real run on the same tree would
delete. Nothing outside a target's root is ever removed.
"""

import logging
import os
import shutil
import stat
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

from devmon.config import CacheTargetConfig
from devmon.errors import CacheRootUnavailable

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


@dataclass(slots=True, frozen=True)
class CacheTarget:
    """A cache root with its retention policy."""

    name: str
    root: Path
    max_age_days: int
    glob: str = "*"

    @classmethod
    def from_config(cls, target: CacheTargetConfig) -> "CacheTarget":
        """Build a target from its config entry, expanding ``~``."""
        return cls(
            name=target.name,
            root=target.path.expanduser(),
            max_age_days=target.max_age_days,
            glob=target.glob,
        )


@dataclass(slots=True, frozen=True)
class CacheCandidate:
    """An entry old enough to delete."""

    path: Path
    age_days: float
    size_bytes: int


@dataclass(slots=True)
class TargetReport:
    """Result for one target."""

    target: CacheTarget
    candidates: list[CacheCandidate] = field(default_factory=list)
    reclaimed_bytes: int = 0
    skipped_entries: int = 0
    error: str | None = None


@dataclass(slots=True)
class CleanReport:
    """Aggregate result over every target."""

    dry_run: bool
    targets: list[TargetReport] = field(default_factory=list)

    @property
    def candidates(self) -> list[CacheCandidate]:
        """Every candidate across all targets."""
        return [c for report in self.targets for c in report.candidates]

    @property
    def reclaimed_bytes(self) -> int:
        """Bytes freed, or reclaimable when this was a dry run."""
        return sum(report.reclaimed_bytes for report in self.targets)

    @property
    def skipped_entries(self) -> int:
        """Entries that could not be inspected or removed."""
        return sum(report.skipped_entries for report in self.targets)

    @property
    def ok(self) -> bool:
        """True when no root was unavailable and nothing was skipped."""
        return all(r.error is None and r.skipped_entries == 0 for r in self.targets)


def entry_size(path: Path) -> int:
    """Total size of a file or directory tree, without following symlinks."""
    st = path.lstat()
    if not stat.S_ISDIR(st.st_mode):
        return st.st_size

    total = st.st_size
    stack = [path]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                for entry in it:
                    try:
                        if entry.is_dir(follow_symlinks=False):
                            stack.append(Path(entry.path))
                        total += entry.stat(follow_symlinks=False).st_size
                    except OSError:
                        continue
        except OSError:
            continue
    return total


def is_within(root: Path, path: Path) -> bool:
    """Whether ``path`` lies strictly inside ``root``, judged without following ``path`` itself."""
    try:
        resolved_root = root.resolve()
        resolved = path.parent.resolve() / path.name
    except OSError:
        return False
    return resolved != resolved_root and resolved_root in resolved.parents


class CacheReclaimer:
    """Finds and removes stale entries under the configured cache roots."""

    def __init__(
        self,
        targets: Iterable[CacheTarget],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._targets = list(targets)
        self._clock = clock

    @property
    def targets(self) -> list[CacheTarget]:
        """Configured targets."""
        return list(self._targets)

    def find_candidates(self, target: CacheTarget, now: float | None = None) -> TargetReport:
        """
        Select the deletion candidates for one target.

        Raises:
            CacheRootUnavailable: If the root is missing or not a readable directory.
        """
        now = self._clock() if now is None else now
        root = target.root
        if not root.is_dir():
            raise CacheRootUnavailable(f"{root} does not exist or is not a directory")
        if not os.access(root, os.R_OK | os.X_OK):
            raise CacheRootUnavailable(f"{root} is not readable")

        report = TargetReport(target=target)
        cutoff = target.max_age_days * SECONDS_PER_DAY
        try:
            entries = sorted(root.glob(target.glob))
        except OSError as e:
            raise CacheRootUnavailable(f"cannot list {root}: {e}") from e

        for path in entries:
            if not is_within(root, path):
                continue
            try:
                age = now - path.lstat().st_mtime
                if age <= cutoff:
                    continue
                size = entry_size(path)
            except OSError as e:
                logger.debug("Cannot inspect %s: %s", path, e)
                report.skipped_entries += 1
                continue
            report.candidates.append(CacheCandidate(path, age / SECONDS_PER_DAY, size))
        return report

    def clean(self, dry_run: bool = False) -> CleanReport:
        """
        Prune every target.

        Args:
            dry_run: Report candidates and reclaimable bytes without deleting.

        Returns:
            CleanReport covering all targets, including unavailable ones.
        """
        now = self._clock()
        result = CleanReport(dry_run=dry_run)
        for target in self._targets:
            try:
                report = self.find_candidates(target, now)
            except CacheRootUnavailable as e:
                logger.warning("Skipping cache %s: %s", target.name, e)
                result.targets.append(TargetReport(target=target, error=str(e)))
                continue

            if dry_run:
                report.reclaimed_bytes = sum(c.size_bytes for c in report.candidates)
            else:
                removed = 0
                for candidate in report.candidates:
                    if self._remove(target.root, candidate.path):
                        report.reclaimed_bytes += candidate.size_bytes
                        removed += 1
                    else:
                        report.skipped_entries += 1
                logger.info(
                    "Cache %s: removed %d entries, %d bytes",
                    target.name,
                    removed,
                    report.reclaimed_bytes,
                )
            result.targets.append(report)
        return result

    @staticmethod
    def _remove(root: Path, path: Path) -> bool:
        if not is_within(root, path):
            logger.error("Refusing to delete %s outside %s", path, root)
            return False
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
        except OSError as e:
            logger.warning("Cannot delete %s: %s", path, e)
            return False
        return True
