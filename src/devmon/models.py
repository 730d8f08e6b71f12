"""Data models for devmon."""

from dataclasses import dataclass, field
from enum import Enum


class PressureTier(Enum):
    """Memory pressure buckets."""

    OK = "ok"
    WARN = "warn"
    CRITICAL = "critical"


@dataclass(slots=True, frozen=True)
class ProcessRecord:
    """Immutable view of one dev process for a single cycle."""

    pid: int
    parent_pid: int
    has_controlling_terminal: bool
    command_name: str  # basename of the executable
    full_command_line: str
    is_dev_process: bool
    is_orphan: bool
    resident_memory_mb: int
    listening_port: int | None = None
    connection_count: int = 0
    orphan_age_seconds: int | None = None


@dataclass(slots=True, frozen=True)
class OrphanEntry:
    """A persisted ledger row."""

    pid: int
    first_seen: int  # epoch seconds

    def age(self, now: int) -> int:
        """Seconds since the pid was first seen orphaned."""
        return max(0, now - self.first_seen)


@dataclass(slots=True, frozen=True)
class MemoryPressureSample:
    """Memory pressure reading for one cycle."""

    percent: int  # 0 - 100
    swap_used_mb: int
    tier: PressureTier


@dataclass(slots=True, frozen=True)
class PortInfo:
    """A listening dev port."""

    port: int
    pid: int
    process_name: str
    connection_count: int


@dataclass(slots=True, frozen=True)
class MemoryGroup:
    """Resident memory summed over every process sharing a command name."""

    name: str
    total_mb: int
    process_count: int
    pids: tuple[int, ...]


@dataclass(slots=True)
class CycleSnapshot:
    """Everything a front end needs to render one completed cycle."""

    timestamp: int
    pressure: MemoryPressureSample
    idle_threshold_seconds: int
    processes: list[ProcessRecord]
    ports: list[PortInfo]
    paused: bool
    memory_groups: list[MemoryGroup] = field(default_factory=list)
    killed: list[int] = field(default_factory=list)

    @property
    def orphans(self) -> list[ProcessRecord]:
        """Dev processes currently classified as orphaned."""
        return [proc for proc in self.processes if proc.is_orphan]


@dataclass(slots=True, frozen=True)
class OperationResult:
    """Outcome of a front-end operation that has no richer result type."""

    ok: bool
    reason: str = ""
