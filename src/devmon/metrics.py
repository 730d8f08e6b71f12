"""Memory pressure computation from raw VM counters."""

import re
from dataclasses import dataclass

from devmon.errors import ProbeError
from devmon.models import MemoryPressureSample
from devmon.thresholds import classify_tier

_VM_STAT_LINE = re.compile(r'^"?([^:"]+)"?:\s+(\d+)\.?\s*$')


@dataclass(slots=True, frozen=True)
class MemoryCounters:
    """Raw memory counters as reported by the OS."""

    active_pages: int
    wired_pages: int
    compressed_pages: int
    page_size: int
    total_bytes: int
    swap_used_bytes: int = 0


def compute_pressure(counters: MemoryCounters) -> int:
    """
    Percentage of physical memory held by active, wired and compressed pages.

    Raises:
        ProbeError: If total physical memory is not positive.
    """
    if counters.total_bytes <= 0:
        raise ProbeError(f"invalid total memory: {counters.total_bytes}")
    used_pages = counters.active_pages + counters.wired_pages + counters.compressed_pages
    percent = used_pages * counters.page_size * 100 // counters.total_bytes
    return min(100, max(0, percent))


def sample_pressure(
    counters: MemoryCounters, warn_threshold: int, emergency_threshold: int
) -> MemoryPressureSample:
    """Build a pressure sample, including its tier, from raw counters."""
    percent = compute_pressure(counters)
    return MemoryPressureSample(
        percent=percent,
        swap_used_mb=max(0, counters.swap_used_bytes) // (1024 * 1024),
        tier=classify_tier(percent, warn_threshold, emergency_threshold),
    )


def parse_vm_stat(text: str) -> dict[str, int]:
    """
    Parse ``vm_stat`` output into ``{label: page_count}``.

    Lines without a numeric value (including the page-size header) are ignored.
    """
    pages: dict[str, int] = {}
    for line in text.splitlines():
        match = _VM_STAT_LINE.match(line.strip())
        if match:
            pages[match.group(1).strip()] = int(match.group(2))
    return pages
