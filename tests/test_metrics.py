"""Tests for memory pressure computation."""

import pytest

from devmon.errors import ProbeError
from devmon.metrics import (
    MemoryCounters,
    compute_pressure,
    parse_vm_stat,
    sample_pressure,
)
from devmon.models import PressureTier

GB = 1024**3
PAGE = 16384

VM_STAT_OUTPUT = """Mach Virtual Memory Statistics: (page size of 16384 bytes)
Pages free:                                5000.
Pages active:                            300000.
Pages inactive:                          290000.
Pages wired down:                        100000.
Pages occupied by compressor:             50000.
"Translation faults":                 123456789.
"""


def counters(active=0, wired=0, compressed=0, total=16 * GB, swap=0) -> MemoryCounters:
    return MemoryCounters(
        active_pages=active,
        wired_pages=wired,
        compressed_pages=compressed,
        page_size=PAGE,
        total_bytes=total,
        swap_used_bytes=swap,
    )


class TestComputePressure:
    """Tests for compute_pressure."""

    def test_half_memory_used(self):
        """Test active + wired + compressed pages over total."""
        pages_for_8gb = 8 * GB // PAGE
        result = compute_pressure(
            counters(active=pages_for_8gb // 2, wired=pages_for_8gb // 4, compressed=pages_for_8gb // 4)
        )
        assert result == 50

    def test_result_is_clamped(self):
        """Test over-reported counters cannot exceed 100."""
        assert compute_pressure(counters(active=10 * GB // PAGE, total=GB)) == 100

    def test_zero_total_is_probe_error(self):
        """Test an invalid total raises ProbeError."""
        with pytest.raises(ProbeError):
            compute_pressure(counters(total=0))

    def test_sample_includes_tier_and_swap(self):
        """Test sample_pressure derives tier and swap MB."""
        sample = sample_pressure(
            counters(active=int(16 * GB * 0.85) // PAGE, swap=512 * 1024 * 1024), 60, 80
        )
        assert sample.percent == 84
        assert sample.tier is PressureTier.CRITICAL
        assert sample.swap_used_mb == 512


class TestParsers:
    """Tests for vm_stat and swapusage parsing."""

    def test_parse_vm_stat(self):
        """Test page counts are keyed by label and the header is ignored."""
        pages = parse_vm_stat(VM_STAT_OUTPUT)

        assert pages["Pages active"] == 300000
        assert pages["Pages wired down"] == 100000
        assert pages["Pages occupied by compressor"] == 50000
        assert pages["Translation faults"] == 123456789
        assert not any(key.startswith("Mach") for key in pages)

    def test_parse_vm_stat_empty(self):
        """Test empty output parses to an empty mapping."""
        assert parse_vm_stat("") == {}
