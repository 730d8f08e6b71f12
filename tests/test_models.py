"""Tests for devmon data models."""

import dataclasses

import pytest

from devmon.models import (
    CycleSnapshot,
    MemoryPressureSample,
    OrphanEntry,
    PressureTier,
    ProcessRecord,
)


def make_record(**overrides) -> ProcessRecord:
    fields = dict(
        pid=123,
        parent_pid=1,
        has_controlling_terminal=False,
        command_name="node",
        full_command_line="node server.js",
        is_dev_process=True,
        is_orphan=True,
        resident_memory_mb=256,
    )
    fields.update(overrides)
    return ProcessRecord(**fields)


def test_process_record_creation():
    """Test ProcessRecord dataclass creation and defaults."""
    record = make_record()

    assert record.pid == 123
    assert record.command_name == "node"
    assert record.is_orphan is True
    assert record.listening_port is None
    assert record.connection_count == 0
    assert record.orphan_age_seconds is None


def test_process_record_is_frozen():
    """Test that ProcessRecord is immutable (frozen)."""
    record = make_record()

    with pytest.raises(dataclasses.FrozenInstanceError):
        record.pid = 999


def test_process_record_uses_slots():
    """Test that ProcessRecord uses __slots__ for memory efficiency."""
    assert not hasattr(make_record(), "__dict__")


def test_process_record_annotation_via_replace():
    """Test annotations produce a new record and leave the original alone."""
    record = make_record()
    annotated = dataclasses.replace(record, listening_port=3000, connection_count=2)

    assert annotated.listening_port == 3000
    assert annotated.connection_count == 2
    assert record.listening_port is None


def test_orphan_entry_age():
    """Test OrphanEntry age is measured from first_seen and never negative."""
    entry = OrphanEntry(pid=42, first_seen=1000)

    assert entry.age(1650) == 650
    assert entry.age(900) == 0


def test_pressure_tier_values():
    """Test PressureTier enum has expected values."""
    assert PressureTier.OK.value == "ok"
    assert PressureTier.WARN.value == "warn"
    assert PressureTier.CRITICAL.value == "critical"
    assert len(list(PressureTier)) == 3


def test_cycle_snapshot_orphans():
    """Test CycleSnapshot.orphans filters to orphaned records."""
    snapshot = CycleSnapshot(
        timestamp=0,
        pressure=MemoryPressureSample(percent=50, swap_used_mb=0, tier=PressureTier.OK),
        idle_threshold_seconds=1800,
        processes=[make_record(pid=1, is_orphan=True), make_record(pid=2, is_orphan=False)],
        ports=[],
        paused=False,
    )

    assert [p.pid for p in snapshot.orphans] == [1]
    assert snapshot.killed == []
    assert snapshot.memory_groups == []
