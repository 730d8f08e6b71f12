"""Tests for cache pruning."""

import os
from pathlib import Path

import pytest

from devmon.cache import CacheReclaimer, CacheTarget, entry_size, is_within
from devmon.config import CacheTargetConfig
from devmon.errors import CacheRootUnavailable

NOW = 1_700_000_000.0
DAY = 86400


def age_path(path, days):
    """Set a path's mtime to ``days`` before NOW."""
    stamp = NOW - days * DAY
    os.utime(path, (stamp, stamp), follow_symlinks=False)


def make_entry(root, name, days, size=100):
    entry = root / name
    entry.mkdir(parents=True)
    (entry / "blob.bin").write_bytes(b"x" * size)
    age_path(entry, days)
    return entry


@pytest.fixture
def jetbrains(tmp_path):
    root = tmp_path / "JetBrains"
    make_entry(root, "IntelliJIdea2023.1", 3)
    make_entry(root, "PyCharm2022.3", 8, size=2000)
    make_entry(root, "WebStorm2021.1", 20, size=500)
    return root


def reclaimer_for(*targets):
    return CacheReclaimer(targets, clock=lambda: NOW)


class TestFindCandidates:
    """Tests for candidate selection."""

    def test_only_entries_older_than_policy(self, jetbrains):
        """Test 8- and 20-day entries qualify under a 7-day policy."""
        target = CacheTarget("jetbrains", jetbrains, 7)

        report = reclaimer_for(target).find_candidates(target)

        assert [c.path.name for c in report.candidates] == ["PyCharm2022.3", "WebStorm2021.1"]
        assert report.candidates[0].age_days == pytest.approx(8)
        assert report.candidates[0].size_bytes >= 2000

    def test_missing_root_raises(self, tmp_path):
        """Test a missing root is reported as unavailable."""
        target = CacheTarget("gone", tmp_path / "missing", 7)
        with pytest.raises(CacheRootUnavailable):
            reclaimer_for(target).find_candidates(target)

    def test_glob_selects_nested_entries(self, tmp_path):
        """Test a glob like */node_modules selects per-project directories."""
        dev = tmp_path / "dev"
        make_entry(dev / "old-app", "node_modules", 45)
        make_entry(dev / "new-app", "node_modules", 2)
        make_entry(dev, "old-app-src", 90)
        target = CacheTarget("node_modules", dev, 30, glob="*/node_modules")

        report = reclaimer_for(target).find_candidates(target)

        assert [c.path for c in report.candidates] == [dev / "old-app" / "node_modules"]


class TestClean:
    """Tests for clean."""

    def test_dry_run_matches_real_run(self, jetbrains):
        """Test a dry run lists exactly what a real run deletes and deletes nothing."""
        reclaimer = reclaimer_for(CacheTarget("jetbrains", jetbrains, 7))

        preview = reclaimer.clean(dry_run=True)
        assert sorted(p.name for p in jetbrains.iterdir()) == [
            "IntelliJIdea2023.1",
            "PyCharm2022.3",
            "WebStorm2021.1",
        ]

        real = reclaimer.clean(dry_run=False)

        assert [c.path for c in preview.candidates] == [c.path for c in real.candidates]
        assert preview.reclaimed_bytes == real.reclaimed_bytes
        assert [p.name for p in jetbrains.iterdir()] == ["IntelliJIdea2023.1"]
        assert real.ok

    def test_unavailable_root_does_not_stop_others(self, tmp_path, jetbrains):
        """Test a missing root is reported and remaining targets still run."""
        reclaimer = reclaimer_for(
            CacheTarget("gone", tmp_path / "missing", 7),
            CacheTarget("jetbrains", jetbrains, 7),
        )

        report = reclaimer.clean(dry_run=False)

        assert report.targets[0].error is not None
        assert len(report.targets[1].candidates) == 2
        assert not report.ok

    def test_symlink_is_removed_not_followed(self, tmp_path):
        """Test a stale symlink is unlinked and its target left intact."""
        root = tmp_path / "cache"
        root.mkdir()
        outside = tmp_path / "precious"
        outside.mkdir()
        (outside / "keep.txt").write_text("keep")
        link = root / "link"
        link.symlink_to(outside, target_is_directory=True)
        age_path(link, 60)

        reclaimer_for(CacheTarget("cache", root, 7)).clean(dry_run=False)

        assert not os.path.lexists(link)
        assert (outside / "keep.txt").read_text() == "keep"

    def test_empty_root(self, tmp_path):
        """Test an empty root yields no candidates."""
        root = tmp_path / "empty"
        root.mkdir()

        report = reclaimer_for(CacheTarget("empty", root, 7)).clean(dry_run=True)

        assert report.candidates == []
        assert report.reclaimed_bytes == 0


class TestHelpers:
    """Tests for path helpers."""

    def test_is_within(self, tmp_path):
        """Test containment is strict and judged on the resolved root."""
        assert is_within(tmp_path, tmp_path / "a")
        assert is_within(tmp_path, tmp_path / "a" / "b")
        assert not is_within(tmp_path, tmp_path)
        assert not is_within(tmp_path / "a", tmp_path / "b")

    def test_entry_size_sums_tree(self, tmp_path):
        """Test entry_size includes nested file sizes."""
        tree = tmp_path / "tree"
        (tree / "sub").mkdir(parents=True)
        (tree / "a").write_bytes(b"x" * 10)
        (tree / "sub" / "b").write_bytes(b"x" * 20)

        assert entry_size(tree) >= 30
        assert entry_size(tree / "a") == 10

    def test_target_from_config_expands_home(self):
        """Test ~ in a configured path is expanded."""
        target = CacheTarget.from_config(CacheTargetConfig("x", Path("~/c"), 1))
        assert "~" not in str(target.root)
