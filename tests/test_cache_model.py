"""Tests for cache subdirectory discovery and itemization."""

from __future__ import annotations

import os

import pytest

import cratesweep.core.cache_model as cache_model
from cratesweep.core.cache_model import CacheModel, SubdirKind, repo_name
from cratesweep.core.errors import CacheRootError
from cratesweep.models.cache_item import ItemKind, PackageVersion

from conftest import REGISTRY


def _disk_total(root) -> int:
    total = 0
    for dirpath, _, filenames in os.walk(root):
        for name in filenames:
            total += os.lstat(os.path.join(dirpath, name)).st_size
    return total


def test_missing_root_is_fatal(tmp_path):
    with pytest.raises(CacheRootError):
        CacheModel(tmp_path / "missing")


def test_empty_root_has_no_subdirectories(cargo):
    model = CacheModel(cargo.root)
    assert model.subdirectories() == []
    assert model.subdirectory(SubdirKind.ARCHIVE_CACHE) is None
    assert model.total_size() == 0


class TestDiscovery:
    def test_every_kind_found(self, populated):
        model = CacheModel(populated.root)
        kinds = [sub.kind for sub in model.subdirectories()]
        assert kinds == [
            SubdirKind.INDEX,
            SubdirKind.ARCHIVE_CACHE,
            SubdirKind.SOURCE_CHECKOUT_CACHE,
            SubdirKind.MIRROR_DB,
            SubdirKind.MIRROR_CHECKOUTS,
            SubdirKind.BINARIES,
        ]

    def test_registry_kinds_carry_registry(self, populated):
        sub = CacheModel(populated.root).subdirectory(SubdirKind.ARCHIVE_CACHE, REGISTRY)
        assert sub is not None
        assert sub.registry == REGISTRY
        assert sub.path == populated.root / "registry" / "cache" / REGISTRY

    def test_alternate_registry_is_separate(self, populated):
        populated.add_crate("internal", "0.1.0", registry="my-registry.example.com-0123456789abcdef")
        model = CacheModel(populated.root)
        archives = model.subdirectories(SubdirKind.ARCHIVE_CACHE)
        assert [s.registry for s in archives] == ["index.crates.io-6f17d22bba15001f",
                                                  "my-registry.example.com-0123456789abcdef"]
        assert model.registries() == [s.registry for s in archives]
        alt = model.subdirectory(SubdirKind.ARCHIVE_CACHE, "my-registry.example.com-0123456789abcdef")
        assert [i.name for i in alt.items] == ["internal"]

    def test_absent_subdirectory(self, cargo):
        cargo.add_binary("rg")
        model = CacheModel(cargo.root)
        assert model.subdirectory(SubdirKind.MIRROR_DB) is None
        assert model.subdirectory(SubdirKind.BINARIES) is not None


class TestItems:
    def test_archive_items_are_versioned(self, populated):
        model = CacheModel(populated.root)
        items = model.items(SubdirKind.ARCHIVE_CACHE)
        assert {i.package for i in items} == {
            PackageVersion("serde", "1.0.100"),
            PackageVersion("serde", "1.0.150"),
            PackageVersion("serde", "1.0.200"),
            PackageVersion("libc", "0.2.150"),
        }
        assert all(i.kind is ItemKind.ARCHIVE for i in items)

    def test_source_item_size_covers_whole_tree(self, cargo):
        _, source = cargo.add_crate("tiny", "1.0.0", files={"a": b"1" * 7, "b/c": b"2" * 5})
        (item,) = CacheModel(cargo.root).items(SubdirKind.SOURCE_CHECKOUT_CACHE)
        assert item.size_bytes == _disk_total(source)
        assert item.file_count == 3

    def test_mirror_names_drop_hash(self, populated):
        model = CacheModel(populated.root)
        assert [i.name for i in model.items(SubdirKind.MIRROR_DB)] == ["rand"]
        (checkout,) = model.items(SubdirKind.MIRROR_CHECKOUTS)
        assert checkout.name == "rand"
        assert checkout.path.name == "abc1234"

    def test_index_is_one_item(self, populated):
        (item,) = CacheModel(populated.root).items(SubdirKind.INDEX)
        assert item.name == REGISTRY
        assert item.size_bytes == 1000

    def test_unversioned_entries_still_counted(self, cargo):
        cargo.add_crate("serde", "1.0.0")
        stray = cargo.root / "registry" / "cache" / "index.crates.io-6f17d22bba15001f" / "notes.txt"
        stray.write_bytes(b"n" * 9)
        sub = CacheModel(cargo.root).subdirectory(SubdirKind.ARCHIVE_CACHE)
        stray_item = next(i for i in sub.items if i.path == stray)
        assert stray_item.package is None
        assert stray_item.size_bytes == 9

    def test_item_mtime_is_item_root(self, cargo):
        cargo.add_crate("old", "1.0.0", mtime=1_500_000_000)
        for item in CacheModel(cargo.root).items():
            assert item.mtime == 1_500_000_000


class TestTotals:
    def test_total_matches_disk(self, populated):
        model = CacheModel(populated.root)
        assert model.total_size() == _disk_total(populated.root)

    def test_subdirectory_total_is_sum_of_items(self, populated):
        for sub in CacheModel(populated.root).subdirectories():
            assert sub.total_size == sum(i.size_bytes for i in sub.items)

    def test_scan_happens_once(self, populated, monkeypatch):
        calls = []
        original = cache_model.tree_info

        def counting(path, report=None):
            calls.append(path)
            return original(path, report)

        monkeypatch.setattr(cache_model, "tree_info", counting)
        model = CacheModel(populated.root)
        model.total_size()
        first = len(calls)
        model.total_size()
        model.items()
        assert len(calls) == first

    def test_parallel_scan_matches_sequential(self, populated):
        parallel = CacheModel(populated.root).scan(max_workers=4)
        sequential = CacheModel(populated.root).scan(max_workers=1)
        assert parallel.total_size() == sequential.total_size()

    def test_grouped_by_owner_keeps_versions_apart(self, populated):
        model = CacheModel(populated.root)
        sub = model.subdirectory(SubdirKind.SOURCE_CHECKOUT_CACHE)
        groups = model.items_grouped_by_owner(sub)
        assert sorted(groups) == ["libc-0.2.150", "serde-1.0.100", "serde-1.0.150", "serde-1.0.200"]
        assert all(len(items) == 1 for items in groups.values())

    def test_mirror_checkouts_grouped_by_repo(self, populated):
        populated.add_git_checkout("rand", "def5678")
        model = CacheModel(populated.root)
        groups = model.items_grouped_by_owner(model.subdirectory(SubdirKind.MIRROR_CHECKOUTS))
        assert list(groups) == ["rand"]
        assert len(groups["rand"]) == 2


class TestScanErrors:
    def test_unreadable_locations_are_warnings(self, populated, deny_access):
        root = populated.root
        deny_access(root / "registry" / "cache", root / "git" / "db", root / "bin")
        model = CacheModel(root).scan()

        assert model.subdirectories(SubdirKind.ARCHIVE_CACHE) == []
        assert model.subdirectory(SubdirKind.BINARIES) is None
        assert model.subdirectory(SubdirKind.MIRROR_DB) is None
        assert len(model.warnings) == 3
        assert all("Permission denied" in w for w in model.warnings)
        assert model.items(SubdirKind.SOURCE_CHECKOUT_CACHE)

    def test_missing_locations_are_not_warnings(self, cargo):
        cargo.add_index()
        assert CacheModel(cargo.root).scan().warnings == []

    def test_crashing_subdirectory_scan_is_logged(self, populated, monkeypatch, caplog):
        original = cache_model.Subdirectory._collect

        def flaky(self):
            if self.kind is SubdirKind.BINARIES:
                raise RuntimeError("boom")
            return original(self)

        monkeypatch.setattr(cache_model.Subdirectory, "_collect", flaky)
        model = CacheModel(populated.root).scan(max_workers=4)

        assert model.subdirectory(SubdirKind.BINARIES).items == []
        assert any("scan failed: boom" in w for w in model.warnings)
        assert "Scan of binaries failed" in caplog.text
        assert model.items(SubdirKind.ARCHIVE_CACHE)


@pytest.mark.parametrize(
    "dirname, expected",
    [("rand-a1b2c3d4e5f60718", "rand"), ("my-crate-0123abcd", "my-crate"), ("plain", "plain")],
)
def test_repo_name(dirname, expected):
    assert repo_name(dirname) == expected
