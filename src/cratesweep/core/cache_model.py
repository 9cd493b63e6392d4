"""In-memory model of a Cargo home and its cache subdirectories."""

from __future__ import annotations

import logging
import os
import stat
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from pathlib import Path

from cratesweep.core.errors import CacheRootError
from cratesweep.core.scanner import ScanReport, list_dir, tree_info
from cratesweep.models.cache_item import CacheItem, ItemKind, PackageVersion

log = logging.getLogger(__name__)


class SubdirKind(str, Enum):
    INDEX = "index"
    ARCHIVE_CACHE = "archive-cache"
    SOURCE_CHECKOUT_CACHE = "source-checkout-cache"
    MIRROR_DB = "mirror-db"
    MIRROR_CHECKOUTS = "mirror-checkouts"
    BINARIES = "binaries"

    @property
    def is_registry(self) -> bool:
        return self in _REGISTRY_KINDS

    @property
    def item_kind(self) -> ItemKind:
        return _ITEM_KINDS[self]


_REGISTRY_KINDS = frozenset({
    SubdirKind.INDEX,
    SubdirKind.ARCHIVE_CACHE,
    SubdirKind.SOURCE_CHECKOUT_CACHE,
})

_ITEM_KINDS = {
    SubdirKind.INDEX: ItemKind.INDEX,
    SubdirKind.ARCHIVE_CACHE: ItemKind.ARCHIVE,
    SubdirKind.SOURCE_CHECKOUT_CACHE: ItemKind.EXTRACTED_SOURCE,
    SubdirKind.MIRROR_DB: ItemKind.MIRROR_DB,
    SubdirKind.MIRROR_CHECKOUTS: ItemKind.MIRROR_CHECKOUT,
    SubdirKind.BINARIES: ItemKind.BINARY,
}

# Where each registry kind lives below <root>/registry
_REGISTRY_DIRS = {
    SubdirKind.INDEX: "index",
    SubdirKind.ARCHIVE_CACHE: "cache",
    SubdirKind.SOURCE_CHECKOUT_CACHE: "src",
}


def repo_name(dirname: str) -> str:
    """Strip the trailing ``-<hash>`` cargo appends to git mirror directories."""
    name, sep, _ = dirname.rpartition("-")
    return name if sep and name else dirname


class Subdirectory:
    """One cache subdirectory, lazily itemized on first access.

    The scan runs at most once per instance; concurrent callers wait for
    the first one to finish.
    """

    def __init__(self, kind: SubdirKind, path: Path, registry: str | None = None) -> None:
        self.kind = kind
        self.path = path
        self.registry = registry
        self.report = ScanReport()
        self._items: list[CacheItem] | None = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Subdirectory({self.kind.value!r}, {str(self.path)!r})"

    @property
    def key(self) -> tuple[SubdirKind, str | None]:
        return self.kind, self.registry

    @property
    def label(self) -> str:
        if self.registry:
            return f"{self.kind.value} ({self.registry})"
        return self.kind.value

    @property
    def items(self) -> list[CacheItem]:
        return self.scan()

    @property
    def total_size(self) -> int:
        return sum(item.size_bytes for item in self.items)

    @property
    def item_count(self) -> int:
        return len(self.items)

    @property
    def file_count(self) -> int:
        return sum(item.file_count for item in self.items)

    @property
    def warnings(self) -> list[str]:
        return self.report.warnings

    def scan(self) -> list[CacheItem]:
        with self._lock:
            if self._items is None:
                try:
                    self._items = self._collect()
                except Exception as e:
                    log.exception("Scan of %s failed", self.label)
                    self.report.warnings.append(f"{self.path}: scan failed: {e}")
                    self._items = []
                log.debug("Scanned %s: %d items", self.label, len(self._items))
            return self._items

    def items_grouped_by_owner(self) -> dict[str, list[CacheItem]]:
        """Items keyed by owner: ``name-version`` for packages, else the name."""
        grouped: dict[str, list[CacheItem]] = defaultdict(list)
        for item in self.items:
            grouped[item.owner].append(item)
        return dict(grouped)

    def _collect(self) -> list[CacheItem]:
        if self.kind is SubdirKind.INDEX:
            item = self._make_item(self.path, self.registry or self.path.name)
            return [item] if item else []

        if self.kind is SubdirKind.MIRROR_CHECKOUTS:
            items: list[CacheItem] = []
            for repo in list_dir(self.path, self.report):
                if not _is_dir(repo, self.report):
                    item = self._make_item(Path(repo.path), repo.name)
                    if item:
                        items.append(item)
                    continue
                name = repo_name(repo.name)
                for rev in list_dir(Path(repo.path), self.report):
                    item = self._make_item(Path(rev.path), name)
                    if item:
                        items.append(item)
            return items

        items = []
        for entry in list_dir(self.path, self.report):
            package = None
            if self.kind in (SubdirKind.ARCHIVE_CACHE, SubdirKind.SOURCE_CHECKOUT_CACHE):
                package = PackageVersion.parse(entry.name)
            if package is not None:
                name = package.name
            elif self.kind is SubdirKind.MIRROR_DB:
                name = repo_name(entry.name)
            else:
                name = entry.name
            item = self._make_item(Path(entry.path), name, package)
            if item:
                items.append(item)
        return items

    def _make_item(
        self,
        path: Path,
        name: str,
        package: PackageVersion | None = None,
    ) -> CacheItem | None:
        try:
            mtime = os.lstat(path).st_mtime
        except FileNotFoundError:
            return None
        except OSError as e:
            self.report.warn(path, e)
            return None
        size, count = tree_info(path, self.report)
        return CacheItem(
            name=name,
            path=path,
            size_bytes=size,
            mtime=mtime,
            kind=self.kind.item_kind,
            registry=self.registry,
            package=package,
            file_count=count,
        )


def _is_dir(entry: os.DirEntry, report: ScanReport) -> bool:
    try:
        return entry.is_dir(follow_symlinks=False)
    except FileNotFoundError:
        return False
    except OSError as e:
        report.warn(entry.path, e)
        return False


class CacheModel:
    """The cache root and every subdirectory discovered below it.

    Subdirectories are keyed by ``(kind, registry)``; registry kinds exist
    once per registry directory found on disk, the others at most once.
    A location that does not exist simply has no Subdirectory.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        if not self.root.is_dir():
            raise CacheRootError(f"Cargo home not found: {self.root}")
        self.report = ScanReport()
        self._subdirs: dict[tuple[SubdirKind, str | None], Subdirectory] | None = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"CacheModel({str(self.root)!r})"

    def location(self, kind: SubdirKind) -> Path:
        """Directory that holds subdirectories of ``kind``, whether or not it exists."""
        if kind.is_registry:
            return self.root / "registry" / _REGISTRY_DIRS[kind]
        if kind is SubdirKind.MIRROR_DB:
            return self.root / "git" / "db"
        if kind is SubdirKind.MIRROR_CHECKOUTS:
            return self.root / "git" / "checkouts"
        return self.root / "bin"

    def _discover(self) -> dict[tuple[SubdirKind, str | None], Subdirectory]:
        with self._lock:
            if self._subdirs is not None:
                return self._subdirs
            found: dict[tuple[SubdirKind, str | None], Subdirectory] = {}
            for kind in SubdirKind:
                base = self.location(kind)
                if kind.is_registry:
                    for entry in list_dir(base, self.report):
                        if _is_dir(entry, self.report):
                            sub = Subdirectory(kind, Path(entry.path), entry.name)
                            found[sub.key] = sub
                elif _path_is_dir(base, self.report):
                    sub = Subdirectory(kind, base)
                    found[sub.key] = sub
            log.debug("Discovered %d cache subdirectories in %s", len(found), self.root)
            self._subdirs = found
            return found

    def subdirectory(self, kind: SubdirKind, registry: str | None = None) -> Subdirectory | None:
        """Return one subdirectory, or None when absent.

        For registry kinds without an explicit ``registry`` the first
        registry (by name) is returned.
        """
        subdirs = self._discover()
        if registry is not None or not kind.is_registry:
            return subdirs.get((kind, registry))
        matches = self.subdirectories(kind)
        return matches[0] if matches else None

    def subdirectories(self, kind: SubdirKind | None = None) -> list[Subdirectory]:
        subdirs = self._discover().values()
        if kind is not None:
            subdirs = [s for s in subdirs if s.kind is kind]
        return sorted(subdirs, key=lambda s: (list(SubdirKind).index(s.kind), s.registry or ""))

    def registries(self) -> list[str]:
        return sorted({s.registry for s in self.subdirectories() if s.registry})

    def items(self, kind: SubdirKind | None = None) -> list[CacheItem]:
        return [item for sub in self.subdirectories(kind) for item in sub.items]

    def total_size(self) -> int:
        return sum(sub.total_size for sub in self.subdirectories())

    def items_grouped_by_owner(self, subdir: Subdirectory) -> dict[str, list[CacheItem]]:
        return subdir.items_grouped_by_owner()

    @property
    def warnings(self) -> list[str]:
        """Discovery warnings followed by those of every subdirectory scan."""
        subdirs = self.subdirectories()
        return [*self.report.warnings, *(w for sub in subdirs for w in sub.warnings)]

    def scan(self, max_workers: int = 4) -> CacheModel:
        """Itemize every subdirectory, one worker per subdirectory."""
        subdirs = self.subdirectories()
        if not subdirs:
            return self
        workers = max(1, min(max_workers, len(subdirs)))
        if workers == 1:
            for sub in subdirs:
                sub.scan()
            return self
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(sub.scan) for sub in subdirs]
            for future in futures:
                future.result()
        return self


def _path_is_dir(path: Path, report: ScanReport) -> bool:
    try:
        return stat.S_ISDIR(os.stat(path).st_mode)
    except (FileNotFoundError, NotADirectoryError):
        return False
    except OSError as e:
        report.warn(path, e)
        return False
