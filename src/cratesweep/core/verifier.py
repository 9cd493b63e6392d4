"""Detect extracted sources that no longer match their archive."""

from __future__ import annotations

import logging
import tarfile
import unicodedata
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from cratesweep.core.cache_model import CacheModel, SubdirKind
from cratesweep.core.policies import remove_corrupted
from cratesweep.core.scanner import ScanReport, walk_files
from cratesweep.models.cache_item import CacheItem, PackageVersion
from cratesweep.models.removal_plan import RemovalPlan

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CorruptedSource:
    registry: str | None
    package: PackageVersion
    path: Path
    size_bytes: int
    reason: str


@dataclass(slots=True)
class VerifyReport:
    corrupted: list[CorruptedSource] = field(default_factory=list)
    checked: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.corrupted


def _nfc(name: str) -> str:
    return unicodedata.normalize("NFC", name)


def _archive_listing(archive: Path) -> dict[str, int]:
    """Regular file members of a .crate, relative to its top directory."""
    listing: dict[str, int] = {}
    with tarfile.open(archive, "r:gz") as tar:
        for member in tar:
            if not member.isfile():
                continue
            _, sep, rel = member.name.partition("/")
            if not sep or not rel:
                continue
            listing[_nfc(rel)] = member.size
    return listing


def _disk_listing(source_dir: Path, report: ScanReport) -> dict[str, int]:
    return {
        _nfc(f.path.relative_to(source_dir).as_posix()): f.size_bytes
        for f in walk_files(source_dir, report)
    }


def check_source(archive: CacheItem, source: CacheItem, report: ScanReport | None = None) -> str | None:
    """Return why ``source`` does not match ``archive``, or None if it does.

    Files present on disk but absent from the archive (cargo's own
    ``.cargo-ok`` marker, build leftovers) are ignored.  If part of the
    checkout cannot be read, the errors land on ``report`` and None is
    returned: an unreadable file is not evidence of corruption.

    Raises:
        tarfile.TarError, OSError: if the archive cannot be read.
    """
    report = report if report is not None else ScanReport()
    expected = _archive_listing(archive.path)
    actual = _disk_listing(source.path, report)
    if report.warnings:
        return None
    for name, size in sorted(expected.items()):
        on_disk = actual.get(name)
        if on_disk is None:
            return f"missing file {name}"
        if on_disk != size:
            return f"size mismatch for {name}: {on_disk} != {size} bytes"
    return None


def _pairs(model: CacheModel) -> list[tuple[CacheItem, CacheItem]]:
    sources: dict[tuple[str | None, PackageVersion], CacheItem] = {}
    for item in model.items(SubdirKind.SOURCE_CHECKOUT_CACHE):
        if item.package is not None:
            sources[(item.registry, item.package)] = item
    pairs = []
    for archive in model.items(SubdirKind.ARCHIVE_CACHE):
        if archive.package is None:
            continue
        source = sources.get((archive.registry, archive.package))
        if source is not None:
            pairs.append((archive, source))
    return pairs


def verify(model: CacheModel, max_workers: int = 4) -> VerifyReport:
    """Check every archive that has an extracted source, one task per archive."""
    report = VerifyReport()
    pairs = _pairs(model)
    if not pairs:
        return report

    def _check(pair: tuple[CacheItem, CacheItem]) -> tuple[str | None, list[str]]:
        archive, source = pair
        scan = ScanReport()
        try:
            reason = check_source(archive, source, scan)
        except (tarfile.TarError, OSError, EOFError) as e:
            log.warning("Could not read archive %s: %s", archive.path, e)
            return None, [f"{archive.path}: {e}"]
        if scan.warnings:
            log.warning("Skipped %s: could not read every file", source.path)
        return reason, scan.warnings

    workers = max(1, min(max_workers, len(pairs)))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        results = list(executor.map(_check, pairs))

    for (_, source), (reason, warnings) in zip(pairs, results):
        if warnings:
            report.warnings.extend(warnings)
            continue
        report.checked += 1
        if reason is not None:
            log.info("%s is corrupted: %s", source.path, reason)
            report.corrupted.append(
                CorruptedSource(source.registry, source.package, source.path, source.size_bytes, reason)
            )
    report.corrupted.sort(key=lambda c: (c.package, c.registry or ""))
    return report


def corrupted_plan(model: CacheModel, report: VerifyReport) -> RemovalPlan:
    """Plan removal of the corrupted extracted sources; archives stay."""
    return remove_corrupted(model, ((c.registry, c.package) for c in report.corrupted))
