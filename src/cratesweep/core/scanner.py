"""Filesystem walking with size and mtime accounting."""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FileStat:
    """A file found during a walk."""

    path: Path
    size_bytes: int
    mtime: float


@dataclass(slots=True)
class ScanReport:
    """Warnings gathered while walking; the walk itself never aborts."""

    warnings: list[str] = field(default_factory=list)

    def warn(self, path: Path | str, exc: OSError) -> None:
        message = f"{path}: {exc.strerror or exc}"
        log.warning("Scan: %s", message)
        self.warnings.append(message)

    def extend(self, other: ScanReport) -> None:
        self.warnings.extend(other.warnings)


def _entry_stat(path: str) -> os.stat_result:
    """stat() that follows symlinks; split out so tests can inject races."""
    return os.stat(path)


def walk_files(root: Path | str, report: ScanReport | None = None) -> Iterator[FileStat]:
    """Yield every file below ``root`` with its size and mtime.

    Entries that disappear between listing and stat are skipped silently;
    any other OS error is recorded on ``report`` and the walk continues.
    Symlinks are counted by the size of their target but symlinked
    directories are never descended into.  If ``root`` is itself a file
    it is yielded on its own.
    """
    report = report if report is not None else ScanReport()
    root = str(root)

    try:
        st = os.lstat(root)
    except FileNotFoundError:
        return
    except OSError as e:
        report.warn(root, e)
        return
    if not stat.S_ISDIR(st.st_mode):
        item = _file_stat(root, report)
        if item is not None:
            yield item
        return

    stack: list[str] = [root]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                entries = list(it)
        except FileNotFoundError:
            continue
        except OSError as e:
            report.warn(current, e)
            continue

        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    stack.append(entry.path)
                    continue
            except OSError as e:
                report.warn(entry.path, e)
                continue
            item = _file_stat(entry.path, report)
            if item is not None:
                yield item


def _file_stat(path: str, report: ScanReport) -> FileStat | None:
    try:
        st = _entry_stat(path)
    except FileNotFoundError:
        # vanished mid-scan, or a dangling symlink
        return None
    except OSError as e:
        report.warn(path, e)
        return None
    if stat.S_ISDIR(st.st_mode):
        # symlink to a directory
        return None
    return FileStat(Path(path), st.st_size, st.st_mtime)


def tree_info(root: Path | str, report: ScanReport | None = None) -> tuple[int, int]:
    """Return (total_bytes, file_count) for ``root``."""
    total = count = 0
    for item in walk_files(root, report):
        total += item.size_bytes
        count += 1
    return total, count


def list_dir(path: Path, report: ScanReport | None = None) -> list[os.DirEntry]:
    """Directory entries of ``path`` sorted by name; missing dirs are empty."""
    try:
        with os.scandir(path) as it:
            return sorted(it, key=lambda e: e.name)
    except FileNotFoundError:
        return []
    except OSError as e:
        if report is not None:
            report.warn(path, e)
        return []
