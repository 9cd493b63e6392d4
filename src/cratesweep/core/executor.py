"""The single place where cache paths are removed from disk."""

from __future__ import annotations

import logging
import os
import shutil
import stat
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from cratesweep.models.outcome import Outcome
from cratesweep.models.removal_plan import PlannedRemoval, RemovalPlan

log = logging.getLogger(__name__)


def _remove_path(path: Path) -> None:
    """Remove a file, symlink or directory tree."""
    st = os.lstat(path)
    if stat.S_ISDIR(st.st_mode):
        shutil.rmtree(path)
    else:
        path.unlink()


class DeletionExecutor:
    """Carries out a :class:`RemovalPlan`.

    Removal groups are independent and run on a small thread pool; the
    entries of one group are removed in plan order.  A failing path is
    recorded and the rest of the batch continues.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self.max_workers = max_workers

    def execute(self, plan: RemovalPlan, dry_run: bool = False) -> Outcome:
        if dry_run:
            for entry in plan:
                log.info("Would remove %s (%d bytes): %s", entry.path, entry.size_bytes, entry.reason)
            return Outcome(
                freed_bytes=plan.total_bytes,
                removed_count=len(plan),
                dry_run=True,
            )

        groups = list(plan.groups().values())
        outcome = Outcome()
        if not groups:
            return outcome

        workers = max(1, min(self.max_workers, len(groups)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(self._remove_group, groups))

        for freed, removed, errors in results:
            outcome.freed_bytes += freed
            outcome.removed_count += removed
            outcome.errors.extend(errors)
        for error in outcome.errors:
            log.warning("Failed to remove %s", error)
        log.info("Removed %d paths, freed %d bytes", outcome.removed_count, outcome.freed_bytes)
        return outcome

    @staticmethod
    def _remove_group(entries: list[PlannedRemoval]) -> tuple[int, int, list[str]]:
        freed = 0
        removed = 0
        errors: list[str] = []
        for entry in entries:
            try:
                _remove_path(entry.path)
            except FileNotFoundError:
                log.debug("Already gone: %s", entry.path)
                continue
            except OSError as e:
                errors.append(f"{entry.path}: {e.strerror or e}")
                continue
            log.debug("Removed %s", entry.path)
            freed += entry.size_bytes
            removed += 1
        return freed, removed, errors
