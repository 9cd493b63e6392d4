"""Scan, plan and clean orchestration."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from cratesweep.core.cache_model import CacheModel, Subdirectory, SubdirKind
from cratesweep.core.errors import PolicyInputError, ScanError
from cratesweep.core.executor import DeletionExecutor
from cratesweep.core.git import RecompressResult, recompress_repos
from cratesweep.core.policies import (
    AgeRelation,
    AutocleanMode,
    RetentionSet,
    autoclean,
    prune_duplicates,
    remove_by_age,
    remove_subdirectories,
    remove_unreferenced,
    trim_to_size,
)
from cratesweep.core.verifier import VerifyReport, corrupted_plan
from cratesweep.models.cache_item import CacheItem
from cratesweep.models.outcome import Outcome
from cratesweep.models.removal_plan import RemovalPlan, merge_plans

log = logging.getLogger(__name__)


@dataclass(slots=True)
class CleanRequest:
    """Which policies to combine in one run.

    Fragments are merged in the order the fields are listed here, so
    when two policies pick the same path the earlier one's reason is kept.
    """

    remove_dirs: frozenset[SubdirKind] = frozenset()
    autoclean: AutocleanMode = AutocleanMode.NONE
    keep_duplicates: int | None = None
    age_relation: AgeRelation | None = None
    age_cutoff: datetime | None = None
    age_scope: frozenset[SubdirKind] = frozenset()
    retention: RetentionSet | None = None
    include_mirrors: bool = False
    corrupted: VerifyReport | None = None
    trim_limit: int | None = None

    @property
    def is_empty(self) -> bool:
        return (
            not self.remove_dirs
            and self.autoclean is AutocleanMode.NONE
            and self.keep_duplicates is None
            and self.age_relation is None
            and self.retention is None
            and self.corrupted is None
            and self.trim_limit is None
        )


@dataclass(slots=True)
class SubdirSizes:
    label: str
    kind: SubdirKind
    registry: str | None
    path: Path
    before: int
    after: int

    @property
    def freed_bytes(self) -> int:
        return self.before - self.after


@dataclass(slots=True)
class SizeReport:
    """Cache size before and after a run, overall and per subdirectory."""

    before: int = 0
    after: int = 0
    subdirs: list[SubdirSizes] = field(default_factory=list)

    @property
    def freed_bytes(self) -> int:
        return self.before - self.after

    @property
    def percent_change(self) -> float:
        if not self.before:
            return 0.0
        return (self.after - self.before) / self.before * 100


@dataclass(slots=True)
class RunReport:
    plan: RemovalPlan
    outcome: Outcome
    sizes: SizeReport
    git: RecompressResult | None = None
    warnings: list[str] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def errors(self) -> list[str]:
        errors = list(self.outcome.errors)
        if self.git is not None:
            errors.extend(self.git.errors)
        return errors


class CacheEngine:
    """Builds the cache model, plans removals and hands them to the executor."""

    def __init__(self, root: Path | str, max_workers: int = 4) -> None:
        self.root = Path(root)
        self.max_workers = max_workers
        self.executor = DeletionExecutor(max_workers)

    def load(self) -> CacheModel:
        """Return a freshly scanned model of the cache root.

        Raises:
            ScanError: if the scan collected errors and not a single item.
        """
        model = CacheModel(self.root).scan(self.max_workers)
        warnings = model.warnings
        if warnings and not model.items():
            raise ScanError(f"Could not scan anything in {self.root} ({len(warnings)} errors)", warnings)
        return model

    def plan(self, model: CacheModel, request: CleanRequest) -> RemovalPlan:
        fragments: list[RemovalPlan] = []
        if request.remove_dirs:
            fragments.append(remove_subdirectories(model, request.remove_dirs))
        if request.autoclean is not AutocleanMode.NONE:
            fragments.append(autoclean(model, request.autoclean))
        if request.keep_duplicates is not None:
            fragments.append(prune_duplicates(model, request.keep_duplicates))
        if request.age_relation is not None:
            if request.age_cutoff is None:
                raise PolicyInputError("Age-based removal requires a cutoff date")
            fragments.append(remove_by_age(model, request.age_cutoff, request.age_relation, request.age_scope))
        if request.retention is not None:
            fragments.append(remove_unreferenced(model, request.retention, request.include_mirrors))
        if request.corrupted is not None:
            fragments.append(corrupted_plan(model, request.corrupted))
        if request.trim_limit is not None:
            fragments.append(trim_to_size(model, request.trim_limit))
        plan = merge_plans(*fragments)
        log.info("Planned %d removals totaling %d bytes", len(plan), plan.total_bytes)
        return plan

    def run(
        self,
        request: CleanRequest,
        dry_run: bool = False,
        model: CacheModel | None = None,
    ) -> RunReport:
        """Plan and execute ``request``, measuring the cache before and after.

        Under ``dry_run`` the after state is projected from the plan;
        otherwise the cache is rescanned.
        """
        start = time.monotonic()
        model = model or self.load()
        plan = self.plan(model, request)
        outcome = self.executor.execute(plan, dry_run=dry_run)

        git_result = None
        if plan.git_recompress:
            git_result = recompress_repos(plan.git_recompress, dry_run=dry_run)

        if dry_run:
            sizes = projected_sizes(model, plan)
        else:
            sizes = compare_sizes(model, CacheModel(self.root).scan(self.max_workers))
        elapsed = time.monotonic() - start
        log.info("Run finished in %.2fs", elapsed)
        return RunReport(plan, outcome, sizes, git_result, warnings=model.warnings, elapsed=elapsed)

    def query(self, pattern: str, model: CacheModel | None = None) -> list[CacheItem]:
        """Items whose file name matches the regular expression ``pattern``."""
        try:
            regex = re.compile(pattern)
        except re.error as e:
            raise PolicyInputError(f"Invalid pattern {pattern!r}: {e}") from e
        model = model or self.load()
        return [item for item in model.items() if regex.search(item.path.name)]


def _sizes_row(sub: Subdirectory, after: int) -> SubdirSizes:
    return SubdirSizes(sub.label, sub.kind, sub.registry, sub.path, sub.total_size, after)


def projected_sizes(model: CacheModel, plan: RemovalPlan) -> SizeReport:
    """Before/after sizes assuming every planned removal succeeds."""
    planned: dict[tuple[SubdirKind, str | None], int] = {}
    subdirs = model.subdirectories()
    for entry in plan:
        for sub in subdirs:
            if entry.path == sub.path or sub.path in entry.path.parents:
                planned[sub.key] = planned.get(sub.key, 0) + entry.size_bytes
                break

    report = SizeReport()
    for sub in subdirs:
        after = max(0, sub.total_size - planned.get(sub.key, 0))
        report.subdirs.append(_sizes_row(sub, after))
        report.before += sub.total_size
        report.after += after
    return report


def compare_sizes(before: CacheModel, after: CacheModel) -> SizeReport:
    """Before/after sizes from two scans of the same root."""
    report = SizeReport()
    for sub in before.subdirectories():
        current = after.subdirectory(sub.kind, sub.registry)
        size_after = current.total_size if current is not None else 0
        report.subdirs.append(_sizes_row(sub, size_after))
        report.before += sub.total_size
        report.after += size_after
    # subdirectories created between the scans (cargo running concurrently)
    known = {sub.key for sub in before.subdirectories()}
    for sub in after.subdirectories():
        if sub.key not in known:
            report.subdirs.append(SubdirSizes(sub.label, sub.kind, sub.registry, sub.path, 0, sub.total_size))
            report.after += sub.total_size
    return report
