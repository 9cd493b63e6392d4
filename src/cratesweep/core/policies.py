"""Removal policies.

Every policy reads a :class:`CacheModel` and returns a :class:`RemovalPlan`;
none of them touch the filesystem.  Fragments from several policies are
combined with :func:`merge_plans`, which keeps the first entry for a path.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable

from cratesweep.core.cache_model import CacheModel, SubdirKind
from cratesweep.core.errors import PolicyInputError
from cratesweep.models.cache_item import CacheItem, PackageVersion
from cratesweep.models.removal_plan import PlannedRemoval, RemovalPlan, merge_plans

log = logging.getLogger(__name__)

__all__ = [
    "AgeRelation",
    "AutocleanMode",
    "RetentionSet",
    "autoclean",
    "merge_plans",
    "parse_scope",
    "prune_duplicates",
    "remove_by_age",
    "remove_corrupted",
    "remove_subdirectories",
    "remove_unreferenced",
    "resolve_autoclean",
    "trim_to_size",
]

_PACKAGE_KINDS = (SubdirKind.ARCHIVE_CACHE, SubdirKind.SOURCE_CHECKOUT_CACHE)

# Binaries and the index are never evicted to satisfy a size limit.
_EVICTABLE_KINDS = (
    SubdirKind.ARCHIVE_CACHE,
    SubdirKind.SOURCE_CHECKOUT_CACHE,
    SubdirKind.MIRROR_DB,
    SubdirKind.MIRROR_CHECKOUTS,
)

_ALL_SCOPE = frozenset(k for k in SubdirKind if k is not SubdirKind.BINARIES)

_SCOPE_TOKENS: dict[str, frozenset[SubdirKind]] = {
    "index": frozenset({SubdirKind.INDEX}),
    "mirror-db": frozenset({SubdirKind.MIRROR_DB}),
    "mirror-checkouts": frozenset({SubdirKind.MIRROR_CHECKOUTS}),
    "archive-cache": frozenset({SubdirKind.ARCHIVE_CACHE}),
    "source-checkout-cache": frozenset({SubdirKind.SOURCE_CHECKOUT_CACHE}),
    "all": _ALL_SCOPE,
    # cargo-cache compatible names
    "git-db": frozenset({SubdirKind.MIRROR_DB, SubdirKind.MIRROR_CHECKOUTS}),
    "git-repos": frozenset({SubdirKind.MIRROR_CHECKOUTS}),
    "registry-sources": frozenset({SubdirKind.SOURCE_CHECKOUT_CACHE}),
    "registry-crate-cache": frozenset(_PACKAGE_KINDS),
    "registry-index": frozenset({SubdirKind.INDEX}),
    "registry": frozenset(_PACKAGE_KINDS),
}


class AgeRelation(str, Enum):
    OLDER_THAN = "older-than"
    YOUNGER_THAN = "younger-than"


class AutocleanMode(str, Enum):
    NONE = "none"
    NORMAL = "autoclean"
    EXPENSIVE = "autoclean-expensive"


@dataclass(frozen=True, slots=True)
class RetentionSet:
    """Package versions and git repositories still in use."""

    packages: frozenset[tuple[str, str]] = field(default_factory=frozenset)
    git_repos: frozenset[str] = field(default_factory=frozenset)

    def __contains__(self, package: object) -> bool:
        if isinstance(package, PackageVersion):
            return (package.name, package.version) in self.packages
        return package in self.packages

    def __len__(self) -> int:
        return len(self.packages)


def parse_scope(text: str | Iterable[str]) -> frozenset[SubdirKind]:
    """Turn comma separated scope tokens into subdirectory kinds.

    Raises:
        PolicyInputError: on an empty scope or any unknown token.
    """
    tokens = text.split(",") if isinstance(text, str) else list(text)
    tokens = [t.strip().lower() for t in tokens if t.strip()]
    if not tokens:
        raise PolicyInputError(
            "A scope is required, e.g. 'archive-cache,source-checkout-cache' or 'all'"
        )
    invalid = [t for t in tokens if t not in _SCOPE_TOKENS]
    if invalid:
        valid = ", ".join(sorted(_SCOPE_TOKENS))
        raise PolicyInputError(f"Invalid scope token(s): {' '.join(invalid)} (valid: {valid})")
    kinds: set[SubdirKind] = set()
    for token in tokens:
        kinds |= _SCOPE_TOKENS[token]
    return frozenset(kinds)


def _removal(item: CacheItem, reason: str) -> PlannedRemoval:
    group = ""
    if item.package is not None:
        group = f"{item.registry}/{item.package}"
    return PlannedRemoval(item.path, item.size_bytes, reason, group)


def _package_items(model: CacheModel) -> dict[tuple[str | None, str], dict[PackageVersion, list[CacheItem]]]:
    """Archives and extracted sources keyed by (registry, name) then version."""
    packages: dict[tuple[str | None, str], dict[PackageVersion, list[CacheItem]]] = defaultdict(
        lambda: defaultdict(list)
    )
    for kind in _PACKAGE_KINDS:
        for item in model.items(kind):
            if item.package is None:
                continue
            packages[(item.registry, item.package.name)][item.package].append(item)
    return packages


def _package_key(entry: tuple[tuple[str | None, str], object]) -> tuple[str, str]:
    (registry, name), _ = entry
    return registry or "", name


# ── duplicate versions ───────────────────────────────────────────────────

def prune_duplicates(model: CacheModel, keep: int) -> RemovalPlan:
    """Keep the ``keep`` newest versions of every package, drop the rest.

    The archive and extracted source of one version are removed together.
    Packages with a single cached version are never touched, even with
    ``keep=0``.
    """
    if keep < 0:
        raise PolicyInputError(f"Number of versions to keep must be >= 0, got {keep}")

    plan = RemovalPlan()
    for (_, name), versions in sorted(_package_items(model).items(), key=_package_key):
        if len(versions) <= 1 or len(versions) <= keep:
            continue
        ordered = sorted(versions, reverse=True)
        for package in ordered[keep:]:
            for item in sorted(versions[package], key=lambda i: i.kind.value):
                plan.add(_removal(item, f"duplicate: keeping {keep} newest of {name}"))
    log.info("Duplicate pruning planned %d removals (%d bytes)", len(plan), plan.total_bytes)
    return plan


# ── age window ───────────────────────────────────────────────────────────

def remove_by_age(
    model: CacheModel,
    cutoff: datetime | float,
    relation: AgeRelation | str,
    scope: Iterable[SubdirKind],
) -> RemovalPlan:
    """Remove items strictly older or strictly younger than ``cutoff``.

    An item whose mtime equals the cutoff is never removed.
    """
    relation = AgeRelation(relation)
    scope = frozenset(scope)
    if not scope:
        raise PolicyInputError("Age-based removal requires an explicit scope")
    limit = cutoff.timestamp() if isinstance(cutoff, datetime) else float(cutoff)
    stamp = datetime.fromtimestamp(limit).strftime("%Y-%m-%d %H:%M:%S")

    plan = RemovalPlan()
    for sub in model.subdirectories():
        if sub.kind not in scope:
            continue
        for item in sub.items:
            if relation is AgeRelation.OLDER_THAN and item.mtime < limit:
                plan.add(_removal(item, f"older than {stamp}"))
            elif relation is AgeRelation.YOUNGER_THAN and item.mtime > limit:
                plan.add(_removal(item, f"younger than {stamp}"))
    return plan


# ── size limit ───────────────────────────────────────────────────────────

def trim_to_size(model: CacheModel, limit: int) -> RemovalPlan:
    """Evict oldest items first until the evictable cache fits in ``limit``."""
    if limit < 0:
        raise PolicyInputError(f"Size limit must be >= 0, got {limit}")

    candidates = [item for kind in _EVICTABLE_KINDS for item in model.items(kind)]
    remaining = sum(item.size_bytes for item in candidates)
    plan = RemovalPlan()
    if remaining <= limit:
        log.info("Cache already within limit (%d <= %d bytes)", remaining, limit)
        return plan

    for item in sorted(candidates, key=lambda i: (i.mtime, str(i.path))):
        # a zero limit also takes empty items
        if remaining <= limit and limit > 0:
            break
        if plan.add(PlannedRemoval(item.path, item.size_bytes, f"trim to {limit} bytes")):
            remaining -= item.size_bytes
    return plan


# ── unreferenced packages ────────────────────────────────────────────────

def remove_unreferenced(
    model: CacheModel,
    retention: RetentionSet,
    include_mirrors: bool = False,
) -> RemovalPlan:
    """Remove every cached package version the retention set does not name.

    With ``include_mirrors`` git mirror databases and checkouts of
    repositories that are not referenced are removed as well.
    """
    plan = RemovalPlan()
    for _, versions in sorted(_package_items(model).items(), key=_package_key):
        for package in sorted(versions):
            if package in retention:
                continue
            for item in versions[package]:
                plan.add(_removal(item, "not referenced by lockfile"))

    if include_mirrors:
        for kind in (SubdirKind.MIRROR_DB, SubdirKind.MIRROR_CHECKOUTS):
            for item in model.items(kind):
                if item.name not in retention.git_repos:
                    plan.add(_removal(item, "git repository not referenced by lockfile"))
    return plan


# ── autoclean ────────────────────────────────────────────────────────────

def resolve_autoclean(autoclean: bool, expensive: bool) -> AutocleanMode:
    """Collapse the two autoclean switches into a single mode."""
    if expensive:
        return AutocleanMode.EXPENSIVE
    if autoclean:
        return AutocleanMode.NORMAL
    return AutocleanMode.NONE


def autoclean(model: CacheModel, mode: AutocleanMode) -> RemovalPlan:
    """Remove everything cargo can rebuild offline.

    Extracted sources are re-extracted from the archive cache and git
    checkouts from the mirror databases.  The expensive mode also asks
    for the mirror databases to be repacked.
    """
    plan = RemovalPlan()
    if mode is AutocleanMode.NONE:
        return plan
    for kind in (SubdirKind.SOURCE_CHECKOUT_CACHE, SubdirKind.MIRROR_CHECKOUTS):
        for sub in model.subdirectories(kind):
            plan.add(PlannedRemoval(sub.path, sub.total_size, mode.value))
    if mode is AutocleanMode.EXPENSIVE:
        plan.git_recompress.extend(item.path for item in model.items(SubdirKind.MIRROR_DB))
    return plan


# ── whole directories ────────────────────────────────────────────────────

def remove_subdirectories(model: CacheModel, scope: Iterable[SubdirKind]) -> RemovalPlan:
    scope = frozenset(scope)
    if not scope:
        raise PolicyInputError("No directories given to remove")
    plan = RemovalPlan()
    for sub in model.subdirectories():
        if sub.kind in scope:
            plan.add(PlannedRemoval(sub.path, sub.total_size, f"remove-dir {sub.kind.value}"))
    return plan


# ── corrupted sources ────────────────────────────────────────────────────

def remove_corrupted(
    model: CacheModel,
    corrupted: Iterable[tuple[str | None, PackageVersion]],
) -> RemovalPlan:
    """Remove the extracted sources (never the archives) of corrupted versions."""
    wanted = set(corrupted)
    plan = RemovalPlan()
    for item in model.items(SubdirKind.SOURCE_CHECKOUT_CACHE):
        if item.package is not None and (item.registry, item.package) in wanted:
            plan.add(_removal(item, "extracted source does not match archive"))
    return plan
