"""Per-owner size aggregation."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable

from cratesweep.core.cache_model import CacheModel, Subdirectory
from cratesweep.models.cache_item import CacheItem, OwnerSummary

log = logging.getLogger(__name__)


def summarize(items: Iterable[CacheItem]) -> dict[str, OwnerSummary]:
    """Group items by owner and total their sizes.

    Each version of a package is its own owner; mirrors and other
    unversioned items are keyed by name.
    """
    counts: dict[str, int] = {}
    totals: dict[str, int] = {}
    for item in items:
        counts[item.owner] = counts.get(item.owner, 0) + 1
        totals[item.owner] = totals.get(item.owner, 0) + item.size_bytes
    return {name: OwnerSummary(name, counts[name], totals[name]) for name in counts}


def top_owners(summaries: dict[str, OwnerSummary] | Iterable[OwnerSummary], n: int) -> list[OwnerSummary]:
    """The ``n`` largest owners; equal totals are ordered by name."""
    if isinstance(summaries, dict):
        summaries = summaries.values()
    ranked = sorted(summaries, key=lambda s: (-s.total_bytes, s.name))
    return ranked[: max(n, 0)]


def _summarize_group(name: str, items: list[CacheItem]) -> OwnerSummary:
    return OwnerSummary(name, len(items), sum(i.size_bytes for i in items))


def summarize_subdirectory(subdir: Subdirectory, max_workers: int = 4) -> dict[str, OwnerSummary]:
    """Summarize one subdirectory with one task per owner group."""
    groups = subdir.items_grouped_by_owner()
    if len(groups) <= 1 or max_workers <= 1:
        return {name: _summarize_group(name, items) for name, items in groups.items()}

    result: dict[str, OwnerSummary] = {}
    with ThreadPoolExecutor(max_workers=min(max_workers, len(groups))) as executor:
        futures = {name: executor.submit(_summarize_group, name, items) for name, items in groups.items()}
        for name, future in futures.items():
            result[name] = future.result()
    return result


def summarize_model(model: CacheModel, max_workers: int = 4) -> dict[Subdirectory, dict[str, OwnerSummary]]:
    """Summaries for every subdirectory, one task per subdirectory.

    Each task returns its own mapping and the results are merged here,
    so no state is shared between workers.
    """
    subdirs = model.subdirectories()
    if not subdirs:
        return {}
    workers = max(1, min(max_workers, len(subdirs)))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [(sub, executor.submit(summarize_subdirectory, sub, 1)) for sub in subdirs]
        return {sub: future.result() for sub, future in futures}


def top_per_subdirectory(
    model: CacheModel,
    n: int,
    max_workers: int = 4,
) -> dict[Subdirectory, list[OwnerSummary]]:
    return {sub: top_owners(summaries, n) for sub, summaries in summarize_model(model, max_workers).items()}
