"""Removal plan dataclasses."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator


@dataclass(frozen=True, slots=True)
class PlannedRemoval:
    """A single path scheduled for removal.

    Entries that share a ``group`` must be removed together (for example
    the archive and the extracted source of one package version).
    """

    path: Path
    size_bytes: int
    reason: str
    group: str = ""


@dataclass(slots=True)
class RemovalPlan:
    """Ordered, path-unique list of removals.

    Adding a path that is already planned keeps the first entry, so the
    reason reported is the one from the policy that ran first.  A path
    below an already planned directory is dropped as well, since removing
    the directory covers it.
    """

    entries: list[PlannedRemoval] = field(default_factory=list)
    _paths: set[Path] = field(default_factory=set, repr=False)
    git_recompress: list[Path] = field(default_factory=list)

    def add(self, entry: PlannedRemoval) -> bool:
        if entry.path in self._paths or any(p in self._paths for p in entry.path.parents):
            return False
        self._paths.add(entry.path)
        self.entries.append(entry)
        return True

    def extend(self, entries: Iterable[PlannedRemoval]) -> None:
        for entry in entries:
            self.add(entry)

    def merge(self, other: RemovalPlan) -> RemovalPlan:
        self.extend(other.entries)
        for repo in other.git_recompress:
            if repo not in self.git_recompress:
                self.git_recompress.append(repo)
        return self

    @property
    def total_bytes(self) -> int:
        return sum(e.size_bytes for e in self.entries)

    def groups(self) -> dict[str, list[PlannedRemoval]]:
        """Entries bucketed by removal group, in plan order."""
        grouped: dict[str, list[PlannedRemoval]] = {}
        for entry in self.entries:
            grouped.setdefault(entry.group or str(entry.path), []).append(entry)
        return grouped

    def __iter__(self) -> Iterator[PlannedRemoval]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, path: object) -> bool:
        return path in self._paths


def merge_plans(*plans: RemovalPlan) -> RemovalPlan:
    """Concatenate plans in order, keeping the first entry for each path."""
    merged = RemovalPlan()
    for plan in plans:
        merged.merge(plan)
    return merged
