"""Cache item dataclasses."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from functools import total_ordering
from pathlib import Path

import semver

log = logging.getLogger(__name__)


class ItemKind(str, Enum):
    """What a single cache item physically is."""

    ARCHIVE = "archive"
    EXTRACTED_SOURCE = "extracted-source"
    INDEX = "index"
    MIRROR_DB = "mirror-db"
    MIRROR_CHECKOUT = "mirror-checkout"
    BINARY = "binary"


@total_ordering
@dataclass(frozen=True, slots=True)
class PackageVersion:
    """A package name paired with its semantic version.

    Ordering follows semver precedence (pre-releases sort before the
    release, build metadata is ignored); the raw version text breaks ties
    so that sorting is deterministic.
    """

    name: str
    version: str

    @property
    def parsed(self) -> semver.Version:
        return semver.Version.parse(self.version)

    def _key(self) -> tuple[str, semver.Version, str]:
        return self.name, self.parsed, self.version

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, PackageVersion):
            return NotImplemented
        return self._key() < other._key()

    def __str__(self) -> str:
        return f"{self.name}-{self.version}"

    @classmethod
    def parse(cls, stem: str) -> PackageVersion | None:
        """Split ``<name>-<version>`` into a PackageVersion.

        Package names may contain dashes and versions may carry a dashed
        pre-release, so every dash is tried from the left and the first
        remainder that is a valid semver wins.
        """
        if stem.endswith(".crate"):
            stem = stem[: -len(".crate")]
        pos = stem.find("-")
        while pos > 0:
            candidate = stem[pos + 1:]
            if semver.Version.is_valid(candidate):
                return cls(stem[:pos], candidate)
            pos = stem.find("-", pos + 1)
        log.debug("Not a versioned package name: %s", stem)
        return None


@dataclass(frozen=True, slots=True)
class CacheItem:
    """One removable unit inside a cache subdirectory."""

    name: str
    path: Path
    size_bytes: int
    mtime: float
    kind: ItemKind
    registry: str | None = None
    package: PackageVersion | None = None
    file_count: int = 0

    @property
    def owner(self) -> str:
        """Summary key: ``name-version`` for a package, the plain name otherwise."""
        return str(self.package) if self.package is not None else self.name


@dataclass(frozen=True, slots=True)
class OwnerSummary:
    """Aggregate of all items belonging to one owner."""

    name: str
    count: int
    total_bytes: int

    @property
    def average_bytes(self) -> int:
        return self.total_bytes // self.count if self.count else 0
