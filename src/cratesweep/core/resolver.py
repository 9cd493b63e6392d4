"""Resolve the package versions a project still needs from its Cargo.lock."""

from __future__ import annotations

import logging
import tomllib
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

from cratesweep.core.errors import PolicyInputError
from cratesweep.core.policies import RetentionSet

log = logging.getLogger(__name__)

_LOCKFILE = "Cargo.lock"


class LockfileError(PolicyInputError):
    """Raised when no usable Cargo.lock can be found or parsed."""


@dataclass(frozen=True, slots=True)
class LockedPackage:
    name: str
    version: str
    source: str | None = None


def find_lockfile(manifest_path: Path | str) -> Path:
    """Locate the Cargo.lock for a manifest or project directory.

    Workspace members share the lockfile of the workspace root, so parent
    directories are searched too.
    """
    path = Path(manifest_path).expanduser().resolve()
    if path.name == _LOCKFILE and path.is_file():
        return path
    start = path if path.is_dir() else path.parent
    if not path.exists():
        raise LockfileError(f"Manifest not found: {manifest_path}")
    for directory in (start, *start.parents):
        candidate = directory / _LOCKFILE
        if candidate.is_file():
            return candidate
    raise LockfileError(f"No {_LOCKFILE} found for {manifest_path}; run 'cargo generate-lockfile' first")


def _read_entries(lockfile: Path) -> list[dict]:
    try:
        data = tomllib.loads(lockfile.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as e:
        raise LockfileError(f"Could not read {lockfile}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise LockfileError(f"Malformed {lockfile}: {e}") from e

    raw = data.get("package", [])
    if not isinstance(raw, list) or not raw:
        raise LockfileError(f"{lockfile} lists no packages")
    return raw


def load_lockfile(lockfile: Path) -> list[LockedPackage]:
    return _parse_packages(lockfile, _read_entries(lockfile))


def _parse_packages(lockfile: Path, raw: list[dict]) -> list[LockedPackage]:
    packages = []
    for entry in raw:
        try:
            packages.append(LockedPackage(entry["name"], entry["version"], entry.get("source")))
        except (KeyError, TypeError) as e:
            raise LockfileError(f"Malformed package entry in {lockfile}: {entry!r}") from e
    return packages


def _dependency_edges(
    raw_packages: list[dict],
    packages: list[LockedPackage],
) -> dict[LockedPackage, list[LockedPackage]]:
    by_name: dict[str, list[LockedPackage]] = {}
    for pkg in packages:
        by_name.setdefault(pkg.name, []).append(pkg)

    edges: dict[LockedPackage, list[LockedPackage]] = {}
    for raw, pkg in zip(raw_packages, packages):
        targets: list[LockedPackage] = []
        for dep in raw.get("dependencies", []):
            targets.extend(_match_dependency(dep, by_name))
        edges[pkg] = targets
    return edges


def _match_dependency(dep: str, by_name: dict[str, list[LockedPackage]]) -> list[LockedPackage]:
    """Match ``name``, ``name version`` or ``name version (source)``.

    An ambiguous reference keeps every candidate.
    """
    source = None
    if dep.endswith(")") and " (" in dep:
        dep, _, source = dep[:-1].partition(" (")
    name, _, version = dep.partition(" ")
    candidates = by_name.get(name, [])
    if version:
        candidates = [p for p in candidates if p.version == version]
    if source:
        candidates = [p for p in candidates if p.source == source]
    if not candidates:
        log.debug("Dependency %r has no matching package in lockfile", dep)
    return candidates


def git_repo_name(source: str) -> str | None:
    """Repository name cargo uses for a ``git+<url>`` source, else None."""
    if not source.startswith("git+"):
        return None
    url = urlsplit(source[len("git+"):])
    name = url.path.rstrip("/").rsplit("/", 1)[-1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    return name or None


def resolve(manifest_path: Path | str) -> RetentionSet:
    """Every (name, version) reachable from the workspace members.

    Roots are the packages without a ``source`` (the workspace's own
    packages); everything reachable from them through the dependency lists
    is retained.
    """
    lockfile = find_lockfile(manifest_path)
    log.info("Resolving references from %s", lockfile)
    raw = _read_entries(lockfile)
    packages = _parse_packages(lockfile, raw)
    edges = _dependency_edges(raw, packages)

    roots = [p for p in packages if p.source is None] or packages
    seen: set[LockedPackage] = set(roots)
    queue = deque(roots)
    while queue:
        pkg = queue.popleft()
        for dep in edges.get(pkg, []):
            if dep not in seen:
                seen.add(dep)
                queue.append(dep)

    git_repos = {name for p in seen if p.source and (name := git_repo_name(p.source))}
    retention = RetentionSet(
        packages=frozenset((p.name, p.version) for p in seen),
        git_repos=frozenset(git_repos),
    )
    log.info("%d packages and %d git repositories are referenced", len(retention.packages), len(git_repos))
    return retention


def resolve_all(manifest_paths: list[Path | str]) -> RetentionSet:
    """Union of the retention sets of several projects."""
    packages: set[tuple[str, str]] = set()
    repos: set[str] = set()
    for path in manifest_paths:
        retention = resolve(path)
        packages |= retention.packages
        repos |= retention.git_repos
    return RetentionSet(frozenset(packages), frozenset(repos))
