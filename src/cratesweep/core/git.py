"""Repack git mirror databases with the system ``git``."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from cratesweep.core.scanner import tree_info

log = logging.getLogger(__name__)

_GC_STEPS: tuple[tuple[str, ...], ...] = (
    ("reflog", "expire", "--expire=now", "--all"),
    ("pack-refs", "--all", "--prune"),
    ("gc", "--aggressive", "--prune=now"),
)


@dataclass(slots=True)
class RecompressResult:
    repos: int = 0
    size_before: int = 0
    size_after: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def freed_bytes(self) -> int:
        return max(0, self.size_before - self.size_after)


def has_git() -> bool:
    return shutil.which("git") is not None


def recompress_repo(repo: Path) -> None:
    """Run the gc steps in one bare repository.

    Raises:
        subprocess.CalledProcessError: when a step fails.
    """
    for step in _GC_STEPS:
        subprocess.run(
            ["git", *step],
            cwd=repo,
            check=True,
            capture_output=True,
            text=True,
        )


def recompress_repos(repos: list[Path], dry_run: bool = False) -> RecompressResult:
    """Repack every repository; failures are collected, never raised."""
    result = RecompressResult()
    if not repos:
        return result
    if not has_git():
        result.errors.append("git not found, cannot recompress mirror databases")
        log.warning(result.errors[-1])
        return result

    for repo in repos:
        size, _ = tree_info(repo)
        result.size_before += size
        if dry_run:
            log.info("Would recompress %s", repo)
            result.size_after += size
            continue
        try:
            recompress_repo(repo)
        except subprocess.CalledProcessError as e:
            message = f"{repo}: git {' '.join(e.cmd[1:2])} failed: {(e.stderr or '').strip()}"
            log.warning(message)
            result.errors.append(message)
        except OSError as e:
            log.warning("%s: %s", repo, e)
            result.errors.append(f"{repo}: {e}")
        result.repos += 1
        result.size_after += tree_info(repo)[0]
    return result
