"""Shared test fixtures."""

from __future__ import annotations

import errno
import io
import os
import tarfile
import time
from pathlib import Path

import pytest

REGISTRY = "index.crates.io-6f17d22bba15001f"


def set_mtime(path: Path, mtime: float) -> None:
    os.utime(path, (mtime, mtime), follow_symlinks=False)


class FakeCargoHome:
    """Builds a cargo home layout under a temporary directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def add_crate(
        self,
        name: str,
        version: str,
        files: dict[str, bytes] | None = None,
        registry: str = REGISTRY,
        archive: bool = True,
        source: bool = True,
        mtime: float | None = None,
    ) -> tuple[Path, Path]:
        """Create ``<name>-<version>.crate`` and its extracted directory."""
        files = files or {"Cargo.toml": b"[package]\n", "src/lib.rs": b"x" * 100}
        stem = f"{name}-{version}"
        archive_path = self.root / "registry" / "cache" / registry / f"{stem}.crate"
        source_path = self.root / "registry" / "src" / registry / stem

        if archive:
            archive_path.parent.mkdir(parents=True, exist_ok=True)
            with tarfile.open(archive_path, "w:gz") as tar:
                for rel, data in files.items():
                    info = tarfile.TarInfo(f"{stem}/{rel}")
                    info.size = len(data)
                    tar.addfile(info, io.BytesIO(data))
        if source:
            for rel, data in files.items():
                target = source_path / rel
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(data)
            (source_path / ".cargo-ok").write_text('{"v":1}')

        if mtime is not None:
            for p in (archive_path, source_path):
                if p.exists():
                    set_mtime(p, mtime)
        return archive_path, source_path

    def add_index(self, registry: str = REGISTRY, size: int = 1000) -> Path:
        index = self.root / "registry" / "index" / registry
        (index / ".cache").mkdir(parents=True, exist_ok=True)
        (index / ".cache" / "se").write_bytes(b"i" * size)
        return index

    def add_git_db(self, repo: str, hash_: str = "a1b2c3d4e5f60718", size: int = 500,
                   mtime: float | None = None) -> Path:
        db = self.root / "git" / "db" / f"{repo}-{hash_}"
        (db / "objects").mkdir(parents=True, exist_ok=True)
        (db / "objects" / "pack").write_bytes(b"g" * size)
        (db / "HEAD").write_bytes(b"ref")
        if mtime is not None:
            set_mtime(db, mtime)
        return db

    def add_git_checkout(self, repo: str, rev: str, hash_: str = "a1b2c3d4e5f60718", size: int = 300,
                         mtime: float | None = None) -> Path:
        checkout = self.root / "git" / "checkouts" / f"{repo}-{hash_}" / rev
        checkout.mkdir(parents=True, exist_ok=True)
        (checkout / "lib.rs").write_bytes(b"c" * size)
        if mtime is not None:
            set_mtime(checkout, mtime)
        return checkout

    def add_binary(self, name: str, size: int = 2000) -> Path:
        binary = self.root / "bin" / name
        binary.parent.mkdir(parents=True, exist_ok=True)
        binary.write_bytes(b"b" * size)
        return binary


@pytest.fixture
def isolate_env(tmp_path, monkeypatch):
    """Keep settings and CARGO_HOME out of the real home directory."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.delenv("CARGO_HOME", raising=False)
    return tmp_path


@pytest.fixture
def cargo(tmp_path, isolate_env, monkeypatch) -> FakeCargoHome:
    """An empty cargo home, also exported as CARGO_HOME."""
    root = tmp_path / "cargo"
    root.mkdir()
    monkeypatch.setenv("CARGO_HOME", str(root))
    return FakeCargoHome(root)


@pytest.fixture
def populated(cargo) -> FakeCargoHome:
    """A cargo home with every kind of subdirectory."""
    now = time.time()
    cargo.add_index()
    cargo.add_crate("serde", "1.0.100", mtime=now - 300 * 86400)
    cargo.add_crate("serde", "1.0.150", mtime=now - 100 * 86400)
    cargo.add_crate("serde", "1.0.200", mtime=now - 10 * 86400)
    cargo.add_crate("libc", "0.2.150", mtime=now - 50 * 86400)
    cargo.add_git_db("rand", size=800, mtime=now - 200 * 86400)
    cargo.add_git_checkout("rand", "abc1234", mtime=now - 200 * 86400)
    cargo.add_binary("cargo-cache")
    return cargo


@pytest.fixture
def deny_access(monkeypatch):
    """Make listing or stat of chosen paths fail with EACCES, as for another user's files."""
    denied: set[str] = set()
    real_scandir = os.scandir
    real_stat = os.stat

    def _check(path) -> None:
        if isinstance(path, (str, os.PathLike)) and os.fspath(path) in denied:
            raise PermissionError(errno.EACCES, "Permission denied", os.fspath(path))

    def scandir(path="."):
        _check(path)
        return real_scandir(path)

    def stat(path, *args, **kwargs):
        _check(path)
        return real_stat(path, *args, **kwargs)

    monkeypatch.setattr(os, "scandir", scandir)
    monkeypatch.setattr(os, "stat", stat)

    def deny(*paths) -> None:
        denied.update(os.fspath(p) for p in paths)

    return deny
