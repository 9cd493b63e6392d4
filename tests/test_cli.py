"""Tests for the click command line."""

from __future__ import annotations

import json
import textwrap

import pytest
from click.testing import CliRunner

from cratesweep.cli import main


@pytest.fixture
def run(populated):
    runner = CliRunner()

    def _run(*args):
        return runner.invoke(main, ["--cargo-home", str(populated.root), *args])

    return _run


def _crates(populated):
    return sorted(p.name for p in (populated.root / "registry" / "cache").rglob("*.crate"))


class TestReadOnly:
    def test_default_is_summary(self, run):
        result = run()
        assert result.exit_code == 0
        assert "Total:" in result.output

    def test_summary_json(self, run, populated):
        result = run("summary", "--json")
        data = json.loads(result.output)
        assert data["root"] == str(populated.root)
        kinds = [s["kind"] for s in data["subdirectories"]]
        assert "archive-cache" in kinds and "binaries" in kinds
        assert data["total_bytes"] == sum(s["total_bytes"] for s in data["subdirectories"])

    def test_paths(self, run, populated):
        result = run("paths")
        assert result.exit_code == 0
        assert str(populated.root / "git" / "db") in result.output

    def test_top_json(self, run, populated):
        populated.add_crate("serde", "1.1.0", files={"src/lib.rs": b"x" * 5000})
        data = json.loads(run("top", "1", "--json").output)
        sources = next(d for d in data if d["kind"] == "source-checkout-cache")
        assert [o["name"] for o in sources["owners"]] == ["serde-1.1.0"]

    def test_query_sorted_by_size(self, run):
        data = json.loads(run("query", "serde", "--sort", "size", "--json").output)
        sizes = [d["size_bytes"] for d in data]
        assert sizes == sorted(sizes, reverse=True)
        assert len(data) == 6

    def test_query_bad_regex(self, run):
        result = run("query", "(")
        assert result.exit_code == 2

    def test_missing_cargo_home(self, tmp_path, isolate_env):
        result = CliRunner().invoke(main, ["--cargo-home", str(tmp_path / "nope"), "summary"])
        assert result.exit_code == 2
        assert "not found" in result.output


class TestClean:
    def test_requires_a_policy(self, run):
        assert run("clean").exit_code == 2

    def test_dry_run_keeps_files(self, run, populated):
        before = _crates(populated)
        result = run("clean", "--keep-duplicates", "1", "--dry-run", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["status"] == "dry_run"
        assert data["freed_bytes"] > 0
        assert _crates(populated) == before

    def test_keep_duplicates(self, run, populated):
        result = run("clean", "-k", "1")
        assert result.exit_code == 0
        assert _crates(populated) == ["libc-0.2.150.crate", "serde-1.0.200.crate"]

    def test_age_requires_scope(self, run, populated):
        before = _crates(populated)
        result = run("clean", "--older-than", "2000.01.01")
        assert result.exit_code == 2
        assert "--scope" in result.output
        assert _crates(populated) == before

    def test_bad_date(self, run):
        result = run("clean", "--older-than", "yesterday", "--scope", "all")
        assert result.exit_code == 2

    def test_bad_scope_fails_before_anything_runs(self, run, populated):
        before = _crates(populated)
        result = run("clean", "-k", "0", "--remove-dir", "registry-junk")
        assert result.exit_code == 2
        assert _crates(populated) == before

    def test_younger_than_everything(self, run, populated):
        result = run("clean", "--younger-than", "2000.01.01", "--scope", "archive-cache")
        assert result.exit_code == 0
        assert _crates(populated) == []

    def test_autoclean_flags_collapse(self, run, populated, monkeypatch):
        monkeypatch.setattr("cratesweep.core.git.has_git", lambda: True)
        calls = []
        monkeypatch.setattr("cratesweep.core.git.recompress_repo", lambda repo: calls.append(repo))
        result = run("clean", "--autoclean", "--autoclean-expensive")
        assert result.exit_code == 0
        assert len(calls) == 1
        assert not (populated.root / "git" / "checkouts").exists()

    def test_deletion_failure_sets_exit_status(self, run, monkeypatch):
        def boom(path):
            raise PermissionError(13, "Permission denied", str(path))

        monkeypatch.setattr("cratesweep.core.executor._remove_path", boom)
        result = run("clean", "--remove-dir", "mirror-db")
        assert result.exit_code == 1
        assert "Permission denied" in result.output


class TestTrim:
    def test_requires_limit(self, run):
        assert run("trim").exit_code == 2

    def test_bad_limit(self, run):
        assert run("trim", "--limit", "lots").exit_code == 2

    def test_zero_keeps_index_and_binaries(self, run, populated):
        result = run("trim", "--limit", "0")
        assert result.exit_code == 0
        assert _crates(populated) == []
        assert (populated.root / "bin" / "cargo-cache").exists()
        assert any((populated.root / "registry" / "index").iterdir())


class TestCleanUnref:
    def test_removes_unreferenced(self, run, populated, tmp_path):
        project = tmp_path / "proj"
        project.mkdir()
        (project / "Cargo.toml").write_text("")
        (project / "Cargo.lock").write_text(textwrap.dedent("""\
            [[package]]
            name = "proj"
            version = "0.1.0"
            dependencies = ["serde"]

            [[package]]
            name = "serde"
            version = "1.0.200"
            source = "registry+https://github.com/rust-lang/crates.io-index"
        """))
        result = run("clean-unref", "--manifest-path", str(project / "Cargo.toml"))
        assert result.exit_code == 0
        assert _crates(populated) == ["serde-1.0.200.crate"]
        assert (populated.root / "git" / "db").exists()

    def test_missing_lockfile(self, run, tmp_path, populated):
        before = _crates(populated)
        result = run("clean-unref", "--manifest-path", str(tmp_path / "nothing"))
        assert result.exit_code == 2
        assert _crates(populated) == before


class TestVerify:
    def test_clean_cache(self, run):
        result = run("verify")
        assert result.exit_code == 0
        assert "ok" in result.output

    def test_corrupted_source_removed(self, run, populated):
        source = populated.root / "registry" / "src" / "index.crates.io-6f17d22bba15001f" / "libc-0.2.150"
        (source / "src" / "lib.rs").write_bytes(b"tampered")
        result = run("verify", "--clean-corrupted")
        assert result.exit_code == 0
        assert not source.exists()
        assert "libc-0.2.150.crate" in _crates(populated)

    def test_corruption_reported_without_cleaning(self, run, populated):
        source = populated.root / "registry" / "src" / "index.crates.io-6f17d22bba15001f" / "libc-0.2.150"
        (source / "Cargo.toml").unlink()
        data = json.loads(run("verify", "--json").output)
        assert [c["name"] for c in data["corrupted"]] == ["libc"]


class TestScanErrors:
    def test_nothing_scanned_fails(self, cargo, deny_access):
        (cargo.root / "registry" / "cache").mkdir(parents=True)
        deny_access(cargo.root / "registry" / "cache")
        result = CliRunner().invoke(main, ["--cargo-home", str(cargo.root), "summary"])
        assert result.exit_code == 1
        assert "Permission denied" in result.output
        assert "Could not scan anything" in result.output

    def test_partial_scan_succeeds_with_warnings(self, run, populated, deny_access):
        deny_access(populated.root / "git" / "db")
        result = run("summary", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["total_bytes"] > 0
        assert len(data["warnings"]) == 1

    def test_clean_reports_scan_warnings(self, run, populated, deny_access):
        deny_access(populated.root / "git" / "db")
        result = run("clean", "-k", "1", "--dry-run", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert any("Permission denied" in w for w in data["warnings"])

    def test_text_report_shows_duration(self, run):
        result = run("clean", "-k", "1", "--dry-run")
        assert result.exit_code == 0
        assert "Done in" in result.output


class TestConfig:
    def test_lists_defaults(self, run):
        result = run("config")
        assert result.exit_code == 0
        assert "scan.workers = 4" in result.output
        assert "trim.limit = null" in result.output

    def test_set_then_get(self, run):
        assert run("config", "scan.workers", "8").exit_code == 0
        assert run("config", "scan.workers").output.strip() == "8"

    @pytest.mark.parametrize(
        "args",
        [("nope.key",), ("scan.workers", "many"), ("scan.workers", "0"), ("trim.limit", "lots")],
    )
    def test_rejects_bad_input(self, run, args):
        assert run("config", *args).exit_code == 2

    def test_trim_uses_configured_limit(self, run, populated):
        assert run("config", "trim.limit", "0").exit_code == 0
        result = run("trim")
        assert result.exit_code == 0
        assert _crates(populated) == []
