"""CLI interface for cratesweep."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, NoReturn

import click

from cratesweep.core.aggregator import top_per_subdirectory
from cratesweep.core.cache_model import CacheModel
from cratesweep.core.engine import CacheEngine, CleanRequest, RunReport
from cratesweep.core.errors import CacheRootError, PolicyInputError, ScanError
from cratesweep.core.policies import AgeRelation, parse_scope, resolve_autoclean
from cratesweep.core.resolver import resolve
from cratesweep.core.verifier import verify
from cratesweep.settings import DEFAULTS, Settings
from cratesweep.utils import bytes_to_human, cargo_home, format_elapsed, parse_date, parse_size

log = logging.getLogger(__name__)

EXIT_DELETE_FAILED = 1
EXIT_SCAN_FAILED = 1
EXIT_BAD_INPUT = 2


def _setup_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def _fail(message: str, code: int = EXIT_BAD_INPUT) -> NoReturn:
    click.echo(f"{click.style('error:', fg='red', bold=True)} {message}", err=True)
    sys.exit(code)


def _build_engine(ctx: click.Context) -> CacheEngine:
    settings: Settings = ctx.obj["settings"]
    try:
        root = cargo_home(ctx.obj["cargo_home"])
    except CacheRootError as e:
        _fail(str(e))
    return CacheEngine(root, max_workers=int(settings.get("scan.workers", 4)))


def _load(engine: CacheEngine) -> CacheModel:
    try:
        return engine.load()
    except ScanError as e:
        _echo_warnings(e.warnings)
        _fail(str(e), EXIT_SCAN_FAILED)


@click.group(invoke_without_command=True)
@click.option("-v", "--verbose", count=True, help="Increase verbosity (-v info, -vv debug)")
@click.option(
    "--cargo-home",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Cargo home to operate on (default: $CARGO_HOME or ~/.cargo)",
)
@click.pass_context
def main(ctx: click.Context, verbose: int, cargo_home: Path | None) -> None:
    """cratesweep: inspect and prune the Cargo download cache."""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["cargo_home"] = cargo_home
    ctx.obj.setdefault("settings", Settings())
    if ctx.invoked_subcommand is None:
        ctx.invoke(summary)


# ── summary ──────────────────────────────────────────────────────────────

@main.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def summary(ctx: click.Context, as_json: bool = False) -> None:
    """Show the size of every cache subdirectory."""
    engine = _build_engine(ctx)
    model = _load(engine)
    subdirs = model.subdirectories()

    if as_json:
        data = {
            "root": str(model.root),
            "total_bytes": model.total_size(),
            "subdirectories": [
                {
                    "kind": sub.kind.value,
                    "registry": sub.registry,
                    "path": str(sub.path),
                    "total_bytes": sub.total_size,
                    "items": sub.item_count,
                    "files": sub.file_count,
                }
                for sub in subdirs
            ],
            "warnings": model.warnings,
        }
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"\nCargo home: {click.style(str(model.root), bold=True)}\n")
    for sub in subdirs:
        click.echo(
            f"  {sub.label:60s} {click.style(bytes_to_human(sub.total_size), fg='green', bold=True):>20s}"
            f"  ({sub.item_count:,} items, {sub.file_count:,} files)"
        )
    if not subdirs:
        click.echo("  Cache is empty.")
    click.echo(f"\nTotal: {click.style(bytes_to_human(model.total_size()), fg='green', bold=True)}\n")
    _echo_warnings(model.warnings)


# ── paths ────────────────────────────────────────────────────────────────

@main.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def paths(ctx: click.Context, as_json: bool) -> None:
    """List the cache directories that were found."""
    engine = _build_engine(ctx)
    model = CacheModel(engine.root)
    subdirs = model.subdirectories()
    if as_json:
        click.echo(json.dumps(
            {"root": str(model.root), "subdirectories": {sub.label: str(sub.path) for sub in subdirs}},
            indent=2,
        ))
        return
    click.echo(f"{'cargo home':60s} {model.root}")
    for sub in subdirs:
        click.echo(f"{sub.label:60s} {sub.path}")
    _echo_warnings(model.report.warnings)


# ── top ──────────────────────────────────────────────────────────────────

@main.command()
@click.argument("limit", type=click.IntRange(min=1), default=5)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def top(ctx: click.Context, limit: int, as_json: bool) -> None:
    """Show the largest owners in every cache subdirectory."""
    engine = _build_engine(ctx)
    model = _load(engine)
    ranked = top_per_subdirectory(model, limit, engine.max_workers)

    if as_json:
        data = [
            {
                "kind": sub.kind.value,
                "registry": sub.registry,
                "owners": [
                    {"name": s.name, "count": s.count, "total_bytes": s.total_bytes, "average_bytes": s.average_bytes}
                    for s in owners
                ],
            }
            for sub, owners in ranked.items()
        ]
        click.echo(json.dumps(data, indent=2))
        return

    for sub, owners in ranked.items():
        click.echo(f"\n{click.style(sub.label, fg='blue', bold=True)}")
        if not owners:
            click.echo("  (empty)")
        for s in owners:
            click.echo(
                f"  {s.name:40s} {s.count:>5d}  {bytes_to_human(s.total_bytes):>12s}"
                f"  (avg {bytes_to_human(s.average_bytes)})"
            )
    click.echo()


# ── query ────────────────────────────────────────────────────────────────

@main.command()
@click.argument("pattern")
@click.option("--sort", "sort_by", type=click.Choice(["name", "size"]), default="name", help="Sort order")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def query(ctx: click.Context, pattern: str, sort_by: str, as_json: bool) -> None:
    """Find cache items whose name matches a regular expression."""
    engine = _build_engine(ctx)
    try:
        items = engine.query(pattern)
    except PolicyInputError as e:
        _fail(str(e))
    except ScanError as e:
        _echo_warnings(e.warnings)
        _fail(str(e), EXIT_SCAN_FAILED)

    if sort_by == "size":
        items.sort(key=lambda i: (-i.size_bytes, i.path.name))
    else:
        items.sort(key=lambda i: (i.path.name, str(i.path)))

    if as_json:
        data = [
            {"name": i.path.name, "kind": i.kind.value, "path": str(i.path), "size_bytes": i.size_bytes}
            for i in items
        ]
        click.echo(json.dumps(data, indent=2))
        return

    if not items:
        click.echo(f"Nothing matches {pattern!r}.")
        return
    for i in items:
        click.echo(f"  {i.path.name:50s} {i.kind.value:18s} {bytes_to_human(i.size_bytes):>12s}")
    total = sum(i.size_bytes for i in items)
    click.echo(f"\n{len(items):,} items, {click.style(bytes_to_human(total), fg='green', bold=True)}")


# ── clean ────────────────────────────────────────────────────────────────

@main.command()
@click.option("--keep-duplicates", "-k", type=int, default=None, metavar="N",
              help="Keep only the N newest versions of every package")
@click.option("--remove-dir", "-r", default=None, metavar="SCOPE",
              help="Remove whole directories: index, mirror-db, mirror-checkouts, "
                   "archive-cache, source-checkout-cache, all")
@click.option("--older-than", "-o", default=None, metavar="DATE",
              help="Remove items last modified before DATE (YYYY.MM.DD or HH:MM:SS)")
@click.option("--younger-than", "-y", default=None, metavar="DATE",
              help="Remove items last modified after DATE (YYYY.MM.DD or HH:MM:SS)")
@click.option("--scope", "-s", default=None, help="Subdirectories the date filters apply to")
@click.option("--autoclean", "-a", is_flag=True, help="Remove extracted sources and git checkouts")
@click.option("--autoclean-expensive", "-e", is_flag=True,
              help="Like --autoclean, and also repack the git mirror databases")
@click.option("--dry-run", "-n", is_flag=True, help="Show what would be removed without doing it")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def clean(
    ctx: click.Context,
    keep_duplicates: int | None,
    remove_dir: str | None,
    older_than: str | None,
    younger_than: str | None,
    scope: str | None,
    autoclean: bool,
    autoclean_expensive: bool,
    dry_run: bool,
    as_json: bool,
) -> None:
    """Remove cache content selected by one or more policies."""
    # All inputs are validated before the cache is scanned.
    try:
        request = CleanRequest(autoclean=resolve_autoclean(autoclean, autoclean_expensive))
        if remove_dir is not None:
            request.remove_dirs = parse_scope(remove_dir)
        if keep_duplicates is not None:
            if keep_duplicates < 0:
                raise PolicyInputError(f"--keep-duplicates must be >= 0, got {keep_duplicates}")
            request.keep_duplicates = keep_duplicates
        if older_than and younger_than:
            raise PolicyInputError("--older-than and --younger-than are mutually exclusive")
        if older_than or younger_than:
            if scope is None:
                raise PolicyInputError("--older-than/--younger-than require --scope")
            request.age_relation = AgeRelation.OLDER_THAN if older_than else AgeRelation.YOUNGER_THAN
            request.age_cutoff = parse_date(older_than or younger_than)
            request.age_scope = parse_scope(scope)
        elif scope is not None:
            raise PolicyInputError("--scope only applies to --older-than/--younger-than")
    except PolicyInputError as e:
        _fail(str(e))

    if request.is_empty:
        _fail("Nothing to do: pass at least one of --keep-duplicates, --remove-dir, "
              "--older-than, --younger-than, --autoclean, --autoclean-expensive")
    _run(ctx, request, dry_run, as_json)


# ── trim ─────────────────────────────────────────────────────────────────

@main.command()
@click.option("--limit", "-l", default=None, metavar="SIZE",
              help="Size to shrink the cache to, e.g. 500M, 2GB or 1.5GiB (K/M/G/T = 1000, KiB/MiB/GiB/TiB = 1024)")
@click.option("--dry-run", "-n", is_flag=True, help="Show what would be removed without doing it")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def trim(ctx: click.Context, limit: str | None, dry_run: bool, as_json: bool) -> None:
    """Evict the oldest cache items until the cache fits in a size limit."""
    settings: Settings = ctx.obj["settings"]
    limit = limit or settings.get("trim.limit")
    if not limit:
        _fail("--limit is required (or set trim.limit in the settings file)")
    try:
        request = CleanRequest(trim_limit=parse_size(str(limit)))
    except PolicyInputError as e:
        _fail(str(e))
    _run(ctx, request, dry_run, as_json)


# ── clean-unref ──────────────────────────────────────────────────────────

@main.command("clean-unref")
@click.option("--manifest-path", "-m", type=click.Path(path_type=Path), default=Path("Cargo.toml"),
              show_default=True, help="Cargo.toml (or project directory) whose lockfile lists what to keep")
@click.option("--include-git", is_flag=True, help="Also remove git mirrors the lockfile does not reference")
@click.option("--dry-run", "-n", is_flag=True, help="Show what would be removed without doing it")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def clean_unref(ctx: click.Context, manifest_path: Path, include_git: bool, dry_run: bool, as_json: bool) -> None:
    """Remove every cached package a project's Cargo.lock does not need."""
    try:
        retention = resolve(manifest_path)
    except PolicyInputError as e:
        _fail(str(e))
    _run(ctx, CleanRequest(retention=retention, include_mirrors=include_git), dry_run, as_json)


# ── verify ───────────────────────────────────────────────────────────────

@main.command("verify")
@click.option("--clean-corrupted", is_flag=True, help="Remove extracted sources that do not match their archive")
@click.option("--dry-run", "-n", is_flag=True, help="Show what would be removed without doing it")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def verify_cmd(ctx: click.Context, clean_corrupted: bool, dry_run: bool, as_json: bool) -> None:
    """Check extracted sources against their .crate archives."""
    engine = _build_engine(ctx)
    model = _load(engine)
    report = verify(model, engine.max_workers)

    if clean_corrupted and report.corrupted:
        _run(ctx, CleanRequest(corrupted=report), dry_run, as_json, engine=engine, model=model)
        return

    if as_json:
        data = {
            "checked": report.checked,
            "corrupted": [
                {"name": c.package.name, "version": c.package.version, "registry": c.registry,
                 "path": str(c.path), "reason": c.reason}
                for c in report.corrupted
            ],
            "warnings": report.warnings,
        }
        click.echo(json.dumps(data, indent=2))
    else:
        for c in report.corrupted:
            click.echo(f"  {click.style('✗', fg='red')} {str(c.package):40s} {c.reason}")
        status = click.style("ok", fg="green") if report.ok else click.style(
            f"{len(report.corrupted)} corrupted", fg="red", bold=True)
        click.echo(f"\nChecked {report.checked:,} extracted sources: {status}")
        _echo_warnings(report.warnings)
    if not report.ok:
        sys.exit(EXIT_DELETE_FAILED)


# ── config ───────────────────────────────────────────────────────────────

def _setting_keys() -> list[str]:
    return [f"{section}.{name}" for section, values in DEFAULTS.items() for name in values]


def _parse_setting(key: str, value: str) -> Any:
    if key == "scan.workers":
        try:
            workers = int(value)
        except ValueError:
            raise PolicyInputError(f"scan.workers must be an integer, got {value!r}") from None
        if workers < 1:
            raise PolicyInputError(f"scan.workers must be at least 1, got {workers}")
        return workers
    if key == "trim.limit":
        if value.lower() in ("", "none"):
            return None
        parse_size(value)
    return value


@main.command()
@click.argument("key", required=False)
@click.argument("value", required=False)
@click.pass_context
def config(ctx: click.Context, key: str | None, value: str | None) -> None:
    """Show settings, read KEY, or set KEY to VALUE."""
    settings: Settings = ctx.obj["settings"]
    keys = _setting_keys()
    if key is None:
        click.echo(f"# {settings.path}")
        for k in keys:
            click.echo(f"{k} = {json.dumps(settings.get(k))}")
        return
    if key not in keys:
        _fail(f"Unknown setting {key!r} (known: {', '.join(keys)})")
    if value is None:
        click.echo(json.dumps(settings.get(key)))
        return
    try:
        settings.set(key, _parse_setting(key, value))
    except PolicyInputError as e:
        _fail(str(e))
    log.info("Set %s in %s", key, settings.path)


# ── shared reporting ─────────────────────────────────────────────────────

def _run(
    ctx: click.Context,
    request: CleanRequest,
    dry_run: bool,
    as_json: bool,
    engine: CacheEngine | None = None,
    model: CacheModel | None = None,
) -> None:
    engine = engine or _build_engine(ctx)
    try:
        report = engine.run(request, dry_run=dry_run, model=model)
    except PolicyInputError as e:
        _fail(str(e))
    except CacheRootError as e:
        _fail(str(e))
    except ScanError as e:
        _echo_warnings(e.warnings)
        _fail(str(e), EXIT_SCAN_FAILED)

    if as_json:
        click.echo(json.dumps(_report_dict(report), indent=2))
    else:
        _print_report(report)
    if report.errors:
        sys.exit(EXIT_DELETE_FAILED)


def _report_dict(report: RunReport) -> dict:
    sizes = report.sizes
    data = {
        "status": "dry_run" if report.outcome.dry_run else "cleaned",
        "planned": [
            {"path": str(e.path), "size_bytes": e.size_bytes, "reason": e.reason}
            for e in report.plan
        ],
        "freed_bytes": report.outcome.freed_bytes,
        "removed_count": report.outcome.removed_count,
        "errors": report.errors,
        "warnings": report.warnings,
        "elapsed_seconds": round(report.elapsed, 3),
        "size_before": sizes.before,
        "size_after": sizes.after,
        "percent_change": round(sizes.percent_change, 2),
        "subdirectories": [
            {"kind": s.kind.value, "registry": s.registry, "before": s.before, "after": s.after}
            for s in sizes.subdirs
        ],
    }
    if report.git is not None:
        data["git_recompress"] = {
            "repos": report.git.repos,
            "freed_bytes": report.git.freed_bytes,
        }
    return data


def _print_report(report: RunReport) -> None:
    dry_run = report.outcome.dry_run
    verb = "Would remove" if dry_run else "Removing"
    if not report.plan:
        click.echo("Nothing to remove.")
    for entry in report.plan:
        click.echo(f"  {verb} {entry.path} ({bytes_to_human(entry.size_bytes)}): {entry.reason}")

    sizes = report.sizes
    click.echo()
    for s in sizes.subdirs:
        if s.freed_bytes:
            click.echo(f"  {s.label:60s} {bytes_to_human(s.before):>12s} => {bytes_to_human(s.after):>12s}")
    click.echo(
        f"\nSize: {bytes_to_human(sizes.before)} => "
        f"{click.style(bytes_to_human(sizes.after), fg='green', bold=True)} "
        f"({sizes.percent_change:+.1f}%, {bytes_to_human(sizes.freed_bytes)} "
        f"{'would be freed' if dry_run else 'freed'})"
    )
    if report.git is not None and report.git.repos:
        click.echo(f"Recompressed {report.git.repos} git repositories, freed {bytes_to_human(report.git.freed_bytes)}")
    if dry_run:
        click.echo("(dry run, nothing was deleted)")
    click.echo(f"Done in {format_elapsed(report.elapsed)}")
    _echo_warnings(report.warnings)
    for error in report.errors:
        click.echo(f"  {click.style('!', fg='yellow')} {error}", err=True)


def _echo_warnings(warnings: list[str]) -> None:
    for warning in warnings:
        click.echo(f"  {click.style('!', fg='yellow')} {warning}", err=True)
