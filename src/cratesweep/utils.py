"""Shared utility functions."""

from __future__ import annotations

import logging
import os
import re
from datetime import datetime
from pathlib import Path

from cratesweep.core.errors import CacheRootError, PolicyInputError

log = logging.getLogger(__name__)

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")

_SIZE_UNITS = {
    "": 1,
    "b": 1,
    "k": 1000,
    "kb": 1000,
    "m": 1000**2,
    "mb": 1000**2,
    "g": 1000**3,
    "gb": 1000**3,
    "t": 1000**4,
    "tb": 1000**4,
    "kib": 1024,
    "mib": 1024**2,
    "gib": 1024**3,
    "tib": 1024**4,
}


def xdg_config_home() -> Path:
    """Return XDG_CONFIG_HOME, defaulting to ~/.config."""
    return Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))


def cargo_home(override: Path | str | None = None) -> Path:
    """Return the cache root: explicit override, CARGO_HOME, or ~/.cargo.

    Raises:
        CacheRootError: if the resolved directory does not exist.
    """
    if override is not None:
        root = Path(override)
    elif os.environ.get("CARGO_HOME"):
        root = Path(os.environ["CARGO_HOME"])
    else:
        root = Path.home() / ".cargo"
    root = root.expanduser()
    if not root.is_dir():
        raise CacheRootError(f"Cargo home not found: {root}")
    return root


def bytes_to_human(size_bytes: int) -> str:
    """Convert byte count to a human-readable string (decimal units)."""
    if size_bytes < 0:
        return f"-{bytes_to_human(-size_bytes)}"
    if size_bytes == 0:
        return "0 B"

    units = ("B", "KB", "MB", "GB", "TB")
    value = float(size_bytes)
    for unit in units[:-1]:
        if abs(value) < 1000:
            return f"{value:.2f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1000
    return f"{value:.2f} {units[-1]}"


def parse_size(text: str) -> int:
    """Parse a size limit such as ``500M``, ``1.5GB`` or ``2GiB`` into bytes.

    ``K``/``M``/``G``/``T`` (with or without a trailing ``B``) are powers
    of 1000, the ``iB`` forms are powers of 1024.  A bare number is bytes.
    """
    m = _SIZE_RE.match(text)
    if not m:
        raise PolicyInputError(f"Invalid size: {text!r}")
    number, unit = m.groups()
    factor = _SIZE_UNITS.get(unit.lower())
    if factor is None:
        raise PolicyInputError(f"Unknown size unit {unit!r} in {text!r}")
    return int(float(number) * factor)


def parse_date(text: str, now: datetime | None = None) -> datetime:
    """Parse a cutoff given as ``YYYY.MM.DD`` or ``HH:MM:SS`` (local time).

    A bare date keeps the current time of day; a bare time refers to today.
    """
    now = now or datetime.now()
    text = text.strip()
    try:
        if ":" in text:
            t = datetime.strptime(text, "%H:%M:%S")
            return now.replace(hour=t.hour, minute=t.minute, second=t.second, microsecond=0)
        d = datetime.strptime(text, "%Y.%m.%d")
        return now.replace(year=d.year, month=d.month, day=d.day, microsecond=0)
    except ValueError:
        raise PolicyInputError(
            f"Invalid date {text!r}: expected YYYY.MM.DD or HH:MM:SS"
        ) from None


def format_elapsed(seconds: float) -> str:
    """Format a run duration for the report footer."""
    if seconds < 1:
        return f"{seconds * 1000:.0f} ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds) // 60
    secs = seconds - minutes * 60
    return f"{minutes}m {secs:.0f}s"
