"""Shared utility functions for timestamps and durations."""

from __future__ import annotations

import re
from datetime import datetime

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_iso_timestamp(ts_str: str | None) -> datetime | None:
    """Parse an ISO 8601 timestamp string to a timezone-aware datetime.

    Returns None for empty/None input or unparseable strings, so a pool whose
    status carries a malformed ``nextRun`` is treated as never scheduled.
    """
    if not ts_str:
        return None
    try:
        return datetime.fromisoformat(ts_str)
    except (ValueError, TypeError):
        return None


def parse_duration(value: str | float) -> float:
    """Parse a Kubernetes-style duration (``"1h30m"``, ``"90s"``, ``"500ms"``) into seconds.

    Plain numbers are taken as seconds.

    Raises:
        ValueError: If the value is negative or not a valid duration.
    """
    if isinstance(value, bool):
        msg = f"Invalid duration: {value!r}"
        raise ValueError(msg)
    if isinstance(value, int | float):
        if value < 0:
            msg = f"Invalid duration: {value!r}. Must not be negative."
            raise ValueError(msg)
        return float(value)

    text = value.strip()
    if text == "0":
        return 0.0

    total = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART_RE.match(text, pos)
        if match is None:
            msg = f"Invalid duration: {value!r}"
            raise ValueError(msg)
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()

    if pos == 0:
        msg = f"Invalid duration: {value!r}"
        raise ValueError(msg)
    return total


def format_duration(seconds: float) -> str:
    """Format a number of seconds in human-readable form."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        mins = int(seconds // 60)
        return f"{mins}m {seconds % 60:.0f}s"
    hours = int(seconds // 3600)
    mins = int((seconds % 3600) // 60)
    return f"{hours}h {mins}m {seconds % 60:.0f}s"
