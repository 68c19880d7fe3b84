"""
Duration parsing helpers (``90s``, ``1h30m``, ``7d``)
"""
import re
from datetime import datetime, timedelta, timezone

_UNITS = {
    "ns": timedelta(microseconds=0.001),
    "us": timedelta(microseconds=1),
    "µs": timedelta(microseconds=1),
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}

_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h|d|w)")


def parse_duration(value: str) -> timedelta:
    """Parse a duration string.

    Accepts Go-style sequences of number/unit pairs plus day and week units.
    A bare ``0`` is zero. Raises ``ValueError`` on anything else.
    """
    if value is None:
        raise ValueError("empty duration")
    text = value.strip()
    if text == "0":
        return timedelta(0)
    if not text:
        raise ValueError("empty duration")

    total = timedelta(0)
    pos = 0
    for match in _PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()

    if pos != len(text) or pos == 0:
        raise ValueError(f"invalid duration: {value!r}")
    return total


def format_duration(delta: timedelta) -> str:
    """Render a timedelta as a compact duration string"""
    seconds = int(delta.total_seconds())
    if seconds and seconds % 86400 == 0:
        return f"{seconds // 86400}d"
    if seconds and seconds % 3600 == 0:
        return f"{seconds // 3600}h"
    if seconds and seconds % 60 == 0:
        return f"{seconds // 60}m"
    return f"{seconds}s"


def utc_now() -> datetime:
    """Current UTC time truncated to whole seconds"""
    return datetime.now(timezone.utc).replace(microsecond=0)
