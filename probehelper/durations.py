"""
Go-style duration strings.

Probe requests and the platform configuration express durations the way the
rest of the platform does: a sequence of decimal numbers each followed by a
unit, e.g. "300ms", "1.5h" or "2h45m". Valid units are "ns", "us" (or "µs"),
"ms", "s", "m" and "h". A bare "0" is accepted.
"""
import re

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

# Longest units first so "ms" is not read as "m" followed by garbage
_COMPONENT = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


class DurationError(ValueError):
    """Raised when a duration string cannot be parsed."""
    pass


def parse_duration(value: str) -> float:
    """
    Parse a duration string into seconds.

    Args:
        value: Duration such as "200ms" or "-1m30s"

    Returns:
        Duration in seconds (may be negative)

    Raises:
        DurationError: If the string is empty or uses an unknown unit
    """
    if value is None:
        raise DurationError("duration is missing")
    text = value.strip()
    sign = 1.0
    if text[:1] in ("+", "-"):
        if text[0] == "-":
            sign = -1.0
        text = text[1:]
    if text == "0":
        return 0.0
    if not text:
        raise DurationError(f"invalid duration {value!r}")

    total = 0.0
    pos = 0
    while pos < len(text):
        match = _COMPONENT.match(text, pos)
        if match is None:
            raise DurationError(f"invalid duration {value!r}")
        number, unit = match.groups()
        total += float(number) * _UNITS[unit]
        pos = match.end()
    return sign * total


def format_duration(seconds: float) -> str:
    """Render seconds in the shortest Go-style form used in logs and headers."""
    if seconds == 0:
        return "0s"
    if seconds < 1:
        return f"{seconds * 1000:g}ms"
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(int(minutes), 60)
    out = ""
    if hours:
        out += f"{hours}h"
    if hours or minutes:
        out += f"{minutes}m"
    return out + f"{secs:g}s"
