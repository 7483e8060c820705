"""Duration parsing utilities."""

import re
from datetime import timedelta

from coversync.types import Duration

_DURATION_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h|d)$")
_UNITS: dict[str, float] = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3_600.0,
    "d": 86_400.0,
}


def parse_duration(duration: Duration) -> float:
    """Parse a duration to seconds.

    Accepts "250ms", "30s", "5m", "2h", "1d", a ``timedelta`` or a number of
    seconds (passed through).
    """
    if isinstance(duration, bool):
        raise ValueError(f"Invalid duration: {duration!r}")
    if isinstance(duration, timedelta):
        seconds = duration.total_seconds()
    elif isinstance(duration, (int, float)):
        seconds = float(duration)
    else:
        match = _DURATION_PATTERN.match(duration)
        if not match:
            raise ValueError(f"Invalid duration: {duration!r}")
        value, unit = match.groups()
        seconds = float(value) * _UNITS[unit]

    if seconds < 0:
        raise ValueError(f"Invalid duration: {duration!r}")
    return seconds
