"""Parse k6-style durations ("2m", "1m30s") and cleanup age thresholds."""

import re

from k6runner.errors import InputError

_UNIT_SECONDS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}
_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")

_AGE_UNITS = {"m": 60, "h": 3600, "d": 86400}


def parse_duration(value: str) -> int:
    """Convert a k6 duration string to whole seconds.

    Accepts compound values such as ``1h30m`` or ``1m30s``. A bare integer
    is read as seconds.

    Raises:
        InputError: If the string is empty or contains an unknown unit.
    """
    text = str(value).strip()
    if not text:
        raise InputError("duration must not be empty")
    if text.isdigit():
        return int(text)

    pos = 0
    total = 0.0
    for match in _PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise InputError(f"invalid duration: {value!r} (use e.g. 30s, 2m, 1h30m)")
    return int(round(total))


def parse_age(value: str) -> int:
    """Parse a cleanup age threshold such as ``2h``, ``1d`` or ``30m``.

    Only a single number followed by one of ``m``, ``h`` or ``d`` is
    accepted.

    Raises:
        InputError: On any other suffix or a non-numeric amount.
    """
    text = str(value).strip()
    match = re.fullmatch(r"(\d+)([a-zA-Z]*)", text)
    if not match or match.group(2) not in _AGE_UNITS:
        raise InputError(f"invalid time format: {value!r} (use: 1h, 2d, 30m)")
    return int(match.group(1)) * _AGE_UNITS[match.group(2)]


def format_seconds(seconds: int) -> str:
    """Render seconds as a compact k6 duration (``90`` -> ``1m30s``)."""
    seconds = int(seconds)
    if seconds <= 0:
        return "0s"
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    out = ""
    if hours:
        out += f"{hours}h"
    if minutes:
        out += f"{minutes}m"
    if secs:
        out += f"{secs}s"
    return out
