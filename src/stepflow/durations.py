"""Duration strings used in workflow definitions and engine config."""

from __future__ import annotations

import re

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(ms|s|m|h)?$")
_MULTIPLIERS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_duration_seconds(duration: str) -> float:
    """Parse a duration string like '500ms', '2s', '1.5', '5m', '1h' to seconds.

    A bare number is taken as seconds. Raises ValueError on invalid format.
    """
    match = _DURATION_RE.match(duration.strip())
    if not match:
        msg = f"Invalid duration format: '{duration}'. Expected <number>[ms|s|m|h]"
        raise ValueError(msg)
    return float(match.group(1)) * _MULTIPLIERS[match.group(2) or "s"]
