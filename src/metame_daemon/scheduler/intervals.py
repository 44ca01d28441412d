"""Duration strings used by heartbeat task intervals."""

from __future__ import annotations

import re

DEFAULT_INTERVAL_SECONDS = 3600

_INTERVAL_RE = re.compile(r"^(\d+)(s|m|h|d)$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_interval(value: str | None) -> int:
    """Convert ``"<int><s|m|h|d>"`` into seconds; anything else is one hour."""

    if not value:
        return DEFAULT_INTERVAL_SECONDS
    match = _INTERVAL_RE.match(value.strip())
    if match is None:
        return DEFAULT_INTERVAL_SECONDS
    amount, unit = match.groups()
    return int(amount) * _UNIT_SECONDS[unit]


__all__ = ["DEFAULT_INTERVAL_SECONDS", "parse_interval"]
