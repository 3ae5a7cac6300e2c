"""
Timeframe notation helpers.

Charting platforms label timeframes unit-first (``M15``, ``H4``, ``D1``,
``MN1``); the app displays them number-first (``15m``, ``4h``, ``1D``,
``1M``).
"""

import re
from typing import Optional

_PLATFORM_UNITS = {"M": "m", "H": "h", "D": "D", "W": "W"}
_DISPLAY_UNITS = {"m": "M", "h": "H", "H": "H", "d": "D", "D": "D", "w": "W", "W": "W", "M": "MN"}

_PLATFORM_FORMAT = re.compile(r"(MN|[MHDW])(\d+)")
_DISPLAY_FORMAT = re.compile(r"(\d+)([mhHdDwWM])")


def _clean(timeframe: str) -> str:
    return re.sub(r"\s+", "", timeframe.replace("*", ""))


def format_timeframe(timeframe: Optional[str]) -> str:
    """Convert platform notation to display notation.

    ``M15`` -> ``15m``, ``H1`` -> ``1h``, ``D1`` -> ``1D``, ``W1`` -> ``1W``,
    ``MN1`` -> ``1M``. Anything else is returned unchanged.
    """
    if not timeframe:
        return ""
    match = _PLATFORM_FORMAT.fullmatch(_clean(timeframe).upper())
    if not match:
        return timeframe
    unit, number = match.groups()
    if unit == "MN":
        return f"{number}M"
    return f"{number}{_PLATFORM_UNITS[unit]}"


def to_platform_timeframe(timeframe: Optional[str]) -> str:
    """Convert display notation back to platform notation.

    ``15m`` -> ``M15``, ``4h`` -> ``H4``, ``1D`` -> ``D1``, ``1M`` -> ``MN1``.
    Lowercase ``m`` is minutes and uppercase ``M`` is months.
    """
    if not timeframe:
        return ""
    match = _DISPLAY_FORMAT.fullmatch(_clean(timeframe))
    if not match:
        return timeframe
    number, unit = match.groups()
    return f"{_DISPLAY_UNITS[unit]}{number}"
