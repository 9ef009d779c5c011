"""
Timeframe labels: importance weights and granularity.
"""

import re
from typing import Iterable, List, Optional, Sequence, Tuple

DEFAULT_TIMEFRAME_WEIGHTS: Sequence[Tuple[Tuple[str, ...], float]] = (
    (("1d", "daily"), 2.0),
    (("4h",), 1.6),
    (("1h",), 1.4),
    (("30m",), 1.2),
    (("15m",), 1.1),
)

_UNIT_MINUTES = {
    "m": 1, "min": 1, "minute": 1, "minutes": 1, "t": 1,
    "h": 60, "hour": 60, "hours": 60,
    "d": 1440, "day": 1440, "days": 1440, "daily": 1440,
    "w": 10080, "week": 10080, "weeks": 10080, "weekly": 10080,
}

_LABEL_PATTERN = re.compile(r"^\s*(\d*)\s*([a-z]+)\s*$")


def auto_timeframe_weight(label: str,
                          table: Optional[Iterable[Tuple[Tuple[str, ...], float]]] = None,
                          default: float = 1.0) -> float:
    """
    Importance of a timeframe derived from its label.

    Substring match against the lower-cased label, first hit wins, so "1D",
    "1day" and "daily" all map to the daily weight. A bare "d" counts as
    daily too.
    """
    lowered = str(label).strip().lower()
    rules = list(table) if table is not None else list(DEFAULT_TIMEFRAME_WEIGHTS)
    for needles, weight in rules:
        if any(needle in lowered for needle in needles):
            return float(weight)
        if "daily" in needles and lowered == "d":
            return float(weight)
    return float(default)


def timeframe_minutes(label: str) -> Optional[float]:
    """
    Parse a label such as "5m", "15Min", "1h", "4H", "1D", "1w" into minutes.

    Returns None when the label cannot be parsed.
    """
    match = _LABEL_PATTERN.match(str(label).lower())
    if not match:
        return None
    count, unit = match.groups()
    if unit not in _UNIT_MINUTES:
        return None
    return float(int(count) if count else 1) * _UNIT_MINUTES[unit]


def granularity_order(labels: Sequence[str]) -> List[int]:
    """
    Indices of `labels` from the shortest timeframe to the longest.

    Unparseable labels rank after every parseable one; ties keep input order.
    """
    minutes = [timeframe_minutes(label) for label in labels]
    return sorted(range(len(labels)), key=lambda i: (minutes[i] is None, minutes[i] or 0.0, i))
