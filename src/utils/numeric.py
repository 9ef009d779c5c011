"""
Numeric helpers shared by the ensemble.

All helpers tolerate None/NaN input where noted instead of raising,
so a bad value from one indicator never takes the decision loop down.
"""

import math
from typing import Iterable, List, Optional


def clamp(x: float, lo: float, hi: float) -> float:
    """Clamp x into [lo, hi]."""
    return max(lo, min(hi, x))


def sign(x: float) -> int:
    """Return -1, 0 or +1."""
    if x > 0:
        return 1
    if x < 0:
        return -1
    return 0


def is_finite_number(x) -> bool:
    """True for real, finite numbers (bools excluded)."""
    if isinstance(x, bool):
        return False
    try:
        return math.isfinite(float(x))
    except (TypeError, ValueError):
        return False


def finite_values(values: Iterable) -> List[float]:
    """Keep only finite numbers, as floats."""
    return [float(v) for v in values if is_finite_number(v)]


def median(values: Iterable[float]) -> Optional[float]:
    """
    Median of the finite values, or None when there are none.

    Even counts average the two middle values.
    """
    ordered = sorted(finite_values(values))
    n = len(ordered)
    if n == 0:
        return None
    mid = n // 2
    if n % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2


def mean(values: Iterable[float]) -> Optional[float]:
    """Arithmetic mean of the finite values, or None."""
    vals = finite_values(values)
    if not vals:
        return None
    return sum(vals) / len(vals)
