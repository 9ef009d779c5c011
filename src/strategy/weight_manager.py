"""
Weight Manager - per-indicator weights for a given timeframe.

Effective weights are built in three layers:
1. BASELINE - user-configurable distribution over indicator ids (sums to 1)
2. TIMEFRAME TILT - intraday leans on flow (vwap/volume), higher timeframes
   lean on structure (ema/ichimoku)
3. PERFORMANCE - each indicator's EWMA win rate and edge scale its weight
   by a multiplier bounded to [PERF_MAX_CUT, PERF_MAX_BOOST]

After every layer the vector is renormalized and floored at
MIN_INDICATOR_WEIGHT, so no indicator is ever silenced completely.

This class exclusively owns baseline weights and performance records. All
mutations and snapshots go through one lock.
"""

import copy
import logging
import re
import threading
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, Mapping, Optional

from src.utils import clamp, is_finite_number

logger = logging.getLogger("WeightManager")

DEFAULT_BASELINE_WEIGHTS = {
    "ema": 0.18,
    "macd": 0.18,
    "ichimoku": 0.14,
    "rsi": 0.12,
    "adx": 0.10,
    "bollinger": 0.10,
    "vwap": 0.08,
    "alligator": 0.06,
    "volume": 0.04,
}

DEFAULT_INTRADAY_TILT = {"vwap": 0.03, "volume": 0.02, "ichimoku": -0.03, "alligator": -0.02}
DEFAULT_HIGHER_TF_TILT = {"ema": 0.02, "ichimoku": 0.02, "vwap": -0.02, "volume": -0.02}

# 1m/3m/5m/15m/30m and 1h count as intraday ("5Min" style labels included)
INTRADAY_PATTERN = re.compile(r"^(1|3|5|15|30)(m|min|minute)$|^(1h|60m|60min|1hour)$", re.IGNORECASE)


def is_intraday(label: str) -> bool:
    """True for minute-level and hourly timeframe labels."""
    return bool(INTRADAY_PATTERN.match(str(label).strip()))


def _non_negative(value) -> float:
    if not is_finite_number(value):
        return 0.0
    return max(0.0, float(value))


def apply_floor(shares: Mapping[str, float], floor: float) -> Dict[str, float]:
    """
    Floor every share at `floor` while keeping the sum at 1.

    Shares that fall below the floor are pinned to it and the remaining
    budget is redistributed proportionally among the rest; repeated until
    nothing new drops below. Falls back to uniform when n * floor >= 1.
    """
    keys = list(shares.keys())
    n = len(keys)
    if n == 0:
        return {}
    if floor <= 0:
        return dict(shares)
    if floor * n >= 1:
        return {k: 1.0 / n for k in keys}

    pinned = set()
    while True:
        free = [k for k in keys if k not in pinned]
        budget = 1.0 - floor * len(pinned)
        free_total = sum(shares[k] for k in free)
        out = {}
        for k in keys:
            if k in pinned:
                out[k] = floor
            elif free_total > 0:
                out[k] = shares[k] / free_total * budget
            else:
                out[k] = budget / len(free)
        newly = [k for k in free if out[k] < floor]
        if not newly:
            return out
        pinned.update(newly)


def normalize_weights(weights: Mapping[str, float], min_weight: float = 0.02) -> Dict[str, float]:
    """
    Normalize a weight map to sum to 1 with a per-key floor.

    Negative, NaN and non-numeric weights count as zero. An all-zero map
    becomes uniform.
    """
    cleaned = {str(k): _non_negative(v) for k, v in weights.items()}
    if not cleaned:
        return {}
    total = sum(cleaned.values())
    if total <= 0:
        n = len(cleaned)
        return {k: 1.0 / n for k in cleaned}
    shares = {k: v / total for k, v in cleaned.items()}
    return apply_floor(shares, min_weight)


@dataclass
class PerformanceRecord:
    """EWMA performance state of one indicator"""
    win_rate_ewma: float = 0.5
    edge_ewma: float = 0.0
    sample_count: int = 0

    def update(self, outcome: float, alpha: float) -> None:
        win = 1.0 if outcome > 0 else 0.0
        self.win_rate_ewma = (1 - alpha) * self.win_rate_ewma + alpha * win
        self.edge_ewma = (1 - alpha) * self.edge_ewma + alpha * outcome
        self.sample_count += 1

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def performance_multiplier(record: Optional[PerformanceRecord],
                           max_boost: float = 1.35,
                           max_cut: float = 0.65,
                           win_blend: float = 0.6,
                           edge_blend: float = 0.4,
                           edge_cap: float = 1.5) -> float:
    """
    Convert a performance record into a weight multiplier.

    A 50% win rate with zero edge leaves the weight unchanged; better
    records boost up to max_boost, worse ones cut down to max_cut.
    """
    if record is None:
        return 1.0
    win_adj = (record.win_rate_ewma - 0.5) * 2
    edge_adj = clamp(record.edge_ewma, -edge_cap, edge_cap) / edge_cap
    mix = win_blend * win_adj + edge_blend * edge_adj
    if mix >= 0:
        mult = 1 + mix * (max_boost - 1)
    else:
        mult = 1 + mix * (1 - max_cut)
    return clamp(mult, max_cut, max_boost)


class WeightManager:
    """
    Holds baseline weights and performance records; produces the normalized
    effective weight vector for a timeframe label.
    """

    def __init__(self, config=None, baseline_weights: Optional[Mapping[str, float]] = None):
        self.config = config

        # Learner hyperparameters
        self.alpha = getattr(config, "LEARNER_ALPHA", 0.12)
        self.max_boost = getattr(config, "PERF_MAX_BOOST", 1.35)
        self.max_cut = getattr(config, "PERF_MAX_CUT", 0.65)
        self.win_blend = getattr(config, "PERF_WIN_BLEND", 0.6)
        self.edge_blend = getattr(config, "PERF_EDGE_BLEND", 0.4)
        self.edge_cap = getattr(config, "PERF_EDGE_CAP", 1.5)
        self.min_weight = getattr(config, "MIN_INDICATOR_WEIGHT", 0.02)

        # Timeframe tilt rules
        self.intraday_tilt = dict(getattr(config, "INTRADAY_TILT", DEFAULT_INTRADAY_TILT))
        self.higher_tf_tilt = dict(getattr(config, "HIGHER_TF_TILT", DEFAULT_HIGHER_TF_TILT))

        if baseline_weights is None:
            baseline_weights = getattr(config, "INDICATOR_BASELINE_WEIGHTS", DEFAULT_BASELINE_WEIGHTS)

        self._lock = threading.RLock()
        self._baseline: Dict[str, float] = normalize_weights(dict(baseline_weights), self.min_weight)
        self._performance: Dict[str, PerformanceRecord] = {}

        logger.info(f"[WEIGHTS] Initialized with {len(self._baseline)} indicators, "
                    f"alpha={self.alpha}, multiplier bounds=[{self.max_cut}, {self.max_boost}]")

    # ------------------------------------------------------------------
    # Baseline
    # ------------------------------------------------------------------

    def set_baseline_weights(self, partial: Mapping[str, Optional[float]]) -> Dict[str, float]:
        """
        Merge a partial map into the baseline and renormalize.

        None values are ignored; negative values count as zero. Returns the
        new baseline.
        """
        updates = {k: v for k, v in partial.items() if v is not None}
        with self._lock:
            merged = {**self._baseline, **updates}
            self._baseline = normalize_weights(merged, self.min_weight)
            snapshot = dict(self._baseline)
        logger.info(f"[WEIGHTS] Baseline updated ({len(updates)} keys): "
                    + ", ".join(f"{k}={v:.3f}" for k, v in snapshot.items()))
        return snapshot

    def get_baseline_weights(self) -> Dict[str, float]:
        """Read-only snapshot of the baseline."""
        with self._lock:
            return dict(self._baseline)

    # ------------------------------------------------------------------
    # Performance feedback
    # ------------------------------------------------------------------

    def record_outcome(self, outcome: float, indicator_ids: Iterable[str]) -> None:
        """
        Update the EWMA records of the indicators that took part in a trade.

        outcome: realized P&L in R multiples (+1.0 = hit 1R, -1.0 = lost 1R).
        Unknown ids get a fresh record. Non-finite outcomes are ignored.
        """
        if not is_finite_number(outcome):
            logger.warning(f"[WEIGHTS] Ignoring non-finite outcome {outcome!r}")
            return
        outcome = float(outcome)

        ids = list(dict.fromkeys(str(i) for i in indicator_ids))
        with self._lock:
            for indicator_id in ids:
                record = self._performance.get(indicator_id)
                if record is None:
                    record = PerformanceRecord()
                    self._performance[indicator_id] = record
                record.update(outcome, self.alpha)

        logger.debug(f"[WEIGHTS] Outcome {outcome:+.2f}R recorded for {', '.join(ids) or 'no indicators'}")

    def get_performance_snapshot(self) -> Dict[str, Dict[str, float]]:
        """Deep copy of all performance records as plain dicts."""
        with self._lock:
            return copy.deepcopy({k: v.to_dict() for k, v in self._performance.items()})

    def get_performance_record(self, indicator_id: str) -> Optional[PerformanceRecord]:
        with self._lock:
            record = self._performance.get(indicator_id)
            return copy.copy(record) if record is not None else None

    def performance_multiplier(self, indicator_id: str) -> float:
        """Current weight multiplier for one indicator (1.0 without history)."""
        return performance_multiplier(
            self.get_performance_record(indicator_id),
            max_boost=self.max_boost,
            max_cut=self.max_cut,
            win_blend=self.win_blend,
            edge_blend=self.edge_blend,
            edge_cap=self.edge_cap,
        )

    # ------------------------------------------------------------------
    # Effective weights
    # ------------------------------------------------------------------

    def tilt_for_timeframe(self, label: str) -> Dict[str, float]:
        """Additive deltas applied to the baseline for this timeframe label."""
        return dict(self.intraday_tilt if is_intraday(label) else self.higher_tf_tilt)

    def apply_timeframe_tilt(self, label: str, base: Mapping[str, float]) -> Dict[str, float]:
        """Add the tilt deltas (clamped at 0) and renormalize."""
        tilted = dict(base)
        for indicator_id, delta in self.tilt_for_timeframe(label).items():
            if indicator_id in tilted:
                tilted[indicator_id] = max(0.0, tilted[indicator_id] + delta)
        return normalize_weights(tilted, self.min_weight)

    def build_effective_weights(self, label: str) -> Dict[str, float]:
        """Baseline -> timeframe tilt -> performance multipliers -> normalize."""
        with self._lock:
            base = dict(self._baseline)
            multipliers = {k: self.performance_multiplier(k) for k in base}

        tilted = self.apply_timeframe_tilt(label, base)
        adjusted = {k: w * multipliers[k] for k, w in tilted.items()}
        return normalize_weights(adjusted, self.min_weight)
