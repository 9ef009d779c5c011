"""
Timeframe Aggregator - all indicators on one timeframe -> one score in [-1, +1].

    score = sum(d * c * q * w) / sum(|d| * c * q * w)    over valid votes

Abstaining votes (d = 0) and invalid votes add nothing to either sum, so
only indicators that actually fire move the score. Every evaluator call runs
inside its own failure boundary: one broken indicator costs its vote, never
the timeframe.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from src.features.candles import CandleWindow
from src.features.indicators import Evaluator, get_default_indicators
from src.strategy.timeframes import auto_timeframe_weight
from src.strategy.votes import QUALITY_DEFAULT, IndicatorVote
from src.strategy.weight_manager import WeightManager
from src.utils import is_finite_number

logger = logging.getLogger(__name__)


@dataclass
class TimeframeInput:
    """One timeframe handed to the engine: label, candles and optional overrides."""
    label: str
    candles: CandleWindow
    weight: Optional[float] = None
    indicator_params: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def __post_init__(self):
        self.label = str(self.label)
        self.candles = CandleWindow.coerce(self.candles)
        if self.weight is not None and not is_finite_number(self.weight):
            self.weight = None
        self.indicator_params = {k: dict(v) for k, v in (self.indicator_params or {}).items()}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TimeframeInput":
        """Build from {"label", "candles", "weight"?, "indicator_params"?}."""
        if "label" not in data or "candles" not in data:
            raise ValueError("Timeframe mapping needs 'label' and 'candles'")
        params = data.get("indicator_params", data.get("indicatorParams")) or {}
        return cls(label=data["label"], candles=data["candles"],
                   weight=data.get("weight"), indicator_params=params)

    @classmethod
    def coerce(cls, data) -> "TimeframeInput":
        if isinstance(data, TimeframeInput):
            return data
        if isinstance(data, Mapping):
            return cls.from_mapping(data)
        raise TypeError(f"Unsupported timeframe input: {type(data).__name__}")


@dataclass(frozen=True)
class TimeframeVoteBundle:
    """Votes and aggregated score of one timeframe for one decision call."""
    timeframe_label: str
    timeframe_weight: float
    indicator_votes: Tuple[IndicatorVote, ...]
    aggregated_score: float
    indicator_weights: Dict[str, float] = field(default_factory=dict)

    @property
    def valid_votes(self) -> List[IndicatorVote]:
        return [v for v in self.indicator_votes if v.is_valid]


def aggregate_votes(votes: Sequence[IndicatorVote], weights: Mapping[str, float],
                    quality_default: float = QUALITY_DEFAULT) -> float:
    """
    Weighted average of signed conviction over valid votes.

    Indicators missing from `weights` carry zero weight. Returns 0.0 when
    nothing fires.
    """
    numerator = 0.0
    denominator = 0.0
    for vote in votes:
        if not vote.is_valid:
            continue
        quality = quality_default if vote.quality is None else vote.quality
        w = weights.get(vote.id, 0.0)
        contribution = vote.confidence * quality * w
        numerator += vote.directional * contribution
        denominator += abs(vote.directional) * contribution
    if denominator <= 0:
        return 0.0
    return max(-1.0, min(1.0, numerator / denominator))


class TimeframeAggregator:
    """
    Runs the indicator registry over one timeframe and scores it with the
    Weight Manager's effective weights for that label.
    """

    def __init__(self, weight_manager: WeightManager,
                 indicators: Optional[Sequence[Tuple[str, Evaluator]]] = None,
                 config=None):
        self.weight_manager = weight_manager
        self.indicators = list(indicators) if indicators is not None else get_default_indicators()
        self.config = config

        self.quality_default = getattr(config, "QUALITY_DEFAULT", QUALITY_DEFAULT)
        self.default_params = {k: dict(v) for k, v in getattr(config, "INDICATOR_PARAMS", {}).items()}
        self.timeframe_table = getattr(config, "TIMEFRAME_WEIGHTS", None)
        self.default_timeframe_weight = getattr(config, "DEFAULT_TIMEFRAME_WEIGHT", 1.0)

    def params_for(self, indicator_id: str, overrides: Mapping[str, Mapping[str, Any]]) -> Dict[str, Any]:
        """Config defaults for an indicator, overlaid with per-timeframe overrides."""
        params = dict(self.default_params.get(indicator_id, {}))
        params.update(overrides.get(indicator_id, {}) or {})
        return params

    def timeframe_weight(self, tf: TimeframeInput) -> float:
        if tf.weight is not None:
            return max(0.0, float(tf.weight))
        return auto_timeframe_weight(tf.label, self.timeframe_table, self.default_timeframe_weight)

    def collect_votes(self, tf: TimeframeInput, confirm_on_close: bool = True) -> List[IndicatorVote]:
        """Evaluate every registered indicator; faults and non-votes are dropped."""
        votes = []
        for indicator_id, evaluator in self.indicators:
            try:
                vote = evaluator(tf.candles, confirm_on_close=confirm_on_close,
                                 **self.params_for(indicator_id, tf.indicator_params))
            except Exception as e:
                logger.warning(f"[ENSEMBLE] {tf.label}/{indicator_id} evaluator failed: {e}")
                continue
            if not isinstance(vote, IndicatorVote):
                logger.warning(f"[ENSEMBLE] {tf.label}/{indicator_id} returned "
                               f"{type(vote).__name__}, expected IndicatorVote")
                continue
            if not vote.is_valid:
                logger.debug(f"[INDICATOR] {tf.label}/{indicator_id} invalid: {vote.reason}")
            votes.append(vote)
        return votes

    def aggregate(self, tf: TimeframeInput, confirm_on_close: bool = True) -> TimeframeVoteBundle:
        """Votes + effective weights -> TimeframeVoteBundle."""
        tf = TimeframeInput.coerce(tf)
        votes = self.collect_votes(tf, confirm_on_close)
        weights = self.weight_manager.build_effective_weights(tf.label)
        score = aggregate_votes(votes, weights, self.quality_default)

        logger.debug(f"[ENSEMBLE] {tf.label}: score={score:+.3f} "
                     f"({sum(1 for v in votes if v.is_valid)}/{len(votes)} valid)")

        return TimeframeVoteBundle(
            timeframe_label=tf.label,
            timeframe_weight=self.timeframe_weight(tf),
            indicator_votes=tuple(votes),
            aggregated_score=score,
            indicator_weights=weights,
        )
