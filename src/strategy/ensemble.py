"""
Ensemble Engine - multi-timeframe adaptive decision.

Pipeline per decision() call:

    candles per timeframe
      -> TimeframeAggregator (9 indicator votes, weighted by WeightManager)
      -> per-timeframe score in [-1, +1]
      -> combine_timeframes(): importance-weighted ensemble score
      -> direction (dead zone), confidence, quality, stop, position size

The engine holds no decision state of its own: everything mutable (baseline
weights, performance records) lives in the WeightManager, and the feedback
loop is the only writer of performance records. combine_timeframes() is a
pure function so it can be tested without any indicator math.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from src.features.indicators import Evaluator
from src.strategy.feedback import OutcomeFeedbackLoop, TradeOutcome
from src.strategy.timeframe_aggregator import TimeframeAggregator, TimeframeInput, TimeframeVoteBundle
from src.strategy.timeframes import granularity_order
from src.strategy.votes import QUALITY_DEFAULT, Direction, EntryState
from src.strategy.weight_manager import WeightManager
from src.utils import clamp, mean, median, sign

logger = logging.getLogger("EnsembleEngine")

# Quality reported when there is nothing to judge
EMPTY_QUALITY = 0.5


@dataclass
class DecisionSettings:
    """Thresholds, sizing and stop knobs for one decision."""
    buy_threshold: float = 0.15
    sell_threshold: float = -0.15
    base_position_pct: float = 0.25
    max_position_pct: float = 0.50
    min_position_pct: float = 0.05
    min_stop_atr_multiple: float = 1.0
    max_stop_atr_multiple: float = 3.0
    stop_atr_multiple_floor: float = 0.5
    reference_atr_pct: float = 0.02
    min_atr_pct: float = 0.005
    vol_factor_min: float = 0.5
    vol_factor_max: float = 1.5
    quality_default: float = QUALITY_DEFAULT
    base_quality: float = 0.85
    strong_score_quality: float = 0.95
    strong_score_threshold: float = 0.4
    high_tf_agreement_min_score: float = 0.25
    sizing_agreement_min_score: float = 0.2
    high_timeframe_weight: float = 1.4

    @classmethod
    def from_config(cls, config=None, **overrides) -> "DecisionSettings":
        """Settings from a config object; None overrides are ignored."""
        settings = cls(
            buy_threshold=getattr(config, "BUY_THRESHOLD", 0.15),
            sell_threshold=getattr(config, "SELL_THRESHOLD", -0.15),
            base_position_pct=getattr(config, "BASE_POSITION_PCT", 0.25),
            max_position_pct=getattr(config, "MAX_POSITION_PCT", 0.50),
            min_position_pct=getattr(config, "MIN_POSITION_PCT", 0.05),
            min_stop_atr_multiple=getattr(config, "MIN_STOP_ATR_MULTIPLE", 1.0),
            max_stop_atr_multiple=getattr(config, "MAX_STOP_ATR_MULTIPLE", 3.0),
            stop_atr_multiple_floor=getattr(config, "STOP_ATR_MULTIPLE_FLOOR", 0.5),
            reference_atr_pct=getattr(config, "REFERENCE_ATR_PCT", 0.02),
            min_atr_pct=getattr(config, "MIN_ATR_PCT", 0.005),
            vol_factor_min=getattr(config, "VOL_FACTOR_MIN", 0.5),
            vol_factor_max=getattr(config, "VOL_FACTOR_MAX", 1.5),
            quality_default=getattr(config, "QUALITY_DEFAULT", QUALITY_DEFAULT),
            base_quality=getattr(config, "BASE_QUALITY", 0.85),
            strong_score_quality=getattr(config, "STRONG_SCORE_QUALITY", 0.95),
            strong_score_threshold=getattr(config, "STRONG_SCORE_THRESHOLD", 0.4),
            high_tf_agreement_min_score=getattr(config, "HIGH_TF_AGREEMENT_MIN_SCORE", 0.25),
            sizing_agreement_min_score=getattr(config, "SIZING_AGREEMENT_MIN_SCORE", 0.2),
            high_timeframe_weight=getattr(config, "HIGH_TIMEFRAME_WEIGHT", 1.4),
        )
        updates = {k: v for k, v in overrides.items() if v is not None}
        return replace(settings, **updates) if updates else settings


# ============================================
# RESULT TYPES
# ============================================

@dataclass(frozen=True)
class StopCandidate:
    timeframe: str
    indicator_id: str
    stop: float


@dataclass(frozen=True)
class StopBlend:
    """How the stop-loss price was chosen"""
    chosen: Optional[float]
    candidates: Tuple[StopCandidate, ...] = ()
    median_stop: Optional[float] = None
    average_atr: Optional[float] = None
    floor_distance: Optional[float] = None
    floor_applied: bool = False
    reference_price: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chosen": self.chosen,
            "candidates": [{"tf": c.timeframe, "id": c.indicator_id, "stop": c.stop} for c in self.candidates],
            "median": self.median_stop,
            "avgATR": self.average_atr,
            "floorDistance": self.floor_distance,
            "floorApplied": self.floor_applied,
            "referencePrice": self.reference_price,
        }


@dataclass(frozen=True)
class IndicatorBreakdown:
    timeframe: str
    indicator_id: str
    direction: str
    directional: float
    confidence: float
    quality: float
    weight: float
    is_valid: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tf": self.timeframe,
            "id": self.indicator_id,
            "direction": self.direction,
            "dir": self.directional,
            "conf": self.confidence,
            "qual": self.quality,
            "wInd": self.weight,
            "isValid": self.is_valid,
        }


@dataclass(frozen=True)
class TimeframeScore:
    timeframe: str
    weight: float
    score: float
    valid_votes: int = 0


@dataclass(frozen=True)
class WeightsUsed:
    """
    Timeframe weights and the per-timeframe indicator weights behind a decision,
    as (label, value) pairs in input order. Repeated labels keep one entry each.
    """
    timeframe_weights: Tuple[Tuple[str, float], ...] = ()
    indicator_weights: Tuple[Tuple[str, Dict[str, float]], ...] = ()


@dataclass(frozen=True)
class DecisionResult:
    """Final ensemble decision returned to the caller."""
    direction: Direction
    entry_state: EntryState
    directional_score: int
    ensemble_score: float
    confidence: float
    quality: float
    position_size_fraction: Optional[float] = None
    stop_loss_price: Optional[float] = None
    per_timeframe_scores: Tuple[TimeframeScore, ...] = ()
    per_indicator_breakdown: Tuple[IndicatorBreakdown, ...] = ()
    weights_used: WeightsUsed = field(default_factory=WeightsUsed)
    stop_blend: Optional[StopBlend] = None

    @property
    def is_triggered(self) -> bool:
        return self.entry_state is EntryState.TRIGGERED

    @property
    def active_indicator_ids(self) -> List[str]:
        """Distinct indicators that voted with a direction, in vote order."""
        return list(dict.fromkeys(
            b.indicator_id for b in self.per_indicator_breakdown if b.is_valid and b.directional != 0
        ))

    def to_dict(self) -> Dict[str, Any]:
        sizing = None
        if self.direction is not Direction.NONE:
            sizing = {
                "positionPctOfDailyLimit": self.position_size_fraction,
                "stopLossPrice": self.stop_loss_price,
            }
        return {
            "direction": self.direction.value,
            "entry": self.entry_state.value,
            "score": {
                "directional": self.directional_score,
                "confidence": self.confidence,
                "quality": self.quality,
            },
            "sizing": sizing,
            "weightsUsed": {
                "tfWeights": [{"tf": label, "weight": weight}
                              for label, weight in self.weights_used.timeframe_weights],
                "indicatorWeights": [{"tf": label, "weights": dict(weights)}
                                     for label, weights in self.weights_used.indicator_weights],
            },
            "breakdown": {
                "ensembleScore": self.ensemble_score,
                "tfScores": [{"tf": t.timeframe, "weight": t.weight, "score": t.score}
                             for t in self.per_timeframe_scores],
                "indicators": [b.to_dict() for b in self.per_indicator_breakdown],
                "stopBlend": self.stop_blend.to_dict() if self.stop_blend else None,
            },
        }


def neutral_decision() -> DecisionResult:
    """The 'no data yet' decision: none, zero confidence, empty breakdown."""
    return DecisionResult(
        direction=Direction.NONE,
        entry_state=EntryState.NO_TRIGGER,
        directional_score=0,
        ensemble_score=0.0,
        confidence=0.0,
        quality=EMPTY_QUALITY,
    )


# ============================================
# PURE COMBINATION
# ============================================

def decide_direction(score: float, buy_threshold: float, sell_threshold: float) -> Direction:
    """Inclusive thresholds: score >= buy -> BUY, score <= sell -> SELL."""
    if score >= buy_threshold:
        return Direction.BUY
    if score <= sell_threshold:
        return Direction.SELL
    return Direction.NONE


def _vote_quality(vote, settings: DecisionSettings) -> float:
    return settings.quality_default if vote.quality is None else vote.quality


def blend_stop(bundles: Sequence[TimeframeVoteBundle], direction: Direction,
               reference_price: Optional[float], average_atr: Optional[float],
               settings: DecisionSettings) -> StopBlend:
    """
    Median of the direction-matching stop suggestions, pushed out to at least
    clamp(min_mult, floor, max_mult) * average ATR from the reference price.
    """
    candidates = []
    for bundle in bundles:
        for vote in bundle.valid_votes:
            stop = vote.auxiliary.stop_for(direction)
            if stop is not None:
                candidates.append(StopCandidate(bundle.timeframe_label, vote.id, stop))

    median_stop = median(c.stop for c in candidates)
    chosen = median_stop
    floor_distance = None
    floor_applied = False

    if reference_price is not None and average_atr is not None:
        multiple = clamp(settings.min_stop_atr_multiple, settings.stop_atr_multiple_floor,
                         settings.max_stop_atr_multiple)
        floor_distance = multiple * average_atr
        if direction is Direction.BUY and (chosen is None or reference_price - chosen < floor_distance):
            chosen = reference_price - floor_distance
            floor_applied = True
        elif direction is Direction.SELL and (chosen is None or chosen - reference_price < floor_distance):
            chosen = reference_price + floor_distance
            floor_applied = True

    return StopBlend(
        chosen=chosen,
        candidates=tuple(candidates),
        median_stop=median_stop,
        average_atr=average_atr,
        floor_distance=floor_distance,
        floor_applied=floor_applied,
        reference_price=reference_price,
    )


def position_size(confidence: float, high_agreement: float, average_atr: Optional[float],
                  reference_price: Optional[float], settings: DecisionSettings) -> float:
    """
    base x confidence x (0.5 + 0.5 x high-TF agreement) x volatility factor,
    clamped to [min_position_pct, max_position_pct].
    """
    atr_pct = 0.0
    if average_atr is not None and reference_price:
        atr_pct = average_atr / reference_price
    if atr_pct > 0:
        vol_factor = clamp(settings.reference_atr_pct / max(settings.min_atr_pct, atr_pct),
                           settings.vol_factor_min, settings.vol_factor_max)
    else:
        vol_factor = 1.0
    raw = settings.base_position_pct * confidence * (0.5 + 0.5 * high_agreement) * vol_factor
    return clamp(raw, settings.min_position_pct, settings.max_position_pct)


def combine_timeframes(bundles: Sequence[TimeframeVoteBundle],
                       settings: Optional[DecisionSettings] = None,
                       reference_price: Optional[float] = None) -> DecisionResult:
    """Combine per-timeframe bundles into one DecisionResult."""
    settings = settings or DecisionSettings()
    bundles = list(bundles)
    if not bundles:
        return neutral_decision()

    # 1) Ensemble score
    total_weight = sum(b.timeframe_weight for b in bundles)
    if total_weight > 0:
        ensemble_score = sum(b.timeframe_weight * b.aggregated_score for b in bundles) / total_weight
    else:
        ensemble_score = 0.0
    ensemble_score = clamp(ensemble_score, -1.0, 1.0)

    direction = decide_direction(ensemble_score, settings.buy_threshold, settings.sell_threshold)

    # 2) Confidence: mean conviction of all votes blended with |score|
    conviction = 0.0
    for bundle in bundles:
        for vote in bundle.valid_votes:
            conviction += (bundle.timeframe_weight * bundle.indicator_weights.get(vote.id, 0.0)
                           * abs(vote.directional) * vote.confidence * _vote_quality(vote, settings))
    raw_confidence = conviction / max(1e-9, total_weight)
    confidence = clamp(0.5 * raw_confidence + 0.5 * abs(ensemble_score), 0.0, 1.0)

    # 3) Quality: high timeframes agreeing with the ensemble lift it
    ens_sign = sign(ensemble_score)
    high = [b for b in bundles if b.timeframe_weight >= settings.high_timeframe_weight]
    quality = settings.base_quality
    if abs(ensemble_score) >= settings.strong_score_threshold:
        quality = max(quality, settings.strong_score_quality)
    if high and ens_sign != 0 and all(
        sign(b.aggregated_score) == ens_sign and abs(b.aggregated_score) >= settings.high_tf_agreement_min_score
        for b in high
    ):
        quality = 1.0

    # 4) Stop + sizing only when something fires
    average_atr = mean(
        v.auxiliary.atr for b in bundles for v in b.valid_votes
        if v.auxiliary.atr is not None and v.auxiliary.atr > 0
    )
    stop_blend = None
    size = None
    if direction is not Direction.NONE:
        stop_blend = blend_stop(bundles, direction, reference_price, average_atr, settings)
        if high:
            agreeing = sum(1 for b in high
                           if sign(b.aggregated_score) == ens_sign
                           and abs(b.aggregated_score) >= settings.sizing_agreement_min_score)
            high_agreement = agreeing / len(high)
        else:
            high_agreement = 0.5
        size = position_size(confidence, high_agreement, average_atr, reference_price, settings)

    breakdown = tuple(
        IndicatorBreakdown(
            timeframe=b.timeframe_label,
            indicator_id=v.id,
            direction=v.direction.value,
            directional=v.directional,
            confidence=v.confidence,
            quality=_vote_quality(v, settings),
            weight=b.indicator_weights.get(v.id, 0.0),
            is_valid=v.is_valid,
        )
        for b in bundles for v in b.indicator_votes
    )

    return DecisionResult(
        direction=direction,
        entry_state=EntryState.for_direction(direction),
        directional_score=direction.sign,
        ensemble_score=ensemble_score,
        confidence=confidence,
        quality=quality,
        position_size_fraction=size,
        stop_loss_price=stop_blend.chosen if stop_blend else None,
        per_timeframe_scores=tuple(
            TimeframeScore(b.timeframe_label, b.timeframe_weight, b.aggregated_score, len(b.valid_votes))
            for b in bundles
        ),
        per_indicator_breakdown=breakdown,
        weights_used=WeightsUsed(
            timeframe_weights=tuple((b.timeframe_label, b.timeframe_weight) for b in bundles),
            indicator_weights=tuple((b.timeframe_label, dict(b.indicator_weights)) for b in bundles),
        ),
        stop_blend=stop_blend,
    )


def reference_price_for(inputs: Sequence[TimeframeInput], confirm_on_close: bool = True) -> Optional[float]:
    """
    Signal-bar close of the most granular timeframe.

    Unparseable labels rank last; ties keep input order. Falls through to the
    next timeframe when a window has no usable close.
    """
    for i in granularity_order([tf.label for tf in inputs]):
        price = inputs[i].candles.reference_close(confirm_on_close)
        if price is not None and price > 0:
            return price
    return None


# ============================================
# ENGINE
# ============================================

class EnsembleEngine:
    """
    Multi-timeframe adaptive ensemble.

    Usage:
        engine = EnsembleEngine(EnsembleConfig)
        result = engine.decision([
            {"label": "5m", "candles": df_5m},
            {"label": "1h", "candles": df_1h},
            {"label": "1D", "candles": df_1d},
        ])
        ...
        engine.record_outcome(+1.2, result.active_indicator_ids)
    """

    def __init__(self, config=None, weight_manager: Optional[WeightManager] = None,
                 indicators: Optional[Sequence[Tuple[str, Evaluator]]] = None,
                 baseline_weights: Optional[Mapping[str, float]] = None):
        self.config = config
        self.weight_manager = weight_manager or WeightManager(config, baseline_weights)
        self.aggregator = TimeframeAggregator(self.weight_manager, indicators, config)
        self.feedback = OutcomeFeedbackLoop(self.weight_manager, config)
        self.confirm_on_close = getattr(config, "CONFIRM_ON_CLOSE", True)

        logger.info(f"[ENSEMBLE] Engine ready with {len(self.aggregator.indicators)} indicators: "
                    + ", ".join(i for i, _ in self.aggregator.indicators))

    def decision(self, timeframes: Optional[Iterable] = None,
                 confirm_on_close: Optional[bool] = None,
                 buy_threshold: Optional[float] = None,
                 sell_threshold: Optional[float] = None,
                 base_position_pct: Optional[float] = None,
                 max_position_pct: Optional[float] = None,
                 min_stop_atr_multiple: Optional[float] = None,
                 max_stop_atr_multiple: Optional[float] = None) -> DecisionResult:
        """
        Run every indicator on every timeframe and combine into one decision.

        timeframes: TimeframeInput objects or mappings with label, candles
        and optional weight / indicator_params. An empty list returns the
        neutral decision.
        """
        inputs = [TimeframeInput.coerce(tf) for tf in (timeframes or [])]
        confirm = self.confirm_on_close if confirm_on_close is None else bool(confirm_on_close)
        settings = DecisionSettings.from_config(
            self.config,
            buy_threshold=buy_threshold,
            sell_threshold=sell_threshold,
            base_position_pct=base_position_pct,
            max_position_pct=max_position_pct,
            min_stop_atr_multiple=min_stop_atr_multiple,
            max_stop_atr_multiple=max_stop_atr_multiple,
        )

        if not inputs:
            logger.info("[ENSEMBLE] No timeframes supplied -> none")
            return neutral_decision()

        bundles = [self.aggregator.aggregate(tf, confirm) for tf in inputs]
        reference_price = reference_price_for(inputs, confirm)
        result = combine_timeframes(bundles, settings, reference_price)

        tf_summary = " ".join(f"{t.timeframe}={t.score:+.2f}" for t in result.per_timeframe_scores)
        msg = (f"[ENSEMBLE] {result.direction.value.upper()} score={result.ensemble_score:+.3f} "
               f"conf={result.confidence:.2f} qual={result.quality:.2f} | {tf_summary}")
        if result.is_triggered:
            stop = f"{result.stop_loss_price:.4f}" if result.stop_loss_price is not None else "n/a"
            msg += f" | size={result.position_size_fraction:.2%} stop={stop}"
        logger.info(msg)
        return result

    # ------------------------------------------------------------------
    # Weights and feedback
    # ------------------------------------------------------------------

    def set_baseline_weights(self, partial: Mapping[str, Optional[float]]) -> Dict[str, float]:
        return self.weight_manager.set_baseline_weights(partial)

    def get_baseline_weights(self) -> Dict[str, float]:
        return self.weight_manager.get_baseline_weights()

    def record_outcome(self, outcome: float, indicator_ids: Iterable[str]) -> Optional[TradeOutcome]:
        """Feed a realized outcome (R multiples) back to the indicators involved."""
        return self.feedback.record(outcome, indicator_ids)

    def get_performance_snapshot(self) -> Dict[str, Dict[str, float]]:
        return self.weight_manager.get_performance_snapshot()

    def build_effective_weights(self, label: str) -> Dict[str, float]:
        return self.weight_manager.build_effective_weights(label)
