"""
Single-timeframe consensus.

A lighter sibling of the ensemble for callers that only have one candle
series: a weight-normalized average of signed conviction, mapped to a
direction and a strength band.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Sequence

from src.strategy.votes import Direction, IndicatorVote


class ConsensusBand(Enum):
    STRONG_BUY = "strong_buy"
    BUY = "buy"
    NEUTRAL = "neutral"
    SELL = "sell"
    STRONG_SELL = "strong_sell"


STRONG_BAND = 0.30
BAND = 0.15

EXPLANATIONS = {
    ConsensusBand.STRONG_BUY: "Strong buy consensus across indicators.",
    ConsensusBand.BUY: "Buy bias; signals mostly positive.",
    ConsensusBand.SELL: "Sell bias; signals mostly negative.",
    ConsensusBand.STRONG_SELL: "Strong sell consensus across indicators.",
    ConsensusBand.NEUTRAL: "Mixed or insufficient signals; avoid triggering.",
}


@dataclass
class ConsensusResult:
    direction: Direction
    score: float
    band: ConsensusBand
    explanation: str
    contributions: Dict[str, float] = field(default_factory=dict)


def score_band(score: float) -> ConsensusBand:
    if score >= STRONG_BAND:
        return ConsensusBand.STRONG_BUY
    if score >= BAND:
        return ConsensusBand.BUY
    if score <= -STRONG_BAND:
        return ConsensusBand.STRONG_SELL
    if score <= -BAND:
        return ConsensusBand.SELL
    return ConsensusBand.NEUTRAL


def consensus_decision(votes: Sequence[IndicatorVote], weights: Mapping[str, float],
                       buy_threshold: float = 0.15,
                       sell_threshold: float = -0.15) -> ConsensusResult:
    """
    sum(w * d * c * q) / sum(w) over valid votes.

    Unlike the ensemble, abstaining votes still count in the denominator, a
    missing quality counts as 1.0, and the thresholds are strict (the score
    must exceed them).
    """
    numerator = 0.0
    total_weight = 0.0
    contributions = {}
    for vote in votes:
        if not vote.is_valid:
            continue
        w = max(0.0, float(weights.get(vote.id, 0.0)))
        quality = 1.0 if vote.quality is None else vote.quality
        contribution = w * vote.directional * vote.confidence * quality
        contributions[vote.id] = contribution
        numerator += contribution
        total_weight += w
    score = numerator / total_weight if total_weight > 0 else 0.0

    if score > buy_threshold:
        direction = Direction.BUY
    elif score < sell_threshold:
        direction = Direction.SELL
    else:
        direction = Direction.NONE

    band = score_band(score)
    return ConsensusResult(direction=direction, score=score, band=band,
                           explanation=EXPLANATIONS[band], contributions=contributions)
