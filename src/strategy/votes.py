"""
Indicator Vote - the one shape every indicator evaluator must return.

The aggregator treats indicators as black boxes: it only reads direction,
directional, confidence, quality, is_valid and the optional auxiliary block
(stop suggestions, ATR). An evaluator that cannot compute returns
invalid_vote() instead of raising.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from src.utils import clamp, is_finite_number, sign

# Quality assumed for votes that do not report one
QUALITY_DEFAULT = 0.9

# Quality reported by invalid votes
INVALID_QUALITY = 0.5


class Direction(Enum):
    """Trading direction of a vote or decision"""
    BUY = "buy"
    SELL = "sell"
    NONE = "none"

    @property
    def sign(self) -> int:
        return {Direction.BUY: 1, Direction.SELL: -1, Direction.NONE: 0}[self]

    @classmethod
    def from_sign(cls, value: float) -> "Direction":
        s = sign(value)
        if s > 0:
            return cls.BUY
        if s < 0:
            return cls.SELL
        return cls.NONE

    @classmethod
    def from_signal(cls, signal: str) -> "Direction":
        """Map entry-signal vocabulary (long/short/buy/sell/none) to a Direction."""
        key = str(signal).lower()
        if key in ("long", "buy"):
            return cls.BUY
        if key in ("short", "sell"):
            return cls.SELL
        return cls.NONE


class EntryState(Enum):
    """Whether the vote (or decision) fires an entry"""
    TRIGGERED = "triggered"
    NO_TRIGGER = "no-trigger"

    @classmethod
    def for_direction(cls, direction: Direction) -> "EntryState":
        return cls.NO_TRIGGER if direction is Direction.NONE else cls.TRIGGERED


@dataclass(frozen=True)
class VoteAuxiliary:
    """
    Optional per-indicator data.

    Absent values stay None: a missing stop is "no suggestion", never 0.
    """
    stop_long: Optional[float] = None
    stop_short: Optional[float] = None
    atr: Optional[float] = None
    price_ref: Optional[float] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        for name in ("stop_long", "stop_short", "atr", "price_ref"):
            value = getattr(self, name)
            if value is not None and not is_finite_number(value):
                object.__setattr__(self, name, None)
            elif value is not None:
                object.__setattr__(self, name, float(value))

    def stop_for(self, direction: Direction) -> Optional[float]:
        """Suggested stop for a long (BUY) or short (SELL) position."""
        if direction is Direction.BUY:
            return self.stop_long
        if direction is Direction.SELL:
            return self.stop_short
        return None


@dataclass(frozen=True)
class IndicatorVote:
    """Normalized vote produced by one indicator on one candle window."""
    id: str
    direction: Direction
    directional: float
    confidence: float
    quality: Optional[float] = None
    is_valid: bool = True
    auxiliary: VoteAuxiliary = field(default_factory=VoteAuxiliary)
    reason: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.direction, Direction):
            object.__setattr__(self, "direction", Direction(self.direction))
        if not is_finite_number(self.directional):
            raise ValueError(f"Vote {self.id}: directional must be finite, got {self.directional}")
        if not is_finite_number(self.confidence):
            object.__setattr__(self, "confidence", 0.0)
        if self.quality is not None and not is_finite_number(self.quality):
            object.__setattr__(self, "quality", None)
        if sign(self.directional) != self.direction.sign:
            raise ValueError(
                f"Vote {self.id}: directional {self.directional} does not match "
                f"direction {self.direction.value}"
            )
        object.__setattr__(self, "directional", clamp(float(self.directional), -1.0, 1.0))
        object.__setattr__(self, "confidence", clamp(float(self.confidence), 0.0, 1.0))
        if self.quality is not None:
            object.__setattr__(self, "quality", clamp(float(self.quality), 0.0, 1.0))

    @property
    def entry_state(self) -> EntryState:
        return EntryState.for_direction(self.direction)

    @property
    def effective_quality(self) -> float:
        return QUALITY_DEFAULT if self.quality is None else self.quality

    @property
    def conviction(self) -> float:
        """|directional| x confidence x quality; 0 for invalid or abstaining votes."""
        if not self.is_valid:
            return 0.0
        return abs(self.directional) * self.confidence * self.effective_quality

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "direction": self.direction.value,
            "entry": self.entry_state.value,
            "score": {
                "directional": self.directional,
                "confidence": self.confidence,
                "quality": self.effective_quality,
            },
            "isValid": self.is_valid,
            "stopLong": self.auxiliary.stop_long,
            "stopShort": self.auxiliary.stop_short,
            "atr": self.auxiliary.atr,
        }


def make_vote(indicator_id: str, signal: str, confidence: float,
              quality: Optional[float] = None,
              auxiliary: Optional[VoteAuxiliary] = None) -> IndicatorVote:
    """
    Build a valid vote from an entry signal ("long"/"short"/"none").

    Directional is +1/-1/0 so its sign always matches the direction.
    """
    direction = Direction.from_signal(signal)
    return IndicatorVote(
        id=indicator_id,
        direction=direction,
        directional=float(direction.sign),
        confidence=confidence,
        quality=quality,
        is_valid=True,
        auxiliary=auxiliary or VoteAuxiliary(),
    )


def invalid_vote(indicator_id: str, reason: str = "") -> IndicatorVote:
    """Vote returned when an indicator cannot compute on the given window."""
    return IndicatorVote(
        id=indicator_id,
        direction=Direction.NONE,
        directional=0.0,
        confidence=0.0,
        quality=INVALID_QUALITY,
        is_valid=False,
        reason=reason or None,
    )
