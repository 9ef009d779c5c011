"""
Outcome Feedback Loop - closes the loop between trade results and weights.

After a trade concludes the caller reports its outcome in R multiples
(+1.0 = made 1x initial risk, -1.0 = lost 1x) together with the indicators
that were directionally active in the decision that opened it. Only those
indicators get their EWMA records updated; abstainers did not contribute.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple

from src.strategy.votes import Direction
from src.strategy.weight_manager import WeightManager
from src.utils import is_finite_number

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradeOutcome:
    """One reported trade result"""
    outcome: float
    indicator_ids: Tuple[str, ...]
    direction: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def is_win(self) -> bool:
        return self.outcome > 0


class OutcomeFeedbackLoop:
    """Records outcomes into the Weight Manager and keeps a bounded history."""

    def __init__(self, weight_manager: WeightManager, config=None):
        self.weight_manager = weight_manager
        self.history_size = int(getattr(config, "FEEDBACK_HISTORY_SIZE", 500))
        self.history = deque(maxlen=self.history_size)

    def record(self, outcome: float, indicator_ids: Iterable[str],
               direction: Optional[str] = None) -> Optional[TradeOutcome]:
        """
        Update the performance records of `indicator_ids` with `outcome`.

        Non-finite outcomes are ignored (logged by the Weight Manager) and
        return None.
        """
        ids = tuple(dict.fromkeys(str(i) for i in indicator_ids))
        if not is_finite_number(outcome):
            self.weight_manager.record_outcome(outcome, ids)
            return None

        self.weight_manager.record_outcome(float(outcome), ids)
        trade = TradeOutcome(outcome=float(outcome), indicator_ids=ids, direction=direction)
        self.history.append(trade)

        result = "WIN" if trade.is_win else "LOSS"
        logger.info(f"[FEEDBACK] {result} {trade.outcome:+.2f}R -> {len(ids)} indicators updated"
                    + (f" ({', '.join(ids)})" if ids else ""))
        return trade

    def record_decision_outcome(self, decision, outcome: float) -> Optional[TradeOutcome]:
        """
        Record an outcome for a DecisionResult, crediting its directionally
        active indicators. Decisions with direction none never traded and are
        ignored.
        """
        if decision.direction is Direction.NONE:
            logger.debug("[FEEDBACK] Ignoring outcome for a 'none' decision")
            return None
        return self.record(outcome, decision.active_indicator_ids, direction=decision.direction.value)

    def get_stats(self) -> Dict[str, float]:
        """Summary of the recorded history."""
        trades = len(self.history)
        wins = sum(1 for t in self.history if t.is_win)
        total = sum(t.outcome for t in self.history)
        return {
            "trades": trades,
            "wins": wins,
            "losses": trades - wins,
            "win_rate": wins / trades if trades else 0.0,
            "avg_outcome": total / trades if trades else 0.0,
        }
