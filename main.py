#!/usr/bin/env python3
"""
CONFLUENCE - Main Entry Point

Runs one multi-timeframe ensemble decision on synthetic candles and prints
the result. Real callers build TimeframeInput objects from their own data
and call EnsembleEngine.decision() the same way.
"""

import json
import logging
import sys

from config import EnsembleConfig

# Setup logging before importing other modules
logging.basicConfig(
    level=getattr(logging, str(EnsembleConfig.LOG_LEVEL).upper(), logging.INFO),
    format='%(asctime)s | %(levelname)s | %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger(__name__)


def main(argv=None):
    """Demo: 5m / 1h / 4h / 1D decision on a seeded random walk."""
    from src.data.mock_loader import MockDataLoader
    from src.strategy.ensemble import EnsembleEngine

    argv = sys.argv[1:] if argv is None else argv
    seed = int(argv[0]) if argv else 42

    df = MockDataLoader.fetch_data(days=120, symbol="BTC/USD", freq="5min", seed=seed)
    timeframes = MockDataLoader.build_timeframes(df, labels=("5m", "1h", "4h", "1D"))

    engine = EnsembleEngine(EnsembleConfig)
    result = engine.decision(timeframes)

    print("\n" + "=" * 60)
    print(" CONFLUENCE - Ensemble Decision")
    print("=" * 60)
    print(f"  Direction:  {result.direction.value.upper()} ({result.entry_state.value})")
    print(f"  Score:      {result.ensemble_score:+.3f}")
    print(f"  Confidence: {result.confidence:.2f}")
    print(f"  Quality:    {result.quality:.2f}")
    if result.is_triggered:
        print(f"  Size:       {result.position_size_fraction:.2%} of daily risk")
        print(f"  Stop:       {result.stop_loss_price}")
    print("=" * 60 + "\n")

    logger.info(f"Decision:\n{json.dumps(result.to_dict(), indent=2, default=str)}")
    return result


if __name__ == "__main__":
    main()
