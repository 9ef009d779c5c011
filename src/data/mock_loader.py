import logging

import pandas as pd
import numpy as np
from datetime import datetime

from src.strategy.timeframe_aggregator import TimeframeInput

logger = logging.getLogger(__name__)

# Fixed anchor so the same seed always yields the same frame, timestamps included
MOCK_END_TIME = datetime(2024, 1, 1)

# pandas resample rules for the usual timeframe labels
RESAMPLE_RULES = {
    "1m": "1min", "3m": "3min", "5m": "5min", "15m": "15min", "30m": "30min",
    "1h": "1h", "2h": "2h", "4h": "4h", "1d": "1D", "1w": "1W",
}


class MockDataLoader:
    @staticmethod
    def fetch_data(days=30, symbol="BTC/USD", freq="5min", seed=42):
        """Generates synthetic crypto price data."""
        logger.info(f"Generating {days} days of mock {freq} data for {symbol}...")

        timestamps = pd.date_range(end=MOCK_END_TIME, periods=int(days * pd.Timedelta("1D") / pd.Timedelta(freq)),
                                   freq=freq)
        n = len(timestamps)

        # Random walk from 50000 with a slight upward drift
        rng = np.random.RandomState(seed)
        returns = rng.normal(loc=0.00002, scale=0.002, size=n)
        price_path = 50000 * np.cumprod(1 + returns)

        closes = price_path
        opens = np.concatenate([[price_path[0]], price_path[:-1]]) * (1 + rng.normal(0, 0.0003, n))
        highs = np.maximum(opens, closes) * (1 + np.abs(rng.normal(0, 0.001, n)))
        lows = np.minimum(opens, closes) * (1 - np.abs(rng.normal(0, 0.001, n)))
        volumes = rng.randint(1, 100, n) * rng.uniform(0.5, 2.0, n)

        df = pd.DataFrame({
            'timestamp': timestamps,
            'open': opens,
            'high': highs,
            'low': lows,
            'close': closes,
            'volume': volumes
        })

        df.set_index('timestamp', inplace=True)
        return df

    @staticmethod
    def resample(df, rule):
        """Aggregate an OHLCV frame to a coarser bar size (e.g. '1h', '1D')."""
        rule = RESAMPLE_RULES.get(str(rule).lower(), rule)
        out = df.resample(rule, label='right', closed='right').agg({
            'open': 'first',
            'high': 'max',
            'low': 'min',
            'close': 'last',
            'volume': 'sum',
        })
        return out.dropna(subset=['close'])

    @classmethod
    def build_timeframes(cls, df, labels=("5m", "1h", "4h", "1D")):
        """One TimeframeInput per label, resampled from a fine-grained frame."""
        return [TimeframeInput(label=label, candles=cls.resample(df, label)) for label in labels]
