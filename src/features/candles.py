"""
Candle Window - immutable OHLCV input for one timeframe.

Indicators read plain float numpy arrays (what TA-Lib wants). Windows can be
built from a pandas DataFrame (the usual shape coming out of a data loader),
from a mapping of lists, or passed through unchanged.

Only closes are mandatory; indicators that need highs/lows/volumes call
require() and get an InsufficientDataError when the column is absent.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Optional

import numpy as np
import pandas as pd


class InsufficientDataError(ValueError):
    """Window too short for an indicator's lookback, or a column is missing."""


_COLUMN_ALIASES = {
    "opens": ("open", "opens", "o"),
    "highs": ("high", "highs", "h"),
    "lows": ("low", "lows", "l"),
    "closes": ("close", "closes", "c"),
    "volumes": ("volume", "volumes", "v"),
    "close_times": ("close_time", "close_times", "timestamp", "time"),
}


def _as_float_array(values) -> Optional[np.ndarray]:
    if values is None:
        return None
    arr = np.array(values, dtype=float)
    if arr.ndim != 1:
        raise ValueError(f"Candle columns must be one-dimensional, got shape {arr.shape}")
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class CandleWindow:
    """Chronologically ordered OHLCV bars, oldest first."""
    closes: np.ndarray
    opens: Optional[np.ndarray] = None
    highs: Optional[np.ndarray] = None
    lows: Optional[np.ndarray] = None
    volumes: Optional[np.ndarray] = None
    close_times: Optional[np.ndarray] = None

    def __post_init__(self):
        for name in ("closes", "opens", "highs", "lows", "volumes"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, _as_float_array(value))
        if self.closes is None:
            raise ValueError("CandleWindow requires closes")

    def __len__(self) -> int:
        return len(self.closes)

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> "CandleWindow":
        """
        Build a window from an OHLCV DataFrame.

        Column names are matched case-insensitively. The close time comes
        from a timestamp/close_time column when present, else from a
        DatetimeIndex.
        """
        lowered = {str(c).lower(): c for c in df.columns}

        def column(key):
            for alias in _COLUMN_ALIASES[key]:
                if alias in lowered:
                    return df[lowered[alias]].to_numpy()
            return None

        closes = column("closes")
        if closes is None:
            raise ValueError("DataFrame has no close column")

        close_times = column("close_times")
        if close_times is None and isinstance(df.index, pd.DatetimeIndex):
            close_times = df.index.to_numpy()

        return cls(
            closes=closes,
            opens=column("opens"),
            highs=column("highs"),
            lows=column("lows"),
            volumes=column("volumes"),
            close_times=close_times,
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CandleWindow":
        """Build a window from a mapping such as {"closes": [...], "highs": [...]}."""
        lowered = {str(k).lower(): v for k, v in data.items()}

        def column(key):
            for alias in _COLUMN_ALIASES[key]:
                if alias in lowered and lowered[alias] is not None:
                    return lowered[alias]
            return None

        closes = column("closes")
        if closes is None:
            raise ValueError("Candle mapping has no closes")

        close_times = column("close_times")
        return cls(
            closes=closes,
            opens=column("opens"),
            highs=column("highs"),
            lows=column("lows"),
            volumes=column("volumes"),
            close_times=np.asarray(close_times) if close_times is not None else None,
        )

    @classmethod
    def coerce(cls, candles) -> "CandleWindow":
        """Accept a CandleWindow, a DataFrame or a mapping of columns."""
        if isinstance(candles, CandleWindow):
            return candles
        if isinstance(candles, pd.DataFrame):
            return cls.from_dataframe(candles)
        if isinstance(candles, Mapping):
            return cls.from_mapping(candles)
        raise TypeError(f"Unsupported candle container: {type(candles).__name__}")

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def last_index(self, confirm_on_close: bool = True) -> int:
        """Index of the bar signals are read from (-1 if there is none)."""
        n = len(self)
        return n - 2 if confirm_on_close else n - 1

    def reference_close(self, confirm_on_close: bool = True) -> Optional[float]:
        """Close of the signal bar, or None when unavailable or not finite."""
        idx = self.last_index(confirm_on_close)
        if idx < 0:
            return None
        value = float(self.closes[idx])
        return value if np.isfinite(value) else None

    def require(self, *columns: str) -> None:
        """Raise InsufficientDataError if any of the named columns is absent."""
        missing = [c for c in columns if getattr(self, c) is None]
        if missing:
            raise InsufficientDataError(f"missing columns: {', '.join(missing)}")

    def aligned_length(self, *columns: str) -> int:
        """Shortest length across the named columns (closes included)."""
        self.require(*columns)
        lengths = [len(self.closes)] + [len(getattr(self, c)) for c in columns]
        return min(lengths)

    def to_dataframe(self) -> pd.DataFrame:
        """Back to a DataFrame (handy for inspection and tests)."""
        data = {"close": self.closes}
        for name, col in (("open", self.opens), ("high", self.highs),
                          ("low", self.lows), ("volume", self.volumes)):
            if col is not None and len(col) == len(self.closes):
                data[name] = col
        df = pd.DataFrame(data)
        if self.close_times is not None and len(self.close_times) == len(self.closes):
            df.index = pd.Index(self.close_times, name="timestamp")
        return df
