"""
Unit tests for candle windows and the indicator vote contract.
"""

import pytest
import sys
import os
import dataclasses

import numpy as np
import pandas as pd

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.features.candles import CandleWindow, InsufficientDataError
from src.strategy.votes import (
    QUALITY_DEFAULT,
    Direction,
    EntryState,
    IndicatorVote,
    VoteAuxiliary,
    invalid_vote,
    make_vote,
)


class TestCandleWindow:

    def test_from_dataframe_case_insensitive(self):
        index = pd.date_range("2024-01-01", periods=3, freq="1h")
        df = pd.DataFrame({"Open": [1, 2, 3], "HIGH": [2, 3, 4], "low": [0, 1, 2],
                           "Close": [1.5, 2.5, 3.5], "Volume": [10, 20, 30]}, index=index)
        window = CandleWindow.from_dataframe(df)
        assert len(window) == 3
        assert window.highs.tolist() == [2.0, 3.0, 4.0]
        assert window.close_times is not None
        assert window.closes.dtype == np.float64

    def test_from_mapping_with_short_keys(self):
        window = CandleWindow.from_mapping({"c": [1, 2, 3], "v": [5, 5, 5]})
        assert window.closes.tolist() == [1.0, 2.0, 3.0]
        assert window.volumes.tolist() == [5.0, 5.0, 5.0]
        assert window.highs is None

    def test_missing_closes_raises(self):
        with pytest.raises(ValueError):
            CandleWindow.from_mapping({"highs": [1, 2]})
        with pytest.raises(ValueError):
            CandleWindow.from_dataframe(pd.DataFrame({"open": [1.0]}))

    def test_coerce(self):
        window = CandleWindow(closes=[1, 2])
        assert CandleWindow.coerce(window) is window
        assert isinstance(CandleWindow.coerce({"closes": [1, 2]}), CandleWindow)
        with pytest.raises(TypeError):
            CandleWindow.coerce([1, 2, 3])

    def test_window_is_immutable(self):
        source = [1.0, 2.0, 3.0]
        window = CandleWindow(closes=source)
        source[0] = 99.0
        assert window.closes[0] == 1.0
        with pytest.raises(ValueError):
            window.closes[0] = 5.0
        with pytest.raises(dataclasses.FrozenInstanceError):
            window.closes = np.array([1.0])

    def test_signal_bar(self):
        window = CandleWindow(closes=[10, 11, 12])
        assert window.last_index(True) == 1
        assert window.last_index(False) == 2
        assert window.reference_close(True) == 11
        assert window.reference_close(False) == 12
        assert CandleWindow(closes=[10]).reference_close(True) is None
        assert CandleWindow(closes=[10, float("nan")]).reference_close(False) is None

    def test_require_and_aligned_length(self):
        window = CandleWindow(closes=[1, 2, 3, 4], highs=[1, 2, 3])
        assert window.aligned_length("highs") == 3
        with pytest.raises(InsufficientDataError):
            window.require("lows")

    def test_to_dataframe(self):
        window = CandleWindow(closes=[1, 2], volumes=[3, 4])
        df = window.to_dataframe()
        assert list(df.columns) == ["close", "volume"]


class TestIndicatorVote:

    def test_make_vote_sign_matches_direction(self):
        assert make_vote("a", "long", 0.5).directional == 1.0
        assert make_vote("a", "short", 0.5).directional == -1.0
        none_vote = make_vote("a", "none", 0.5)
        assert none_vote.directional == 0.0
        assert none_vote.entry_state is EntryState.NO_TRIGGER

    def test_sign_mismatch_raises(self):
        with pytest.raises(ValueError):
            IndicatorVote(id="a", direction=Direction.BUY, directional=-0.5, confidence=1.0)
        with pytest.raises(ValueError):
            IndicatorVote(id="a", direction=Direction.NONE, directional=0.2, confidence=1.0)

    def test_values_clamped_and_sanitized(self):
        vote = IndicatorVote(id="a", direction="buy", directional=3.0, confidence=float("nan"), quality=1.7)
        assert vote.direction is Direction.BUY
        assert vote.directional == 1.0
        assert vote.confidence == 0.0
        assert vote.quality == 1.0

    def test_default_quality(self):
        vote = make_vote("a", "long", 1.0)
        assert vote.quality is None
        assert vote.effective_quality == QUALITY_DEFAULT == 0.9
        assert vote.conviction == pytest.approx(0.9)

    def test_invalid_vote_shape(self):
        vote = invalid_vote("rsi", "insufficient data")
        assert not vote.is_valid
        assert vote.direction is Direction.NONE
        assert vote.directional == 0.0
        assert vote.confidence == 0.0
        assert vote.conviction == 0.0
        assert vote.reason == "insufficient data"

    def test_missing_stop_is_none_not_zero(self):
        aux = VoteAuxiliary(stop_long=float("nan"), atr=2)
        assert aux.stop_long is None
        assert aux.atr == 2.0
        assert aux.stop_for(Direction.BUY) is None
        assert aux.stop_for(Direction.NONE) is None

    def test_to_dict(self):
        data = make_vote("ema", "short", 0.7, 0.8, VoteAuxiliary(stop_short=105.0)).to_dict()
        assert data["direction"] == "sell"
        assert data["entry"] == "triggered"
        assert data["score"] == {"directional": -1.0, "confidence": 0.7, "quality": 0.8}
        assert data["stopShort"] == 105.0
        assert data["stopLong"] is None
