"""
Tests for the TA-Lib indicator evaluators and the mock data loader.

Tests:
- Every evaluator honours the vote contract on realistic data
- Short or incomplete windows produce invalid votes, never exceptions
- EMA trend detection and ATR stop suggestions
- Volume confirmation
- End-to-end engine run on synthetic multi-timeframe data
"""

import pytest
import sys
import os

import numpy as np

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.data.mock_loader import MockDataLoader
from src.features.candles import CandleWindow
from src.features.indicators import (
    DEFAULT_INDICATORS,
    evaluate_ema,
    evaluate_ichimoku,
    evaluate_rsi,
    evaluate_volume,
    get_default_indicators,
    register_indicator,
)
from src.strategy.ensemble import EnsembleEngine
from src.strategy.timeframe_aggregator import TimeframeInput
from src.strategy.votes import Direction, IndicatorVote, make_vote


@pytest.fixture(scope="module")
def mock_window():
    df = MockDataLoader.fetch_data(days=5, freq="5min", seed=7)
    return CandleWindow.from_dataframe(df)


def trend_window(step, n=60):
    closes = 100 + step * np.arange(n)
    return CandleWindow(closes=closes, opens=closes - step / 2, highs=closes + 0.1,
                        lows=closes - 0.1, volumes=np.full(n, 100.0))


class TestRegistry:

    def test_fixed_order(self):
        assert [i for i, _ in get_default_indicators()] == [
            "ema", "macd", "rsi", "ichimoku", "alligator", "vwap", "bollinger", "adx", "volume"]

    def test_register_replaces_in_place(self):
        def custom(window, confirm_on_close=True, **params):
            return make_vote("rsi", "none", 0.0)

        registry = register_indicator(DEFAULT_INDICATORS, "rsi", custom)
        assert [i for i, _ in registry] == [i for i, _ in DEFAULT_INDICATORS]
        assert dict(registry)["rsi"] is custom

    def test_register_appends_new_ids(self):
        registry = register_indicator(DEFAULT_INDICATORS, "obv", evaluate_rsi)
        assert registry[-1][0] == "obv"
        assert len(DEFAULT_INDICATORS) == 9


class TestVoteContract:

    @pytest.mark.parametrize("indicator_id,evaluator", DEFAULT_INDICATORS)
    def test_valid_vote_on_mock_data(self, mock_window, indicator_id, evaluator):
        vote = evaluator(mock_window)
        assert isinstance(vote, IndicatorVote)
        assert vote.id == indicator_id
        assert vote.is_valid, vote.reason
        assert vote.directional == vote.direction.sign
        assert 0.0 <= vote.confidence <= 1.0
        assert vote.quality is None or 0.0 <= vote.quality <= 1.0

    @pytest.mark.parametrize("indicator_id,evaluator", DEFAULT_INDICATORS)
    def test_short_window_is_invalid(self, indicator_id, evaluator):
        window = CandleWindow(closes=[100.0, 101.0, 100.5], highs=[101.0, 102.0, 101.0],
                              lows=[99.0, 100.0, 99.5], opens=[100.0, 100.5, 101.0], volumes=[1.0, 2.0, 3.0])
        vote = evaluator(window)
        assert not vote.is_valid
        assert vote.direction is Direction.NONE
        assert vote.confidence == 0.0

    @pytest.mark.parametrize("indicator_id,evaluator", DEFAULT_INDICATORS)
    def test_deterministic(self, mock_window, indicator_id, evaluator):
        assert evaluator(mock_window).to_dict() == evaluator(mock_window).to_dict()

    def test_missing_columns_invalidate_only_dependent_indicators(self, mock_window):
        closes_only = CandleWindow(closes=mock_window.closes[:200])
        assert not evaluate_ichimoku(closes_only).is_valid
        assert not evaluate_volume(closes_only).is_valid
        assert evaluate_rsi(closes_only).is_valid
        ema_vote = evaluate_ema(closes_only)
        assert ema_vote.is_valid
        assert ema_vote.auxiliary.atr is None
        assert ema_vote.auxiliary.stop_long is None

    def test_bad_params_become_invalid_vote(self, mock_window):
        vote = evaluate_ema(mock_window, nonsense=1)
        assert not vote.is_valid
        assert vote.reason.startswith("error")

    def test_insufficient_reason(self):
        vote = evaluate_ichimoku(trend_window(0.05, n=40))
        assert not vote.is_valid
        assert vote.reason.startswith("insufficient data")


class TestEma:

    def test_uptrend_is_buy(self):
        vote = evaluate_ema(trend_window(0.05))
        assert vote.direction is Direction.BUY

    def test_downtrend_is_sell(self):
        vote = evaluate_ema(trend_window(-0.05))
        assert vote.direction is Direction.SELL

    def test_atr_stops_bracket_price(self):
        window = trend_window(0.05)
        vote = evaluate_ema(window, atr_stop_multiple=1.3)
        aux = vote.auxiliary
        assert aux.atr == pytest.approx(0.2, rel=1e-6)
        assert aux.price_ref == pytest.approx(window.reference_close(True))
        assert aux.stop_long == pytest.approx(aux.price_ref - 1.3 * aux.atr)
        assert aux.stop_short == pytest.approx(aux.price_ref + 1.3 * aux.atr)

    def test_config_less_engine_uses_documented_stop_multiple(self):
        window = trend_window(0.05)
        engine = EnsembleEngine()
        votes = engine.aggregator.collect_votes(TimeframeInput("5m", window))
        aux = next(v for v in votes if v.id == "ema").auxiliary
        assert (aux.price_ref - aux.stop_long) / aux.atr == pytest.approx(1.3)
        assert (aux.stop_short - aux.price_ref) / aux.atr == pytest.approx(1.3)

    def test_confirm_on_close_reads_previous_bar(self):
        window = trend_window(0.05)
        assert evaluate_ema(window, confirm_on_close=True).auxiliary.price_ref == pytest.approx(window.closes[-2])
        assert evaluate_ema(window, confirm_on_close=False).auxiliary.price_ref == pytest.approx(window.closes[-1])


class TestVolume:

    def test_heavy_up_bar_is_buy(self):
        n = 40
        closes = 100 + 0.05 * np.arange(n)
        volumes = np.full(n, 100.0)
        volumes[-2] = 1000.0
        window = CandleWindow(closes=closes, opens=closes - 0.02, volumes=volumes)
        vote = evaluate_volume(window)
        assert vote.direction is Direction.BUY
        assert vote.quality == 1.0

    def test_quiet_bars_do_not_fire(self):
        n = 40
        closes = 100 + 0.05 * np.arange(n)
        volumes = np.full(n, 100.0)
        volumes[-4:] = 10.0
        window = CandleWindow(closes=closes, opens=closes - 0.02, volumes=volumes)
        assert evaluate_volume(window).direction is Direction.NONE


class TestMockData:

    def test_seeded_data_is_reproducible(self):
        a = MockDataLoader.fetch_data(days=1, seed=3)
        b = MockDataLoader.fetch_data(days=1, seed=3)
        assert a.equals(b)
        assert len(a) == 288

    def test_resample_keeps_ohlc_consistent(self):
        df = MockDataLoader.fetch_data(days=2, seed=3)
        hourly = MockDataLoader.resample(df, "1h")
        assert list(hourly.columns) == ["open", "high", "low", "close", "volume"]
        assert 47 <= len(hourly) <= 49
        assert (hourly["high"] >= hourly["low"]).all()
        assert hourly["volume"].sum() == pytest.approx(df["volume"].sum())


class TestEndToEnd:

    def test_engine_on_mock_timeframes(self):
        df = MockDataLoader.fetch_data(days=100, freq="5min", seed=11)
        timeframes = MockDataLoader.build_timeframes(df, labels=("5m", "1h", "4h", "1D"))
        engine = EnsembleEngine()
        result = engine.decision(timeframes)

        assert [t.timeframe for t in result.per_timeframe_scores] == ["5m", "1h", "4h", "1D"]
        assert result.weights_used.timeframe_weights == (("5m", 1.0), ("1h", 1.4), ("4h", 1.6), ("1D", 2.0))
        assert len(result.per_indicator_breakdown) == 4 * 9
        assert -1.0 <= result.ensemble_score <= 1.0
        assert 0.0 <= result.confidence <= 1.0
        for _, weights in result.weights_used.indicator_weights:
            assert sum(weights.values()) == pytest.approx(1.0)
        if result.direction is not Direction.NONE:
            assert 0.05 <= result.position_size_fraction <= 0.5
            assert result.stop_loss_price is not None
