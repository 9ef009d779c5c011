"""
INDICATOR EVALUATORS - one vote per indicator per candle window

Every evaluator has the same contract:

    evaluate(window: CandleWindow, confirm_on_close=True, **params) -> IndicatorVote

and never raises: short windows, missing columns and numeric failures all
come back as an invalid vote (is_valid=False, direction none).

TA-Lib does the heavy lifting (EMA/ATR/MACD/RSI/ADX/BBANDS/SMA); pandas
covers rolling highs/lows and Wilder smoothing.

Registry order is fixed (see DEFAULT_INDICATORS); the aggregator sums votes
in that order.
"""

import functools
import logging
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import talib

from src.features.candles import CandleWindow, InsufficientDataError
from src.strategy.votes import IndicatorVote, VoteAuxiliary, invalid_vote, make_vote

logger = logging.getLogger(__name__)

Evaluator = Callable[..., IndicatorVote]


# ============================================
# HELPERS
# ============================================

def indicator(indicator_id: str):
    """Wrap a raw evaluator so any failure becomes an invalid vote."""
    def wrap(fn):
        @functools.wraps(fn)
        def evaluate(window: CandleWindow, confirm_on_close: bool = True, **params) -> IndicatorVote:
            try:
                return fn(window, confirm_on_close, **params)
            except InsufficientDataError as e:
                logger.debug(f"[INDICATOR] {indicator_id}: insufficient data ({e})")
                return invalid_vote(indicator_id, f"insufficient data: {e}")
            except Exception as e:
                logger.debug(f"[INDICATOR] {indicator_id}: calculation error ({e})")
                return invalid_vote(indicator_id, f"error: {e}")
        evaluate.indicator_id = indicator_id
        return evaluate
    return wrap


def _signal_index(window: CandleWindow, confirm_on_close: bool, min_len: int,
                  *columns: str) -> Tuple[int, int]:
    """Usable length and the index of the signal bar; raises if too short."""
    n = window.aligned_length(*columns) if columns else len(window)
    if n < min_len:
        raise InsufficientDataError(f"need {min_len} bars, have {n}")
    last = n - 2 if confirm_on_close else n - 1
    if last < 1:
        raise InsufficientDataError("not enough closed bars")
    return n, last


def _col(window: CandleWindow, name: str, n: int) -> np.ndarray:
    # TA-Lib wants contiguous, writable float64
    return np.array(getattr(window, name)[:n], dtype=float)


def _val(arr, i: int) -> Optional[float]:
    if i < 0 or i >= len(arr):
        return None
    v = float(arr[i])
    return v if np.isfinite(v) else None


def _slope_at(arr, idx: int, k: int) -> Optional[float]:
    if k <= 0:
        return None
    a, b = _val(arr, idx), _val(arr, idx - k)
    if a is None or b is None:
        return None
    return (a - b) / k


def _bars_since_cross(fast, slow, last: int, lookback: int) -> Tuple[Optional[int], Optional[int]]:
    """Bars since the most recent up- and down-cross of fast over slow."""
    up = down = None
    for i in range(last, max(1, last - lookback) - 1, -1):
        f, s, pf, ps = _val(fast, i), _val(slow, i), _val(fast, i - 1), _val(slow, i - 1)
        if None in (f, s, pf, ps):
            continue
        if up is None and pf <= ps and f > s:
            up = last - i
        if down is None and pf >= ps and f < s:
            down = last - i
        if up is not None and down is not None:
            break
    return up, down


def _recent(bars: Optional[int], recent_bars: int) -> bool:
    return bars is not None and bars <= recent_bars


def _atr_at(window: CandleWindow, n: int, idx: int, period: int = 14) -> Optional[float]:
    if window.highs is None or window.lows is None:
        return None
    if len(window.highs) < n or len(window.lows) < n:
        return None
    atr = talib.ATR(_col(window, "highs", n), _col(window, "lows", n), _col(window, "closes", n),
                    timeperiod=period)
    return _val(atr, idx)


def _rolling_std(values, window: int, end: int) -> float:
    start = max(0, end - window + 1)
    std = pd.Series(values[start:end + 1], dtype=float).std()
    return float(std) if np.isfinite(std) else 0.0


# ============================================
# 1. EMA - trend + ATR stop suggestions
# ============================================

@indicator("ema")
def evaluate_ema(window: CandleWindow, confirm_on_close: bool = True, period: int = 9,
                 long_period: Optional[int] = None, atr_period: int = 14, slope_window: int = 3,
                 max_extension_pct: float = 0.015, slope_min_pct: float = 0.0002,
                 recent_bars: int = 3, atr_stop_multiple: float = 1.3,
                 max_lookback: int = 20) -> IndicatorVote:
    n, last = _signal_index(window, confirm_on_close, max(period, slope_window) + 2)
    closes = _col(window, "closes", n)
    ema = talib.EMA(closes, timeperiod=period)

    price = float(closes[last])
    last_ema = _val(ema, last)
    if last_ema is None:
        raise InsufficientDataError("EMA not warmed up")

    above = price > last_ema
    below = price < last_ema

    slope = _slope_at(ema, last, slope_window) or 0.0
    slope_pct = slope / last_ema if last_ema else 0.0
    slope_up = slope_pct > slope_min_pct
    slope_down = slope_pct < -slope_min_pct

    distance_pct = (price - last_ema) / last_ema if last_ema else 0.0
    within_extension = abs(distance_pct) <= max_extension_pct

    trend_long = "neutral"
    if long_period:
        last_long = _val(talib.EMA(closes, timeperiod=long_period), last)
        if last_long is not None:
            trend_long = "bull" if last_ema > last_long else "bear" if last_ema < last_long else "neutral"

    atr = _atr_at(window, n, last, atr_period)
    stop_long = price - atr_stop_multiple * atr if atr is not None else None
    stop_short = price + atr_stop_multiple * atr if atr is not None else None

    bars_up, bars_down = _bars_since_cross(closes, ema, last, max_lookback)
    recent_up = _recent(bars_up, recent_bars)
    recent_down = _recent(bars_down, recent_bars)

    long_ok = above and slope_up and trend_long in ("bull", "neutral")
    short_ok = below and slope_down and trend_long in ("bear", "neutral")
    entry_long = long_ok and (recent_up or (within_extension and above)) and within_extension
    entry_short = short_ok and (recent_down or (within_extension and below)) and within_extension
    signal = "long" if entry_long else "short" if entry_short else "none"

    return make_vote(
        "ema", signal, confidence=1.0, quality=1.0,
        auxiliary=VoteAuxiliary(
            stop_long=stop_long,
            stop_short=stop_short,
            atr=atr,
            price_ref=price,
            extras={"ema": last_ema, "slope_pct": slope_pct, "distance_pct": distance_pct,
                    "bars_since_cross_up": bars_up, "bars_since_cross_down": bars_down},
        ),
    )


# ============================================
# 2. MACD - momentum
# ============================================

@indicator("macd")
def evaluate_macd(window: CandleWindow, confirm_on_close: bool = True, fast_period: int = 12,
                  slow_period: int = 26, signal_period: int = 9,
                  recent_bars: int = 3) -> IndicatorVote:
    n, last = _signal_index(window, confirm_on_close, max(fast_period, slow_period, signal_period) + 2)
    closes = _col(window, "closes", n)
    macd, signal_line, hist = talib.MACD(closes, fastperiod=fast_period,
                                         slowperiod=slow_period, signalperiod=signal_period)

    values = [_val(macd, last), _val(signal_line, last), _val(hist, last),
              _val(macd, last - 1), _val(signal_line, last - 1), _val(hist, last - 1)]
    if any(v is None for v in values):
        raise InsufficientDataError("MACD/signal/histogram not warmed up")
    last_macd, last_signal, last_hist, _, _, _ = values

    macd_above_signal = last_macd > last_signal
    macd_above_zero = last_macd > 0
    hist_above_zero = last_hist > 0

    bars_bull, bars_bear = _bars_since_cross(macd, signal_line, last, 50)
    zero = np.zeros(n)
    bars_zero_up, bars_zero_down = _bars_since_cross(macd, zero, last, 50)
    recent_bull = _recent(bars_bull, recent_bars)
    recent_bear = _recent(bars_bear, recent_bars)
    recent_zero_up = _recent(bars_zero_up, recent_bars)
    recent_zero_down = _recent(bars_zero_down, recent_bars)
    bull_cross = bars_bull == 0
    bear_cross = bars_bear == 0

    k = min(3, last)
    hist_slope = _slope_at(hist, last, k) or 0.0

    # Histogram strength vs its recent average
    hist_window = max(5, min(20, signal_period * 2))
    recent_hist = [abs(h) for h in hist[max(0, last - hist_window + 1):last + 1] if np.isfinite(h)]
    avg_abs_hist = sum(recent_hist) / len(recent_hist) if recent_hist else 0.0
    hist_strength = abs(last_hist) / avg_abs_hist if avg_abs_hist else 0.0

    std_macd = _rolling_std(macd, max(10, signal_period), last)
    std_hist = _rolling_std(hist, max(10, signal_period), last)
    z_macd = last_macd / std_macd if std_macd > 0 else 0.0
    z_hist = last_hist / std_hist if std_hist > 0 else 0.0

    bias = "neutral"
    if macd_above_signal and hist_above_zero and (macd_above_zero or recent_zero_up) and hist_slope >= 0:
        bias = "buy"
    elif (not macd_above_signal and not hist_above_zero
          and (not macd_above_zero or recent_zero_down) and hist_slope <= 0):
        bias = "sell"

    if recent_bull:
        signal = "long"
    elif recent_bear:
        signal = "short"
    elif bias == "buy":
        signal = "long"
    elif bias == "sell":
        signal = "short"
    else:
        signal = "none"

    votes = [
        1 if macd_above_signal else -1,
        1 if hist_above_zero else -1,
        1 if macd_above_zero else -1,
        1 if hist_slope >= 0 else -1,
        1 if bull_cross else -1 if bear_cross else 0,
        1 if recent_zero_up else -1 if recent_zero_down else 0,
    ]
    vote_factor = (sum(votes) / len(votes) + 1) / 2
    recency_boost = 0.15 if (recent_bull or recent_bear or recent_zero_up or recent_zero_down) else 0.0
    confidence = min(1.0, max(0.3,
                              0.35 * vote_factor
                              + 0.25 * min(1.0, hist_strength / 1.5)
                              + 0.2 * min(1.0, abs(z_macd) / 2.5)
                              + 0.15 * min(1.0, abs(z_hist) / 2.5)
                              + recency_boost))

    quality = 0.8
    strong_long = macd_above_signal and hist_above_zero and (macd_above_zero or recent_zero_up) and hist_slope > 0
    strong_short = (not macd_above_signal and not hist_above_zero
                    and (not macd_above_zero or recent_zero_down) and hist_slope < 0)
    if (recent_bull and strong_long) or (recent_bear and strong_short):
        quality = 1.0
    elif strong_long or strong_short:
        quality = 0.92
    if confidence >= 0.85:
        quality = max(quality, 0.95)

    return make_vote(
        "macd", signal, confidence=confidence, quality=quality,
        auxiliary=VoteAuxiliary(extras={"macd": last_macd, "signal": last_signal, "hist": last_hist,
                                        "bias": bias, "hist_strength": hist_strength}),
    )


# ============================================
# 3. RSI - momentum exits from extremes
# ============================================

@indicator("rsi")
def evaluate_rsi(window: CandleWindow, confirm_on_close: bool = True, period: int = 14,
                 buy_threshold: float = 30, sell_threshold: float = 70, slope_window: int = 3,
                 recent_bars: int = 3, max_lookback: int = 10) -> IndicatorVote:
    n, last = _signal_index(window, confirm_on_close, max(period, slope_window) + 2)
    closes = _col(window, "closes", n)
    rsi = talib.RSI(closes, timeperiod=period)

    last_rsi, prev_rsi = _val(rsi, last), _val(rsi, last - 1)
    if last_rsi is None:
        raise InsufficientDataError("RSI not warmed up")

    cross_up_mid = prev_rsi is not None and prev_rsi <= 50 < last_rsi
    cross_down_mid = prev_rsi is not None and prev_rsi >= 50 > last_rsi

    slope = _slope_at(rsi, last, slope_window) or 0.0
    slope_up = slope > 0
    slope_down = slope < 0

    bars_up, _ = _bars_since_cross(rsi, np.full(n, float(buy_threshold)), last, max_lookback)
    _, bars_down = _bars_since_cross(rsi, np.full(n, float(sell_threshold)), last, max_lookback)
    recent_up = _recent(bars_up, recent_bars)
    recent_down = _recent(bars_down, recent_bars)

    entry_long = (recent_up or cross_up_mid) and slope_up
    entry_short = (recent_down or cross_down_mid) and slope_down
    signal = "long" if entry_long else "short" if entry_short else "none"

    return make_vote(
        "rsi", signal, confidence=1.0, quality=1.0,
        auxiliary=VoteAuxiliary(extras={"rsi": last_rsi, "over_sold": last_rsi <= buy_threshold,
                                        "over_bought": last_rsi >= sell_threshold}),
    )


# ============================================
# 4. ICHIMOKU - trend structure
# ============================================

@indicator("ichimoku")
def evaluate_ichimoku(window: CandleWindow, confirm_on_close: bool = True, conv_period: int = 9,
                      base_period: int = 26, span_b_period: int = 52,
                      displacement: int = 26) -> IndicatorVote:
    n, last = _signal_index(window, confirm_on_close,
                            max(span_b_period, base_period) + displacement + 2, "highs", "lows")
    highs = pd.Series(_col(window, "highs", n))
    lows = pd.Series(_col(window, "lows", n))
    closes = _col(window, "closes", n)

    def midpoint(period):
        return (highs.rolling(period).max() + lows.rolling(period).min()) / 2

    tenkan = midpoint(conv_period).to_numpy()
    kijun = midpoint(base_period).to_numpy()
    senkou_a = pd.Series((tenkan + kijun) / 2).shift(displacement).to_numpy()
    senkou_b = midpoint(span_b_period).shift(displacement).to_numpy()

    price = float(closes[last])
    span_a, span_b = _val(senkou_a, last), _val(senkou_b, last)
    has_cloud = span_a is not None and span_b is not None
    above_cloud = has_cloud and price > max(span_a, span_b)
    below_cloud = has_cloud and price < min(span_a, span_b)
    in_cloud = has_cloud and not above_cloud and not below_cloud
    cloud_bull = has_cloud and span_a > span_b
    cloud_bear = has_cloud and span_a < span_b

    bars_bull, bars_bear = _bars_since_cross(tenkan, kijun, last, 1)
    bull_tk_cross = bars_bull == 0
    bear_tk_cross = bars_bear == 0

    # Lagging span: today's close vs the close `displacement` bars ago
    past = _val(closes, last - displacement)
    chikou_bull = past is not None and price > past
    chikou_bear = past is not None and price < past

    if above_cloud and cloud_bull and bull_tk_cross and chikou_bull:
        signal = "long"
    elif below_cloud and cloud_bear and bear_tk_cross and chikou_bear:
        signal = "short"
    else:
        signal = "none"

    checks = [above_cloud or below_cloud, cloud_bull or cloud_bear,
              bull_tk_cross or bear_tk_cross, chikou_bull or chikou_bear]
    confidence = sum(1 for c in checks if c) / len(checks)

    return make_vote(
        "ichimoku", signal, confidence=confidence, quality=0.7 if in_cloud else 1.0,
        auxiliary=VoteAuxiliary(extras={"tenkan": _val(tenkan, last), "kijun": _val(kijun, last),
                                        "span_a": span_a, "span_b": span_b}),
    )


# ============================================
# 5. WILLIAMS ALLIGATOR - trend structure
# ============================================

def _smma(values: np.ndarray, period: int) -> pd.Series:
    series = pd.Series(values).ewm(alpha=1.0 / period, adjust=False).mean()
    series.iloc[:period - 1] = np.nan
    return series


@indicator("alligator")
def evaluate_alligator(window: CandleWindow, confirm_on_close: bool = True, lips_period: int = 5,
                       teeth_period: int = 8, jaw_period: int = 13, lips_shift: int = 3,
                       teeth_shift: int = 5, jaw_shift: int = 8,
                       recent_bars: int = 3) -> IndicatorVote:
    n, last = _signal_index(window, confirm_on_close,
                            max(lips_period, teeth_period, jaw_period) + 2, "highs", "lows")
    highs = _col(window, "highs", n)
    lows = _col(window, "lows", n)
    closes = _col(window, "closes", n)
    median_price = (highs + lows) / 2

    lips = _smma(median_price, lips_period).shift(lips_shift).to_numpy()
    teeth = _smma(median_price, teeth_period).shift(teeth_shift).to_numpy()
    jaw = _smma(median_price, jaw_period).shift(jaw_shift).to_numpy()

    l_lips, l_teeth, l_jaw = _val(lips, last), _val(teeth, last), _val(jaw, last)
    lines_ready = None not in (l_lips, l_teeth, l_jaw)
    mouth_bull = lines_ready and l_lips > l_teeth > l_jaw
    mouth_bear = lines_ready and l_lips < l_teeth < l_jaw

    spread_pct = 0.0
    spread_norm = 0.0
    if lines_ready:
        hi, lo = max(l_lips, l_teeth, l_jaw), min(l_lips, l_teeth, l_jaw)
        mid = (hi + lo) / 2
        spread_pct = (hi - lo) / mid * 100 if mid else 0.0
        spread_norm = spread_pct / 100
        atr = _atr_at(window, n, last, 14)
        if atr:
            spread_norm = (hi - lo) / atr

    bull_lt, bear_lt = _bars_since_cross(lips, teeth, last, 50)
    bull_tj, bear_tj = _bars_since_cross(teeth, jaw, last, 50)
    recent_bull = _recent(bull_lt, recent_bars) or _recent(bull_tj, recent_bars)
    recent_bear = _recent(bear_lt, recent_bars) or _recent(bear_tj, recent_bars)

    k = min(3, last)
    slopes = [_slope_at(lips, last, k), _slope_at(teeth, last, k), _slope_at(jaw, last, k)]
    slopes_up = None not in slopes and all(s > 0 for s in slopes)
    slopes_down = None not in slopes and all(s < 0 for s in slopes)

    price = float(closes[last])
    price_above_all = lines_ready and price > max(l_lips, l_teeth, l_jaw)
    price_below_all = lines_ready and price < min(l_lips, l_teeth, l_jaw)

    if mouth_bull and (recent_bull or slopes_up or price_above_all):
        signal = "long"
    elif mouth_bear and (recent_bear or slopes_down or price_below_all):
        signal = "short"
    else:
        signal = "none"

    is_long, is_short = signal == "long", signal == "short"
    mouth_factor = min(1.0, max(0.0, spread_norm / 0.5))
    slope_boost = 0.25 if (slopes_up and is_long) or (slopes_down and is_short) else 0.0
    price_boost = 0.2 if (price_above_all and is_long) or (price_below_all and is_short) else 0.0
    trigger_boost = 0.2 if (recent_bull or recent_bear) and signal != "none" else 0.0
    active = 1.0 if signal != "none" else 0.0
    confidence = min(1.0, max(0.3, active * (0.5 + mouth_factor + slope_boost + price_boost + trigger_boost)))

    quality = 1.0 if spread_norm >= 1.0 else 0.9 if spread_norm >= 0.5 else 0.8

    return make_vote(
        "alligator", signal, confidence=confidence, quality=quality,
        auxiliary=VoteAuxiliary(extras={"lips": l_lips, "teeth": l_teeth, "jaw": l_jaw,
                                        "spread_pct": spread_pct, "spread_norm": spread_norm}),
    )


# ============================================
# 6. VWAP - volume-weighted fair value
# ============================================

@indicator("vwap")
def evaluate_vwap(window: CandleWindow, confirm_on_close: bool = True, threshold_pct: float = 1.0,
                  recent_bars: int = 3, slope_window: int = 3) -> IndicatorVote:
    n, last = _signal_index(window, confirm_on_close, max(5, slope_window) + 1,
                            "highs", "lows", "volumes")
    highs = _col(window, "highs", n)
    lows = _col(window, "lows", n)
    closes = _col(window, "closes", n)
    volumes = np.clip(np.nan_to_num(_col(window, "volumes", n)), 0, None)

    typical = (highs + lows + closes) / 3
    cum_v = np.cumsum(volumes)
    cum_pv = np.cumsum(typical * volumes)
    raw = np.where(cum_v > 0, cum_pv / np.where(cum_v > 0, cum_v, 1.0), np.nan)
    vwap = pd.Series(raw).ffill().fillna(pd.Series(typical)).to_numpy()

    price = float(closes[last])
    l_vwap = _val(vwap, last)
    if l_vwap is None:
        raise InsufficientDataError("VWAP unavailable")

    slope = _slope_at(vwap, last, slope_window) or 0.0
    slope_pct = slope / l_vwap * 100 if l_vwap else 0.0
    diff_pct = (price - l_vwap) / l_vwap * 100 if l_vwap else 0.0

    deviation = typical - vwap
    dev_std = _rolling_std(deviation, 20, last)
    z_score = deviation[last] / dev_std if dev_std > 0 else 0.0

    threshold = max(0.0, threshold_pct)
    upper = vwap * (1 + threshold / 100)
    lower = vwap * (1 - threshold / 100)
    bars_above = bars_below = None
    for i in range(last, max(0, last - 50) - 1, -1):
        if bars_above is None and closes[i] >= upper[i]:
            bars_above = last - i
        if bars_below is None and closes[i] <= lower[i]:
            bars_below = last - i
        if bars_above is not None and bars_below is not None:
            break
    recent_above = _recent(bars_above, recent_bars)
    recent_below = _recent(bars_below, recent_bars)

    cross_up_bars, cross_down_bars = _bars_since_cross(closes, vwap, last, 1)
    cross_up = cross_up_bars == 0
    cross_down = cross_down_bars == 0

    above_th = price >= upper[last]
    below_th = price <= lower[last]
    long_ok = (above_th and slope_pct > 0) or ((recent_above or cross_up) and slope_pct >= 0)
    short_ok = (below_th and slope_pct < 0) or ((recent_below or cross_down) and slope_pct <= 0)
    signal = "long" if long_ok else "short" if short_ok else "none"

    dist_factor = min(1.0, max(0.0, abs(diff_pct) / (2 * max(0.0001, threshold))))
    slope_factor = min(1.0, abs(slope_pct) / 0.5)
    z_factor = min(1.0, abs(z_score) / 2)
    trigger_boost = 0.2 if (recent_above or recent_below or cross_up or cross_down) else 0.0
    base = 0.5 if signal != "none" else 0.3
    confidence = min(1.0, max(0.3, base + 0.4 * dist_factor + 0.3 * slope_factor + 0.2 * z_factor + trigger_boost))

    if abs(slope_pct) >= 0.5 and abs(z_score) >= 1.0:
        quality = 1.0
    elif abs(slope_pct) >= 0.3 or abs(z_score) >= 0.8:
        quality = 0.9
    else:
        quality = 0.8

    return make_vote(
        "vwap", signal, confidence=confidence, quality=quality,
        auxiliary=VoteAuxiliary(extras={"vwap": l_vwap, "diff_pct": diff_pct,
                                        "slope_pct": slope_pct, "z_score": float(z_score)}),
    )


# ============================================
# 7. BOLLINGER BANDS - continuation and squeeze re-entry
# ============================================

@indicator("bollinger")
def evaluate_bollinger(window: CandleWindow, confirm_on_close: bool = True, period: int = 20,
                       std_dev: float = 2.0, recent_bars: int = 3) -> IndicatorVote:
    n, last = _signal_index(window, confirm_on_close, period + 2)
    closes = _col(window, "closes", n)
    upper, middle, lower = talib.BBANDS(closes, timeperiod=period, nbdevup=std_dev,
                                        nbdevdn=std_dev, matype=0)

    lc, pc = float(closes[last]), float(closes[last - 1])
    l_upper, l_middle, l_lower = _val(upper, last), _val(middle, last), _val(lower, last)
    p_upper, p_lower = _val(upper, last - 1), _val(lower, last - 1)
    if None in (l_upper, l_middle, l_lower):
        raise InsufficientDataError("Bollinger bands not warmed up")

    band_width = l_upper - l_lower
    width_pct = band_width / l_middle * 100 if l_middle else 0.0
    percent_b = (lc - l_lower) / band_width if band_width else 0.0

    middle_slope = _slope_at(middle, last, min(3, last)) or 0.0
    middle_slope_pct = middle_slope / l_middle * 100 if l_middle else 0.0

    touch_upper = lc >= l_upper
    touch_lower = lc <= l_lower
    reenter_from_below = p_lower is not None and pc <= p_lower and lc > l_lower
    reenter_from_above = p_upper is not None and pc >= p_upper and lc < l_upper
    breakout_up = p_upper is not None and pc <= p_upper and lc > l_upper
    breakout_down = p_lower is not None and pc >= p_lower and lc < l_lower
    walking_up = touch_upper and middle_slope_pct > 0
    walking_down = touch_lower and middle_slope_pct < 0

    # Squeeze: current width in the narrowest 20% of the lookback
    lookback = max(40, period * 3)
    start = max(0, last - lookback + 1)
    widths = sorted(
        (upper[i] - lower[i]) / middle[i] * 100
        for i in range(start, last + 1)
        if np.isfinite(upper[i]) and np.isfinite(lower[i]) and np.isfinite(middle[i]) and middle[i] != 0
    )
    if widths:
        rank = next((i for i, w in enumerate(widths) if w >= width_pct), len(widths) - 1)
        pct_rank = rank / max(1, len(widths) - 1)
    else:
        pct_rank = 1.0
    squeeze = pct_rank <= 0.2

    bars_break_up, _ = _bars_since_cross(closes, upper, last, 50)
    _, bars_break_down = _bars_since_cross(closes, lower, last, 50)
    recent_break_up = _recent(bars_break_up, recent_bars)
    recent_break_down = _recent(bars_break_down, recent_bars)

    cont_long = (recent_break_up or breakout_up or walking_up) and middle_slope_pct > 0
    cont_short = (recent_break_down or breakout_down or walking_down) and middle_slope_pct < 0
    mr_long = (squeeze and reenter_from_below and 0 < percent_b < 0.35
               and abs(middle_slope_pct) < 0.15)
    mr_short = (squeeze and reenter_from_above and 0.65 < percent_b < 1
                and abs(middle_slope_pct) < 0.15)

    if cont_long or (mr_long and not cont_short):
        signal = "long"
    elif cont_short or mr_short:
        signal = "short"
    else:
        signal = "none"

    continuation = cont_long or cont_short
    structure = 0.55 if continuation else 0.45 if (mr_long or mr_short) else 0.3
    width_factor = min(1.0, max(0.0, width_pct / 6))
    squeeze_factor = (1 - pct_rank) * 0.6 if squeeze else 0.0
    dist_from_mid = abs(percent_b - 0.5) * 2
    if cont_long:
        trend_factor = min(1.0, max(0.0, middle_slope_pct / 0.3))
    elif cont_short:
        trend_factor = min(1.0, max(0.0, -middle_slope_pct / 0.3))
    else:
        trend_factor = 0.0
    breakout_boost = 0.15 if (recent_break_up or recent_break_down) else 0.0
    confidence = (structure
                  + 0.25 * (width_factor if continuation else squeeze_factor)
                  + 0.25 * dist_from_mid
                  + 0.25 * trend_factor
                  + breakout_boost)
    confidence = max(0.3, min(1.0, confidence))

    if signal == "none":
        quality = 0.8
    elif (breakout_up or breakout_down or walking_up or walking_down) and abs(middle_slope_pct) >= 0.15:
        quality = 1.0 if width_pct >= 4 else 0.95
    elif squeeze and (reenter_from_below or reenter_from_above):
        quality = 0.9
    else:
        quality = 0.85

    return make_vote(
        "bollinger", signal, confidence=confidence, quality=quality,
        auxiliary=VoteAuxiliary(extras={"upper": l_upper, "middle": l_middle, "lower": l_lower,
                                        "width_pct": width_pct, "percent_b": percent_b,
                                        "squeeze": squeeze}),
    )


# ============================================
# 8. ADX - trend strength + DI dominance
# ============================================

def _streak(arr, last: int, rising: bool) -> int:
    count = 0
    for i in range(last, max(1, last - 10) - 1, -1):
        cur, prv = _val(arr, i), _val(arr, i - 1)
        if cur is None or prv is None:
            break
        if (cur > prv) if rising else (cur < prv):
            count += 1
        else:
            break
    return count


@indicator("adx")
def evaluate_adx(window: CandleWindow, confirm_on_close: bool = True, period: int = 14,
                 min_adx: float = 25, recent_bars: int = 3) -> IndicatorVote:
    n, last = _signal_index(window, confirm_on_close, period + 2, "highs", "lows")
    highs = _col(window, "highs", n)
    lows = _col(window, "lows", n)
    closes = _col(window, "closes", n)

    adx = talib.ADX(highs, lows, closes, timeperiod=period)
    plus_di = talib.PLUS_DI(highs, lows, closes, timeperiod=period)
    minus_di = talib.MINUS_DI(highs, lows, closes, timeperiod=period)

    last_adx, prev_adx = _val(adx, last), _val(adx, last - 1)
    last_plus, last_minus = _val(plus_di, last), _val(minus_di, last)
    if None in (last_adx, prev_adx, last_plus, last_minus):
        raise InsufficientDataError("ADX/DI not warmed up")

    adx_slope = last_adx - prev_adx
    up_streak = _streak(adx, last, rising=True)
    down_streak = _streak(adx, last, rising=False)

    past_adx = _val(adx, last - period)
    adxr = (last_adx + past_adx) / 2 if past_adx is not None else last_adx

    di_dom = abs(last_plus - last_minus) / max(1e-9, last_plus + last_minus)
    bull_bias = last_plus > last_minus
    bear_bias = last_minus > last_plus

    bars_bull, bars_bear = _bars_since_cross(plus_di, minus_di, last, 50)
    recent_bull = _recent(bars_bull, recent_bars)
    recent_bear = _recent(bars_bear, recent_bars)

    trend_active = last_adx >= min_adx
    adx_strong = last_adx >= 35
    adx_very_strong = last_adx >= 45
    exhaustion = adx_very_strong and down_streak >= 2

    momentum_long = adx_slope > 0 or up_streak >= 2 or recent_bull
    momentum_short = adx_slope < 0 or up_streak >= 2 or recent_bear
    dominance_ok = di_dom >= 0.1

    signal = "none"
    if trend_active:
        if bull_bias and dominance_ok and momentum_long and (not exhaustion or (recent_bull and di_dom >= 0.25)):
            signal = "long"
        elif bear_bias and dominance_ok and momentum_short and (not exhaustion or (recent_bear and di_dom >= 0.25)):
            signal = "short"

    confidence = max(0.3,
                     0.35 * min(1.0, max(0.0, last_adx / 50))
                     + 0.2 * min(1.0, max(0.0, adxr / 50))
                     + 0.3 * min(1.0, di_dom / 0.5)
                     + 0.15 * min(1.0, up_streak / 3)
                     + (0.12 if (recent_bull or recent_bear) else 0.0))
    if not trend_active:
        confidence = min(confidence, 0.6)
    if exhaustion and signal != "none":
        confidence = max(0.3, confidence - 0.1)
    confidence = min(1.0, confidence)

    quality = 0.85
    if trend_active and (adx_strong or up_streak >= 2) and di_dom >= 0.2:
        quality = 0.95
    if adx_very_strong and up_streak >= 2 and di_dom >= 0.25:
        quality = 1.0
    if exhaustion:
        quality = min(quality, 0.9)

    return make_vote(
        "adx", signal, confidence=confidence, quality=quality,
        auxiliary=VoteAuxiliary(extras={"adx": last_adx, "plus_di": last_plus,
                                        "minus_di": last_minus, "di_dom": di_dom}),
    )


# ============================================
# 9. VOLUME - candle direction confirmed by participation
# ============================================

@indicator("volume")
def evaluate_volume(window: CandleWindow, confirm_on_close: bool = True, ma_period: int = 20,
                    recent_bars: int = 3, high_factor: float = 1.5,
                    extreme_factor: float = 2.5) -> IndicatorVote:
    n, last = _signal_index(window, confirm_on_close, max(5, ma_period) + 1, "volumes")
    closes = _col(window, "closes", n)
    # No opens: every bar reads as a doji and nothing fires
    opens = _col(window, "opens", n) if window.opens is not None and len(window.opens) >= n else closes
    volumes = _col(window, "volumes", n)
    vma = talib.SMA(volumes, timeperiod=ma_period)

    last_vma = _val(vma, last)
    if not last_vma:
        raise InsufficientDataError("volume average unavailable")

    bar_up = closes[last] > opens[last]
    bar_down = closes[last] < opens[last]
    rel = volumes[last] / last_vma
    high_volume = rel >= high_factor

    recent_confirm = 0
    for i in range(last, max(0, last - (recent_bars - 1)) - 1, -1):
        avg = _val(vma, i)
        if not avg:
            continue
        heavy = volumes[i] >= avg
        if heavy and ((closes[i] > opens[i] and bar_up) or (closes[i] < opens[i] and bar_down)):
            recent_confirm += 1

    if bar_up and (high_volume or recent_confirm >= 2):
        signal = "long"
    elif bar_down and (high_volume or recent_confirm >= 2):
        signal = "short"
    else:
        signal = "none"

    rel_clamped = min(3.0, max(0.0, rel))
    base_conf = min(1.0, (rel_clamped - 1) / (extreme_factor - 1))
    consistency = min(0.3, recent_confirm / recent_bars * 0.3)
    confidence = min(1.0, max(0.3, (0.5 if signal != "none" else 0.3) + base_conf + consistency))

    return make_vote(
        "volume", signal, confidence=confidence, quality=1.0 if high_volume else 0.8,
        auxiliary=VoteAuxiliary(extras={"relative_volume": float(rel), "recent_confirm": recent_confirm,
                                        "extreme_volume": rel >= extreme_factor}),
    )


# ============================================
# REGISTRY
# ============================================

DEFAULT_INDICATORS: Tuple[Tuple[str, Evaluator], ...] = (
    ("ema", evaluate_ema),
    ("macd", evaluate_macd),
    ("rsi", evaluate_rsi),
    ("ichimoku", evaluate_ichimoku),
    ("alligator", evaluate_alligator),
    ("vwap", evaluate_vwap),
    ("bollinger", evaluate_bollinger),
    ("adx", evaluate_adx),
    ("volume", evaluate_volume),
)


def get_default_indicators() -> List[Tuple[str, Evaluator]]:
    """Ordered (id, evaluator) pairs for the nine built-in indicators."""
    return list(DEFAULT_INDICATORS)


def register_indicator(indicators: Sequence[Tuple[str, Evaluator]], indicator_id: str,
                       evaluator: Evaluator) -> List[Tuple[str, Evaluator]]:
    """
    Return a new registry with `evaluator` added (or replacing an existing id
    in place, so iteration order stays stable).
    """
    out = list(indicators)
    for i, (existing_id, _) in enumerate(out):
        if existing_id == indicator_id:
            out[i] = (indicator_id, evaluator)
            return out
    out.append((indicator_id, evaluator))
    return out
