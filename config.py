"""
CONFLUENCE CONFIG - Ensemble Decision Engine Settings

All knobs of the multi-timeframe ensemble live here.

Key Principles:
1. NO SINGLE INDICATOR DECIDES - every vote is weighted and blended
2. HIGHER TIMEFRAMES ARE TRUSTED MORE - daily outweighs 5-minute noise
3. BOUNDED LEARNING - performance feedback can only nudge weights (0.65x to 1.35x)
4. NEVER CRASH ON BAD DATA - degrade to "none" instead

Components read these with getattr(config, "NAME", default), so any object
exposing a subset of the attributes (e.g. a test MockConfig) is accepted.
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class EnsembleConfig:
    """
    Ensemble Engine Configuration

    Defaults reproduce the reference behaviour of the engine. Operator-facing
    thresholds and sizing can be overridden from the environment (.env).
    """

    # =========================================
    # LOGGING
    # =========================================
    LOG_LEVEL = os.getenv("ENSEMBLE_LOG_LEVEL", "INFO")

    # =========================================
    # DECISION THRESHOLDS
    # =========================================

    # Dead zone around zero: |score| below these never triggers
    BUY_THRESHOLD = _env_float("ENSEMBLE_BUY_THRESHOLD", 0.15)
    SELL_THRESHOLD = _env_float("ENSEMBLE_SELL_THRESHOLD", -0.15)

    # Use the last CLOSED bar (len-2), not the one still forming
    CONFIRM_ON_CLOSE = _env_bool("ENSEMBLE_CONFIRM_ON_CLOSE", True)

    # =========================================
    # POSITION SIZING (fraction of the caller's daily risk budget)
    # =========================================
    BASE_POSITION_PCT = _env_float("ENSEMBLE_BASE_POSITION_PCT", 0.25)
    MAX_POSITION_PCT = _env_float("ENSEMBLE_MAX_POSITION_PCT", 0.50)
    MIN_POSITION_PCT = 0.05

    # Volatility normalisation: ATR/price of 2% is "normal"
    REFERENCE_ATR_PCT = 0.02
    MIN_ATR_PCT = 0.005
    VOL_FACTOR_MIN = 0.5
    VOL_FACTOR_MAX = 1.5

    # =========================================
    # STOP LOSS (median of indicator stops + ATR floor)
    # =========================================
    MIN_STOP_ATR_MULTIPLE = 1.0
    MAX_STOP_ATR_MULTIPLE = 3.0
    STOP_ATR_MULTIPLE_FLOOR = 0.5  # min_stop multiple is never below this

    # =========================================
    # QUALITY MODEL
    # =========================================
    QUALITY_DEFAULT = 0.9  # used when a vote carries no quality
    BASE_QUALITY = 0.85
    STRONG_SCORE_QUALITY = 0.95
    STRONG_SCORE_THRESHOLD = 0.4
    HIGH_TF_AGREEMENT_MIN_SCORE = 0.25  # for quality = 1.0
    SIZING_AGREEMENT_MIN_SCORE = 0.2  # for the sizing agreement ratio

    # =========================================
    # TIMEFRAME IMPORTANCE
    # =========================================

    # Checked in order against the lower-cased label; first match wins
    TIMEFRAME_WEIGHTS = [
        (("1d", "daily"), 2.0),
        (("4h",), 1.6),
        (("1h",), 1.4),
        (("30m",), 1.2),
        (("15m",), 1.1),
    ]
    DEFAULT_TIMEFRAME_WEIGHT = 1.0  # 5m/3m/1m...

    # Timeframes at or above this weight count as "high" (1h, 4h, daily)
    HIGH_TIMEFRAME_WEIGHT = 1.4

    # =========================================
    # INDICATOR WEIGHTS
    # =========================================

    # Trend/momentum families lead, raw volume trails
    INDICATOR_BASELINE_WEIGHTS = {
        "ema": 0.18,
        "macd": 0.18,
        "ichimoku": 0.14,
        "rsi": 0.12,
        "adx": 0.10,
        "bollinger": 0.10,
        "vwap": 0.08,
        "alligator": 0.06,
        "volume": 0.04,
    }

    # Intraday favours flow (vwap/volume), away from slow structure
    INTRADAY_TILT = {"vwap": 0.03, "volume": 0.02, "ichimoku": -0.03, "alligator": -0.02}

    # Higher timeframes favour structure, away from flow
    HIGHER_TF_TILT = {"ema": 0.02, "ichimoku": 0.02, "vwap": -0.02, "volume": -0.02}

    # Floor per indicator after every normalisation
    MIN_INDICATOR_WEIGHT = 0.02

    # =========================================
    # ONLINE LEARNER (performance feedback)
    # =========================================
    LEARNER_ALPHA = 0.12  # EWMA smoothing
    PERF_MAX_BOOST = 1.35  # best performers get up to +35%
    PERF_MAX_CUT = 0.65  # worst performers get down to -35%
    PERF_WIN_BLEND = 0.6
    PERF_EDGE_BLEND = 0.4
    PERF_EDGE_CAP = 1.5  # edge (in R multiples) saturates here

    FEEDBACK_HISTORY_SIZE = 500

    # =========================================
    # INDICATOR PARAMETERS (per-timeframe overrides go in indicator_params)
    # =========================================
    INDICATOR_PARAMS = {
        "ema": {
            "period": 9,
            "slope_window": 3,
            "atr_period": 14,
            "recent_bars": 3,
            "atr_stop_multiple": 1.3,
            "max_lookback": 20,
        },
        "rsi": {"period": 14, "buy_threshold": 30, "sell_threshold": 70},
    }
