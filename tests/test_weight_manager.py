"""
Unit tests for the Weight Manager.

Tests:
- Normalization (sum to 1, floor, bad inputs)
- Timeframe tilt (intraday vs higher timeframe)
- Performance multiplier bounds and monotonicity
- Baseline updates and snapshots
"""

import pytest
import sys
import os
import math
import random
import threading

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.strategy.weight_manager import (
    DEFAULT_BASELINE_WEIGHTS,
    PerformanceRecord,
    WeightManager,
    apply_floor,
    is_intraday,
    normalize_weights,
    performance_multiplier,
)


class MockConfig:
    """Mock configuration for testing."""

    def __init__(self, **kwargs):
        self.LEARNER_ALPHA = kwargs.get('LEARNER_ALPHA', 0.12)
        self.PERF_MAX_BOOST = kwargs.get('PERF_MAX_BOOST', 1.35)
        self.PERF_MAX_CUT = kwargs.get('PERF_MAX_CUT', 0.65)
        self.PERF_WIN_BLEND = kwargs.get('PERF_WIN_BLEND', 0.6)
        self.PERF_EDGE_BLEND = kwargs.get('PERF_EDGE_BLEND', 0.4)
        self.PERF_EDGE_CAP = kwargs.get('PERF_EDGE_CAP', 1.5)
        self.MIN_INDICATOR_WEIGHT = kwargs.get('MIN_INDICATOR_WEIGHT', 0.02)
        self.INDICATOR_BASELINE_WEIGHTS = kwargs.get('INDICATOR_BASELINE_WEIGHTS', dict(DEFAULT_BASELINE_WEIGHTS))


LABELS = ["1m", "5m", "15Min", "30m", "1h", "4h", "1D", "daily", "1w", "weird"]


class TestNormalization:
    """Test weight normalization helpers"""

    def test_sums_to_one(self):
        weights = normalize_weights({"a": 3, "b": 1, "c": 6})
        assert sum(weights.values()) == pytest.approx(1.0)
        assert weights["c"] == pytest.approx(0.6)

    def test_negative_nan_and_garbage_count_as_zero(self):
        weights = normalize_weights({"a": -1, "b": float("nan"), "c": "x", "d": 2})
        assert weights["d"] == pytest.approx(1 - 3 * 0.02)
        for key in ("a", "b", "c"):
            assert weights[key] == pytest.approx(0.02)

    def test_all_zero_becomes_uniform(self):
        weights = normalize_weights({"a": 0, "b": -5, "c": 0})
        assert weights == {"a": pytest.approx(1 / 3), "b": pytest.approx(1 / 3), "c": pytest.approx(1 / 3)}

    def test_floor_pins_small_weights(self):
        weights = normalize_weights({"a": 1000, "b": 1, "c": 1}, min_weight=0.02)
        assert weights["b"] == pytest.approx(0.02)
        assert weights["c"] == pytest.approx(0.02)
        assert weights["a"] == pytest.approx(0.96)

    def test_floor_larger_than_fair_share_is_uniform(self):
        weights = apply_floor({"a": 0.9, "b": 0.1}, 0.6)
        assert weights == {"a": 0.5, "b": 0.5}

    def test_empty_map(self):
        assert normalize_weights({}) == {}


class TestEffectiveWeights:
    """Effective weights always form a floored distribution"""

    @pytest.mark.parametrize("label", LABELS)
    def test_effective_weights_sum_to_one_and_respect_floor(self, label):
        wm = WeightManager(MockConfig())
        weights = wm.build_effective_weights(label)
        assert set(weights) == set(DEFAULT_BASELINE_WEIGHTS)
        assert sum(weights.values()) == pytest.approx(1.0)
        assert all(w >= 0.02 - 1e-12 for w in weights.values())

    def test_invariant_holds_after_random_feedback(self):
        wm = WeightManager(MockConfig())
        rng = random.Random(7)
        ids = list(DEFAULT_BASELINE_WEIGHTS)
        for _ in range(200):
            wm.record_outcome(rng.uniform(-3, 3), rng.sample(ids, 3))
        for label in LABELS:
            weights = wm.build_effective_weights(label)
            assert sum(weights.values()) == pytest.approx(1.0)
            assert min(weights.values()) >= 0.02 - 1e-12

    def test_degenerate_baseline_still_normalizes(self):
        wm = WeightManager(MockConfig(), baseline_weights={"a": -1, "b": 0, "c": float("nan")})
        weights = wm.build_effective_weights("5m")
        assert sum(weights.values()) == pytest.approx(1.0)
        assert weights["a"] == pytest.approx(1 / 3)


class TestTimeframeTilt:
    """Intraday leans on flow, higher timeframes on structure"""

    @pytest.mark.parametrize("label", ["1m", "3m", "5m", "15m", "30m", "5Min", "15min", "1h", "60m", "1hour"])
    def test_intraday_labels(self, label):
        assert is_intraday(label)

    @pytest.mark.parametrize("label", ["4h", "1D", "daily", "1w", "2h", "weird"])
    def test_higher_timeframe_labels(self, label):
        assert not is_intraday(label)

    def test_intraday_tilt_moves_weight_to_vwap(self):
        wm = WeightManager(MockConfig())
        weights = wm.build_effective_weights("5m")
        # Tilt deltas sum to zero, so the tilted baseline needs no rescale
        assert weights["vwap"] == pytest.approx(0.08 + 0.03)
        assert weights["ichimoku"] == pytest.approx(0.14 - 0.03)

    def test_higher_timeframe_tilt_moves_weight_to_ema(self):
        wm = WeightManager(MockConfig())
        weights = wm.build_effective_weights("1D")
        assert weights["ema"] == pytest.approx(0.18 + 0.02)
        assert weights["volume"] == pytest.approx(0.04 - 0.02)

    def test_tilt_clamps_at_zero_then_floors(self):
        wm = WeightManager(MockConfig(), baseline_weights={"volume": 0.01, "ema": 0.99})
        weights = wm.apply_timeframe_tilt("1D", wm.get_baseline_weights())
        assert weights["volume"] == pytest.approx(0.02)
        assert sum(weights.values()) == pytest.approx(1.0)

    def test_tilt_ignores_ids_missing_from_baseline(self):
        wm = WeightManager(MockConfig(), baseline_weights={"x": 0.5, "y": 0.5})
        assert wm.build_effective_weights("5m") == {"x": pytest.approx(0.5), "y": pytest.approx(0.5)}


class TestPerformanceMultiplier:
    """Multiplier from EWMA win rate and edge"""

    def test_no_history_is_neutral(self):
        assert performance_multiplier(None) == 1.0
        assert performance_multiplier(PerformanceRecord()) == pytest.approx(1.0)

    def test_extremes_hit_bounds(self):
        best = PerformanceRecord(win_rate_ewma=1.0, edge_ewma=5.0)
        worst = PerformanceRecord(win_rate_ewma=0.0, edge_ewma=-5.0)
        assert performance_multiplier(best) == pytest.approx(1.35)
        assert performance_multiplier(worst) == pytest.approx(0.65)

    def test_bounds_hold_for_any_outcome_sequence(self):
        wm = WeightManager(MockConfig())
        rng = random.Random(42)
        for _ in range(500):
            outcome = rng.choice([rng.uniform(-100, 100), rng.uniform(-2, 2), 0.0])
            wm.record_outcome(outcome, ["ema", "rsi"])
            for indicator_id in ("ema", "rsi"):
                mult = wm.performance_multiplier(indicator_id)
                assert 0.65 <= mult <= 1.35

    def test_positive_outcomes_are_monotonic(self):
        wm = WeightManager(MockConfig())
        win_rates = []
        multipliers = []
        for _ in range(60):
            wm.record_outcome(2.0, ["X"])
            win_rates.append(wm.get_performance_record("X").win_rate_ewma)
            multipliers.append(wm.performance_multiplier("X"))

        assert all(b > a for a, b in zip(win_rates, win_rates[1:]))
        assert all(w < 1.0 for w in win_rates)
        assert all(b >= a for a, b in zip(multipliers, multipliers[1:]))
        assert all(m <= 1.35 for m in multipliers)
        assert multipliers[-1] > 1.3

    def test_ewma_update_uses_alpha(self):
        wm = WeightManager(MockConfig(LEARNER_ALPHA=0.12))
        wm.record_outcome(1.0, ["ema"])
        record = wm.get_performance_record("ema")
        assert record.win_rate_ewma == pytest.approx(0.88 * 0.5 + 0.12)
        assert record.edge_ewma == pytest.approx(0.12)
        assert record.sample_count == 1

    def test_losing_indicator_loses_weight(self):
        wm = WeightManager(MockConfig())
        before = wm.build_effective_weights("1D")["macd"]
        for _ in range(20):
            wm.record_outcome(-1.0, ["macd"])
        after = wm.build_effective_weights("1D")["macd"]
        assert after < before

    def test_zero_outcome_counts_as_loss(self):
        wm = WeightManager(MockConfig())
        wm.record_outcome(0.0, ["ema"])
        assert wm.get_performance_record("ema").win_rate_ewma < 0.5


class TestRecordOutcome:
    """Outcome bookkeeping"""

    def test_unknown_id_creates_record(self):
        wm = WeightManager(MockConfig())
        wm.record_outcome(1.0, ["brand_new"])
        snapshot = wm.get_performance_snapshot()
        assert snapshot["brand_new"]["sample_count"] == 1

    def test_non_finite_outcome_ignored(self):
        wm = WeightManager(MockConfig())
        wm.record_outcome(float("nan"), ["ema"])
        wm.record_outcome(float("inf"), ["ema"])
        assert wm.get_performance_snapshot() == {}

    def test_duplicate_ids_update_once(self):
        wm = WeightManager(MockConfig())
        wm.record_outcome(1.0, ["ema", "ema"])
        assert wm.get_performance_record("ema").sample_count == 1

    def test_snapshot_is_a_copy(self):
        wm = WeightManager(MockConfig())
        wm.record_outcome(1.0, ["ema"])
        snapshot = wm.get_performance_snapshot()
        snapshot["ema"]["sample_count"] = 99
        assert wm.get_performance_record("ema").sample_count == 1


class TestBaselineWeights:
    """setBaselineWeights / getBaselineWeights"""

    def test_default_baseline_is_normalized(self):
        wm = WeightManager(MockConfig())
        baseline = wm.get_baseline_weights()
        assert sum(baseline.values()) == pytest.approx(1.0)
        assert baseline["ema"] == pytest.approx(0.18)

    def test_partial_update_merges_and_renormalizes(self):
        wm = WeightManager(MockConfig())
        baseline = wm.set_baseline_weights({"volume": 1.0, "rsi": None})
        assert sum(baseline.values()) == pytest.approx(1.0)
        assert max(baseline, key=baseline.get) == "volume"
        assert baseline["rsi"] == pytest.approx(0.12 / 1.96)

    def test_get_returns_copy(self):
        wm = WeightManager(MockConfig())
        baseline = wm.get_baseline_weights()
        baseline["ema"] = 100
        assert wm.get_baseline_weights()["ema"] == pytest.approx(0.18)

    def test_concurrent_updates_keep_invariant(self):
        wm = WeightManager(MockConfig())
        errors = []

        def mutate():
            for i in range(100):
                wm.record_outcome(1.0 if i % 2 else -1.0, ["ema", "macd"])
                wm.set_baseline_weights({"rsi": 0.05 + (i % 5) * 0.05})

        def read():
            for _ in range(100):
                total = sum(wm.build_effective_weights("1h").values())
                if not math.isclose(total, 1.0, abs_tol=1e-9):
                    errors.append(total)

        threads = [threading.Thread(target=mutate), threading.Thread(target=read), threading.Thread(target=read)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
