"""Tests for the advanced indicators and normalizers."""

from __future__ import annotations

import math

import pytest

from quantfusion.layers.advanced_indicators import (
    AdvancedIndicatorSet,
    breakout_probability,
    compute_advanced,
    detect_volatility_cluster,
    indicator_confidence,
    normalize,
    normalize_adx,
    normalize_macd,
    normalize_rsi,
    normalize_volatility,
    trend_stability,
)

from tests.conftest import geometric


class TestTrendStability:
    def test_straight_line_is_fully_stable(self):
        closes = [100.0 + i for i in range(60)]
        assert trend_stability(closes) == pytest.approx(1.0)

    def test_zigzag_is_unstable(self):
        closes = [100.0 + (5 if i % 2 else -5) for i in range(60)]
        assert trend_stability(closes) < 0.1

    def test_short_series_is_neutral(self):
        assert trend_stability([100.0 + i for i in range(19)]) == 0.5

    def test_flat_series_is_neutral(self):
        assert trend_stability([100.0] * 60) == 0.5


class TestBreakoutProbability:
    def test_short_series_is_neutral(self):
        closes = geometric(100.0, 0.01, 39)
        assert breakout_probability(closes, closes, closes) == 0.5

    def test_flat_series_has_no_breakout(self):
        closes = [100.0] * 60
        assert breakout_probability(closes, closes, closes) == 0.0

    def test_expanding_range_raises_probability(self):
        closes = [100.0 + (0.1 if i % 2 else -0.1) for i in range(50)]
        closes += [100.0 + 2 * i for i in range(1, 11)]
        highs = [c * 1.01 for c in closes]
        probability = breakout_probability(closes, highs, closes)
        assert 0.5 < probability <= 1.0


class TestVolatilityCluster:
    def test_burst_after_calm_is_a_cluster(self):
        closes = geometric(100.0, 0.001, 60)
        last = closes[-1]
        closes += [last * (1.05 if i % 2 else 0.95) for i in range(8)]
        assert detect_volatility_cluster(closes) is True

    def test_flat_series_is_not_a_cluster(self):
        assert detect_volatility_cluster([100.0] * 60) is False

    def test_short_series_is_not_a_cluster(self):
        assert detect_volatility_cluster([100.0, 150.0] * 14) is False


class TestIndicatorConfidence:
    def test_full_calm_history(self):
        assert indicator_confidence([100.0] * 200, [1000.0] * 200) == pytest.approx(1.0)

    def test_missing_volume_halves_volume_term(self):
        assert indicator_confidence([100.0] * 200, [0.0] * 200) == pytest.approx(2.5 / 3)

    def test_short_history_lowers_confidence(self):
        assert indicator_confidence([100.0] * 50, [1000.0] * 50) == pytest.approx((0.25 + 1 + 1) / 3)


class TestNormalizers:
    def test_normalize_is_bounded(self):
        assert normalize(1e9) == pytest.approx(1.0)
        assert normalize(-1e9) == pytest.approx(-1.0)
        assert normalize(5.0, scale=0) == 0.0
        assert normalize(1.0, scale=2.0) == pytest.approx(math.tanh(0.5))

    def test_rsi(self):
        assert normalize_rsi(50) == 0.0
        assert normalize_rsi(100) == 1.0
        assert normalize_rsi(0) == -1.0

    def test_macd(self):
        assert normalize_macd(1.0, 0.0, 100.0) == pytest.approx(math.tanh(1.0))
        assert normalize_macd(1.0, 0.0, 0.0) == 0.0

    def test_adx_and_volatility_cap_at_one(self):
        assert normalize_adx(40) == 0.4
        assert normalize_adx(250) == 1.0
        assert normalize_volatility(0.3) == 0.3
        assert normalize_volatility(2.5) == 1.0


def test_compute_advanced_on_trend():
    closes = geometric(100.0, 0.005, 120)
    result = compute_advanced(closes, [c * 1.01 for c in closes], [c * 0.99 for c in closes], [1000.0] * 120)
    assert isinstance(result, AdvancedIndicatorSet)
    assert result.trend_stability > 0.95
    assert 0.0 <= result.breakout_probability <= 1.0
    assert isinstance(result.volatility_cluster, bool)
    assert 0.0 < result.indicator_confidence <= 1.0
    assert result.to_dict()["trend_stability"] == result.trend_stability
