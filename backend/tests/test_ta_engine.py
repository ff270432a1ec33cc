"""
LiveChart Core — Indicator Engine Test Suite

Tests for every indicator series: warm-up windows, hand-computed values,
bounds, and the compute_indicators aggregate.
"""

import math
import sys

import pytest

sys.path.insert(0, "backend")


BASE_TS = 1_704_067_200


def _make_bars(closes, volumes=None):
    """Helper: create Bars from close prices."""
    from livechart.models import Bar

    volumes = volumes or [1_000_000 + i * 10_000 for i in range(len(closes))]
    return [
        Bar(
            timestamp=BASE_TS + i * 86_400,
            open=c * 0.99,
            high=c * 1.01,
            low=c * 0.98,
            close=c,
            volume=v,
        )
        for i, (c, v) in enumerate(zip(closes, volumes))
    ]


def _random_walk(n, seed=7):
    import numpy as np

    rng = np.random.default_rng(seed)
    return list(100 + np.cumsum(rng.normal(0, 1.5, n)))


# ═══════════════════════════════════════════════
#  MOVING AVERAGES
# ═══════════════════════════════════════════════

class TestMovingAverages:
    """Test SMA and EMA."""

    def test_sma_two_period(self):
        from livechart.engines.ta_engine import TAEngine

        result = TAEngine.sma([11, 12, 9], 2)
        assert result[0] is None
        assert result[1:] == [pytest.approx(11.5), pytest.approx(10.5)]

    def test_sma_all_absent_when_too_short(self):
        from livechart.engines.ta_engine import TAEngine

        assert TAEngine.sma([1, 2, 3], 5) == [None, None, None]

    def test_ema_hand_computed(self):
        from livechart.engines.ta_engine import TAEngine

        result = TAEngine.ema([1, 2, 3], 2)
        assert result[0] is None
        assert result[1] == pytest.approx(5 / 3)
        assert result[2] == pytest.approx(23 / 9)

    def test_ema_all_absent_when_too_short(self):
        from livechart.engines.ta_engine import TAEngine

        assert TAEngine.ema([1.0, 2.0], 3) == [None, None]

    def test_constant_input_converges(self):
        from livechart.engines.ta_engine import TAEngine

        values = [42.0] * 30
        for series in (TAEngine.sma(values, 10), TAEngine.ema(values, 10)):
            assert len(series) == 30
            assert all(v is None for v in series[:9])
            assert all(v == pytest.approx(42.0) for v in series[9:])

    def test_empty_input(self):
        from livechart.engines.ta_engine import TAEngine

        assert TAEngine.sma([], 3) == []
        assert TAEngine.ema([], 3) == []

    def test_invalid_period_raises(self):
        from livechart.engines.ta_engine import TAEngine

        with pytest.raises(ValueError):
            TAEngine.sma([1, 2, 3], 0)


# ═══════════════════════════════════════════════
#  MOMENTUM
# ═══════════════════════════════════════════════

class TestMomentum:
    """Test RSI, MACD and the stochastic oscillator."""

    def test_rsi_bounds(self):
        from livechart.engines.ta_engine import TAEngine

        rsi = TAEngine.rsi(_random_walk(200), 14)
        assert len(rsi) == 200
        assert all(v is None for v in rsi[:14])
        assert all(0 <= v <= 100 for v in rsi[14:])

    def test_rsi_only_gains_is_100(self):
        from livechart.engines.ta_engine import TAEngine

        rsi = TAEngine.rsi([float(i) for i in range(1, 30)], 14)
        assert rsi[-1] == 100.0

    def test_rsi_only_losses_is_0(self):
        from livechart.engines.ta_engine import TAEngine

        rsi = TAEngine.rsi([float(i) for i in range(30, 0, -1)], 14)
        assert rsi[-1] == pytest.approx(0.0)

    def test_rsi_too_short(self):
        from livechart.engines.ta_engine import TAEngine

        assert TAEngine.rsi([1.0] * 14, 14) == [None] * 14

    def test_macd_histogram_identity(self):
        from livechart.engines.ta_engine import TAEngine

        line, signal, hist = TAEngine.macd(_random_walk(120), 12, 26, 9)
        assert len(line) == len(signal) == len(hist) == 120
        assert any(h is not None for h in hist)
        for m, s, h in zip(line, signal, hist):
            if m is not None and s is not None:
                assert h == pytest.approx(m - s)
            else:
                assert h is None

    def test_macd_warmup_is_index_aligned(self):
        from livechart.engines.ta_engine import TAEngine

        line, signal, _ = TAEngine.macd(_random_walk(60), 12, 26, 9)
        assert all(v is None for v in line[:25])
        assert line[25] is not None
        assert all(v is None for v in signal[:33])
        assert signal[33] is not None

    def test_stochastic_bounds(self):
        from livechart.engines.ta_engine import TAEngine

        closes = _random_walk(80)
        highs = [c + 1 for c in closes]
        lows = [c - 1 for c in closes]
        k, d = TAEngine.stochastic(highs, lows, closes, 14, 3)
        assert len(k) == len(d) == 80
        assert all(v is None for v in k[:13])
        assert all(0 <= v <= 100 for v in k[13:])
        assert all(v is None for v in d[:15])
        assert d[15] == pytest.approx(sum(k[13:16]) / 3)

    def test_stochastic_flat_range_is_absent(self):
        from livechart.engines.ta_engine import TAEngine

        k, d = TAEngine.stochastic([10.0] * 20, [10.0] * 20, [10.0] * 20, 14, 3)
        assert all(v is None for v in k)
        assert all(v is None for v in d)


# ═══════════════════════════════════════════════
#  VOLATILITY & VOLUME
# ═══════════════════════════════════════════════

class TestVolatilityAndVolume:
    """Test Bollinger Bands, ATR and OBV."""

    def test_bollinger_constant_input_collapses(self):
        from livechart.engines.ta_engine import TAEngine

        upper, middle, lower = TAEngine.bollinger([50.0] * 25, 20, 2.0)
        assert upper[19] == pytest.approx(50.0)
        assert middle[19] == pytest.approx(50.0)
        assert lower[19] == pytest.approx(50.0)
        assert upper[18] is None

    def test_bollinger_population_std(self):
        from livechart.engines.ta_engine import TAEngine

        upper, middle, lower = TAEngine.bollinger([1.0, 3.0], 2, 2.0)
        # mean 2, population std 1
        assert middle[1] == pytest.approx(2.0)
        assert upper[1] == pytest.approx(4.0)
        assert lower[1] == pytest.approx(0.0)

    def test_bollinger_ordering(self):
        from livechart.engines.ta_engine import TAEngine

        upper, middle, lower = TAEngine.bollinger(_random_walk(60), 20, 2.0)
        for u, m, l in zip(upper, middle, lower):
            if m is not None:
                assert l <= m <= u

    def test_atr_hand_computed(self):
        from livechart.engines.ta_engine import TAEngine

        highs = [10.0, 11.0, 14.0]
        lows = [8.0, 9.0, 10.0]
        closes = [9.0, 10.0, 13.0]
        # TR: 2, 2, 4 -> seed (2+2)/2 = 2 -> (2*1 + 4)/2 = 3
        assert TAEngine.atr(highs, lows, closes, 2) == [None, pytest.approx(2.0), pytest.approx(3.0)]

    def test_atr_warmup_is_none_not_zero(self):
        from livechart.engines.ta_engine import TAEngine

        highs = [10.0, 11.0, 14.0, 13.0, 12.0]
        lows = [8.0, 9.0, 10.0, 12.0, 11.0]
        closes = [9.0, 10.0, 13.0, 12.5, 11.5]
        # TR: 2, 2, 4, 1, 1.5 -> seed 8/3 at index 2
        result = TAEngine.atr(highs, lows, closes, 3)
        assert result[:2] == [None, None]
        assert result[2] == pytest.approx(8 / 3)
        assert result[3] == pytest.approx((8 / 3 * 2 + 1) / 3)

    def test_atr_too_short(self):
        from livechart.engines.ta_engine import TAEngine

        assert TAEngine.atr([2.0], [1.0], [1.5], 14) == [None]

    def test_obv(self):
        from livechart.engines.ta_engine import TAEngine

        obv = TAEngine.obv([10, 11, 11, 10], [100, 200, 300, 400])
        assert obv == [100.0, 300.0, 300.0, -100.0]


# ═══════════════════════════════════════════════
#  AGGREGATE
# ═══════════════════════════════════════════════

class TestComputeIndicators:
    """Test compute_indicators and parameter handling."""

    def test_all_series_index_aligned(self):
        from livechart.engines.ta_engine import compute_indicators
        from livechart.models import IndicatorParams

        bars = _make_bars(_random_walk(250))
        result = compute_indicators(bars, IndicatorParams())
        expected = {
            "sma_20", "sma_50", "sma_200", "ema_12", "ema_26", "ema_50",
            "macd_line", "macd_signal", "macd_histogram", "rsi",
            "stoch_k", "stoch_d", "bb_upper", "bb_middle", "bb_lower",
            "atr", "obv", "volume_sma",
        }
        assert set(result) == expected
        assert all(len(series) == 250 for series in result.values())

    def test_short_series_gives_absent_values(self):
        from livechart.engines.ta_engine import compute_indicators
        from livechart.models import IndicatorParams

        result = compute_indicators(_make_bars([100.0, 101.0, 102.0]), IndicatorParams())
        assert result["sma_20"] == [None, None, None]
        assert result["rsi"] == [None, None, None]
        assert len(result["obv"]) == 3

    def test_empty_series(self):
        from livechart.engines.ta_engine import compute_indicators
        from livechart.models import IndicatorParams

        result = compute_indicators([], IndicatorParams())
        assert all(series == [] for series in result.values())

    def test_custom_periods(self):
        from livechart.engines.ta_engine import compute_indicators
        from livechart.models import IndicatorParams

        params = IndicatorParams(sma_periods=[3], ema_periods=[5])
        result = compute_indicators(_make_bars(_random_walk(30)), params)
        assert "sma_3" in result and "ema_5" in result
        assert "sma_20" not in result

    def test_invalid_params_rejected(self):
        from pydantic import ValidationError
        from livechart.models import IndicatorParams

        with pytest.raises(ValidationError):
            IndicatorParams(macd_fast=26, macd_slow=12)
        with pytest.raises(ValidationError):
            IndicatorParams(sma_periods=[0, 20])
        with pytest.raises(ValidationError):
            IndicatorParams(rsi_period=0)

    def test_latest_values(self):
        from livechart.engines.ta_engine import TAEngine

        engine = TAEngine()
        latest = engine.latest_values({"a": [None, 1.234567], "b": [None, None], "c": []})
        assert latest == {"a": 1.2346, "b": None, "c": None}

    def test_pure_repeatable(self):
        from livechart.engines.ta_engine import compute_indicators
        from livechart.models import IndicatorParams

        bars = _make_bars(_random_walk(80))
        first = compute_indicators(bars, IndicatorParams())
        second = compute_indicators(bars, IndicatorParams())
        for key in first:
            assert [None if v is None else round(v, 9) for v in first[key]] == \
                   [None if v is None else round(v, 9) for v in second[key]]
        assert not any(
            isinstance(v, float) and math.isnan(v) for s in first.values() for v in s
        )
