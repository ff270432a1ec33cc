"""
LiveChart Core — Technical Analysis Engine

Pure functions computing index-aligned indicator series from a validated bar
series. Every output has exactly the length of its input; None marks the
warm-up window. No function keeps state between calls: recursive indicators
(EMA, RSI, ATR) are computed as a full scan on every call.

Uses the `ta` library on pandas Series where its semantics match
(SMA, EMA, MACD, Bollinger, Stochastic, ATR); Wilder-smoothed RSI and OBV
are computed directly.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
import pandas as pd
from ta.momentum import StochasticOscillator
from ta.trend import EMAIndicator, MACD, SMAIndicator
from ta.volatility import AverageTrueRange, BollingerBands

from livechart.models import Bar, IndicatorParams, IndicatorSeries
from livechart.observability import trace_span

Values = Sequence[Optional[float]]


class TAEngine:
    """Pure-Python technical analysis engine.

    Usage:
        engine = TAEngine()
        indicators = engine.compute_indicators(bars)
        indicators["rsi"][-1]
    """

    def compute_indicators(
        self,
        bars: list[Bar],
        params: Optional[IndicatorParams] = None,
    ) -> dict[str, IndicatorSeries]:
        """Compute every configured indicator for a validated bar series.

        Args:
            bars: Validated bars (see validate_bars).
            params: Indicator periods; defaults to IndicatorParams.from_settings().

        Returns:
            Mapping of indicator key to IndicatorSeries, each len(bars) long.
        """
        params = params or IndicatorParams.from_settings()

        with trace_span("ta_engine.compute_indicators", bars=len(bars)):
            closes = [b.close for b in bars]
            highs = [b.high for b in bars]
            lows = [b.low for b in bars]
            volumes = [b.volume for b in bars]

            result: dict[str, IndicatorSeries] = {}

            # ── Trend ──
            for period in params.sma_periods:
                result[f"sma_{period}"] = self.sma(closes, period)
            for period in params.ema_periods:
                result[f"ema_{period}"] = self.ema(closes, period)

            # ── MACD ──
            macd_line, macd_signal, macd_hist = self.macd(
                closes, params.macd_fast, params.macd_slow, params.macd_signal
            )
            result["macd_line"] = macd_line
            result["macd_signal"] = macd_signal
            result["macd_histogram"] = macd_hist

            # ── Momentum ──
            result["rsi"] = self.rsi(closes, params.rsi_period)
            stoch_k, stoch_d = self.stochastic(
                highs, lows, closes, params.stochastic_k, params.stochastic_d
            )
            result["stoch_k"] = stoch_k
            result["stoch_d"] = stoch_d

            # ── Volatility ──
            upper, middle, lower = self.bollinger(
                closes, params.bollinger_period, params.bollinger_std_dev
            )
            result["bb_upper"] = upper
            result["bb_middle"] = middle
            result["bb_lower"] = lower
            result["atr"] = self.atr(highs, lows, closes, params.atr_period)

            # ── Volume ──
            result["obv"] = self.obv(closes, volumes)
            result["volume_sma"] = self.sma(volumes, params.volume_sma_period)

        return result

    def latest_values(self, indicators: dict[str, IndicatorSeries], decimals: int = 4) -> dict[str, Optional[float]]:
        """Last value of every indicator series (None while still warming up)."""
        return {
            key: self._safe_round(series[-1] if series else None, decimals)
            for key, series in indicators.items()
        }

    # ──────────────────────────────────────────────
    # Moving Averages
    # ──────────────────────────────────────────────

    @staticmethod
    def sma(values: Values, period: int) -> IndicatorSeries:
        """Simple Moving Average.

        Returns a list the same length as values. Positions before
        `period - 1`, and any window containing a None, are None.
        """
        _check_period(period)
        if not values:
            return []
        return _to_list(SMAIndicator(_to_series(values), window=period).sma_indicator())

    @staticmethod
    def ema(values: Values, period: int) -> IndicatorSeries:
        """Exponential Moving Average, k = 2 / (period + 1).

        The recursion is seeded with the first defined value and runs from
        there; values are reported from the `period`-th defined observation
        on, matching SMA's warm-up window.
        """
        _check_period(period)
        if not values:
            return []
        return _to_list(EMAIndicator(_to_series(values), window=period).ema_indicator())

    # ──────────────────────────────────────────────
    # Momentum
    # ──────────────────────────────────────────────

    @staticmethod
    def rsi(closes: Values, period: int = 14) -> IndicatorSeries:
        """Relative Strength Index with Wilder smoothing.

        Seeds the average gain/loss with the simple mean of the first
        `period` changes, then smooths with avg = (avg * (p - 1) + x) / p.
        A zero average loss gives rs = +inf and therefore RSI 100. The first
        `period` positions are None.
        """
        _check_period(period)
        result: IndicatorSeries = [None] * len(closes)
        if len(closes) < period + 1:
            return result

        gains = []
        losses = []
        for i in range(1, len(closes)):
            diff = closes[i] - closes[i - 1]
            gains.append(max(0.0, diff))
            losses.append(max(0.0, -diff))

        # Initial average
        avg_gain = sum(gains[:period]) / period
        avg_loss = sum(losses[:period]) / period
        result[period] = _rsi_value(avg_gain, avg_loss)

        # Smoothed averages
        for i in range(period, len(gains)):
            avg_gain = (avg_gain * (period - 1) + gains[i]) / period
            avg_loss = (avg_loss * (period - 1) + losses[i]) / period
            result[i + 1] = _rsi_value(avg_gain, avg_loss)

        return result

    @staticmethod
    def macd(
        closes: Values,
        fast: int = 12,
        slow: int = 26,
        signal: int = 9,
    ) -> tuple[IndicatorSeries, IndicatorSeries, IndicatorSeries]:
        """MACD line, signal line and histogram.

        The signal EMA runs over the index-aligned MACD line: its warm-up
        gap is skipped by the recursion, not compacted away, so every output
        index refers to the same bar as the input index.
        """
        for p in (fast, slow, signal):
            _check_period(p)
        if not closes:
            return [], [], []

        macd = MACD(
            _to_series(closes),
            window_slow=slow,
            window_fast=fast,
            window_sign=signal,
        )
        line = _to_list(macd.macd())
        signal_line = _to_list(macd.macd_signal())
        histogram = [
            (m - s) if m is not None and s is not None else None
            for m, s in zip(line, signal_line)
        ]
        return line, signal_line, histogram

    @staticmethod
    def stochastic(
        highs: Values,
        lows: Values,
        closes: Values,
        k_period: int = 14,
        d_period: int = 3,
    ) -> tuple[IndicatorSeries, IndicatorSeries]:
        """Stochastic oscillator %K and %D.

        %K = 100 * (close - lowest low) / (highest high - lowest low) over
        `k_period` bars; None where that range is zero. %D = SMA(%K, d_period).
        """
        _check_period(k_period)
        _check_period(d_period)
        if not closes:
            return [], []

        stoch = StochasticOscillator(
            _to_series(highs),
            _to_series(lows),
            _to_series(closes),
            window=k_period,
            smooth_window=d_period,
        )
        k = _to_list(stoch.stoch())
        d = TAEngine.sma(k, d_period)
        return k, d

    # ──────────────────────────────────────────────
    # Volatility
    # ──────────────────────────────────────────────

    @staticmethod
    def bollinger(
        closes: Values,
        period: int = 20,
        std_dev: float = 2.0,
    ) -> tuple[IndicatorSeries, IndicatorSeries, IndicatorSeries]:
        """Bollinger Bands: SMA ± std_dev × population standard deviation."""
        _check_period(period)
        if not closes:
            return [], [], []

        bb = BollingerBands(_to_series(closes), window=period, window_dev=std_dev)
        return (
            _to_list(bb.bollinger_hband()),
            _to_list(bb.bollinger_mavg()),
            _to_list(bb.bollinger_lband()),
        )

    @staticmethod
    def atr(highs: Values, lows: Values, closes: Values, period: int = 14) -> IndicatorSeries:
        """Average True Range with Wilder smoothing.

        TR[0] = high - low; afterwards TR = max(high - low, |high - prev close|,
        |low - prev close|). Seeded with the mean of the first `period` TRs at
        index `period - 1`. `ta` zero-fills the warm-up window; it is reported
        as None here.
        """
        _check_period(period)
        n = len(closes)
        if n < period:
            return [None] * n

        atr = AverageTrueRange(
            _to_series(highs),
            _to_series(lows),
            _to_series(closes),
            window=period,
        )
        result = _to_list(atr.average_true_range())
        result[:period - 1] = [None] * (period - 1)
        return result

    # ──────────────────────────────────────────────
    # Volume
    # ──────────────────────────────────────────────

    @staticmethod
    def obv(closes: Values, volumes: Values) -> IndicatorSeries:
        """On-Balance Volume seeded at volume[0].

        Adds the bar's volume on an up close, subtracts it on a down close,
        carries the previous value on a flat close.
        """
        if not closes:
            return []
        c = np.asarray(closes, dtype=float)
        v = np.asarray(volumes, dtype=float)
        direction = np.sign(np.diff(c))
        obv = np.concatenate(([v[0]], v[0] + np.cumsum(direction * v[1:])))
        return [float(x) for x in obv]

    # ──────────────────────────────────────────────
    # Private Helpers
    # ──────────────────────────────────────────────

    @staticmethod
    def _safe_round(value, decimals: int = 2):
        """Safely round a value, handling None and NaN."""
        if value is None:
            return None
        try:
            if np.isnan(value) or np.isinf(value):
                return None
            return round(float(value), decimals)
        except (TypeError, ValueError):
            return None


def _check_period(period: int) -> None:
    if int(period) < 1:
        raise ValueError(f"Indicator period must be a positive integer, got {period}")


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return min(100.0, max(0.0, 100 - 100 / (1 + rs)))


def _to_series(values: Values) -> pd.Series:
    """List with None gaps -> float Series with NaN gaps."""
    return pd.Series([np.nan if v is None else float(v) for v in values], dtype=float)


def _to_list(series: pd.Series) -> IndicatorSeries:
    """Float Series -> list with None for NaN / ±inf."""
    return [float(v) if np.isfinite(v) else None for v in series.to_numpy(dtype=float)]


# Module-level shared instance
_engine = TAEngine()


def compute_indicators(
    bars: list[Bar],
    params: Optional[IndicatorParams] = None,
) -> dict[str, IndicatorSeries]:
    """Compute the indicator map for *bars*. See TAEngine.compute_indicators."""
    return _engine.compute_indicators(bars, params)
