"""
LiveChart Core — Pattern Detection Engine

Rule-based detection of chart patterns from a validated OHLCV series.
Deterministic analysis, no ML required. Detected patterns reference bars by
index only; prices are never copied into a result.

Detectors:
  Extrema:            strict local peaks / troughs of a given order
  Divergence:         price vs. indicator disagreement at consecutive extrema
  Support/Resistance: clustered closing prices with repeated visits
  Triangle:           converging regression lines over local highs / lows
  Flag:               short parallel channel after a sharp impulse
  Double Top/Bottom:  two similar extrema around an intervening reversal
  Volume Anomaly:     volume above mean + k·σ of the trailing window
  Candlestick:        doji, hammer, shooting star

Every detector returns an empty list, never raises, when its input is too
short.
"""

from __future__ import annotations

import math
from bisect import bisect_left, bisect_right
from typing import Optional, Sequence

import numpy as np
import structlog

from livechart.engines.ta_engine import TAEngine
from livechart.models import (
    Bar,
    CandlestickPattern,
    Direction,
    Divergence,
    DoubleTopBottom,
    FlagPattern,
    IndicatorSeries,
    LevelType,
    PatternCollection,
    PatternParams,
    SupportResistanceLevel,
    TrianglePattern,
    TriangleType,
    VolumeAnomaly,
)
from livechart.observability import trace_span

log = structlog.get_logger(__name__)

Values = Sequence[Optional[float]]

# Extrema order used for the swing points that triangles are fitted through
_TRIANGLE_SWING_ORDER = 2
# Symmetrical triangle: |upper| and |lower| slopes may differ by this share
_SYMMETRY_RATIO = 0.35
# A flag may retrace at most this share of its pole
_MAX_FLAG_RETRACE = 0.5


class PatternEngine:
    """Rule-based chart pattern detector.

    Usage:
        engine = PatternEngine()
        patterns = engine.detect_patterns(bars, indicators)
    """

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    def detect_patterns(
        self,
        bars: list[Bar],
        indicators: Optional[dict[str, IndicatorSeries]] = None,
        params: Optional[PatternParams] = None,
    ) -> PatternCollection:
        """Run every detector over *bars*.

        Divergences are computed against ``indicators[params.divergence_indicator]``;
        RSI is computed on the fly when it is requested but not supplied.
        """
        params = params or PatternParams.from_settings()

        with trace_span("pattern_engine.detect_patterns", bars=len(bars)):
            closes = [b.close for b in bars]
            highs = [b.high for b in bars]
            lows = [b.low for b in bars]
            volumes = [b.volume for b in bars]

            indicator = self._divergence_source(closes, indicators, params.divergence_indicator)
            divergences = []
            if indicator is not None:
                divergences = self.detect_divergences(
                    closes, indicator, params.extrema_order, params.divergence_indicator
                )

            result = PatternCollection(
                divergences=divergences,
                support_resistance=self.detect_support_resistance(
                    closes, params.sr_tolerance_pct, params.sr_min_touches
                ),
                triangles=self.detect_triangles(
                    highs,
                    lows,
                    params.triangle_min_length,
                    params.triangle_max_length,
                    params.triangle_slope_tolerance,
                ),
                flags=self.detect_flags(
                    highs,
                    lows,
                    closes,
                    params.flag_min_length,
                    params.flag_max_length,
                    params.flag_slope_tolerance,
                    params.flag_channel_tolerance,
                    pole_length=params.flag_pole_length,
                    min_pole_return=params.flag_min_pole_return,
                ),
                double_tops=self.detect_double_tops(
                    closes, params.double_tolerance_pct, params.double_min_separation, params.extrema_order
                ),
                double_bottoms=self.detect_double_bottoms(
                    closes, params.double_tolerance_pct, params.double_min_separation, params.extrema_order
                ),
                volume_anomalies=self.detect_volume_anomalies(
                    volumes, params.volume_multiplier, params.volume_window
                ),
                candlesticks=self.detect_candlestick_patterns(bars),
            )

        log.debug("patterns.detected", bars=len(bars), count=result.pattern_count)
        return result

    # ──────────────────────────────────────────
    # Extrema
    # ──────────────────────────────────────────

    @staticmethod
    def find_extrema(values: Values, order: int = 5) -> tuple[list[int], list[int]]:
        """Find strict local peaks and troughs.

        Index i is a peak (trough) when values[i] is strictly greater (less)
        than every other value in [i - order, i + order]. The window must fit
        inside the series and contain no missing values.

        Returns (peak_indices, trough_indices), both ascending.
        """
        peaks: list[int] = []
        troughs: list[int] = []
        n = len(values)
        if order < 1 or n < 2 * order + 1:
            return peaks, troughs

        data = _as_array(values)
        for i in range(order, n - order):
            v = data[i]
            if np.isnan(v):
                continue
            neighbours = np.concatenate((data[i - order:i], data[i + 1:i + order + 1]))
            if np.isnan(neighbours).any():
                continue
            if np.all(v > neighbours):
                peaks.append(i)
            elif np.all(v < neighbours):
                troughs.append(i)
        return peaks, troughs

    # ──────────────────────────────────────────
    # Divergence
    # ──────────────────────────────────────────

    def detect_divergences(
        self,
        prices: Values,
        indicator: Values,
        order: int = 5,
        indicator_name: str = "rsi",
    ) -> list[Divergence]:
        """Price/indicator divergences at consecutive price extrema.

        Bearish: price peak rises while the indicator at those peaks falls.
        Bullish: price trough falls while the indicator at those troughs rises.
        Extrema where the indicator is missing are dropped before pairing.
        """
        if len(prices) != len(indicator) or len(prices) < 2 * order + 1:
            return []

        peaks, troughs = self.find_extrema(prices, order)
        ind = _as_array(indicator)
        peaks = [i for i in peaks if np.isfinite(ind[i])]
        troughs = [i for i in troughs if np.isfinite(ind[i])]

        divergences: list[Divergence] = []

        for p1, p2 in zip(peaks, peaks[1:]):
            if prices[p2] > prices[p1] and ind[p2] < ind[p1]:
                divergences.append(Divergence(
                    direction=Direction.BEARISH,
                    start_index=p1,
                    end_index=p2,
                    indicator=indicator_name,
                    confidence=_divergence_confidence(prices[p1], prices[p2], ind[p1], ind[p2]),
                ))

        for t1, t2 in zip(troughs, troughs[1:]):
            if prices[t2] < prices[t1] and ind[t2] > ind[t1]:
                divergences.append(Divergence(
                    direction=Direction.BULLISH,
                    start_index=t1,
                    end_index=t2,
                    indicator=indicator_name,
                    confidence=_divergence_confidence(prices[t1], prices[t2], ind[t1], ind[t2]),
                ))

        divergences.sort(key=lambda d: (d.end_index, d.start_index))
        return divergences

    # ──────────────────────────────────────────
    # Support / Resistance
    # ──────────────────────────────────────────

    def detect_support_resistance(
        self,
        closes: Values,
        tolerance_pct: float = 0.02,
        min_touches: int = 2,
    ) -> list[SupportResistanceLevel]:
        """Cluster closing prices into horizontal levels.

        A close joins the nearest cluster whose mean lies within
        *tolerance_pct* of it, otherwise it opens a new cluster. A touch is a
        visit: a run of consecutive bars in the same cluster counts once.
        The bar before each visit votes on the approach direction: from
        above means the level held as support, from below as resistance.
        Clusters with at least *min_touches* visits become levels, strength
        = visit count. Ties go to support when the last close sits above the
        level, resistance otherwise.
        """
        n = len(closes)
        if n < max(2, min_touches):
            return []

        clusters: list[dict] = []
        prev_cluster: Optional[dict] = None

        for i, price in enumerate(closes):
            cluster = _nearest_cluster(clusters, price, tolerance_pct)
            if cluster is None:
                cluster = {"sum": 0.0, "count": 0, "touches": [], "above": 0, "below": 0}
                clusters.append(cluster)

            if cluster is not prev_cluster:
                cluster["touches"].append(i)
                if i > 0:
                    mean = cluster["sum"] / cluster["count"] if cluster["count"] else price
                    if closes[i - 1] > mean:
                        cluster["above"] += 1
                    elif closes[i - 1] < mean:
                        cluster["below"] += 1

            cluster["sum"] += price
            cluster["count"] += 1
            prev_cluster = cluster

        last_close = closes[-1]
        levels: list[SupportResistanceLevel] = []
        for cluster in clusters:
            touches = len(cluster["touches"])
            if touches < min_touches:
                continue
            level = cluster["sum"] / cluster["count"]
            if cluster["above"] > cluster["below"]:
                level_type = LevelType.SUPPORT
            elif cluster["below"] > cluster["above"]:
                level_type = LevelType.RESISTANCE
            else:
                level_type = LevelType.SUPPORT if last_close >= level else LevelType.RESISTANCE
            levels.append(SupportResistanceLevel(
                level_type=level_type,
                level=float(level),
                strength=touches,
                touch_indices=cluster["touches"],
            ))

        levels.sort(key=lambda lv: (-lv.strength, lv.level))
        return levels

    # ──────────────────────────────────────────
    # Triangles
    # ──────────────────────────────────────────

    def detect_triangles(
        self,
        highs: Values,
        lows: Values,
        min_length: int = 10,
        max_length: int = 40,
        slope_tolerance: float = 0.0015,
    ) -> list[TrianglePattern]:
        """Ascending, Descending, and Symmetrical triangles.

        Slides windows of min_length..max_length bars over the series and
        fits least-squares lines through the swing highs and swing lows
        inside each window (at least two of each). Slopes are per bar,
        relative to the window's mean price; |slope| <= slope_tolerance is
        flat.

          ascending:    flat upper line, rising lower line
          descending:   falling upper line, flat lower line
          symmetrical:  falling upper, rising lower, similar magnitudes

        The lines must still be apart at the window's last bar. Overlapping
        windows of the same type collapse to the longest one.
        """
        n = len(highs)
        if n < max(min_length, 2 * _TRIANGLE_SWING_ORDER + 1) or len(lows) != n:
            return []

        swing_highs, _ = self.find_extrema(highs, _TRIANGLE_SWING_ORDER)
        _, swing_lows = self.find_extrema(lows, _TRIANGLE_SWING_ORDER)
        if len(swing_highs) < 2 or len(swing_lows) < 2:
            return []

        h = _as_array(highs)
        l = _as_array(lows)
        candidates: list[TrianglePattern] = []

        for start in range(0, n - min_length + 1):
            for length in range(min_length, min(max_length, n - start) + 1):
                end = start + length - 1
                hi_idx = swing_highs[bisect_left(swing_highs, start):bisect_right(swing_highs, end)]
                lo_idx = swing_lows[bisect_left(swing_lows, start):bisect_right(swing_lows, end)]
                if len(hi_idx) < 2 or len(lo_idx) < 2:
                    continue

                scale = float(np.nanmean((h[start:end + 1] + l[start:end + 1]) / 2))
                if not scale > 0:
                    continue

                upper_slope, upper_icpt = _linear_fit(hi_idx, [h[i] for i in hi_idx])
                lower_slope, lower_icpt = _linear_fit(lo_idx, [l[i] for i in lo_idx])
                if upper_slope * end + upper_icpt <= lower_slope * end + lower_icpt:
                    continue

                us = upper_slope / scale
                ls = lower_slope / scale
                kind, confidence = _classify_triangle(us, ls, slope_tolerance)
                if kind is None:
                    continue
                candidates.append(TrianglePattern(
                    triangle_type=kind,
                    start_index=start,
                    end_index=end,
                    upper_slope=float(upper_slope),
                    lower_slope=float(lower_slope),
                    confidence=round(confidence, 4),
                ))

        return _non_overlapping(
            candidates,
            key=lambda t: t.triangle_type,
            span=lambda t: (t.start_index, t.end_index),
        )

    # ──────────────────────────────────────────
    # Flags
    # ──────────────────────────────────────────

    def detect_flags(
        self,
        highs: Values,
        lows: Values,
        closes: Values,
        min_length: int = 5,
        max_length: int = 20,
        slope_tolerance: float = 0.003,
        channel_tolerance: float = 0.06,
        pole_length: int = 10,
        min_pole_return: float = 0.08,
    ) -> list[FlagPattern]:
        """Bull and Bear flags: sharp move then a tight parallel channel.

        The pole spans *pole_length* bars with an absolute close-to-close
        return of at least *min_pole_return*. The flag is the next
        min_length..max_length bars (longest match wins) whose high and low
        regression slopes differ by at most *slope_tolerance* (relative to
        price), whose height is at most *channel_tolerance* of price, and
        which retraces no more than half the pole. Direction follows the
        pole.
        """
        n = len(closes)
        if n < pole_length + min_length + 1:
            return []

        h = _as_array(highs)
        l = _as_array(lows)
        c = _as_array(closes)
        candidates: list[FlagPattern] = []

        for pole_end in range(pole_length, n - min_length):
            pole_start = pole_end - pole_length
            if c[pole_start] <= 0:
                continue
            pole_return = (c[pole_end] - c[pole_start]) / c[pole_start]
            if abs(pole_return) < min_pole_return:
                continue
            pole_move = abs(c[pole_end] - c[pole_start])

            for length in range(min(max_length, n - pole_end - 1), min_length - 1, -1):
                flag_start = pole_end + 1
                flag_end = pole_end + length
                fh = h[flag_start:flag_end + 1]
                fl = l[flag_start:flag_end + 1]
                scale = float(np.mean(c[flag_start:flag_end + 1]))
                if not scale > 0:
                    continue

                xs = list(range(length))
                upper_slope, _ = _linear_fit(xs, fh)
                lower_slope, _ = _linear_fit(xs, fl)
                if abs(upper_slope - lower_slope) / scale > slope_tolerance:
                    continue

                width = (float(np.max(fh)) - float(np.min(fl))) / scale
                if width > channel_tolerance:
                    continue

                if pole_return > 0:
                    retrace = c[pole_end] - float(np.min(fl))
                else:
                    retrace = float(np.max(fh)) - c[pole_end]
                if retrace > pole_move * _MAX_FLAG_RETRACE:
                    continue

                pole_strength = min(1.0, abs(pole_return) / (2 * min_pole_return))
                tightness = 1 - width / channel_tolerance
                candidates.append(FlagPattern(
                    direction=Direction.BULLISH if pole_return > 0 else Direction.BEARISH,
                    pole_start_index=pole_start,
                    pole_end_index=pole_end,
                    flag_start_index=flag_start,
                    flag_end_index=flag_end,
                    pole_return=float(pole_return),
                    confidence=round(min(1.0, pole_strength * 0.7 + tightness * 0.3), 4),
                ))
                break

        return _non_overlapping(
            candidates,
            key=lambda f: f.direction,
            span=lambda f: (f.pole_start_index, f.flag_end_index),
            rank=lambda f: (f.confidence, f.flag_end_index - f.flag_start_index),
        )

    # ──────────────────────────────────────────
    # Double Tops / Bottoms
    # ──────────────────────────────────────────

    def detect_double_tops(
        self,
        closes: Values,
        tolerance_pct: float = 0.02,
        min_separation: int = 5,
        order: int = 5,
    ) -> list[DoubleTopBottom]:
        """Double top: two consecutive peaks within *tolerance_pct*, at least
        *min_separation* bars apart, with a valley between them deeper than
        the tolerance."""
        return self._double_pattern(closes, tolerance_pct, min_separation, order, is_top=True)

    def detect_double_bottoms(
        self,
        closes: Values,
        tolerance_pct: float = 0.02,
        min_separation: int = 5,
        order: int = 5,
    ) -> list[DoubleTopBottom]:
        """Double bottom: mirror of detect_double_tops over troughs."""
        return self._double_pattern(closes, tolerance_pct, min_separation, order, is_top=False)

    def _double_pattern(
        self,
        closes: Values,
        tolerance_pct: float,
        min_separation: int,
        order: int,
        is_top: bool,
    ) -> list[DoubleTopBottom]:
        if len(closes) < 2 * order + 1 + min_separation:
            return []

        peaks, troughs = self.find_extrema(closes, order)
        extremes = peaks if is_top else troughs
        c = _as_array(closes)
        patterns: list[DoubleTopBottom] = []

        for first, second in zip(extremes, extremes[1:]):
            if second - first < min_separation:
                continue
            v1, v2 = c[first], c[second]
            ref = max(v1, v2) if is_top else min(v1, v2)
            if ref <= 0:
                continue
            diff = abs(v2 - v1) / ref
            if diff > tolerance_pct:
                continue

            between = c[first + 1:second]
            if is_top:
                neck = first + 1 + int(np.argmin(between))
                depth = (min(v1, v2) - c[neck]) / ref
            else:
                neck = first + 1 + int(np.argmax(between))
                depth = (c[neck] - max(v1, v2)) / ref
            if depth <= tolerance_pct:
                continue

            patterns.append(DoubleTopBottom(
                is_top=is_top,
                first_index=first,
                second_index=second,
                neckline_index=neck,
                confidence=round(1 - 0.5 * diff / tolerance_pct, 4),
            ))

        return patterns

    # ──────────────────────────────────────────
    # Volume Anomalies
    # ──────────────────────────────────────────

    def detect_volume_anomalies(
        self,
        volumes: Values,
        multiplier: float = 2.0,
        window_size: int = 20,
    ) -> list[VolumeAnomaly]:
        """Bars whose volume exceeds mean + multiplier × σ of the trailing
        *window_size* bars (the bar itself excluded, population σ)."""
        n = len(volumes)
        if n <= window_size:
            return []

        v = _as_array(volumes)
        anomalies: list[VolumeAnomaly] = []

        for i in range(window_size, n):
            window = v[i - window_size:i]
            if np.isnan(window).any() or np.isnan(v[i]):
                continue
            mean = float(np.mean(window))
            std = float(np.std(window))
            if v[i] > mean + multiplier * std:
                anomalies.append(VolumeAnomaly(
                    index=i,
                    ratio=float(v[i] / mean) if mean > 0 else math.inf,
                    z_score=float((v[i] - mean) / std) if std > 0 else math.inf,
                ))

        return anomalies

    # ──────────────────────────────────────────
    # Candlestick Patterns
    # ──────────────────────────────────────────

    def detect_candlestick_patterns(self, bars: list[Bar]) -> list[CandlestickPattern]:
        """Single-bar doji, hammer and shooting star from body/shadow ratios."""
        patterns: list[CandlestickPattern] = []

        for i, bar in enumerate(bars):
            rng = bar.high - bar.low
            if rng <= 0:
                continue
            body_pct = abs(bar.close - bar.open) / rng
            upper_pct = (bar.high - max(bar.open, bar.close)) / rng
            lower_pct = (min(bar.open, bar.close) - bar.low) / rng

            # Doji: tiny body, shadows on both sides
            if body_pct < 0.1 and upper_pct > 0.2 and lower_pct > 0.2:
                patterns.append(CandlestickPattern(
                    name="doji", index=i,
                    direction=Direction.NEUTRAL,
                    confidence=round(1 - body_pct, 4),
                ))
            # Hammer: long lower shadow, bullish body
            elif body_pct < 0.3 and lower_pct > 0.5 and upper_pct < 0.2 and bar.close > bar.open:
                patterns.append(CandlestickPattern(
                    name="hammer", index=i,
                    direction=Direction.BULLISH,
                    confidence=round(lower_pct - body_pct, 4),
                ))
            # Shooting star: long upper shadow, bearish body
            elif body_pct < 0.3 and upper_pct > 0.5 and lower_pct < 0.2 and bar.close < bar.open:
                patterns.append(CandlestickPattern(
                    name="shooting_star", index=i,
                    direction=Direction.BEARISH,
                    confidence=round(upper_pct - body_pct, 4),
                ))

        return patterns

    # ──────────────────────────────────────────
    # Private Helpers
    # ──────────────────────────────────────────

    @staticmethod
    def _divergence_source(
        closes: list[float],
        indicators: Optional[dict[str, IndicatorSeries]],
        name: str,
    ) -> Optional[IndicatorSeries]:
        series = (indicators or {}).get(name)
        if series is not None:
            if len(series) != len(closes):
                log.warning("patterns.indicator_misaligned", indicator=name,
                            expected=len(closes), got=len(series))
                return None
            return series
        if name == "rsi":
            return TAEngine.rsi(closes)
        log.debug("patterns.indicator_missing", indicator=name)
        return None


def _as_array(values: Values) -> np.ndarray:
    return np.array([np.nan if v is None else float(v) for v in values], dtype=float)


def _linear_fit(xs: Sequence[float], ys: Sequence[float]) -> tuple[float, float]:
    """Least-squares (slope, intercept). Slope 0 for fewer than two points."""
    n = len(xs)
    if n < 2:
        return 0.0, float(ys[0]) if n else 0.0
    sum_x = sum(xs)
    sum_y = float(sum(ys))
    sum_xy = sum(x * float(y) for x, y in zip(xs, ys))
    sum_xx = sum(x * x for x in xs)
    denom = n * sum_xx - sum_x * sum_x
    if denom == 0:
        return 0.0, sum_y / n
    slope = (n * sum_xy - sum_x * sum_y) / denom
    return slope, (sum_y - slope * sum_x) / n


def _classify_triangle(
    upper: float, lower: float, tol: float
) -> tuple[Optional[TriangleType], float]:
    upper_flat = abs(upper) <= tol
    lower_flat = abs(lower) <= tol

    if upper_flat and lower > tol:
        return TriangleType.ASCENDING, min(1.0, lower / (4 * tol)) if tol > 0 else 1.0
    if lower_flat and upper < -tol:
        return TriangleType.DESCENDING, min(1.0, -upper / (4 * tol)) if tol > 0 else 1.0
    if upper < -tol and lower > tol:
        diff = abs(abs(upper) - abs(lower)) / max(abs(upper), abs(lower))
        if diff <= _SYMMETRY_RATIO:
            return TriangleType.SYMMETRICAL, 1 - diff
    return None, 0.0


def _nearest_cluster(clusters: list[dict], price: float, tolerance_pct: float) -> Optional[dict]:
    best = None
    best_diff = math.inf
    for cluster in clusters:
        mean = cluster["sum"] / cluster["count"]
        if mean <= 0:
            diff = 0.0 if price == mean else math.inf
        else:
            diff = abs(price - mean) / mean
        if diff <= tolerance_pct and diff < best_diff:
            best, best_diff = cluster, diff
    return best


def _divergence_confidence(p1: float, p2: float, i1: float, i2: float) -> float:
    """0.6 baseline, rising with the size of the disagreement, capped at 0.95."""
    price_move = abs(p2 - p1) / max(abs(p1), 1e-9)
    ind_move = abs(i2 - i1) / max(abs(i1), 1e-9)
    return round(min(0.95, 0.6 + price_move + ind_move * 0.5), 4)


def _non_overlapping(candidates, key, span, rank=None):
    """Keep the best candidate per overlapping group of the same key.

    Candidates are ranked by *rank* (default: span length, then confidence);
    a candidate is dropped when its span overlaps an already accepted one
    with the same key. Output is ordered by start index.
    """
    if rank is None:
        def rank(c):
            s, e = span(c)
            return (e - s, c.confidence)

    accepted = []
    for cand in sorted(candidates, key=rank, reverse=True):
        s, e = span(cand)
        if any(key(a) == key(cand) and s <= span(a)[1] and span(a)[0] <= e for a in accepted):
            continue
        accepted.append(cand)
    accepted.sort(key=lambda c: span(c))
    return accepted


# Module-level shared instance
_engine = PatternEngine()


def detect_patterns(
    bars: list[Bar],
    indicators: Optional[dict[str, IndicatorSeries]] = None,
    params: Optional[PatternParams] = None,
) -> PatternCollection:
    """Detect every pattern in *bars*. See PatternEngine.detect_patterns."""
    return _engine.detect_patterns(bars, indicators, params)
