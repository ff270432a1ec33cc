"""
LiveChart Core — Series Helpers

Column extraction, summary statistics and time-window filtering over a
validated bar series.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from livechart.models import Bar, PaneViewport
from livechart.observability import traced

_DAY = 24 * 60 * 60


def column(bars: list[Bar], name: str) -> list[float]:
    """Extract one OHLCV field as a plain list."""
    return [float(getattr(b, name)) for b in bars]


def full_range(bars: list[Bar]) -> Optional[PaneViewport]:
    """Viewport covering the whole series, or None when empty."""
    if not bars:
        return None
    return PaneViewport(from_=bars[0].timestamp, to=bars[-1].timestamp)


def filter_by_range(bars: list[Bar], start: int, end: int) -> list[Bar]:
    """Bars whose timestamp lies in [start, end]."""
    return [b for b in bars if start <= b.timestamp <= end]


def filter_last_days(bars: list[Bar], days: int) -> list[Bar]:
    """Bars within *days* of the last bar's timestamp."""
    if not bars:
        return []
    cutoff = bars[-1].timestamp - days * _DAY
    return [b for b in bars if b.timestamp >= cutoff]


@traced("series.stats")
def series_stats(bars: list[Bar]) -> Optional[dict]:
    """Summary statistics for a bar series.

    Returns None for an empty series. Return volatility is the population
    standard deviation of simple close-to-close returns.
    """
    if not bars:
        return None

    closes = np.array(column(bars, "close"), dtype=float)
    volumes = np.array(column(bars, "volume"), dtype=float)

    prev = closes[:-1]
    with np.errstate(divide="ignore", invalid="ignore"):
        returns = np.where(prev != 0, np.diff(closes) / np.where(prev != 0, prev, 1.0), 0.0)

    if len(returns):
        ret_stats = {
            "min": float(np.min(returns)),
            "max": float(np.max(returns)),
            "avg": float(np.mean(returns)),
            "volatility": float(np.std(returns)),
        }
    else:
        ret_stats = {"min": None, "max": None, "avg": None, "volatility": None}

    return {
        "data_points": len(bars),
        "date_range": {
            "start": bars[0].timestamp,
            "end": bars[-1].timestamp,
            "days": int(np.ceil((bars[-1].timestamp - bars[0].timestamp) / _DAY)),
        },
        "price": {
            "min": float(np.min(closes)),
            "max": float(np.max(closes)),
            "current": float(closes[-1]),
            "avg": float(np.mean(closes)),
        },
        "volume": {
            "min": float(np.min(volumes)),
            "max": float(np.max(volumes)),
            "avg": float(np.mean(volumes)),
            "total": float(np.sum(volumes)),
        },
        "returns": ret_stats,
    }
