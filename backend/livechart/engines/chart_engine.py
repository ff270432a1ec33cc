"""
LiveChart Core — Chart Engine

The rendering-surface boundary. `RenderSurface` is the small protocol the
pane synchronizer drives: create/remove series, replace or patch their
data, read and set the visible time range, dispose. `FigureSurface` is a
Plotly-backed implementation for headless rendering and tests.

Visual DNA follows TradingView dark theme:
  - Background: #131722
  - Bullish: #26a69a
  - Bearish: #ef5350
  - Grid: #363c4e
  - Text: #d1d4dc
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable

import plotly.graph_objects as go
import structlog

from livechart.error_handlers import SeriesNotFoundError, SurfaceDisposedError, SurfaceError
from livechart.models import Bar, IndicatorSeries, PaneViewport

log = structlog.get_logger(__name__)

# Point shapes exchanged with a surface:
#   candle:  {"time", "open", "high", "low", "close"}
#   value:   {"time", "value"}
#   marker:  {"time", "value", "text", "direction"}
Point = dict

SERIES_KINDS = ("candlestick", "line", "histogram", "markers")


# ──────────────────────────────────────────────
# TradingView Color Constants
# ──────────────────────────────────────────────

TV_BG = "#131722"
TV_GRID = "#363c4e"
TV_TEXT = "#d1d4dc"
TV_TEXT_DIM = "#787b86"
TV_BULLISH = "#26a69a"
TV_BEARISH = "#ef5350"
TV_SMA_20 = "#f7a21b"      # Orange
TV_SMA_50 = "#2196f3"      # Blue
TV_SMA_200 = "#e040fb"     # Purple
TV_EMA = "#00e5ff"         # Cyan
TV_BB_LINE = "rgba(33, 150, 243, 0.5)"
TV_SIGNAL = "#ff6d00"      # Deep orange
TV_NEUTRAL = "#ffeb3b"     # Yellow

_SERIES_COLORS = {
    "sma_20": TV_SMA_20,
    "sma_50": TV_SMA_50,
    "sma_200": TV_SMA_200,
    "bb_upper": TV_BB_LINE,
    "bb_middle": TV_BB_LINE,
    "bb_lower": TV_BB_LINE,
    "macd_line": TV_SMA_50,
    "macd_signal": TV_SIGNAL,
    "stoch_k": TV_SMA_50,
    "stoch_d": TV_SIGNAL,
    "rsi": TV_SMA_200,
}


@runtime_checkable
class RenderSurface(Protocol):
    """What the pane synchronizer needs from a charting surface.

    Implementations raise SurfaceError (or a subclass) when an operation
    cannot be applied; the synchronizer absorbs those at its boundary.
    """

    surface_id: str

    def create_series(self, key: str, kind: str = "line", **options) -> None: ...

    def remove_series(self, key: str) -> None: ...

    def has_series(self, key: str) -> bool: ...

    def set_data(self, key: str, points: list[Point]) -> None: ...

    def update(self, key: str, point: Point) -> None: ...

    def get_visible_range(self) -> Optional[PaneViewport]: ...

    def set_visible_range(self, viewport: PaneViewport) -> None: ...

    def dispose(self) -> None: ...


# ──────────────────────────────────────────────
# Point Builders
# ──────────────────────────────────────────────

def candle_points(bars: list[Bar]) -> list[Point]:
    return [
        {"time": b.timestamp, "open": b.open, "high": b.high, "low": b.low, "close": b.close}
        for b in bars
    ]


def value_points(bars: list[Bar], series: IndicatorSeries) -> list[Point]:
    """Pair an indicator series with bar timestamps, dropping warm-up gaps."""
    return [
        {"time": b.timestamp, "value": v}
        for b, v in zip(bars, series)
        if v is not None
    ]


def candle_point(bar: Bar) -> Point:
    return {"time": bar.timestamp, "open": bar.open, "high": bar.high, "low": bar.low, "close": bar.close}


# ──────────────────────────────────────────────
# Plotly Surface
# ──────────────────────────────────────────────

class FigureSurface:
    """Plotly-backed RenderSurface.

    Each series is one trace named after its key. Points are kept per
    series so update() can patch the last point or append a newer one.

    Usage:
        surface = FigureSurface("price")
        surface.create_series("price", kind="candlestick")
        surface.set_data("price", candle_points(bars))
        html = surface.to_html()
    """

    def __init__(self, surface_id: str, height: int = 400, width: int = 1200, title: str = ""):
        self.surface_id = surface_id
        self.figure = go.Figure()
        self._series: dict[str, dict] = {}
        self._viewport: Optional[PaneViewport] = None
        self._disposed = False
        self._apply_tv_theme(title, height, width)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def series_keys(self) -> set[str]:
        return set(self._series)

    def points(self, key: str) -> list[Point]:
        self._ensure_open("points")
        return list(self._get(key, "points")["points"])

    # ── RenderSurface ──

    def create_series(self, key: str, kind: str = "line", **options) -> None:
        self._ensure_open("create_series")
        if kind not in SERIES_KINDS:
            raise SurfaceError(self.surface_id, "create_series", f"unknown series kind '{kind}'")
        if key in self._series:
            raise SurfaceError(self.surface_id, "create_series", f"series '{key}' already exists")
        self._series[key] = {"kind": kind, "options": options, "points": []}
        self.figure.add_trace(self._build_trace(key))

    def remove_series(self, key: str) -> None:
        self._ensure_open("remove_series")
        self._get(key, "remove_series")
        del self._series[key]
        self.figure.data = tuple(t for t in self.figure.data if t.name != key)

    def has_series(self, key: str) -> bool:
        return key in self._series

    def set_data(self, key: str, points: list[Point]) -> None:
        self._ensure_open("set_data")
        state = self._get(key, "set_data")
        state["points"] = sorted(points, key=lambda p: p["time"])
        self._refresh_trace(key)

    def update(self, key: str, point: Point) -> None:
        """Replace the last point when times match, append when newer."""
        self._ensure_open("update")
        state = self._get(key, "update")
        pts = state["points"]
        if pts and point["time"] == pts[-1]["time"]:
            pts[-1] = point
        elif not pts or point["time"] > pts[-1]["time"]:
            pts.append(point)
        else:
            raise SurfaceError(
                self.surface_id, "update",
                f"point at {point['time']} is older than last point {pts[-1]['time']}",
            )
        self._refresh_trace(key)

    def get_visible_range(self) -> Optional[PaneViewport]:
        self._ensure_open("get_visible_range")
        return self._viewport

    def set_visible_range(self, viewport: PaneViewport) -> None:
        self._ensure_open("set_visible_range")
        self._viewport = viewport
        self.figure.update_xaxes(range=[_to_datetime(viewport.from_), _to_datetime(viewport.to)])

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._series.clear()
        self.figure.data = ()
        log.debug("surface.disposed_cleanly", surface_id=self.surface_id)

    # ── Export ──

    def to_html(self) -> str:
        """Convert the surface to an embeddable HTML string."""
        self._ensure_open("to_html")
        return self.figure.to_html(
            include_plotlyjs="cdn",
            full_html=False,
            config={"displayModeBar": True, "scrollZoom": True},
        )

    # ── Private Helpers ──

    def _ensure_open(self, operation: str) -> None:
        if self._disposed:
            raise SurfaceDisposedError(self.surface_id, operation)

    def _get(self, key: str, operation: str) -> dict:
        try:
            return self._series[key]
        except KeyError:
            raise SeriesNotFoundError(self.surface_id, operation, key)

    def _refresh_trace(self, key: str) -> None:
        values = self._trace_values(key)
        for trace in self.figure.data:
            if trace.name == key:
                trace.update(**values)
                return

    def _trace_values(self, key: str) -> dict:
        """Data-bearing trace properties for the series' current points."""
        state = self._series[key]
        kind = state["kind"]
        pts = state["points"]
        values: dict = {"x": [_to_datetime(p["time"]) for p in pts]}

        if kind == "candlestick":
            for field in ("open", "high", "low", "close"):
                values[field] = [p[field] for p in pts]
            return values

        values["y"] = [p["value"] for p in pts]
        if kind == "histogram":
            values["marker_color"] = [TV_BULLISH if p["value"] >= 0 else TV_BEARISH for p in pts]
        elif kind == "markers":
            values["text"] = [p.get("text", "") for p in pts]
            values["marker_color"] = [_direction_color(p.get("direction")) for p in pts]
        return values

    def _build_trace(self, key: str):
        state = self._series[key]
        kind = state["kind"]
        values = self._trace_values(key)
        color = state["options"].get("color", _SERIES_COLORS.get(key, _default_color(key)))

        if kind == "candlestick":
            return go.Candlestick(
                **values,
                increasing_line_color=TV_BULLISH,
                decreasing_line_color=TV_BEARISH,
                increasing_fillcolor=TV_BULLISH,
                decreasing_fillcolor=TV_BEARISH,
                name=key,
                showlegend=False,
            )
        if kind == "histogram":
            return go.Bar(**values, name=key, showlegend=False)
        if kind == "markers":
            return go.Scatter(
                **values,
                mode="markers+text",
                textposition="top center",
                marker_size=9,
                marker_symbol="diamond",
                name=key,
                showlegend=False,
            )
        return go.Scatter(
            **values,
            mode="lines",
            line=dict(color=color, width=state["options"].get("width", 1)),
            name=key,
        )

    def _apply_tv_theme(self, title: str, height: int, width: int) -> None:
        """Apply TradingView dark theme to the figure."""
        self.figure.update_layout(
            title=dict(
                text=f"<b>{title}</b>" if title else "",
                x=0.5, xanchor="center",
                font=dict(size=18, color=TV_TEXT),
            ),
            template="plotly_dark",
            paper_bgcolor=TV_BG,
            plot_bgcolor=TV_BG,
            font=dict(color=TV_TEXT, family="Inter, system-ui, sans-serif", size=11),
            height=height,
            width=width,
            margin=dict(l=60, r=30, t=50, b=30),
            xaxis_rangeslider_visible=False,
        )
        self.figure.update_xaxes(gridcolor=TV_GRID, gridwidth=0.5, tickfont=dict(color=TV_TEXT_DIM, size=10))
        self.figure.update_yaxes(gridcolor=TV_GRID, gridwidth=0.5, tickfont=dict(color=TV_TEXT_DIM, size=10))


def _to_datetime(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _default_color(key: str) -> str:
    if key.startswith("ema_"):
        return TV_EMA
    if key.startswith("sr_"):
        return TV_TEXT_DIM
    return TV_NEUTRAL


def _direction_color(direction: Optional[str]) -> str:
    if direction == "bullish":
        return TV_BULLISH
    if direction == "bearish":
        return TV_BEARISH
    return TV_NEUTRAL
