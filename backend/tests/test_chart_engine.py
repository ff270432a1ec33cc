"""
LiveChart Core — Chart Engine Test Suite

Tests for the Plotly-backed rendering surface and the surface error
boundary.
"""

import sys

import pytest

sys.path.insert(0, "backend")


BASE_TS = 1_704_067_200


def _bars(n):
    from livechart.models import Bar

    return [
        Bar(timestamp=BASE_TS + i * 60, open=10 + i, high=11 + i, low=9 + i, close=10.5 + i, volume=100)
        for i in range(n)
    ]


# ═══════════════════════════════════════════════
#  FIGURE SURFACE
# ═══════════════════════════════════════════════

class TestFigureSurface:
    """Test FigureSurface series management."""

    def test_implements_protocol(self):
        from livechart.engines.chart_engine import FigureSurface, RenderSurface

        assert isinstance(FigureSurface("price"), RenderSurface)

    def test_candlestick_series(self):
        from livechart.engines.chart_engine import FigureSurface, candle_points

        surface = FigureSurface("price")
        surface.create_series("price", kind="candlestick")
        surface.set_data("price", candle_points(_bars(5)))
        assert len(surface.figure.data) == 1
        trace = surface.figure.data[0]
        assert trace.type == "candlestick"
        assert list(trace.close) == [10.5, 11.5, 12.5, 13.5, 14.5]

    def test_update_replaces_then_appends(self):
        from livechart.engines.chart_engine import FigureSurface

        surface = FigureSurface("rsi")
        surface.create_series("rsi")
        surface.set_data("rsi", [{"time": 1, "value": 50.0}, {"time": 2, "value": 55.0}])

        surface.update("rsi", {"time": 2, "value": 60.0})
        assert [p["value"] for p in surface.points("rsi")] == [50.0, 60.0]

        surface.update("rsi", {"time": 3, "value": 65.0})
        assert [p["time"] for p in surface.points("rsi")] == [1, 2, 3]
        assert list(surface.figure.data[0].y) == [50.0, 60.0, 65.0]

    def test_update_older_point_fails(self):
        from livechart.engines.chart_engine import FigureSurface
        from livechart.error_handlers import SurfaceError

        surface = FigureSurface("rsi")
        surface.create_series("rsi")
        surface.set_data("rsi", [{"time": 5, "value": 1.0}])
        with pytest.raises(SurfaceError):
            surface.update("rsi", {"time": 4, "value": 2.0})

    def test_remove_series(self):
        from livechart.engines.chart_engine import FigureSurface

        surface = FigureSurface("price")
        surface.create_series("sma_20")
        surface.create_series("sma_50")
        surface.remove_series("sma_20")
        assert surface.series_keys() == {"sma_50"}
        assert [t.name for t in surface.figure.data] == ["sma_50"]

    def test_unknown_series(self):
        from livechart.engines.chart_engine import FigureSurface
        from livechart.error_handlers import SeriesNotFoundError

        surface = FigureSurface("price")
        with pytest.raises(SeriesNotFoundError) as exc_info:
            surface.set_data("missing", [])
        assert exc_info.value.series_key == "missing"

    def test_duplicate_and_bad_kind(self):
        from livechart.engines.chart_engine import FigureSurface
        from livechart.error_handlers import SurfaceError

        surface = FigureSurface("price")
        surface.create_series("a")
        with pytest.raises(SurfaceError):
            surface.create_series("a")
        with pytest.raises(SurfaceError):
            surface.create_series("b", kind="area")

    def test_marker_and_histogram_series(self):
        from livechart.engines.chart_engine import FigureSurface

        surface = FigureSurface("macd")
        surface.create_series("macd_histogram", kind="histogram")
        surface.set_data("macd_histogram", [{"time": 1, "value": -1.0}, {"time": 2, "value": 2.0}])
        surface.create_series("flags", kind="markers")
        surface.set_data("flags", [{"time": 2, "value": 5.0, "text": "bullish flag", "direction": "bullish"}])
        assert [t.type for t in surface.figure.data] == ["bar", "scatter"]
        assert list(surface.figure.data[1].text) == ["bullish flag"]

    def test_visible_range(self):
        from livechart.engines.chart_engine import FigureSurface
        from livechart.models import PaneViewport

        surface = FigureSurface("price")
        assert surface.get_visible_range() is None
        vp = PaneViewport(from_=BASE_TS, to=BASE_TS + 3600)
        surface.set_visible_range(vp)
        assert surface.get_visible_range() == vp
        assert surface.figure.layout.xaxis.range is not None

    def test_disposed_surface_raises(self):
        from livechart.engines.chart_engine import FigureSurface
        from livechart.error_handlers import SurfaceDisposedError

        surface = FigureSurface("price")
        surface.create_series("price", kind="candlestick")
        surface.dispose()
        surface.dispose()
        assert surface.disposed
        with pytest.raises(SurfaceDisposedError):
            surface.set_data("price", [])
        with pytest.raises(SurfaceDisposedError):
            surface.get_visible_range()

    def test_to_html(self):
        from livechart.engines.chart_engine import FigureSurface, candle_points

        surface = FigureSurface("price", title="TEST")
        surface.create_series("price", kind="candlestick")
        surface.set_data("price", candle_points(_bars(3)))
        html = surface.to_html()
        assert "plotly" in html.lower()


class TestPointBuilders:
    """Test point conversion helpers."""

    def test_value_points_drop_warmup(self):
        from livechart.engines.chart_engine import value_points

        bars = _bars(3)
        points = value_points(bars, [None, 1.5, 2.5])
        assert points == [
            {"time": BASE_TS + 60, "value": 1.5},
            {"time": BASE_TS + 120, "value": 2.5},
        ]

    def test_candle_point(self):
        from livechart.engines.chart_engine import candle_point

        bar = _bars(1)[0]
        assert candle_point(bar) == {
            "time": BASE_TS, "open": 10, "high": 11, "low": 9, "close": 10.5,
        }


# ═══════════════════════════════════════════════
#  ERROR BOUNDARY
# ═══════════════════════════════════════════════

class TestSurfaceGuard:
    """Test the surface error boundary."""

    def test_swallows_surface_errors(self):
        from livechart.error_handlers import SurfaceError, surface_guard

        with surface_guard("rsi", "set_data") as outcome:
            raise SurfaceError("rsi", "set_data", "boom")
        assert outcome.ok is False
        assert "boom" in str(outcome.error)

    def test_swallows_disposed(self):
        from livechart.error_handlers import SurfaceDisposedError, surface_guard

        with surface_guard("rsi", "update") as outcome:
            raise SurfaceDisposedError("rsi", "update")
        assert isinstance(outcome.error, SurfaceDisposedError)

    def test_success_outcome(self):
        from livechart.error_handlers import surface_guard

        with surface_guard("rsi", "update") as outcome:
            pass
        assert outcome.ok is True
        assert outcome.error is None

    def test_other_errors_propagate(self):
        from livechart.error_handlers import surface_guard

        with pytest.raises(ValueError):
            with surface_guard("rsi", "update"):
                raise ValueError("bug")
