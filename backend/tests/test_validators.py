"""
LiveChart Core — Series Validator Test Suite

Tests for bar filtering, rejection warnings, input coercion, and the
series statistics / range helpers.
"""

import math
import sys

sys.path.insert(0, "backend")


DAY = 86_400
BASE_TS = 1_704_067_200  # 2024-01-01T00:00:00Z


def _raw(ts, o=100.0, h=101.0, l=99.0, c=100.5, v=1000.0):
    return {"timestamp": ts, "open": o, "high": h, "low": l, "close": c, "volume": v}


# ═══════════════════════════════════════════════
#  VALIDATOR
# ═══════════════════════════════════════════════

class TestValidateBars:
    """Test validate_bars filtering and warnings."""

    def test_clean_series_passes_through(self):
        from livechart.utils.validators import validate_bars

        raw = [_raw(BASE_TS + i * DAY) for i in range(5)]
        report = validate_bars(raw)
        assert len(report.bars) == 5
        assert report.warnings == []
        assert report.is_clean

    def test_none_input_is_empty(self):
        from livechart.utils.validators import validate_bars

        report = validate_bars(None)
        assert report.bars == []
        assert report.rejected_count == 0

    def test_high_below_low_rejected(self):
        from livechart.models import RejectReason
        from livechart.utils.validators import validate_bars

        raw = [_raw(BASE_TS), _raw(BASE_TS + DAY, h=98.0, l=99.0, o=98.5, c=98.5)]
        report = validate_bars(raw)
        assert len(report.bars) == 1
        assert report.warnings[0].index == 1
        assert report.warnings[0].reason == RejectReason.OHLC_VIOLATION

    def test_close_above_high_rejected(self):
        from livechart.models import RejectReason
        from livechart.utils.validators import validate_bars

        report = validate_bars([_raw(BASE_TS, c=105.0)])
        assert report.bars == []
        assert report.warnings[0].reason == RejectReason.OHLC_VIOLATION

    def test_negative_value_rejected(self):
        from livechart.models import RejectReason
        from livechart.utils.validators import validate_bars

        report = validate_bars([_raw(BASE_TS, v=-5.0)])
        assert report.warnings[0].reason == RejectReason.NEGATIVE_VALUE

    def test_non_finite_rejected(self):
        from livechart.models import RejectReason
        from livechart.utils.validators import validate_bars

        report = validate_bars([_raw(BASE_TS, c=math.nan), _raw(BASE_TS + DAY, h=math.inf)])
        assert report.bars == []
        assert [w.reason for w in report.warnings] == [RejectReason.NON_FINITE] * 2

    def test_oversized_integer_rejected_not_raised(self):
        from livechart.models import RejectReason
        from livechart.utils.validators import validate_bars

        raw = [_raw(BASE_TS, o=10**400), _raw(BASE_TS + DAY, v=10**400), _raw(BASE_TS + 2 * DAY)]
        report = validate_bars(raw)
        assert [b.timestamp for b in report.bars] == [BASE_TS + 2 * DAY]
        assert [w.index for w in report.warnings] == [0, 1]
        assert [w.reason for w in report.warnings] == [RejectReason.NON_FINITE] * 2

    def test_duplicate_timestamp_rejected(self):
        from livechart.models import RejectReason
        from livechart.utils.validators import validate_bars

        report = validate_bars([_raw(BASE_TS), _raw(BASE_TS, c=100.8)])
        assert len(report.bars) == 1
        assert report.bars[0].close == 100.5
        assert report.warnings[0].reason == RejectReason.DUPLICATE_TIMESTAMP

    def test_out_of_order_rejected_against_last_accepted(self):
        from livechart.models import RejectReason
        from livechart.utils.validators import validate_bars

        raw = [_raw(BASE_TS + 2 * DAY), _raw(BASE_TS + DAY), _raw(BASE_TS + 3 * DAY)]
        report = validate_bars(raw)
        assert [b.timestamp for b in report.bars] == [BASE_TS + 2 * DAY, BASE_TS + 3 * DAY]
        assert report.warnings[0].index == 1
        assert report.warnings[0].reason == RejectReason.NON_MONOTONIC_TIMESTAMP

    def test_malformed_candidates_rejected(self):
        from livechart.models import RejectReason
        from livechart.utils.validators import validate_bars

        raw = ["not a bar", {"timestamp": BASE_TS, "open": 1}, _raw(BASE_TS, c="abc")]
        report = validate_bars(raw)
        assert report.bars == []
        assert all(w.reason == RejectReason.MALFORMED for w in report.warnings)
        assert [w.index for w in report.warnings] == [0, 1, 2]

    def test_accepts_time_key_and_iso_dates(self):
        from livechart.utils.validators import validate_bars

        raw = [
            {"time": "2024-01-01T00:00:00Z", "open": 1, "high": 2, "low": 0.5, "close": 1.5},
            {"date": "2024-01-02", "open": 1.5, "high": 2, "low": 1, "close": 1.8},
        ]
        report = validate_bars(raw)
        assert [b.timestamp for b in report.bars] == [BASE_TS, BASE_TS + DAY]

    def test_accepts_attribute_objects_and_datetimes(self):
        from datetime import datetime, timezone
        from types import SimpleNamespace
        from livechart.utils.validators import validate_bars

        candle = SimpleNamespace(
            timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
            open=10, high=11, low=9, close=10.5, volume=500,
        )
        report = validate_bars([candle])
        assert report.bars[0].timestamp == BASE_TS
        assert report.bars[0].volume == 500.0

    def test_missing_volume_defaults_to_zero_with_note(self):
        from livechart.utils.validators import validate_bars

        raw = [{"timestamp": BASE_TS, "open": 1, "high": 2, "low": 0.9, "close": 1.5}]
        report = validate_bars(raw)
        assert report.bars[0].volume == 0.0
        assert report.warnings == []
        assert any("Zero volume" in n for n in report.notes)

    def test_extreme_range_is_noted_not_rejected(self):
        from livechart.utils.validators import validate_bars

        report = validate_bars([_raw(BASE_TS, o=100, h=200, l=50, c=150)])
        assert len(report.bars) == 1
        assert any("Extreme price movement" in n for n in report.notes)

    def test_accepted_bars_are_strictly_increasing(self):
        from livechart.utils.validators import validate_bars

        ts = [5, 3, 5, 6, 6, 9, 1, 10]
        report = validate_bars([_raw(BASE_TS + t * DAY) for t in ts])
        stamps = [b.timestamp for b in report.bars]
        assert all(a < b for a, b in zip(stamps, stamps[1:]))
        assert len(report.bars) + len(report.warnings) == len(ts)

    def test_is_valid_series(self):
        from livechart.models import Bar
        from livechart.utils.validators import is_valid_series

        good = [Bar(timestamp=BASE_TS + i, open=1, high=2, low=0.5, close=1.5) for i in range(3)]
        bad = good + [good[0]]
        assert is_valid_series(good) is True
        assert is_valid_series(bad) is False


# ═══════════════════════════════════════════════
#  SERIES HELPERS
# ═══════════════════════════════════════════════

class TestSeriesHelpers:
    """Test series statistics and range filtering."""

    def _bars(self, closes):
        from livechart.models import Bar

        return [
            Bar(timestamp=BASE_TS + i * DAY, open=c, high=c + 1, low=c - 1, close=c, volume=100 * (i + 1))
            for i, c in enumerate(closes)
        ]

    def test_series_stats(self):
        import pytest
        from livechart.utils.series import series_stats

        stats = series_stats(self._bars([100, 110, 99]))
        assert stats["data_points"] == 3
        assert stats["date_range"]["days"] == 2
        assert stats["price"]["min"] == 99
        assert stats["price"]["max"] == 110
        assert stats["price"]["current"] == 99
        assert stats["volume"]["total"] == 600
        assert stats["returns"]["max"] == pytest.approx(0.1)
        assert stats["returns"]["min"] == pytest.approx(-0.1)

    def test_series_stats_empty(self):
        from livechart.utils.series import series_stats

        assert series_stats([]) is None

    def test_single_bar_has_no_returns(self):
        from livechart.utils.series import series_stats

        stats = series_stats(self._bars([100]))
        assert stats["returns"]["volatility"] is None

    def test_filter_by_range_inclusive(self):
        from livechart.utils.series import filter_by_range

        bars = self._bars([1, 2, 3, 4, 5])
        picked = filter_by_range(bars, BASE_TS + DAY, BASE_TS + 3 * DAY)
        assert [b.close for b in picked] == [2, 3, 4]

    def test_filter_last_days(self):
        from livechart.utils.series import filter_last_days

        bars = self._bars(list(range(10, 20)))
        assert [b.close for b in filter_last_days(bars, 2)] == [17, 18, 19]
        assert filter_last_days([], 5) == []

    def test_full_range(self):
        from livechart.utils.series import full_range

        bars = self._bars([1, 2, 3])
        vp = full_range(bars)
        assert (vp.from_, vp.to) == (BASE_TS, BASE_TS + 2 * DAY)
        assert full_range([]) is None

    def test_column(self):
        from livechart.utils.series import column

        assert column(self._bars([1, 2]), "volume") == [100.0, 200.0]
