# Shared utilities: validator and series helpers
from livechart.utils.series import column, filter_by_range, filter_last_days, full_range, series_stats
from livechart.utils.validators import is_valid_series, validate_bars

__all__ = [
    "column",
    "filter_by_range",
    "filter_last_days",
    "full_range",
    "is_valid_series",
    "series_stats",
    "validate_bars",
]
