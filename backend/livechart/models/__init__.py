"""
LiveChart Core — Pydantic Models

All I/O schemas for the computation core. The validator produces these,
engines consume and return these, the pane synchronizer applies these.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ──────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────

class Direction(str, Enum):
    """Bias carried by a detected pattern."""
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class LevelType(str, Enum):
    SUPPORT = "support"
    RESISTANCE = "resistance"


class TriangleType(str, Enum):
    ASCENDING = "ascending"
    DESCENDING = "descending"
    SYMMETRICAL = "symmetrical"


class PaneRole(str, Enum):
    MASTER = "master"
    FOLLOWER = "follower"


class PaneState(str, Enum):
    """Lifecycle of a rendering pane."""
    UNMOUNTED = "unmounted"
    INITIALIZING = "initializing"
    READY = "ready"


class RejectReason(str, Enum):
    """Why the validator dropped a bar."""
    MALFORMED = "malformed"
    NON_FINITE = "non_finite"
    NEGATIVE_VALUE = "negative_value"
    OHLC_VIOLATION = "ohlc_violation"
    NON_MONOTONIC_TIMESTAMP = "non_monotonic_timestamp"
    DUPLICATE_TIMESTAMP = "duplicate_timestamp"


class OverlayCategory(str, Enum):
    """Toggleable overlay groups. Each maps to one or more overlay series."""
    SMA = "sma"
    EMA = "ema"
    BOLLINGER = "bollinger"
    MACD = "macd"
    RSI = "rsi"
    STOCHASTIC = "stochastic"
    ATR = "atr"
    OBV = "obv"
    VOLUME_SMA = "volume_sma"
    DIVERGENCES = "divergences"
    SUPPORT_RESISTANCE = "support_resistance"
    TRIANGLES = "triangles"
    FLAGS = "flags"
    DOUBLE_TOPS = "double_tops"
    VOLUME_ANOMALIES = "volume_anomalies"
    CANDLESTICKS = "candlesticks"


# ──────────────────────────────────────────────
# Bars & Indicator Series
# ──────────────────────────────────────────────

class Bar(BaseModel):
    """One OHLCV sample. Timestamp is UTC epoch seconds."""
    model_config = ConfigDict(frozen=True)

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


# Index-aligned with its source series; None marks the warm-up window.
IndicatorSeries = list[Optional[float]]


class ValidationWarning(BaseModel):
    """One rejected bar."""
    index: int
    reason: RejectReason
    timestamp: Optional[int] = None
    detail: str = ""


class ValidationReport(BaseModel):
    """Validator output: clean bars plus diagnostics."""
    bars: list[Bar] = []
    warnings: list[ValidationWarning] = []
    notes: list[str] = []  # non-rejecting observations (zero volume, extreme range)

    @property
    def rejected_count(self) -> int:
        return len(self.warnings)

    @property
    def is_clean(self) -> bool:
        return not self.warnings


# ──────────────────────────────────────────────
# Parameters
# ──────────────────────────────────────────────

class IndicatorParams(BaseModel):
    """Indicator periods. Defaults come from Settings via from_settings()."""
    sma_periods: list[int] = Field(default_factory=lambda: [20, 50, 200])
    ema_periods: list[int] = Field(default_factory=lambda: [12, 26, 50])
    rsi_period: int = Field(14, gt=0)
    macd_fast: int = Field(12, gt=0)
    macd_slow: int = Field(26, gt=0)
    macd_signal: int = Field(9, gt=0)
    bollinger_period: int = Field(20, gt=0)
    bollinger_std_dev: float = Field(2.0, gt=0)
    stochastic_k: int = Field(14, gt=0)
    stochastic_d: int = Field(3, gt=0)
    atr_period: int = Field(14, gt=0)
    volume_sma_period: int = Field(20, gt=0)

    @field_validator("sma_periods", "ema_periods")
    @classmethod
    def _positive_periods(cls, v: list[int]) -> list[int]:
        if any(p <= 0 for p in v):
            raise ValueError("Periods must be positive integers")
        return v

    @model_validator(mode="after")
    def _fast_below_slow(self) -> "IndicatorParams":
        if self.macd_fast >= self.macd_slow:
            raise ValueError(
                f"MACD fast period ({self.macd_fast}) must be below slow period ({self.macd_slow})"
            )
        return self

    @classmethod
    def from_settings(cls, settings=None) -> "IndicatorParams":
        from livechart.config import get_settings

        s = settings or get_settings()
        return cls(
            sma_periods=s.sma_period_list,
            ema_periods=s.ema_period_list,
            rsi_period=s.rsi_period,
            macd_fast=s.macd_fast,
            macd_slow=s.macd_slow,
            macd_signal=s.macd_signal,
            bollinger_period=s.bollinger_period,
            bollinger_std_dev=s.bollinger_std_dev,
            stochastic_k=s.stochastic_k,
            stochastic_d=s.stochastic_d,
            atr_period=s.atr_period,
            volume_sma_period=s.volume_sma_period,
        )


class PatternParams(BaseModel):
    """Detector thresholds. Defaults come from Settings via from_settings()."""
    extrema_order: int = Field(5, gt=0)
    divergence_indicator: str = "rsi"
    sr_tolerance_pct: float = Field(0.02, gt=0)
    sr_min_touches: int = Field(2, gt=0)
    triangle_min_length: int = Field(10, gt=2)
    triangle_max_length: int = Field(40, gt=2)
    triangle_slope_tolerance: float = Field(0.0015, ge=0)
    flag_pole_length: int = Field(10, gt=0)
    flag_min_pole_return: float = Field(0.08, gt=0)
    flag_min_length: int = Field(5, gt=2)
    flag_max_length: int = Field(20, gt=2)
    flag_slope_tolerance: float = Field(0.003, ge=0)
    flag_channel_tolerance: float = Field(0.06, gt=0)
    double_tolerance_pct: float = Field(0.02, gt=0)
    double_min_separation: int = Field(5, gt=0)
    volume_multiplier: float = Field(2.0, gt=0)
    volume_window: int = Field(20, gt=1)

    @model_validator(mode="after")
    def _ordered_lengths(self) -> "PatternParams":
        if self.triangle_min_length > self.triangle_max_length:
            raise ValueError("triangle_min_length must not exceed triangle_max_length")
        if self.flag_min_length > self.flag_max_length:
            raise ValueError("flag_min_length must not exceed flag_max_length")
        return self

    @classmethod
    def from_settings(cls, settings=None) -> "PatternParams":
        from livechart.config import get_settings

        s = settings or get_settings()
        return cls(
            extrema_order=s.extrema_order,
            divergence_indicator=s.divergence_indicator,
            sr_tolerance_pct=s.sr_tolerance_pct,
            sr_min_touches=s.sr_min_touches,
            triangle_min_length=s.triangle_min_length,
            triangle_max_length=s.triangle_max_length,
            triangle_slope_tolerance=s.triangle_slope_tolerance,
            flag_pole_length=s.flag_pole_length,
            flag_min_pole_return=s.flag_min_pole_return,
            flag_min_length=s.flag_min_length,
            flag_max_length=s.flag_max_length,
            flag_slope_tolerance=s.flag_slope_tolerance,
            flag_channel_tolerance=s.flag_channel_tolerance,
            double_tolerance_pct=s.double_tolerance_pct,
            double_min_separation=s.double_min_separation,
            volume_multiplier=s.volume_multiplier,
            volume_window=s.volume_window,
        )


# ──────────────────────────────────────────────
# Patterns (tagged union on `kind`)
# ──────────────────────────────────────────────
# Every variant references bars by index only.

class Divergence(BaseModel):
    kind: Literal["divergence"] = "divergence"
    direction: Direction          # bullish (troughs) | bearish (peaks)
    start_index: int
    end_index: int
    indicator: str = "rsi"
    confidence: float = 0.7


class SupportResistanceLevel(BaseModel):
    kind: Literal["support_resistance"] = "support_resistance"
    level_type: LevelType
    level: float                  # cluster mean, derived scalar
    strength: int                 # touch count
    touch_indices: list[int] = []

    @property
    def last_touch_index(self) -> int:
        return self.touch_indices[-1] if self.touch_indices else -1


class TrianglePattern(BaseModel):
    kind: Literal["triangle"] = "triangle"
    triangle_type: TriangleType
    start_index: int
    end_index: int                # inclusive
    upper_slope: float
    lower_slope: float
    confidence: float = 0.0


class FlagPattern(BaseModel):
    kind: Literal["flag"] = "flag"
    direction: Direction
    pole_start_index: int
    pole_end_index: int
    flag_start_index: int
    flag_end_index: int           # inclusive
    pole_return: float
    confidence: float = 0.0

    @property
    def start_index(self) -> int:
        return self.pole_start_index

    @property
    def end_index(self) -> int:
        return self.flag_end_index


class DoubleTopBottom(BaseModel):
    kind: Literal["double_top_bottom"] = "double_top_bottom"
    is_top: bool
    first_index: int
    second_index: int
    neckline_index: int           # intervening reversal
    confidence: float = 0.0

    @property
    def direction(self) -> Direction:
        return Direction.BEARISH if self.is_top else Direction.BULLISH


class VolumeAnomaly(BaseModel):
    kind: Literal["volume_anomaly"] = "volume_anomaly"
    index: int
    ratio: float                  # volume / trailing mean
    z_score: float


class CandlestickPattern(BaseModel):
    kind: Literal["candlestick"] = "candlestick"
    name: str                     # doji | hammer | shooting_star
    index: int
    direction: Direction
    confidence: float = 0.0


Pattern = Annotated[
    Union[
        Divergence,
        SupportResistanceLevel,
        TrianglePattern,
        FlagPattern,
        DoubleTopBottom,
        VolumeAnomaly,
        CandlestickPattern,
    ],
    Field(discriminator="kind"),
]


class PatternCollection(BaseModel):
    """All detector outputs for one bar series."""
    divergences: list[Divergence] = []
    support_resistance: list[SupportResistanceLevel] = []
    triangles: list[TrianglePattern] = []
    flags: list[FlagPattern] = []
    double_tops: list[DoubleTopBottom] = []
    double_bottoms: list[DoubleTopBottom] = []
    volume_anomalies: list[VolumeAnomaly] = []
    candlesticks: list[CandlestickPattern] = []

    def all(self) -> list[Pattern]:
        return [
            *self.divergences,
            *self.support_resistance,
            *self.triangles,
            *self.flags,
            *self.double_tops,
            *self.double_bottoms,
            *self.volume_anomalies,
            *self.candlesticks,
        ]

    @property
    def pattern_count(self) -> int:
        return len(self.all())


# ──────────────────────────────────────────────
# Viewport & Update Classification
# ──────────────────────────────────────────────

class PaneViewport(BaseModel):
    """Visible time window of one pane."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_: int = Field(alias="from")
    to: int

    @model_validator(mode="after")
    def _ordered(self) -> "PaneViewport":
        if self.from_ > self.to:
            raise ValueError(f"Viewport start ({self.from_}) must not exceed end ({self.to})")
        return self


class FullReload(BaseModel):
    kind: Literal["full_reload"] = "full_reload"
    new_series: list[Bar]


class TickUpdate(BaseModel):
    kind: Literal["tick_update"] = "tick_update"
    patched_last_bar: Bar
    changed: bool = True          # False for identical series: nothing to patch


class Append(BaseModel):
    kind: Literal["append"] = "append"
    new_bar: Bar


UpdateClassification = Annotated[
    Union[FullReload, TickUpdate, Append],
    Field(discriminator="kind"),
]
