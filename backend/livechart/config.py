"""
LiveChart Core — Configuration Management

Pydantic Settings: loads from environment / .env, validates all defaults at startup.
Every variable is prefixed with LIVECHART_ (e.g. LIVECHART_RSI_PERIOD=21).
"""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Core configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LIVECHART_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Core ──
    app_env: str = "development"
    log_level: str = "INFO"
    log_json: bool = False

    # ── Indicator Defaults ──
    sma_periods: str = "20,50,200"
    ema_periods: str = "12,26,50"
    rsi_period: int = 14
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    bollinger_period: int = 20
    bollinger_std_dev: float = 2.0
    stochastic_k: int = 14
    stochastic_d: int = 3
    atr_period: int = 14
    volume_sma_period: int = 20

    @property
    def sma_period_list(self) -> list[int]:
        """Parse comma-separated SMA periods into a list."""
        return [int(p) for p in self.sma_periods.split(",") if p.strip()]

    @property
    def ema_period_list(self) -> list[int]:
        return [int(p) for p in self.ema_periods.split(",") if p.strip()]

    # ── Pattern Defaults ──
    extrema_order: int = 5
    divergence_indicator: str = "rsi"
    sr_tolerance_pct: float = 0.02
    sr_min_touches: int = 2
    triangle_min_length: int = 10
    triangle_max_length: int = 40
    triangle_slope_tolerance: float = 0.0015  # per-bar slope, relative to mean price
    flag_pole_length: int = 10
    flag_min_pole_return: float = 0.08  # 8% impulse
    flag_min_length: int = 5
    flag_max_length: int = 20
    flag_slope_tolerance: float = 0.003
    flag_channel_tolerance: float = 0.06
    double_tolerance_pct: float = 0.02
    double_min_separation: int = 5
    volume_multiplier: float = 2.0
    volume_window: int = 20

    # ── Pane Synchronizer ──
    layout_debounce_ms: int = 50

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance, created once and reused."""
    return Settings()
