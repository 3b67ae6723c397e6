# config.py
"""Service configuration loaded from environment variables."""

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the signal service. Override with ``SIGNAL_<FIELD>``."""

    model_config = SettingsConfigDict(
        env_prefix="SIGNAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Stream
    symbols: List[str] = ["XYZ", "ABC", "DEF"]
    interval_ms: int = 50
    base_price: float = 100.0

    # Moving averages
    sma_short_period: int = 20
    sma_long_period: int = 50
    ema_short_period: int = 20
    ema_long_period: int = 50

    # Oscillators
    rsi_period: int = 14
    stoch_k_period: int = 14
    stoch_d_period: int = 3
    stoch_rsi_period: int = 14
    stoch_rsi_stoch_period: int = 14
    stoch_rsi_d_period: int = 3

    # MACD / Bollinger
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    bb_period: int = 20
    bb_multiplier: float = 2.0

    # Parabolic SAR
    psar_step: float = 0.02
    psar_max_step: float = 0.2

    # Bars skipped before history records are emitted for backtests
    warmup_bars: int = 50

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
