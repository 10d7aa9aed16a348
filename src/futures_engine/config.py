"""Settings (pydantic-settings, loaded from env vars)."""

from __future__ import annotations

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings


class RiskConfig(BaseModel):
    """Session-wide risk limits. Built once at startup, never mutated."""

    model_config = {"frozen": True}

    max_daily_loss_pct: float = 0.03
    max_position_size: float = 1000.0
    stop_loss_pct: float = 0.02
    max_open_positions: int = 3
    max_leverage: int = 10
    default_leverage: int = 3
    max_drawdown_pct: float = 0.10
    dynamic_stop_loss: bool = True
    atr_stop_multiplier: float = 1.5
    portfolio_correlation_limit: float = 0.8
    correlation_lookback: int = 30
    risk_per_trade_pct: float = 0.02
    max_balance_fraction: float = 0.10


class AnalyticsConfig(BaseModel):
    """Thresholds for CVD, volume, pattern and VRVP analysis."""

    model_config = {"frozen": True}

    # CVD bands are absolute volume units, so they depend on the symbol
    cvd_strong_threshold: float = 1e9
    cvd_threshold: float = 5e8
    cvd_magnitude_scale: float = 1e7
    # Share of bar volume credited to the losing side when taker volume is absent
    cvd_minority_share: float = 0.3
    cvd_recent_bars: int = 10

    volume_high_ratio: float = 1.5
    volume_medium_ratio: float = 1.2
    volume_surge_ratio: float = 2.0

    pattern_strong_pct: float = 2.0
    pattern_moderate_pct: float = 1.0
    reversal_body_pct: float = 1.5

    vrvp_scan_depth: int = 20
    vrvp_levels: int = 5
    hunter_zone_multiple: float = 3.0
    hunter_zone_proximity: float = 0.01
    volume_profile_bucket_pct: float = 0.0025
    low_volume_zone_ratio: float = 0.3
    high_volume_nodes: int = 5


class Settings(BaseSettings):
    # --- Bybit ---
    BYBIT_API_KEY: str = ""
    BYBIT_API_SECRET: str = ""
    BYBIT_BASE_URL: str = "https://api-testnet.bybit.com"
    BYBIT_RECV_WINDOW_MS: int = 5000
    HTTP_TIMEOUT_SECONDS: float = 10.0
    MAX_RETRIES: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_MAX_DELAY_SECONDS: float = 10.0

    # --- Rate limit / circuit breaker ---
    RATE_LIMIT_CAPACITY: int = 900
    RATE_LIMIT_WINDOW_MS: int = 60_000
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_RESET_MS: int = 60_000

    # --- Instruments ---
    INSTRUMENTS: list[str] = ["ETHUSDT"]
    TIMEFRAME: str = "1h"
    KLINE_LIMIT: int = 50
    ORDERBOOK_DEPTH: int = 50
    CANDLE_HISTORY_LIMIT: int = 200
    TICK_HISTORY_LIMIT: int = 500
    UPDATE_INTERVAL_SECONDS: float = 60.0
    DECISION_CYCLE_SECONDS: float = 60.0
    TICK_STALENESS_SECONDS: int = 300

    # --- Market data source ---
    MARKET_DATA_SOURCE: str = "live"  # live, synthetic
    SYNTHETIC_SEED: int = 42
    SYNTHETIC_BASE_PRICE: float = 2000.0

    # --- Analytics ---
    CVD_STRONG_THRESHOLD: float = 1e9
    CVD_THRESHOLD: float = 5e8
    CVD_MAGNITUDE_SCALE: float = 1e7
    CVD_MINORITY_SHARE: float = 0.3
    VOLUME_HIGH_RATIO: float = 1.5
    VOLUME_MEDIUM_RATIO: float = 1.2
    VOLUME_SURGE_RATIO: float = 2.0
    PATTERN_STRONG_PCT: float = 2.0
    PATTERN_MODERATE_PCT: float = 1.0
    REVERSAL_BODY_PCT: float = 1.5
    VRVP_SCAN_DEPTH: int = 20
    VRVP_LEVELS: int = 5
    HUNTER_ZONE_MULTIPLE: float = 3.0
    HUNTER_ZONE_PROXIMITY: float = 0.01
    VOLUME_PROFILE_BUCKET_PCT: float = 0.0025
    LOW_VOLUME_ZONE_RATIO: float = 0.3

    # --- Signal ---
    STOP_LOSS_BUFFER_PCT: float = 0.02
    DEFAULT_TAKE_PROFIT_PCT: float = 0.03
    MIN_ENTRY_CONFIDENCE: float = 60.0

    # --- Risk ---
    MAX_DAILY_LOSS_PCT: float = 0.03
    MAX_POSITION_SIZE: float = 1000.0
    STOP_LOSS_PCT: float = 0.02
    MAX_OPEN_POSITIONS: int = 3
    MAX_LEVERAGE: int = 10
    DEFAULT_LEVERAGE: int = 3
    MAX_DRAWDOWN_PCT: float = 0.10
    DYNAMIC_STOP_LOSS: bool = True
    ATR_STOP_MULTIPLIER: float = 1.5
    PORTFOLIO_CORRELATION_LIMIT: float = 0.8
    CORRELATION_LOOKBACK: int = 30
    RISK_PER_TRADE_PCT: float = 0.02
    MAX_BALANCE_FRACTION: float = 0.10

    # --- AI advisor ---
    AI_ENABLED: bool = False
    AI_API_URL: str = "https://api.studio.nebius.ai/v1/chat/completions"
    AI_API_KEY: str = ""
    AI_MODEL: str = "meta-llama/Meta-Llama-3.1-70B-Instruct"
    AI_TIMEOUT_SECONDS: float = 20.0
    AI_MIN_CONFIDENCE: float = 0.6

    # --- Infrastructure ---
    REDIS_URL: str = "redis://redis:6379"
    REDIS_FORWARD_EVENTS: bool = False
    EVENT_QUEUE_SIZE: int = 1000

    model_config = {"env_prefix": "", "case_sensitive": True}

    @field_validator("UPDATE_INTERVAL_SECONDS", "DECISION_CYCLE_SECONDS")
    @classmethod
    def _min_one_second(cls, v: float) -> float:
        if v < 1.0:
            raise ValueError("interval must be at least 1 second")
        return v

    @field_validator("MARKET_DATA_SOURCE")
    @classmethod
    def _known_source(cls, v: str) -> str:
        if v not in ("live", "synthetic"):
            raise ValueError("MARKET_DATA_SOURCE must be 'live' or 'synthetic'")
        return v

    def risk_config(self) -> RiskConfig:
        return RiskConfig(
            max_daily_loss_pct=self.MAX_DAILY_LOSS_PCT,
            max_position_size=self.MAX_POSITION_SIZE,
            stop_loss_pct=self.STOP_LOSS_PCT,
            max_open_positions=self.MAX_OPEN_POSITIONS,
            max_leverage=self.MAX_LEVERAGE,
            default_leverage=self.DEFAULT_LEVERAGE,
            max_drawdown_pct=self.MAX_DRAWDOWN_PCT,
            dynamic_stop_loss=self.DYNAMIC_STOP_LOSS,
            atr_stop_multiplier=self.ATR_STOP_MULTIPLIER,
            portfolio_correlation_limit=self.PORTFOLIO_CORRELATION_LIMIT,
            correlation_lookback=self.CORRELATION_LOOKBACK,
            risk_per_trade_pct=self.RISK_PER_TRADE_PCT,
            max_balance_fraction=self.MAX_BALANCE_FRACTION,
        )

    def analytics_config(self) -> AnalyticsConfig:
        return AnalyticsConfig(
            cvd_strong_threshold=self.CVD_STRONG_THRESHOLD,
            cvd_threshold=self.CVD_THRESHOLD,
            cvd_magnitude_scale=self.CVD_MAGNITUDE_SCALE,
            cvd_minority_share=self.CVD_MINORITY_SHARE,
            volume_high_ratio=self.VOLUME_HIGH_RATIO,
            volume_medium_ratio=self.VOLUME_MEDIUM_RATIO,
            volume_surge_ratio=self.VOLUME_SURGE_RATIO,
            pattern_strong_pct=self.PATTERN_STRONG_PCT,
            pattern_moderate_pct=self.PATTERN_MODERATE_PCT,
            reversal_body_pct=self.REVERSAL_BODY_PCT,
            vrvp_scan_depth=self.VRVP_SCAN_DEPTH,
            vrvp_levels=self.VRVP_LEVELS,
            hunter_zone_multiple=self.HUNTER_ZONE_MULTIPLE,
            hunter_zone_proximity=self.HUNTER_ZONE_PROXIMITY,
            volume_profile_bucket_pct=self.VOLUME_PROFILE_BUCKET_PCT,
            low_volume_zone_ratio=self.LOW_VOLUME_ZONE_RATIO,
        )
