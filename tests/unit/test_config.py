"""Unit tests for Settings validation and derived config objects."""

from __future__ import annotations

import pydantic
import pytest

from futures_engine.config import AnalyticsConfig, RiskConfig, Settings


class TestSettings:
    def test_rejects_sub_second_intervals(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(UPDATE_INTERVAL_SECONDS=0.5)
        with pytest.raises(pydantic.ValidationError):
            Settings(DECISION_CYCLE_SECONDS=0)

    def test_rejects_unknown_source(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(MARKET_DATA_SOURCE="replay")

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("MAX_LEVERAGE", "5")
        monkeypatch.setenv("MARKET_DATA_SOURCE", "synthetic")
        settings = Settings()
        assert settings.MAX_LEVERAGE == 5
        assert settings.MARKET_DATA_SOURCE == "synthetic"


class TestDerivedConfig:
    def test_risk_config_mapping(self):
        cfg = Settings(MAX_DAILY_LOSS_PCT=0.05, DEFAULT_LEVERAGE=2).risk_config()
        assert isinstance(cfg, RiskConfig)
        assert cfg.max_daily_loss_pct == 0.05
        assert cfg.default_leverage == 2

    def test_analytics_config_mapping(self):
        cfg = Settings(HUNTER_ZONE_MULTIPLE=4.0, VRVP_LEVELS=3).analytics_config()
        assert isinstance(cfg, AnalyticsConfig)
        assert cfg.hunter_zone_multiple == 4.0
        assert cfg.vrvp_levels == 3

    def test_defaults_match_config_models(self):
        settings = Settings()
        assert settings.risk_config() == RiskConfig()
        assert settings.analytics_config() == AnalyticsConfig()

    def test_config_is_frozen(self):
        cfg = RiskConfig()
        with pytest.raises(pydantic.ValidationError):
            cfg.max_leverage = 50
