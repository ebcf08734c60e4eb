"""
Tests for configuration loading
"""

from bingo_ledger.config import BingoConfig, Environment, get_config, reload_config


class TestBingoConfig:
    """Test configuration defaults and environment overrides"""

    def test_defaults(self):
        """Business constants default to the documented values"""
        config = BingoConfig()

        assert config.grace_period_days == 7
        assert config.penalty_rate == "0.02"
        assert config.weeks_per_month == "4.33"
        assert config.default_bike_weeks == 52
        assert config.large_loan_threshold == 1_000_000
        assert config.justification_min_length == 5
        assert config.timezone == "Africa/Kampala"

    def test_environment_override(self, monkeypatch):
        """BINGO_ prefixed variables override defaults"""
        monkeypatch.setenv("BINGO_GRACE_PERIOD_DAYS", "10")
        monkeypatch.setenv("BINGO_ENVIRONMENT", "production")

        config = BingoConfig()

        assert config.grace_period_days == 10
        assert config.environment == Environment.PRODUCTION

    def test_production_requires_tls_and_no_schema_sync(self):
        config = BingoConfig(environment=Environment.PRODUCTION)
        assert config.is_production
        assert config.database_ssl
        assert not config.schema_sync

    def test_development_syncs_schema(self):
        config = BingoConfig(environment=Environment.DEVELOPMENT)
        assert not config.database_ssl
        assert config.schema_sync

    def test_reload_picks_up_environment(self, monkeypatch):
        """reload_config replaces the global instance"""
        monkeypatch.setenv("BINGO_LARGE_LOAN_THRESHOLD", "2000000")
        try:
            config = reload_config()
            assert config.large_loan_threshold == 2_000_000
            assert get_config() is config
        finally:
            monkeypatch.delenv("BINGO_LARGE_LOAN_THRESHOLD")
            reload_config()
