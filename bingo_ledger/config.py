"""
Configuration Management Module

Provides one resolved configuration record using pydantic-settings. The
environment mode decides database TLS and whether the storage layer may
create tables on its own.
"""

from enum import Enum
from typing import Optional

from pydantic_settings import BaseSettings


class Environment(Enum):
    """Deployment mode"""
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class BingoConfig(BaseSettings):
    """Bingo ledger configuration"""

    environment: Environment = Environment.DEVELOPMENT

    # Database configuration
    database_url: str = "sqlite:///bingo_ledger.db"  # memory:// for in-memory

    # Business rules configuration
    timezone: str = "Africa/Kampala"
    grace_period_days: int = 7
    penalty_rate: str = "0.02"          # Share of the weekly installment
    weeks_per_month: str = "4.33"
    default_bike_weeks: int = 52
    large_loan_threshold: int = 1_000_000
    justification_min_length: int = 5
    payment_horizon_years: int = 10

    # Concurrency configuration
    lock_timeout_seconds: float = 10.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    class Config:
        env_prefix = "BINGO_"
        env_file = ".env"
        case_sensitive = False

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def database_ssl(self) -> bool:
        """TLS towards the database is required in production only"""
        return self.is_production

    @property
    def schema_sync(self) -> bool:
        """Tables are created on demand in development only"""
        return not self.is_production


# Global configuration instance
config = BingoConfig()


def get_config() -> BingoConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> BingoConfig:
    """Reload configuration from environment"""
    global config
    config = BingoConfig()
    return config
