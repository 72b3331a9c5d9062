"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LendingConfig(BaseSettings):
    """Lending core configuration"""

    # Database configuration
    database_url: str = "sqlite:///lending.db"  # memory:// for in-memory storage
    database_timeout: float = 5.0  # Seconds to wait on a locked SQLite database

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_workers: int = 1

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Business rules configuration
    history_granularity: str = "per_transaction"  # per_transaction or per_installment
    default_payment_method: str = "Cash"
    max_term_months: int = 120
    max_interest_rate: str = "100"  # Percent

    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
