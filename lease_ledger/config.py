"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LeaseLedgerConfig(BaseSettings):
    """Lease & ledger engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LEASE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///lease_ledger.db"  # or memory://

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_currency: str = "MXN"
    expiring_soon_days: int = 30
    max_conflict_retries: int = 3

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = LeaseLedgerConfig()


def get_config() -> LeaseLedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LeaseLedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LeaseLedgerConfig()
    return config
