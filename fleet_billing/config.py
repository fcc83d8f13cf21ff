"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from pydantic_settings import BaseSettings
from typing import Optional


class BillingConfig(BaseSettings):
    """Fleet billing ledger configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    sqlite_path: str = "fleet_billing.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    currency: str = "USD"
    late_fee_percentage: Decimal = Decimal("10")  # Percent of pending amount per day late
    default_financing_months: int = 54
    default_max_late_quotas: int = 3

    # Batch processing
    batch_workers: int = 1  # >1 fans out financings across a thread pool

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "FLEET_BILLING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = BillingConfig()


def get_config() -> BillingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> BillingConfig:
    """Reload configuration from environment"""
    global config
    config = BillingConfig()
    return config
