"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LendingConfig(BaseSettings):
    """Lending engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///lending.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Money
    currency: str = "GHS"

    # Loan lifecycle
    require_approval: bool = True  # pending -> disbursed needs an approval step

    # Schedule generation
    due_date_policy: str = "first_of_month"  # first_of_month or anniversary

    # Payment reconciliation
    overpayment_policy: str = "record"  # record or reject

    # Income ledger labels
    interest_income_source: str = "Interest Payment"
    interest_income_category: str = "Loan Interest"
    fee_income_source: str = "Loan Processing Fee"
    fee_income_category: str = "Loan Fees"

    # Reporting cache
    cache_ttl_seconds: int = 300

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
