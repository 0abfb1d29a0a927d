"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Retail ledger core configuration"""
    
    # Storage configuration
    database_url: str = "sqlite:///retail_ledger.db"  # memory://, sqlite:///path or postgresql://...
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    
    # Business rules configuration
    default_currency: str = "USD"
    default_penalty_rate_percent: str = "1"  # Monthly penalty on overdue principal
    max_loan_term_months: int = 360
    max_loan_interest_rate: str = "100"
    account_number_max_attempts: int = 10
    
    # History paging
    history_default_limit: int = 50
    history_max_limit: int = 100
    
    # Monthly interest job schedule (UTC)
    interest_job_day: int = 1
    interest_job_hour: int = 0
    interest_job_poll_seconds: Optional[int] = None  # None = sleep until next run
    
    class Config:
        env_prefix = "RETAIL_LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
