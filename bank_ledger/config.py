"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Back-office ledger configuration"""
    
    # Storage configuration
    database_url: str = "memory://"  # memory://, sqlite:///path or postgresql://...
    lock_timeout_seconds: float = 5.0  # Max wait for a row lock before failing
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr
    
    # Business rules configuration
    disbursement_account_type: str = "Current"
    deposit_description: str = "Cash deposit by staff."
    withdrawal_description: str = "Cash withdrawal by staff."
    transfer_description: str = "Funds transfer."
    
    class Config:
        env_prefix = "BANK_LEDGER_"
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
