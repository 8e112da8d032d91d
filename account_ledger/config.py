"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Account ledger configuration"""

    # Storage configuration
    store_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "ledger.db"
    database_timeout: float = 5.0  # Seconds to wait for a locked SQLite database

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Business rules configuration
    minor_units: int = 2  # Decimal places of the ledger currency
    max_transaction_amount: str = "100000.00"

    # Credential configuration
    credential_min_length: int = 6
    credential_digits_only: bool = True
    scrypt_n: int = 16384
    scrypt_r: int = 8
    scrypt_p: int = 1

    # API configuration
    api_host: str = "127.0.0.1"
    api_port: int = 8090

    class Config:
        env_prefix = "LEDGER_"
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
