"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Literal


class LedgerConfig(BaseSettings):
    """Branch ledger configuration"""
    
    # Storage configuration
    database_url: str = "sqlite:///branch_ledger.db"  # memory:// for in-process storage
    store_timeout_seconds: float = 5.0  # Max wait for the store write lock
    
    # Business rules configuration
    approval_threshold: str = "10000.00"  # Teller amounts at or above need approval
    approval_funds_policy: Literal["fail", "reject"] = "fail"
    default_routing_code: str = "101010"
    
    # Reference allocation
    reference_length: int = 16
    reference_max_attempts: int = 5
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "BRANCH_LEDGER_"
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
