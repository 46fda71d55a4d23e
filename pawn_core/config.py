"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class PawnConfig(BaseSettings):
    """Pawn ledger configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///pawn_ledger.db"  # or memory://
    database_lock_timeout: float = 10.0  # seconds before ResourceExhaustedError
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_title: str = "Pawn Ledger API"
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Business rules configuration
    currency: str = "USD"
    due_date_extension_days: int = 30
    transaction_number_attempts: int = 5
    transaction_number_digits: int = 9
    
    # Scheduler configuration
    scheduler_enabled: bool = True
    sweep_interval_seconds: int = 86400  # once a day
    
    # Feature flags
    enable_audit_logging: bool = True
    require_active_shift: bool = True  # loan mutations need an open shift
    
    # Migration configuration
    auto_migrate: bool = True
    
    class Config:
        env_prefix = "PAWN_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = PawnConfig()


def get_config() -> PawnConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> PawnConfig:
    """Reload configuration from environment"""
    global config
    config = PawnConfig()
    return config
