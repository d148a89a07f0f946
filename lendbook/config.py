"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LendbookConfig(BaseSettings):
    """Lendbook back office configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "lendbook.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    payment_mutation_window_hours: int = 24
    default_interest_type: str = "simple"  # simple (flat rate) or compound (reducing balance)

    # Invoice scheduler
    invoice_scheduler_enabled: bool = False
    invoice_run_hour_utc: int = 0  # Midnight
    invoice_scheduler_poll_seconds: float = 60.0

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LENDBOOK_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LendbookConfig()


def get_config() -> LendbookConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendbookConfig:
    """Reload configuration from environment"""
    global config
    config = LendbookConfig()
    return config
