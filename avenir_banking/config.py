"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class AvenirConfig(BaseSettings):
    """Avenir banking core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="AVENIR_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_path: str = "avenir.db"
    use_sqlite: bool = True

    # IBAN configuration (French BBAN)
    bank_code: str = "30004"
    branch_code: str = "01005"
    iban_generation_attempts: int = 10

    # Business rules configuration
    default_currency: str = "EUR"
    max_deposit_amount: str = "1000000.00"
    max_transfer_amount: str = "100000.00"
    account_name_max_length: int = 100
    order_fee_cents: int = 100
    max_order_quantity: int = 2_147_483_647
    max_limit_price_cents: int = 2_000_000_000

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiry_hours: int = 24
    password_min_length: int = 8
    password_max_length: int = 100
    verification_token_ttl_hours: int = 24

    # Email / push configuration
    frontend_url: str = "http://localhost:3000"
    push_webhook_url: str = ""  # Empty = disabled
    push_webhook_timeout: float = 5.0

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = AvenirConfig()


def get_config() -> AvenirConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> AvenirConfig:
    """Reload configuration from environment"""
    global config
    config = AvenirConfig()
    return config
