"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings
from decimal import Decimal
from typing import Optional


class LedgerConfig(BaseSettings):
    """Ledger engine configuration"""
    
    # Currency defaults (supplied by the caller's environment)
    default_currency: str = "INR"
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # stderr when unset
    
    # Minimum due policy
    minimum_due_rate: Decimal = Field(default=Decimal("0.05"), gt=0, le=1)
    minimum_due_floor: Decimal = Field(default=Decimal("500"), ge=0)
    minimum_due_floor_usd: Decimal = Field(default=Decimal("25"), ge=0)
    
    # Billing
    due_soon_days: int = 5
    
    # Credit limit policy
    credit_limit_warning_ratio: Decimal = Decimal("0.80")
    block_over_limit_on_submit: bool = True
    
    # Interest
    days_in_year: int = Field(default=365, gt=0)
    
    # Storage configuration
    sqlite_path: str = ":memory:"
    storage_timeout_seconds: float = Field(default=5.0, gt=0)
    
    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False

    @field_validator("default_currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @field_validator("log_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        if value not in ("json", "text"):
            raise ValueError("log_format must be json or text")
        return value


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
