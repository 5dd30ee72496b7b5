"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional, Set

from pydantic_settings import BaseSettings, SettingsConfigDict


class LendingConfig(BaseSettings):
    """Lending engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LENDING_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///lending.db"  # memory:// for in-memory
    database_timeout_seconds: float = 5.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Money
    default_currency: str = "KES"
    processing_fee_rate: str = "0.06"

    # Loan programs
    small_loan_interest_rate: str = "0.15"
    small_loan_term_weeks: int = 8
    big_loan_interest_rate: str = "0.20"
    big_loan_term_weeks: int = 12

    # Risk tiers: days overdue upper bounds (inclusive)
    risk_medium_max_days: int = 30
    risk_high_max_days: int = 90

    # Overdue reporting
    overdue_mode: str = "installment"  # installment or due_date
    bad_debt_days: int = 365
    dormancy_days: int = 90

    # Roles allowed to override increment policy and write off any loan
    admin_roles: str = "admin,super_admin"

    # Retries for optimistic concurrency conflicts on a loan row
    max_payment_retries: int = 3

    @property
    def admin_role_set(self) -> Set[str]:
        return {role.strip() for role in self.admin_roles.split(",") if role.strip()}

    @property
    def processing_fee_rate_decimal(self) -> Decimal:
        return Decimal(self.processing_fee_rate)


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
