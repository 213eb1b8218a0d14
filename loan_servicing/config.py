"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based
configuration, and the SchedulingPolicy that carries default lending policy
into the lifecycle manager explicitly.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional

from pydantic_settings import BaseSettings

from .currency import Currency, Money, decimal_from_string


class LoanServicingConfig(BaseSettings):
    """Loan servicing engine configuration"""

    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    sqlite_path: str = "loan_servicing.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Calendar configuration
    holiday_region: str = "CA"  # CA or none

    # Lending policy defaults
    currency: str = "CAD"
    default_interest_rate: str = "29"  # Annual percent
    default_term_months: int = 3
    default_brokerage_fee: str = "0.00"
    default_origination_fee: str = "55.00"  # Charged per failed payment
    default_deferral_fee: str = "0.00"
    contract_expiry_days: int = 30

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LOAN_SERVICING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LoanServicingConfig()


def get_config() -> LoanServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanServicingConfig:
    """Reload configuration from environment"""
    global config
    config = LoanServicingConfig()
    return config


# Payments per month used to turn a term in months into a payment count
DEFAULT_PAYMENTS_PER_MONTH: Dict[str, int] = {
    "weekly": 4,
    "bi-weekly": 2,
    "twice-monthly": 2,
    "monthly": 1,
}


@dataclass
class SchedulingPolicy:
    """Default lending policy applied when a request leaves a value unset"""
    currency: Currency = Currency.CAD
    default_interest_rate: Decimal = Decimal('29')
    default_term_months: int = 3
    default_brokerage_fee: Optional[Money] = None
    default_origination_fee: Optional[Money] = None
    default_deferral_fee: Optional[Money] = None
    contract_expiry_days: int = 30
    payments_per_month: Dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_PAYMENTS_PER_MONTH)
    )

    def __post_init__(self):
        if self.default_brokerage_fee is None:
            self.default_brokerage_fee = Money.zero(self.currency)
        if self.default_origination_fee is None:
            self.default_origination_fee = Money(Decimal('55'), self.currency)
        if self.default_deferral_fee is None:
            self.default_deferral_fee = Money.zero(self.currency)

        for fee in (self.default_brokerage_fee, self.default_origination_fee,
                    self.default_deferral_fee):
            if fee.currency != self.currency:
                raise ValueError("Policy fee currency must match policy currency")
            if fee.is_negative():
                raise ValueError("Policy fees cannot be negative")

        if self.default_interest_rate < Decimal('0'):
            raise ValueError("Default interest rate cannot be negative")
        if self.default_term_months <= 0:
            raise ValueError("Default term must be at least one month")

    @classmethod
    def from_config(cls, settings: Optional[LoanServicingConfig] = None) -> 'SchedulingPolicy':
        """Build the policy from environment configuration"""
        settings = settings or get_config()
        currency = Currency.from_code(settings.currency)
        return cls(
            currency=currency,
            default_interest_rate=decimal_from_string(settings.default_interest_rate),
            default_term_months=settings.default_term_months,
            default_brokerage_fee=Money(decimal_from_string(settings.default_brokerage_fee), currency),
            default_origination_fee=Money(decimal_from_string(settings.default_origination_fee), currency),
            default_deferral_fee=Money(decimal_from_string(settings.default_deferral_fee), currency),
            contract_expiry_days=settings.contract_expiry_days,
        )
