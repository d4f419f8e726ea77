"""Centralized configuration management for the deals service.

Loads all configuration from environment variables with sensible defaults.
"""

from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Load environment variables from .env file
load_dotenv()


class Config(BaseSettings):
    """Main configuration class for the deals service."""

    # Service
    deals_host: str = Field(default="0.0.0.0")
    deals_port: int = Field(default=4030)

    # Database
    database_path: str = Field(default="./deals.db")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # Ledger
    ledger_currency: str = Field(default="FCFA", description="Single ledger currency")

    # Platform fee schedule
    platform_fee_rate: float = Field(default=0.175, description="17.5% commission")
    platform_min_fee: int = Field(default=0, description="Minimum fee in minor units")
    platform_max_fee: Optional[int] = Field(
        default=None, description="Maximum fee in minor units (None = no cap)"
    )

    # Delivery code lockout policy
    delivery_code_length: int = Field(default=6)
    code_attempts_per_cycle: int = Field(default=5)
    code_odd_cycle_cooldown_minutes: int = Field(default=30)
    code_even_cycle_cooldown_minutes: int = Field(default=60)

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global config instance
config = Config()


def validate_config_for_service(service: Literal["deals", "scripts"]) -> None:
    """Validate that configuration is coherent for a specific service.

    Args:
        service: The service name to validate configuration for.

    Raises:
        ValueError: If the configuration is invalid.
    """
    errors = []

    if not 0 <= config.platform_fee_rate < 1:
        errors.append("PLATFORM_FEE_RATE must be in [0, 1)")
    if config.platform_min_fee < 0:
        errors.append("PLATFORM_MIN_FEE must not be negative")
    if config.platform_max_fee is not None and config.platform_max_fee < config.platform_min_fee:
        errors.append("PLATFORM_MAX_FEE must not be below PLATFORM_MIN_FEE")

    if service == "deals":
        if config.delivery_code_length < 6:
            errors.append("DELIVERY_CODE_LENGTH must be at least 6")
        if config.code_attempts_per_cycle < 1:
            errors.append("CODE_ATTEMPTS_PER_CYCLE must be at least 1")
        if (
            config.code_odd_cycle_cooldown_minutes <= 0
            or config.code_even_cycle_cooldown_minutes <= 0
        ):
            errors.append("Code cooldown durations must be positive")
        if not config.ledger_currency:
            errors.append("LEDGER_CURRENCY must be set")

    if errors:
        error_msg = f"Configuration errors for {service} service:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)
