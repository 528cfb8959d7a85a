"""
Configuration management using Pydantic Settings.

Loads configuration from environment variables and .env files
with validation and type conversion.
"""

from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_GATEWAY_MAP = {
    "stripe": "CC",
    "stripe_checkout": "CC",
    "paypal": "PAYPAL",
    "manual": "CK",
    "offline": "CK",
}


class DonorSyncSettings(BaseSettings):
    """
    Configuration for the Donor Sync service.

    Settings are loaded in this order of precedence:
    1. Environment variables
    2. .env file in current directory
    3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Feature Flags
    enable_donor_sync: bool = Field(
        default=False,
        description="Sync donations in real time when they reach a final status"
    )

    strict_donor_lookup: bool = Field(
        default=False,
        description="Fail the donation when the donor email lookup fails instead of creating a donor"
    )

    # DonorPerfect API Configuration
    dp_api_key: Optional[str] = Field(
        default=None,
        description="DonorPerfect XML API key"
    )

    dp_api_base_url: str = Field(
        default="https://www.donorperfect.net/prod/xmlrequest.asp",
        description="DonorPerfect XML API endpoint"
    )

    api_timeout: float = Field(
        default=30.0,
        ge=1.0,
        le=300.0,
        description="API request timeout in seconds"
    )

    dp_user_id: str = Field(
        default="DonationSync",
        description="User id stamped on records created in DonorPerfect"
    )

    # Default Codes
    default_gl_code: str = Field(
        default="UN",
        description="GL code for gifts and pledges"
    )

    default_campaign: Optional[str] = Field(
        default=None,
        description="Campaign code for gifts and pledges"
    )

    default_solicit_code: Optional[str] = Field(
        default=None,
        description="Solicit code for gifts and pledges"
    )

    gateway_map: Dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_GATEWAY_MAP),
        description="Payment gateway id -> DonorPerfect gift type (JSON object)"
    )

    default_gift_type: str = Field(
        default="CC",
        description="Gift type used for gateways missing from gateway_map"
    )

    default_country: str = Field(
        default="US",
        description="Country stamped on donors created by the sync"
    )

    # Backfill
    backfill_delay: float = Field(
        default=0.2,
        ge=0,
        description="Delay between items of a real backfill in seconds (rate limiting)"
    )

    backfill_batch_size: int = Field(
        default=10,
        ge=1,
        le=500,
        description="Default batch size for backfill runs"
    )

    preview_batch_size: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Default batch size for backfill previews"
    )

    # Database Configuration
    database_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy connection string for the sync log and donation tables"
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    log_format: str = Field(
        default="json",
        description="Log output format (json, text)"
    )

    service_name: str = Field(
        default="donor-sync",
        description="Service name for logging and monitoring"
    )

    environment: str = Field(
        default="development",
        description="Environment name (development, staging, production)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level is one of the standard levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        """Validate log format is supported."""
        valid_formats = {"json", "text"}
        if v.lower() not in valid_formats:
            raise ValueError(f"log_format must be one of: {', '.join(valid_formats)}")
        return v.lower()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment name."""
        valid_envs = {"development", "staging", "production"}
        if v.lower() not in valid_envs:
            raise ValueError(f"environment must be one of: {', '.join(valid_envs)}")
        return v.lower()

    @field_validator("dp_api_key", "default_campaign", "default_solicit_code")
    @classmethod
    def blank_to_none(cls, v):
        """Treat blank strings as unset."""
        if v is None:
            return v
        v = v.strip()
        return v or None

    @field_validator("default_gl_code")
    @classmethod
    def validate_gl_code(cls, v):
        v = (v or "").strip()
        return v or "UN"

    def is_configured(self) -> bool:
        """Check whether the DonorPerfect credential is present."""
        return bool(self.dp_api_key)


@lru_cache()
def get_settings() -> DonorSyncSettings:
    """
    Get cached settings instance.

    Uses LRU cache to avoid re-reading configuration files
    on every function call.

    Returns:
        DonorSyncSettings instance with loaded configuration
    """
    return DonorSyncSettings()


# Convenience alias
settings = get_settings
