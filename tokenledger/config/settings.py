"""
Configuration Management for Token Ledger

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see which thresholds drive validation and
ensures all required configuration is validated at startup.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Relational store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_DB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    url: str = Field(
        default="sqlite:///tokenledger.db",
        description="SQLAlchemy database URL"
    )
    echo: bool = Field(
        default=False,
        description="Echo SQL statements (debugging only)"
    )
    isolation_level: Optional[str] = Field(
        default=None,
        description="Transaction isolation level, e.g. SERIALIZABLE for PostgreSQL"
    )
    pool_pre_ping: bool = Field(
        default=True,
        description="Verify connections before use"
    )

    @field_validator('isolation_level')
    @classmethod
    def normalize_isolation_level(cls, v: Optional[str]) -> Optional[str]:
        """Accept 'serializable' as well as 'SERIALIZABLE'."""
        if v is None or not v.strip():
            return None
        return v.strip().upper().replace("-", " ")


class LedgerSettings(BaseSettings):
    """
    Ledger behaviour settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Reading assumed before the very first purchase
    baseline_meter_reading: float = Field(
        default=0.0,
        ge=0.0,
        description="Meter reading preceding the first purchase"
    )

    # Advisory consumption checks
    consumption_lookback: int = Field(
        default=30,
        ge=2,
        le=500,
        description="How many past purchase intervals feed the consumption statistics"
    )
    elevated_consumption_multiplier: float = Field(
        default=2.0,
        gt=1.0,
        description="Warn when daily use exceeds this multiple of the average"
    )
    high_consumption_multiplier: float = Field(
        default=3.0,
        gt=1.0,
        description="Multiple of the average beyond which daily use is unusually high"
    )
    high_consumption_floor_kwh: float = Field(
        default=50.0,
        ge=0.0,
        description="Daily use below this is never called unusually high"
    )
    low_consumption_ratio: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Warn when daily use falls below this fraction of the average"
    )
    suggested_daily_usage_kwh: float = Field(
        default=12.0,
        gt=0.0,
        description="Typical daily usage used for reading suggestions"
    )

    # Presentation
    money_places: int = Field(
        default=2,
        ge=2,
        le=6,
        description="Decimal places used when presenting money values"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def database(self) -> DatabaseSettings:
        return DatabaseSettings()

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    try:
        _ = settings.database
        results["database"] = True
    except Exception as e:
        results["database"] = False
        results["database_error"] = str(e)

    try:
        _ = settings.ledger
        results["ledger"] = True
    except Exception as e:
        results["ledger"] = False
        results["ledger_error"] = str(e)

    return results
