"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
For nested settings, use double underscore: SUBSCRIPTIONS__GRACE_PERIOD_DAYS=5
"""

from enum import Enum

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class SubscriptionSettings(BaseModel):
    """Subscription lifecycle policy."""

    grace_period_days: int = Field(3, ge=0, description="Days of access after the paid period")
    trial_period_days: int = Field(14, ge=0, description="Default trial length")
    trial_min_days: int = Field(3, ge=0, description="Shortest allowed trial")
    trial_max_days: int = Field(30, ge=0, description="Longest allowed trial")
    allow_multiple_trials_per_plan: bool = Field(
        False, description="Allow a subscriber to trial the same plan more than once"
    )
    auto_renewal_default: bool = Field(True, description="Auto-renewal flag for new subscriptions")
    allow_downgrades: bool = Field(True, description="Allow plan changes to a cheaper pricing")
    reset_usage_on_plan_change: bool = Field(
        True, description="Reset usage counters when downgrading"
    )
    allow_plan_change_during_trial: bool = Field(
        True, description="Allow plan changes while on trial"
    )
    prevent_downgrade_with_excess_usage: bool = Field(
        True, description="Reject downgrades when carried usage exceeds the new limits"
    )
    ending_soon_days: int = Field(7, ge=0, description="Threshold for ending-soon checks")
    batch_size: int = Field(100, gt=0, description="Default batch size for lifecycle sweeps")

    @model_validator(mode="after")
    def validate_trial_bounds(self) -> "SubscriptionSettings":
        """Ensure trial bounds are consistent."""
        if self.trial_min_days > self.trial_max_days:
            raise ValueError("trial_min_days must not exceed trial_max_days")
        return self


class LocaleSettings(BaseModel):
    """Locale resolution for translatable feature values."""

    default_locale: str = Field("en", description="Locale used when none is requested")
    fallback_locale: str = Field("en", description="Locale used when the requested one is missing")


class CurrencySettings(BaseModel):
    """Currency lookup configuration."""

    default_currency: str = Field("USD", description="Currency of PlanPricing.price")
    fallback_to_default: bool = Field(
        True, description="Use the base price when no currency-specific price exists"
    )
    supported_currencies: list[str] = Field(
        default_factory=lambda: ["USD", "EUR", "GBP"], description="Supported currency codes"
    )


class ScheduleSettings(BaseModel):
    """Cron expressions for lifecycle jobs."""

    daily_reset: str = Field("0 0 * * *", description="Daily usage reset")
    monthly_reset: str = Field("0 0 1 * *", description="Monthly usage reset")
    yearly_reset: str = Field("0 0 1 1 *", description="Yearly usage reset")
    expiry_check: str = Field("0 * * * *", description="Expire overdue subscriptions")
    renewal_check: str = Field("30 * * * *", description="Auto-renew eligible subscriptions")


class DatabaseSettings(BaseModel):
    """Database configuration."""

    url: str = Field(
        "sqlite+aiosqlite:///./subsphere.sqlite", description="Async SQLAlchemy database URL"
    )
    echo: bool = Field(False, description="Echo SQL statements")
    pool_size: int = Field(10, description="Connection pool size")
    max_overflow: int = Field(20, description="Max overflow connections")
    pool_pre_ping: bool = Field(True, description="Test connections before use")

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


class ObservabilitySettings(BaseModel):
    """Logging configuration."""

    log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
    log_format: str = Field("json", description="Log format (json or console)")


class CelerySettings(BaseModel):
    """Celery configuration."""

    broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
    result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
    timezone: str = Field("UTC", description="Timezone")
    task_soft_time_limit: int = Field(240, description="Soft time limit")
    task_time_limit: int = Field(300, description="Hard time limit")


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    app_name: str = Field("subsphere", description="Application name")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")

    subscriptions: SubscriptionSettings = SubscriptionSettings()  # type: ignore[call-arg]
    locale: LocaleSettings = LocaleSettings()  # type: ignore[call-arg]
    currency: CurrencySettings = CurrencySettings()  # type: ignore[call-arg]
    schedule: ScheduleSettings = ScheduleSettings()  # type: ignore[call-arg]
    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]
    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]
    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.environment == Environment.TEST


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None


# Convenience export
settings = get_settings()
