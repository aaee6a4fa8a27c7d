"""
Centralized configuration management for the SSO federation service.

This module provides a Pydantic Settings-based configuration system that:
- Validates environment variables at startup
- Provides type coercion (strings to ints, bools, etc.)
- Groups related settings (database, OIDC, SAML, logging, monitoring)
- Supports .env file loading

Usage:
    from src.config import get_settings

    settings = get_settings()
    timeout = settings.oidc.oidc_http_timeout_seconds
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# Database Settings (PostgreSQL)
# =============================================================================


class DatabaseSettings(BaseSettings):
    """Configuration for the PostgreSQL identity store."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: Optional[str] = Field(
        default=None,
        description="PostgreSQL connection URL (pooled)",
    )
    database_url_direct: Optional[str] = Field(
        default=None,
        description="Direct PostgreSQL connection URL, preferred over the pooled one",
    )
    database_pool_min_size: int = Field(
        default=2,
        ge=1,
        description="Minimum number of pooled connections",
    )
    database_pool_max_size: int = Field(
        default=10,
        ge=1,
        description="Maximum number of pooled connections",
    )
    database_command_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Per-statement timeout in seconds",
    )

    @property
    def effective_url(self) -> Optional[str]:
        """Get the connection URL to use, preferring the direct one."""
        return self.database_url_direct or self.database_url

    @property
    def is_configured(self) -> bool:
        """Check if a database URL is available."""
        return bool(self.effective_url)


# =============================================================================
# OIDC Settings
# =============================================================================


class OIDCSettings(BaseSettings):
    """Configuration for the OIDC relying party."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    oidc_http_timeout_seconds: float = Field(
        default=10.0,
        ge=1,
        le=60,
        description="Timeout in seconds for token, discovery and JWKS requests",
    )
    oidc_clock_skew_seconds: int = Field(
        default=0,
        ge=0,
        le=600,
        description="Leeway in seconds applied to exp/iat/nbf checks",
    )
    jwks_cache_ttl_seconds: int = Field(
        default=3600,
        ge=0,
        description="How long a fetched JWKS is reused before refetching",
    )


# =============================================================================
# SAML Settings
# =============================================================================


class SAMLSettings(BaseSettings):
    """Configuration for the SAML2 service provider."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    saml_clock_skew_seconds: int = Field(
        default=300,
        ge=0,
        le=3600,
        description="Tolerance in seconds applied to NotBefore/NotOnOrAfter",
    )


# =============================================================================
# Logging Settings
# =============================================================================


class LoggingSettings(BaseSettings):
    """Configuration for logging."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format_json: bool = Field(
        default=False,
        description="Force JSON log format in development",
    )
    request_logging_enabled: bool = Field(
        default=True,
        description="Enable request logging middleware",
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


# =============================================================================
# Monitoring Settings (Sentry)
# =============================================================================


class SentrySettings(BaseSettings):
    """Configuration for Sentry error tracking."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    sentry_dsn: Optional[str] = Field(
        default=None,
        description="Sentry DSN for error tracking",
    )
    sentry_environment: str = Field(
        default="development",
        description="Sentry environment name",
    )
    sentry_traces_sample_rate: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Sentry transaction sample rate (0.0 to 1.0)",
    )
    sentry_release: Optional[str] = Field(
        default="sso-federation@0.1.0",
        description="Sentry release version",
    )

    @property
    def is_configured(self) -> bool:
        """Check if Sentry is configured."""
        return bool(self.sentry_dsn)


# =============================================================================
# Main Settings Class
# =============================================================================


class Settings(BaseSettings):
    """
    Main settings class that aggregates all configuration groups.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    oidc: OIDCSettings = Field(default_factory=OIDCSettings)
    saml: SAMLSettings = Field(default_factory=SAMLSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    sentry: SentrySettings = Field(default_factory=SentrySettings)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.logging.is_production

    def get_config_summary(self) -> dict:
        """
        Get a summary of configuration status for logging.

        Returns a dictionary WITHOUT exposing any secrets or URLs.
        """
        return {
            "environment": self.logging.environment,
            "database_configured": self.database.is_configured,
            "sentry_configured": self.sentry.is_configured,
            "oidc_http_timeout_seconds": self.oidc.oidc_http_timeout_seconds,
            "oidc_clock_skew_seconds": self.oidc.oidc_clock_skew_seconds,
            "jwks_cache_ttl_seconds": self.oidc.jwks_cache_ttl_seconds,
            "saml_clock_skew_seconds": self.saml.saml_clock_skew_seconds,
            "log_level": self.logging.log_level,
        }


# =============================================================================
# Settings Singleton
# =============================================================================


@lru_cache()
def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload settings.
    """
    return Settings()


def reload_settings() -> Settings:
    """
    Reload settings from environment.

    Useful for testing or after environment changes.
    """
    get_settings.cache_clear()
    return get_settings()
