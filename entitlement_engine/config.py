"""
Engine Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Invalid config is rejected when the settings object is built.
"""

import sys
from datetime import timedelta

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_LOG_FORMATS = ("json", "console")


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    # Verification retry limiting
    retry_max_retries: int = 3
    retry_reset_window_seconds: int = 24 * 60 * 60

    # Offline verification cache
    offline_cache_enabled: bool = True
    offline_cache_ttl_seconds: int = 24 * 60 * 60

    # Restore: delete local purchases the platform no longer reports
    restore_delete_orphans: bool = False

    # Persistent store (reference SQLAlchemy adapter)
    database_url: str = "sqlite+aiosqlite:///./entitlements.db"
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_recycle: int = 3600
    database_echo: bool = False

    # Receipt verification (reference JWS verifier)
    receipt_jws_algorithms: str = "ES256"  # Comma-separated list
    receipt_jws_public_key: str = ""  # PEM, or shared secret for HS* algorithms
    receipt_jws_issuer: str = ""  # Optional expected "iss" claim

    # Service identity
    service_name: str = "entitlement-engine"
    service_version: str = "0.1.0"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate configuration when settings are loaded.

        A misconfigured retry window or logger must not surface later as
        silently disabled rate limiting.
        """
        errors: list[str] = []

        if self.retry_max_retries < 0:
            errors.append(f"RETRY_MAX_RETRIES must be >= 0, got: {self.retry_max_retries}")

        if self.retry_reset_window_seconds <= 0:
            errors.append(
                "RETRY_RESET_WINDOW_SECONDS must be positive, "
                f"got: {self.retry_reset_window_seconds}"
            )

        if self.offline_cache_ttl_seconds <= 0:
            errors.append(
                "OFFLINE_CACHE_TTL_SECONDS must be positive, "
                f"got: {self.offline_cache_ttl_seconds}"
            )

        if self.log_level.upper() not in _LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}")

        if self.log_format not in _LOG_FORMATS:
            errors.append(f"LOG_FORMAT must be 'json' or 'console', got: {self.log_format}")

        if not self.jws_algorithms:
            errors.append("RECEIPT_JWS_ALGORITHMS must name at least one algorithm")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - ENGINE CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def retry_reset_window(self) -> timedelta:
        """Retry record lifetime as a timedelta."""
        return timedelta(seconds=self.retry_reset_window_seconds)

    @property
    def offline_cache_ttl(self) -> timedelta:
        """Offline verification cache entry lifetime as a timedelta."""
        return timedelta(seconds=self.offline_cache_ttl_seconds)

    @property
    def jws_algorithms(self) -> list[str]:
        """Get list of accepted receipt signature algorithms."""
        algorithms = []
        for algorithm in self.receipt_jws_algorithms.split(","):
            algorithm = algorithm.strip()
            if algorithm and algorithm not in algorithms:
                algorithms.append(algorithm)
        return algorithms


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get engine settings instance."""
    return settings
