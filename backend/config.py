"""
Invoicing Core - Configuration Management

Centralized configuration for environment variables, CORS, and the
reconciliation/recurring batch settings.
This module ensures:
- No hardcoded secrets
- No missing required variables
- Environment-specific settings (dev/staging/prod)
"""

from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="",
        description="PostgreSQL connection URL (postgresql+asyncpg://...)"
    )
    POSTGRES_HOST: str = Field(default="")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="postgres")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="require")
    DATABASE_POOL_SIZE: int = Field(default=5, ge=1)
    DATABASE_MAX_OVERFLOW: int = Field(default=10, ge=0)

    # ==================== AUTHENTICATION ====================
    INTERNAL_API_KEY: str = Field(
        default="",
        description="Primary key for service-to-service calls (scheduler, dashboard backend)"
    )
    INTERNAL_API_KEYS: str = Field(
        default="",
        description="Comma-separated extra keys, used during rotation"
    )

    # ==================== CORS ====================
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated list of allowed origins"
    )

    # ==================== RECONCILIATION ====================
    RECONCILIATION_AMOUNT_TOLERANCE: float = Field(
        default=0.01,
        gt=0,
        description="Amounts closer than this are treated as equal"
    )
    RECONCILIATION_DATE_WINDOW_DAYS: int = Field(
        default=7,
        ge=0,
        description="Maximum distance in days between deposit and due date"
    )
    RECONCILIATION_MAX_CANDIDATES: int = Field(
        default=5000,
        ge=1,
        description="Upper bound on candidate pairs considered in one run"
    )
    RECONCILIATION_TIMEOUT_SECONDS: float = Field(
        default=60.0,
        ge=0,
        description="Whole-run time budget, 0 disables the timeout"
    )

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )

    # ==================== API ====================
    API_TITLE: str = Field(
        default="Invoicing Core API",
        description="API title for OpenAPI docs"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
    )

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    @property
    def cors_origins_list(self) -> List[str]:
        """
        Parse CORS_ORIGINS into a list. Development also allows the local
        dashboard dev servers.
        """
        if self.CORS_ORIGINS and self.CORS_ORIGINS != "*":
            origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        else:
            origins = []

        dev_origins = [
            "http://localhost:3000",
            "http://localhost:5173",
            "http://localhost:8080",
            "http://127.0.0.1:5173",
        ]

        all_origins = set(origins)
        if not self.is_production:
            all_origins.update(dev_origins)

        return sorted(all_origins)

    @property
    def internal_api_keys(self) -> List[str]:
        keys = []
        if self.INTERNAL_API_KEY:
            keys.append(self.INTERNAL_API_KEY)
        if self.INTERNAL_API_KEYS:
            keys.extend(k.strip() for k in self.INTERNAL_API_KEYS.split(",") if k.strip())
        return keys

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if not self.DATABASE_URL and not self.POSTGRES_HOST:
            errors.append("DATABASE_URL is required")

        if not self.internal_api_keys:
            errors.append("INTERNAL_API_KEY is required")
        elif any(len(k) < 32 for k in self.internal_api_keys):
            errors.append("INTERNAL_API_KEY should be at least 32 characters")

        if self.is_production:
            if self.CORS_ORIGINS == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")

            if "localhost" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot point to localhost in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        """Get the appropriate database URL"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        if self.POSTGRES_HOST and self.POSTGRES_USER and self.POSTGRES_PASSWORD:
            return (
                f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
                f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
            )

        raise ValueError("No database configuration found. Set DATABASE_URL or POSTGRES_* variables.")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug: {settings.debug_enabled}")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


# ==================== CORS CONFIGURATION ====================

def get_cors_config() -> dict:
    """Get CORS middleware configuration."""
    settings = get_settings()

    return {
        "allow_origins": settings.cors_origins_list,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        "allow_headers": [
            "Authorization",
            "Content-Type",
            "Accept",
            "Origin",
            "X-Request-ID",
            "X-Account-Id",
            "X-Internal-Api-Key",
        ],
        "expose_headers": ["X-Request-ID"],
        "max_age": 600,
    }


# ==================== ENVIRONMENT VALIDATION ====================

def validate_environment() -> dict:
    """
    Validate all required environment variables.

    Returns a status dict with validation results.
    """
    settings = get_settings()

    status = {
        "valid": True,
        "environment": settings.ENVIRONMENT,
        "errors": [],
        "warnings": [],
        "variables": {}
    }

    required_vars = [
        ("DATABASE_URL", settings.DATABASE_URL or settings.POSTGRES_HOST),
        ("INTERNAL_API_KEY", settings.INTERNAL_API_KEY or settings.INTERNAL_API_KEYS),
    ]

    for name, value in required_vars:
        if not value:
            status["errors"].append(f"{name} is not set")
            status["valid"] = False
        else:
            status["variables"][name] = "set"

    optional_vars = [
        ("SENTRY_DSN", settings.SENTRY_DSN, "Error tracking disabled"),
    ]

    for name, value, warning in optional_vars:
        if not value:
            status["warnings"].append(warning)
            status["variables"][name] = "not set"
        else:
            status["variables"][name] = "set"

    if settings.RECONCILIATION_TIMEOUT_SECONDS == 0:
        status["warnings"].append("Reconciliation runs have no timeout")

    errors = settings.validate_production_config()
    for error in errors:
        if error not in status["errors"]:
            status["errors"].append(error)
    if errors:
        status["valid"] = False

    return status
