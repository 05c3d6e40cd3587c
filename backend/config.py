"""
VendOps Reconciliation - Configuration Management

Centralized configuration for environment variables, CORS, and engine defaults.
This module ensures:
- No hardcoded secrets
- No missing required variables
- Environment-specific settings (dev/staging/prod)
- One place for reconciliation tolerances and limits
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
        extra="ignore",
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
        description="SQLAlchemy async database URL (postgresql+asyncpg://...)"
    )
    DB_POOL_SIZE: int = Field(default=5)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_SSL_REQUIRED: bool = Field(
        default=True,
        description="Pass ssl=require to asyncpg connections"
    )

    # ==================== AUTHENTICATION ====================
    INTERNAL_API_KEY: str = Field(
        default="",
        description="Primary key accepted in X-Internal-Api-Key"
    )
    INTERNAL_API_KEYS: str = Field(
        default="",
        description="Comma-separated list of additional accepted keys"
    )

    # ==================== CORS ====================
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated list of allowed origins"
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
        default="VendOps Payment Reconciliation API",
        description="API title for OpenAPI docs"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
    )

    # ==================== RECONCILIATION ====================
    RECON_DEFAULT_TIME_TOLERANCE: int = Field(
        default=300,
        description="Default time tolerance in seconds"
    )
    RECON_MAX_TIME_TOLERANCE: int = Field(
        default=86400,
        description="Largest time tolerance a run may request"
    )
    RECON_DEFAULT_AMOUNT_TOLERANCE: float = Field(
        default=0.01,
        description="Default amount tolerance as a fraction of the larger amount"
    )
    RECON_MAX_AMOUNT_TOLERANCE: float = Field(
        default=100,
        description="Largest amount tolerance a run may request"
    )
    RECON_EXECUTION_TIMEOUT_SECONDS: float = Field(
        default=300,
        description="Wall-clock limit for one run execution"
    )
    RECON_INCLUDE_UNREFERENCED_PAYMENTS: bool = Field(
        default=False,
        description="Report unpaired payments without an order reference as order_not_found"
    )
    RECON_CURRENCY: str = Field(default="UZS")
    RECON_CURRENCY_MINOR_DIGITS: int = Field(
        default=2,
        description="Digits of the currency's smallest unit used for amount comparison"
    )
    RECON_DEFAULT_PAGE_SIZE: int = Field(default=20)
    RECON_MAX_PAGE_SIZE: int = Field(default=100)
    RECON_IMPORT_MAX_ROWS: int = Field(
        default=10000,
        description="Largest number of sale rows accepted by one import call"
    )

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def cors_origins_list(self) -> List[str]:
        """
        Parse CORS_ORIGINS into a list with environment-aware defaults.

        Development also allows the local admin front end.
        """
        if self.CORS_ORIGINS and self.CORS_ORIGINS != "*":
            origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        else:
            origins = []

        dev_origins = [
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
        ]

        all_origins = set(origins)
        if not self.is_production:
            all_origins.update(dev_origins)

        return sorted(all_origins)

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    @property
    def internal_api_keys(self) -> List[str]:
        keys = []
        if self.INTERNAL_API_KEY:
            keys.append(self.INTERNAL_API_KEY)
        if self.INTERNAL_API_KEYS:
            keys.extend([k.strip() for k in self.INTERNAL_API_KEYS.split(",") if k.strip()])
        return keys

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if not self.DATABASE_URL:
            errors.append("DATABASE_URL is required")

        if not self.internal_api_keys:
            errors.append("INTERNAL_API_KEY is required")

        if self.RECON_DEFAULT_TIME_TOLERANCE > self.RECON_MAX_TIME_TOLERANCE:
            errors.append("RECON_DEFAULT_TIME_TOLERANCE exceeds RECON_MAX_TIME_TOLERANCE")

        if self.RECON_DEFAULT_AMOUNT_TOLERANCE > self.RECON_MAX_AMOUNT_TOLERANCE:
            errors.append("RECON_DEFAULT_AMOUNT_TOLERANCE exceeds RECON_MAX_AMOUNT_TOLERANCE")

        if self.is_production:
            if self.CORS_ORIGINS == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")

            if "localhost" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot point to localhost in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        """Get the database URL, forcing the asyncpg driver for postgres URLs"""
        if not self.DATABASE_URL:
            raise ValueError("No database configuration found. Set DATABASE_URL.")

        url = self.DATABASE_URL
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql+asyncpg://", 1)
        return url


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
    """
    Get CORS middleware configuration.

    Returns configuration dict for CORSMiddleware.
    """
    settings = get_settings()

    return {
        "allow_origins": settings.cors_origins_list,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        "allow_headers": [
            "Content-Type",
            "Accept",
            "Origin",
            "X-Request-ID",
            "X-Internal-Api-Key",
            "X-Organization-Id",
            "X-User-Id",
        ],
        "expose_headers": ["X-Request-ID"],
        "max_age": 600,  # Cache preflight for 10 minutes
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
        ("DATABASE_URL", settings.DATABASE_URL),
    ]

    for name, value in required_vars:
        if not value:
            status["errors"].append(f"{name} is not set")
            status["valid"] = False
        else:
            status["variables"][name] = "set"

    optional_vars = [
        ("SENTRY_DSN", settings.SENTRY_DSN, "Error tracking disabled"),
        ("INTERNAL_API_KEY", settings.INTERNAL_API_KEY, "Reconciliation API will reject all requests"),
    ]

    for name, value, warning in optional_vars:
        if not value:
            status["warnings"].append(warning)
            status["variables"][name] = "not set"
        else:
            status["variables"][name] = "set"

    errors = settings.validate_production_config()
    if errors:
        status["errors"].extend(e for e in errors if e not in status["errors"])
        status["valid"] = False

    return status
