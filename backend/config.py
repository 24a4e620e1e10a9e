"""
Bank Feed Engine - Configuration Management

Centralized configuration for the bank-feed sync engine.
This module ensures:
- No hardcoded secrets (Plaid, OpenAI, encryption key)
- No missing required variables in production
- Environment-specific settings (dev/staging/prod)
- Tunables for paging, concurrency and classifier limits
"""

from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


PLAID_HOSTS = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}


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
        description="Async SQLAlchemy URL for the ledger database"
    )
    POSTGRES_HOST: str = Field(default="")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="ledger")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="")
    DB_POOL_SIZE: int = Field(default=5)
    DB_MAX_OVERFLOW: int = Field(default=10)

    # ==================== CREDENTIALS ====================
    ENCRYPTION_KEY: str = Field(
        default="",
        description="Fernet key used to encrypt stored aggregator access tokens"
    )

    # ==================== AGGREGATOR (PLAID) ====================
    PLAID_CLIENT_ID: str = Field(default="")
    PLAID_SECRET: str = Field(default="")
    PLAID_ENV: str = Field(
        default="sandbox",
        description="Plaid environment: sandbox, development, production"
    )
    PLAID_PAGE_SIZE: int = Field(
        default=100,
        ge=1,
        le=500,
        description="Deltas requested per /transactions/sync page"
    )
    PLAID_TIMEOUT_SECONDS: float = Field(default=30.0)

    # ==================== CLASSIFIER ====================
    AZURE_OPENAI_ENDPOINT: str = Field(default="")
    AZURE_OPENAI_API_KEY: str = Field(default="")
    AZURE_OPENAI_DEPLOYMENT: str = Field(default="gpt-4")
    AZURE_OPENAI_API_VERSION: str = Field(default="2024-02-15-preview")
    OPENAI_API_KEY: str = Field(default="")
    CLASSIFIER_MODEL: str = Field(
        default="gpt-4o-mini",
        description="Model name used when talking to api.openai.com directly"
    )
    CLASSIFIER_TIMEOUT_SECONDS: float = Field(default=20.0)
    CLASSIFIER_MAX_ACCOUNTS: int = Field(
        default=30,
        ge=1,
        description="Maximum candidate account names sent to the classifier"
    )

    # ==================== SYNC ====================
    SYNC_MAX_CONCURRENCY: int = Field(
        default=4,
        ge=1,
        le=16,
        description="Connections synced in parallel by sync_all_connections"
    )
    SYNC_STALE_AFTER_MINUTES: int = Field(
        default=30,
        description="A Syncing status older than this may be reclaimed"
    )
    SYNC_MAX_PAGINATION_RESTARTS: int = Field(default=2, ge=0)
    SYNC_TIMEOUT_SECONDS: Optional[float] = Field(
        default=None,
        description="Default per-connection sync deadline (None = no deadline)"
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
    LOG_JSON: bool = Field(
        default=True,
        description="Emit JSON log lines (disable for local development)"
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
    def plaid_configured(self) -> bool:
        return bool(self.PLAID_CLIENT_ID and self.PLAID_SECRET)

    @property
    def plaid_base_url(self) -> str:
        return PLAID_HOSTS.get(self.PLAID_ENV.lower(), PLAID_HOSTS["sandbox"])

    @property
    def azure_classifier_configured(self) -> bool:
        return bool(self.AZURE_OPENAI_ENDPOINT and self.AZURE_OPENAI_API_KEY)

    @property
    def classifier_configured(self) -> bool:
        return self.azure_classifier_configured or bool(self.OPENAI_API_KEY)

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if not self.DATABASE_URL and not self.POSTGRES_HOST:
            errors.append("DATABASE_URL is required")

        if not self.ENCRYPTION_KEY:
            errors.append("ENCRYPTION_KEY is required")

        if not self.plaid_configured:
            errors.append("PLAID_CLIENT_ID and PLAID_SECRET are required")

        if self.PLAID_ENV.lower() not in PLAID_HOSTS:
            errors.append(f"PLAID_ENV must be one of {sorted(PLAID_HOSTS)}")

        if self.is_production:
            if self.PLAID_ENV.lower() != "production":
                errors.append("PLAID_ENV must be 'production' in production")

            if "localhost" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot point to localhost in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        """Get the appropriate database URL"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        # Build from components if DATABASE_URL not set
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
    Settings are loaded once and cached for the process lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Plaid environment: {settings.PLAID_ENV}")
    logger.info(f"Classifier configured: {settings.classifier_configured}")

    # Validate in production
    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings
