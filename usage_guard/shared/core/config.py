from functools import lru_cache
from threading import Lock
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator

ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"

MODE_LOCAL = "local"
MODE_CLOUD = "cloud"


@lru_cache
def get_settings() -> "Settings":
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """Swap the cached settings for a fresh instance built from os.environ."""
    with _settings_reload_lock:
        get_settings.cache_clear()
        refreshed = get_settings()
    structlog.get_logger().info(
        "settings_reloaded",
        mode=refreshed.USAGE_GUARD_MODE,
        environment=refreshed.ENVIRONMENT,
        testing=refreshed.TESTING,
    )
    return refreshed


class Settings(BaseSettings):
    """Usage Guard runtime configuration, read from the environment and `.env`."""

    APP_NAME: str = "Usage Guard"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # local: single-user install, notification email may come from LOCAL_CONFIG_PATH
    # cloud: multi-tenant deployment, emails come from user records only
    USAGE_GUARD_MODE: str = MODE_CLOUD
    LOCAL_CONFIG_PATH: str = "~/.usage-guard/config.json"

    # Database
    DATABASE_URL: str = ""
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_SLOW_QUERY_THRESHOLD_SECONDS: float = 0.2

    # Threshold engine
    LIMIT_CACHE_TTL_SECONDS: float = 60.0
    INGEST_DEBOUNCE_SECONDS: float = 1.0
    THRESHOLD_SWEEP_ENABLED: bool = True
    THRESHOLD_SWEEP_RUN_ON_STARTUP: bool = True

    # SMTP Email (for threshold alerts)
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_FROM: str = "alerts@usage-guard.dev"
    SMTP_USE_TLS: bool = True
    SMTP_TIMEOUT_SECONDS: float = 10.0

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation orchestrator, grouped by concern."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )

        self._validate_mode_config()
        self._validate_threshold_engine_config()
        if self.TESTING:
            return self

        self._validate_database_config()
        self._validate_email_config()
        return self

    def _validate_mode_config(self) -> None:
        mode = str(self.USAGE_GUARD_MODE or "").strip().lower()
        if mode not in {MODE_LOCAL, MODE_CLOUD}:
            raise ValueError(
                f"USAGE_GUARD_MODE must be one of: {MODE_LOCAL}, {MODE_CLOUD}."
            )
        self.USAGE_GUARD_MODE = mode

    def _validate_threshold_engine_config(self) -> None:
        if self.LIMIT_CACHE_TTL_SECONDS <= 0:
            raise ValueError("LIMIT_CACHE_TTL_SECONDS must be > 0.")
        if self.INGEST_DEBOUNCE_SECONDS <= 0:
            raise ValueError("INGEST_DEBOUNCE_SECONDS must be > 0.")

    def _validate_database_config(self) -> None:
        if self.is_production and not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required in production.")
        if self.DB_SLOW_QUERY_THRESHOLD_SECONDS <= 0:
            raise ValueError("DB_SLOW_QUERY_THRESHOLD_SECONDS must be > 0.")

    def _validate_email_config(self) -> None:
        if not self.SMTP_HOST:
            structlog.get_logger().info(
                "smtp_not_configured",
                msg="Threshold alerts cannot be emailed until SMTP_HOST is set.",
            )
        if self.SMTP_PORT < 1 or self.SMTP_PORT > 65535:
            raise ValueError("SMTP_PORT must be between 1 and 65535.")
        if self.SMTP_TIMEOUT_SECONDS <= 0:
            raise ValueError("SMTP_TIMEOUT_SECONDS must be > 0.")

    @property
    def is_production(self) -> bool:
        """True only when ENVIRONMENT is explicitly set to 'production'."""
        return self.ENVIRONMENT == ENV_PRODUCTION

    @property
    def is_local_mode(self) -> bool:
        return self.USAGE_GUARD_MODE == MODE_LOCAL
