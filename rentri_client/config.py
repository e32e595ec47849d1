"""Application configuration loaded from environment variables."""

import logging
import os
from enum import Enum
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Environment(str, Enum):
    """Registry environment a certificate and a registro belong to."""
    DEMO = "demo"
    PRODUCTION = "production"

    @classmethod
    def parse(cls, value: "str | Environment | None") -> "Environment":
        """Parse an environment name, accepting the legacy ``prod`` spelling."""
        if isinstance(value, Environment):
            return value
        if not value:
            return cls(get_settings().rentri_default_environment)
        normalized = value.strip().lower()
        if normalized == "prod":
            return cls.PRODUCTION
        return cls(normalized)


def get_default_database_url() -> str:
    """Get default database URL (SQLite under DATA_DIR).

    Returns
    -------
        Database connection string
    """
    data_dir = Path(os.getenv("DATA_DIR", "./data"))
    data_dir.mkdir(parents=True, exist_ok=True)
    db_url = f"sqlite:///{data_dir}/rentri.db"
    logger.info(f"📊 Database: SQLite ({data_dir}/rentri.db)")
    return db_url


class Settings(BaseSettings):
    """Client settings from environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. ``.env`` file
    3. Defaults defined here
    """

    # Database
    database_url: str = ""

    # Registry gateways (one per environment)
    rentri_gateway_url_demo: str = "https://demoapi.rentri.gov.it"
    rentri_gateway_url_production: str = "https://api.rentri.gov.it"
    rentri_default_environment: str = "demo"

    # JWT audiences
    rentri_audience_demo: str = "rentrigov.demo.api"
    rentri_audience_production: str = "rentrigov.api"

    # Token signing
    rentri_jwt_ttl_seconds: int = 55
    rentri_token_refresh_margin_seconds: int = 5

    # Transport
    rentri_http_timeout_seconds: float = 30.0
    rentri_push_max_attempts: int = 3
    rentri_push_backoff_seconds: float = 1.0

    # Batching / paging
    rentri_max_batch_size: int = 1000
    rentri_pull_page_size: int = 100

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def __init__(self, **data):
        """Initialize settings, resolving the database URL if not provided."""
        if not data.get("database_url"):
            env_db_url = os.getenv("DATABASE_URL")
            if env_db_url:
                data["database_url"] = env_db_url
            else:
                data["database_url"] = get_default_database_url()
        super().__init__(**data)

    def gateway_url(self, environment: Environment) -> str:
        """Base URL of the Registry gateway for an environment."""
        if environment == Environment.PRODUCTION:
            return self.rentri_gateway_url_production
        return self.rentri_gateway_url_demo

    def audience(self, environment: Environment) -> str:
        """JWT audience expected by the Registry for an environment."""
        if environment == Environment.PRODUCTION:
            return self.rentri_audience_production
        return self.rentri_audience_demo


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get settings instance (cached after first call)."""
    global _settings
    if _settings is None:
        _settings = Settings()
        logger.info(
            "⚙️  Settings loaded: default_env=%s, db=%s",
            _settings.rentri_default_environment,
            "MariaDB" if "mysql" in _settings.database_url else "PostgreSQL" if "postgresql" in _settings.database_url else "SQLite",
        )
    return _settings


def reload_settings() -> Settings:
    """Drop the cached settings and load them again from the environment."""
    global _settings
    _settings = None
    return get_settings()
