"""
Issue Sync configuration.
Manages all configurations through environment variables.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    """Application settings using Pydantic Settings."""

    model_config = SettingsConfigDict(
        env_file=[".env"],
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    # Application Settings
    APP_NAME: str = "Issue Sync"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    # Database Configuration (default single-tenant client)
    DATABASE_URL: str = "sqlite:///./issue_sync.db"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600

    # Outbound HTTP (provider APIs, search node)
    HTTP_TIMEOUT_SECONDS: float = 30.0
    HTTP_MAX_CONNECTIONS: int = 50

    # Key-value store (cache + job state)
    VALKEY_URL: Optional[str] = None
    SKIP_VALKEY_CONNECTION: bool = False

    # RabbitMQ Configuration (job transport)
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_VHOST: str = "/"

    # Security Configuration
    ENCRYPTION_KEY: Optional[str] = None

    # Multi-tenant Configuration
    MULTI_TENANT_MODE: str = "false"
    INSTANCE_TENANT_ID: Optional[str] = None
    TENANT_CONFIG_FILE: str = "/config/tenants.json"
    TENANT_CONFIGS: Optional[str] = None

    # Jira OAuth application
    JIRA_CLIENT_ID: Optional[str] = None
    JIRA_CLIENT_SECRET: Optional[str] = None
    JIRA_REDIRECT_URI: Optional[str] = None

    # Search index
    ELASTICSEARCH_NODE: Optional[str] = None

    # Cache TTLs (seconds)
    ISSUE_CACHE_TTL: int = 3600
    METADATA_CACHE_TTL: int = 7200
    PROJECTS_CACHE_TTL: int = 86400


# Global settings instance (lazy initialization)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Returns the settings instance with lazy initialization.

    Configuration precedence:
    1) Environment variables (highest priority)
    2) Local .env file
    3) Field defaults
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings():
    """Drops the cached settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
