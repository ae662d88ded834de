# src/tenantsync/config.py
"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import Optional, List

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import SyncConfiguration


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=os.getenv("SECRETS_DIR", "/run/secrets")
    )

    # Provider API Configuration
    nylas_api_key: Optional[str] = Field(None, description="Provider API key")
    nylas_api_uri: str = Field(
        default="https://api.us.nylas.com",
        description="Provider API base URL"
    )

    # Application Configuration
    app_name: str = Field(default="tenantsync", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".tenantsync",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        validate_default=True,
        description="Database URL (defaults to SQLite in data_dir)"
    )

    # Sync Configuration
    sync_config: SyncConfiguration = Field(
        default_factory=SyncConfiguration,
        description="Synchronization settings"
    )

    # Performance Configuration
    request_timeout_seconds: int = Field(
        default=30,
        ge=5,
        le=300,
        description="HTTP request timeout"
    )
    provider_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for rate-limited provider requests"
    )

    @validator('data_dir', pre=True)
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @validator('database_url')
    def set_default_database_url(cls, v, values):
        """Set default SQLite database URL if not provided."""
        if not v and 'data_dir' in values:
            data_dir = values['data_dir']
            return f"sqlite:///{data_dir}/tenantsync.db"
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @validator('nylas_api_uri')
    def strip_trailing_slash(cls, v):
        return v.rstrip('/')

    def ensure_directories(self):
        """Create the data directory with owner-only permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    def validate_required_settings(self) -> List[str]:
        """Validate required settings and return list of missing fields."""
        missing = []

        if not self.nylas_api_key:
            missing.append('NYLAS_API_KEY')

        return missing


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to an env-style configuration file

    Returns:
        Settings instance
    """
    if config_file:
        settings = Settings(_env_file=config_file)
    else:
        settings = Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Create an example configuration file.

    Args:
        path: Path to create the example config file
    """
    example_content = '''# tenantsync configuration
# Copy this file to .env and fill in your actual credentials

# Provider API Configuration
NYLAS_API_KEY=your_api_key_here
NYLAS_API_URI=https://api.us.nylas.com

# Application Configuration
DEBUG=false
LOG_LEVEL=INFO

# Sync Configuration
SYNC_CONFIG__SYNC_PAST_DAYS=30
SYNC_CONFIG__SYNC_FUTURE_DAYS=90
SYNC_CONFIG__EVENT_PAGE_SIZE=200
SYNC_CONFIG__FOLLOW_PAGINATION=false
SYNC_CONFIG__MAX_PAGES=10

# Performance Configuration
REQUEST_TIMEOUT_SECONDS=30
PROVIDER_RETRY_ATTEMPTS=3

# Storage Configuration (optional)
# DATA_DIR=~/.tenantsync
# DATABASE_URL=sqlite:///~/.tenantsync/tenantsync.db
'''

    with open(path, 'w') as f:
        f.write(example_content)
